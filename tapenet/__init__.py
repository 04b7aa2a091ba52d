"""Local tape and segment store with a JSON-RPC API, snapshots and metrics."""

__version__ = "0.2.1"