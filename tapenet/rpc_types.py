"""JSON-RPC method names and error values served by the tape node."""

from __future__ import annotations

from enum import Enum, IntEnum


class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    SERVER_ERROR = -32000


class RpcError(Exception):
    """An error returned to the caller in a JSON-RPC response."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = int(code)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return (self.code, self.message) == (other.code, other.message)

    def __hash__(self) -> int:
        return hash((self.code, self.message))

    def __repr__(self) -> str:
        return f"RpcError(code={self.code}, message={self.message!r})"


class RpcMethod(str, Enum):
    GET_HEALTH = "getHealth"
    GET_TAPE_ADDRESS = "getTapeAddress"
    GET_TAPE_NUMBER = "getTapeNumber"
    GET_SEGMENT = "getSegment"
    GET_TAPE = "getTape"
    GET_SEGMENT_BY_ADDRESS = "getSegmentByAddress"

    @classmethod
    def parse(cls, name: str) -> "RpcMethod":
        """Look up a method by its wire name; raise RpcError if unknown."""
        try:
            return cls(name)
        except ValueError:
            raise RpcError(ErrorCode.METHOD_NOT_FOUND, "method not found") from None

    def __str__(self) -> str:
        return self.value