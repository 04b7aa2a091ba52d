"""JSON-RPC interface over HTTP for reading the tape store."""

from __future__ import annotations

import base64
import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Mapping

from .metrics import Process, record_metrics, run_metrics_server
from .pubkey import Pubkey
from .rpc_types import ErrorCode, RpcError, RpcMethod
from .store import (
    SegmentNotFound,
    SegmentNotFoundForAddress,
    StoreError,
    TapeNotFound,
    TapeNotFoundForAddress,
    TapeStore,
    run_refresh_store,
)

log = logging.getLogger(__name__)

API_PATH = "/api"
DEFAULT_HOST = "127.0.0.1"
U64_MAX = (1 << 64) - 1


class _Rejected(ValueError):
    """A request body that is not a JSON-RPC call at all; answered with an HTTP error."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


def make_response(
    request_id: Any, result: Any = None, error: RpcError | None = None
) -> dict:
    """Build a JSON-RPC 2.0 response body carrying either ``result`` or ``error``."""
    response: dict = {"jsonrpc": "2.0"}
    if error is None:
        response["result"] = result
    else:
        response["error"] = error.to_dict()
    response["id"] = request_id
    return response


def _server_error(message: str) -> RpcError:
    return RpcError(ErrorCode.SERVER_ERROR, message)


def _param(params: Any, name: str) -> Any:
    return params.get(name) if isinstance(params, Mapping) else None


def _u64_param(params: Any, name: str) -> int:
    value = _param(params, name)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= U64_MAX:
        raise RpcError(ErrorCode.INVALID_PARAMS, f"invalid or missing {name}")
    return value


def _str_param(params: Any, name: str) -> str:
    value = _param(params, name)
    if not isinstance(value, str):
        raise RpcError(ErrorCode.INVALID_PARAMS, f"invalid or missing {name}")
    return value


def _parse_pubkey(text: str) -> Pubkey:
    try:
        return Pubkey.from_string(text)
    except ValueError as exc:
        raise RpcError(ErrorCode.INVALID_PARAMS, f"invalid pubkey: {exc}") from None


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def rpc_get_health(store: TapeStore, params: Any) -> dict:
    """Return the last processed slot and drift recorded by the archiver."""
    try:
        last_processed_slot, drift = store.get_health()
    except StoreError as exc:
        raise _server_error(str(exc)) from None
    return {"last_processed_slot": last_processed_slot, "drift": drift}


def rpc_get_tape_address(store: TapeStore, params: Any) -> str:
    """Return the base58 address of the tape with ``tape_number``."""
    tape_number = _u64_param(params, "tape_number")
    try:
        return str(store.read_tape_address(tape_number))
    except TapeNotFound as exc:
        raise _server_error(f"tape {exc.tape_number} not found") from None
    except StoreError as exc:
        raise _server_error(str(exc)) from None


def rpc_get_tape_number(store: TapeStore, params: Any) -> int:
    """Return the tape number stored for ``tape_address``."""
    address = _parse_pubkey(_str_param(params, "tape_address"))
    try:
        return store.read_tape_number(address)
    except TapeNotFoundForAddress:
        raise _server_error("tape not found for address") from None
    except StoreError as exc:
        raise _server_error(str(exc)) from None


def rpc_get_segment(store: TapeStore, params: Any) -> str:
    """Return one segment, by tape number and segment number, as base64."""
    tape_number = _u64_param(params, "tape_number")
    segment_number = _u64_param(params, "segment_number")
    try:
        return _b64(store.read_segment(tape_number, segment_number))
    except TapeNotFound:
        raise _server_error("tape not found") from None
    except SegmentNotFound as exc:
        raise _server_error(f"segment {exc.segment_number} not found") from None
    except StoreError as exc:
        raise _server_error(str(exc)) from None


def rpc_get_tape(store: TapeStore, params: Any) -> list[dict]:
    """Return every stored segment of a tape as ``{segment_number, data}`` objects."""
    address = _parse_pubkey(_str_param(params, "tape_address"))
    try:
        segments = store.read_tape_segments(address)
    except TapeNotFoundForAddress:
        raise _server_error("tape not found") from None
    except StoreError as exc:
        raise _server_error(str(exc)) from None
    return [
        {"segment_number": number, "data": _b64(data)} for number, data in segments
    ]


def rpc_get_segment_by_address(store: TapeStore, params: Any) -> str:
    """Return one segment, by tape address and segment number, as base64."""
    text = _str_param(params, "tape_address")
    segment_number = _u64_param(params, "segment_number")
    address = _parse_pubkey(text)
    try:
        return _b64(store.read_segment_by_address(address, segment_number))
    except SegmentNotFoundForAddress as exc:
        raise _server_error(f"segment {exc.segment_number} not found") from None
    except StoreError as exc:
        raise _server_error(str(exc)) from None


_HANDLERS: dict[RpcMethod, Callable[[TapeStore, Any], Any]] = {
    RpcMethod.GET_HEALTH: rpc_get_health,
    RpcMethod.GET_TAPE_ADDRESS: rpc_get_tape_address,
    RpcMethod.GET_TAPE_NUMBER: rpc_get_tape_number,
    RpcMethod.GET_SEGMENT: rpc_get_segment,
    RpcMethod.GET_TAPE: rpc_get_tape,
    RpcMethod.GET_SEGMENT_BY_ADDRESS: rpc_get_segment_by_address,
}


def handle_rpc(store: TapeStore, request: Any) -> dict:
    """Answer one decoded JSON-RPC request.

    Raises ValueError when the request lacks a string ``method`` or a ``params`` member.
    """
    if not isinstance(request, Mapping):
        raise _Rejected(422, "request must be a JSON object")
    method = request.get("method")
    if not isinstance(method, str):
        raise _Rejected(422, "missing or invalid field `method`")
    if "params" not in request:
        raise _Rejected(422, "missing field `params`")
    request_id = request.get("id")
    params = request["params"]

    try:
        rpc_method = RpcMethod.parse(method)
    except RpcError as err:
        return make_response(request_id, error=err)

    handler = _HANDLERS[rpc_method]
    try:
        result = record_metrics(rpc_method, lambda: handler(store, params))
    except RpcError as err:
        return make_response(request_id, error=err)
    return make_response(request_id, result)


def _is_json_content_type(value: str | None) -> bool:
    if not value:
        return False
    essence = value.split(";", 1)[0].strip().lower()
    return essence == "application/json" or (
        essence.startswith("application/") and essence.endswith("+json")
    )


class _RpcServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], store: TapeStore) -> None:
        self.store = store
        super().__init__(address, _RpcHandler)


class _RpcHandler(BaseHTTPRequestHandler):
    server: _RpcServer

    def _send(self, status: int, body: bytes, content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("content-type", content_type)
        self.send_header("content-length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _path(self) -> str:
        return self.path.split("?", 1)[0]

    def do_POST(self) -> None:  # noqa: N802
        if self._path() != API_PATH:
            self._send(404, b"")
            return
        length = int(self.headers.get("content-length") or 0)
        raw = self.rfile.read(length) if length > 0 else b""
        if not _is_json_content_type(self.headers.get("content-type")):
            self._send(
                415,
                b"Expected request with `Content-Type: application/json`",
                "text/plain; charset=utf-8",
            )
            return
        try:
            request = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            message = f"Failed to parse the request body as JSON: {exc}"
            self._send(400, message.encode("utf-8"), "text/plain; charset=utf-8")
            return
        try:
            response = handle_rpc(self.server.store, request)
        except _Rejected as exc:
            message = f"Failed to deserialize the JSON body into the target type: {exc}"
            self._send(exc.status, message.encode("utf-8"), "text/plain; charset=utf-8")
            return
        body = json.dumps(response, separators=(",", ":")).encode("utf-8")
        self._send(200, body, "application/json")

    def _not_post(self) -> None:
        if self._path() == API_PATH:
            self.send_response(405)
            self.send_header("allow", "POST")
            self.send_header("content-length", "0")
            self.end_headers()
        else:
            self._send(404, b"")

    do_GET = _not_post  # noqa: N815
    do_PUT = _not_post  # noqa: N815
    do_DELETE = _not_post  # noqa: N815
    do_PATCH = _not_post  # noqa: N815

    def log_message(self, format: str, *args: object) -> None:
        log.debug("web: " + format, *args)


def make_server(
    store: TapeStore, host: str = DEFAULT_HOST, port: int = 0
) -> ThreadingHTTPServer:
    """Bind an HTTP server answering JSON-RPC calls at /api; port 0 picks a free one."""
    return _RpcServer((host, port), store)


def web_loop(store: TapeStore, port: int) -> None:
    """Serve the store on localhost at ``port`` until interrupted."""
    run_metrics_server(Process.WEB)
    stop_refresh = run_refresh_store(store)
    server = make_server(store, DEFAULT_HOST, port)
    try:
        server.serve_forever()
    finally:
        stop_refresh.set()
        server.server_close()