import pytest

from tapenet.rpc_types import ErrorCode, RpcError, RpcMethod


@pytest.mark.parametrize(
    "name, method",
    [
        ("getHealth", RpcMethod.GET_HEALTH),
        ("getTapeAddress", RpcMethod.GET_TAPE_ADDRESS),
        ("getTapeNumber", RpcMethod.GET_TAPE_NUMBER),
        ("getSegment", RpcMethod.GET_SEGMENT),
        ("getTape", RpcMethod.GET_TAPE),
        ("getSegmentByAddress", RpcMethod.GET_SEGMENT_BY_ADDRESS),
    ],
)
def test_parse_known_methods(name, method):
    assert RpcMethod.parse(name) is method
    assert str(method) == name


def test_parse_roundtrip_all():
    for method in RpcMethod:
        assert RpcMethod.parse(method.value) is method


def test_parse_unknown_method():
    with pytest.raises(RpcError) as info:
        RpcMethod.parse("getNothing")
    assert info.value.code == -32601
    assert info.value.message == "method not found"


def test_parse_is_case_sensitive():
    with pytest.raises(RpcError) as info:
        RpcMethod.parse("gethealth")
    assert info.value.code == ErrorCode.METHOD_NOT_FOUND


@pytest.mark.parametrize(
    "code, expected",
    [
        (ErrorCode.PARSE_ERROR, -32700),
        (ErrorCode.INVALID_REQUEST, -32600),
        (ErrorCode.METHOD_NOT_FOUND, -32601),
        (ErrorCode.INVALID_PARAMS, -32602),
        (ErrorCode.INTERNAL_ERROR, -32603),
        (ErrorCode.SERVER_ERROR, -32000),
    ],
)
def test_error_codes_serialise(code, expected):
    err = RpcError(code, "failure")
    assert err.to_dict() == {"code": expected, "message": "failure"}


def test_rpc_error_to_dict():
    err = RpcError(ErrorCode.INVALID_PARAMS, "invalid or missing tape_number")
    assert err.to_dict() == {
        "code": -32602,
        "message": "invalid or missing tape_number",
    }
    assert type(err.to_dict()["code"]) is int


def test_rpc_error_equality():
    a = RpcError(ErrorCode.SERVER_ERROR, "tape not found")
    b = RpcError(-32000, "tape not found")
    assert a == b
    assert a != RpcError(-32000, "segment 1 not found")
    assert str(a) == "tape not found"