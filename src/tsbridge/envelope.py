"""JSON-RPC 2.0 envelopes exchanged with the editor."""

from __future__ import annotations

from dataclasses import dataclass

from lsprotocol.types import ErrorCodes, LSPErrorCodes

from tsbridge.exceptions import EnvelopeError
from tsbridge.json_types import JSONObject, JSONValue

JSONRPC_VERSION = "2.0"

RequestId = int | str


@dataclass(frozen=True)
class ResponseError:
    code: int
    message: str
    data: JSONValue = None

    @classmethod
    def from_payload(cls, payload: JSONValue) -> "ResponseError":
        if not isinstance(payload, dict):
            raise EnvelopeError("response error must be an object")
        code = payload.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            raise EnvelopeError("response error code must be an integer")
        return cls(code=code, message=str(payload.get("message", "")), data=payload.get("data"))

    def as_payload(self) -> JSONObject:
        payload: JSONObject = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


@dataclass(frozen=True)
class Request:
    id: RequestId
    method: str
    params: JSONValue = None


@dataclass(frozen=True)
class Notification:
    method: str
    params: JSONValue = None


@dataclass(frozen=True)
class Response:
    id: RequestId | None
    result: JSONValue = None
    error: ResponseError | None = None


Envelope = Request | Notification | Response


def method_not_found(method: str) -> ResponseError:
    return ResponseError(int(ErrorCodes.MethodNotFound), f"Unhandled method {method}")


def invalid_params(message: str) -> ResponseError:
    return ResponseError(int(ErrorCodes.InvalidParams), message)


def invalid_request(message: str) -> ResponseError:
    return ResponseError(int(ErrorCodes.InvalidRequest), message)


def internal_error(message: str) -> ResponseError:
    return ResponseError(int(ErrorCodes.InternalError), message)


def server_not_initialized() -> ResponseError:
    return ResponseError(int(ErrorCodes.ServerNotInitialized), "Server not initialized")


def request_failed(message: str) -> ResponseError:
    return ResponseError(int(LSPErrorCodes.RequestFailed), message)


def request_cancelled() -> ResponseError:
    return ResponseError(int(LSPErrorCodes.RequestCancelled), "Request cancelled")


def _request_id(value: JSONValue) -> RequestId:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise EnvelopeError(f"invalid request id {value!r}")
    return value


def parse_envelope(payload: JSONObject) -> Envelope:
    method = payload.get("method")
    if method is not None:
        if not isinstance(method, str):
            raise EnvelopeError("method must be a string")
        params = payload.get("params")
        if "id" in payload:
            return Request(id=_request_id(payload["id"]), method=method, params=params)
        return Notification(method=method, params=params)
    has_result = "result" in payload
    has_error = "error" in payload and payload["error"] is not None
    if has_result == has_error:
        raise EnvelopeError("message has no method and not exactly one of result/error")
    if "id" not in payload:
        raise EnvelopeError("response is missing an id")
    raw_id = payload["id"]
    response_id = None if raw_id is None else _request_id(raw_id)
    if has_error:
        return Response(id=response_id, error=ResponseError.from_payload(payload["error"]))
    return Response(id=response_id, result=payload["result"])


def envelope_payload(envelope: Envelope) -> JSONObject:
    payload: JSONObject = {"jsonrpc": JSONRPC_VERSION}
    if isinstance(envelope, Request):
        payload["id"] = envelope.id
        payload["method"] = envelope.method
        if envelope.params is not None:
            payload["params"] = envelope.params
    elif isinstance(envelope, Notification):
        payload["method"] = envelope.method
        if envelope.params is not None:
            payload["params"] = envelope.params
    else:
        payload["id"] = envelope.id
        if envelope.error is not None:
            payload["error"] = envelope.error.as_payload()
        else:
            payload["result"] = envelope.result
    return payload
