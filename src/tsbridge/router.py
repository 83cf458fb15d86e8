"""Client-facing JSON-RPC routing.

Frames from the editor are classified into requests, notifications and
responses and dispatched through a closed table of supported methods.
Requests run as tasks addressed by their id; unsupported requests get
MethodNotFound and unsupported notifications are ignored.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from lsprotocol.converters import get_converter

from tsbridge.envelope import (
    Notification,
    Request,
    RequestId,
    Response,
    ResponseError,
    envelope_payload,
    internal_error,
    invalid_params,
    invalid_request,
    method_not_found,
    parse_envelope,
    request_cancelled,
    request_failed,
)
from tsbridge.exceptions import BridgeError, EnvelopeError
from tsbridge.framing import FrameDecoder, encode_frame
from tsbridge.json_types import JSONObject, JSONValue

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


class ClientMethod(str, Enum):
    INITIALIZE = "initialize"
    INITIALIZED = "initialized"
    SHUTDOWN = "shutdown"
    EXIT = "exit"
    DID_OPEN = "textDocument/didOpen"
    DID_CHANGE = "textDocument/didChange"
    DID_CLOSE = "textDocument/didClose"
    DID_SAVE = "textDocument/didSave"
    HOVER = "textDocument/hover"
    COMPLETION = "textDocument/completion"
    DEFINITION = "textDocument/definition"
    CODE_ACTION = "textDocument/codeAction"
    EXECUTE_COMMAND = "workspace/executeCommand"
    CANCEL_REQUEST = "$/cancelRequest"
    SET_TRACE = "$/setTrace"

    @classmethod
    def lookup(cls, method: str) -> "ClientMethod | None":
        try:
            return cls(method)
        except ValueError:
            return None


class ByteSink(Protocol):
    def write(self, data: bytes) -> Any: ...


class ByteSource(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class MessageWriter:
    """Frames outbound JSON-RPC messages onto a byte sink."""

    def __init__(self, stream: ByteSink) -> None:
        self._stream = stream

    def write(self, message: JSONObject) -> None:
        self._stream.write(encode_frame(message))
        flush = getattr(self._stream, "flush", None)
        if callable(flush):
            flush()

    async def drain(self) -> None:
        drain = getattr(self._stream, "drain", None)
        if drain is not None:
            await drain()

    def notify(self, method: str, params: JSONValue = None) -> None:
        self.write(envelope_payload(Notification(method=method, params=params)))

    def reply(self, request_id: RequestId | None, result: JSONValue) -> None:
        self.write(envelope_payload(Response(id=request_id, result=result)))

    def reply_error(self, request_id: RequestId | None, error: ResponseError) -> None:
        self.write(envelope_payload(Response(id=request_id, error=error)))


Handler = Callable[[Any], Awaitable[Any] | Any]
RequestGate = Callable[["ClientMethod | None", str], "ResponseError | None"]


@dataclass(frozen=True)
class Route:
    handler: Handler
    param_type: type | None = None


class MessageRouter:
    def __init__(self, writer: MessageWriter, *, gate: RequestGate | None = None) -> None:
        self.writer = writer
        self.gate = gate
        self._converter = get_converter()
        self._routes: dict[ClientMethod, Route] = {}
        self._in_flight: dict[RequestId, asyncio.Task[None]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def in_flight(self) -> list[RequestId]:
        return list(self._in_flight)

    def register(self, method: ClientMethod, handler: Handler, param_type: type | None = None) -> None:
        self._routes[method] = Route(handler=handler, param_type=param_type)

    def feature(self, method: ClientMethod, param_type: type | None = None) -> Callable[[Handler], Handler]:
        def _decorator(handler: Handler) -> Handler:
            self.register(method, handler, param_type)
            return handler

        return _decorator

    def close(self) -> None:
        self._closed = True

    def cancel(self, request_id: RequestId) -> bool:
        task = self._in_flight.get(request_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    # Outbound.

    def unstructure(self, value: Any) -> JSONValue:
        return self._converter.unstructure(value)

    def send_notification(self, method: str, params: Any = None) -> None:
        self.writer.notify(method, self.unstructure(params))

    # Inbound.

    async def serve(self, reader: ByteSource) -> None:
        decoder = FrameDecoder(source="client")
        while not self._closed:
            chunk = await reader.read(_READ_CHUNK)
            if not chunk:
                logger.info("client stream closed")
                break
            for payload in decoder.feed(chunk):
                await self.dispatch(payload)
                if self._closed:
                    break
        await self.join()

    async def join(self) -> None:
        tasks = list(self._in_flight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def dispatch(self, payload: JSONObject) -> None:
        try:
            envelope = parse_envelope(payload)
        except EnvelopeError as exc:
            logger.warning("invalid JSON-RPC message: %s", exc)
            if "id" in payload and payload.get("method") is not None:
                self.writer.reply_error(None, invalid_request(str(exc)))
            return
        if isinstance(envelope, Request):
            await self._dispatch_request(envelope)
        elif isinstance(envelope, Notification):
            await self._dispatch_notification(envelope)
        else:
            logger.debug("ignoring client response for id %r", envelope.id)

    async def _dispatch_request(self, request: Request) -> None:
        method = ClientMethod.lookup(request.method)
        if self.gate is not None:
            refusal = self.gate(method, request.method)
            if refusal is not None:
                self.writer.reply_error(request.id, refusal)
                return
        route = self._routes.get(method) if method is not None else None
        if route is None:
            self.writer.reply_error(request.id, method_not_found(request.method))
            return
        if request.id in self._in_flight:
            self.writer.reply_error(request.id, invalid_request(f"duplicate request id {request.id!r}"))
            return
        task = asyncio.create_task(self._run_request(request, route))
        self._in_flight[request.id] = task
        task.add_done_callback(lambda _done, request_id=request.id: self._in_flight.pop(request_id, None))
        # Let the handler run up to its first suspension so backend writes keep arrival order.
        await asyncio.sleep(0)

    async def _run_request(self, request: Request, route: Route) -> None:
        try:
            params = self._structure(route, request.params)
        except (BridgeError, TypeError, ValueError, KeyError) as exc:
            self.writer.reply_error(request.id, invalid_params(f"{request.method}: {exc}"))
            await self.writer.drain()
            return
        try:
            result = await self._call(route.handler, params)
        except asyncio.CancelledError:
            self.writer.reply_error(request.id, request_cancelled())
            raise
        except BridgeError as exc:
            logger.info("%s failed: %s", request.method, exc)
            self.writer.reply_error(request.id, request_failed(str(exc)))
        except Exception as exc:
            logger.exception("%s handler crashed", request.method)
            self.writer.reply_error(request.id, internal_error(f"{type(exc).__name__}: {exc}"))
        else:
            self.writer.reply(request.id, self.unstructure(result))
        await self.writer.drain()

    async def _dispatch_notification(self, notification: Notification) -> None:
        method = ClientMethod.lookup(notification.method)
        route = self._routes.get(method) if method is not None else None
        if route is None:
            logger.debug("ignoring notification %s", notification.method)
            return
        try:
            params = self._structure(route, notification.params)
            await self._call(route.handler, params)
        except (BridgeError, TypeError, ValueError, KeyError) as exc:
            logger.warning("%s notification rejected: %s", notification.method, exc)
        except Exception:
            logger.exception("%s notification handler crashed", notification.method)

    def _structure(self, route: Route, params: JSONValue) -> Any:
        if route.param_type is None:
            return params
        if params is None:
            raise ValueError("missing params")
        try:
            return self._converter.structure(params, route.param_type)
        except Exception as exc:
            # cattrs raises ExceptionGroup subclasses for nested field errors.
            raise ValueError(f"invalid params: {exc}") from exc

    @staticmethod
    async def _call(handler: Handler, params: Any) -> Any:
        result = handler(params)
        if asyncio.iscoroutine(result):
            result = await result
        return result
