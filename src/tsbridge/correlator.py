"""Sequence-id correlation between tsserver requests and responses."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from tsbridge.exceptions import BackendCommandError, BackendRequestTimeout, BackendError
from tsbridge.invariants import never
from tsbridge.json_types import JSONObject, JSONValue

logger = logging.getLogger(__name__)

BackendWriter = Callable[[JSONObject], None]


@dataclass
class PendingBackendRequest:
    seq: int
    command: str
    created_at: float
    deadline: float
    future: asyncio.Future[JSONValue]
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class RequestCorrelator:
    """Pending-request table for one backend generation.

    Sequence ids start at 1 and strictly increase. Responses are matched on
    `request_seq` only; tsserver may answer out of order.
    """

    def __init__(
        self,
        write: BackendWriter,
        *,
        generation: int = 0,
        loop: asyncio.AbstractEventLoop | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._write = write
        self.generation = generation
        self._loop = loop
        self._clock = clock
        self._last_seq = 0
        self._pending: dict[int, PendingBackendRequest] = {}

    @property
    def last_seq(self) -> int:
        return self._last_seq

    def __len__(self) -> int:
        return len(self._pending)

    def _next_seq(self) -> int:
        self._last_seq += 1
        return self._last_seq

    def _emit(self, seq: int, command: str, arguments: JSONValue) -> None:
        request: JSONObject = {"seq": seq, "type": "request", "command": command}
        if arguments is not None:
            request["arguments"] = arguments
        self._write(request)

    def notify(self, command: str, arguments: JSONValue = None) -> int:
        seq = self._next_seq()
        self._emit(seq, command, arguments)
        return seq

    def send(
        self,
        command: str,
        arguments: JSONValue = None,
        *,
        timeout: float,
    ) -> asyncio.Future[JSONValue]:
        if timeout <= 0:
            never("invalid backend request timeout", command=command, timeout=timeout)
        loop = self._loop or asyncio.get_running_loop()
        seq = self._next_seq()
        now = self._clock()
        future: asyncio.Future[JSONValue] = loop.create_future()
        entry = PendingBackendRequest(
            seq=seq,
            command=command,
            created_at=now,
            deadline=now + timeout,
            future=future,
        )
        self._pending[seq] = entry
        try:
            self._emit(seq, command, arguments)
        except Exception:
            del self._pending[seq]
            raise
        entry.timer = loop.call_later(timeout, self._expire, seq, timeout)
        future.add_done_callback(lambda _done, seq=seq: self._forget(seq, entry))
        return future

    async def request(self, command: str, arguments: JSONValue = None, *, timeout: float) -> JSONValue:
        return await self.send(command, arguments, timeout=timeout)

    def _forget(self, seq: int, entry: PendingBackendRequest) -> None:
        if self._pending.get(seq) is entry:
            del self._pending[seq]
        if entry.timer is not None:
            entry.timer.cancel()

    def _expire(self, seq: int, timeout: float) -> None:
        entry = self._pending.pop(seq, None)
        if entry is None or entry.future.done():
            return
        logger.warning(
            "tsserver request %d (%s) timed out after %.3fs",
            seq,
            entry.command,
            self._clock() - entry.created_at,
        )
        entry.future.set_exception(BackendRequestTimeout(entry.command, seq, timeout))

    def resolve(self, message: JSONObject) -> bool:
        seq = message.get("request_seq")
        if not isinstance(seq, int) or isinstance(seq, bool):
            logger.debug("tsserver response without request_seq: %r", message)
            return False
        entry = self._pending.pop(seq, None)
        if entry is None:
            logger.debug("dropping tsserver response for unknown seq %d", seq)
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return False
        if message.get("success", False):
            entry.future.set_result(message.get("body"))
        else:
            entry.future.set_exception(
                BackendCommandError(entry.command, str(message.get("message", "unknown error")))
            )
        return True

    def cancel_all(self, error: BackendError) -> int:
        """Reject every pending request with `error` and clear the table."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)
        return len(entries)
