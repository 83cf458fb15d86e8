"""Lifecycle of the tsserver process.

The supervisor is an explicit state machine::

    STOPPED --start()--> STARTING --configure ok--> RUNNING
    RUNNING --unexpected exit--> RESTARTING --cool-down--> STARTING
    any --stop()--> STOPPED

Every spawn gets a new generation number and a fresh `RequestCorrelator`, so
the sequence-id space restarts with the process and output from a retired
generation is dropped before it can reach the new one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence

from tsbridge.commands import (
    CHANGE_COMMAND,
    CLOSE_COMMAND,
    CONFIGURE_COMMAND,
    FIRE_AND_FORGET_COMMANDS,
    OPEN_COMMAND,
    TimeoutClass,
    change_arguments,
    close_arguments,
    configure_arguments,
    open_arguments,
    timeout_class,
)
from tsbridge.correlator import RequestCorrelator
from tsbridge.exceptions import (
    BackendError,
    BackendSpawnFailure,
    BackendStartupError,
    BackendUnavailable,
)
from tsbridge.framing import FrameDecoder, encode_frame, encode_line
from tsbridge.invariants import never
from tsbridge.json_types import JSONObject, JSONValue

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_KILL_GRACE_SECONDS = 2.0

DEFAULT_TIMEOUTS: dict[TimeoutClass, float] = {
    TimeoutClass.INTERACTIVE: 5.0,
    TimeoutClass.NAVIGATION: 10.0,
    TimeoutClass.PROJECT: 30.0,
}


class SessionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"


class LifecycleEvent(str, Enum):
    RESTARTING = "restarting"
    RESTARTED = "restarted"
    FAILED = "failed"


@dataclass(frozen=True)
class RestartPolicy:
    cooldown_seconds: float = 2.0
    # None keeps restarting forever.
    max_restarts: int | None = None
    window_seconds: float = 60.0


@dataclass
class OpenDocumentSnapshot:
    uri: str
    text: str
    language_id: str | None = None
    version: int | None = None


class OpenDocumentStore:
    """Full text of every open document, in open order."""

    def __init__(self) -> None:
        self._documents: dict[str, OpenDocumentSnapshot] = {}

    def __contains__(self, uri: object) -> bool:
        return uri in self._documents

    def __len__(self) -> int:
        return len(self._documents)

    def get(self, uri: str) -> OpenDocumentSnapshot | None:
        return self._documents.get(uri)

    def open(self, snapshot: OpenDocumentSnapshot) -> None:
        self._documents.pop(snapshot.uri, None)
        self._documents[snapshot.uri] = snapshot

    def update(self, uri: str, text: str, version: int | None = None) -> OpenDocumentSnapshot | None:
        """Replace the text of an open document, returning the previous snapshot."""
        current = self._documents.get(uri)
        if current is None:
            return None
        previous = OpenDocumentSnapshot(
            uri=current.uri,
            text=current.text,
            language_id=current.language_id,
            version=current.version,
        )
        current.text = text
        current.version = version
        return previous

    def close(self, uri: str) -> OpenDocumentSnapshot | None:
        return self._documents.pop(uri, None)

    def uris(self) -> list[str]:
        return list(self._documents)

    def snapshots(self) -> list[OpenDocumentSnapshot]:
        return list(self._documents.values())


class BackendProcess(Protocol):
    pid: int
    returncode: int | None
    stdin: Any
    stdout: Any
    stderr: Any

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


ProcessFactory = Callable[..., Awaitable[BackendProcess]]
CommandResolver = Callable[[], Sequence[str]]
EventCallback = Callable[[str, JSONValue], None]
LifecycleCallback = Callable[[LifecycleEvent, str], None]


async def spawn_process(*command: str, cwd: str | None = None) -> BackendProcess:
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )


@dataclass
class BackendSession:
    process: BackendProcess
    generation: int
    correlator: RequestCorrelator
    retired: bool = False
    tasks: list[asyncio.Task[None]] = field(default_factory=list, repr=False)


class BackendSupervisor:
    def __init__(
        self,
        command_resolver: CommandResolver,
        *,
        cwd: str | None = None,
        timeouts: Mapping[TimeoutClass, float] | None = None,
        restart_policy: RestartPolicy | None = None,
        request_framing: str = "content-length",
        preferences: JSONObject | None = None,
        process_factory: ProcessFactory = spawn_process,
        on_event: EventCallback | None = None,
        on_lifecycle: LifecycleCallback | None = None,
    ) -> None:
        if request_framing not in {"content-length", "line"}:
            raise ValueError(f"unknown backend request framing {request_framing!r}")
        self._command_resolver = command_resolver
        self._cwd = cwd
        self._timeouts = dict(DEFAULT_TIMEOUTS)
        self._timeouts.update(timeouts or {})
        self._policy = restart_policy or RestartPolicy()
        self._encode = encode_frame if request_framing == "content-length" else encode_line
        self._preferences = dict(preferences or {})
        self._process_factory = process_factory
        self._on_event = on_event
        self._on_lifecycle = on_lifecycle
        self.documents = OpenDocumentStore()
        self._state = SessionState.STOPPED
        self._generation = 0
        self._session: BackendSession | None = None
        self._restart_task: asyncio.Task[None] | None = None
        # Set once the first start succeeds; only then do crashes auto-restart.
        self._auto_restart = False
        self._crash_times: deque[float] = deque()
        self._launch_idle = asyncio.Event()
        self._launch_idle.set()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def session(self) -> BackendSession | None:
        return self._session

    @property
    def running(self) -> bool:
        return self._state is SessionState.RUNNING

    def timeout_for(self, command: str) -> float:
        return self._timeouts[timeout_class(command)]

    # Lifecycle.

    async def start(self) -> None:
        if self._state is not SessionState.STOPPED:
            logger.debug("start() ignored; tsserver is %s", self._state.value)
            return
        self._crash_times.clear()
        self._state = SessionState.STARTING
        self._launch_idle.clear()
        try:
            await self._launch()
        except (BackendError, asyncio.CancelledError):
            if self._state is SessionState.STARTING:
                self._state = SessionState.STOPPED
            raise
        finally:
            self._launch_idle.set()
        self._auto_restart = True
        self._state = SessionState.RUNNING
        logger.info("tsserver running (generation %d)", self._generation)

    async def stop(self) -> None:
        self._auto_restart = False
        self._state = SessionState.STOPPED
        self._cancel_restart()
        session = self._session
        self._session = None
        if session is not None:
            self._retire(session, "tsserver stopped")
            await self._terminate(session)
        logger.info("tsserver stopped")

    async def restart(self) -> None:
        """Kill the current process and start a new one, replaying documents."""
        if self._state is SessionState.STARTING and self._restart_task is None:
            # The initial start decides what there is to restart.
            await self._launch_idle.wait()
        if self._state is SessionState.STOPPED:
            await self.start()
            return
        self._cancel_restart()
        session = self._session
        if session is not None:
            self._retire(session, "tsserver restart requested")
            await self._terminate(session)
        self._emit_lifecycle(LifecycleEvent.RESTARTING, "restart requested")
        await self._relaunch()

    def _superseded(self, generation: int) -> bool:
        return self._state is not SessionState.STARTING or self._generation != generation

    async def _launch(self) -> None:
        command = list(self._command_resolver())
        if not command:
            raise BackendSpawnFailure("empty tsserver command")
        self._generation += 1
        generation = self._generation
        logger.info("spawning tsserver (generation %d): %s", generation, " ".join(command))
        try:
            process = await self._process_factory(*command, cwd=self._cwd)
        except OSError as exc:
            raise BackendSpawnFailure(f"could not spawn {command[0]}: {exc}") from exc
        if self._superseded(generation):
            await self._kill(process)
            raise BackendUnavailable(f"tsserver generation {generation} superseded before it started")
        session = BackendSession(
            process=process,
            generation=generation,
            correlator=RequestCorrelator(
                lambda message: self._write(process, message),
                generation=generation,
            ),
        )
        self._session = session
        session.tasks = [
            asyncio.create_task(self._read_stdout(session)),
            asyncio.create_task(self._read_stderr(session)),
            asyncio.create_task(self._watch_exit(session)),
        ]
        try:
            await session.correlator.request(
                CONFIGURE_COMMAND,
                configure_arguments(self._preferences),
                timeout=self.timeout_for(CONFIGURE_COMMAND),
            )
        except BackendError as exc:
            await self._discard(session, "tsserver handshake failed")
            raise BackendStartupError(f"tsserver rejected configuration: {exc}") from exc
        except asyncio.CancelledError:
            await self._discard(session, "tsserver launch cancelled")
            raise
        if self._superseded(generation) or session.retired:
            await self._discard(session, "tsserver launch superseded")
            raise BackendUnavailable(f"tsserver generation {generation} superseded during handshake")
        self._replay(session)

    async def _discard(self, session: BackendSession, reason: str) -> None:
        if self._session is session:
            self._session = None
        if not session.retired:
            self._retire(session, reason)
        await self._terminate(session)

    async def _relaunch(self) -> None:
        self._state = SessionState.STARTING
        try:
            await self._launch()
        except BackendSpawnFailure as exc:
            logger.error("tsserver restart failed: %s", exc)
            self._state = SessionState.STOPPED
            self._auto_restart = False
            self._emit_lifecycle(LifecycleEvent.FAILED, str(exc))
            return
        except BackendUnavailable as exc:
            logger.info("%s", exc)
            return
        except BackendError as exc:
            if self._state is SessionState.STARTING:
                self._crash(f"restart handshake failed: {exc}")
            return
        self._auto_restart = True
        self._state = SessionState.RUNNING
        logger.info("tsserver recovered (generation %d)", self._generation)
        self._emit_lifecycle(LifecycleEvent.RESTARTED, f"generation {self._generation}")

    async def _restart_after_cooldown(self) -> None:
        try:
            await asyncio.sleep(self._policy.cooldown_seconds)
            if self._state is not SessionState.RESTARTING:
                return
            await self._relaunch()
        finally:
            # Stays referenced through the relaunch so stop() can cancel it.
            if self._restart_task is asyncio.current_task():
                self._restart_task = None

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _replay(self, session: BackendSession) -> None:
        snapshots = self.documents.snapshots()
        for snapshot in snapshots:
            session.correlator.notify(
                OPEN_COMMAND,
                open_arguments(
                    snapshot.uri,
                    snapshot.text,
                    language_id=snapshot.language_id,
                    project_root=self._cwd,
                ),
            )
        if snapshots:
            logger.info("replayed %d open documents into generation %d", len(snapshots), session.generation)

    def _retire(self, session: BackendSession, reason: str) -> int:
        session.retired = True
        return session.correlator.cancel_all(BackendUnavailable(reason))

    async def _kill(self, process: BackendProcess) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        try:
            await asyncio.wait_for(process.wait(), _KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("tsserver pid %s did not exit after kill", process.pid)

    async def _terminate(self, session: BackendSession) -> None:
        await self._kill(session.process)
        for task in session.tasks:
            if task is not asyncio.current_task():
                task.cancel()

    def _on_exit(self, session: BackendSession, returncode: int | None) -> None:
        if session is not self._session or session.retired:
            return
        self._crash(f"tsserver exited with code {returncode}")

    def _crash(self, reason: str) -> None:
        session = self._session
        rejected = self._retire(session, reason) if session is not None else 0
        if not self._auto_restart:
            # During the initial start the rejected handshake is reported by start().
            if self._state is not SessionState.STARTING:
                self._state = SessionState.STOPPED
            return
        self._state = SessionState.RESTARTING
        logger.warning("%s; rejected %d pending requests", reason, rejected)
        if self._restart_budget_exhausted():
            self._state = SessionState.STOPPED
            self._auto_restart = False
            self._emit_lifecycle(
                LifecycleEvent.FAILED,
                f"{reason}; giving up after {self._policy.max_restarts} restarts",
            )
            return
        self._emit_lifecycle(LifecycleEvent.RESTARTING, reason)
        self._restart_task = asyncio.get_running_loop().create_task(self._restart_after_cooldown())

    def _restart_budget_exhausted(self) -> bool:
        if self._policy.max_restarts is None:
            return False
        now = asyncio.get_running_loop().time()
        self._crash_times.append(now)
        while self._crash_times and now - self._crash_times[0] > self._policy.window_seconds:
            self._crash_times.popleft()
        return len(self._crash_times) > self._policy.max_restarts

    def _emit_lifecycle(self, event: LifecycleEvent, detail: str) -> None:
        if self._on_lifecycle is None:
            return
        try:
            self._on_lifecycle(event, detail)
        except Exception:
            logger.exception("lifecycle listener failed for %s", event.value)

    # Backend I/O.

    def _write(self, process: BackendProcess, message: JSONObject) -> None:
        try:
            process.stdin.write(self._encode(message))
        except (OSError, RuntimeError) as exc:
            raise BackendUnavailable(f"cannot write to tsserver: {exc}") from exc

    async def _read_stdout(self, session: BackendSession) -> None:
        decoder = FrameDecoder(line_fallback=True, source=f"tsserver[{session.generation}]")
        stream = session.process.stdout
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            for message in decoder.feed(chunk):
                if session.retired or session is not self._session:
                    logger.debug("dropping output from retired generation %d", session.generation)
                    return
                self._dispatch(session, message)

    async def _read_stderr(self, session: BackendSession) -> None:
        stream = session.process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.warning("tsserver[%d] stderr: %s", session.generation, text)

    async def _watch_exit(self, session: BackendSession) -> None:
        returncode = await session.process.wait()
        self._on_exit(session, returncode)

    def _dispatch(self, session: BackendSession, message: JSONObject) -> None:
        kind = message.get("type")
        if kind == "response":
            session.correlator.resolve(message)
        elif kind == "event":
            name = message.get("event")
            if not isinstance(name, str) or self._on_event is None:
                return
            try:
                self._on_event(name, message.get("body"))
            except Exception:
                logger.exception("tsserver event handler failed for %s", name)
        else:
            logger.debug("ignoring tsserver message of type %r", kind)

    # Requests.

    async def send(
        self,
        command: str,
        arguments: JSONValue = None,
        *,
        timeout: float | None = None,
    ) -> JSONValue:
        session = self._session
        if self._state is not SessionState.RUNNING or session is None or session.retired:
            raise BackendUnavailable(f"tsserver is {self._state.value}")
        return await session.correlator.send(
            command,
            arguments,
            timeout=timeout if timeout is not None else self.timeout_for(command),
        )

    def notify(self, command: str, arguments: JSONValue = None) -> bool:
        if command not in FIRE_AND_FORGET_COMMANDS:
            never("tsserver command expects a response", command=command)
        session = self._session
        if self._state is not SessionState.RUNNING or session is None or session.retired:
            logger.debug("not sending %s; tsserver is %s", command, self._state.value)
            return False
        session.correlator.notify(command, arguments)
        return True

    # Documents.

    def open_document(self, snapshot: OpenDocumentSnapshot) -> None:
        self.documents.open(snapshot)
        self.notify(
            OPEN_COMMAND,
            open_arguments(
                snapshot.uri,
                snapshot.text,
                language_id=snapshot.language_id,
                project_root=self._cwd,
            ),
        )

    def change_document(self, uri: str, text: str, version: int | None = None) -> bool:
        previous = self.documents.update(uri, text, version)
        if previous is None:
            logger.warning("change for document that is not open: %s", uri)
            return False
        self.notify(CHANGE_COMMAND, change_arguments(uri, previous.text, text))
        return True

    def close_document(self, uri: str) -> bool:
        if self.documents.close(uri) is None:
            return False
        self.notify(CLOSE_COMMAND, close_arguments(uri))
        return True
