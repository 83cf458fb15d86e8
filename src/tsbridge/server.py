"""LSP server wiring: client methods, tsserver events and lifecycle messages."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Mapping, Sequence

from lsprotocol import types as lsp

from tsbridge import __version__
from tsbridge.backend import TsServerClient
from tsbridge.commands import DIAGNOSTIC_EVENTS
from tsbridge.config import backend_timeouts, load_settings, restart_policy
from tsbridge.discovery import backend_command
from tsbridge.envelope import ResponseError, invalid_request, server_not_initialized
from tsbridge.exceptions import BackendError, BackendSpawnFailure, BridgeError
from tsbridge.invariants import require_not_none
from tsbridge.json_types import JSONValue
from tsbridge.router import ByteSource, ClientMethod, MessageRouter, MessageWriter
from tsbridge.schema import BridgeSettings
from tsbridge.supervisor import (
    BackendSupervisor,
    LifecycleEvent,
    ProcessFactory,
    spawn_process,
)
from tsbridge.translate import uri_to_path

logger = logging.getLogger(__name__)

SERVER_NAME = "tsbridge"
RESTART_SERVER_COMMAND = "tsbridge.restartServer"
COMPLETION_TRIGGER_CHARACTERS = [".", '"', "'", "/", "@", "<", "#"]
PUBLISH_DIAGNOSTICS = "textDocument/publishDiagnostics"
SHOW_MESSAGE = "window/showMessage"

CommandBuilder = Callable[[Path, BridgeSettings], Sequence[str]]
LifecycleListener = Callable[[LifecycleEvent, str], None]

_LIFECYCLE_MESSAGES: dict[LifecycleEvent, tuple[lsp.MessageType, str]] = {
    LifecycleEvent.RESTARTING: (lsp.MessageType.Warning, "TypeScript server crashed, restarting"),
    LifecycleEvent.RESTARTED: (lsp.MessageType.Info, "TypeScript server recovered"),
    LifecycleEvent.FAILED: (lsp.MessageType.Error, "TypeScript server stopped"),
}


def default_command_builder(root: Path, settings: BridgeSettings) -> list[str]:
    return backend_command(
        root,
        tsserver_path=settings.backend.tsserver_path,
        node_path=settings.backend.node_path,
        args=settings.backend.args,
    )


def server_capabilities() -> lsp.ServerCapabilities:
    return lsp.ServerCapabilities(
        text_document_sync=lsp.TextDocumentSyncOptions(
            open_close=True,
            change=lsp.TextDocumentSyncKind.Full,
            save=lsp.SaveOptions(include_text=False),
        ),
        hover_provider=True,
        completion_provider=lsp.CompletionOptions(
            trigger_characters=list(COMPLETION_TRIGGER_CHARACTERS),
        ),
        definition_provider=True,
        code_action_provider=lsp.CodeActionOptions(
            code_action_kinds=[lsp.CodeActionKind.QuickFix],
        ),
        execute_command_provider=lsp.ExecuteCommandOptions(
            commands=[RESTART_SERVER_COMMAND],
        ),
    )


class BridgeServer:
    def __init__(
        self,
        writer: MessageWriter,
        *,
        root: Path | None = None,
        config_path: Path | None = None,
        cli_overrides: Mapping[str, object] | None = None,
        environ: Mapping[str, str] | None = None,
        process_factory: ProcessFactory = spawn_process,
        command_builder: CommandBuilder = default_command_builder,
    ) -> None:
        self.router = MessageRouter(writer, gate=self._gate)
        self.root = root
        self.config_path = config_path
        self.settings: BridgeSettings | None = None
        self.supervisor: BackendSupervisor | None = None
        self.client: TsServerClient | None = None
        self._cli_overrides = dict(cli_overrides or {})
        self._environ = environ
        self._process_factory = process_factory
        self._command_builder = command_builder
        self._initialized = False
        self._shutdown_requested = False
        self._start_task: asyncio.Task[None] | None = None
        self._lifecycle_listeners: list[LifecycleListener] = []
        # uri -> event -> diagnostics; published as the union over events.
        self._diagnostics: dict[str, dict[str, list[lsp.Diagnostic]]] = {}
        # tsserver reports file paths; map them back to the uri the client used.
        self._uri_by_path: dict[str, str] = {}
        self._register()

    @property
    def exit_code(self) -> int:
        return 0 if self._shutdown_requested else 1

    def add_lifecycle_listener(self, listener: LifecycleListener) -> None:
        self._lifecycle_listeners.append(listener)

    async def serve(self, reader: ByteSource) -> int:
        try:
            await self.router.serve(reader)
        finally:
            await self._stop_backend()
        return self.exit_code

    def _gate(self, method: ClientMethod | None, name: str) -> ResponseError | None:
        if self._shutdown_requested:
            return invalid_request(f"{name} received after shutdown")
        if method is ClientMethod.INITIALIZE:
            if self._initialized:
                return invalid_request("initialize may only be sent once")
            return None
        if not self._initialized:
            return server_not_initialized()
        return None

    def _register(self) -> None:
        routes = (
            (ClientMethod.INITIALIZE, self.initialize, lsp.InitializeParams),
            (ClientMethod.INITIALIZED, self.initialized, None),
            (ClientMethod.SHUTDOWN, self.shutdown, None),
            (ClientMethod.EXIT, self.exit, None),
            (ClientMethod.DID_OPEN, self.did_open, lsp.DidOpenTextDocumentParams),
            (ClientMethod.DID_CHANGE, self.did_change, lsp.DidChangeTextDocumentParams),
            (ClientMethod.DID_CLOSE, self.did_close, lsp.DidCloseTextDocumentParams),
            (ClientMethod.DID_SAVE, self.did_save, lsp.DidSaveTextDocumentParams),
            (ClientMethod.HOVER, self.hover, lsp.HoverParams),
            (ClientMethod.COMPLETION, self.completion, lsp.CompletionParams),
            (ClientMethod.DEFINITION, self.definition, lsp.DefinitionParams),
            (ClientMethod.CODE_ACTION, self.code_action, lsp.CodeActionParams),
            (ClientMethod.EXECUTE_COMMAND, self.execute_command, lsp.ExecuteCommandParams),
            (ClientMethod.CANCEL_REQUEST, self.cancel_request, lsp.CancelParams),
            (ClientMethod.SET_TRACE, self.set_trace, None),
        )
        for method, handler, param_type in routes:
            self.router.register(method, handler, param_type)

    # Lifecycle.

    def _resolve_root(self, params: lsp.InitializeParams) -> Path:
        if params.root_uri:
            return Path(uri_to_path(params.root_uri))
        if params.root_path:
            return Path(params.root_path)
        if self.root is not None:
            return self.root
        return Path.cwd()

    def initialize(self, params: lsp.InitializeParams) -> dict[str, JSONValue]:
        root = self._resolve_root(params)
        options = params.initialization_options
        settings = load_settings(
            root,
            self.config_path,
            initialization_options=options if isinstance(options, dict) else None,
            cli_overrides=self._cli_overrides,
            environ=self._environ,
        )
        self.root = root
        self.settings = settings
        self.supervisor = BackendSupervisor(
            lambda: self._command_builder(root, settings),
            cwd=str(root),
            timeouts=backend_timeouts(settings),
            restart_policy=restart_policy(settings),
            request_framing=settings.backend.request_framing,
            process_factory=self._process_factory,
            on_event=self._on_backend_event,
            on_lifecycle=self._on_lifecycle,
        )
        self.client = TsServerClient(self.supervisor, diagnostics_delay_ms=settings.diagnostics.delay_ms)
        self.client.add_diagnostics_listener(self._on_diagnostics)
        self._initialized = True
        logger.info("initialized for workspace %s", root)
        return {
            "capabilities": self.router.unstructure(server_capabilities()),
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        }

    def initialized(self, _params: JSONValue) -> None:
        if self.supervisor is None or self._start_task is not None:
            return
        self._start_task = asyncio.create_task(self._start_backend())

    async def _start_backend(self) -> None:
        supervisor = self.supervisor
        if supervisor is None:
            return
        try:
            await supervisor.start()
        except BackendSpawnFailure as exc:
            logger.error("cannot start tsserver: %s", exc)
            self._show_message(lsp.MessageType.Error, f"Cannot start TypeScript server: {exc}")
            return
        except BackendError as exc:
            logger.error("tsserver failed to start: %s", exc)
            self._show_message(lsp.MessageType.Error, f"TypeScript server failed to start: {exc}")
            return
        self._request_diagnostics(supervisor.documents.uris())

    async def _backend_ready(self) -> TsServerClient:
        if self.client is None:
            raise BridgeError("server not initialized")
        task = self._start_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        return self.client

    async def shutdown(self, _params: JSONValue) -> None:
        self._shutdown_requested = True
        await self._stop_backend()
        logger.info("shutdown requested")

    def exit(self, _params: JSONValue) -> None:
        logger.info("exit (code %d)", self.exit_code)
        self.router.close()

    async def _stop_backend(self) -> None:
        task = self._start_task
        if task is not None and not task.done():
            task.cancel()
        if self.supervisor is not None:
            await self.supervisor.stop()

    # Documents.

    def did_open(self, params: lsp.DidOpenTextDocumentParams) -> None:
        if self.client is None:
            return
        document = params.text_document
        self._uri_by_path[uri_to_path(document.uri)] = document.uri
        self.client.open_document(
            document.uri,
            document.text,
            language_id=document.language_id,
            version=document.version,
        )
        self._request_diagnostics([document.uri])

    def did_change(self, params: lsp.DidChangeTextDocumentParams) -> None:
        if self.client is None:
            return
        uri = params.text_document.uri
        whole = [change for change in params.content_changes if getattr(change, "range", None) is None]
        if not whole:
            logger.warning("ignoring incremental change for %s; only full sync is supported", uri)
            return
        if self.client.change_document(uri, whole[-1].text, version=params.text_document.version):
            self._request_diagnostics([uri])

    def did_close(self, params: lsp.DidCloseTextDocumentParams) -> None:
        if self.client is None:
            return
        uri = params.text_document.uri
        self.client.close_document(uri)
        self._uri_by_path.pop(uri_to_path(uri), None)
        self._diagnostics.pop(uri, None)
        self.router.send_notification(
            PUBLISH_DIAGNOSTICS,
            lsp.PublishDiagnosticsParams(uri=uri, diagnostics=[]),
        )

    def did_save(self, params: lsp.DidSaveTextDocumentParams) -> None:
        self._request_diagnostics([params.text_document.uri])

    def _request_diagnostics(self, uris: Sequence[str]) -> None:
        if self.client is None or self.settings is None or not self.settings.diagnostics.enabled:
            return
        if uris:
            self.client.request_diagnostics(uris)

    # Language features.

    async def hover(self, params: lsp.HoverParams) -> lsp.Hover | None:
        client = await self._backend_ready()
        return await client.quick_info(params.text_document.uri, params.position)

    async def completion(self, params: lsp.CompletionParams) -> lsp.CompletionList:
        client = await self._backend_ready()
        return await client.completions(params.text_document.uri, params.position)

    async def definition(self, params: lsp.DefinitionParams) -> list[lsp.Location]:
        client = await self._backend_ready()
        return await client.definition(params.text_document.uri, params.position)

    async def code_action(self, params: lsp.CodeActionParams) -> list[lsp.CodeAction]:
        only = [str(getattr(kind, "value", kind)) for kind in params.context.only or []]
        if only and not any(kind.startswith(lsp.CodeActionKind.QuickFix.value) for kind in only):
            return []
        client = await self._backend_ready()
        return await client.code_fixes(
            params.text_document.uri,
            params.range,
            params.context.diagnostics,
        )

    async def execute_command(self, params: lsp.ExecuteCommandParams) -> None:
        if params.command != RESTART_SERVER_COMMAND:
            raise BridgeError(f"unknown command {params.command}")
        await self._backend_ready()
        supervisor = require_not_none(self.supervisor, reason="restart before initialize")
        await supervisor.restart()

    def cancel_request(self, params: lsp.CancelParams) -> None:
        if not self.router.cancel(params.id):
            logger.debug("cancel for unknown or finished request %r", params.id)

    def set_trace(self, params: JSONValue) -> None:
        logger.debug("$/setTrace %r", params)

    # Backend callbacks.

    def _on_backend_event(self, event: str, body: JSONValue) -> None:
        if self.client is not None:
            self.client.handle_event(event, body)

    def _on_diagnostics(self, uri: str, event: str, diagnostics: list[lsp.Diagnostic]) -> None:
        client_uri = self._uri_by_path.get(uri_to_path(uri), uri)
        if self.supervisor is None or client_uri not in self.supervisor.documents:
            logger.debug("dropping diagnostics for closed document %s", client_uri)
            return
        by_event = self._diagnostics.setdefault(client_uri, {})
        by_event[event] = diagnostics
        merged = [item for name in DIAGNOSTIC_EVENTS for item in by_event.get(name, [])]
        snapshot = self.supervisor.documents.get(client_uri)
        self.router.send_notification(
            PUBLISH_DIAGNOSTICS,
            lsp.PublishDiagnosticsParams(
                uri=client_uri,
                diagnostics=merged,
                version=snapshot.version if snapshot is not None else None,
            ),
        )

    def _on_lifecycle(self, event: LifecycleEvent, detail: str) -> None:
        message_type, text = _LIFECYCLE_MESSAGES[event]
        self._show_message(message_type, f"{text} ({detail})")
        if event is LifecycleEvent.RESTARTED and self.supervisor is not None:
            self._request_diagnostics(self.supervisor.documents.uris())
        for listener in self._lifecycle_listeners:
            try:
                listener(event, detail)
            except Exception:
                logger.exception("lifecycle listener failed for %s", event.value)

    def _show_message(self, message_type: lsp.MessageType, message: str) -> None:
        self.router.send_notification(
            SHOW_MESSAGE,
            lsp.ShowMessageParams(type=message_type, message=message),
        )
