"""Typed tsserver commands built on `BackendSupervisor.send`."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from lsprotocol import types as lsp

from tsbridge.commands import (
    CODE_FIXES_COMMAND,
    COMPLETIONS_COMMAND,
    DEFINITION_COMMAND,
    DIAGNOSTIC_EVENTS,
    GETERR_COMMAND,
    QUICKINFO_COMMAND,
    geterr_arguments,
)
from tsbridge.json_types import JSONObject, JSONValue
from tsbridge.supervisor import BackendSupervisor, OpenDocumentSnapshot
from tsbridge.translate import (
    error_codes,
    to_backend_location,
    to_backend_span,
    translate_code_fixes,
    translate_completions,
    translate_definitions,
    translate_diagnostics_event,
    translate_quickinfo,
    uri_to_path,
)

logger = logging.getLogger(__name__)

DiagnosticsListener = Callable[[str, str, list[lsp.Diagnostic]], None]


def _location_arguments(uri: str, position: lsp.Position) -> JSONObject:
    arguments: JSONObject = {"file": uri_to_path(uri)}
    arguments.update(to_backend_location(position))
    return arguments


class TsServerClient:
    def __init__(self, supervisor: BackendSupervisor, *, diagnostics_delay_ms: int = 0) -> None:
        self.supervisor = supervisor
        self.diagnostics_delay_ms = diagnostics_delay_ms
        self._diagnostics_listeners: list[DiagnosticsListener] = []

    def add_diagnostics_listener(self, listener: DiagnosticsListener) -> None:
        self._diagnostics_listeners.append(listener)

    def handle_event(self, event: str, body: JSONValue) -> None:
        """Entry point for raw tsserver events (wired as the supervisor's `on_event`)."""
        if event not in DIAGNOSTIC_EVENTS:
            logger.debug("ignoring tsserver event %s", event)
            return
        translated = translate_diagnostics_event(body)
        if translated is None:
            logger.warning("malformed %s event body", event)
            return
        uri, diagnostics = translated
        for listener in self._diagnostics_listeners:
            listener(uri, event, diagnostics)

    # Documents.

    def open_document(
        self,
        uri: str,
        text: str,
        *,
        language_id: str | None = None,
        version: int | None = None,
    ) -> None:
        self.supervisor.open_document(
            OpenDocumentSnapshot(uri=uri, text=text, language_id=language_id, version=version)
        )

    def change_document(self, uri: str, text: str, *, version: int | None = None) -> bool:
        return self.supervisor.change_document(uri, text, version)

    def close_document(self, uri: str) -> bool:
        return self.supervisor.close_document(uri)

    def request_diagnostics(self, uris: Iterable[str]) -> bool:
        files = [uri for uri in uris if uri in self.supervisor.documents]
        if not files:
            return False
        return self.supervisor.notify(
            GETERR_COMMAND, geterr_arguments(files, delay_ms=self.diagnostics_delay_ms)
        )

    # Language features.

    async def quick_info(self, uri: str, position: lsp.Position) -> lsp.Hover | None:
        body = await self.supervisor.send(QUICKINFO_COMMAND, _location_arguments(uri, position))
        return translate_quickinfo(body)

    async def completions(self, uri: str, position: lsp.Position) -> lsp.CompletionList:
        arguments = _location_arguments(uri, position)
        arguments["includeExternalModuleExports"] = False
        body = await self.supervisor.send(COMPLETIONS_COMMAND, arguments)
        return translate_completions(body)

    async def definition(self, uri: str, position: lsp.Position) -> list[lsp.Location]:
        body = await self.supervisor.send(DEFINITION_COMMAND, _location_arguments(uri, position))
        return translate_definitions(body)

    async def code_fixes(
        self,
        uri: str,
        range_: lsp.Range,
        diagnostics: Iterable[lsp.Diagnostic] = (),
    ) -> list[lsp.CodeAction]:
        attached = list(diagnostics)
        codes = error_codes(attached)
        if not codes:
            # getCodeFixes needs at least one error code to do anything.
            return []
        arguments: JSONObject = {"file": uri_to_path(uri), "errorCodes": codes}
        arguments.update(to_backend_span(range_))
        body = await self.supervisor.send(CODE_FIXES_COMMAND, arguments)
        return translate_code_fixes(body, attached)
