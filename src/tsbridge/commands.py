from __future__ import annotations

from enum import Enum
from pathlib import PurePath

from tsbridge.json_types import JSONObject
from tsbridge.translate import uri_to_path

# tsserver command names used by the bridge.
CONFIGURE_COMMAND = "configure"
OPEN_COMMAND = "open"
CHANGE_COMMAND = "change"
CLOSE_COMMAND = "close"
GETERR_COMMAND = "geterr"
QUICKINFO_COMMAND = "quickinfo"
COMPLETIONS_COMMAND = "completionInfo"
DEFINITION_COMMAND = "definition"
CODE_FIXES_COMMAND = "getCodeFixes"

# tsserver never answers these; they are written without a pending entry.
FIRE_AND_FORGET_COMMANDS: frozenset[str] = frozenset(
    {OPEN_COMMAND, CHANGE_COMMAND, CLOSE_COMMAND, GETERR_COMMAND}
)

DIAGNOSTIC_EVENTS: tuple[str, ...] = ("syntaxDiag", "semanticDiag", "suggestionDiag")

HOST_INFO = "tsbridge"


class TimeoutClass(str, Enum):
    """Deadline bucket for a backend command."""

    INTERACTIVE = "interactive"
    NAVIGATION = "navigation"
    PROJECT = "project"


COMMAND_TIMEOUT_CLASS: dict[str, TimeoutClass] = {
    QUICKINFO_COMMAND: TimeoutClass.INTERACTIVE,
    COMPLETIONS_COMMAND: TimeoutClass.INTERACTIVE,
    "completions": TimeoutClass.INTERACTIVE,
    DEFINITION_COMMAND: TimeoutClass.NAVIGATION,
    CODE_FIXES_COMMAND: TimeoutClass.PROJECT,
    CONFIGURE_COMMAND: TimeoutClass.PROJECT,
}


def timeout_class(command: str) -> TimeoutClass:
    return COMMAND_TIMEOUT_CLASS.get(command, TimeoutClass.PROJECT)


_SCRIPT_KIND_BY_LANGUAGE = {
    "typescript": "TS",
    "typescriptreact": "TSX",
    "javascript": "JS",
    "javascriptreact": "JSX",
}
_SCRIPT_KIND_BY_SUFFIX = {
    ".ts": "TS",
    ".mts": "TS",
    ".cts": "TS",
    ".tsx": "TSX",
    ".js": "JS",
    ".mjs": "JS",
    ".cjs": "JS",
    ".jsx": "JSX",
}


def script_kind(uri: str, language_id: str | None = None) -> str | None:
    if language_id and language_id in _SCRIPT_KIND_BY_LANGUAGE:
        return _SCRIPT_KIND_BY_LANGUAGE[language_id]
    return _SCRIPT_KIND_BY_SUFFIX.get(PurePath(uri_to_path(uri)).suffix.lower())


def configure_arguments(preferences: JSONObject | None = None) -> JSONObject:
    return {
        "hostInfo": HOST_INFO,
        "preferences": dict(preferences or {}),
    }


def open_arguments(
    uri: str,
    text: str,
    *,
    language_id: str | None = None,
    project_root: str | None = None,
) -> JSONObject:
    arguments: JSONObject = {"file": uri_to_path(uri), "fileContent": text}
    kind = script_kind(uri, language_id)
    if kind is not None:
        arguments["scriptKindName"] = kind
    if project_root:
        arguments["projectRootPath"] = project_root
    return arguments


def _text_end(text: str) -> tuple[int, int]:
    lines = text.split("\n")
    return len(lines), len(lines[-1]) + 1


def change_arguments(uri: str, previous_text: str, text: str) -> JSONObject:
    """Replace the whole previous document with `text`.

    tsserver only accepts range edits, so full-document sync is expressed as
    one edit spanning the previous contents (1-based, end exclusive).
    """
    end_line, end_offset = _text_end(previous_text)
    return {
        "file": uri_to_path(uri),
        "line": 1,
        "offset": 1,
        "endLine": end_line,
        "endOffset": end_offset,
        "insertString": text,
    }


def close_arguments(uri: str) -> JSONObject:
    return {"file": uri_to_path(uri)}


def geterr_arguments(uris: list[str], *, delay_ms: int = 0) -> JSONObject:
    return {"files": [uri_to_path(uri) for uri in uris], "delay": int(delay_ms)}
