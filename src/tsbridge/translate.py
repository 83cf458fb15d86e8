"""Translation between tsserver conventions and LSP types.

tsserver positions are 1-based ``{line, offset}`` pairs and documents are
filesystem paths; LSP positions are 0-based ``{line, character}`` pairs and
documents are URIs. Every function here is pure and never raises on malformed
backend data: bad coordinates clamp, unknown kinds fall back to the most
generic value, so one broken field cannot sink a whole response.
"""

from __future__ import annotations

import re
from typing import Iterable, Mapping
from urllib.parse import quote, unquote, urlparse

from lsprotocol import types as lsp

from tsbridge.json_types import JSONObject, JSONValue

DIAGNOSTIC_SOURCE = "tsserver"

_WINDOWS_DRIVE_RE = re.compile(r"^/?[A-Za-z]:[\\/]")

SEVERITY_BY_CATEGORY: dict[str, lsp.DiagnosticSeverity] = {
    "error": lsp.DiagnosticSeverity.Error,
    "warning": lsp.DiagnosticSeverity.Warning,
    "suggestion": lsp.DiagnosticSeverity.Information,
    "message": lsp.DiagnosticSeverity.Hint,
}
UNKNOWN_CATEGORY_SEVERITY = lsp.DiagnosticSeverity.Information

# Keys are tsserver ScriptElementKind strings.
COMPLETION_KIND_BY_ELEMENT_KIND: dict[str, lsp.CompletionItemKind] = {
    "keyword": lsp.CompletionItemKind.Keyword,
    "primitive type": lsp.CompletionItemKind.Keyword,
    "script": lsp.CompletionItemKind.File,
    "module": lsp.CompletionItemKind.Module,
    "external module name": lsp.CompletionItemKind.Module,
    "class": lsp.CompletionItemKind.Class,
    "local class": lsp.CompletionItemKind.Class,
    "interface": lsp.CompletionItemKind.Interface,
    "type": lsp.CompletionItemKind.Class,
    "enum": lsp.CompletionItemKind.Enum,
    "enum member": lsp.CompletionItemKind.EnumMember,
    "var": lsp.CompletionItemKind.Variable,
    "local var": lsp.CompletionItemKind.Variable,
    "let": lsp.CompletionItemKind.Variable,
    "const": lsp.CompletionItemKind.Constant,
    "parameter": lsp.CompletionItemKind.Variable,
    "alias": lsp.CompletionItemKind.Variable,
    "function": lsp.CompletionItemKind.Function,
    "local function": lsp.CompletionItemKind.Function,
    "method": lsp.CompletionItemKind.Method,
    "call": lsp.CompletionItemKind.Method,
    "construct": lsp.CompletionItemKind.Method,
    "index": lsp.CompletionItemKind.Method,
    "constructor": lsp.CompletionItemKind.Constructor,
    "property": lsp.CompletionItemKind.Property,
    "JSX attribute": lsp.CompletionItemKind.Property,
    "getter": lsp.CompletionItemKind.Field,
    "setter": lsp.CompletionItemKind.Field,
    "accessor": lsp.CompletionItemKind.Field,
    "type parameter": lsp.CompletionItemKind.TypeParameter,
    "directory": lsp.CompletionItemKind.Folder,
    "string": lsp.CompletionItemKind.Constant,
    "label": lsp.CompletionItemKind.Text,
}


def _coordinate(value: JSONValue, *, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return minimum
    return max(int(value), minimum)


# Positions.


def to_client_position(line: JSONValue, offset: JSONValue) -> lsp.Position:
    return lsp.Position(
        line=_coordinate(line, minimum=1) - 1,
        character=_coordinate(offset, minimum=1) - 1,
    )


def location_to_position(location: JSONValue) -> lsp.Position:
    if not isinstance(location, Mapping):
        return lsp.Position(line=0, character=0)
    return to_client_position(location.get("line"), location.get("offset"))


def to_backend_location(position: lsp.Position) -> JSONObject:
    return {
        "line": max(position.line, 0) + 1,
        "offset": max(position.character, 0) + 1,
    }


def to_client_range(start: JSONValue, end: JSONValue) -> lsp.Range:
    return lsp.Range(start=location_to_position(start), end=location_to_position(end))


def to_backend_span(range_: lsp.Range) -> JSONObject:
    start = to_backend_location(range_.start)
    end = to_backend_location(range_.end)
    return {
        "startLine": start["line"],
        "startOffset": start["offset"],
        "endLine": end["line"],
        "endOffset": end["offset"],
    }


# Kinds.


def category_to_severity(category: JSONValue) -> lsp.DiagnosticSeverity:
    if not isinstance(category, str):
        return UNKNOWN_CATEGORY_SEVERITY
    return SEVERITY_BY_CATEGORY.get(category.lower(), UNKNOWN_CATEGORY_SEVERITY)


def completion_item_kind(kind: JSONValue) -> lsp.CompletionItemKind:
    if not isinstance(kind, str):
        return lsp.CompletionItemKind.Text
    return COMPLETION_KIND_BY_ELEMENT_KIND.get(kind, lsp.CompletionItemKind.Text)


# File identity.


def path_to_uri(path: str) -> str:
    text = path
    if _WINDOWS_DRIVE_RE.match(text):
        text = text.replace("\\", "/")
        if not text.startswith("/"):
            text = "/" + text
    elif not text.startswith("/"):
        text = "/" + text
    return "file://" + quote(text, safe="/")


def uri_to_path(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return uri
    path = unquote(parsed.path)
    if parsed.netloc and parsed.netloc.lower() != "localhost":
        return f"//{parsed.netloc}{path}"
    if _WINDOWS_DRIVE_RE.match(path) and path.startswith("/"):
        return path[1:]
    return path


# Payloads.


def _kind_modifiers(entry: Mapping[str, JSONValue]) -> set[str]:
    raw = entry.get("kindModifiers")
    if not isinstance(raw, str):
        return set()
    return {part.strip() for part in raw.split(",") if part.strip()}


def _list_field(record: Mapping[str, JSONValue], key: str) -> list[JSONValue]:
    value = record.get(key)
    return value if isinstance(value, list) else []


def _diagnostic_code(value: JSONValue) -> int | str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, str)):
        return value
    return None


def translate_diagnostic(record: Mapping[str, JSONValue]) -> lsp.Diagnostic:
    tags: list[lsp.DiagnosticTag] = []
    if record.get("reportsUnnecessary"):
        tags.append(lsp.DiagnosticTag.Unnecessary)
    if record.get("reportsDeprecated"):
        tags.append(lsp.DiagnosticTag.Deprecated)
    related: list[lsp.DiagnosticRelatedInformation] = []
    for info in _list_field(record, "relatedInformation"):
        if not isinstance(info, Mapping):
            continue
        span = info.get("span")
        if not isinstance(span, Mapping) or not isinstance(span.get("file"), str):
            continue
        related.append(
            lsp.DiagnosticRelatedInformation(
                location=lsp.Location(
                    uri=path_to_uri(span["file"]),
                    range=to_client_range(span.get("start"), span.get("end")),
                ),
                message=str(info.get("message", "")),
            )
        )
    return lsp.Diagnostic(
        range=to_client_range(record.get("start"), record.get("end")),
        message=str(record.get("text", "")),
        severity=category_to_severity(record.get("category")),
        code=_diagnostic_code(record.get("code")),
        source=DIAGNOSTIC_SOURCE,
        tags=tags or None,
        related_information=related or None,
    )


def translate_diagnostics_event(body: JSONValue) -> tuple[str, list[lsp.Diagnostic]] | None:
    """Translate a `semanticDiag`/`syntaxDiag`/`suggestionDiag` event body."""
    if not isinstance(body, Mapping) or not isinstance(body.get("file"), str):
        return None
    records = body.get("diagnostics")
    diagnostics = [
        translate_diagnostic(record)
        for record in (records if isinstance(records, list) else [])
        if isinstance(record, Mapping)
    ]
    return path_to_uri(body["file"]), diagnostics


def _display_text(value: JSONValue) -> str:
    # tsserver sends either plain strings or SymbolDisplayPart lists.
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(
            str(part.get("text", "")) for part in value if isinstance(part, Mapping)
        )
    return ""


def _tag_lines(tags: JSONValue) -> list[str]:
    lines = []
    for tag in tags if isinstance(tags, list) else []:
        if not isinstance(tag, Mapping):
            continue
        text = _display_text(tag.get("text"))
        name = str(tag.get("name", ""))
        lines.append(f"*@{name}*" + (f" - {text}" if text else ""))
    return lines


def translate_quickinfo(body: JSONValue) -> lsp.Hover | None:
    if not isinstance(body, Mapping):
        return None
    display = _display_text(body.get("displayString"))
    documentation = _display_text(body.get("documentation"))
    sections = []
    if display:
        sections.append(f"```typescript\n{display}\n```")
    if documentation:
        sections.append(documentation)
    tag_lines = _tag_lines(body.get("tags"))
    if tag_lines:
        sections.append("\n\n".join(tag_lines))
    if not sections:
        return None
    hover_range = None
    if "start" in body and "end" in body:
        hover_range = to_client_range(body.get("start"), body.get("end"))
    return lsp.Hover(
        contents=lsp.MarkupContent(kind=lsp.MarkupKind.Markdown, value="\n\n".join(sections)),
        range=hover_range,
    )


def translate_completion_entry(entry: Mapping[str, JSONValue]) -> lsp.CompletionItem:
    label = str(entry.get("name", ""))
    insert_text = entry.get("insertText")
    text_edit = None
    span = entry.get("replacementSpan")
    if isinstance(span, Mapping):
        text_edit = lsp.TextEdit(
            range=to_client_range(span.get("start"), span.get("end")),
            new_text=insert_text if isinstance(insert_text, str) else label,
        )
    sort_text = entry.get("sortText")
    return lsp.CompletionItem(
        label=label,
        kind=completion_item_kind(entry.get("kind")),
        sort_text=sort_text if isinstance(sort_text, str) else None,
        insert_text=insert_text if isinstance(insert_text, str) and text_edit is None else None,
        text_edit=text_edit,
        tags=[lsp.CompletionItemTag.Deprecated] if "deprecated" in _kind_modifiers(entry) else None,
    )


def translate_completions(body: JSONValue) -> lsp.CompletionList:
    """Accept both `completions` (entry list) and `completionInfo` bodies."""
    is_incomplete = False
    entries: JSONValue = body
    if isinstance(body, Mapping):
        is_incomplete = bool(body.get("isIncomplete", False))
        entries = body.get("entries")
    items = [
        translate_completion_entry(entry)
        for entry in (entries if isinstance(entries, list) else [])
        if isinstance(entry, Mapping)
    ]
    return lsp.CompletionList(is_incomplete=is_incomplete, items=items)


def translate_file_span(span: Mapping[str, JSONValue]) -> lsp.Location | None:
    file_name = span.get("file")
    if not isinstance(file_name, str):
        return None
    return lsp.Location(
        uri=path_to_uri(file_name),
        range=to_client_range(span.get("start"), span.get("end")),
    )


def translate_definitions(body: JSONValue) -> list[lsp.Location]:
    spans: JSONValue = body
    if isinstance(body, Mapping):
        # definitionAndBoundSpan wraps the spans.
        spans = body.get("definitions")
    locations = []
    for span in spans if isinstance(spans, list) else []:
        if not isinstance(span, Mapping):
            continue
        location = translate_file_span(span)
        if location is not None:
            locations.append(location)
    return locations


def translate_text_change(change: Mapping[str, JSONValue]) -> lsp.TextEdit:
    new_text = change.get("newText")
    return lsp.TextEdit(
        range=to_client_range(change.get("start"), change.get("end")),
        new_text=new_text if isinstance(new_text, str) else "",
    )


def translate_code_fix(
    fix: Mapping[str, JSONValue],
    diagnostics: Iterable[lsp.Diagnostic] = (),
) -> lsp.CodeAction:
    changes: dict[str, list[lsp.TextEdit]] = {}
    for file_change in _list_field(fix, "changes"):
        if not isinstance(file_change, Mapping) or not isinstance(file_change.get("fileName"), str):
            continue
        edits = changes.setdefault(path_to_uri(file_change["fileName"]), [])
        for text_change in _list_field(file_change, "textChanges"):
            if isinstance(text_change, Mapping):
                edits.append(translate_text_change(text_change))
    attached = list(diagnostics)
    return lsp.CodeAction(
        title=str(fix.get("description", fix.get("fixName", "Quick fix"))),
        kind=lsp.CodeActionKind.QuickFix,
        diagnostics=attached or None,
        edit=lsp.WorkspaceEdit(changes=changes),
    )


def translate_code_fixes(
    body: JSONValue,
    diagnostics: Iterable[lsp.Diagnostic] = (),
) -> list[lsp.CodeAction]:
    attached = list(diagnostics)
    return [
        translate_code_fix(fix, attached)
        for fix in (body if isinstance(body, list) else [])
        if isinstance(fix, Mapping)
    ]


def error_codes(diagnostics: Iterable[lsp.Diagnostic]) -> list[int]:
    codes = []
    for diagnostic in diagnostics:
        try:
            codes.append(int(diagnostic.code))
        except (TypeError, ValueError):
            continue
    return codes
