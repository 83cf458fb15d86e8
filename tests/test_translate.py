from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st
from lsprotocol import types as lsp

from tsbridge import translate

_segments = st.text(
    alphabet="abcXYZ019 _-.%#?é",
    min_size=1,
    max_size=8,
).filter(lambda segment: segment not in {".", ".."})
_paths = st.lists(_segments, min_size=1, max_size=4).map(lambda parts: "/" + "/".join(parts))


def test_backend_position_5_10_is_client_4_9() -> None:
    position = translate.to_client_position(5, 10)
    assert (position.line, position.character) == (4, 9)
    assert translate.to_backend_location(position) == {"line": 5, "offset": 10}


@given(st.integers(min_value=1, max_value=10**6), st.integers(min_value=1, max_value=10**6))
def test_backend_coordinates_round_trip(line: int, offset: int) -> None:
    position = translate.to_client_position(line, offset)
    assert translate.to_backend_location(position) == {"line": line, "offset": offset}


@given(st.integers(min_value=0, max_value=10**6), st.integers(min_value=0, max_value=10**6))
def test_client_coordinates_round_trip(line: int, character: int) -> None:
    location = translate.to_backend_location(lsp.Position(line=line, character=character))
    assert translate.location_to_position(location) == lsp.Position(line=line, character=character)


def test_malformed_coordinates_clamp_to_origin() -> None:
    assert translate.to_client_position(0, -3) == lsp.Position(line=0, character=0)
    assert translate.to_client_position(None, "7") == lsp.Position(line=0, character=0)
    assert translate.location_to_position("nonsense") == lsp.Position(line=0, character=0)


def test_range_to_backend_span() -> None:
    span = translate.to_backend_span(
        lsp.Range(start=lsp.Position(line=0, character=0), end=lsp.Position(line=2, character=4))
    )
    assert span == {"startLine": 1, "startOffset": 1, "endLine": 3, "endOffset": 5}


def test_category_to_severity_table() -> None:
    assert translate.category_to_severity("error") == lsp.DiagnosticSeverity.Error
    assert translate.category_to_severity("warning") == lsp.DiagnosticSeverity.Warning
    assert translate.category_to_severity("suggestion") == lsp.DiagnosticSeverity.Information
    assert translate.category_to_severity("message") == lsp.DiagnosticSeverity.Hint
    assert int(translate.category_to_severity("error")) == 1
    assert int(translate.category_to_severity("message")) == 4


def test_unknown_category_is_information() -> None:
    assert translate.category_to_severity("fatal") == lsp.DiagnosticSeverity.Information
    assert translate.category_to_severity(None) == lsp.DiagnosticSeverity.Information


def test_completion_kind_table_and_unknown_fallback() -> None:
    assert translate.completion_item_kind("method") == lsp.CompletionItemKind.Method
    assert translate.completion_item_kind("interface") == lsp.CompletionItemKind.Interface
    assert translate.completion_item_kind("enum member") == lsp.CompletionItemKind.EnumMember
    assert translate.completion_item_kind("brand new kind") == lsp.CompletionItemKind.Text
    assert translate.completion_item_kind(3) == lsp.CompletionItemKind.Text


def test_path_to_uri_percent_encodes() -> None:
    assert translate.path_to_uri("/work/my project/a#b.ts") == "file:///work/my%20project/a%23b.ts"


def test_windows_paths() -> None:
    uri = translate.path_to_uri("C:\\work\\app.ts")
    assert uri == "file:///C%3A/work/app.ts"
    assert translate.uri_to_path(uri) == "C:/work/app.ts"
    assert translate.uri_to_path("file:///c:/work/app.ts") == "c:/work/app.ts"


def test_unc_and_non_file_uris() -> None:
    assert translate.uri_to_path("file://server/share/a.ts") == "//server/share/a.ts"
    assert translate.uri_to_path("untitled:Untitled-1") == "untitled:Untitled-1"


def test_localhost_authority_is_a_local_path() -> None:
    assert translate.uri_to_path("file://localhost/x") == "/x"
    assert translate.uri_to_path("file://LOCALHOST/work/a.ts") == "/work/a.ts"


@given(_paths)
def test_path_uri_round_trip(path: str) -> None:
    assert translate.uri_to_path(translate.path_to_uri(path)) == path


def test_translate_diagnostic() -> None:
    diagnostic = translate.translate_diagnostic(
        {
            "start": {"line": 3, "offset": 5},
            "end": {"line": 3, "offset": 9},
            "text": "Cannot find name 'foo'.",
            "code": 2304,
            "category": "error",
            "reportsUnnecessary": True,
            "relatedInformation": [
                {
                    "message": "declared here",
                    "span": {
                        "file": "/work/b.ts",
                        "start": {"line": 1, "offset": 1},
                        "end": {"line": 1, "offset": 4},
                    },
                }
            ],
        }
    )
    assert diagnostic.range == lsp.Range(
        start=lsp.Position(line=2, character=4), end=lsp.Position(line=2, character=8)
    )
    assert diagnostic.severity == lsp.DiagnosticSeverity.Error
    assert diagnostic.code == 2304
    assert diagnostic.source == "tsserver"
    assert diagnostic.tags == [lsp.DiagnosticTag.Unnecessary]
    assert diagnostic.related_information is not None
    assert diagnostic.related_information[0].location.uri == "file:///work/b.ts"


def test_translate_diagnostics_event_rejects_malformed_bodies() -> None:
    assert translate.translate_diagnostics_event({"diagnostics": []}) is None
    assert translate.translate_diagnostics_event("oops") is None
    uri, diagnostics = translate.translate_diagnostics_event(
        {"file": "/work/a.ts", "diagnostics": [{"text": "x"}, "junk"]}
    )
    assert uri == "file:///work/a.ts"
    assert len(diagnostics) == 1


def test_translate_quickinfo_markdown() -> None:
    hover = translate.translate_quickinfo(
        {
            "displayString": "const answer: 42",
            "documentation": "The answer.",
            "tags": [{"name": "deprecated", "text": [{"text": "use other"}]}],
            "start": {"line": 1, "offset": 7},
            "end": {"line": 1, "offset": 13},
        }
    )
    assert hover is not None
    assert isinstance(hover.contents, lsp.MarkupContent)
    assert hover.contents.kind == lsp.MarkupKind.Markdown
    assert hover.contents.value.startswith("```typescript\nconst answer: 42\n```")
    assert "The answer." in hover.contents.value
    assert "*@deprecated* - use other" in hover.contents.value
    assert hover.range.start == lsp.Position(line=0, character=6)


def test_translate_quickinfo_empty_body() -> None:
    assert translate.translate_quickinfo(None) is None
    assert translate.translate_quickinfo({}) is None


def test_translate_completions_info_body() -> None:
    completions = translate.translate_completions(
        {
            "isIncomplete": True,
            "entries": [
                {"name": "toString", "kind": "method", "sortText": "11"},
                {
                    "name": "old",
                    "kind": "property",
                    "kindModifiers": "deprecated,optional",
                    "insertText": "old?",
                    "replacementSpan": {
                        "start": {"line": 2, "offset": 3},
                        "end": {"line": 2, "offset": 6},
                    },
                },
                {"name": "mystery", "kind": "something new"},
            ],
        }
    )
    assert completions.is_incomplete is True
    first, second, third = completions.items
    assert first.kind == lsp.CompletionItemKind.Method
    assert first.sort_text == "11"
    assert second.tags == [lsp.CompletionItemTag.Deprecated]
    assert isinstance(second.text_edit, lsp.TextEdit)
    assert second.text_edit.new_text == "old?"
    assert second.insert_text is None
    assert third.kind == lsp.CompletionItemKind.Text


def test_translate_completions_list_body() -> None:
    completions = translate.translate_completions([{"name": "a", "kind": "var"}])
    assert completions.is_incomplete is False
    assert [item.label for item in completions.items] == ["a"]


def test_translate_definitions_both_shapes() -> None:
    span = {"file": "/work/a.ts", "start": {"line": 4, "offset": 1}, "end": {"line": 4, "offset": 6}}
    assert translate.translate_definitions([span]) == translate.translate_definitions({"definitions": [span]})
    (location,) = translate.translate_definitions([span, {"start": {}}])
    assert location.uri == "file:///work/a.ts"
    assert location.range.start == lsp.Position(line=3, character=0)


def test_translate_code_fixes() -> None:
    diagnostic = lsp.Diagnostic(
        range=lsp.Range(start=lsp.Position(line=0, character=0), end=lsp.Position(line=0, character=1)),
        message="unused",
        code=6133,
    )
    (action,) = translate.translate_code_fixes(
        [
            {
                "fixName": "unusedIdentifier",
                "description": "Remove unused declaration",
                "changes": [
                    {
                        "fileName": "/work/a.ts",
                        "textChanges": [
                            {"start": {"line": 1, "offset": 1}, "end": {"line": 2, "offset": 1}, "newText": ""}
                        ],
                    }
                ],
            }
        ],
        [diagnostic],
    )
    assert action.title == "Remove unused declaration"
    assert action.kind == lsp.CodeActionKind.QuickFix
    assert action.diagnostics == [diagnostic]
    edits = action.edit.changes["file:///work/a.ts"]
    assert edits[0].range.end == lsp.Position(line=1, character=0)


def test_error_codes_skip_non_numeric() -> None:
    rng = lsp.Range(start=lsp.Position(line=0, character=0), end=lsp.Position(line=0, character=0))
    diagnostics = [
        lsp.Diagnostic(range=rng, message="a", code=2304),
        lsp.Diagnostic(range=rng, message="b", code="lint-rule"),
        lsp.Diagnostic(range=rng, message="c"),
    ]
    assert translate.error_codes(diagnostics) == [2304]


def test_malformed_list_fields_are_skipped() -> None:
    diagnostic = translate.translate_diagnostic(
        {"start": {"line": 2, "offset": 1}, "text": "x", "relatedInformation": 7}
    )
    assert diagnostic.related_information is None
    assert diagnostic.range.start == lsp.Position(line=1, character=0)

    (broken,) = translate.translate_code_fixes([{"description": "fix", "changes": 5}])
    assert broken.title == "fix"
    assert broken.edit == lsp.WorkspaceEdit(changes={})

    (partial,) = translate.translate_code_fixes(
        [{"description": "fix", "changes": [{"fileName": "/w/a.ts", "textChanges": "nope"}]}]
    )
    assert partial.edit.changes == {"file:///w/a.ts": []}

    uri, diagnostics = translate.translate_diagnostics_event(
        {"file": "/w/a.ts", "diagnostics": [{"text": "x", "relatedInformation": {"span": 1}}]}
    )
    assert [item.message for item in diagnostics] == ["x"]
