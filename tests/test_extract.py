import pytest

from workflow_agent.extract import TextCallScanner, extract_all, extract_tool_call

TWO_CALLS = (
    "I'll add the fields now.\n"
    "```json\n"
    'TOOL: saveFields PARAMS: {"caseID": 1, "fields": [{"name": "loanAmount", "type": "Number", "label": "Loan {amount}"}]}\n'
    "```\n"
    "Then the second batch.\n"
    'TOOL: saveFields PARAMS: {"caseID": 1, "fields": [{"name": "note", "type": "Text", "label": "Say \\"hi\\" }"}]}\n'
    "All done."
)

# ---------------------------------------------------------------------------
# Brace Balancing Tests
# ---------------------------------------------------------------------------

def test_extract_simple_call():
    text = 'TOOL: listFields PARAMS: {"caseID": 3}'
    call = extract_tool_call(text)
    assert call.tool_name == "listFields"
    assert call.params == {"caseID": 3}
    assert (call.start, call.end) == (0, len(text))

def test_extract_nested_braces_and_escaped_quotes():
    text = (
        'Saving. TOOL: saveCase PARAMS: {"name": "A \\"quoted\\" {brace}", '
        '"description": "d", "model": {"stages": [{"id": 1, "processes": []}]}} trailing'
    )
    call = extract_tool_call(text)
    assert call.params["name"] == 'A "quoted" {brace}'
    assert call.params["model"] == {"stages": [{"id": 1, "processes": []}]}
    assert text[call.end:] == " trailing"

def test_extract_unbalanced_is_not_a_call_yet():
    assert extract_tool_call('TOOL: saveCase PARAMS: {"name": "x", "model": {"stages": [') is None

def test_extract_no_marker():
    assert extract_tool_call("Just a chat response.") is None

def test_extract_literal_newline_in_string():
    call = extract_tool_call('TOOL: saveCase PARAMS: {"name": "x", "description": "line one\nline two"}')
    assert call.params["description"] == "line one\nline two"

def test_extract_skips_malformed_call():
    text = 'TOOL: saveCase PARAMS: {broken: json} then TOOL: listViews PARAMS: {"caseID": 2}'
    call = extract_tool_call(text)
    assert call.tool_name == "listViews"
    assert call.params == {"caseID": 2}

def test_extract_rejects_non_object_params():
    assert extract_tool_call("TOOL: listViews PARAMS: {}").params == {}
    assert extract_tool_call("TOOL: listViews PARAMS: [1, 2]") is None

def test_fenced_span_leaves_no_stray_fence():
    text = 'Here:\n```json\nTOOL: listFields PARAMS: {"caseID": 1}\n```\nAfter'
    call = extract_tool_call(text)
    remaining = text[:call.start] + text[call.end:]
    assert "```" not in remaining
    assert remaining == "Here:\n\nAfter"

def test_two_sequential_calls_are_both_found():
    prose, calls = extract_all(TWO_CALLS)
    assert [c.tool_name for c in calls] == ["saveFields", "saveFields"]
    assert calls[0].params["fields"][0]["name"] == "loanAmount"
    assert calls[1].params["fields"][0]["label"] == 'Say "hi" }'
    assert "TOOL:" not in prose
    assert "```" not in prose

# ---------------------------------------------------------------------------
# Streaming Scanner Tests
# ---------------------------------------------------------------------------

def _scan(chunks):
    scanner = TextCallScanner()
    prose, calls = [], []
    for chunk in chunks:
        text, found = scanner.feed(chunk)
        prose.append(text)
        calls.extend(found)
    text, found = scanner.finish()
    prose.append(text)
    calls.extend(found)
    return "".join(prose), [(c.name, c.params) for c in calls]

def test_scanner_whole_text_matches_extractor():
    prose, calls = _scan([TWO_CALLS])
    expected_prose, expected = extract_all(TWO_CALLS)
    assert prose == expected_prose
    assert calls == [(c.tool_name, c.params) for c in expected]

@pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 13, 31])
def test_scanner_chunked_equals_whole(size):
    chunks = [TWO_CALLS[i:i + size] for i in range(0, len(TWO_CALLS), size)]
    assert _scan(chunks) == _scan([TWO_CALLS])

def test_scanner_every_split_point_equals_whole():
    whole = _scan([TWO_CALLS])
    for cut in range(1, len(TWO_CALLS)):
        assert _scan([TWO_CALLS[:cut], TWO_CALLS[cut:]]) == whole

def test_scanner_withholds_pending_call():
    scanner = TextCallScanner()
    prose, calls = scanner.feed('Working on it. TOOL: listFields PARAMS: {"caseID"')
    assert prose == "Working on it. "
    assert calls == []
    prose, calls = scanner.feed(": 4}")
    assert prose == ""
    assert calls[0].name == "listFields"
    assert calls[0].params == {"caseID": 4}

def test_scanner_holds_partial_marker():
    scanner = TextCallScanner()
    prose, _ = scanner.feed("Next step TO")
    assert prose == "Next step "
    prose, _ = scanner.feed("day is fine.")
    assert prose == "TOday is fine."

def test_scanner_drops_malformed_call():
    prose, calls = _scan(["a TOOL: saveCase PARAMS: {oops} b"])
    assert calls == []
    assert prose == "a  b"

def test_scanner_finish_releases_unfinished_call():
    prose, calls = _scan(['TOOL: saveCase PARAMS: {"name": "x"'])
    assert calls == []
    assert prose == 'TOOL: saveCase PARAMS: {"name": "x"'
