import json

import pytest

from workflow_agent.assembler import TextBatcher, ToolCallAssembler
from workflow_agent.models import ToolCallFragment

ARGS = json.dumps({"caseID": 7, "fields": [{"name": "loanAmount", "type": "Number", "label": "Loan amount"}]})

# ---------------------------------------------------------------------------
# Fragment Merge Tests
# ---------------------------------------------------------------------------

def test_assemble_single_call():
    assembler = ToolCallAssembler()
    assembler.add([ToolCallFragment(index=0, id="call_a", name="saveFields", arguments=ARGS[:10])])
    assembler.add([ToolCallFragment(index=0, arguments=ARGS[10:])])
    calls = assembler.finalize()
    assert len(calls) == 1
    assert calls[0].id == "call_a"
    assert calls[0].name == "saveFields"
    assert calls[0].params == json.loads(ARGS)

def test_interleaved_calls_finalize_in_index_order():
    assembler = ToolCallAssembler()
    assembler.add([ToolCallFragment(index=1, id="b", name="listViews", arguments='{"caseID"')])
    assembler.add([ToolCallFragment(index=0, id="a", name="listFields", arguments='{"caseID": 1')])
    assembler.add([ToolCallFragment(index=1, arguments=": 2}"), ToolCallFragment(index=0, arguments="}")])
    calls = assembler.finalize()
    assert [c.id for c in calls] == ["a", "b"]
    assert calls[1].params == {"caseID": 2}

def test_id_and_name_are_never_overwritten():
    assembler = ToolCallAssembler()
    assembler.add([ToolCallFragment(index=0, id="first", name="listFields", arguments="{}")])
    assembler.add([ToolCallFragment(index=0, id="second", name="deleteCase")])
    call = assembler.finalize()[0]
    assert (call.id, call.name) == ("first", "listFields")

@pytest.mark.parametrize("arguments", ["", "   ", "\n"])
def test_whitespace_arguments_become_empty_object(arguments):
    assembler = ToolCallAssembler()
    assembler.add([ToolCallFragment(index=0, id="x", name="listFields", arguments=arguments)])
    assert assembler.finalize()[0].params == {}

def test_invalid_json_is_dropped():
    assembler = ToolCallAssembler()
    assembler.add([ToolCallFragment(index=0, id="x", name="saveCase", arguments='{"name": ')])
    assembler.add([ToolCallFragment(index=1, id="y", name="listFields", arguments="{}")])
    calls = assembler.finalize()
    assert [c.name for c in calls] == ["listFields"]

def test_nameless_record_is_dropped():
    assembler = ToolCallAssembler()
    assembler.add([ToolCallFragment(index=0, arguments="{}")])
    assert assembler.finalize() == []

def test_finalize_resets_state():
    assembler = ToolCallAssembler()
    assembler.add([ToolCallFragment(index=0, id="x", name="listFields", arguments="{}")])
    assert assembler.pending
    assembler.finalize()
    assert not assembler.pending
    assert assembler.finalize() == []

def test_merge_is_independent_of_split_points():
    expected = json.loads(ARGS)
    for cut in range(len(ARGS) + 1):
        assembler = ToolCallAssembler()
        assembler.add([ToolCallFragment(index=0, id="x", name="saveFields", arguments=ARGS[:cut])])
        assembler.add([ToolCallFragment(index=0, arguments=ARGS[cut:])])
        assert assembler.finalize()[0].params == expected

def test_missing_id_gets_generated():
    assembler = ToolCallAssembler()
    assembler.add([ToolCallFragment(index=0, name="listFields", arguments="{}")])
    assert assembler.finalize()[0].id.startswith("call_")

# ---------------------------------------------------------------------------
# Text Batching Tests
# ---------------------------------------------------------------------------

def test_batcher_emits_at_sentence_boundary():
    emitted = []
    batcher = TextBatcher(emitted.append, threshold=200)
    batcher.push("Creating the")
    assert emitted == []
    batcher.push(" fields. Next")
    assert emitted == ["Creating the fields."]
    batcher.flush()
    assert emitted == ["Creating the fields.", " Next"]

def test_batcher_emits_at_newline():
    emitted = []
    batcher = TextBatcher(emitted.append, threshold=200)
    batcher.push("line one\nline")
    assert emitted == ["line one\n"]

def test_batcher_emits_at_threshold():
    emitted = []
    batcher = TextBatcher(emitted.append, threshold=10)
    batcher.push("abcdefghijkl")
    assert emitted == ["abcdefghijkl"]

def test_batcher_flush_on_empty_is_noop():
    emitted = []
    batcher = TextBatcher(emitted.append)
    batcher.push("")
    batcher.flush()
    assert emitted == []
