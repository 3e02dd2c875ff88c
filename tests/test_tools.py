import pytest

from fakes import workflow_model
from workflow_agent.errors import (
    MissingReferenceError,
    RecordNotFoundError,
    ToolNotFoundError,
    ToolValidationError,
)
from workflow_agent.models import ToolCall
from workflow_agent.tools import ToolContext


def call(registry, ctx, name, /, **params):
    return registry.execute(ToolCall(id=f"t_{name}", name=name, params=params), ctx)

FIELDS = [
    {"name": "applicantName", "type": "Text", "label": "Applicant name", "required": True},
    {"name": "loanAmount", "type": "Number", "label": "Loan amount"},
]

# ---------------------------------------------------------------------------
# Registry Tests
# ---------------------------------------------------------------------------

def test_registry_lists_every_tool(registry):
    names = {schema["function"]["name"] for schema in registry.schemas()}
    assert names == {
        "getCase", "listFields", "listViews", "saveCase", "saveFields",
        "saveView", "deleteCase", "deleteField", "deleteView",
    }

def test_schema_is_generated_from_params_model(registry):
    schema = registry.get("saveFields").schema()["function"]["parameters"]
    assert "fields" in schema["properties"]
    assert "fields" in schema["required"]

def test_describe_mentions_each_tool(registry):
    text = registry.describe()
    for name in registry.names():
        assert f"{name}:" in text

def test_unknown_tool(registry, ctx):
    with pytest.raises(ToolNotFoundError, match="not registered"):
        call(registry, ctx, "dropDatabase")

def test_invalid_params_are_reported_readably(registry, ctx):
    with pytest.raises(ToolValidationError, match="name"):
        call(registry, ctx, "saveCase", description="missing name")

# ---------------------------------------------------------------------------
# saveCase Tests
# ---------------------------------------------------------------------------

def test_save_case_creates_and_adopts_case(registry, ctx, store):
    result = call(registry, ctx, "saveCase", name="Home Loan", description="Loan intake", model={"stages": []})
    assert result["created"] is True
    assert ctx.case_id == result["case"]["id"]
    assert store.get_case(ctx.case_id)["name"] == "Home Loan"

def test_save_case_rejects_missing_view(registry, ctx, loan_case):
    with pytest.raises(MissingReferenceError, match="99"):
        call(registry, ctx, "saveCase", id=loan_case["id"], name="Home Loan", description="d", model=workflow_model(99))

def test_save_case_requires_view_on_collect_information(registry, ctx, loan_case):
    model = workflow_model()
    del model["stages"][0]["processes"][0]["steps"][0]["viewId"]
    with pytest.raises(ToolValidationError, match="must have a viewId"):
        call(registry, ctx, "saveCase", id=loan_case["id"], name="Home Loan", description="d", model=model)

def test_save_case_rejects_inline_fields(registry, ctx, loan_case):
    model = workflow_model()
    model["stages"][0]["processes"][0]["steps"][1]["fields"] = [{"name": "x"}]
    with pytest.raises(ToolValidationError, match="fields array"):
        call(registry, ctx, "saveCase", id=loan_case["id"], name="Home Loan", description="d", model=model)

def test_save_case_rejects_duplicate_view_ids(registry, ctx, loan_case):
    model = workflow_model()
    steps = model["stages"][0]["processes"][0]["steps"]
    steps.append({"id": "step-3", "name": "Again", "type": "Collect information", "order": 3, "viewId": 1})
    with pytest.raises(ToolValidationError, match="Duplicate viewId"):
        call(registry, ctx, "saveCase", id=loan_case["id"], name="Home Loan", description="d", model=model)

def test_save_case_rejects_unknown_step_type(registry, ctx, loan_case):
    model = workflow_model()
    model["stages"][0]["processes"][0]["steps"][1]["type"] = "Teleport"
    with pytest.raises(ToolValidationError, match="Unknown step type"):
        call(registry, ctx, "saveCase", id=loan_case["id"], name="Home Loan", description="d", model=model)

def test_save_case_update_with_valid_model(registry, ctx, store, loan_case):
    fields = call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=FIELDS)["fields"]
    view = call(
        registry, ctx, "saveView", caseID=loan_case["id"], name="Applicant Details",
        model={"fields": [{"fieldId": fields[0]["id"], "required": True, "order": 1}]},
    )["view"]
    result = call(registry, ctx, "saveCase", id=loan_case["id"], name="Home Loan", description="d", model=workflow_model(view["id"]))
    assert result["created"] is False
    assert store.get_case(loan_case["id"])["model"]["stages"][0]["name"] == "Intake"

def test_save_case_unknown_id(registry, ctx):
    with pytest.raises(RecordNotFoundError):
        call(registry, ctx, "saveCase", id=404, name="x", description="d")

# ---------------------------------------------------------------------------
# saveFields Tests
# ---------------------------------------------------------------------------

def test_save_fields_batch_counts(registry, ctx, loan_case):
    result = call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=FIELDS)
    assert (result["created"], result["updated"], result["existing"]) == (2, 0, 0)
    assert registry.get("saveFields").summarize(result) == "2 created"

def test_save_fields_name_collision_returns_existing(registry, ctx, loan_case, store):
    first = call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=FIELDS[:1])["fields"][0]
    again = call(
        registry, ctx, "saveFields", caseID=loan_case["id"],
        fields=[{"name": "applicantName", "type": "Email", "label": "Changed"}],
    )
    assert again["existing"] == 1
    assert again["fields"][0] == first
    assert store.find_field(loan_case["id"], "applicantName")["type"] == "Text"

def test_save_fields_update_by_id(registry, ctx, loan_case):
    field = call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=FIELDS[:1])["fields"][0]
    result = call(
        registry, ctx, "saveFields", caseID=loan_case["id"],
        fields=[{"id": field["id"], "name": "applicantName", "type": "TextArea", "label": "Name"}],
    )
    assert result["updated"] == 1
    assert result["fields"][0]["type"] == "TextArea"

def test_save_fields_rejects_bad_name(registry, ctx, loan_case):
    with pytest.raises(ToolValidationError, match="fields.0.name"):
        call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=[{"name": "Bad Name", "type": "Text", "label": "x"}])

def test_save_fields_rejects_unknown_type(registry, ctx, loan_case):
    with pytest.raises(ToolValidationError):
        call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=[{"name": "x", "type": "Color", "label": "x"}])

def test_save_fields_decodes_string_options(registry, ctx, loan_case):
    result = call(
        registry, ctx, "saveFields", caseID=loan_case["id"],
        fields=[{"name": "tier", "type": "Select", "label": "Tier", "options": '["gold", "silver"]'}],
    )
    assert result["fields"][0]["options"] == ["gold", "silver"]

def test_save_fields_without_case(registry, ctx):
    with pytest.raises(ToolValidationError, match="caseID is required"):
        call(registry, ctx, "saveFields", fields=FIELDS)

def test_save_fields_uses_session_case(registry, ctx, loan_case):
    ctx.adopt_case(loan_case["id"])
    assert call(registry, ctx, "saveFields", fields=FIELDS)["caseID"] == loan_case["id"]

# ---------------------------------------------------------------------------
# saveView Tests
# ---------------------------------------------------------------------------

def test_save_view_rejects_unknown_field(registry, ctx, loan_case):
    with pytest.raises(MissingReferenceError, match="fieldId"):
        call(registry, ctx, "saveView", caseID=loan_case["id"], name="Details", model={"fields": [{"fieldId": 42}]})

def test_save_view_rejects_field_of_other_case(registry, ctx, store, loan_case):
    other = store.insert_case("Other", "d", {"stages": []})
    field = store.insert_field(other["id"], {"name": "x", "type": "Text", "label": "x"})
    with pytest.raises(MissingReferenceError):
        call(registry, ctx, "saveView", caseID=loan_case["id"], name="Details", model={"fields": [{"fieldId": field["id"]}]})

def test_save_view_defaults_layout(registry, ctx, loan_case):
    view = call(registry, ctx, "saveView", caseID=loan_case["id"], name="Empty", model={"fields": []})["view"]
    assert view["model"]["layout"] == {"type": "form", "columns": 1}

# ---------------------------------------------------------------------------
# Read and Delete Tests
# ---------------------------------------------------------------------------

def test_get_case_flattens_steps(registry, ctx, store, loan_case):
    store.update_case(loan_case["id"], "Home Loan", "d", workflow_model())
    result = call(registry, ctx, "getCase", id=loan_case["id"])
    assert [s["name"] for s in result["steps"]] == ["Applicant Details", "Review"]
    assert result["steps"][0]["stage"] == "Intake"
    assert result["steps"][0]["process"] == "Application"

def test_list_fields_ordered(registry, ctx, store, loan_case):
    store.insert_field(loan_case["id"], {"name": "b", "type": "Text", "label": "b", "order": 2})
    store.insert_field(loan_case["id"], {"name": "a", "type": "Text", "label": "a", "order": 1})
    result = call(registry, ctx, "listFields", caseID=loan_case["id"])
    assert [f["name"] for f in result["fields"]] == ["a", "b"]

def test_delete_field_strips_view_references(registry, ctx, loan_case, store):
    fields = call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=FIELDS)["fields"]
    view = call(
        registry, ctx, "saveView", caseID=loan_case["id"], name="Details",
        model={"fields": [{"fieldId": f["id"]} for f in fields]},
    )["view"]
    result = call(registry, ctx, "deleteField", id=fields[0]["id"])
    assert result["viewsUpdated"] == [view["id"]]
    refs = store.get_view(view["id"])["model"]["fields"]
    assert [r["fieldId"] for r in refs] == [fields[1]["id"]]

def test_delete_case_cascades_and_rolls_back(registry, ctx, checkpoints, loan_case, store):
    call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=FIELDS)
    call(registry, ctx, "saveView", caseID=loan_case["id"], name="Details", model={"fields": []})
    result = call(registry, ctx, "deleteCase", id=loan_case["id"])
    assert (result["fieldsDeleted"], result["viewsDeleted"]) == (2, 1)
    assert store.get_case(loan_case["id"]) is None
    assert store.list_fields(loan_case["id"]) == []

    checkpoints.rollback(ctx.session_id)
    # The case predates the session, so it comes back; the session's own inserts do not.
    assert store.get_case(loan_case["id"])["name"] == "Home Loan"
    assert store.list_fields(loan_case["id"]) == []

def test_delete_view_unknown(registry, ctx):
    with pytest.raises(RecordNotFoundError):
        call(registry, ctx, "deleteView", id=3)

def test_tools_run_without_checkpoint(registry, store, loan_case):
    ctx = ToolContext(store)
    result = call(registry, ctx, "saveFields", caseID=loan_case["id"], fields=FIELDS)
    assert result["created"] == 2
