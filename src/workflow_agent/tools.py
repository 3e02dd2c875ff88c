# tools.py
# Tool registry and the workflow tools the model may call.
#
# Every tool owns a pydantic params model. The registry validates the raw
# params against it before calling execute(), so a tool body only ever sees
# well-typed input. Mutating tools report each change to the checkpoint log
# through the ToolContext before (update/delete) or after (insert) touching
# the store. The harness calls ToolRegistry.execute() and nothing else.

import json
from threading import Lock
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from workflow_agent.checkpoint import CheckpointLog
from workflow_agent.errors import (
    MissingReferenceError,
    RecordNotFoundError,
    ToolNotFoundError,
    ToolValidationError,
)
from workflow_agent.models import (
    CaseScopeParams,
    OperationKind,
    RecordIdParams,
    SaveCaseParams,
    SaveFieldsParams,
    SaveViewParams,
    ToolCall,
)
from workflow_agent.store import Store


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolContext:
    """Per-run collaborators handed to every tool call."""

    def __init__(
        self,
        store: Store,
        checkpoints: CheckpointLog | None = None,
        session_id: str | None = None,
        case_id: int | None = None,
    ) -> None:
        self.store = store
        self.checkpoints = checkpoints
        self.session_id = session_id
        self.case_id = case_id
        self._lock = Lock()

    def before_change(self, kind: OperationKind, entity_type: str, primary_key: int) -> None:
        if self.checkpoints and self.session_id:
            self.checkpoints.capture(self.session_id, kind, entity_type, primary_key)

    def after_insert(self, entity_type: str, primary_key: int) -> None:
        if self.checkpoints and self.session_id:
            self.checkpoints.log_operation(self.session_id, OperationKind.INSERT, entity_type, primary_key)

    def adopt_case(self, case_id: int) -> None:
        """Make `case_id` the default case if the run has none yet."""
        with self._lock:
            if self.case_id is None:
                self.case_id = case_id

    def forget_case(self, case_id: int) -> None:
        with self._lock:
            if self.case_id == case_id:
                self.case_id = None

    def resolve_case(self, case_id: int | None) -> int:
        resolved = case_id if case_id is not None else self.case_id
        if resolved is None:
            raise ToolValidationError("caseID is required: no case has been created or selected in this session yet")
        if self.store.get_case(resolved) is None:
            raise RecordNotFoundError(f"Case {resolved} does not exist")
        return resolved


class ToolDefinition:
    def __init__(
        self,
        name: str,
        description: str,
        params_model: type[BaseModel],
        execute: Callable[[Any, ToolContext], dict],
        mutating: bool = False,
        finalize: Callable[[Any, dict], bool] | None = None,
        summarize: Callable[[dict], str] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.params_model = params_model
        self.execute = execute
        self.mutating = mutating
        self.finalize = finalize
        self.summarize = summarize

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.params_model.model_json_schema(),
            },
        }


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        where = ".".join(str(part) for part in error["loc"]) or "params"
        parts.append(f"{where}: {error['msg']}")
    return "; ".join(parts)


class ToolRegistry:
    """
    Example:
        registry = build_registry()
        result = registry.execute(ToolCall(id="c1", name="listFields", params={"caseID": 1}), ctx)
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolDefinition:
        if name not in self._tools:
            raise ToolNotFoundError(f"Tool '{name}' is not registered. Available tools: {', '.join(self.names())}")
        return self._tools[name]

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [tool.schema() for tool in self._tools.values()]

    def describe(self) -> str:
        """Plain-text catalogue for models that call tools through prose."""
        lines = ["Available tools:"]
        for tool in self._tools.values():
            lines.append(f"\n{tool.name}: {tool.description}")
            lines.append(f"Parameters: {json.dumps(tool.params_model.model_json_schema())}")
        return "\n".join(lines)

    def validate(self, call: ToolCall) -> tuple[ToolDefinition, BaseModel]:
        tool = self.get(call.name)
        try:
            params = tool.params_model.model_validate(call.params)
        except ValidationError as exc:
            raise ToolValidationError(f"Invalid parameters for {call.name}: {format_validation_error(exc)}") from exc
        return tool, params

    def execute(self, call: ToolCall, ctx: ToolContext) -> dict:
        """
        Run one call.

        Raises:
            ToolNotFoundError: unknown tool name.
            ToolValidationError: params failed validation.
            MissingReferenceError, RecordNotFoundError: referential failures.
        """
        tool, params = self.validate(call)
        return tool.execute(params, ctx)


# ---------------------------------------------------------------------------
# Read-only tools
# ---------------------------------------------------------------------------


def _get_case(params: RecordIdParams, ctx: ToolContext) -> dict:
    case = ctx.store.get_case(params.id)
    if case is None:
        raise RecordNotFoundError(f"Case {params.id} does not exist")
    steps = []
    for stage in case["model"].get("stages", []):
        for process in stage.get("processes", []):
            for step in process.get("steps", []):
                steps.append(
                    {
                        "id": step.get("id"),
                        "name": step.get("name"),
                        "type": step.get("type"),
                        "viewId": step.get("viewId"),
                        "stage": stage.get("name"),
                        "process": process.get("name"),
                    }
                )
    return {"case": case, "steps": steps}


def _list_fields(params: CaseScopeParams, ctx: ToolContext) -> dict:
    case_id = ctx.resolve_case(params.caseID)
    return {"caseID": case_id, "fields": ctx.store.list_fields(case_id)}


def _list_views(params: CaseScopeParams, ctx: ToolContext) -> dict:
    case_id = ctx.resolve_case(params.caseID)
    return {"caseID": case_id, "views": ctx.store.list_views(case_id)}


# ---------------------------------------------------------------------------
# Mutating tools
# ---------------------------------------------------------------------------


def _save_case(params: SaveCaseParams, ctx: ToolContext) -> dict:
    view_ids = params.model.view_ids()
    if view_ids:
        if params.id is None:
            raise MissingReferenceError(
                f"viewId(s) {view_ids} cannot exist before the case does. "
                "Create the case first, then its views, then save the model with the case id."
            )
        known = ctx.store.view_ids(params.id)
        missing = [view_id for view_id in view_ids if view_id not in known]
        if missing:
            raise MissingReferenceError(
                f"viewId(s) {missing} do not exist in case {params.id}. Create them with saveView first."
            )

    model = params.model.model_dump(exclude_none=True)
    if params.id is None:
        case = ctx.store.insert_case(params.name, params.description, model)
        ctx.after_insert("cases", case["id"])
        ctx.adopt_case(case["id"])
        return {"case": case, "created": True}

    if ctx.store.get_case(params.id) is None:
        raise RecordNotFoundError(f"Case {params.id} does not exist")
    ctx.before_change(OperationKind.UPDATE, "cases", params.id)
    case = ctx.store.update_case(params.id, params.name, params.description, model)
    ctx.adopt_case(params.id)
    return {"case": case, "created": False}


def _save_fields(params: SaveFieldsParams, ctx: ToolContext) -> dict:
    case_id = ctx.resolve_case(params.caseID)
    saved = []
    created = updated = existing = 0

    for field in params.fields:
        data = field.model_dump()
        if field.id is not None:
            current = ctx.store.get_field(field.id)
            if current is None or current["caseID"] != case_id:
                raise RecordNotFoundError(f"Field {field.id} does not exist in case {case_id}")
            clash = ctx.store.find_field(case_id, field.name)
            if clash and clash["id"] != field.id:
                raise ToolValidationError(f'Field name "{field.name}" is already used by field {clash["id"]}')
            ctx.before_change(OperationKind.UPDATE, "fields", field.id)
            saved.append(ctx.store.update_field(field.id, case_id, data))
            updated += 1
            continue

        # Name collisions return the stored record untouched.
        match = ctx.store.find_field(case_id, field.name)
        if match is not None:
            saved.append(match)
            existing += 1
            continue
        row = ctx.store.insert_field(case_id, data)
        ctx.after_insert("fields", row["id"])
        saved.append(row)
        created += 1

    return {"caseID": case_id, "fields": saved, "created": created, "updated": updated, "existing": existing}


def _save_view(params: SaveViewParams, ctx: ToolContext) -> dict:
    case_id = ctx.resolve_case(params.caseID)
    known = ctx.store.field_ids(case_id)
    missing = [ref.fieldId for ref in params.model.fields if ref.fieldId not in known]
    if missing:
        raise MissingReferenceError(
            f"fieldId(s) {missing} do not exist in case {case_id}. Create them with saveFields first."
        )

    model = params.model.model_dump()
    if params.id is None:
        view = ctx.store.insert_view(case_id, params.name, model)
        ctx.after_insert("views", view["id"])
        return {"view": view, "created": True}

    current = ctx.store.get_view(params.id)
    if current is None or current["caseID"] != case_id:
        raise RecordNotFoundError(f"View {params.id} does not exist in case {case_id}")
    ctx.before_change(OperationKind.UPDATE, "views", params.id)
    return {"view": ctx.store.update_view(params.id, case_id, params.name, model), "created": False}


def _delete_case(params: RecordIdParams, ctx: ToolContext) -> dict:
    if ctx.store.get_case(params.id) is None:
        raise RecordNotFoundError(f"Case {params.id} does not exist")
    views = ctx.store.list_views(params.id)
    fields = ctx.store.list_fields(params.id)
    for view in views:
        ctx.before_change(OperationKind.DELETE, "views", view["id"])
        ctx.store.delete_view(view["id"])
    for field in fields:
        ctx.before_change(OperationKind.DELETE, "fields", field["id"])
        ctx.store.delete_field(field["id"])
    ctx.before_change(OperationKind.DELETE, "cases", params.id)
    ctx.store.delete_case(params.id)
    ctx.forget_case(params.id)
    return {"deleted": params.id, "fieldsDeleted": len(fields), "viewsDeleted": len(views)}


def _delete_field(params: RecordIdParams, ctx: ToolContext) -> dict:
    field = ctx.store.get_field(params.id)
    if field is None:
        raise RecordNotFoundError(f"Field {params.id} does not exist")

    views_updated = []
    for view in ctx.store.list_views(field["caseID"]):
        refs = view["model"].get("fields", [])
        kept = [ref for ref in refs if ref.get("fieldId") != params.id]
        if len(kept) == len(refs):
            continue
        ctx.before_change(OperationKind.UPDATE, "views", view["id"])
        ctx.store.update_view(view["id"], view["caseID"], view["name"], {**view["model"], "fields": kept})
        views_updated.append(view["id"])

    ctx.before_change(OperationKind.DELETE, "fields", params.id)
    ctx.store.delete_field(params.id)
    return {"deleted": params.id, "name": field["name"], "viewsUpdated": views_updated}


def _delete_view(params: RecordIdParams, ctx: ToolContext) -> dict:
    view = ctx.store.get_view(params.id)
    if view is None:
        raise RecordNotFoundError(f"View {params.id} does not exist")
    ctx.before_change(OperationKind.DELETE, "views", params.id)
    ctx.store.delete_view(params.id)
    return {"deleted": params.id, "name": view["name"]}


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def _counts(result: dict) -> str:
    parts = [f"{result[key]} {key}" for key in ("created", "updated", "existing") if result.get(key)]
    return ", ".join(parts) or "no fields changed"


def _case_summary(result: dict) -> str:
    case = result["case"]
    stages = len(case["model"].get("stages", []))
    verb = "Created" if result["created"] else "Updated"
    return f'{verb} case "{case["name"]}" (id {case["id"]}, {stages} stage(s))'


def _view_summary(result: dict) -> str:
    view = result["view"]
    verb = "Created" if result["created"] else "Updated"
    return f'{verb} view "{view["name"]}" (id {view["id"]}, {len(view["model"].get("fields", []))} field(s))'


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolDefinition(
            name="getCase",
            description=(
                "Load a case by id with its full workflow model and a flattened list of its steps "
                "(id, name, type, viewId, stage, process). Use it before modifying an existing case."
            ),
            params_model=RecordIdParams,
            execute=_get_case,
            summarize=lambda r: f'Loaded case "{r["case"]["name"]}" ({len(r["steps"])} step(s))',
        )
    )
    registry.register(
        ToolDefinition(
            name="listFields",
            description="List the fields of a case, ordered by order then name. Check it before creating fields.",
            params_model=CaseScopeParams,
            execute=_list_fields,
            summarize=lambda r: f"{len(r['fields'])} field(s) in case {r['caseID']}",
        )
    )
    registry.register(
        ToolDefinition(
            name="listViews",
            description="List the views of a case, ordered by name.",
            params_model=CaseScopeParams,
            execute=_list_views,
            summarize=lambda r: f"{len(r['views'])} view(s) in case {r['caseID']}",
        )
    )
    registry.register(
        ToolDefinition(
            name="saveCase",
            description=(
                "Create a case (omit id) or update one (pass id). The model holds stages, each with processes, "
                "each with steps {id, name, type, order, viewId}. Every step of type \"Collect information\" "
                "must carry the viewId of an existing view of the same case; viewIds must be unique; steps "
                "never contain fields. Creation flow: saveCase with an empty stages list to get the case id, "
                "then saveFields, then saveView, then saveCase again with the id and the complete model."
            ),
            params_model=SaveCaseParams,
            execute=_save_case,
            mutating=True,
            finalize=lambda params, result: bool(params.model.stages),
            summarize=_case_summary,
        )
    )
    registry.register(
        ToolDefinition(
            name="saveFields",
            description=(
                "Create or update business data fields of a case in one batch. Names are camelCase and unique "
                "per case; a field whose name already exists is returned unchanged instead of duplicated. "
                "Types: Text, Email, Date, Number, Boolean, Select, MultiSelect, TextArea. Pass id to update."
            ),
            params_model=SaveFieldsParams,
            execute=_save_fields,
            mutating=True,
            summarize=_counts,
        )
    )
    registry.register(
        ToolDefinition(
            name="saveView",
            description=(
                "Create or update a view for a \"Collect information\" step. The view name becomes the step "
                "name. model.fields lists {fieldId, required, order} for fields that already exist in the case; "
                "model.layout is {type: \"form\", columns: 1}."
            ),
            params_model=SaveViewParams,
            execute=_save_view,
            mutating=True,
            summarize=_view_summary,
        )
    )
    registry.register(
        ToolDefinition(
            name="deleteCase",
            description="Delete a case together with all of its fields and views.",
            params_model=RecordIdParams,
            execute=_delete_case,
            mutating=True,
            summarize=lambda r: f"Deleted case {r['deleted']} ({r['fieldsDeleted']} field(s), {r['viewsDeleted']} view(s))",
        )
    )
    registry.register(
        ToolDefinition(
            name="deleteField",
            description="Delete a field. Views that reference it are updated to drop the reference.",
            params_model=RecordIdParams,
            execute=_delete_field,
            mutating=True,
            summarize=lambda r: f'Deleted field "{r["name"]}" ({len(r["viewsUpdated"])} view(s) updated)',
        )
    )
    registry.register(
        ToolDefinition(
            name="deleteView",
            description=(
                "Delete a view. Remove or re-point any step that uses its viewId with saveCase afterwards."
            ),
            params_model=RecordIdParams,
            execute=_delete_view,
            mutating=True,
            summarize=lambda r: f'Deleted view "{r["name"]}"',
        )
    )
    return registry
