# models.py
# Data contracts for the workflow agent.
# No business logic lives here: schema, validation and small accessors only.

import json
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

COLLECT_INFORMATION = "Collect information"

STEP_TYPES = (
    COLLECT_INFORMATION,
    "Approve/Reject",
    "Decision",
    "Automation",
    "Create Case",
    "Generate Document",
    "Generative AI",
    "Robotic Automation",
    "Send Notification",
)

FIELD_NAME_PATTERN = r"^[a-z][a-zA-Z0-9_]*$"


class FieldType(str, Enum):
    TEXT = "Text"
    EMAIL = "Email"
    DATE = "Date"
    NUMBER = "Number"
    BOOLEAN = "Boolean"
    SELECT = "Select"
    MULTI_SELECT = "MultiSelect"
    TEXT_AREA = "TextArea"


# ---------------------------------------------------------------------------
# Workflow structure
# ---------------------------------------------------------------------------


class Step(BaseModel):
    """A single step inside a process. Fields are referenced through a view."""

    model_config = ConfigDict(extra="allow")

    id: str | int
    name: str = ""
    type: str
    order: int = 0
    viewId: int | None = None

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in STEP_TYPES:
            raise ValueError(f'Unknown step type "{value}". Use one of: {", ".join(STEP_TYPES)}')
        return value

    @model_validator(mode="before")
    @classmethod
    def _reject_inline_fields(cls, data: Any) -> Any:
        if isinstance(data, dict) and "fields" in data:
            label = data.get("name") or data.get("id")
            raise ValueError(
                f'Step "{label}" contains a fields array. Fields are stored in views, '
                "not in steps; reference the view with viewId instead."
            )
        return data


class Process(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int
    name: str = ""
    order: int = 0
    steps: list[Step] = Field(default_factory=list)


class Stage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int
    name: str = ""
    order: int = 0
    processes: list[Process] = Field(default_factory=list)


class WorkflowModel(BaseModel):
    """The stage → process → step tree persisted on a case."""

    model_config = ConfigDict(extra="allow")

    stages: list[Stage] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_view_references(self) -> "WorkflowModel":
        seen: set[int] = set()
        for _, _, step in self.iter_steps():
            if step.type == COLLECT_INFORMATION and step.viewId is None:
                raise ValueError(
                    f'Step "{step.name or step.id}" of type "{COLLECT_INFORMATION}" must have a viewId'
                )
            if step.viewId is None:
                continue
            if step.viewId in seen:
                raise ValueError(f'Duplicate viewId "{step.viewId}" found in steps')
            seen.add(step.viewId)
        return self

    def iter_steps(self) -> Iterator[tuple[Stage, Process, Step]]:
        for stage in self.stages:
            for process in stage.processes:
                for step in process.steps:
                    yield stage, process, step

    def view_ids(self) -> list[int]:
        return [step.viewId for _, _, step in self.iter_steps() if step.viewId is not None]


# ---------------------------------------------------------------------------
# Fields and views
# ---------------------------------------------------------------------------


class FieldInput(BaseModel):
    """One field as submitted by the model to saveFields."""

    model_config = ConfigDict(use_enum_values=True)

    id: int | None = None
    name: str = Field(..., pattern=FIELD_NAME_PATTERN, description="camelCase field name, unique per case.")
    type: FieldType
    label: str = Field(..., min_length=1)
    description: str = ""
    required: bool = False
    primary: bool = False
    order: int = 0
    options: list[Any] = Field(default_factory=list)
    defaultValue: Any = None

    @field_validator("options", mode="before")
    @classmethod
    def _decode_options(cls, value: Any) -> Any:
        # Models often send options as a JSON-encoded string.
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return []
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return [part.strip() for part in value.split(",") if part.strip()]
        return value if value is not None else []


class ViewFieldRef(BaseModel):
    fieldId: int
    required: bool = False
    order: int = 0


class ViewLayout(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "form"
    columns: int = 1


class ViewModel(BaseModel):
    fields: list[ViewFieldRef] = Field(default_factory=list)
    layout: ViewLayout = Field(default_factory=ViewLayout)


# ---------------------------------------------------------------------------
# Tool parameters: one model per tool name
# ---------------------------------------------------------------------------


class RecordIdParams(BaseModel):
    id: int = Field(..., description="Id of the record.")


class CaseScopeParams(BaseModel):
    caseID: int | None = Field(default=None, description="Case id. Defaults to the case of the current session.")


class SaveCaseParams(BaseModel):
    id: int | None = Field(default=None, description="Case id (required for update, omit for create).")
    name: str = Field(..., min_length=1, description="Case name.")
    description: str = Field(..., min_length=1, description="Case description.")
    model: WorkflowModel = Field(default_factory=WorkflowModel, description="Workflow model with a stages array.")


class SaveFieldsParams(BaseModel):
    caseID: int | None = Field(default=None, description="Case id the fields belong to.")
    fields: list[FieldInput] = Field(..., min_length=1, description="Fields to create or update.")


class SaveViewParams(BaseModel):
    id: int | None = Field(default=None, description="View id (required for update, omit for create).")
    caseID: int | None = Field(default=None, description="Case id the view belongs to.")
    name: str = Field(..., min_length=1, description="View name; becomes the step name.")
    model: ViewModel = Field(..., description="View model with fields and layout.")


# ---------------------------------------------------------------------------
# Tool calls and conversation
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A finalized tool invocation, whichever protocol produced it."""

    id: str
    name: str
    params: dict = Field(default_factory=dict)


class ToolCallFragment(BaseModel):
    """One streamed piece of a provider-native tool call."""

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class ProviderEvent(BaseModel):
    """One normalized chunk of a streamed model response."""

    content: str = ""
    tool_calls: list[ToolCallFragment] = Field(default_factory=list)
    finish_reason: str | None = None


class PendingToolCall(BaseModel):
    """A tool call still being assembled from streamed fragments."""

    index: int
    id: str | None = None
    name: str | None = None
    fragments: list[str] = Field(default_factory=list)

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)


class ConversationMessage(BaseModel):
    """One entry of the append-only message history."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None
    nudge: bool = False


class ExecutionRecord(BaseModel):
    """Outcome of one tool call, success or failure."""

    call_id: str
    tool: str
    params: dict
    success: bool
    result: dict = Field(default_factory=dict)
    error: str | None = None
    summary: str = ""
    mutating: bool = False
    finalized: bool = False

    def payload(self) -> str:
        """Serialized content of the tool message answering this call."""
        if self.success:
            return json.dumps({"success": True, **self.result}, default=str)
        return json.dumps({"success": False, "error": self.error})


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


class OperationKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Operation(BaseModel):
    kind: OperationKind
    entity_type: str
    primary_key: int
    before: dict | None = None


class CheckpointSession(BaseModel):
    id: str
    target_id: int | None = None
    description: str = ""
    origin: str = ""
    status: str = "active"
    created_at: datetime
    finished_at: datetime | None = None
    operations: list[Operation] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Wire protocol
# ---------------------------------------------------------------------------


class StreamFrame(BaseModel):
    """One event-stream frame. Any subset of the four keys may be present."""

    model_config = ConfigDict(populate_by_name=True)

    text: str | None = None
    tool_result: Any = Field(default=None, alias="toolResult")
    error: str | None = None
    done: bool | None = None

    def encode(self) -> str:
        return f"data: {self.model_dump_json(by_alias=True, exclude_none=True)}\n\n"


class Selection(BaseModel):
    """Structured selection of the parts of a case a request may touch."""

    stageIds: list[str | int] = Field(default_factory=list)
    processIds: list[str | int] = Field(default_factory=list)
    stepIds: list[str | int] = Field(default_factory=list)
    fieldIds: list[int] = Field(default_factory=list)
    viewIds: list[int] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.stageIds or self.processIds or self.stepIds or self.fieldIds or self.viewIds)


class AgentRequest(BaseModel):
    """Inbound body of an agent run."""

    prompt: str = Field(..., min_length=1)
    systemContext: str | dict | None = None
    selection: Selection | None = None

    def _context_object(self) -> dict | None:
        if isinstance(self.systemContext, dict):
            return self.systemContext
        if isinstance(self.systemContext, str):
            try:
                decoded = json.loads(self.systemContext)
            except json.JSONDecodeError:
                return None
            return decoded if isinstance(decoded, dict) else None
        return None

    def target_case_id(self) -> int | None:
        """Case id carried by a JSON systemContext; its presence means edit mode."""
        context = self._context_object()
        if not context:
            return None
        for key in ("caseID", "caseId", "currentCaseId"):
            value = context.get(key)
            if value is None:
                continue
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
        return None

    def context_text(self) -> str | None:
        if not self.systemContext:
            return None
        context = self._context_object()
        if context is not None:
            return "Current context:\n" + json.dumps(context, indent=2)
        return str(self.systemContext)

    @property
    def scoped(self) -> bool:
        return self.selection is not None and not self.selection.is_empty()
