# completion.py
# When is an agent run done?
#
# The loop asks this module after every turn that produced no tool calls. The
# answer comes from an explicit table keyed by session mode, the kind of the
# last turn that executed tools, and whether the finalize tool has succeeded.
# Nudge texts escalate as the iteration budget runs out.

from enum import Enum

from workflow_agent.models import ExecutionRecord


# Iterations left at which the creation nudge turns into a finalize demand.
URGENT_ITERATIONS = 2


class SessionMode(str, Enum):
    NEW = "new"
    EXISTING = "existing"


class TurnKind(str, Enum):
    NONE = "none"
    READONLY = "readonly"
    MUTATING = "mutating"


class Decision(str, Enum):
    STOP = "stop"
    NUDGE = "nudge"


def _table() -> dict[tuple[SessionMode, TurnKind, bool], Decision]:
    table = {}
    for kind in TurnKind:
        table[(SessionMode.NEW, kind, True)] = Decision.STOP
        table[(SessionMode.NEW, kind, False)] = Decision.NUDGE
        table[(SessionMode.EXISTING, kind, True)] = Decision.STOP
    table[(SessionMode.EXISTING, TurnKind.NONE, False)] = Decision.STOP
    table[(SessionMode.EXISTING, TurnKind.READONLY, False)] = Decision.NUDGE
    table[(SessionMode.EXISTING, TurnKind.MUTATING, False)] = Decision.STOP
    return table


DECISION_TABLE = _table()


def decide(mode: SessionMode, last_turn_kind: TurnKind, finalize_called: bool) -> Decision:
    return DECISION_TABLE[(mode, last_turn_kind, finalize_called)]


def should_stop_after_tools(mode: SessionMode, turn_kind: TurnKind, scoped: bool) -> bool:
    """A scoped edit stops as soon as one of its mutations has landed."""
    return scoped and mode == SessionMode.EXISTING and turn_kind == TurnKind.MUTATING


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class ProgressTracker:
    """Counters fed by each turn's execution records."""

    def __init__(self) -> None:
        self.fields_created = 0
        self.views_created = 0
        self.finalize_called = False
        self.last_turn_kind = TurnKind.NONE
        self.records: list[ExecutionRecord] = []

    def record_turn(self, records: list[ExecutionRecord]) -> TurnKind:
        if not records:
            return self.last_turn_kind
        self.records.extend(records)
        kind = TurnKind.READONLY
        for record in records:
            if not record.success:
                continue
            if record.mutating:
                kind = TurnKind.MUTATING
            if record.finalized:
                self.finalize_called = True
            if record.tool == "saveFields":
                self.fields_created += int(record.result.get("created", 0))
            elif record.tool == "saveView" and record.result.get("created"):
                self.views_created += 1
        self.last_turn_kind = kind
        return kind


# ---------------------------------------------------------------------------
# Nudges
# ---------------------------------------------------------------------------


def creation_nudge(progress: ProgressTracker, case_id: int | None, iterations_left: int) -> str:
    if iterations_left <= URGENT_ITERATIONS:
        target = f"id {case_id}" if case_id is not None else "name and description"
        return (
            f"URGENT: only {iterations_left} iteration(s) left. Call saveCase now with {target} "
            "and the complete model (stages, processes and steps; every "
            '"Collect information" step needs the viewId of its view). Do not call any other tool.'
        )
    if case_id is None:
        return (
            "The workflow has not been started. Call saveCase with a name, a description "
            "and an empty stages list to get a case id, then create the fields with saveFields."
        )
    if progress.fields_created == 0:
        return f"Case {case_id} exists but has no fields yet. Create the business data fields with saveFields."
    if progress.views_created == 0:
        return (
            f"{progress.fields_created} field(s) created. Now create one view per "
            '"Collect information" step with saveView.'
        )
    return (
        f"{progress.fields_created} field(s) and {progress.views_created} view(s) created. "
        f"Finish by calling saveCase with id {case_id} and the complete model referencing the view ids."
    )


def edit_nudge(iterations_left: int) -> str:
    return (
        "You have only read data so far. Apply the requested change now with saveCase, "
        "saveFields, saveView or the delete tools, then stop. "
        f"{iterations_left} iteration(s) left."
    )
