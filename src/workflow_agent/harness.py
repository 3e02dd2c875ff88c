# harness.py
# Agent loop controller.
#
# The AgentLoop is the kernel. The model is a passive responder: this class
# owns control flow, the conversation, tool execution and the checkpoint
# session. It never raises to its caller; every outcome reaches the client as
# stream frames ending in done.
#
# Control flow:
#   keep-alive → open checkpoint → [call model → stream text / collect calls
#   → execute calls in parallel → feed results back] × N → commit | rollback
#   → summary → done
#
# All terminal output is delegated to display.py. No formatting here.

import json
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

from pydantic import BaseModel, Field

from workflow_agent import display
from workflow_agent.assembler import TextBatcher, ToolCallAssembler
from workflow_agent.checkpoint import CheckpointLog
from workflow_agent.completion import (
    URGENT_ITERATIONS,
    Decision,
    ProgressTracker,
    SessionMode,
    creation_nudge,
    decide,
    edit_nudge,
    should_stop_after_tools,
)
from workflow_agent.conversation import Conversation
from workflow_agent.errors import CheckpointError, ProviderError, WorkflowAgentError
from workflow_agent.extract import TextCallScanner
from workflow_agent.models import AgentRequest, ExecutionRecord, ToolCall
from workflow_agent.store import Store
from workflow_agent.stream import StreamEncoder
from workflow_agent.tools import ToolContext, ToolRegistry, build_registry


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You create and modify workflow cases by calling tools. Do not ask questions; \
take the case name and description from the user's request and proceed.

A case model is a list of stages; each stage has processes; each process has \
steps {id, name, type, order, viewId}. Step types: "Collect information", \
"Approve/Reject", "Decision", "Automation", "Create Case", "Generate Document", \
"Generative AI", "Robotic Automation", "Send Notification". Only \
"Collect information" steps have a view, and they must have one. Steps never \
contain fields: fields belong to the case and are placed on views.

Fields are business data the user enters (applicantName, loanAmount, startDate), \
never workflow structure. Field names are camelCase and unique within a case.

CREATING A WORKFLOW:
1. saveCase with name, description and an empty stages list. Keep the returned id.
2. saveFields with every business field the workflow needs.
3. saveView once per "Collect information" step. The view name becomes the step name.
4. saveCase with the id and the complete model, referencing the view ids. This is the final step.

MODIFYING A WORKFLOW:
1. getCase to see the current structure, listFields / listViews as needed.
2. Delete the views of any "Collect information" steps you remove (deleteView).
3. saveCase with the existing id and the updated model.

When the work is done, reply with a short summary and no tool calls.\
"""

TEXT_PROTOCOL_PROMPT = """\
To call a tool, write one line per call in exactly this form:

TOOL: <toolName> PARAMS: {"param": "value"}

PARAMS must be a single valid JSON object. You may make several calls in one \
reply; they run in the order written. Results are sent back to you in the \
next message.\
"""


class LoopState(str, Enum):
    INIT = "init"
    CALL_MODEL = "call_model"
    STREAMING = "streaming"
    TOOL_CALLS = "tool_calls"
    FINAL_TEXT = "final_text"
    DONE = "done"
    ERROR = "error"


class LoopResult(BaseModel):
    status: str
    iterations: int = 0
    case_id: int | None = None
    checkpoint_id: str | None = None
    error: str | None = None
    records: list[ExecutionRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


class AgentLoop:
    """
    Drives one request from prompt to done.

    Example:
        loop = AgentLoop(provider, store, CheckpointLog(store))
        result = loop.run(AgentRequest(prompt="Create a home loan workflow"), encoder)
    """

    def __init__(
        self,
        provider,
        store: Store,
        checkpoints: CheckpointLog,
        registry: ToolRegistry | None = None,
        family: str = "native",
        max_iterations: int = 15,
        tool_workers: int = 8,
        request_timeout: float = 120.0,
        flush_chars: int = 80,
        max_provider_retries: int = 2,
    ) -> None:
        self.provider = provider
        self.store = store
        self.checkpoints = checkpoints
        self.registry = registry or build_registry()
        self.family = family
        self.max_iterations = max_iterations
        self.tool_workers = tool_workers
        self.request_timeout = request_timeout
        self.flush_chars = flush_chars
        self.max_provider_retries = max_provider_retries
        self.state = LoopState.INIT

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, request: AgentRequest, encoder: StreamEncoder) -> LoopResult:
        self.state = LoopState.INIT
        encoder.send_keepalive()

        target_id = request.target_case_id()
        mode = SessionMode.EXISTING if target_id is not None else SessionMode.NEW
        display.request_received(request.prompt, mode.value, target_id)

        session_id = None
        ctx = ToolContext(self.store, self.checkpoints, None, target_id)
        tracker = ProgressTracker()
        iterations = 0

        try:  # nothing escapes the loop boundary
            if target_id is not None and self.store.get_case(target_id) is None:
                message = f"Case {target_id} does not exist"
                display.session_fatal(message)
                self.state = LoopState.ERROR
                encoder.send_error(message)
                encoder.send_done()
                return LoopResult(status="error", error=message)

            session_id = self.checkpoints.try_begin(target_id, request.prompt[:200], origin="agent")
            ctx.session_id = session_id
            status, error, iterations = self._loop(request, mode, ctx, tracker, encoder)
            if status == "completed" and session_id:
                self.checkpoints.commit(session_id)
        except Exception as exc:
            status, error = "error", f"{type(exc).__name__}: {exc}"
            display.session_fatal(error)

        rolled_back = False
        if status != "completed":
            self.state = LoopState.ERROR
            rolled_back = self._rollback(session_id)
            encoder.send_error(error or "The task did not complete")
        else:
            self.state = LoopState.DONE

        summary_case = target_id if mode == SessionMode.EXISTING else ctx.case_id
        encoder.send_text(self._summary(status, mode, summary_case, session_id, rolled_back))
        encoder.send_done()
        display.loop_summary(status, iterations, tracker.records)
        return LoopResult(
            status=status,
            iterations=iterations,
            case_id=ctx.case_id,
            checkpoint_id=session_id,
            error=error,
            records=tracker.records,
        )

    # ------------------------------------------------------------------
    # Loop body
    # ------------------------------------------------------------------

    def _loop(
        self,
        request: AgentRequest,
        mode: SessionMode,
        ctx: ToolContext,
        tracker: ProgressTracker,
        encoder: StreamEncoder,
    ) -> tuple[str, str | None, int]:
        conversation = self._seed(request, mode, ctx.case_id)
        failures = 0
        iteration = 0

        for iteration in range(1, self.max_iterations + 1):
            display.iteration_start(iteration, self.max_iterations)
            self.state = LoopState.CALL_MODEL
            try:
                text, calls = self._call_model(conversation, encoder)
            except ProviderError as exc:
                display.provider_error(str(exc))
                failures += 1
                if failures > self.max_provider_retries:
                    return "error", str(exc), iteration
                continue
            failures = 0
            conversation.add_assistant(text, calls)

            if calls:
                self.state = LoopState.TOOL_CALLS
                display.tool_calls_detected(calls)
                records = self._execute(calls, ctx)
                for record in records:
                    conversation.add_tool_result(record)
                    self._report(record, encoder)
                kind = tracker.record_turn(records)
                if should_stop_after_tools(mode, kind, request.scoped):
                    display.stop_decision("scoped edit applied")
                    return "completed", None, iteration
                left = self.max_iterations - iteration
                if mode == SessionMode.NEW and not tracker.finalize_called and 0 < left <= URGENT_ITERATIONS:
                    nudge = creation_nudge(tracker, ctx.case_id, left)
                    conversation.add_nudge(nudge)
                    display.nudge(nudge)
                continue

            self.state = LoopState.FINAL_TEXT
            decision = decide(mode, tracker.last_turn_kind, tracker.finalize_called)
            if decision == Decision.STOP:
                display.stop_decision(
                    f"mode={mode.value} last_turn={tracker.last_turn_kind.value} finalized={tracker.finalize_called}"
                )
                return "completed", None, iteration

            left = self.max_iterations - iteration
            if mode == SessionMode.NEW:
                nudge = creation_nudge(tracker, ctx.case_id, left)
            else:
                nudge = edit_nudge(left)
            conversation.add_nudge(nudge)
            display.nudge(nudge)

        display.iteration_cap_reached(self.max_iterations)
        if mode == SessionMode.NEW and tracker.finalize_called:
            return "completed", None, iteration
        if mode == SessionMode.NEW:
            return "incomplete", "Iteration limit reached before the workflow model was saved", iteration
        return "incomplete", "Iteration limit reached before the change was completed", iteration

    def _seed(self, request: AgentRequest, mode: SessionMode, case_id: int | None) -> Conversation:
        conversation = Conversation()
        conversation.add_system(SYSTEM_PROMPT)
        if self.family == "text":
            conversation.add_system(f"{TEXT_PROTOCOL_PROMPT}\n\n{self.registry.describe()}")
        if mode == SessionMode.EXISTING:
            conversation.add_system(f"You are modifying the existing case with id {case_id}. Do not create a new case.")
        else:
            conversation.add_system("You are creating a new workflow case.")
        context = request.context_text()
        if context:
            conversation.add_system(context)
        if request.scoped:
            conversation.add_system(
                "The user selected these items; limit your changes to them:\n"
                + json.dumps(request.selection.model_dump(exclude_defaults=True))
            )
        conversation.add_user(request.prompt)
        return conversation

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    def _call_model(self, conversation: Conversation, encoder: StreamEncoder) -> tuple[str, list[ToolCall]]:
        """
        Stream one model turn. Prose goes to the client as it arrives; tool
        calls are held back until complete. Returns the raw turn text and the
        finalized calls in issue order.
        """
        native = self.family == "native"
        messages = conversation.to_provider(self.family)
        tools = self.registry.schemas() if native else None
        batcher = TextBatcher(encoder.send_text, self.flush_chars)
        assembler = ToolCallAssembler()
        scanner = TextCallScanner()
        raw: list[str] = []
        calls: list[ToolCall] = []

        self.state = LoopState.STREAMING
        try:
            for event in self.provider.stream(messages, tools, self.request_timeout):
                if event.content:
                    raw.append(event.content)
                    if native:
                        batcher.push(event.content)
                    else:
                        prose, found = scanner.feed(event.content)
                        batcher.push(prose)
                        calls.extend(found)
                if event.tool_calls:
                    assembler.add(event.tool_calls)
        finally:
            batcher.flush()

        if native:
            calls = assembler.finalize()
        else:
            prose, found = scanner.finish()
            batcher.push(prose)
            batcher.flush()
            calls.extend(found)
        return "".join(raw), calls

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    def _execute(self, calls: list[ToolCall], ctx: ToolContext) -> list[ExecutionRecord]:
        """Run a turn's calls in parallel; records come back in call order."""
        with ThreadPoolExecutor(max_workers=min(self.tool_workers, len(calls))) as pool:
            futures = [pool.submit(self._execute_one, call, ctx) for call in calls]
            return [future.result() for future in futures]

    def _execute_one(self, call: ToolCall, ctx: ToolContext) -> ExecutionRecord:
        mutating = False
        try:
            tool, params = self.registry.validate(call)
            mutating = tool.mutating
            result = tool.execute(params, ctx)
        except WorkflowAgentError as exc:
            return ExecutionRecord(
                call_id=call.id, tool=call.name, params=call.params, success=False, error=str(exc), mutating=mutating
            )
        except Exception as exc:  # a tool failure never affects its siblings
            return ExecutionRecord(
                call_id=call.id,
                tool=call.name,
                params=call.params,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                mutating=mutating,
            )

        return ExecutionRecord(
            call_id=call.id,
            tool=call.name,
            params=call.params,
            success=True,
            result=result,
            summary=tool.summarize(result) if tool.summarize else "done",
            mutating=mutating,
            finalized=bool(tool.finalize and tool.finalize(params, result)),
        )

    def _report(self, record: ExecutionRecord, encoder: StreamEncoder) -> None:
        display.tool_outcome(record)
        if record.success:
            encoder.send_tool_result(
                record.tool,
                record.result,
                text=f"\nExecuting {record.tool}...\n{record.summary}\n",
            )
        else:
            encoder.send_error(record.error or "", text=f"\nError executing {record.tool}: {record.error}\n")

    # ------------------------------------------------------------------
    # Finish
    # ------------------------------------------------------------------

    def _rollback(self, session_id: str | None) -> bool:
        if session_id is None:
            return False
        try:
            self.checkpoints.rollback(session_id)
        except CheckpointError as exc:
            display.rollback_failed(session_id, str(exc))
            return False
        return True

    def _summary(
        self,
        status: str,
        mode: SessionMode,
        case_id: int | None,
        session_id: str | None,
        rolled_back: bool,
    ) -> str:
        if status == "completed":
            if mode == SessionMode.NEW:
                return f"\nWorkflow created (case {case_id}).\n"
            return f"\nChanges to case {case_id} applied.\n"
        if rolled_back:
            return "\nThe task did not complete. All changes made by this request were rolled back.\n"
        if session_id is None:
            return "\nThe task did not complete. Changes made by this request were not protected by a checkpoint.\n"
        return "\nThe task did not complete and rolling back its changes failed.\n"
