# server.py
# HTTP surface: the agent event stream plus direct record access.
#
#   POST /api/agent                : run the agent, streamed as text/event-stream
#   POST /api/database             : run one tool directly under its own checkpoint
#   GET  /api/database?table=&caseID= : list fields or views of a case
#   GET  /api/cases/<id>           : one case with its model
#   GET  /api/checkpoint/history   : recent checkpoint sessions
#   GET  /api/tools                : tool schemas

import threading
from typing import Callable

from flask import Flask, Response, jsonify, request, stream_with_context
from pydantic import ValidationError

from workflow_agent.checkpoint import CheckpointLog
from workflow_agent.config import Settings
from workflow_agent.errors import (
    MissingReferenceError,
    RecordNotFoundError,
    ToolNotFoundError,
    ToolValidationError,
    WorkflowAgentError,
)
from workflow_agent.harness import AgentLoop
from workflow_agent.models import AgentRequest, ToolCall
from workflow_agent.provider import build_provider
from workflow_agent.store import Store
from workflow_agent.stream import FrameQueue, StreamEncoder
from workflow_agent.tools import ToolContext, build_registry, format_validation_error

_ERROR_STATUS = {
    ToolNotFoundError: 404,
    RecordNotFoundError: 404,
    ToolValidationError: 400,
    MissingReferenceError: 400,
}

_CASE_ID_TOOLS = ("saveCase", "deleteCase", "getCase")


def _sse_response(generator) -> Response:
    return Response(
        generator,
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
            "Content-Type": "text/event-stream; charset=utf-8",
        },
    )


def _target_case(tool_name: str, params: dict) -> int | None:
    key = "id" if tool_name in _CASE_ID_TOOLS else "caseID"
    value = params.get(key)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def create_app(
    settings: Settings | None = None,
    store: Store | None = None,
    provider_factory: Callable[[], object] | None = None,
) -> Flask:
    settings = settings or Settings.from_env()
    store = store or Store(settings.database_url)
    checkpoints = CheckpointLog(store)
    registry = build_registry()

    if provider_factory is None:
        cached: list = []

        def provider_factory():
            if not cached:
                cached.append(build_provider(settings))
            return cached[0]

    app = Flask(__name__)
    app.config["SETTINGS"] = settings
    app.config["STORE"] = store
    app.config["CHECKPOINTS"] = checkpoints

    @app.errorhandler(WorkflowAgentError)
    def handle_agent_error(exc: WorkflowAgentError):
        status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500)
        return jsonify({"error": str(exc)}), status

    # ------------------------------------------------------------------
    # Agent stream
    # ------------------------------------------------------------------

    @app.route("/api/agent", methods=["POST"])
    def agent():
        try:
            body = AgentRequest.model_validate(request.get_json(silent=True) or {})
        except ValidationError as exc:
            return jsonify({"error": f"Invalid request: {format_validation_error(exc)}"}), 400

        loop = AgentLoop(
            provider_factory(),
            store,
            checkpoints,
            registry=registry,
            family=settings.provider_family,
            max_iterations=settings.max_iterations,
            tool_workers=settings.tool_workers,
            request_timeout=settings.request_timeout,
            flush_chars=settings.stream_flush_chars,
        )
        frames = FrameQueue()
        encoder = StreamEncoder(frames)
        threading.Thread(target=loop.run, args=(body, encoder), daemon=True, name="agent-run").start()

        def generate():
            try:
                yield from frames
            except GeneratorExit:
                frames.disconnect()
                raise

        return _sse_response(stream_with_context(generate()))

    # ------------------------------------------------------------------
    # Direct record access
    # ------------------------------------------------------------------

    @app.route("/api/database", methods=["GET"])
    def list_records():
        table = request.args.get("table")
        if table not in ("fields", "views"):
            return jsonify({"error": "Invalid table parameter"}), 400
        case_id = request.args.get("caseID", type=int)
        if case_id is None:
            return jsonify({"error": "caseID is required"}), 400
        rows = store.list_fields(case_id) if table == "fields" else store.list_views(case_id)
        return jsonify({"data": rows})

    @app.route("/api/database", methods=["POST"])
    def run_tool():
        body = request.get_json(silent=True) or {}
        name = body.get("tool")
        params = body.get("params") or {}
        if not name or not isinstance(params, dict):
            return jsonify({"error": "Body must be {tool, params}"}), 400

        call = ToolCall(id="direct", name=name, params=params)
        tool, validated = registry.validate(call)
        if not tool.mutating:
            return jsonify({"data": tool.execute(validated, ToolContext(store))})

        target = _target_case(name, params)
        with checkpoints.operation(target, f"{name} via API", origin="api") as session_id:
            result = tool.execute(validated, ToolContext(store, checkpoints, session_id, target))
        return jsonify({"data": result, "checkpointId": session_id})

    @app.route("/api/cases/<int:case_id>", methods=["GET"])
    def get_case(case_id: int):
        case = store.get_case(case_id)
        if case is None:
            return jsonify({"error": f"Case {case_id} does not exist"}), 404
        return jsonify({"data": case})

    @app.route("/api/checkpoint/history", methods=["GET"])
    def checkpoint_history():
        limit = request.args.get("limit", default=50, type=int)
        return jsonify({"history": [session.model_dump(mode="json") for session in checkpoints.history(limit)]})

    @app.route("/api/tools", methods=["GET"])
    def tools():
        return jsonify({"tools": registry.schemas()})

    return app
