# errors.py
# Exception hierarchy shared by the tools, the checkpoint log and the loop.
#
# Tool errors are caught per call by the harness and fed back to the model.
# Provider errors are retried by re-entering the model call. Anything outside
# this hierarchy that escapes a tool is still contained by the harness.


class WorkflowAgentError(Exception):
    """Base class for every error this package raises on purpose."""


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------


class ToolNotFoundError(WorkflowAgentError):
    """Raised when the model requests a tool absent from the registry."""


class ToolValidationError(WorkflowAgentError):
    """Raised when tool parameters violate a schema or structural invariant."""


class MissingReferenceError(WorkflowAgentError):
    """Raised when a record references a view or field that does not exist."""


class RecordNotFoundError(WorkflowAgentError):
    """Raised when a case, field or view addressed by id does not exist."""


# ---------------------------------------------------------------------------
# Checkpoint errors
# ---------------------------------------------------------------------------


class CheckpointError(WorkflowAgentError):
    """Raised on misuse of the checkpoint log or a failed rollback."""


class CheckpointBusyError(CheckpointError):
    """Raised when a target already has an open checkpoint session."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(WorkflowAgentError):
    """Transient failure talking to the LLM provider. Retried by the loop."""


class ProviderTimeoutError(ProviderError):
    """Raised when one model call exceeds its deadline."""
