# checkpoint.py
# Session / operation ledger that makes a batch of mutations reversible.
#
# A session is opened per agent run (or per direct mutation request). Every
# insert, update and delete on a tracked entity is appended to the session's
# log with a sequence number. Commit keeps the mutations; rollback replays the
# log newest-first inside one database transaction.
#
# Only one session may be open per target case at a time.

import uuid
from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from workflow_agent import display
from workflow_agent.errors import CheckpointBusyError, CheckpointError
from workflow_agent.models import CheckpointSession, Operation, OperationKind
from workflow_agent.store import ENTITY_ROWS, Store


class CheckpointLog:
    """
    Example:
        log = CheckpointLog(store)
        session_id = log.begin(target_id=3, description="Add fields", origin="agent")
        log.capture(session_id, OperationKind.UPDATE, "cases", 3)
        store.update_case(3, ...)
        log.commit(session_id)
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self._lock = Lock()
        self._targets: dict[str, int | None] = {}
        self._seq: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def begin(self, target_id: int | None, description: str = "", origin: str = "agent") -> str:
        """
        Open a session for `target_id`. A None target means a case that does
        not exist yet and never conflicts with another session.

        Raises:
            CheckpointBusyError: the target already has an open session.
        """
        with self._lock:
            if target_id is not None and target_id in self._targets.values():
                raise CheckpointBusyError(f"Case {target_id} already has an open checkpoint")
            session_id = str(uuid.uuid4())
            self.store.create_checkpoint(session_id, target_id, description, origin)
            self._targets[session_id] = target_id
            self._seq[session_id] = 0
        display.checkpoint_opened(session_id, target_id)
        return session_id

    def try_begin(self, target_id: int | None, description: str = "", origin: str = "agent") -> str | None:
        """Like begin(), but returns None when the target is busy."""
        try:
            return self.begin(target_id, description, origin)
        except CheckpointBusyError:
            display.checkpoint_busy(target_id)
            return None

    def is_open(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._targets

    def _release(self, session_id: str) -> None:
        with self._lock:
            self._targets.pop(session_id, None)
            self._seq.pop(session_id, None)

    def commit(self, session_id: str) -> int:
        """Finalize the session as permanent history. Returns the operation count."""
        if not self.is_open(session_id):
            raise CheckpointError(f"Checkpoint {session_id} is not active")
        count = self._seq.get(session_id, 0)
        self.store.finish_checkpoint(session_id, "committed")
        self._release(session_id)
        display.checkpoint_committed(session_id, count)
        return count

    def rollback(self, session_id: str) -> int:
        """
        Undo every logged operation newest-first. Returns how many were undone.

        Raises:
            CheckpointError: the session is not active or the replay failed.
                The session stays open when replay fails.
        """
        if not self.is_open(session_id):
            raise CheckpointError(f"Checkpoint {session_id} is not active")
        try:
            operations = self.store.load_operations(session_id)
            undone = self.store.revert(session_id, operations)
        except Exception as exc:
            raise CheckpointError(f"Rollback of {session_id} failed: {exc}") from exc
        self._release(session_id)
        display.checkpoint_rolled_back(session_id, undone)
        return undone

    # ------------------------------------------------------------------
    # Operation log
    # ------------------------------------------------------------------

    def log_operation(
        self,
        session_id: str,
        kind: OperationKind,
        entity_type: str,
        primary_key: int,
        before: dict | None = None,
    ) -> None:
        if entity_type not in ENTITY_ROWS:
            return
        if kind != OperationKind.INSERT and before is None:
            raise CheckpointError(f"{kind.value} on {entity_type} {primary_key} needs a before-snapshot")
        with self._lock:
            if session_id not in self._seq:
                raise CheckpointError(f"Checkpoint {session_id} is not active")
            self._seq[session_id] += 1
            seq = self._seq[session_id]
        operation = Operation(
            kind=kind,
            entity_type=entity_type,
            primary_key=primary_key,
            before=before if kind != OperationKind.INSERT else None,
        )
        self.store.append_operation(session_id, seq, operation)

    def capture(self, session_id: str, kind: OperationKind, entity_type: str, primary_key: int) -> None:
        """Snapshot the current row from the store, then log the operation."""
        before = None
        if kind != OperationKind.INSERT:
            before = self.store.snapshot(entity_type, primary_key)
            if before is None:
                return
        self.log_operation(session_id, kind, entity_type, primary_key, before)

    # ------------------------------------------------------------------
    # Single-operation checkpoints
    # ------------------------------------------------------------------

    @contextmanager
    def operation(self, target_id: int | None, description: str, origin: str = "api") -> Iterator[str | None]:
        """
        Wrap one direct mutation. Commits when the block exits cleanly and
        rolls back when it raises; the exception is re-raised.

        Yields None when the target is busy; the block then runs unprotected.
        """
        session_id = self.try_begin(target_id, description, origin)
        if session_id is None:
            yield None
            return
        try:
            yield session_id
        except Exception:
            try:
                self.rollback(session_id)
            except CheckpointError as exc:
                display.rollback_failed(session_id, str(exc))
            raise
        self.commit(session_id)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self, limit: int = 50) -> list[CheckpointSession]:
        return self.store.checkpoint_history(limit)

    def get(self, session_id: str) -> CheckpointSession | None:
        session = self.store.get_checkpoint(session_id)
        if session is None:
            return None
        return session.model_copy(update={"operations": self.store.load_operations(session_id)})
