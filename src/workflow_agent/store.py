# store.py
# Relational persistence for cases, fields, views and the checkpoint ledger.
#
# Every query goes through SQLAlchemy, so values are always bound parameters.
# One session per unit of work; the engine's pool is shared across threads.
# Records leave this module as plain camelCase dicts, never as ORM rows.

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    inspect,
    select,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from workflow_agent.models import CheckpointSession, Operation, OperationKind

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


class CaseRow(Base):
    __tablename__ = "cases"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String(500), nullable=False)
    model = Column(Text, nullable=False, default='{"stages": []}')


class FieldRow(Base):
    __tablename__ = "fields"
    __table_args__ = (
        UniqueConstraint("name", "case_id", name="fields_name_caseid_unique"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    label = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    required = Column(Boolean, nullable=False, default=False)
    primary = Column(Boolean, nullable=False, default=False)
    order = Column(Integer, nullable=False, default=0)
    options = Column(Text, nullable=False, default="[]")
    default_value = Column(Text, nullable=True)


class ViewRow(Base):
    __tablename__ = "views"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    model = Column(Text, nullable=False, default='{"fields": [], "layout": {}}')


class CheckpointRow(Base):
    __tablename__ = "checkpoints"

    id = Column(String(36), primary_key=True)
    target_id = Column(Integer, nullable=True, index=True)
    description = Column(String(500), nullable=False, default="")
    origin = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=_now)
    finished_at = Column(DateTime, nullable=True)


class OperationRow(Base):
    __tablename__ = "checkpoint_operations"

    id = Column(Integer, primary_key=True)
    checkpoint_id = Column(String(36), ForeignKey("checkpoints.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    primary_key = Column(Integer, nullable=False)
    before = Column(Text, nullable=True)


ENTITY_ROWS = {"cases": CaseRow, "fields": FieldRow, "views": ViewRow}


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _snapshot(row: Base) -> dict[str, Any]:
    """Full column image of a row, keyed by attribute name."""
    return {attr.key: getattr(row, attr.key) for attr in inspect(row).mapper.column_attrs}


def _case_dict(row: CaseRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "model": json.loads(row.model) if row.model else {"stages": []},
    }


def _field_dict(row: FieldRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "caseID": row.case_id,
        "name": row.name,
        "type": row.type,
        "label": row.label,
        "description": row.description,
        "required": row.required,
        "primary": row.primary,
        "order": row.order,
        "options": json.loads(row.options) if row.options else [],
        "defaultValue": json.loads(row.default_value) if row.default_value is not None else None,
    }


def _view_dict(row: ViewRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "caseID": row.case_id,
        "name": row.name,
        "model": json.loads(row.model) if row.model else {"fields": [], "layout": {}},
    }


def _checkpoint(row: CheckpointRow, operations: list[Operation] | None = None) -> CheckpointSession:
    return CheckpointSession(
        id=row.id,
        target_id=row.target_id,
        description=row.description,
        origin=row.origin,
        status=row.status,
        created_at=row.created_at,
        finished_at=row.finished_at,
        operations=operations or [],
    )


def _operation(row: OperationRow) -> Operation:
    return Operation(
        kind=OperationKind(row.kind),
        entity_type=row.entity_type,
        primary_key=row.primary_key,
        before=json.loads(row.before) if row.before else None,
    )


def _field_values(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": data["name"],
        "type": data["type"],
        "label": data["label"],
        "description": data.get("description") or "",
        "required": bool(data.get("required", False)),
        "primary": bool(data.get("primary", False)),
        "order": int(data.get("order") or 0),
        "options": json.dumps(data.get("options") or []),
        "default_value": json.dumps(data["defaultValue"]) if data.get("defaultValue") is not None else None,
    }


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class Store:
    """
    Persistence collaborator for the tools and the checkpoint log.

    Example:
        store = Store("sqlite:///workflow_agent.db")
        case = store.insert_case("Home Loan", "Loan intake", {"stages": []})
    """

    def __init__(self, url: str) -> None:
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One transaction: committed on success, rolled back on any error."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def get_case(self, case_id: int) -> dict[str, Any] | None:
        with self.session() as session:
            row = session.get(CaseRow, case_id)
            return _case_dict(row) if row else None

    def insert_case(self, name: str, description: str, model: dict) -> dict[str, Any]:
        with self.session() as session:
            row = CaseRow(name=name, description=description, model=json.dumps(model))
            session.add(row)
            session.flush()
            return _case_dict(row)

    def update_case(self, case_id: int, name: str, description: str, model: dict) -> dict[str, Any] | None:
        with self.session() as session:
            row = session.get(CaseRow, case_id)
            if row is None:
                return None
            row.name = name
            row.description = description
            row.model = json.dumps(model)
            session.flush()
            return _case_dict(row)

    def delete_case(self, case_id: int) -> bool:
        with self.session() as session:
            row = session.get(CaseRow, case_id)
            if row is None:
                return False
            session.delete(row)
            return True

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def list_fields(self, case_id: int) -> list[dict[str, Any]]:
        with self.session() as session:
            rows = session.scalars(
                select(FieldRow).where(FieldRow.case_id == case_id).order_by(FieldRow.order, FieldRow.name)
            ).all()
            return [_field_dict(row) for row in rows]

    def get_field(self, field_id: int) -> dict[str, Any] | None:
        with self.session() as session:
            row = session.get(FieldRow, field_id)
            return _field_dict(row) if row else None

    def find_field(self, case_id: int, name: str) -> dict[str, Any] | None:
        with self.session() as session:
            row = session.scalars(
                select(FieldRow).where(FieldRow.case_id == case_id, FieldRow.name == name)
            ).first()
            return _field_dict(row) if row else None

    def field_ids(self, case_id: int) -> set[int]:
        with self.session() as session:
            return set(session.scalars(select(FieldRow.id).where(FieldRow.case_id == case_id)).all())

    def insert_field(self, case_id: int, data: dict[str, Any]) -> dict[str, Any]:
        with self.session() as session:
            row = FieldRow(case_id=case_id, **_field_values(data))
            session.add(row)
            session.flush()
            return _field_dict(row)

    def update_field(self, field_id: int, case_id: int, data: dict[str, Any]) -> dict[str, Any] | None:
        with self.session() as session:
            row = session.get(FieldRow, field_id)
            if row is None:
                return None
            row.case_id = case_id
            for key, value in _field_values(data).items():
                setattr(row, key, value)
            session.flush()
            return _field_dict(row)

    def delete_field(self, field_id: int) -> bool:
        with self.session() as session:
            row = session.get(FieldRow, field_id)
            if row is None:
                return False
            session.delete(row)
            return True

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def list_views(self, case_id: int) -> list[dict[str, Any]]:
        with self.session() as session:
            rows = session.scalars(select(ViewRow).where(ViewRow.case_id == case_id).order_by(ViewRow.name)).all()
            return [_view_dict(row) for row in rows]

    def get_view(self, view_id: int) -> dict[str, Any] | None:
        with self.session() as session:
            row = session.get(ViewRow, view_id)
            return _view_dict(row) if row else None

    def view_ids(self, case_id: int) -> set[int]:
        with self.session() as session:
            return set(session.scalars(select(ViewRow.id).where(ViewRow.case_id == case_id)).all())

    def insert_view(self, case_id: int, name: str, model: dict) -> dict[str, Any]:
        with self.session() as session:
            row = ViewRow(case_id=case_id, name=name, model=json.dumps(model))
            session.add(row)
            session.flush()
            return _view_dict(row)

    def update_view(self, view_id: int, case_id: int, name: str, model: dict) -> dict[str, Any] | None:
        with self.session() as session:
            row = session.get(ViewRow, view_id)
            if row is None:
                return None
            row.case_id = case_id
            row.name = name
            row.model = json.dumps(model)
            session.flush()
            return _view_dict(row)

    def delete_view(self, view_id: int) -> bool:
        with self.session() as session:
            row = session.get(ViewRow, view_id)
            if row is None:
                return False
            session.delete(row)
            return True

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def snapshot(self, entity_type: str, primary_key: int) -> dict[str, Any] | None:
        """Full prior image of one tracked row, or None if it does not exist."""
        with self.session() as session:
            row = session.get(ENTITY_ROWS[entity_type], primary_key)
            return _snapshot(row) if row else None

    # ------------------------------------------------------------------
    # Checkpoint ledger
    # ------------------------------------------------------------------

    def create_checkpoint(self, checkpoint_id: str, target_id: int | None, description: str, origin: str) -> CheckpointSession:
        with self.session() as session:
            row = CheckpointRow(
                id=checkpoint_id,
                target_id=target_id,
                description=description[:500],
                origin=origin,
                status="active",
                created_at=_now(),
            )
            session.add(row)
            session.flush()
            return _checkpoint(row)

    def append_operation(self, checkpoint_id: str, seq: int, operation: Operation) -> None:
        with self.session() as session:
            session.add(
                OperationRow(
                    checkpoint_id=checkpoint_id,
                    seq=seq,
                    kind=operation.kind.value,
                    entity_type=operation.entity_type,
                    primary_key=operation.primary_key,
                    before=json.dumps(operation.before, default=str) if operation.before is not None else None,
                )
            )

    def load_operations(self, checkpoint_id: str) -> list[Operation]:
        with self.session() as session:
            rows = session.scalars(
                select(OperationRow).where(OperationRow.checkpoint_id == checkpoint_id).order_by(OperationRow.seq)
            ).all()
            return [_operation(row) for row in rows]

    def get_checkpoint(self, checkpoint_id: str) -> CheckpointSession | None:
        with self.session() as session:
            row = session.get(CheckpointRow, checkpoint_id)
            return _checkpoint(row) if row else None

    def finish_checkpoint(self, checkpoint_id: str, status: str) -> None:
        with self.session() as session:
            row = session.get(CheckpointRow, checkpoint_id)
            if row is not None:
                row.status = status
                row.finished_at = _now()

    def revert(self, checkpoint_id: str, operations: list[Operation]) -> int:
        """
        Undo `operations` newest-first in a single transaction and mark the
        checkpoint rolled back. Inserts are deleted; updates and deletes are
        restored from their before-image. Returns the number of operations
        replayed.
        """
        with self.session() as session:
            for operation in reversed(operations):
                model = ENTITY_ROWS[operation.entity_type]
                if operation.kind == OperationKind.INSERT:
                    row = session.get(model, operation.primary_key)
                    if row is not None:
                        session.delete(row)
                else:
                    session.merge(model(**operation.before))
                # Flush per step so deletes and re-inserts of one key stay ordered.
                session.flush()
            row = session.get(CheckpointRow, checkpoint_id)
            if row is not None:
                row.status = "rolled_back"
                row.finished_at = _now()
            return len(operations)

    def checkpoint_history(self, limit: int = 50) -> list[CheckpointSession]:
        with self.session() as session:
            rows = session.scalars(select(CheckpointRow).order_by(CheckpointRow.created_at.desc()).limit(limit)).all()
            return [_checkpoint(row) for row in rows]
