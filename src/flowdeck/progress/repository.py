"""Durable checkpoint record store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlmodel import Session, col, select

from flowdeck.progress.models import Checkpoint, CheckpointData, CheckpointType
from flowdeck.storage.alembic_runner import upgrade_head
from flowdeck.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from flowdeck.storage.sqlmodel_models import ExecutionCheckpoint


class CheckpointStore(Protocol):
    """Record store interface consumed by the checkpoint manager."""

    def create(
        self,
        ticket_id: str,
        checkpoint_type: CheckpointType,
        version: int,
        data: CheckpointData,
        created_at: datetime | None = None,
    ) -> Checkpoint: ...

    def find_latest(self, ticket_id: str) -> Checkpoint | None: ...

    def find_by_id(self, checkpoint_id: str) -> Checkpoint | None: ...

    def find_all(self, ticket_id: str) -> list[Checkpoint]: ...

    def delete_by_id(self, checkpoint_id: str) -> bool: ...

    def delete_all(self, ticket_id: str) -> int: ...

    def delete_many(self, checkpoint_ids: Iterable[str]) -> int: ...

    def max_version(self, ticket_id: str) -> int: ...


class CheckpointRepository:
    """Checkpoint persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(
        self,
        ticket_id: str,
        checkpoint_type: CheckpointType,
        version: int,
        data: CheckpointData,
        created_at: datetime | None = None,
    ) -> Checkpoint:
        """Insert one checkpoint row."""

        with Session(self.engine) as session:
            row = ExecutionCheckpoint(
                checkpoint_id=str(uuid4()),
                ticket_id=ticket_id,
                checkpoint_type=CheckpointType(checkpoint_type).value,
                version=version,
                data_json=json.dumps(data.to_dict(), ensure_ascii=False, sort_keys=True),
                created_at=_to_db_datetime(created_at or utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_checkpoint(row)

    def find_latest(self, ticket_id: str) -> Checkpoint | None:
        """Most recently created checkpoint for a ticket."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ExecutionCheckpoint)
                .where(ExecutionCheckpoint.ticket_id == ticket_id)
                .order_by(
                    col(ExecutionCheckpoint.created_at).desc(),
                    col(ExecutionCheckpoint.version).desc(),
                )
                .limit(1),
            ).one_or_none()
            return _to_checkpoint(row) if row is not None else None

    def find_by_id(self, checkpoint_id: str) -> Checkpoint | None:
        with Session(self.engine) as session:
            row = session.get(ExecutionCheckpoint, checkpoint_id)
            return _to_checkpoint(row) if row is not None else None

    def find_all(self, ticket_id: str) -> list[Checkpoint]:
        """All checkpoints for a ticket, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionCheckpoint)
                .where(ExecutionCheckpoint.ticket_id == ticket_id)
                .order_by(
                    col(ExecutionCheckpoint.created_at).desc(),
                    col(ExecutionCheckpoint.version).desc(),
                ),
            ).all()
            return [_to_checkpoint(row) for row in rows]

    def delete_by_id(self, checkpoint_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(ExecutionCheckpoint, checkpoint_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def delete_all(self, ticket_id: str) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ExecutionCheckpoint).where(
                    col(ExecutionCheckpoint.ticket_id) == ticket_id,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def delete_many(self, checkpoint_ids: Iterable[str]) -> int:
        ids = list(checkpoint_ids)
        if not ids:
            return 0
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ExecutionCheckpoint).where(
                    col(ExecutionCheckpoint.checkpoint_id).in_(ids),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def max_version(self, ticket_id: str) -> int:
        """Highest stored version for a ticket, 0 when none exist."""

        with Session(self.engine) as session:
            value = session.exec(
                select(func.max(ExecutionCheckpoint.version)).where(
                    ExecutionCheckpoint.ticket_id == ticket_id,
                ),
            ).one()
            return int(value or 0)


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_checkpoint(row: ExecutionCheckpoint) -> Checkpoint:
    return Checkpoint(
        checkpoint_id=row.checkpoint_id,
        ticket_id=row.ticket_id,
        version=row.version,
        checkpoint_type=CheckpointType(row.checkpoint_type),
        created_at=to_utc_aware(row.created_at),
        data=CheckpointData.from_dict(json.loads(row.data_json)),
    )
