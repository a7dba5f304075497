"""SQLModel ORM tables for checkpoint storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class ExecutionCheckpoint(SQLModel, table=True):
    __tablename__ = "execution_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_execution_checkpoints_ticket_time", "ticket_id", "created_at"),
    )

    checkpoint_id: str = Field(primary_key=True)
    ticket_id: str = Field(index=True)
    checkpoint_type: str = Field(default="auto", index=True)
    version: int = Field(default=0)
    data_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
