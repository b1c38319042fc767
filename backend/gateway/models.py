"""SQLAlchemy ORM models for the automation gateway.

Tables:
- workflows: Saved workflow definitions (nodes + connections as JSON)
- executions: One record per workflow run
- node_results: Per-node outcome within a run
- kv_entries: Namespaced key-value store backing storage nodes
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gateway.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_uuid() -> str:
    return str(uuid.uuid4())


# ─── Workflow Definition ─────────────────────────────────────────────


class WorkflowModel(Base):
    """Persistent workflow definition.

    ``definition`` holds the whole document as submitted (id, name, nodes,
    connections, settings) so it round-trips without loss.
    """

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    definition: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow,
    )

    executions: Mapped[List["ExecutionModel"]] = relationship(
        back_populates="workflow", cascade="all, delete-orphan",
    )


# ─── Executions ──────────────────────────────────────────────────────


class ExecutionModel(Base):
    __tablename__ = "executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    workflow_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending",
        comment="pending | running | completed | failed | cancelled",
    )
    trigger_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    workflow: Mapped["WorkflowModel"] = relationship(back_populates="executions")
    node_results: Mapped[List["NodeResultModel"]] = relationship(
        back_populates="execution", cascade="all, delete-orphan", order_by="NodeResultModel.id",
    )

    __table_args__ = (
        Index("ix_executions_workflow_id", "workflow_id"),
        Index("ix_executions_status", "status"),
    )


class NodeResultModel(Base):
    __tablename__ = "node_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("executions.id", ondelete="CASCADE"), nullable=False,
    )
    node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    node_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    retries: Mapped[int] = mapped_column(Integer, default=0)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    execution: Mapped["ExecutionModel"] = relationship(back_populates="node_results")

    __table_args__ = (
        Index("ix_node_results_execution_node", "execution_id", "node_id"),
    )


# ─── Key-Value Store ─────────────────────────────────────────────────


class KeyValueEntryModel(Base):
    __tablename__ = "kv_entries"

    namespace: Mapped[str] = mapped_column(String(100), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow,
    )
