"""
Workflow Execution Model

Persisted execution records, capped per (workflow_id, is_test_mode).
"""

from sqlalchemy import Boolean, Column, Index, String, TIMESTAMP, TEXT

from .base import Base, JSONType, TimestampMixin


class WorkflowExecutionRecord(TimestampMixin, Base):
    """One workflow run."""

    __tablename__ = "workflow_executions"

    id = Column(
        String(64),
        primary_key=True,
        comment="Execution id (UUID, or sim-<ms>-<rand> for simulations)",
    )

    workflow_id = Column(
        String(64),
        nullable=False,
        index=True,
        comment="Workflow definition id",
    )

    workflow_name = Column(
        String(200),
        nullable=True,
        comment="Workflow name at execution time",
    )

    triggered_by = Column(
        String(20),
        nullable=False,
        default="manual",
        comment="form | manual | schedule | webhook | event",
    )

    trigger_data = Column(
        JSONType,
        nullable=True,
        comment="Raw trigger payload",
    )

    started_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="Execution start time",
    )

    completed_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="Terminal transition time",
    )

    status = Column(
        String(20),
        nullable=False,
        index=True,
        comment="running | completed | failed | cancelled | waiting_hitl",
    )

    node_executions = Column(
        JSONType,
        nullable=False,
        default=list,
        comment="Per-node execution log",
    )

    final_output = Column(
        JSONType,
        nullable=True,
        comment="Output of the last completed node",
    )

    is_test_mode = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Simulation run",
    )

    error_log = Column(
        JSONType,
        nullable=False,
        default=list,
        comment="[{node_id, error, timestamp}]",
    )

    context_snapshot = Column(
        JSONType,
        nullable=True,
        comment="Execution context captured while waiting for HITL",
    )

    user_id = Column(
        String(64),
        nullable=True,
        comment="Acting user",
    )

    current_node_id = Column(
        String(128),
        nullable=True,
        comment="Node the run is paused at",
    )

    current_hitl_request_id = Column(
        String(64),
        nullable=True,
        comment="Pending HITL request",
    )

    error = Column(
        TEXT,
        nullable=True,
        comment="Last error message if failed",
    )

    __table_args__ = (
        Index("ix_workflow_executions_retention", "workflow_id", "is_test_mode", "started_at"),
    )

    def __repr__(self):
        return f"<WorkflowExecutionRecord(id={self.id}, workflow_id={self.workflow_id}, status={self.status})>"
