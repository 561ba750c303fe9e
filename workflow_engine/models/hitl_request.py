"""
HITL Request Model
"""

from sqlalchemy import Boolean, Column, Integer, String, TEXT, TIMESTAMP

from .base import Base, JSONType, TimestampMixin


class HITLRequestRecord(TimestampMixin, Base):
    """Pending or consumed human-in-the-loop request."""

    __tablename__ = "hitl_requests"

    id = Column(String(64), primary_key=True, comment="Request id")
    execution_id = Column(String(64), nullable=False, index=True, comment="Owning execution")
    workflow_id = Column(String(64), nullable=False, index=True, comment="Workflow definition id")
    node_id = Column(String(128), nullable=False, comment="Gated node")
    phase = Column(String(10), nullable=False, default="before", comment="before | after")
    step_index = Column(Integer, nullable=False, default=0, comment="Position in the execution log")

    prompt = Column(TEXT, nullable=False, default="", comment="Interpolated prompt")
    request_type = Column(String(20), nullable=False, default="confirmation")
    options = Column(JSONType, nullable=True)
    channels = Column(JSONType, nullable=True)

    timeout_minutes = Column(Integer, nullable=False, default=60)
    timeout_action = Column(String(20), nullable=False, default="fail", comment="fail | continue | use_default")
    default_value = Column(JSONType, nullable=True)

    status = Column(String(20), nullable=False, default="pending", index=True, comment="pending | answered | expired")
    requested_at = Column(TIMESTAMP(timezone=True), nullable=False, comment="Creation time")
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True, index=True)
    responded_at = Column(TIMESTAMP(timezone=True), nullable=True)
    response_value = Column(JSONType, nullable=True)
    response_context = Column(JSONType, nullable=True)

    assigned_to_user_id = Column(String(64), nullable=True)
    requested_by_user_id = Column(String(64), nullable=True)
    execution_context = Column(JSONType, nullable=True)
    is_test_mode = Column(Boolean, nullable=False, default=False)
