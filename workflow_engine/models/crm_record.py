"""
CRM Record Model

Opaque CRM entities (tasks, meetings, ...) written by action nodes.
"""

from sqlalchemy import Column, String

from .base import Base, JSONType, TimestampMixin


class CRMRecord(TimestampMixin, Base):
    """Key-value CRM entity."""

    __tablename__ = "crm_records"

    id = Column(String(64), primary_key=True, comment="Entity id")
    entity_type = Column(String(50), nullable=False, index=True, comment="tasks | meetings | ...")
    data = Column(JSONType, nullable=False, default=dict, comment="Entity fields")
