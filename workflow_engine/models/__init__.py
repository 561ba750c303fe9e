"""
Database Models Package

SQLAlchemy ORM models for the workflow engine.
"""

from .base import Base, JSONType
from .crm_record import CRMRecord
from .execution import WorkflowExecutionRecord
from .hitl_request import HITLRequestRecord

__all__ = [
    "Base",
    "JSONType",
    "CRMRecord",
    "WorkflowExecutionRecord",
    "HITLRequestRecord",
]
