"""
Execution Record Persistence

Stores WorkflowExecution records and applies the retention window: after
each save only the newest ``keep_last_n`` records per
(workflow_id, is_test_mode) are kept, ordered by ``started_at``. Records
waiting on human input hold the snapshot needed to resume them and are
never removed by retention.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..logging_config import get_logger
from ..models import WorkflowExecutionRecord
from .retry import with_retry
from .state import ExecutionStatus, NodeExecution, WorkflowExecution, naive_utc, to_jsonable

logger = get_logger(__name__)

DEFAULT_RETENTION_LIMIT = 25


class ExecutionStore(ABC):
    """Durable storage for execution records."""

    def __init__(self, retention_limit: int = DEFAULT_RETENTION_LIMIT):
        self.retention_limit = retention_limit

    async def save(self, execution: WorkflowExecution, snapshot: Optional[Dict[str, Any]] = None) -> int:
        """
        Upsert a record, then apply retention for its (workflow_id, is_test_mode).

        Args:
            execution: Record to persist
            snapshot: Context snapshot kept for paused runs; dropped otherwise

        Returns:
            Number of old records deleted by retention
        """
        if execution.status != ExecutionStatus.WAITING_HITL:
            snapshot = None
        await self._upsert(execution, snapshot)
        deleted = await self.cleanup(execution.workflow_id, execution.is_test_mode, self.retention_limit)
        logger.debug(
            "Execution persisted",
            execution_id=execution.id,
            status=execution.status.value,
            retention_deleted=deleted,
        )
        return deleted

    @abstractmethod
    async def _upsert(self, execution: WorkflowExecution, snapshot: Optional[Dict[str, Any]]) -> None:
        """Insert or replace one record."""

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Fetch a record by id."""

    @abstractmethod
    async def get_snapshot(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Context snapshot saved with a waiting record."""

    @abstractmethod
    async def list(
        self,
        workflow_id: str,
        is_test_mode: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        """Records of a workflow, newest first."""

    @abstractmethod
    async def list_all(self, limit: int = 50) -> List[WorkflowExecution]:
        """Records of every workflow, newest first."""

    @abstractmethod
    async def delete(self, execution_id: str) -> bool:
        """Delete one record; True if it existed."""

    @abstractmethod
    async def delete_for_workflow(self, workflow_id: str) -> int:
        """Delete every record of a workflow."""

    @abstractmethod
    async def cleanup(self, workflow_id: str, is_test_mode: bool, keep_last_n: int) -> int:
        """Delete all but the newest ``keep_last_n`` finished records of the pair; waiting runs are kept."""


class InMemoryExecutionStore(ExecutionStore):
    """Process-local execution store."""

    def __init__(self, retention_limit: int = DEFAULT_RETENTION_LIMIT):
        super().__init__(retention_limit)
        self._records: Dict[str, Tuple[Dict[str, Any], Optional[Dict[str, Any]]]] = {}

    async def _upsert(self, execution: WorkflowExecution, snapshot: Optional[Dict[str, Any]]) -> None:
        self._records[execution.id] = (execution.to_dict(), copy.deepcopy(snapshot))

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        stored = self._records.get(execution_id)
        return WorkflowExecution.from_dict(stored[0]) if stored else None

    async def get_snapshot(self, execution_id: str) -> Optional[Dict[str, Any]]:
        stored = self._records.get(execution_id)
        return copy.deepcopy(stored[1]) if stored else None

    def _sorted(self, predicate) -> List[WorkflowExecution]:
        records = [WorkflowExecution.from_dict(data) for data, _ in self._records.values() if predicate(data)]
        return sorted(records, key=lambda r: r.started_at, reverse=True)

    async def list(
        self,
        workflow_id: str,
        is_test_mode: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        records = self._sorted(
            lambda data: data["workflow_id"] == workflow_id
            and (is_test_mode is None or data["is_test_mode"] == is_test_mode)
        )
        return records[:limit] if limit else records

    async def list_all(self, limit: int = 50) -> List[WorkflowExecution]:
        return self._sorted(lambda data: True)[:limit]

    async def delete(self, execution_id: str) -> bool:
        return self._records.pop(execution_id, None) is not None

    async def delete_for_workflow(self, workflow_id: str) -> int:
        doomed = [key for key, (data, _) in self._records.items() if data["workflow_id"] == workflow_id]
        for key in doomed:
            del self._records[key]
        return len(doomed)

    async def cleanup(self, workflow_id: str, is_test_mode: bool, keep_last_n: int) -> int:
        records = [
            record for record in await self.list(workflow_id, is_test_mode=is_test_mode)
            if record.status != ExecutionStatus.WAITING_HITL
        ]
        doomed = records[keep_last_n:]
        for record in doomed:
            del self._records[record.id]
        if doomed:
            logger.info(
                "Old executions cleaned up",
                workflow_id=workflow_id,
                is_test_mode=is_test_mode,
                deleted=len(doomed),
            )
        return len(doomed)


class SqlAlchemyExecutionStore(ExecutionStore):
    """Execution store over the ``workflow_executions`` table."""

    def __init__(self, session_factory: async_sessionmaker, retention_limit: int = DEFAULT_RETENTION_LIMIT):
        super().__init__(retention_limit)
        self.session_factory = session_factory

    @staticmethod
    def _values(execution: WorkflowExecution, snapshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        last_error = execution.error_log[-1]["error"] if execution.error_log else None
        return {
            "workflow_id": execution.workflow_id,
            "workflow_name": execution.workflow_name,
            "triggered_by": execution.triggered_by,
            "trigger_data": to_jsonable(execution.trigger_data),
            "started_at": execution.started_at,
            "completed_at": execution.completed_at,
            "status": execution.status.value,
            "node_executions": [entry.model_dump(mode="json") for entry in execution.node_executions],
            "final_output": to_jsonable(execution.final_output),
            "is_test_mode": execution.is_test_mode,
            "error_log": to_jsonable(execution.error_log),
            "context_snapshot": to_jsonable(snapshot) if snapshot is not None else None,
            "user_id": execution.user_id,
            "current_node_id": execution.current_node_id,
            "current_hitl_request_id": execution.current_hitl_request_id,
            "error": last_error,
        }

    @staticmethod
    def _to_execution(record: WorkflowExecutionRecord) -> WorkflowExecution:
        return WorkflowExecution(
            id=record.id,
            workflow_id=record.workflow_id,
            workflow_name=record.workflow_name,
            triggered_by=record.triggered_by,
            trigger_data=record.trigger_data or {},
            started_at=naive_utc(record.started_at),
            completed_at=naive_utc(record.completed_at),
            status=ExecutionStatus(record.status),
            node_executions=[NodeExecution.model_validate(entry) for entry in (record.node_executions or [])],
            final_output=record.final_output,
            is_test_mode=record.is_test_mode,
            error_log=record.error_log or [],
            user_id=record.user_id,
            current_node_id=record.current_node_id,
            current_hitl_request_id=record.current_hitl_request_id,
        )

    @with_retry(max_retries=3, base_delay=0.5, exceptions=(OperationalError,))
    async def _upsert(self, execution: WorkflowExecution, snapshot: Optional[Dict[str, Any]]) -> None:
        values = self._values(execution, snapshot)
        async with self.session_factory() as session:
            record = await session.get(WorkflowExecutionRecord, execution.id)
            if record is None:
                session.add(WorkflowExecutionRecord(id=execution.id, **values))
            else:
                for key, value in values.items():
                    setattr(record, key, value)
            await session.commit()

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.session_factory() as session:
            record = await session.get(WorkflowExecutionRecord, execution_id)
            return self._to_execution(record) if record is not None else None

    async def get_snapshot(self, execution_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            record = await session.get(WorkflowExecutionRecord, execution_id)
            return record.context_snapshot if record is not None else None

    async def list(
        self,
        workflow_id: str,
        is_test_mode: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        query = select(WorkflowExecutionRecord).where(WorkflowExecutionRecord.workflow_id == workflow_id)
        if is_test_mode is not None:
            query = query.where(WorkflowExecutionRecord.is_test_mode == is_test_mode)
        query = query.order_by(WorkflowExecutionRecord.started_at.desc())
        if limit:
            query = query.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [self._to_execution(record) for record in result.scalars().all()]

    async def list_all(self, limit: int = 50) -> List[WorkflowExecution]:
        query = select(WorkflowExecutionRecord).order_by(WorkflowExecutionRecord.started_at.desc()).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [self._to_execution(record) for record in result.scalars().all()]

    @with_retry(max_retries=3, base_delay=0.5, exceptions=(OperationalError,))
    async def delete(self, execution_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(WorkflowExecutionRecord).where(WorkflowExecutionRecord.id == execution_id)
            )
            await session.commit()
            return result.rowcount > 0

    @with_retry(max_retries=3, base_delay=0.5, exceptions=(OperationalError,))
    async def delete_for_workflow(self, workflow_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(WorkflowExecutionRecord).where(WorkflowExecutionRecord.workflow_id == workflow_id)
            )
            await session.commit()
            return result.rowcount

    @with_retry(max_retries=3, base_delay=0.5, exceptions=(OperationalError,))
    async def cleanup(self, workflow_id: str, is_test_mode: bool, keep_last_n: int) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WorkflowExecutionRecord.id)
                .where(
                    WorkflowExecutionRecord.workflow_id == workflow_id,
                    WorkflowExecutionRecord.is_test_mode == is_test_mode,
                    WorkflowExecutionRecord.status != ExecutionStatus.WAITING_HITL.value,
                )
                .order_by(WorkflowExecutionRecord.started_at.desc())
                .offset(keep_last_n)
            )
            doomed = [row[0] for row in result.all()]
            if not doomed:
                return 0
            await session.execute(
                delete(WorkflowExecutionRecord).where(WorkflowExecutionRecord.id.in_(doomed))
            )
            await session.commit()

        logger.info(
            "Old executions cleaned up",
            workflow_id=workflow_id,
            is_test_mode=is_test_mode,
            deleted=len(doomed),
        )
        return len(doomed)
