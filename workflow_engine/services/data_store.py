"""
Data Store

Typed read/write access to CRM entities and HITL requests. The engine never
issues raw queries; everything goes through this interface.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..exceptions import NotFoundError
from ..logging_config import get_logger
from ..models import CRMRecord, HITLRequestRecord
from ..workflows.state import HITLRequest, HITLRequestStatus, naive_utc, to_jsonable

logger = get_logger(__name__)


class DataStore(ABC):
    """CRM entity and HITL request storage."""

    # ==================== CRM entities ====================

    @abstractmethod
    async def create_entity(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert an entity; returns it with its ``id``."""

    async def create_entities(self, entity_type: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [await self.create_entity(entity_type, item) for item in items]

    @abstractmethod
    async def update_entity(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Shallow-merge ``changes`` into an entity.

        Raises:
            NotFoundError: If the entity does not exist
        """

    @abstractmethod
    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one entity or None."""

    @abstractmethod
    async def list_entities(
        self, entity_type: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Entities of a type whose fields equal every filter value."""

    # ==================== HITL requests ====================

    @abstractmethod
    async def save_hitl_request(self, request: HITLRequest) -> HITLRequest:
        """Insert or update a HITL request."""

    @abstractmethod
    async def get_hitl_request(self, request_id: str) -> Optional[HITLRequest]:
        """Fetch one HITL request or None."""

    @abstractmethod
    async def list_hitl_requests(
        self,
        execution_id: Optional[str] = None,
        status: Optional[HITLRequestStatus] = None,
    ) -> List[HITLRequest]:
        """HITL requests, oldest first."""


def _matches(entity: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    return all(entity.get(key) == value for key, value in (filters or {}).items())


class InMemoryDataStore(DataStore):
    """Process-local data store."""

    def __init__(self):
        self._entities: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._hitl_requests: Dict[str, HITLRequest] = {}

    async def create_entity(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        entity = copy.deepcopy(to_jsonable(data))
        entity.setdefault("id", str(uuid4()))
        entity.setdefault("created_at", datetime.utcnow().isoformat())
        self._entities.setdefault(entity_type, {})[entity["id"]] = entity
        return copy.deepcopy(entity)

    async def update_entity(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        entity = self._entities.get(entity_type, {}).get(entity_id)
        if entity is None:
            raise NotFoundError(entity_type, entity_id)
        entity.update(copy.deepcopy(to_jsonable(changes)))
        entity["updated_at"] = datetime.utcnow().isoformat()
        return copy.deepcopy(entity)

    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        entity = self._entities.get(entity_type, {}).get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    async def list_entities(
        self, entity_type: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(entity)
            for entity in self._entities.get(entity_type, {}).values()
            if _matches(entity, filters)
        ]

    async def save_hitl_request(self, request: HITLRequest) -> HITLRequest:
        self._hitl_requests[request.id] = request.model_copy(deep=True)
        return request

    async def get_hitl_request(self, request_id: str) -> Optional[HITLRequest]:
        request = self._hitl_requests.get(request_id)
        return request.model_copy(deep=True) if request is not None else None

    async def list_hitl_requests(
        self,
        execution_id: Optional[str] = None,
        status: Optional[HITLRequestStatus] = None,
    ) -> List[HITLRequest]:
        requests = [
            request.model_copy(deep=True)
            for request in self._hitl_requests.values()
            if (execution_id is None or request.execution_id == execution_id)
            and (status is None or request.status == status)
        ]
        return sorted(requests, key=lambda r: r.created_at)


class SqlAlchemyDataStore(DataStore):
    """Data store over the ``crm_records`` and ``hitl_requests`` tables."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ==================== CRM entities ====================

    async def create_entity(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        entity = to_jsonable(data)
        entity.setdefault("id", str(uuid4()))
        async with self.session_factory() as session:
            session.add(CRMRecord(id=entity["id"], entity_type=entity_type, data=entity))
            await session.commit()
        logger.debug("Entity created", entity_type=entity_type, entity_id=entity["id"])
        return entity

    async def update_entity(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            record = await session.get(CRMRecord, entity_id)
            if record is None or record.entity_type != entity_type:
                raise NotFoundError(entity_type, entity_id)
            record.data = {**(record.data or {}), **to_jsonable(changes)}
            await session.commit()
            return dict(record.data)

    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            record = await session.get(CRMRecord, entity_id)
            if record is None or record.entity_type != entity_type:
                return None
            return dict(record.data)

    async def list_entities(
        self, entity_type: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CRMRecord).where(CRMRecord.entity_type == entity_type).order_by(CRMRecord.created_at)
            )
            entities = [dict(record.data) for record in result.scalars().all()]
        return [entity for entity in entities if _matches(entity, filters)]

    # ==================== HITL requests ====================

    async def save_hitl_request(self, request: HITLRequest) -> HITLRequest:
        values = {
            "execution_id": request.execution_id,
            "workflow_id": request.workflow_id,
            "node_id": request.node_id,
            "phase": request.phase,
            "step_index": request.step_index,
            "prompt": request.prompt,
            "request_type": request.request_type,
            "options": to_jsonable(request.options),
            "channels": list(request.channels),
            "timeout_minutes": request.timeout_minutes,
            "timeout_action": request.timeout_action,
            "default_value": to_jsonable(request.default_value),
            "status": request.status.value,
            "requested_at": request.created_at,
            "expires_at": request.expires_at,
            "responded_at": request.responded_at,
            "response_value": to_jsonable(request.response_value),
            "response_context": to_jsonable(request.response_context),
            "assigned_to_user_id": request.assigned_to_user_id,
            "requested_by_user_id": request.requested_by_user_id,
            "execution_context": to_jsonable(request.execution_context),
            "is_test_mode": request.is_test_mode,
        }
        async with self.session_factory() as session:
            record = await session.get(HITLRequestRecord, request.id)
            if record is None:
                session.add(HITLRequestRecord(id=request.id, **values))
            else:
                for key, value in values.items():
                    setattr(record, key, value)
            await session.commit()
        return request

    async def get_hitl_request(self, request_id: str) -> Optional[HITLRequest]:
        async with self.session_factory() as session:
            record = await session.get(HITLRequestRecord, request_id)
            return self._to_request(record) if record is not None else None

    async def list_hitl_requests(
        self,
        execution_id: Optional[str] = None,
        status: Optional[HITLRequestStatus] = None,
    ) -> List[HITLRequest]:
        query = select(HITLRequestRecord)
        if execution_id is not None:
            query = query.where(HITLRequestRecord.execution_id == execution_id)
        if status is not None:
            query = query.where(HITLRequestRecord.status == HITLRequestStatus(status).value)
        query = query.order_by(HITLRequestRecord.requested_at)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [self._to_request(record) for record in result.scalars().all()]

    @staticmethod
    def _to_request(record: HITLRequestRecord) -> HITLRequest:
        return HITLRequest(
            id=record.id,
            execution_id=record.execution_id,
            workflow_id=record.workflow_id,
            node_id=record.node_id,
            phase=record.phase,
            step_index=record.step_index,
            prompt=record.prompt or "",
            request_type=record.request_type,
            options=record.options or [],
            channels=record.channels or [],
            timeout_minutes=record.timeout_minutes,
            timeout_action=record.timeout_action,
            default_value=record.default_value,
            status=HITLRequestStatus(record.status),
            created_at=naive_utc(record.requested_at),
            expires_at=naive_utc(record.expires_at),
            responded_at=naive_utc(record.responded_at),
            response_value=record.response_value,
            response_context=record.response_context or {},
            assigned_to_user_id=record.assigned_to_user_id,
            requested_by_user_id=record.requested_by_user_id,
            execution_context=record.execution_context or {},
            is_test_mode=record.is_test_mode,
        )
