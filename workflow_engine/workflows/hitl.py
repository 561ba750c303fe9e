"""
Human-in-the-Loop Gate

A node configured with ``hitl_before`` or ``hitl_after`` pauses the run:
the gate creates a pending HITLRequest and the walker freezes the execution
in ``waiting_hitl``. Each request is consumed exactly once, either by an
answer or by expiry.
"""

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..config import Settings, settings as default_settings
from ..exceptions import AppException, HITLAlreadyAnswered, HITLTimeout, NotFoundError
from ..logging_config import get_logger
from .nodes import HITLConfig, WorkflowNode
from .state import HITLRequest, HITLRequestStatus, to_jsonable
from .variables import VariableScope

if TYPE_CHECKING:
    from ..services.data_store import DataStore
    from ..services.effects import EffectDispatcher
    from ..services.identity import IdentityProvider
    from .state import ExecutionContext

logger = get_logger(__name__)

PHASES = ("before", "after")


class TimeoutAction:
    FAIL = "fail"
    CONTINUE = "continue"
    USE_DEFAULT = "use_default"


def gate_key(node_id: str, phase: str) -> str:
    return f"{node_id}:{phase}"


class HITLGate:
    """Creates, answers and expires HITL requests."""

    def __init__(
        self,
        data_store: "DataStore",
        effects: Optional["EffectDispatcher"] = None,
        identity: Optional["IdentityProvider"] = None,
        settings: Optional[Settings] = None,
    ):
        self.data_store = data_store
        self.effects = effects
        self.identity = identity
        self.settings = settings or default_settings

    @staticmethod
    def config_for(node: WorkflowNode, phase: str) -> Optional[HITLConfig]:
        return node.hitl_before if phase == "before" else node.hitl_after

    def should_gate(self, node: WorkflowNode, phase: str, context: "ExecutionContext") -> bool:
        """True when the node's gate for ``phase`` is enabled and not yet cleared in this run."""
        config = self.config_for(node, phase)
        if config is None or not config.enabled:
            return False
        if gate_key(node.id, phase) in context.cleared_gates:
            return False
        if context.is_simulation:
            skip = context.options.skip_hitl_in_simulation
            if skip is None:
                skip = self.settings.SKIP_HITL_IN_SIMULATION
            if skip:
                logger.debug("HITL gate skipped in simulation", node_id=node.id, phase=phase)
                return False
        return True

    async def open_request(self, node: WorkflowNode, phase: str, context: "ExecutionContext") -> HITLRequest:
        """Create and persist a pending request for the node's gate."""
        config = self.config_for(node, phase)
        timeout_minutes = config.timeout_minutes or self.settings.DEFAULT_HITL_TIMEOUT_MINUTES
        created_at = datetime.utcnow()
        requested_by = self.identity.current_user_id() if self.identity is not None else None

        request = HITLRequest(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            node_id=node.id,
            phase=phase,
            step_index=len(context.execution.node_executions),
            prompt=context.variables.interpolate(config.prompt),
            request_type=config.request_type,
            options=context.variables.interpolate_value(config.options),
            channels=list(config.channels),
            timeout_minutes=timeout_minutes,
            timeout_action=config.timeout_action,
            default_value=config.default_value,
            created_at=created_at,
            expires_at=created_at + timedelta(minutes=timeout_minutes),
            assigned_to_user_id=config.assigned_to_user_id,
            requested_by_user_id=requested_by or context.options.user_id,
            execution_context={
                "nodeName": node.label,
                "previousOutput": to_jsonable(context.variables.get(VariableScope.WORKFLOW, "previousOutput")),
                "nodeOutput": to_jsonable(context.node_outputs.get(node.id)) if phase == "after" else None,
            },
            is_test_mode=context.is_simulation,
        )
        await self.data_store.save_hitl_request(request)
        logger.info(
            "HITL request created",
            request_id=request.id,
            execution_id=request.execution_id,
            node_id=node.id,
            phase=phase,
            expires_at=request.expires_at.isoformat(),
        )

        if "slack" in request.channels:
            await self._notify(request)
        return request

    async def _notify(self, request: HITLRequest) -> None:
        if self.effects is None:
            return
        try:
            await self.effects.dispatch("hitl_notification", {
                "channel": "slack",
                "request_id": request.id,
                "execution_id": request.execution_id,
                "prompt": request.prompt,
                "options": request.options,
                "request_type": request.request_type,
                "expires_at": request.expires_at.isoformat() if request.expires_at else None,
            })
        except AppException as e:
            logger.error("HITL notification failed", request_id=request.id, error=e.message)

    async def get(self, request_id: str) -> HITLRequest:
        request = await self.data_store.get_hitl_request(request_id)
        if request is None:
            raise NotFoundError("HITLRequest", request_id)
        return request

    async def answer(
        self,
        request_id: str,
        value: Any,
        response_context: Optional[Dict[str, Any]] = None,
    ) -> HITLRequest:
        """
        Consume a pending request with a response.

        Raises:
            NotFoundError: Unknown request
            HITLAlreadyAnswered: The request was answered before
            HITLTimeout: The request expired
        """
        request = await self.get(request_id)
        if request.status == HITLRequestStatus.ANSWERED:
            raise HITLAlreadyAnswered(request_id)
        if request.status == HITLRequestStatus.EXPIRED or request.is_expired():
            raise HITLTimeout(request_id)

        request.status = HITLRequestStatus.ANSWERED
        request.responded_at = datetime.utcnow()
        request.response_value = value
        request.response_context = dict(response_context or {})
        await self.data_store.save_hitl_request(request)
        logger.info("HITL request answered", request_id=request_id, execution_id=request.execution_id)
        return request

    async def expire(self, request: HITLRequest) -> HITLRequest:
        """Mark a request expired; a request already consumed is returned unchanged."""
        if request.status != HITLRequestStatus.PENDING:
            return request
        request.status = HITLRequestStatus.EXPIRED
        request.responded_at = datetime.utcnow()
        await self.data_store.save_hitl_request(request)
        logger.info(
            "HITL request expired",
            request_id=request.id,
            execution_id=request.execution_id,
            timeout_action=request.timeout_action,
        )
        return request

    async def expired_requests(self, now: Optional[datetime] = None) -> List[HITLRequest]:
        """Pending requests whose expiry has passed."""
        now = now or datetime.utcnow()
        pending = await self.data_store.list_hitl_requests(status=HITLRequestStatus.PENDING)
        return [request for request in pending if request.is_expired(now)]

    async def cancel_pending(self, execution_id: str) -> int:
        """Expire every pending request of an execution."""
        pending = await self.data_store.list_hitl_requests(execution_id=execution_id, status=HITLRequestStatus.PENDING)
        for request in pending:
            await self.expire(request)
        return len(pending)
