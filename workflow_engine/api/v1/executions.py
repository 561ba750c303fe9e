"""
Execution Endpoints

Start, resume and cancel workflow runs; query history and HITL requests.
The acting user is taken from the ``X-User-Id`` header.
"""

from datetime import datetime
from typing import AsyncGenerator, Optional, Union

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status

from ...container import EngineContainer
from ...logging_config import get_logger
from ...schemas.execution import (
    ClearHistoryResponse,
    ExecutionListResponse,
    ExecutionResponse,
    ExecutionStartedResponse,
    HealthResponse,
    HITLRequestListResponse,
    HITLRequestResponse,
    ResumeExecutionRequest,
    StartExecutionRequest,
)
from ...services.execution_service import ExecutionService
from ...services.identity import bind_user, reset_user
from ...workflows.state import HITLRequestStatus

logger = get_logger(__name__)
router = APIRouter()


# ==================== Dependencies ====================


def get_container(request: Request) -> EngineContainer:
    return request.app.state.container


def get_execution_service(container: EngineContainer = Depends(get_container)) -> ExecutionService:
    return container.execution_service


async def acting_user(x_user_id: Optional[str] = Header(None)) -> AsyncGenerator[Optional[str], None]:
    """Bind the caller's user id for the duration of the request."""
    token = bind_user(x_user_id)
    try:
        yield x_user_id
    finally:
        reset_user(token)


# ==================== Executions ====================


@router.post(
    "/workflows/{workflow_id}/executions",
    response_model=Union[ExecutionResponse, ExecutionStartedResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Start a workflow execution",
)
async def start_execution(
    workflow_id: str,
    body: StartExecutionRequest,
    response: Response,
    user_id: Optional[str] = Depends(acting_user),
    service: ExecutionService = Depends(get_execution_service),
):
    """
    Run a workflow from its trigger.

    By default the call waits until the run completes, fails or pauses for
    human input. With ``background=true`` it returns 202 with the execution id.
    """
    options = body.to_options(user_id)

    if body.background:
        execution_id = await service.start_execution_background(
            workflow_id, body.trigger_data, options, body.definition
        )
        response.status_code = status.HTTP_202_ACCEPTED
        return ExecutionStartedResponse(execution_id=execution_id, workflow_id=workflow_id)

    execution = await service.start_execution(workflow_id, body.trigger_data, options, body.definition)
    logger.info("Execution finished via API", execution_id=execution.id, status=execution.status.value)
    return ExecutionResponse.from_execution(execution)


@router.get("/workflows/{workflow_id}/executions", response_model=ExecutionListResponse)
async def list_workflow_executions(
    workflow_id: str,
    is_test_mode: Optional[bool] = Query(None, description="Filter live or simulation runs"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    service: ExecutionService = Depends(get_execution_service),
):
    executions = await service.list_executions(workflow_id, is_test_mode=is_test_mode, limit=limit)
    return ExecutionListResponse(
        executions=[ExecutionResponse.from_execution(e) for e in executions],
        total=len(executions),
    )


@router.delete("/workflows/{workflow_id}/executions", response_model=ClearHistoryResponse)
async def clear_workflow_history(
    workflow_id: str,
    service: ExecutionService = Depends(get_execution_service),
):
    deleted = await service.clear_history(workflow_id)
    return ClearHistoryResponse(workflow_id=workflow_id, deleted=deleted)


@router.get("/executions", response_model=ExecutionListResponse)
async def list_all_executions(
    limit: int = Query(50, ge=1, le=500),
    service: ExecutionService = Depends(get_execution_service),
):
    executions = await service.list_all_executions(limit)
    return ExecutionListResponse(
        executions=[ExecutionResponse.from_execution(e) for e in executions],
        total=len(executions),
    )


@router.get("/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: str,
    service: ExecutionService = Depends(get_execution_service),
):
    """Live record for a run in progress, otherwise the stored record."""
    return ExecutionResponse.from_execution(await service.get_execution(execution_id))


@router.post("/executions/{execution_id}/resume", response_model=ExecutionResponse)
async def resume_execution(
    execution_id: str,
    body: ResumeExecutionRequest,
    user_id: Optional[str] = Depends(acting_user),
    service: ExecutionService = Depends(get_execution_service),
):
    """
    Answer the pending HITL request and continue the run.

    409 when the request was already answered or the run is not waiting;
    410 when the request expired (its timeout action has been applied).
    """
    execution = await service.resume(execution_id, body.response_value, body.response_context)
    logger.info("Execution resumed via API", execution_id=execution_id, user_id=user_id)
    return ExecutionResponse.from_execution(execution)


@router.post("/executions/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    service: ExecutionService = Depends(get_execution_service),
):
    return ExecutionResponse.from_execution(await service.cancel(execution_id))


# ==================== HITL ====================


@router.get("/hitl-requests", response_model=HITLRequestListResponse)
async def list_hitl_requests(
    execution_id: Optional[str] = Query(None),
    request_status: Optional[HITLRequestStatus] = Query(None, alias="status"),
    service: ExecutionService = Depends(get_execution_service),
):
    requests = await service.list_hitl_requests(execution_id=execution_id, status=request_status)
    return HITLRequestListResponse(
        requests=[HITLRequestResponse.from_request(r) for r in requests],
        total=len(requests),
    )


@router.post("/hitl-requests/process-expired", response_model=ExecutionListResponse)
async def process_expired_hitl_requests(
    service: ExecutionService = Depends(get_execution_service),
):
    """Apply timeout actions of expired requests."""
    executions = await service.process_expired_hitl_requests()
    return ExecutionListResponse(
        executions=[ExecutionResponse.from_execution(e) for e in executions],
        total=len(executions),
    )


# ==================== Health ====================


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health(container: EngineContainer = Depends(get_container)):
    settings = container.settings
    return HealthResponse(
        status="healthy" if container.is_initialized and not container.is_shutdown else "degraded",
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        storage_backend=settings.STORAGE_BACKEND,
        timestamp=datetime.utcnow(),
        active_executions=container.execution_service.background_count,
    )
