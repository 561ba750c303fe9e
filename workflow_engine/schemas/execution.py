"""
Execution Schemas

Request and response models for execution endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..workflows.state import (
    ExecutionOptions,
    HITLRequest,
    NodeExecution,
    TriggerType,
    WorkflowExecution,
)


class StartExecutionRequest(BaseModel):
    """Start a workflow run."""

    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Trigger payload")
    triggered_by: TriggerType = TriggerType.MANUAL
    workflow_name: Optional[str] = Field(None, max_length=200)

    # Simulation
    is_simulation: bool = False
    mock_data: Dict[str, Any] = Field(default_factory=dict)
    skip_hitl_in_simulation: Optional[bool] = None

    input_context: Dict[str, Any] = Field(default_factory=dict, description="Merged into the execution scope")
    definition: Optional[Dict[str, Any]] = Field(
        None, description="Inline workflow definition {nodes, edges}; the stored definition is used when omitted"
    )
    background: bool = Field(False, description="Return immediately and run on a background task")

    def to_options(self, user_id: Optional[str] = None) -> ExecutionOptions:
        return ExecutionOptions(
            triggered_by=self.triggered_by.value,
            workflow_name=self.workflow_name,
            user_id=user_id,
            is_simulation=self.is_simulation,
            mock_data=self.mock_data,
            skip_hitl_in_simulation=self.skip_hitl_in_simulation,
            input_context=self.input_context,
        )


class ResumeExecutionRequest(BaseModel):
    """Answer the pending HITL request of a paused run."""

    response_value: Any = None
    response_context: Dict[str, Any] = Field(default_factory=dict)


class NodeExecutionResponse(BaseModel):
    node_id: str
    node_type: str
    node_name: Optional[str] = None
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: NodeExecution) -> "NodeExecutionResponse":
        return cls.model_validate(entry.model_dump(mode="json"))


class ExecutionResponse(BaseModel):
    """Execution record."""

    id: str
    workflow_id: str
    workflow_name: Optional[str] = None
    triggered_by: str
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    node_executions: List[NodeExecutionResponse] = Field(default_factory=list)
    final_output: Any = None
    is_test_mode: bool = False
    error_log: List[Dict[str, Any]] = Field(default_factory=list)
    user_id: Optional[str] = None
    current_node_id: Optional[str] = None
    current_hitl_request_id: Optional[str] = None

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionResponse":
        return cls.model_validate(execution.to_dict())


class ExecutionStartedResponse(BaseModel):
    """Background start acknowledgement."""

    execution_id: str
    workflow_id: str
    status: str = "running"


class ExecutionListResponse(BaseModel):
    executions: List[ExecutionResponse]
    total: int


class HITLRequestResponse(BaseModel):
    id: str
    execution_id: str
    workflow_id: str
    node_id: str
    phase: str
    prompt: str
    request_type: str
    options: List[Any] = Field(default_factory=list)
    status: str
    timeout_action: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response_value: Any = None
    assigned_to_user_id: Optional[str] = None
    requested_by_user_id: Optional[str] = None
    is_test_mode: bool = False

    @classmethod
    def from_request(cls, request: HITLRequest) -> "HITLRequestResponse":
        return cls.model_validate(request.model_dump(mode="json"))


class HITLRequestListResponse(BaseModel):
    requests: List[HITLRequestResponse]
    total: int


class ClearHistoryResponse(BaseModel):
    workflow_id: str
    deleted: int


class HealthResponse(BaseModel):
    status: str = Field(..., description="healthy/degraded")
    version: str
    environment: str
    storage_backend: str
    timestamp: datetime
    active_executions: int = 0
