"""
Execution State

- NodeExecution: one entry of the per-node execution log
- WorkflowExecution: the execution record persisted at terminal states
- ExecutionOptions: caller-supplied run options (simulation, mocks, context)
- ExecutionContext: mutable state owned by the walker for one run
"""

import copy
from collections import deque
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .graph import WorkflowGraph
from .variables import VariableContext


class ExecutionStatus(str, Enum):
    """Status of a workflow execution record."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    WAITING_HITL = "waiting_hitl"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})


class NodeExecutionStatus(str, Enum):
    """Status of a single node execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerType(str, Enum):
    """How a run was started."""
    FORM = "form"
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    EVENT = "event"


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize database timestamps to naive UTC, matching datetime.utcnow()."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_jsonable(value: Any) -> Any:
    """Convert a value into JSON-compatible primitives."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return str(value)


class NodeExecution(BaseModel):
    """
    Record of one node run.

    Entries are append-only: once ``completed_at`` is set the entry is final.
    """
    node_id: str
    node_type: str
    node_name: Optional[str] = None
    status: NodeExecutionStatus = NodeExecutionStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.completed_at is not None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def start(self, input_data: Any = None) -> None:
        self._ensure_open()
        self.status = NodeExecutionStatus.RUNNING
        self.started_at = datetime.utcnow()
        self.input = to_jsonable(input_data)

    def complete(self, output: Any) -> None:
        self._finish(NodeExecutionStatus.COMPLETED, output=output)

    def fail(self, error: str, output: Any = None) -> None:
        self._finish(NodeExecutionStatus.FAILED, output=output, error=error)

    def skip(self, reason: Optional[str] = None) -> None:
        self._finish(NodeExecutionStatus.SKIPPED, error=reason)

    def _finish(self, status: NodeExecutionStatus, output: Any = None, error: Optional[str] = None) -> None:
        self._ensure_open()
        now = datetime.utcnow()
        if self.started_at is None:
            self.started_at = now
        self.status = status
        self.output = to_jsonable(output)
        self.error = error
        self.completed_at = now

    def _ensure_open(self) -> None:
        if self.completed_at is not None:
            raise ValueError(f"NodeExecution for {self.node_id} is already finished")


class WorkflowExecution(BaseModel):
    """
    Durable, observable record of one workflow run.

    Created with status ``running``; persisted when it reaches a terminal
    status or pauses in ``waiting_hitl``.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    workflow_name: Optional[str] = None
    triggered_by: str = TriggerType.MANUAL.value
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    node_executions: List[NodeExecution] = Field(default_factory=list)
    final_output: Any = None
    is_test_mode: bool = False
    error_log: List[Dict[str, Any]] = Field(default_factory=list)
    user_id: Optional[str] = None

    # Pause bookkeeping
    current_node_id: Optional[str] = None
    current_hitl_request_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def add_node_execution(self, node_execution: NodeExecution) -> NodeExecution:
        self.node_executions.append(node_execution)
        return node_execution

    def node_executions_for(self, node_id: str) -> List[NodeExecution]:
        return [entry for entry in self.node_executions if entry.node_id == node_id]

    def record_error(self, node_id: Optional[str], message: str, error_code: Optional[str] = None) -> Dict[str, Any]:
        """Append ``{node_id, error, timestamp}`` to the error log."""
        entry = {
            "node_id": node_id,
            "error": message,
            "timestamp": datetime.utcnow().isoformat(),
        }
        if error_code:
            entry["error_code"] = error_code
        self.error_log.append(entry)
        return entry

    def finish(self, status: ExecutionStatus) -> None:
        """Move to a terminal status."""
        self.status = status
        self.completed_at = datetime.utcnow()
        self.current_node_id = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowExecution":
        return cls.model_validate(data)


class HITLRequestStatus(str, Enum):
    """Lifecycle of a human-in-the-loop request."""
    PENDING = "pending"
    ANSWERED = "answered"
    EXPIRED = "expired"


class HITLRequest(BaseModel):
    """
    A pending external approval created by a HITL gate.

    Consumed exactly once: either answered, or expired by a timeout.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    execution_id: str
    workflow_id: str
    node_id: str
    phase: str = "before"  # before | after
    step_index: int = 0
    prompt: str = ""
    request_type: str = "confirmation"
    options: List[Any] = Field(default_factory=list)
    channels: List[str] = Field(default_factory=list)
    timeout_minutes: int = 60
    timeout_action: str = "fail"
    default_value: Any = None
    status: HITLRequestStatus = HITLRequestStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response_value: Any = None
    response_context: Dict[str, Any] = Field(default_factory=dict)
    assigned_to_user_id: Optional[str] = None
    requested_by_user_id: Optional[str] = None
    execution_context: Dict[str, Any] = Field(default_factory=dict)
    is_test_mode: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.utcnow()) >= self.expires_at


class ExecutionOptions(BaseModel):
    """Options for a single run."""
    execution_id: Optional[str] = None
    triggered_by: str = TriggerType.MANUAL.value
    workflow_name: Optional[str] = None
    user_id: Optional[str] = None

    # Simulation
    is_simulation: bool = False
    mock_data: Dict[str, Any] = Field(default_factory=dict)
    skip_hitl_in_simulation: Optional[bool] = None  # None: use settings

    # Extra values merged into the execution scope
    input_context: Dict[str, Any] = Field(default_factory=dict)


class ExecutionContext:
    """
    Mutable state of one run, owned exclusively by the walker.

    Holds the execution record, the variable context, the work queue and
    visited set, and per-join barrier state. Everything but in-flight tasks
    can be captured with to_snapshot() and rebuilt with from_snapshot().
    """

    def __init__(
        self,
        execution: WorkflowExecution,
        graph: WorkflowGraph,
        variables: VariableContext,
        options: Optional[ExecutionOptions] = None,
    ):
        self.execution = execution
        self.graph = graph
        self.variables = variables
        self.options = options or ExecutionOptions()

        self.queue: Deque[str] = deque()
        self.visited: Set[str] = set()
        self.join_state: Dict[str, Dict[str, Any]] = {}

        # HITL gates already answered, keyed "node_id:before" / "node_id:after"
        self.cleared_gates: Set[str] = set()
        self.last_completed_node: Optional[str] = None

        self.cancel_requested = False

        # NodeServices, attached by the walker
        self.services: Any = None

    @property
    def execution_id(self) -> str:
        return self.execution.id

    @property
    def workflow_id(self) -> str:
        return self.execution.workflow_id

    @property
    def node_outputs(self) -> Dict[str, Any]:
        return self.variables.node_outputs

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return self.execution.error_log

    @property
    def is_simulation(self) -> bool:
        return self.options.is_simulation

    def schedule(self, node_id: str) -> bool:
        """Queue a node unless it already ran or is already queued."""
        if node_id in self.visited or node_id in self.queue:
            return False
        self.queue.append(node_id)
        return True

    def to_snapshot(self) -> Dict[str, Any]:
        """Serializable state needed to resume the run in another process."""
        return {
            "graph": self.graph.to_dict(),
            "variables": self.variables.snapshot(),
            "queue": list(self.queue),
            "visited": sorted(self.visited),
            "join_state": copy.deepcopy(to_jsonable(self.join_state)),
            "cleared_gates": sorted(self.cleared_gates),
            "last_completed_node": self.last_completed_node,
            "options": self.options.model_dump(mode="json"),
        }

    @classmethod
    def from_snapshot(
        cls,
        execution: WorkflowExecution,
        snapshot: Dict[str, Any],
        graph: Optional[WorkflowGraph] = None,
    ) -> "ExecutionContext":
        """Rebuild a paused run; the graph is taken from the snapshot unless given."""
        context = cls(
            execution=execution,
            graph=graph or WorkflowGraph.from_dict(snapshot["graph"]),
            variables=VariableContext.restore(snapshot.get("variables") or {}),
            options=ExecutionOptions.model_validate(snapshot.get("options") or {}),
        )
        context.queue = deque(snapshot.get("queue") or [])
        context.visited = set(snapshot.get("visited") or [])
        context.join_state = copy.deepcopy(snapshot.get("join_state") or {})
        context.cleared_gates = set(snapshot.get("cleared_gates") or [])
        context.last_completed_node = snapshot.get("last_completed_node")
        return context
