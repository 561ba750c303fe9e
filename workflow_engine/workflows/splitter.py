"""
Splitter / Join

Fan-out: a multi-action splitter runs every directly connected action node
itself, in parallel or in edge order, and reports per-branch outcomes.

Fan-in: a join owns one future per incoming-edge source. The walker settles
each source as it completes (or seals it as skipped once nothing can reach
it any more); the join waits on those futures under its wait mode, racing
its timeout.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, model_validator

from ..exceptions import JoinTimeout, NodeHandlerError
from ..logging_config import get_logger
from .nodes import NodeKind, WorkflowNode
from .variables import VariableScope

if TYPE_CHECKING:
    from .graph import WorkflowGraph
    from .state import ExecutionContext

logger = get_logger(__name__)


# =============================================================================
# Splitter
# =============================================================================


@dataclass
class BranchResult:
    """Outcome of one splitter branch."""
    node_id: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    # Left to the main walk (gated node); neither succeeded nor failed
    deferred: bool = False

    def to_dict(self) -> Dict[str, Any]:
        entry = {"nodeId": self.node_id, "success": self.success}
        if self.deferred:
            entry["deferred"] = True
            entry["message"] = self.error
        elif self.success:
            entry["result"] = self.result
        else:
            entry["error"] = self.error
        return entry


BranchRunner = Callable[[str], Awaitable[BranchResult]]


def splitter_targets(graph: "WorkflowGraph", node_id: str) -> List[str]:
    """Connected action nodes a splitter runs itself, in edge order. Joins are excluded."""
    targets = []
    for target_id in graph.get_next_nodes(node_id):
        target = graph.get_node(target_id)
        if target.kind == NodeKind.ACTION and not target.is_join:
            targets.append(target_id)
    return targets


async def run_splitter(
    node: WorkflowNode,
    context: "ExecutionContext",
    run_branch: BranchRunner,
    max_parallel: int = 10,
) -> Dict[str, Any]:
    """
    Run every connected action node and collect ``{nodeId, success, result|error}``.

    The splitter never fails: a failed branch only lowers ``success``.
    """
    execution_mode = node.config.get("executionMode", "parallel")
    targets = splitter_targets(context.graph, node.id)
    timestamp = datetime.utcnow().isoformat()

    if not targets:
        logger.warning("Splitter has no connected action nodes", node_id=node.id)
        return {
            "action": "multi_action_completed",
            "success": True,
            "executionMode": execution_mode,
            "totalActions": 0,
            "executedActions": [],
            "message": "No connected action nodes found",
            "timestamp": timestamp,
        }

    logger.info("Splitting execution", node_id=node.id, mode=execution_mode, branches=len(targets))

    if execution_mode == "sequential":
        results = [await run_branch(target) for target in targets]
    else:
        semaphore = asyncio.Semaphore(max(1, max_parallel))

        async def bounded(target: str) -> BranchResult:
            async with semaphore:
                return await run_branch(target)

        gathered = await asyncio.gather(*(bounded(t) for t in targets), return_exceptions=True)
        results = [
            outcome if isinstance(outcome, BranchResult)
            else BranchResult(node_id=target, success=False, error=str(outcome) or type(outcome).__name__)
            for target, outcome in zip(targets, gathered)
        ]

    failed = sum(1 for r in results if not r.success and not r.deferred)
    deferred = sum(1 for r in results if r.deferred)
    succeeded = len(results) - failed - deferred
    message = f"Executed {len(results)} actions in {execution_mode} mode ({succeeded} succeeded, {failed} failed)"
    if deferred:
        message += f"; {deferred} awaiting human input"
    return {
        "action": "multi_action_completed",
        "success": failed == 0,
        "executionMode": execution_mode,
        "totalActions": len(results),
        "successfulActions": succeeded,
        "failedActions": failed,
        "deferredActions": deferred,
        "results": [r.to_dict() for r in results],
        "message": message,
        "timestamp": timestamp,
    }


# =============================================================================
# Join barrier
# =============================================================================


class BranchStatus:
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class JoinConfig(BaseModel):
    """Join node policy."""
    wait_mode: str = "all"  # all | any
    timeout_seconds: Optional[float] = None
    error_handling: str = "fail"  # fail | continue
    result_aggregation: str = "merge"  # merge | array | first | last

    @model_validator(mode="before")
    @classmethod
    def _from_node_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {
            "wait_mode": data.get("waitMode", data.get("wait_mode", "all")),
            "timeout_seconds": data.get("timeoutSeconds", data.get("timeout", data.get("timeout_seconds"))),
            "error_handling": data.get("errorHandling", data.get("error_handling", "fail")),
            "result_aggregation": data.get("resultAggregation", data.get("result_aggregation", "merge")),
        }


class JoinBarrier:
    """
    Wait-group for one join node.

    ``state`` is the serializable record kept in ``ExecutionContext.join_state``:
    ``{"settled": {source: {status, result, error}}, "order": [source, ...]}``
    with ``order`` the settle order. Futures are rebuilt from it on demand, so
    a barrier restored from a snapshot keeps what had already settled.
    """

    def __init__(self, node_id: str, sources: List[str], state: Dict[str, Any]):
        self.node_id = node_id
        self.sources = sources
        self.state = state
        self.state.setdefault("settled", {})
        self.state.setdefault("order", [])
        self._futures: Dict[str, asyncio.Future] = {}

    @classmethod
    def for_node(cls, context: "ExecutionContext", node_id: str) -> "JoinBarrier":
        sources: List[str] = []
        for edge in context.graph.incoming(node_id):
            if edge.source not in sources:
                sources.append(edge.source)
        state = context.join_state.setdefault(node_id, {})
        return cls(node_id, sources, state)

    @property
    def settled(self) -> Dict[str, Dict[str, Any]]:
        return self.state["settled"]

    def _future(self, source: str) -> asyncio.Future:
        future = self._futures.get(source)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            if source in self.settled:
                future.set_result(self.settled[source])
            self._futures[source] = future
        return future

    def settle(self, source: str, success: bool, result: Any = None, error: Optional[str] = None) -> None:
        """Record a branch outcome. A source settles at most once."""
        self._settle(source, {
            "status": BranchStatus.SUCCESS if success else BranchStatus.FAILED,
            "result": result,
            "error": error,
        })

    def seal(self, source: str) -> None:
        """Mark a source that can no longer be reached as skipped."""
        self._settle(source, {"status": BranchStatus.SKIPPED, "result": None, "error": None})

    def _settle(self, source: str, outcome: Dict[str, Any]) -> None:
        if source not in self.sources or source in self.settled:
            return
        self.settled[source] = outcome
        self.state["order"].append(source)
        future = self._futures.get(source)
        if future is not None and not future.done():
            future.set_result(outcome)
        logger.debug("Join branch settled", join_id=self.node_id, source=source, status=outcome["status"])

    def pending_sources(self) -> List[str]:
        return [source for source in self.sources if source not in self.settled]

    def outcomes(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Settled outcomes in settle order, tagged with their source."""
        return [
            {"source": source, **self.settled[source]}
            for source in self.state["order"]
            if status is None or self.settled[source]["status"] == status
        ]

    def is_satisfied(self, wait_mode: str) -> bool:
        if not self.pending_sources():
            return True
        if wait_mode == "any":
            return any(o["status"] == BranchStatus.SUCCESS for o in self.settled.values())
        return False

    async def wait(self, wait_mode: str = "all", timeout: Optional[float] = None) -> bool:
        """
        Block until the wait mode is satisfied.

        Returns:
            True if satisfied, False if ``timeout`` elapsed first
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None

        while not self.is_satisfied(wait_mode):
            pending = [self._future(source) for source in self.pending_sources()]
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            done, _ = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                return False
        return True


def aggregate_join(outcomes: List[Dict[str, Any]], aggregation: str) -> Any:
    """
    Combine successful branch results.

    merge: shallow merge of dict results, later branches win on conflict
    array: results in completion order
    first / last: earliest / latest completed result
    """
    results = [o["result"] for o in outcomes if o["status"] == BranchStatus.SUCCESS]
    if aggregation == "array":
        return results
    if aggregation == "first":
        return results[0] if results else None
    if aggregation == "last":
        return results[-1] if results else None

    merged: Dict[str, Any] = {}
    for result in results:
        if isinstance(result, dict):
            merged.update(result)
    return merged


async def run_join(
    node: WorkflowNode,
    context: "ExecutionContext",
    barrier: JoinBarrier,
    default_timeout: Optional[float] = None,
) -> Any:
    """
    Wait on the barrier and aggregate.

    Raises:
        JoinTimeout: Timeout elapsed with ``errorHandling=fail``
        NodeHandlerError: A branch failed with ``errorHandling=fail``
    """
    config = JoinConfig.model_validate(node.config)
    timeout = config.timeout_seconds if config.timeout_seconds is not None else default_timeout

    if not barrier.sources:
        return {
            "message": "No incoming branches to join",
            "waitMode": config.wait_mode,
            "timestamp": datetime.utcnow().isoformat(),
        }

    satisfied = await barrier.wait(config.wait_mode, timeout)
    succeeded = barrier.outcomes(BranchStatus.SUCCESS)
    failed = barrier.outcomes(BranchStatus.FAILED)

    if not satisfied:
        logger.warning(
            "Join timed out",
            node_id=node.id,
            timeout_seconds=timeout,
            settled=len(barrier.settled),
            expected=len(barrier.sources),
        )
        if config.error_handling == "fail":
            raise JoinTimeout(node.id, timeout, completed=len(barrier.settled), expected=len(barrier.sources))

    if failed and config.error_handling == "fail" and (config.wait_mode == "all" or not succeeded):
        errors = "; ".join(f"{o['source']}: {o['error']}" for o in failed)
        raise NodeHandlerError(
            f"Join failed: {len(failed)} branch(es) failed ({errors})",
            node_id=node.id,
            details={"failed_branches": [o["source"] for o in failed]},
        )

    result = aggregate_join(barrier.outcomes(), config.result_aggregation)
    context.variables.set(VariableScope.EXECUTION, "joinedResults", result)
    logger.info(
        "Join completed",
        node_id=node.id,
        wait_mode=config.wait_mode,
        succeeded=len(succeeded),
        failed=len(failed),
        aggregation=config.result_aggregation,
    )
    return result
