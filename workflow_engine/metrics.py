"""
Engine Metrics

Prometheus collectors for workflow runs:
- Executions by terminal status and mode
- Node executions by node type and status
- Node duration histogram
- HITL requests by outcome
"""

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, Info

from .config import settings


engine_info = Info("workflow_engine", "Workflow engine information")
engine_info.info({
    "name": settings.APP_NAME,
    "version": settings.APP_VERSION,
    "environment": settings.ENVIRONMENT,
})


# Execution Metrics
workflow_executions_total = Counter(
    "workflow_executions_total",
    "Workflow executions by final status and mode",
    ["status", "mode"],
)

workflow_executions_in_progress = Gauge(
    "workflow_executions_in_progress",
    "Workflow executions currently being walked",
)

workflow_execution_duration_seconds = Histogram(
    "workflow_execution_duration_seconds",
    "Wall time from execution start to terminal status",
    ["status"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 300, 600, 1800, 3600),
)


# Node Metrics
node_executions_total = Counter(
    "workflow_node_executions_total",
    "Node executions by node type and status",
    ["node_type", "status"],
)

node_duration_seconds = Histogram(
    "workflow_node_duration_seconds",
    "Node handler duration in seconds",
    ["node_type"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)


# HITL Metrics
hitl_requests_total = Counter(
    "workflow_hitl_requests_total",
    "HITL requests by outcome",
    ["outcome"],  # created | answered | expired
)


def _mode(is_test_mode: bool) -> str:
    return "test" if is_test_mode else "live"


def record_execution(status: str, is_test_mode: bool, duration_seconds: Optional[float]) -> None:
    """Count an execution that reached a terminal status."""
    workflow_executions_total.labels(status=status, mode=_mode(is_test_mode)).inc()
    if duration_seconds is not None:
        workflow_execution_duration_seconds.labels(status=status).observe(duration_seconds)


def record_node(node_type: str, status: str, duration_seconds: Optional[float]) -> None:
    """Count a finished node execution."""
    node_executions_total.labels(node_type=node_type, status=status).inc()
    if duration_seconds is not None:
        node_duration_seconds.labels(node_type=node_type).observe(duration_seconds)


def record_hitl(outcome: str) -> None:
    hitl_requests_total.labels(outcome=outcome).inc()
