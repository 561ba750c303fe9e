"""
Workflow Execution

Graph model, variable context, node handlers and the walker that runs them.

Components:
- WorkflowGraph: nodes and labelled "runs after" edges
- VariableContext: scoped variables and ${...} resolution
- NodeRegistry: handler lookup by node kind / action type
- GraphWalker: executes a graph, pauses at HITL gates, resumes, cancels
"""

from .graph import WorkflowGraph
from .nodes import ActionType, FailurePolicy, HITLConfig, NodeKind, WorkflowEdge, WorkflowNode
from .registry import NodeRegistry, NodeServices, create_default_registry
from .state import (
    ExecutionContext,
    ExecutionOptions,
    ExecutionStatus,
    HITLRequest,
    HITLRequestStatus,
    NodeExecution,
    NodeExecutionStatus,
    WorkflowExecution,
)
from .variables import VariableContext, VariableScope
from .walker import GraphWalker, default_edge_predicate

__all__ = [
    "ActionType",
    "ExecutionContext",
    "ExecutionOptions",
    "ExecutionStatus",
    "FailurePolicy",
    "GraphWalker",
    "HITLConfig",
    "HITLRequest",
    "HITLRequestStatus",
    "NodeExecution",
    "NodeExecutionStatus",
    "NodeKind",
    "NodeRegistry",
    "NodeServices",
    "VariableContext",
    "VariableScope",
    "WorkflowEdge",
    "WorkflowExecution",
    "WorkflowGraph",
    "WorkflowNode",
    "create_default_registry",
    "default_edge_predicate",
]
