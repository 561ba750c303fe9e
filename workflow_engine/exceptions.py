"""
Custom Exception Classes

This module defines the exceptions raised by the workflow engine,
providing specific error types with standardized status codes,
error codes for client-side handling, and detailed error information.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """
    Standardized error codes for client-side handling.

    Format: CATEGORY_SPECIFIC_ERROR
    Categories: RESOURCE, VALIDATION, SERVICE, WORKFLOW, NODE, HITL, JOIN, EXECUTION
    """
    # Resource errors
    RESOURCE_NOT_FOUND = "RESOURCE_001"
    RESOURCE_CONFLICT = "RESOURCE_002"

    # Data integrity errors
    DATA_CYCLE_DETECTED = "DATA_025"

    # Validation errors
    VALIDATION_FAILED = "VALIDATION_001"

    # Service errors
    SERVICE_UNAVAILABLE = "SERVICE_001"
    SERVICE_REDIS_ERROR = "SERVICE_002"
    SERVICE_DATABASE_ERROR = "SERVICE_003"
    SERVICE_EXTERNAL_ERROR = "SERVICE_004"

    # Workflow definition errors
    WORKFLOW_CONFIGURATION_INVALID = "WORKFLOW_001"
    WORKFLOW_NO_TRIGGER = "WORKFLOW_002"

    # Node execution errors
    NODE_HANDLER_FAILED = "NODE_001"

    # Human-in-the-loop errors
    HITL_TIMEOUT = "HITL_001"
    HITL_ALREADY_ANSWERED = "HITL_002"

    # Join errors
    JOIN_TIMEOUT = "JOIN_001"

    # Execution lifecycle errors
    EXECUTION_INVALID_STATE = "EXECUTION_001"

    # Internal errors
    INTERNAL_ERROR = "INTERNAL_001"


class AppException(Exception):
    """
    Base engine exception

    All engine exceptions inherit from this class so that callers and the
    HTTP layer can handle them uniformly.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code (default: 500)
        error_code: Standardized error code for client handling
        details: Additional error details as a dictionary
        retryable: Whether the operation can be retried
        retry_after: Suggested retry delay in seconds (if retryable)
    """
    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
        retry_after: Optional[int] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable
        }
        if self.retry_after:
            result["retry_after"] = self.retry_after
        return result


class NotFoundError(AppException):
    """
    Resource not found error

    Raised when a requested resource (execution, HITL request, entity) is not found.
    Returns HTTP 404.

    Example:
        raise NotFoundError("HITLRequest", "123e4567-e89b-12d3-a456-426614174000")
    """
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} with id {identifier} not found",
            status_code=404,
            error_code=ErrorCode.RESOURCE_NOT_FOUND,
            details={"resource": resource, "identifier": identifier}
        )


class ValidationError(AppException):
    """
    Validation error

    Raised when input values are out of range or malformed (e.g. a meeting
    rating outside 1-5). Returns HTTP 400.
    """
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            status_code=400,
            error_code=ErrorCode.VALIDATION_FAILED,
            details=details
        )


class ConflictError(AppException):
    """
    Resource conflict error

    Raised when an operation conflicts with the current state.
    Returns HTTP 409.
    """
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: ErrorCode = ErrorCode.RESOURCE_CONFLICT
    ):
        super().__init__(
            message,
            status_code=409,
            error_code=error_code,
            details=details
        )


class ServiceUnavailableError(AppException):
    """
    Backing service unavailable error

    Raised when Redis or the database cannot be reached.
    Returns HTTP 503. This is a retryable error.

    Example:
        raise ServiceUnavailableError("Redis", details={"host": "localhost:6379"})
    """
    def __init__(
        self,
        service: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: int = 5
    ):
        error_code = ErrorCode.SERVICE_UNAVAILABLE
        if service.lower() == "redis":
            error_code = ErrorCode.SERVICE_REDIS_ERROR
        elif service.lower() in ["database", "postgresql", "db"]:
            error_code = ErrorCode.SERVICE_DATABASE_ERROR

        super().__init__(
            f"Service {service} is unavailable",
            status_code=503,
            error_code=error_code,
            details={**(details or {}), "service": service},
            retryable=True,
            retry_after=retry_after
        )


class DatabaseError(AppException):
    """
    Database operation error

    Raised when a database operation fails (query errors, constraint violations).
    Returns HTTP 500. Usually retryable.
    """
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
        retry_after: int = 3
    ):
        super().__init__(
            message,
            status_code=500,
            error_code=ErrorCode.SERVICE_DATABASE_ERROR,
            details=details,
            retryable=retryable,
            retry_after=retry_after
        )


# ==================== Workflow Engine Errors ====================


class ConfigurationError(AppException):
    """
    Malformed workflow or node configuration

    Raised for missing required node fields, unknown node kinds,
    edges that point at unknown nodes, and similar definition problems.
    Returns HTTP 400.

    Example:
        raise ConfigurationError(
            "Assistant ID is required for custom-assistant node",
            node_id="gpt_1"
        )
    """
    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: ErrorCode = ErrorCode.WORKFLOW_CONFIGURATION_INVALID
    ):
        self.node_id = node_id
        merged = dict(details or {})
        if node_id:
            merged["node_id"] = node_id
        super().__init__(
            message,
            status_code=400,
            error_code=error_code,
            details=merged
        )


class NoTriggerFound(ConfigurationError):
    """
    Trigger selection failed

    Raised when a graph has no node without incoming edges, or more
    than one such node (ambiguous trigger).
    """
    def __init__(self, message: str = "No trigger node found in workflow", candidates: Optional[List[str]] = None):
        self.candidates = list(candidates or [])
        super().__init__(
            message,
            details={"candidates": self.candidates},
            error_code=ErrorCode.WORKFLOW_NO_TRIGGER
        )


class CycleDetectedError(ConfigurationError):
    """
    Cycle detected in the workflow graph

    Example:
        raise CycleDetectedError(cycle_path=["a", "b", "a"])
    """
    def __init__(
        self,
        message: str = "Workflow graph contains a cycle",
        cycle_path: Optional[List[str]] = None
    ):
        details = {}
        if cycle_path:
            details["cycle_path"] = cycle_path
        super().__init__(
            message,
            details=details,
            error_code=ErrorCode.DATA_CYCLE_DETECTED
        )


class NodeHandlerError(AppException):
    """
    A node handler raised

    Wraps any exception raised by a node handler. The original exception is
    kept as ``__cause__`` and ``original``. ``partial_output`` is what the
    walker records for the node when its failure policy is ``continue``.
    """
    def __init__(
        self,
        message: str,
        node_id: str,
        original: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
        partial_output: Any = None
    ):
        self.node_id = node_id
        self.original = original
        self.partial_output = partial_output
        merged = {**(details or {}), "node_id": node_id}
        if original is not None:
            merged["error_type"] = type(original).__name__
        super().__init__(
            message,
            status_code=500,
            error_code=ErrorCode.NODE_HANDLER_FAILED,
            details=merged
        )

    @classmethod
    def wrap(cls, node_id: str, error: BaseException) -> "NodeHandlerError":
        """Wrap an arbitrary exception raised while executing ``node_id``."""
        if isinstance(error, NodeHandlerError):
            return error
        wrapped = cls(str(error) or type(error).__name__, node_id=node_id, original=error)
        wrapped.__cause__ = error
        return wrapped


class ExternalProviderError(AppException):
    """
    External provider call failed

    Raised by AI providers, email/notification dispatchers and other external
    effects. Returns HTTP 502. This is a retryable error.
    """
    def __init__(
        self,
        message: str,
        provider: str = "external",
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
        retry_after: int = 1
    ):
        self.provider = provider
        super().__init__(
            message,
            status_code=502,
            error_code=ErrorCode.SERVICE_EXTERNAL_ERROR,
            details={**(details or {}), "provider": provider},
            retryable=retryable,
            retry_after=retry_after
        )


class HITLTimeout(AppException):
    """
    Human-in-the-loop request expired

    Raised when a HITL request passes its expiry with ``timeout_action=fail``,
    or when an answer arrives after expiry. Returns HTTP 410.
    """
    def __init__(self, request_id: str, message: Optional[str] = None):
        self.request_id = request_id
        super().__init__(
            message or f"HITL request {request_id} expired without a response",
            status_code=410,
            error_code=ErrorCode.HITL_TIMEOUT,
            details={"request_id": request_id}
        )


class HITLAlreadyAnswered(ConflictError):
    """
    Human-in-the-loop request answered twice

    A HITL request can be consumed exactly once.
    """
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            f"HITL request {request_id} has already been answered",
            details={"request_id": request_id},
            error_code=ErrorCode.HITL_ALREADY_ANSWERED
        )


class JoinTimeout(AppException):
    """
    Join node gave up waiting for its branches

    Returns HTTP 504.
    """
    def __init__(
        self,
        node_id: str,
        timeout_seconds: float,
        completed: int = 0,
        expected: int = 0
    ):
        self.node_id = node_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Join timeout after {timeout_seconds} seconds. Completed: {completed}/{expected}",
            status_code=504,
            error_code=ErrorCode.JOIN_TIMEOUT,
            details={
                "node_id": node_id,
                "timeout_seconds": timeout_seconds,
                "completed": completed,
                "expected": expected,
            }
        )


class ExecutionNotFound(NotFoundError):
    """Raised when resume/cancel targets an unknown execution."""
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__("WorkflowExecution", execution_id)


class InvalidExecutionState(ConflictError):
    """
    Execution is in the wrong state for the requested operation

    Example:
        raise InvalidExecutionState("exec-1", current_state="completed", expected="waiting_hitl")
    """
    def __init__(self, execution_id: str, current_state: str, expected: Optional[str] = None):
        details = {"execution_id": execution_id, "current_state": current_state}
        if expected:
            details["expected_state"] = expected
        super().__init__(
            f"Execution {execution_id} is {current_state}",
            details=details,
            error_code=ErrorCode.EXECUTION_INVALID_STATE
        )
