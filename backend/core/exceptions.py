"""Exception taxonomy for the workflow execution engine."""

from typing import Any, Optional


class WorkflowEngineException(Exception):
    """Base exception for the workflow execution engine."""

    retryable: bool = True

    def __init__(self, message: str, code: str = "ENGINE_ERROR"):
        """Initialize exception with message and machine-readable code.

        Args:
            message: Exception message
            code: Stable error code recorded in run history
        """
        self.message = message
        self.code = code
        super().__init__(self.message)


class GraphInvalidError(WorkflowEngineException):
    """Graph rejected at submission time (cycle, dangling edge, duplicate id)."""

    retryable = False

    def __init__(
        self,
        message: str = "Workflow graph is invalid",
        code: str = "GRAPH_INVALID",
        errors: Optional[list[Any]] = None,
    ):
        super().__init__(message, code)
        self.errors = errors or []


class SecurityViolation(WorkflowEngineException):
    """Sandboxed source matched a forbidden pattern or construct."""

    retryable = False

    def __init__(self, message: str = "Code contains disallowed references"):
        super().__init__(message, "SECURITY_VIOLATION")


class PolicyViolation(WorkflowEngineException):
    """Statement shape refused before reaching the data store."""

    retryable = False

    def __init__(self, message: str = "Statement rejected by policy"):
        super().__init__(message, "POLICY_VIOLATION")


class ExecutionError(WorkflowEngineException):
    """Handler-level failure: missing field, network error, provider error."""

    def __init__(self, message: str, code: str = "EXECUTION_ERROR"):
        super().__init__(message, code)


class TransientInfraError(ExecutionError):
    """Retriable failure reaching an external collaborator."""

    def __init__(self, message: str):
        super().__init__(message, "TRANSIENT_INFRA")


class SandboxRuntimeError(ExecutionError):
    """Sandboxed code passed the scan but failed while running."""

    def __init__(self, message: str):
        super().__init__(message, "SANDBOX_RUNTIME_ERROR")


class ContextWriteError(ExecutionError):
    """A node output was written to the execution context twice."""

    def __init__(self, node_id: str):
        super().__init__(
            f"Output for node '{node_id}' already recorded in this run",
            "CONTEXT_WRITE_ONCE",
        )
        self.node_id = node_id


class UnknownBlockTypeError(WorkflowEngineException):
    """Block type not recognized; converted to a skipped node, never fatal."""

    def __init__(self, block_type: Optional[str]):
        super().__init__(f"Unknown block type: {block_type}", "UNKNOWN_BLOCK_TYPE")
        self.block_type = block_type


class ExecutionNotFoundError(WorkflowEngineException):
    """Execution id unknown to this engine."""

    retryable = False

    def __init__(self, execution_id: str):
        super().__init__(f"Execution {execution_id} not found", "NOT_FOUND")
        self.execution_id = execution_id


class RemoteServiceError(ExecutionError):
    """Remote service answered with a client error; retrying will not help."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, "REMOTE_SERVICE_ERROR")
        self.status_code = status_code
