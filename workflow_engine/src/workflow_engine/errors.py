"""Error taxonomy shared by the gateway, task executor and scheduler.

Per-task problems travel as ``TaskError`` values rather than exceptions so the
scheduler only ever sees a result. Exceptions are reserved for caller mistakes
(``WorkflowValidationError``, ``ExecutionNotFound``) and for cancellation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    AGENT_NOT_FOUND = "AgentNotFound"
    DEPENDENCY_UNRESOLVED = "DependencyUnresolved"
    NO_CREDENTIAL = "NoCredential"
    UNKNOWN_MODEL = "UnknownModel"
    PROVIDER_HTTP = "ProviderHttp"
    TIMEOUT = "Timeout"
    MALFORMED = "Malformed"
    CANCELLED = "Cancelled"
    INTERNAL = "InternalError"


@dataclass(frozen=True)
class TaskError:
    kind: ErrorKind
    message: str
    status_code: Optional[int] = None
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


# Execution-level messages written to Execution.error
DEADLOCK_MESSAGE = "Circular dependency or failed dependencies detected"
TASKS_FAILED_MESSAGE = "One or more tasks failed"
CANCELLED_MESSAGE = "Execution cancelled"


class WorkflowValidationError(ValueError):
    """Raised by submit() when the workflow document cannot be executed at all."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid workflow")


class ExecutionNotFound(KeyError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(execution_id)

    def __str__(self) -> str:
        return f"Execution not found: {self.execution_id}"
