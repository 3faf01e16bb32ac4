from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import TaskError


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)


# ---------------------------------------------------------------------------
# Definitions supplied by the caller (immutable while an execution runs)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Agent:
    id: str
    name: str = ""
    role: str = ""
    description: str = ""
    capabilities: List[str] = field(default_factory=list)
    model: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class Task:
    id: str
    name: str = ""
    description: str = ""
    agent_id: str = ""
    dependencies: List[str] = field(default_factory=list)
    input: Dict[str, Any] = field(default_factory=dict)
    prompt: Optional[str] = None
    max_retries: Optional[int] = None

    @property
    def prompt_override(self) -> Optional[str]:
        """Return a caller-built prompt, either top-level or under input["prompt"]."""
        if self.prompt:
            return self.prompt
        candidate = self.input.get("prompt") if self.input else None
        if isinstance(candidate, str) and candidate.strip():
            return candidate
        return None


@dataclass(frozen=True)
class Workflow:
    id: str
    name: str
    tasks: List[Task]
    agents: List[Agent]

    def agent_roster(self) -> Dict[str, Agent]:
        return {agent.id: agent for agent in self.agents}

    def task_ids(self) -> List[str]:
        return [task.id for task in self.tasks]


# ---------------------------------------------------------------------------
# Runtime records persisted through the ExecutionStore
# ---------------------------------------------------------------------------


@dataclass
class Execution:
    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: float = 0.0
    completed_at: Optional[float] = None
    error: Optional[str] = None
    workflow_name: str = ""
    task_count: int = 0
    input: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "workflowName": self.workflow_name,
            "status": self.status.value,
            "taskCount": self.task_count,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
        }


@dataclass
class TaskResult:
    id: str
    execution_id: str
    task_id: str
    task_name: str
    agent_id: str
    status: TaskStatus = TaskStatus.RUNNING
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    retry_count: int = 0

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return max(0.0, self.completed_at - self.started_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "taskName": self.task_name,
            "agentId": self.agent_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "duration": self.duration,
            "retryCount": self.retry_count,
        }


@dataclass(frozen=True)
class TaskOutcome:
    """What the task executor hands back to the scheduler; the only input to its control flow."""

    task_id: str
    ok: bool
    output: Any = None
    error: Optional[TaskError] = None

    @classmethod
    def success(cls, task_id: str, output: Any) -> "TaskOutcome":
        return cls(task_id=task_id, ok=True, output=output)

    @classmethod
    def failure(cls, task_id: str, error: TaskError) -> "TaskOutcome":
        return cls(task_id=task_id, ok=False, error=error)


@dataclass
class ExecutionView:
    """Status-query answer assembled from persisted rows only."""

    id: str
    workflow_id: str
    workflow_name: str
    status: ExecutionStatus
    progress: float
    task_results: List[TaskResult]
    started_at: float
    completed_at: Optional[float]
    error: Optional[str]
    summary: Dict[str, int]

    @classmethod
    def from_records(cls, execution: Execution, results: List[TaskResult]) -> "ExecutionView":
        total = execution.task_count or len(results)
        counts = {status.value: 0 for status in TaskStatus}
        for result in results:
            counts[result.status.value] += 1
        terminal = sum(1 for result in results if result.status.is_terminal)
        progress = (min(terminal, total) / total) * 100 if total else 0.0
        summary = {
            "total": total,
            "completed": counts[TaskStatus.COMPLETED.value],
            "failed": counts[TaskStatus.FAILED.value],
            "skipped": counts[TaskStatus.SKIPPED.value],
            "running": counts[TaskStatus.RUNNING.value],
            # Tasks with no row yet count as pending
            "pending": max(0, total - len(results)) + counts[TaskStatus.PENDING.value],
        }
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            workflow_name=execution.workflow_name,
            status=execution.status,
            progress=round(progress, 2),
            task_results=list(results),
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            # error is only meaningful once the execution is terminal
            error=execution.error if execution.status.is_terminal else None,
            summary=summary,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "workflowName": self.workflow_name,
            "status": self.status.value,
            "progress": self.progress,
            "taskResults": [result.to_dict() for result in self.task_results],
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
            "summary": self.summary,
        }
