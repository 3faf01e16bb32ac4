import copy
import time
from typing import Any, Dict, List, Optional

from ..models import Execution, ExecutionStatus, TaskResult, TaskStatus


class InMemoryExecutionStore:
    """Process-local store. Readers get copies so callers never alias stored rows."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self.executions: Dict[str, Execution] = {}
        self.task_results: Dict[str, TaskResult] = {}
        # Insertion order per execution; sorted by started_at on read
        self._results_by_execution: Dict[str, List[str]] = {}

    async def create_execution(self, execution_id, workflow_id, *, workflow_name="", task_count=0, input=None):
        execution = Execution(
            id=execution_id,
            workflow_id=workflow_id,
            status=ExecutionStatus.RUNNING,
            started_at=self._clock(),
            workflow_name=workflow_name,
            task_count=task_count,
            input=copy.deepcopy(input) if input else None,
        )
        self.executions[execution_id] = execution
        self._results_by_execution.setdefault(execution_id, [])
        return copy.deepcopy(execution)

    async def update_execution_status(self, execution_id, status, error=None):
        execution = self.executions[execution_id]
        execution.status = ExecutionStatus(status)
        execution.error = error
        if execution.status.is_terminal:
            execution.completed_at = self._clock()

    async def get_execution(self, execution_id) -> Optional[Execution]:
        execution = self.executions.get(execution_id)
        return copy.deepcopy(execution) if execution else None

    async def list_executions(self, limit=20) -> List[Execution]:
        ordered = sorted(self.executions.values(), key=lambda e: e.started_at, reverse=True)
        return [copy.deepcopy(e) for e in ordered[: max(0, limit)]]

    async def create_task_result(self, result_id, execution_id, task_id, task_name, agent_id):
        result = TaskResult(
            id=result_id,
            execution_id=execution_id,
            task_id=task_id,
            task_name=task_name,
            agent_id=agent_id,
            status=TaskStatus.RUNNING,
            started_at=self._clock(),
        )
        self.task_results[result_id] = result
        self._results_by_execution.setdefault(execution_id, []).append(result_id)
        return copy.deepcopy(result)

    async def update_task_result(self, result_id, status, output: Any = None, error=None):
        result = self.task_results[result_id]
        result.status = TaskStatus(status)
        result.output = copy.deepcopy(output)
        result.error = error
        if result.status.is_terminal:
            result.completed_at = self._clock()

    async def increment_retry_count(self, result_id) -> int:
        result = self.task_results[result_id]
        result.retry_count += 1
        return result.retry_count

    async def get_task_results(self, execution_id) -> List[TaskResult]:
        ids = self._results_by_execution.get(execution_id, [])
        results = [self.task_results[i] for i in ids]
        # sorted() is stable, so equal timestamps keep insertion order
        results = sorted(results, key=lambda r: r.started_at or 0.0)
        return [copy.deepcopy(r) for r in results]

    async def close(self):
        return None
