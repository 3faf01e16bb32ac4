from typing import Any, Dict, List, Optional, Protocol

from ..models import Execution, ExecutionStatus, TaskResult, TaskStatus


class ExecutionStore(Protocol):
    """Durable record of executions and their task results.

    Every write targets a single row by id. The scheduler and executor are the
    only writers; status queries only read.
    """

    async def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        *,
        workflow_name: str = "",
        task_count: int = 0,
        input: Optional[Dict[str, Any]] = None,
    ) -> Execution: ...

    async def update_execution_status(
        self, execution_id: str, status: ExecutionStatus, error: Optional[str] = None
    ) -> None: ...

    async def get_execution(self, execution_id: str) -> Optional[Execution]: ...

    async def list_executions(self, limit: int = 20) -> List[Execution]: ...

    async def create_task_result(
        self,
        result_id: str,
        execution_id: str,
        task_id: str,
        task_name: str,
        agent_id: str,
    ) -> TaskResult: ...

    async def update_task_result(
        self,
        result_id: str,
        status: TaskStatus,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None: ...

    async def increment_retry_count(self, result_id: str) -> int: ...

    async def get_task_results(self, execution_id: str) -> List[TaskResult]: ...

    async def close(self) -> None: ...
