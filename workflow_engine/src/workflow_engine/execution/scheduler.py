"""Round-synchronous workflow scheduler.

Each round computes the ready set (tasks whose dependencies all completed),
fans it out concurrently through the TaskExecutor, and joins on every task
before the next ready set is computed. The output map is only written after
the join, so no lock guards it.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .. import config
from ..errors import (
    CANCELLED_MESSAGE,
    DEADLOCK_MESSAGE,
    TASKS_FAILED_MESSAGE,
    ErrorKind,
    TaskError,
)
from ..models import Agent, Execution, ExecutionStatus, Task, TaskOutcome, Workflow
from ..storage import ExecutionStore
from .executor import TaskExecutor

logger = logging.getLogger(__name__)


@dataclass
class ExecutionState:
    """Scheduler-owned state for one execution; discarded when it finalizes."""
    outputs: Dict[str, Any] = field(default_factory=dict)
    succeeded: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)
    # Tasks rejected at initialization for naming unknown dependencies
    unresolved: Set[str] = field(default_factory=set)
    rounds: int = 0

    @property
    def finished(self) -> Set[str]:
        return self.succeeded | self.failed

    def apply(self, outcome: TaskOutcome) -> None:
        if outcome.ok:
            self.outputs[outcome.task_id] = outcome.output
            self.succeeded.add(outcome.task_id)
        else:
            self.failed.add(outcome.task_id)


class WorkflowScheduler:
    def __init__(
        self,
        store: ExecutionStore,
        executor: TaskExecutor,
        *,
        max_concurrency: Optional[int] = None,
        skip_blocked: Optional[bool] = None,
    ):
        self.store = store
        self.executor = executor
        limit = config.MAX_CONCURRENT_TASKS if max_concurrency is None else max_concurrency
        # 0 or less keeps fan-out bounded only by the ready set
        self.max_concurrency = limit if limit and limit > 0 else None
        self.skip_blocked = config.SKIP_BLOCKED_TASKS if skip_blocked is None else skip_blocked

    async def create_execution(
        self, workflow: Workflow, workflow_input: Optional[Mapping[str, Any]] = None
    ) -> Execution:
        """Insert the execution row in ``running`` state under a fresh id."""
        execution_id = str(uuid.uuid4())
        execution = await self.store.create_execution(
            execution_id,
            workflow.id,
            workflow_name=workflow.name,
            task_count=len(workflow.tasks),
            input=dict(workflow_input) if workflow_input else None,
        )
        logger.info(
            "[exec=%s] Created for workflow %s (%d tasks, %d agents)",
            execution_id, workflow.id, len(workflow.tasks), len(workflow.agents),
        )
        return execution

    async def run(
        self,
        execution_id: str,
        workflow: Workflow,
        workflow_input: Optional[Mapping[str, Any]] = None,
        credentials: Optional[Mapping[str, str]] = None,
    ) -> ExecutionStatus:
        """Drive an already-created execution to its single terminal status."""
        state = ExecutionState()
        status, error = ExecutionStatus.FAILED, None
        try:
            await self._initialize(execution_id, workflow, state)
            status, error = await self._dispatch_loop(execution_id, workflow, state, workflow_input, credentials)
            if self.skip_blocked and len(state.finished) < len(workflow.tasks):
                await self._skip_blocked(execution_id, workflow, state)
        except asyncio.CancelledError:
            status, error = ExecutionStatus.FAILED, CANCELLED_MESSAGE
            raise
        except Exception as e:
            logger.exception("[exec=%s] Dispatch loop failed", execution_id)
            status, error = ExecutionStatus.FAILED, f"Unexpected execution error: {e}"
        finally:
            await self._finalize(execution_id, status, error, state)
        return status

    async def _initialize(self, execution_id: str, workflow: Workflow, state: ExecutionState) -> None:
        known = set(workflow.task_ids())
        for task in workflow.tasks:
            missing = [dep for dep in task.dependencies if dep not in known]
            if not missing:
                continue
            error = TaskError(
                ErrorKind.DEPENDENCY_UNRESOLVED,
                f"Task {task.id} depends on unknown task(s): {', '.join(missing)}",
            )
            state.apply(await self.executor.reject(execution_id, task, error))
            state.unresolved.add(task.id)

    def ready_set(self, workflow: Workflow, state: ExecutionState) -> List[Task]:
        finished = state.finished
        return [
            task for task in workflow.tasks
            if task.id not in finished and all(dep in state.succeeded for dep in task.dependencies)
        ]

    async def _dispatch_loop(
        self,
        execution_id: str,
        workflow: Workflow,
        state: ExecutionState,
        workflow_input: Optional[Mapping[str, Any]],
        credentials: Optional[Mapping[str, str]],
    ) -> Tuple[ExecutionStatus, Optional[str]]:
        agents = workflow.agent_roster()
        total = len(workflow.tasks)
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        while len(state.finished) < total:
            ready = self.ready_set(workflow, state)
            if not ready:
                blocked = [t.id for t in workflow.tasks if t.id not in state.finished]
                logger.warning("[exec=%s] Deadlock: no task can start; blocked=%s", execution_id, blocked)
                return ExecutionStatus.FAILED, DEADLOCK_MESSAGE

            state.rounds += 1
            logger.info("[exec=%s] Round %d: dispatching %d task(s)", execution_id, state.rounds, len(ready))
            outcomes = await asyncio.gather(*(
                self._dispatch(execution_id, task, agents, state.outputs, workflow_input, credentials, semaphore)
                for task in ready
            ))
            # Join point: outputs become visible to the next round only
            for outcome in outcomes:
                state.apply(outcome)

        if state.unresolved:
            return ExecutionStatus.FAILED, DEADLOCK_MESSAGE
        if state.failed:
            return ExecutionStatus.FAILED, TASKS_FAILED_MESSAGE
        return ExecutionStatus.COMPLETED, None

    async def _dispatch(
        self,
        execution_id: str,
        task: Task,
        agents: Mapping[str, Agent],
        prior_outputs: Mapping[str, Any],
        workflow_input: Optional[Mapping[str, Any]],
        credentials: Optional[Mapping[str, str]],
        semaphore: Optional[asyncio.Semaphore],
    ) -> TaskOutcome:
        try:
            if semaphore is None:
                return await self.executor.run(execution_id, task, agents, prior_outputs, workflow_input, credentials)
            async with semaphore:
                return await self.executor.run(execution_id, task, agents, prior_outputs, workflow_input, credentials)
        except Exception as e:
            # Store faults become a per-task InternalError
            logger.exception("[exec=%s task=%s] Executor raised", execution_id, task.id)
            return TaskOutcome.failure(task.id, TaskError(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}"))

    async def _skip_blocked(self, execution_id: str, workflow: Workflow, state: ExecutionState) -> None:
        for task in workflow.tasks:
            if task.id in state.finished:
                continue
            blockers = [dep for dep in task.dependencies if dep not in state.succeeded]
            reason = TaskError(
                ErrorKind.DEPENDENCY_UNRESOLVED,
                f"Not run; dependencies did not complete: {', '.join(blockers)}",
            )
            await self.executor.skip(execution_id, task, reason)

    async def _finalize(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: Optional[str],
        state: ExecutionState,
    ) -> None:
        try:
            await asyncio.shield(self.store.update_execution_status(execution_id, status, error))
        except Exception:
            logger.exception("[exec=%s] Failed to record final status %s", execution_id, status.value)
            return
        logger.info(
            "[exec=%s] Finalized as %s (completed=%d failed=%d rounds=%d)%s",
            execution_id, status.value, len(state.succeeded), len(state.failed), state.rounds,
            f": {error}" if error else "",
        )
