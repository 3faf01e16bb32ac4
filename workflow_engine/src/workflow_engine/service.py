"""Invocation and status-query entry points.

``submit`` returns as soon as the execution row exists; the dispatch loop runs as
its own asyncio task. Status queries read only through the store, so they give the
same answer whether or not the loop runs in this process.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import config
from .errors import CANCELLED_MESSAGE, ExecutionNotFound, WorkflowValidationError
from .execution import WorkflowScheduler
from .models import Execution, ExecutionStatus, ExecutionView
from .request_validation import sanitize_execution_request
from .storage import ExecutionStore

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    execution_id: str
    status: ExecutionStatus
    handle: "asyncio.Task[ExecutionStatus]"

    def to_dict(self) -> Dict[str, Any]:
        return {"executionId": self.execution_id, "status": self.status.value}


class ExecutionService:
    def __init__(self, store: ExecutionStore, scheduler: WorkflowScheduler):
        self.store = store
        self.scheduler = scheduler
        self._handles: Dict[str, "asyncio.Task[ExecutionStatus]"] = {}

    @property
    def running_count(self) -> int:
        return sum(1 for handle in self._handles.values() if not handle.done())

    async def submit(self, document: Any) -> SubmitResult:
        """Validate, create the execution row and start the dispatch loop in the background.

        Raises ``WorkflowValidationError`` when the document cannot be executed at all.
        """
        request = sanitize_execution_request(document)
        if not request.ok:
            raise WorkflowValidationError(request.problems)

        execution = await self.scheduler.create_execution(request.workflow, request.input)
        handle = asyncio.create_task(
            self.scheduler.run(execution.id, request.workflow, request.input, request.credentials),
            name=f"execution-{execution.id}",
        )
        self._handles[execution.id] = handle
        handle.add_done_callback(lambda task, eid=execution.id: self._on_done(eid, task))
        return SubmitResult(execution_id=execution.id, status=execution.status, handle=handle)

    def _on_done(self, execution_id: str, task: "asyncio.Task[ExecutionStatus]") -> None:
        self._handles.pop(execution_id, None)
        if task.cancelled():
            logger.info("[exec=%s] Dispatch loop cancelled", execution_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[exec=%s] Dispatch loop ended with %r", execution_id, exc)

    async def get_execution(self, execution_id: str) -> ExecutionView:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        results = await self.store.get_task_results(execution_id)
        return ExecutionView.from_records(execution, results)

    async def list_executions(self, limit: Optional[int] = None) -> List[Execution]:
        limit = config.EXECUTION_LIST_LIMIT if limit is None else limit
        return await self.store.list_executions(max(0, limit))

    async def cancel(self, execution_id: str) -> bool:
        """Cancel a running execution. Returns False if it already finished or runs elsewhere."""
        handle = self._handles.get(execution_id)
        if handle is None or handle.done():
            if await self.store.get_execution(execution_id) is None:
                raise ExecutionNotFound(execution_id)
            return False
        handle.cancel()
        await asyncio.gather(handle, return_exceptions=True)
        await self._finalize_cancelled(execution_id)
        logger.info("[exec=%s] Cancelled by caller", execution_id)
        return True

    async def _finalize_cancelled(self, execution_id: str) -> None:
        """Finalize an execution whose loop was cancelled before its first step."""
        execution = await self.store.get_execution(execution_id)
        if execution is not None and not execution.status.is_terminal:
            await self.store.update_execution_status(execution_id, ExecutionStatus.FAILED, CANCELLED_MESSAGE)
            logger.info("[exec=%s] Finalized before dispatch started", execution_id)

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionView:
        """Await the in-process dispatch loop, then return the persisted view."""
        handle = self._handles.get(execution_id)
        if handle is not None:
            # On timeout the loop keeps running and the current view is returned
            await asyncio.wait({handle}, timeout=timeout)
        return await self.get_execution(execution_id)

    async def shutdown(self) -> None:
        running = {eid: h for eid, h in self._handles.items() if not h.done()}
        for handle in running.values():
            handle.cancel()
        if running:
            await asyncio.gather(*running.values(), return_exceptions=True)
            for execution_id in running:
                try:
                    await self._finalize_cancelled(execution_id)
                except Exception:
                    logger.exception("[exec=%s] Failed to record cancellation", execution_id)
            logger.info("Cancelled %d running execution(s) on shutdown", len(running))
