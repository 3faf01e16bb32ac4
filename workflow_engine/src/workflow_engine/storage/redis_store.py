"""Redis-backed ExecutionStore.

Layout under ``<prefix>:``
    execution:<id>             hash, one execution row
    task_result:<id>           hash, one task result row
    execution:<id>:results     zset of task result ids scored by started_at
    executions                 zset of execution ids scored by started_at
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

from ..models import Execution, ExecutionStatus, TaskResult, TaskStatus

logger = logging.getLogger(__name__)


def _encode_json(value: Any) -> str:
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False, default=str)


def _decode_json(raw: Optional[str]) -> Any:
    if raw in (None, ""):
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Stored JSON field could not be decoded; returning raw string")
        return raw


def _opt_float(raw: Optional[str]) -> Optional[float]:
    if raw in (None, ""):
        return None
    return float(raw)


def _opt_str(raw: Optional[str]) -> Optional[str]:
    return raw if raw not in (None, "") else None


class RedisExecutionStore:
    """Store backed by a ``redis.asyncio.Redis`` client created with ``decode_responses=True``."""

    def __init__(self, client, key_prefix: str = "wf", clock=time.time):
        self.client = client
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, *parts: str) -> str:
        return ":".join((self.key_prefix,) + parts)

    def _execution_key(self, execution_id: str) -> str:
        return self._key("execution", execution_id)

    def _result_key(self, result_id: str) -> str:
        return self._key("task_result", result_id)

    def _results_index(self, execution_id: str) -> str:
        return self._key("execution", execution_id, "results")

    # -- executions -----------------------------------------------------

    async def create_execution(self, execution_id, workflow_id, *, workflow_name="", task_count=0, input=None):
        started_at = self._clock()
        row = {
            "id": execution_id,
            "workflow_id": workflow_id,
            "workflow_name": workflow_name or "",
            "status": ExecutionStatus.RUNNING.value,
            "task_count": int(task_count),
            "input": _encode_json(input),
            "started_at": repr(started_at),
            "completed_at": "",
            "error": "",
        }
        pipe = self.client.pipeline()
        pipe.hset(self._execution_key(execution_id), mapping=row)
        pipe.zadd(self._key("executions"), {execution_id: started_at})
        await pipe.execute()
        return self._execution_from_hash(row)

    async def update_execution_status(self, execution_id, status, error=None):
        status = ExecutionStatus(status)
        fields: Dict[str, Any] = {"status": status.value, "error": error or ""}
        if status.is_terminal:
            fields["completed_at"] = repr(self._clock())
        await self.client.hset(self._execution_key(execution_id), mapping=fields)

    async def get_execution(self, execution_id) -> Optional[Execution]:
        row = await self.client.hgetall(self._execution_key(execution_id))
        if not row:
            return None
        return self._execution_from_hash(row)

    async def list_executions(self, limit=20) -> List[Execution]:
        if limit <= 0:
            return []
        ids = await self.client.zrevrange(self._key("executions"), 0, limit - 1)
        executions = []
        for execution_id in ids:
            execution = await self.get_execution(execution_id)
            if execution is not None:
                executions.append(execution)
        return executions

    # -- task results ---------------------------------------------------

    async def create_task_result(self, result_id, execution_id, task_id, task_name, agent_id):
        started_at = self._clock()
        row = {
            "id": result_id,
            "execution_id": execution_id,
            "task_id": task_id,
            "task_name": task_name or "",
            "agent_id": agent_id or "",
            "status": TaskStatus.RUNNING.value,
            "output": "",
            "error": "",
            "started_at": repr(started_at),
            "completed_at": "",
            "retry_count": 0,
        }
        pipe = self.client.pipeline()
        pipe.hset(self._result_key(result_id), mapping=row)
        pipe.zadd(self._results_index(execution_id), {result_id: started_at})
        await pipe.execute()
        return self._result_from_hash(row)

    async def update_task_result(self, result_id, status, output: Any = None, error=None):
        status = TaskStatus(status)
        fields: Dict[str, Any] = {
            "status": status.value,
            "output": _encode_json(output),
            "error": error or "",
        }
        if status.is_terminal:
            fields["completed_at"] = repr(self._clock())
        await self.client.hset(self._result_key(result_id), mapping=fields)

    async def increment_retry_count(self, result_id) -> int:
        return int(await self.client.hincrby(self._result_key(result_id), "retry_count", 1))

    async def get_task_results(self, execution_id) -> List[TaskResult]:
        ids = await self.client.zrange(self._results_index(execution_id), 0, -1)
        results = []
        for result_id in ids:
            row = await self.client.hgetall(self._result_key(result_id))
            if row:
                results.append(self._result_from_hash(row))
        return results

    async def close(self):
        await self.client.aclose()

    # -- decoding -------------------------------------------------------

    @staticmethod
    def _execution_from_hash(row: Dict[str, Any]) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row.get("workflow_id", ""),
            status=ExecutionStatus(row.get("status", ExecutionStatus.RUNNING.value)),
            started_at=float(row.get("started_at") or 0.0),
            completed_at=_opt_float(row.get("completed_at")),
            error=_opt_str(row.get("error")),
            workflow_name=row.get("workflow_name", ""),
            task_count=int(row.get("task_count") or 0),
            input=_decode_json(row.get("input")),
        )

    @staticmethod
    def _result_from_hash(row: Dict[str, Any]) -> TaskResult:
        return TaskResult(
            id=row["id"],
            execution_id=row.get("execution_id", ""),
            task_id=row.get("task_id", ""),
            task_name=row.get("task_name", ""),
            agent_id=row.get("agent_id", ""),
            status=TaskStatus(row.get("status", TaskStatus.RUNNING.value)),
            output=_decode_json(row.get("output")),
            error=_opt_str(row.get("error")),
            started_at=_opt_float(row.get("started_at")),
            completed_at=_opt_float(row.get("completed_at")),
            retry_count=int(row.get("retry_count") or 0),
        )
