"""Runs one task: roster lookup, prompt assembly, provider call, durable lifecycle."""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Mapping, Optional

from .. import config
from ..errors import ErrorKind, TaskError
from ..gateway import ProviderGateway
from ..models import Agent, Task, TaskOutcome, TaskStatus
from ..prompts import build_context, build_prompt
from ..providers import ResolvedProvider, resolve_provider
from ..storage import ExecutionStore

logger = logging.getLogger(__name__)


def _new_result_id() -> str:
    return str(uuid.uuid4())


class TaskExecutor:
    """Executes a single task and records its TaskResult row.

    ``run`` never raises for roster, credential or provider problems; those come
    back as a failed ``TaskOutcome``. Only ``asyncio.CancelledError`` escapes,
    after the row has been marked failed.
    """

    def __init__(
        self,
        store: ExecutionStore,
        gateway: ProviderGateway,
        *,
        fallback_credentials: Optional[Mapping[str, str]] = None,
        default_max_retries: Optional[int] = None,
        default_temperature: Optional[float] = None,
        default_max_tokens: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.fallback_credentials = fallback_credentials
        self.default_max_retries = config.TASK_MAX_RETRIES if default_max_retries is None else default_max_retries
        self.default_temperature = config.DEFAULT_TEMPERATURE if default_temperature is None else default_temperature
        self.default_max_tokens = config.DEFAULT_MAX_TOKENS if default_max_tokens is None else default_max_tokens
        self._sleep = sleep

    async def reject(self, execution_id: str, task: Task, error: TaskError) -> TaskOutcome:
        """Record a task that fails before it can start."""
        result_id = _new_result_id()
        await self.store.create_task_result(result_id, execution_id, task.id, task.name, task.agent_id)
        await self.store.update_task_result(result_id, TaskStatus.FAILED, error=str(error))
        logger.warning("[exec=%s task=%s] Rejected: %s", execution_id, task.id, error)
        return TaskOutcome.failure(task.id, error)

    async def skip(self, execution_id: str, task: Task, reason: TaskError) -> None:
        """Record a task that will never run because a dependency did not complete."""
        result_id = _new_result_id()
        await self.store.create_task_result(result_id, execution_id, task.id, task.name, task.agent_id)
        await self.store.update_task_result(result_id, TaskStatus.SKIPPED, error=str(reason))
        logger.info("[exec=%s task=%s] Skipped: %s", execution_id, task.id, reason.message)

    async def run(
        self,
        execution_id: str,
        task: Task,
        agents: Mapping[str, Agent],
        prior_outputs: Mapping[str, Any],
        workflow_input: Optional[Mapping[str, Any]] = None,
        credentials: Optional[Mapping[str, str]] = None,
    ) -> TaskOutcome:
        agent = agents.get(task.agent_id)
        if agent is None:
            # The provider is never contacted for a task without an agent
            return await self.reject(
                execution_id,
                task,
                TaskError(ErrorKind.AGENT_NOT_FOUND, f"Agent {task.agent_id or '<empty>'} not found for task {task.id}"),
            )

        result_id = _new_result_id()
        await self.store.create_task_result(result_id, execution_id, task.id, task.name, agent.id)
        logger.info("[exec=%s task=%s] Started (agent=%s model=%s)", execution_id, task.id, agent.id, agent.model)

        try:
            outcome = await self._attempt(execution_id, result_id, task, agent, prior_outputs, workflow_input, credentials)
        except asyncio.CancelledError:
            error = TaskError(ErrorKind.CANCELLED, "Task cancelled before completion")
            await asyncio.shield(self.store.update_task_result(result_id, TaskStatus.FAILED, error=str(error)))
            logger.warning("[exec=%s task=%s] Cancelled", execution_id, task.id)
            raise
        except Exception as e:
            logger.exception("[exec=%s task=%s] Unexpected error", execution_id, task.id)
            outcome = TaskOutcome.failure(task.id, TaskError(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}"))

        if outcome.ok:
            await self.store.update_task_result(result_id, TaskStatus.COMPLETED, output=outcome.output)
            logger.info("[exec=%s task=%s] Completed", execution_id, task.id)
        else:
            await self.store.update_task_result(result_id, TaskStatus.FAILED, error=str(outcome.error))
            logger.warning("[exec=%s task=%s] Failed: %s", execution_id, task.id, outcome.error)
        return outcome

    async def _attempt(
        self,
        execution_id: str,
        result_id: str,
        task: Task,
        agent: Agent,
        prior_outputs: Mapping[str, Any],
        workflow_input: Optional[Mapping[str, Any]],
        credentials: Optional[Mapping[str, str]],
    ) -> TaskOutcome:
        context = build_context(task, prior_outputs, workflow_input)
        prompt = build_prompt(task, agent, has_context=bool(context))

        provider = resolve_provider(agent.model, credentials, self.fallback_credentials)
        if isinstance(provider, TaskError):
            return TaskOutcome.failure(task.id, provider)

        return await self._complete_with_retry(execution_id, result_id, task, agent, provider, prompt, context)

    async def _complete_with_retry(
        self,
        execution_id: str,
        result_id: str,
        task: Task,
        agent: Agent,
        provider: ResolvedProvider,
        prompt: str,
        context: Mapping[str, Any],
    ) -> TaskOutcome:
        max_retries = self.default_max_retries if task.max_retries is None else task.max_retries
        temperature = self.default_temperature if agent.temperature is None else agent.temperature
        max_tokens = self.default_max_tokens if agent.max_tokens is None else agent.max_tokens

        retries = 0
        while True:
            logger.debug(
                "[exec=%s task=%s] Calling %s (prompt_len=%d context_keys=%d)",
                execution_id, task.id, provider.family.value, len(prompt), len(context),
            )
            completion = await self.gateway.complete(
                provider,
                prompt,
                context,
                temperature=temperature,
                max_tokens=max_tokens,
                system_prompt=agent.system_prompt,
            )
            if completion.success:
                return TaskOutcome.success(task.id, completion.text)

            error = completion.error or TaskError(ErrorKind.INTERNAL, "Provider returned neither text nor error")
            if not error.retryable or retries >= max_retries:
                return TaskOutcome.failure(task.id, error)

            retries = await self.store.increment_retry_count(result_id)
            delay = self.gateway.backoff_delay(retries - 1)
            logger.warning(
                "[exec=%s task=%s] Retrying task after %s in %.2fs (retry %d/%d)",
                execution_id, task.id, error.kind.value, delay, retries, max_retries,
            )
            await self._sleep(delay)
