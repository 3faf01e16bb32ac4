"""Tests for the round-synchronous WorkflowScheduler."""

import asyncio
import itertools
import sys
from pathlib import Path

import pytest

# Ensure package path for local src
ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "workflow_engine" / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from workflow_engine.errors import (
    CANCELLED_MESSAGE,
    DEADLOCK_MESSAGE,
    TASKS_FAILED_MESSAGE,
    ErrorKind,
    TaskError,
)
from workflow_engine.execution import TaskExecutor, WorkflowScheduler
from workflow_engine.gateway import CompletionResult
from workflow_engine.models import Agent, ExecutionStatus, ExecutionView, Task, TaskStatus, Workflow
from workflow_engine.storage import InMemoryExecutionStore

CREDS = {"openai": "sk-test"}
AGENTS = [Agent(id="gen", role="generalist", model="gpt-4o-mini")]


def run(coro):
    return asyncio.run(coro)


class CountingStore(InMemoryExecutionStore):
    """In-memory store with a strictly increasing clock and a finalize counter."""

    def __init__(self):
        counter = itertools.count(1)
        super().__init__(clock=lambda: float(next(counter)))
        self.status_updates = []

    async def update_execution_status(self, execution_id, status, error=None):
        self.status_updates.append((execution_id, status, error))
        await super().update_execution_status(execution_id, status, error)


class PromptGateway:
    """Each task's prompt is its id; ``failures`` lists ids whose call fails."""

    def __init__(self, failures=(), delay=0.0):
        self.failures = set(failures)
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def complete(self, provider, prompt, context=None, temperature=0.7, max_tokens=2000, system_prompt=None):
        self.calls.append((prompt, dict(context or {})))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if prompt in self.failures:
            return CompletionResult(
                provider="openai", model=provider.model,
                error=TaskError(ErrorKind.PROVIDER_HTTP, f"{prompt} rejected", status_code=400),
            )
        return CompletionResult(provider="openai", model=provider.model, success=True, text=f"out-{prompt}")


def task(task_id, deps=(), agent_id="gen"):
    return Task(id=task_id, name=task_id, agent_id=agent_id, dependencies=list(deps), input={"prompt": task_id})


def workflow(*tasks, agents=AGENTS):
    return Workflow(id="wf-1", name="test", tasks=list(tasks), agents=list(agents))


def make_scheduler(gateway=None, **kwargs):
    store = CountingStore()
    gateway = gateway or PromptGateway()
    executor = TaskExecutor(store, gateway, fallback_credentials={}, default_max_retries=0)
    kwargs.setdefault("max_concurrency", 0)
    kwargs.setdefault("skip_blocked", False)
    return WorkflowScheduler(store, executor, **kwargs), store, gateway


def execute(scheduler, store, wf, workflow_input=None):
    async def go():
        execution = await scheduler.create_execution(wf, workflow_input)
        status = await scheduler.run(execution.id, wf, workflow_input, CREDS)
        view = ExecutionView.from_records(await store.get_execution(execution.id), await store.get_task_results(execution.id))
        return status, view

    return run(go())


def by_task(view):
    return {r.task_id: r for r in view.task_results}


class TestScenarios:
    def test_linear_chain(self):
        sched, store, gw = make_scheduler()
        status, view = execute(sched, store, workflow(task("A"), task("B", ["A"]), task("C", ["B"])))
        assert status == ExecutionStatus.COMPLETED
        assert view.status == ExecutionStatus.COMPLETED
        assert view.progress == 100
        assert view.error is None
        rows = by_task(view)
        assert all(r.status == TaskStatus.COMPLETED for r in rows.values())
        assert rows["B"].started_at > rows["A"].completed_at
        assert rows["C"].started_at > rows["B"].completed_at
        # Downstream prompt sees upstream output
        contexts = dict(gw.calls)
        assert contexts["B"] == {"A": "out-A"}
        assert contexts["C"] == {"B": "out-B"}

    def test_diamond_with_one_failure(self):
        sched, store, _ = make_scheduler(PromptGateway(failures={"B"}))
        wf = workflow(task("A"), task("B", ["A"]), task("C", ["A"]), task("D", ["B", "C"]))
        status, view = execute(sched, store, wf)
        assert status == ExecutionStatus.FAILED
        assert view.error == DEADLOCK_MESSAGE
        rows = by_task(view)
        assert rows["C"].status == TaskStatus.COMPLETED
        assert rows["B"].status == TaskStatus.FAILED
        assert "D" not in rows
        assert view.progress == 75
        assert view.summary["pending"] == 1

    def test_unknown_model(self):
        sched, store, gw = make_scheduler()
        wf = workflow(task("only", agent_id="x"), agents=[Agent(id="x", model="unsupported-model-x")])
        status, view = execute(sched, store, wf)
        assert status == ExecutionStatus.FAILED
        row = view.task_results[0]
        assert row.status == TaskStatus.FAILED
        assert row.error.startswith("UnknownModel:")
        assert gw.calls == []


class TestDeadlock:
    def test_cycle_terminates_failed(self):
        sched, store, gw = make_scheduler()
        status, view = execute(sched, store, workflow(task("A", ["B"]), task("B", ["A"])))
        assert status == ExecutionStatus.FAILED
        assert view.error == DEADLOCK_MESSAGE
        assert view.task_results == []
        assert gw.calls == []

    def test_self_dependency(self):
        sched, store, _ = make_scheduler()
        status, view = execute(sched, store, workflow(task("ok"), task("me", ["me"])))
        assert status == ExecutionStatus.FAILED
        assert view.error == DEADLOCK_MESSAGE
        assert by_task(view)["ok"].status == TaskStatus.COMPLETED

    def test_unknown_dependency_recorded_per_task(self):
        sched, store, _ = make_scheduler()
        status, view = execute(sched, store, workflow(task("A"), task("B", ["nope"])))
        assert status == ExecutionStatus.FAILED
        rows = by_task(view)
        assert rows["A"].status == TaskStatus.COMPLETED
        assert rows["B"].status == TaskStatus.FAILED
        assert rows["B"].error.startswith("DependencyUnresolved:")
        # A dependency that can never be satisfied reports as a deadlock
        assert view.error == DEADLOCK_MESSAGE


class TestFailureSemantics:
    def test_independent_task_still_completes(self):
        sched, store, _ = make_scheduler(PromptGateway(failures={"X"}))
        status, view = execute(sched, store, workflow(task("X"), task("Y")))
        assert status == ExecutionStatus.FAILED
        assert view.error == TASKS_FAILED_MESSAGE
        rows = by_task(view)
        assert rows["Y"].status == TaskStatus.COMPLETED
        assert rows["X"].status == TaskStatus.FAILED

    def test_missing_agent_is_per_task(self):
        sched, store, gw = make_scheduler()
        status, view = execute(sched, store, workflow(task("lost", agent_id="ghost"), task("fine")))
        rows = by_task(view)
        assert rows["lost"].error.startswith("AgentNotFound:")
        assert rows["fine"].status == TaskStatus.COMPLETED
        assert [p for p, _ in gw.calls] == ["fine"]

    @pytest.mark.parametrize("failures", [(), ("A",), ("A", "B", "C")])
    def test_finalized_exactly_once(self, failures):
        sched, store, _ = make_scheduler(PromptGateway(failures=set(failures)))
        execute(sched, store, workflow(task("A"), task("B"), task("C", ["A"])))
        assert len(store.status_updates) == 1

    def test_store_fault_in_one_task_isolated(self):
        sched, store, _ = make_scheduler()
        original = store.create_task_result

        async def flaky(result_id, execution_id, task_id, task_name, agent_id):
            if task_id == "bad":
                raise ConnectionError("store unavailable")
            return await original(result_id, execution_id, task_id, task_name, agent_id)

        store.create_task_result = flaky
        status, view = execute(sched, store, workflow(task("bad"), task("good")))
        assert status == ExecutionStatus.FAILED
        assert by_task(view)["good"].status == TaskStatus.COMPLETED
        assert len(store.status_updates) == 1


class TestSkipBlocked:
    def test_blocked_tasks_marked_skipped(self):
        sched, store, _ = make_scheduler(PromptGateway(failures={"B"}), skip_blocked=True)
        wf = workflow(task("A"), task("B", ["A"]), task("C", ["A"]), task("D", ["B", "C"]), task("E", ["D"]))
        status, view = execute(sched, store, wf)
        assert status == ExecutionStatus.FAILED
        assert view.error == DEADLOCK_MESSAGE
        rows = by_task(view)
        assert rows["D"].status == TaskStatus.SKIPPED
        assert rows["E"].status == TaskStatus.SKIPPED
        assert "B" in rows["D"].error
        assert view.progress == 100
        assert view.summary["skipped"] == 2


class TestConcurrency:
    def test_ready_set_runs_concurrently(self):
        gw = PromptGateway(delay=0.02)
        sched, store, _ = make_scheduler(gw)
        execute(sched, store, workflow(*(task(f"t{i}") for i in range(5))))
        assert gw.max_in_flight == 5

    def test_semaphore_caps_fan_out(self):
        gw = PromptGateway(delay=0.02)
        sched, store, _ = make_scheduler(gw, max_concurrency=2)
        status, _ = execute(sched, store, workflow(*(task(f"t{i}") for i in range(5))))
        assert status == ExecutionStatus.COMPLETED
        assert gw.max_in_flight == 2

    def test_cancellation_finalizes_once(self):
        gw = PromptGateway(delay=30)
        sched, store, _ = make_scheduler(gw)
        wf = workflow(task("A"), task("B"), task("C", ["A"]))

        async def go():
            execution = await sched.create_execution(wf)
            job = asyncio.create_task(sched.run(execution.id, wf, None, CREDS))
            while len(gw.calls) < 2:
                await asyncio.sleep(0.01)
            job.cancel()
            with pytest.raises(asyncio.CancelledError):
                await job
            return execution.id

        execution_id = run(go())
        assert len(store.status_updates) == 1
        _, status, error = store.status_updates[0]
        assert status == ExecutionStatus.FAILED
        assert error == CANCELLED_MESSAGE
        rows = store.task_results.values()
        assert {r.task_id for r in rows} == {"A", "B"}
        assert all(r.error.startswith("Cancelled:") for r in rows)
        assert store.executions[execution_id].completed_at is not None
