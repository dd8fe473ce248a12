"""Tests for engine/scheduler.py."""

import asyncio

import pytest

from changeflow.engine.scheduler import RecoveryDecision, Task, TaskScheduler
from changeflow.enums import TaskStatus, TaskType, WorkerRole
from changeflow.exceptions import DependencyFailedError, TaskExecutionError


def make_task(task_id: str, depends_on: set[str] | None = None, **kwargs) -> Task:
    return Task(id=task_id, type=TaskType.IMPLEMENT, input={"name": task_id}, depends_on=depends_on or set(), **kwargs)


class TestTask:
    """Tests for the Task dataclass."""

    def test_role_derived_from_type(self):
        assert Task(id="t", type=TaskType.TEST).assigned_role is WorkerRole.TESTER
        assert Task(id="p", type=TaskType.PLAN).assigned_role is WorkerRole.LEAD

    def test_explicit_role_kept(self):
        task = Task(id="t", type=TaskType.TEST, assigned_role=WorkerRole.REVIEWER)

        assert task.assigned_role is WorkerRole.REVIEWER


class TestValidation:
    """Tests for task graph validation."""

    def test_rejects_unknown_dependency(self):
        scheduler = TaskScheduler()

        with pytest.raises(ValueError, match="Invalid dependency"):
            scheduler.validate([make_task("a", {"missing"})])

    def test_rejects_cycle(self):
        scheduler = TaskScheduler()

        with pytest.raises(ValueError, match="Circular dependency"):
            scheduler.validate([make_task("a", {"b"}), make_task("b", {"a"})])

    def test_rejects_duplicate_ids(self):
        scheduler = TaskScheduler()

        with pytest.raises(ValueError, match="Duplicate task id"):
            scheduler.validate([make_task("a"), make_task("a")])

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            TaskScheduler(max_concurrency=0)

    @pytest.mark.asyncio
    async def test_run_rejects_before_executing(self):
        calls: list[str] = []

        async def execute(task: Task) -> None:
            calls.append(task.id)

        with pytest.raises(ValueError):
            await TaskScheduler().run([make_task("a", {"b"}), make_task("b", {"a"})], execute)
        assert calls == []


class TestRun:
    """Tests for TaskScheduler.run."""

    @pytest.mark.asyncio
    async def test_dependencies_complete_first(self):
        finished: list[str] = []

        async def execute(task: Task) -> str:
            await asyncio.sleep(0.01 if task.id == "b" else 0)
            finished.append(task.id)
            return task.id.upper()

        tasks = [make_task("a", {"b"}), make_task("b")]
        report = await TaskScheduler(max_concurrency=2).run(tasks, execute)

        assert finished == ["b", "a"]
        assert report.succeeded
        assert [r.task_id for r in report.results] == ["a", "b"]
        assert report.by_id()["a"].result == "A"
        assert all(task.status is TaskStatus.COMPLETED for task in tasks)

    @pytest.mark.asyncio
    async def test_concurrency_limit_is_respected(self):
        running = 0
        peak = 0

        async def execute(task: Task) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        tasks = [make_task(f"t{i}") for i in range(6)]
        report = await TaskScheduler(max_concurrency=2).run(tasks, execute)

        assert report.succeeded
        assert peak == 2

    @pytest.mark.asyncio
    async def test_ready_tasks_start_in_declaration_order(self):
        started: list[str] = []

        async def execute(task: Task) -> None:
            started.append(task.id)

        tasks = [make_task("c"), make_task("a"), make_task("b")]
        await TaskScheduler(max_concurrency=1).run(tasks, execute)

        assert started == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_failure_blocks_dependents(self):
        executed: list[str] = []

        async def execute(task: Task) -> None:
            executed.append(task.id)
            if task.id == "base":
                raise RuntimeError("boom")

        tasks = [make_task("base"), make_task("child", {"base"}), make_task("grandchild", {"child"})]
        report = await TaskScheduler().run(tasks, execute)

        assert executed == ["base"]
        results = report.by_id()
        assert isinstance(results["base"].error, RuntimeError)
        assert isinstance(results["child"].error, DependencyFailedError)
        assert results["child"].error.failed_dependencies == ["base"]
        assert isinstance(results["grandchild"].error, DependencyFailedError)
        assert all(task.status is TaskStatus.FAILED for task in tasks)

    @pytest.mark.asyncio
    async def test_independent_tasks_survive_a_failure(self):
        async def execute(task: Task) -> str:
            if task.id == "bad":
                raise RuntimeError("boom")
            return "ok"

        report = await TaskScheduler().run([make_task("bad"), make_task("good")], execute)

        assert not report.succeeded
        assert [r.task_id for r in report.completed] == ["good"]
        assert [r.task_id for r in report.failed] == ["bad"]

    @pytest.mark.asyncio
    async def test_tasks_from_an_earlier_run_are_reset(self):
        executed: list[str] = []

        async def execute(task: Task) -> None:
            executed.append(task.id)
            if task.id == "a" and len(executed) == 1:
                raise RuntimeError("boom")

        tasks = [make_task("a"), make_task("b", {"a"})]
        scheduler = TaskScheduler()
        first = await scheduler.run(tasks, execute)
        assert [task.status for task in tasks] == [TaskStatus.FAILED, TaskStatus.FAILED]

        second = await scheduler.run(tasks, execute)

        assert not first.succeeded
        assert second.succeeded
        assert executed == ["a", "a", "b"]
        assert all(task.status is TaskStatus.COMPLETED for task in tasks)
        assert all(result.attempts == 1 for result in second.results)

    @pytest.mark.asyncio
    async def test_non_pending_input_tasks_are_run(self):
        executed: list[str] = []

        async def execute(task: Task) -> None:
            executed.append(task.id)

        tasks = [make_task("a", status=TaskStatus.COMPLETED, retry_count=2), make_task("b", {"a"})]
        report = await TaskScheduler().run(tasks, execute)

        assert report.succeeded
        assert executed == ["a", "b"]
        assert tasks[0].retry_count == 0

    @pytest.mark.asyncio
    async def test_failed_attempt_without_error_raises(self, monkeypatch):
        scheduler = TaskScheduler()

        async def broken_attempt(task: Task, execute) -> tuple:
            return False, None, None, 0.0

        monkeypatch.setattr(scheduler, "_attempt", broken_attempt)

        with pytest.raises(RuntimeError, match="failed without an error"):
            await scheduler.run([make_task("a")], lambda task: asyncio.sleep(0))


class TestRecovery:
    """Tests for the recovery hook."""

    @pytest.mark.asyncio
    async def test_retry_until_success(self):
        attempts = 0

        async def execute(task: Task) -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise RuntimeError("flaky")
            return "done"

        async def recover(task: Task, error: Exception) -> RecoveryDecision:
            return RecoveryDecision.retry()

        task = make_task("t")
        report = await TaskScheduler(max_task_retries=2).run([task], execute, recover)

        assert report.succeeded
        assert report.results[0].attempts == 3
        assert task.retry_count == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        calls = 0

        async def execute(task: Task) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("always")

        async def recover(task: Task, error: Exception) -> RecoveryDecision:
            return RecoveryDecision.retry()

        report = await TaskScheduler(max_task_retries=2).run([make_task("t")], execute, recover)

        assert calls == 3
        assert not report.succeeded
        assert str(report.results[0].error) == "always"

    @pytest.mark.asyncio
    async def test_resolved_task_counts_as_completed(self):
        async def execute(task: Task) -> None:
            if task.id == "a":
                raise RuntimeError("nope")

        async def recover(task: Task, error: Exception) -> RecoveryDecision:
            return RecoveryDecision.resolve("fallback")

        report = await TaskScheduler().run([make_task("a"), make_task("b", {"a"})], execute, recover)

        assert report.succeeded
        assert report.by_id()["a"].result == "fallback"

    @pytest.mark.asyncio
    async def test_raising_hook_means_no_retry(self):
        calls = 0

        async def execute(task: Task) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("fails")

        async def recover(task: Task, error: Exception) -> RecoveryDecision:
            raise KeyError("hook broke")

        report = await TaskScheduler().run([make_task("t")], execute, recover)

        assert calls == 1
        assert not report.succeeded

    @pytest.mark.asyncio
    async def test_timeout_becomes_task_error(self):
        async def execute(task: Task) -> None:
            await asyncio.sleep(1)

        report = await TaskScheduler().run([make_task("slow", timeout=0.01)], execute)

        error = report.results[0].error
        assert isinstance(error, TaskExecutionError)
        assert error.task_id == "slow"
