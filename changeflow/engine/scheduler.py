"""
Bounded-concurrency task scheduling with dependency tracking and recovery.

This module runs a set of typed, interdependent tasks with at most
``max_concurrency`` of them executing at any moment. It is used by the
``implement`` and ``verify`` phases to fan work out over the code
transformer.

Scheduling rules:
    - A task is ready when it is pending and every task in ``depends_on``
      has completed.
    - Ready tasks start in declaration order. ``priority`` is bookkeeping
      for callers and never affects order.
    - When a task fails, the recovery hook is awaited immediately. It may
      ask for a retry (bounded by ``max_task_retries``), resolve the task
      with a substitute result, or let the failure stand.
    - Dependents of a failed task never run. They are reported failed with
      ``DependencyFailedError``.
    - Unknown dependency ids and dependency cycles are rejected before any
      task runs.

Example:
    >>> scheduler = TaskScheduler(max_concurrency=2)
    >>> tasks = [
    ...     Task(id="b", type=TaskType.IMPLEMENT, input={"file": "B.tsx"}),
    ...     Task(id="a", type=TaskType.IMPLEMENT, input={"file": "A.tsx"}, depends_on={"b"}),
    ... ]
    >>> report = await scheduler.run(tasks, execute=transform_file)
    >>> report.succeeded
    True

A scheduler instance holds only its limits, so one instance can serve many
concurrent sessions.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from changeflow.enums import Priority, TaskStatus, TaskType, WorkerRole
from changeflow.exceptions import DependencyFailedError, TaskExecutionError
from changeflow.models.domain import utcnow

log = structlog.get_logger(__name__)


@dataclass
class Task:
    """A unit of work for the scheduler.

    Attributes:
        id: Unique identifier, referenced by other tasks' ``depends_on``.
        type: Kind of work.
        input: Free-form payload handed to the execute callable.
        depends_on: Ids of tasks that must complete first.
        assigned_role: Worker role, derived from ``type`` when omitted.
        status: Scheduler-side state. Mutated by the scheduler only.
        retry_count: Retries granted so far by the recovery hook.
        priority: Caller bookkeeping. Does not affect scheduling order.
        timeout: Per-attempt timeout in seconds; falls back to the
            scheduler default.
    """

    id: str
    type: TaskType
    input: dict[str, Any] = field(default_factory=dict)
    depends_on: set[str] = field(default_factory=set)
    assigned_role: WorkerRole | None = None
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    priority: Priority = Priority.MEDIUM
    timeout: float | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.assigned_role is None:
            self.assigned_role = WorkerRole.for_task_type(self.type)
        self.depends_on = set(self.depends_on)


@dataclass
class TaskResult:
    """Outcome of a task after all of its attempts."""

    task_id: str
    success: bool
    result: Any = None
    error: Exception | None = None
    attempts: int = 0
    execution_time: float = 0.0
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class RecoveryDecision:
    """What the recovery hook wants done with a failed task.

    Attributes:
        should_retry: Re-enqueue the task (subject to ``max_task_retries``).
        resolved: Treat the task as completed with ``result``.
        result: Substitute result used when ``resolved`` is true.
    """

    should_retry: bool = False
    resolved: bool = False
    result: Any = None

    @classmethod
    def retry(cls) -> "RecoveryDecision":
        return cls(should_retry=True)

    @classmethod
    def give_up(cls) -> "RecoveryDecision":
        return cls()

    @classmethod
    def resolve(cls, result: Any) -> "RecoveryDecision":
        return cls(resolved=True, result=result)


ExecuteFn = Callable[[Task], Awaitable[Any]]
RecoverFn = Callable[[Task, Exception], Awaitable[RecoveryDecision]]


@dataclass
class ScheduleReport:
    """Results of a scheduler run, in task declaration order."""

    results: list[TaskResult]

    @property
    def succeeded(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def completed(self) -> list[TaskResult]:
        return [result for result in self.results if result.success]

    @property
    def failed(self) -> list[TaskResult]:
        return [result for result in self.results if not result.success]

    def by_id(self) -> dict[str, TaskResult]:
        return {result.task_id: result for result in self.results}


class TaskScheduler:
    """Run interdependent tasks under a concurrency limit.

    Attributes:
        max_concurrency: Maximum number of tasks running at any instant.
        max_task_retries: Maximum retries the recovery hook may grant a task.
        task_timeout: Default per-attempt timeout in seconds.
    """

    def __init__(self, max_concurrency: int = 2, max_task_retries: int = 2, task_timeout: float = 600.0) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.max_task_retries = max_task_retries
        self.task_timeout = task_timeout

    async def run(
        self,
        tasks: Iterable[Task],
        execute: ExecuteFn,
        recover: RecoverFn | None = None,
    ) -> ScheduleReport:
        """Execute every task, respecting dependencies and the concurrency limit.

        Args:
            tasks: Tasks in declaration order. Their ``status``,
                ``retry_count`` and timestamps are reset to a fresh run and
                updated in place, so ``Task`` objects can be reused.
            execute: Async callable performing one attempt of a task.
            recover: Optional async hook called with a failed task and its
                error. Returns a RecoveryDecision. A hook that raises counts
                as "do not retry".

        Returns:
            ScheduleReport with one result per task.

        Raises:
            ValueError: On duplicate ids, unknown dependencies or cycles.
        """
        declared = list(tasks)
        self.validate(declared)
        for task in declared:
            task.status = TaskStatus.PENDING
            task.retry_count = 0
            task.started_at = None
            task.completed_at = None

        results: dict[str, TaskResult] = {}
        first_started: dict[str, datetime] = {}
        elapsed: dict[str, float] = {task.id: 0.0 for task in declared}
        completed: set[str] = set()
        failed: set[str] = set()
        running: dict[asyncio.Task[Any], Task] = {}

        log.info(
            "schedule_started",
            total_tasks=len(declared),
            max_concurrency=self.max_concurrency,
        )

        try:
            while True:
                for task in declared:
                    if len(running) >= self.max_concurrency:
                        break
                    if task.status is TaskStatus.PENDING and task.depends_on <= completed:
                        task.status = TaskStatus.RUNNING
                        task.started_at = utcnow()
                        first_started.setdefault(task.id, task.started_at)
                        log.info(
                            "task_started",
                            task_id=task.id,
                            task_type=str(task.type),
                            role=str(task.assigned_role),
                            attempt=task.retry_count + 1,
                        )
                        running[asyncio.create_task(self._attempt(task, execute))] = task

                if not running:
                    break

                done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)

                for finished in done:
                    task = running.pop(finished)
                    success, value, error, duration = finished.result()
                    elapsed[task.id] += duration

                    if not success:
                        if error is None:
                            raise RuntimeError(f"Task {task.id} failed without an error")
                        decision = await self._recover(recover, task, error)
                        if decision.should_retry and task.retry_count < self.max_task_retries:
                            task.retry_count += 1
                            task.status = TaskStatus.PENDING
                            log.warning(
                                "task_retry_scheduled",
                                task_id=task.id,
                                retry_count=task.retry_count,
                                error=str(error),
                            )
                            continue
                        if decision.resolved:
                            success, value = True, decision.result
                            log.info("task_resolved_by_recovery", task_id=task.id)

                    task.completed_at = utcnow()
                    if success:
                        task.status = TaskStatus.COMPLETED
                        completed.add(task.id)
                        log.info("task_completed", task_id=task.id, execution_time=elapsed[task.id])
                    else:
                        task.status = TaskStatus.FAILED
                        failed.add(task.id)
                        log.error("task_failed", task_id=task.id, error=str(error))

                    results[task.id] = TaskResult(
                        task_id=task.id,
                        success=success,
                        result=value if success else None,
                        error=None if success else error,
                        attempts=task.retry_count + 1,
                        execution_time=elapsed[task.id],
                        started_at=first_started.get(task.id),
                        completed_at=task.completed_at,
                    )
        finally:
            for pending_task in running:
                pending_task.cancel()

        for task in declared:
            if task.status is TaskStatus.PENDING:
                blockers = sorted(dep for dep in task.depends_on if dep not in completed)
                task.status = TaskStatus.FAILED
                task.completed_at = utcnow()
                results[task.id] = TaskResult(
                    task_id=task.id,
                    success=False,
                    error=DependencyFailedError(task.id, blockers),
                )

        blocked = len(declared) - len(completed) - len(failed)
        log.info(
            "schedule_complete",
            total=len(declared),
            completed=len(completed),
            failed=len(failed),
            blocked=blocked,
        )
        return ScheduleReport(results=[results[task.id] for task in declared])

    def validate(self, tasks: list[Task]) -> None:
        """Reject duplicate ids, unknown dependencies and dependency cycles.

        Raises:
            ValueError: If the task graph is invalid
        """
        by_id: dict[str, Task] = {}
        for task in tasks:
            if task.id in by_id:
                raise ValueError(f"Duplicate task id: {task.id}")
            by_id[task.id] = task

        for task in tasks:
            for dep_id in task.depends_on:
                if dep_id not in by_id:
                    raise ValueError(f"Invalid dependency: {dep_id} referenced by {task.id} but not found")

        def has_cycle(task_id: str, visited: set[str], rec_stack: set[str]) -> bool:
            visited.add(task_id)
            rec_stack.add(task_id)
            for dep_id in sorted(by_id[task_id].depends_on):
                if dep_id not in visited:
                    if has_cycle(dep_id, visited, rec_stack):
                        return True
                elif dep_id in rec_stack:
                    log.error("circular_dependency_detected", task_id=task_id, dependency=dep_id)
                    return True
            rec_stack.remove(task_id)
            return False

        visited: set[str] = set()
        for task in tasks:
            if task.id not in visited and has_cycle(task.id, visited, set()):
                raise ValueError(f"Circular dependency detected involving task {task.id}")

    async def _attempt(self, task: Task, execute: ExecuteFn) -> tuple[bool, Any, Exception | None, float]:
        """Run one attempt of a task with its timeout. Never raises."""
        timeout = task.timeout if task.timeout is not None else self.task_timeout
        start_time = time.monotonic()
        try:
            value = await asyncio.wait_for(execute(task), timeout=timeout)
            return True, value, None, time.monotonic() - start_time
        except TimeoutError:
            log.error("task_timeout", task_id=task.id, timeout=timeout)
            error = TaskExecutionError(f"Task {task.id} timed out after {timeout}s", task_id=task.id)
            return False, None, error, time.monotonic() - start_time
        except Exception as e:
            log.error("task_exception", task_id=task.id, error=str(e), exc_info=True)
            return False, None, e, time.monotonic() - start_time

    async def _recover(self, recover: RecoverFn | None, task: Task, error: Exception) -> RecoveryDecision:
        if recover is None:
            return RecoveryDecision.give_up()
        try:
            return await recover(task, error)
        except Exception as e:
            log.error("recovery_hook_failed", task_id=task.id, error=str(e), exc_info=True)
            return RecoveryDecision.give_up()
