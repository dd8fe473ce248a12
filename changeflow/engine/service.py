"""
Caller-facing surface of the engine: submit, poll and cancel sessions.

``WorkflowService.submit`` creates the session and starts its pipeline as a
background ``asyncio.Task`` owned by the service, then returns the session
id without waiting for the run. The CLI and the HTTP API are thin layers on
top of this class.

Cancellation is cooperative: ``cancel`` fails the session in the store with
reason ``cancelled``. The running pipeline notices on its next store
mutation (``SessionTerminatedError``) and stops without retrying. External
calls already in flight are allowed to finish.

Example:
    >>> service = WorkflowService(store, settings)
    >>> session_id = await service.submit(batch)
    >>> (await service.get_status(session_id)).status
    <SessionStatus.RECEIVED: 'received'>
    >>> await service.cancel(session_id)
"""

import asyncio
from collections.abc import Callable

import structlog

from changeflow.config.settings import OrchestratorSettings
from changeflow.engine.phases.base import SleepFn
from changeflow.engine.pipeline import PhasePipeline
from changeflow.engine.resolver import DependencyResolver
from changeflow.engine.scheduler import TaskScheduler
from changeflow.engine.session_store import SessionStore
from changeflow.enums import FailureReason
from changeflow.exceptions import SessionNotCancellableError, SessionNotFoundError, SessionTerminatedError
from changeflow.models.domain import ChangeBatch, Session, SessionSummary
from changeflow.providers.factory import Hosts, create_hosts

log = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "Processing cancelled by user"

HostsFactory = Callable[[ChangeBatch], Hosts]


class WorkflowService:
    """Owns background pipeline runs for submitted batches.

    Attributes:
        store: Session store shared by every run.
        settings: Orchestrator configuration.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: OrchestratorSettings,
        hosts_factory: HostsFactory | None = None,
        resolver: DependencyResolver | None = None,
        scheduler: TaskScheduler | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Initialize the service.

        Args:
            store: Session store.
            settings: Orchestrator configuration.
            hosts_factory: Builds the hosts for a batch. Defaults to
                ``create_hosts`` with ``settings``.
            resolver: Resolver shared by all runs.
            scheduler: Scheduler shared by all runs.
            sleep: Awaitable sleep used for backoff and polling.
        """
        self.store = store
        self.settings = settings
        self._hosts_factory = hosts_factory or (lambda batch: create_hosts(settings, batch))
        self._resolver = resolver
        self._scheduler = scheduler
        self._sleep = sleep
        self._runs: dict[str, asyncio.Task[Session | None]] = {}

    async def submit(self, batch: ChangeBatch) -> str:
        """Create a session for ``batch`` and start its pipeline in the background.

        Returns:
            The new session id. The pipeline keeps running after return.
        """
        session = await self.store.create(Session.new(batch, ttl_seconds=self.store.ttl_seconds))
        task = asyncio.create_task(self._run(session.id, batch), name=f"pipeline:{session.id}")
        self._runs[session.id] = task
        task.add_done_callback(lambda _: self._runs.pop(session.id, None))
        log.info(
            "batch_submitted",
            session_id=session.id,
            kind=str(batch.kind),
            repository=batch.repository,
            changes=len(batch.changes),
        )
        return session.id

    async def get_status(self, session_id: str) -> SessionSummary | None:
        """Summary view of a session, or None when missing or expired."""
        return await self.store.summary(session_id)

    async def cancel(self, session_id: str) -> SessionSummary:
        """Cancel a session that is still in a cancellable state.

        Raises:
            SessionNotFoundError: If the session is missing or expired
            SessionNotCancellableError: If the session is deploying or finished
        """
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not session.status.is_cancellable:
            raise SessionNotCancellableError(session_id, str(session.status))

        try:
            await self.store.mark_failed(session_id, CANCELLED_MESSAGE, FailureReason.CANCELLED)
        except SessionTerminatedError as e:
            raise SessionNotCancellableError(session_id, e.status) from e

        log.info("session_cancelled", session_id=session_id)
        summary = await self.store.summary(session_id)
        if summary is None:
            raise SessionNotFoundError(session_id)
        return summary

    def is_running(self, session_id: str) -> bool:
        return session_id in self._runs

    async def wait(self, session_id: str, timeout: float | None = None) -> Session | None:
        """Wait for a background run to finish and return the final session."""
        task = self._runs.get(session_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.store.get(session_id)

    async def shutdown(self) -> None:
        """Cancel every background run and wait for them to unwind."""
        tasks = list(self._runs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.info("workflow_service_stopped", cancelled_runs=len(tasks))

    async def _run(self, session_id: str, batch: ChangeBatch) -> Session | None:
        try:
            hosts = self._hosts_factory(batch)
        except Exception as e:
            log.error("hosts_creation_failed", session_id=session_id, error=str(e), exc_info=True)
            await self.store.mark_failed(session_id, str(e), FailureReason.FATAL)
            return await self.store.get(session_id)

        pipeline = PhasePipeline(
            self.store,
            hosts,
            self.settings,
            resolver=self._resolver,
            scheduler=self._scheduler,
            sleep=self._sleep,
        )
        try:
            return await pipeline.run(session_id)
        except Exception:
            log.error("pipeline_crashed", session_id=session_id, exc_info=True)
            raise
        finally:
            await hosts.close()
