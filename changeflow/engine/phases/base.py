"""
Base class for pipeline phases.

A phase is one step of a session's fixed phase sequence. The pipeline hands
each phase a fresh copy of the session; the phase then:

1. does its unit of work, possibly through the resolver, the scheduler or
   one of the external hosts,
2. reports status, progress and log lines through the session store,
3. returns to advance, or raises to hand the error to the pipeline's retry
   classification.

Phase Contract:
    Every phase must be safe to repeat. A transient failure re-runs the
    whole sequence from the start, so phases reuse what earlier attempts
    persisted in ``session.results`` (branch name, commits, pull request)
    and treat "already exists" answers from the hosts as success.

Example:
    >>> class AnnouncePhase(Phase):
    ...     name = "announce"
    ...     async def execute(self, session: Session) -> None:
    ...         await self.log(session.id, "Starting")
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar

import structlog

from changeflow.config.settings import OrchestratorSettings
from changeflow.engine.resolver import DependencyResolver
from changeflow.engine.scheduler import TaskScheduler
from changeflow.engine.session_store import SessionStore
from changeflow.enums import LogLevel, SessionStatus
from changeflow.models.domain import Session
from changeflow.providers.factory import Hosts

log = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class Phase(ABC):
    """Abstract base class for all pipeline phases.

    Attributes:
        name: Phase identifier used in phase sequences and logs.
        store: Session store; the only way phases touch session state.
        hosts: External collaborators for this run.
        settings: Orchestrator configuration.
        resolver: Dependency resolver built from ``settings.resolver``.
        scheduler: Task scheduler built from ``settings.scheduler``.
    """

    name: ClassVar[str] = ""

    def __init__(
        self,
        store: SessionStore,
        hosts: Hosts,
        settings: OrchestratorSettings,
        resolver: DependencyResolver | None = None,
        scheduler: TaskScheduler | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Initialize the phase with its collaborators.

        Args:
            store: Session store.
            hosts: External hosts for the session's repository.
            settings: Orchestrator configuration.
            resolver: Dependency resolver. Built from settings when omitted.
            scheduler: Task scheduler. Built from settings when omitted.
            sleep: Awaitable sleep used while polling, replaceable in tests.
        """
        self.store = store
        self.hosts = hosts
        self.settings = settings
        self.resolver = resolver or DependencyResolver(
            max_depth=settings.resolver.max_depth,
            max_related_files=settings.resolver.max_related_files,
            path_aliases=settings.resolver.path_aliases,
        )
        self.scheduler = scheduler or TaskScheduler(
            max_concurrency=settings.scheduler.max_concurrency,
            max_task_retries=settings.scheduler.max_task_retries,
            task_timeout=settings.scheduler.task_timeout,
        )
        self.sleep = sleep

    @abstractmethod
    async def execute(self, session: Session) -> None:
        """Run the phase for ``session``.

        Raises:
            Any error. The pipeline classifies it as fatal or transient.
        """
        pass

    async def status(self, session_id: str, status: SessionStatus, progress: float, step: str) -> None:
        await self.store.update_status(session_id, status, progress=progress, step=step)

    async def log(
        self,
        session_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **metadata: Any,
    ) -> None:
        """Append a session-visible log line attributed to this phase."""
        await self.store.append_log(
            session_id,
            level,
            message,
            metadata=metadata or None,
            component=self.name,
        )
