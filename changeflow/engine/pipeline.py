"""
Phase pipeline: the top-level run of a session with whole-run retry.

Phase Sequences:
    change_request:  validate, analyze, branch, implement, commit, publish,
                     deploy, verify, complete
    initialization:  validate, branch, provision, implement, commit, publish,
                     merge, deploy, complete

Retry Policy:
    An error escaping any phase is classified (see ``engine.errors``):

    - fatal: the session fails at once with reason ``fatal``. No retry
      state is written.
    - transient: ``retry_state`` is recorded, the pipeline sleeps
      ``min(base * 2**(attempt - 1), cap)`` seconds and re-runs every phase
      from the start. After ``max_attempts`` the session fails with reason
      ``retry_exhausted`` and the last error.

    A ``SessionTerminatedError`` means the session was cancelled (or
    otherwise finished) underneath the run; the pipeline stops quietly.

    A ``StoreUnavailableError`` is transient like any other error. If the
    store cannot take the retry bookkeeping, the attempt is retried anyway
    and the run never raises it to the caller.

Example:
    >>> pipeline = PhasePipeline(store, hosts, settings)
    >>> final = await pipeline.run("change_2410_9f3a61c2")
    >>> final.status
    <SessionStatus.COMPLETED: 'completed'>
"""

import asyncio
from datetime import timedelta

import structlog

from changeflow.config.settings import OrchestratorSettings
from changeflow.engine.errors import classify_error
from changeflow.engine.phases import PHASE_CLASSES, Phase
from changeflow.engine.phases.base import SleepFn
from changeflow.engine.resolver import DependencyResolver
from changeflow.engine.scheduler import TaskScheduler
from changeflow.engine.session_store import SessionStore
from changeflow.enums import ErrorClass, FailureReason, LogLevel, WorkflowKind
from changeflow.exceptions import (
    NoSuccessfulChangesError,
    SessionNotFoundError,
    SessionTerminatedError,
    StoreUnavailableError,
)
from changeflow.models.domain import RetryState, Session, utcnow
from changeflow.providers.factory import Hosts
from changeflow.utils.retry import backoff_delay

log = structlog.get_logger(__name__)


class PhasePipeline:
    """Run a session's phase sequence with bounded retry-with-backoff.

    Attributes:
        PHASES: Phase sequence per workflow kind.
        store: Session store.
        settings: Orchestrator configuration.
        phases: Phase instances keyed by name.
    """

    PHASES: dict[WorkflowKind, tuple[str, ...]] = {
        WorkflowKind.CHANGE_REQUEST: (
            "validate",
            "analyze",
            "branch",
            "implement",
            "commit",
            "publish",
            "deploy",
            "verify",
            "complete",
        ),
        WorkflowKind.INITIALIZATION: (
            "validate",
            "branch",
            "provision",
            "implement",
            "commit",
            "publish",
            "merge",
            "deploy",
            "complete",
        ),
    }

    def __init__(
        self,
        store: SessionStore,
        hosts: Hosts,
        settings: OrchestratorSettings,
        resolver: DependencyResolver | None = None,
        scheduler: TaskScheduler | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Initialize the pipeline and its phases.

        Args:
            store: Session store shared with the service.
            hosts: External hosts for the session's repository.
            settings: Orchestrator configuration.
            resolver: Optional resolver shared by the phases.
            scheduler: Optional scheduler shared by the phases.
            sleep: Awaitable sleep used for backoff and polling.
        """
        self.store = store
        self.settings = settings
        self._sleep = sleep
        self.phases: dict[str, Phase] = {
            name: phase_class(store, hosts, settings, resolver=resolver, scheduler=scheduler, sleep=sleep)
            for name, phase_class in PHASE_CLASSES.items()
        }

    async def run(self, session_id: str) -> Session | None:
        """Drive the session to a terminal state.

        Returns:
            The final session, or None if it disappeared (expired or purged).
        """
        retry = self.settings.retry
        attempt = 0

        with structlog.contextvars.bound_contextvars(session_id=session_id):
            log.info("pipeline_started", max_attempts=retry.max_attempts)
            while True:
                attempt += 1
                try:
                    await self._run_once(session_id, attempt)
                    break
                except SessionTerminatedError as e:
                    log.info("pipeline_stopped", reason=e.message)
                    break
                except SessionNotFoundError:
                    log.warning("pipeline_session_missing")
                    return None
                except Exception as e:
                    if not await self._handle_failure(session_id, attempt, e):
                        break

            try:
                final = await self.store.get(session_id)
            except StoreUnavailableError as e:
                log.error("pipeline_finished_unreadable", attempts=attempt, error=e.message)
                return None
            log.info(
                "pipeline_finished",
                attempts=attempt,
                status=str(final.status) if final else None,
            )
            return final

    async def _run_once(self, session_id: str, attempt: int) -> None:
        session = await self._live_session(session_id)
        for name in self.PHASES[session.kind]:
            session = await self._live_session(session_id)
            log.debug("phase_started", phase=name, attempt=attempt)
            await self.phases[name].execute(session)
            log.debug("phase_completed", phase=name, attempt=attempt)

    async def _live_session(self, session_id: str) -> Session:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status.is_terminal:
            raise SessionTerminatedError(session_id, str(session.status))
        return session

    async def _handle_failure(self, session_id: str, attempt: int, error: Exception) -> bool:
        """Record a failed attempt. Returns True when the pipeline should run again.

        A store outage while recording the attempt does not end the run: the
        attempt is retried as long as attempts remain.
        """
        retry = self.settings.retry
        error_class = classify_error(error, retry.fatal_patterns)
        message = str(error) or type(error).__name__
        exhausted = attempt >= retry.max_attempts

        try:
            if error_class is ErrorClass.FATAL:
                log.error("pipeline_failed_fatal", attempt=attempt, error=message, exc_info=True)
                await self.store.mark_failed(session_id, message, FailureReason.FATAL)
                return False

            if exhausted:
                reason = (
                    FailureReason.NO_SUCCESSFUL_CHANGES
                    if isinstance(error, NoSuccessfulChangesError)
                    else FailureReason.RETRY_EXHAUSTED
                )
                log.error("pipeline_retries_exhausted", attempts=attempt, error=message, exc_info=True)
                await self.store.mark_failed(session_id, message, reason)
                return False

            delay = backoff_delay(attempt, retry.base_delay, retry.max_delay)
            await self.store.set_retry_state(
                session_id,
                RetryState(
                    attempt=attempt,
                    max_attempts=retry.max_attempts,
                    last_error=message,
                    next_attempt_at=utcnow() + timedelta(seconds=delay),
                ),
            )
            await self.store.append_log(
                session_id,
                LogLevel.WARN,
                f"Attempt {attempt} of {retry.max_attempts} failed: {message}. Retrying in {delay:g}s",
                metadata={"attempt": attempt, "delay": delay},
                component="pipeline",
            )
            log.warning("pipeline_attempt_failed", attempt=attempt, delay=delay, error=message)
        except (SessionTerminatedError, SessionNotFoundError) as e:
            log.info("pipeline_stopped", reason=e.message)
            return False
        except StoreUnavailableError as e:
            if error_class is ErrorClass.FATAL or exhausted:
                log.error("pipeline_outcome_unrecorded", attempt=attempt, error=message, store_error=e.message)
                return False
            delay = backoff_delay(attempt, retry.base_delay, retry.max_delay)
            log.warning(
                "pipeline_retry_unrecorded",
                attempt=attempt,
                delay=delay,
                error=message,
                store_error=e.message,
            )

        await self._sleep(delay)
        return True
