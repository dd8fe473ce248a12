"""
Durable session state for workflow runs.

``SessionStore`` owns every mutation of a session's status, progress, logs,
file units and retry bookkeeping. It sits on top of a ``SessionBackend`` and
adds the session rules:

- Progress is clamped to [0, 100] and never decreases, except when a
  session fails (progress is reset to 0).
- Once a session is ``completed`` or ``failed`` it is immutable. Mutations
  raise ``SessionTerminatedError``; log appends are dropped.
- Sessions expire ``ttl_seconds`` after creation. Expired sessions read as
  missing and are purged lazily.
- The session record keeps the newest ``log_retention`` log entries. The
  backend's audit log keeps all of them.
- When the backend cannot be written, the session is kept in a
  process-local dict and served from there until a later write succeeds.
- Every record this process loads or saves is also kept as the last known
  copy. When the backend cannot be read, that copy is served instead.

Concurrency Model:
    Each session id has its own asyncio lock so a log append racing a status
    update (for example from concurrently running scheduler tasks) cannot
    lose either change. Different sessions are never serialised against
    each other.

Example:
    >>> store = SessionStore(FileSessionBackend(".changeflow/sessions"))
    >>> session = await store.create(Session.new(batch, ttl_seconds=store.ttl_seconds))
    >>> await store.update_status(session.id, SessionStatus.VALIDATING, progress=5, step="Validating request")
    >>> await store.append_log(session.id, LogLevel.INFO, "Validation passed")
    >>> (await store.summary(session.id)).progress
    5.0
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import structlog
from pydantic import ValidationError

from changeflow.engine.backends import SessionBackend, is_valid_session_id
from changeflow.enums import FailureReason, LogLevel, SessionStatus
from changeflow.exceptions import SessionNotFoundError, SessionTerminatedError, StoreUnavailableError
from changeflow.models.domain import FileUnit, LogEntry, RetryState, Session, SessionSummary, utcnow

log = structlog.get_logger(__name__)

FILE_PROGRESS_SHARE = 80.0
"""Share of overall progress attributed to per-file processing."""


class SessionStore:
    """Session persistence with progress, log and lifecycle rules.

    Attributes:
        backend: Durable storage for records and audit logs.
        ttl_seconds: Lifetime of a session from creation.
        log_retention: Log entries kept on the record.
        summary_log_count: Log entries included in summaries.
    """

    def __init__(
        self,
        backend: SessionBackend,
        ttl_seconds: int = 7 * 24 * 3600,
        log_retention: int = 500,
        summary_log_count: int = 10,
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.log_retention = log_retention
        self.summary_log_count = summary_log_count
        self._fallback: dict[str, Session] = {}
        self._last_known: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, session_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if session_id not in self._locks:
                self._locks[session_id] = asyncio.Lock()
            return self._locks[session_id]

    async def create(self, session: Session) -> Session:
        """Persist a new session.

        Raises:
            ValueError: If the id is malformed or already in use
        """
        if not is_valid_session_id(session.id):
            raise ValueError(f"Invalid session id: {session.id!r}")

        lock = await self._get_lock(session.id)
        async with lock:
            try:
                existing = await self._read(session.id)
            except StoreUnavailableError:
                existing = None
            if existing is not None:
                raise ValueError(f"Session already exists: {session.id}")
            if not session.logs:
                session.logs.append(LogEntry(level=LogLevel.INFO, message="Session created", component="session"))
            await self._write(session)
            await self._audit(session.id, session.logs)

        log.info("session_created", session_id=session.id, kind=str(session.kind))
        return session.model_copy(deep=True)

    async def get(self, session_id: str) -> Session | None:
        """Return the session, or None when missing or expired."""
        if not is_valid_session_id(session_id):
            return None
        lock = await self._get_lock(session_id)
        async with lock:
            session = await self._read(session_id)
        return session.model_copy(deep=True) if session else None

    @asynccontextmanager
    async def transaction(self, session_id: str) -> AsyncIterator[Session]:
        """Read-modify-write a live session under its lock.

        The yielded session is saved when the block exits without error.

        Raises:
            SessionNotFoundError: If the session is missing or expired
            SessionTerminatedError: If the session is completed or failed
        """
        if not is_valid_session_id(session_id):
            raise SessionNotFoundError(session_id)
        lock = await self._get_lock(session_id)
        async with lock:
            session = await self._read(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status.is_terminal:
                raise SessionTerminatedError(session_id, str(session.status))
            yield session
            session.updated_at = utcnow()
            await self._write(session)

    async def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        progress: float | None = None,
        step: str | None = None,
    ) -> Session:
        """Move a session to ``status``, optionally raising its progress.

        Progress is clamped to [0, 100] and never lowered. Terminal statuses
        are routed through ``mark_completed`` and ``mark_failed`` semantics.
        """
        if status is SessionStatus.COMPLETED:
            return await self.mark_completed(session_id, step or "Completed")
        if status is SessionStatus.FAILED:
            return await self.mark_failed(session_id, step or "Failed", FailureReason.FATAL)

        async with self.transaction(session_id) as session:
            session.status = status
            if step is not None:
                session.current_step = step
            if progress is not None:
                self._raise_progress(session, progress)

        log.debug(
            "session_status_updated",
            session_id=session_id,
            status=str(status),
            progress=session.progress,
        )
        return session.model_copy(deep=True)

    async def append_log(
        self,
        session_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
        component: str | None = None,
    ) -> None:
        """Append a session-visible log entry. Never raises.

        The record keeps the newest ``log_retention`` entries. Entries for
        missing or terminal sessions are dropped.
        """
        entry = LogEntry(level=level, message=message, metadata=metadata, component=component)
        try:
            async with self.transaction(session_id) as session:
                session.logs.append(entry)
                self._trim_logs(session)
        except (SessionNotFoundError, SessionTerminatedError) as e:
            log.debug("session_log_dropped", session_id=session_id, reason=e.message, log_message=message)
            return
        except Exception as e:
            log.warning("session_log_append_failed", session_id=session_id, error=str(e))
            return

        await self._audit(session_id, [entry])

    async def update_file_unit(self, session_id: str, path: str, **fields: Any) -> Session:
        """Merge ``fields`` into a file unit and refresh overall progress.

        Overall progress is raised to at least
        ``completed_files / total_files * 80``.
        """
        async with self.transaction(session_id) as session:
            current = session.file_units.get(path, FileUnit())
            session.file_units[path] = FileUnit.model_validate({**current.model_dump(), **fields})
            if session.total_files:
                self._raise_progress(session, session.completed_files / session.total_files * FILE_PROGRESS_SHARE)
        return session.model_copy(deep=True)

    async def set_results(self, session_id: str, **values: Any) -> Session:
        """Merge pipeline-owned values into ``results``."""
        async with self.transaction(session_id) as session:
            session.results.update(values)
        return session.model_copy(deep=True)

    async def merge_results(self, session_id: str, key: str, values: dict[str, Any]) -> Session:
        """Merge ``values`` into the mapping stored under ``results[key]``.

        Lets concurrently running tasks record per-file results without
        overwriting each other.
        """
        async with self.transaction(session_id) as session:
            current = session.results.get(key)
            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(values)
            session.results[key] = merged
        return session.model_copy(deep=True)

    async def set_retry_state(self, session_id: str, retry_state: RetryState) -> Session:
        async with self.transaction(session_id) as session:
            session.retry_state = retry_state
        return session.model_copy(deep=True)

    async def mark_completed(self, session_id: str, step: str = "Completed") -> Session:
        """Finish a session successfully. Progress becomes 100."""
        async with self.transaction(session_id) as session:
            now = utcnow()
            session.status = SessionStatus.COMPLETED
            session.progress = 100.0
            session.current_step = step
            session.completed_at = now
            session.estimated_completion_at = now
            entry = LogEntry(level=LogLevel.INFO, message=step, component="session")
            session.logs.append(entry)
            self._trim_logs(session)

        await self._audit(session_id, [entry])
        log.info("session_completed", session_id=session_id)
        return session.model_copy(deep=True)

    async def mark_failed(self, session_id: str, error: str, reason: FailureReason) -> Session:
        """Fail a session. Progress is reset to 0 and the error recorded."""
        async with self.transaction(session_id) as session:
            now = utcnow()
            session.status = SessionStatus.FAILED
            session.progress = 0.0
            session.error = error
            session.failure_reason = reason
            session.current_step = f"Failed: {error}"
            session.completed_at = now
            session.estimated_completion_at = None
            entry = LogEntry(
                level=LogLevel.ERROR,
                message=error,
                component="session",
                metadata={"failure_reason": str(reason)},
            )
            session.logs.append(entry)
            self._trim_logs(session)

        await self._audit(session_id, [entry])
        log.warning("session_failed", session_id=session_id, reason=str(reason), error=error)
        return session.model_copy(deep=True)

    async def summary(self, session_id: str) -> SessionSummary | None:
        """Polling view of a session, or None when missing or expired."""
        session = await self.get(session_id)
        if session is None:
            return None

        results = session.results
        logs = session.logs[-self.summary_log_count :] if self.summary_log_count else []
        return SessionSummary(
            id=session.id,
            kind=session.kind,
            status=session.status,
            progress=session.progress,
            current_step=session.current_step,
            branch_name=results.get("branch_name"),
            pr_url=results.get("pr_url"),
            preview_url=results.get("preview_url"),
            error=session.error,
            failure_reason=session.failure_reason,
            started_at=session.started_at,
            completed_at=session.completed_at,
            estimated_completion_at=session.estimated_completion_at,
            total_files=session.total_files,
            completed_files=session.completed_files,
            failed_files=session.failed_files,
            commit_count=len(results.get("commits", {})),
            logs=logs,
            retry_state=session.retry_state,
        )

    async def get_all_logs(self, session_id: str) -> list[LogEntry]:
        """Full log history from the audit log.

        Falls back to the entries kept on the record when the audit log is
        unavailable or empty.
        """
        session = await self.get(session_id)
        if session is None:
            return []
        try:
            raw = await self.backend.read_audit(session_id)
        except (StoreUnavailableError, OSError) as e:
            log.warning("audit_log_unavailable", session_id=session_id, error=str(e))
            raw = []

        entries: list[LogEntry] = []
        for item in raw:
            try:
                entries.append(LogEntry.model_validate(item))
            except ValidationError:
                log.warning("audit_entry_invalid", session_id=session_id)
        return entries or session.logs

    async def list_sessions(self) -> list[Session]:
        """Every live session, newest first."""
        ids = set(self._fallback)
        try:
            ids.update(await self.backend.list_ids())
        except (StoreUnavailableError, OSError) as e:
            log.warning("session_listing_unavailable", error=str(e))

        sessions = [session for session_id in ids if (session := await self.get(session_id)) is not None]
        return sorted(sessions, key=lambda s: s.started_at, reverse=True)

    async def purge_expired(self) -> int:
        """Delete expired sessions. Returns how many were removed."""
        return await self._purge(lambda session: session.is_expired())

    async def cleanup_older_than(self, days: int) -> int:
        """Delete terminal sessions that finished more than ``days`` ago."""
        cutoff = utcnow() - timedelta(days=days)
        return await self._purge(
            lambda session: session.status.is_terminal
            and (session.completed_at or session.updated_at) < cutoff
        )

    async def _purge(self, predicate: Any) -> int:
        try:
            ids = set(await self.backend.list_ids()) | set(self._fallback)
        except (StoreUnavailableError, OSError) as e:
            log.warning("session_purge_unavailable", error=str(e))
            ids = set(self._fallback)

        removed = 0
        for session_id in sorted(ids):
            lock = await self._get_lock(session_id)
            async with lock:
                session = await self._read(session_id, purge_expired=False)
                if session is None or not predicate(session):
                    continue
                await self._delete(session_id)
                removed += 1

        if removed:
            log.info("sessions_purged", count=removed)
        return removed

    async def _read(self, session_id: str, purge_expired: bool = True) -> Session | None:
        """Load a session. Caller must hold the session lock.

        Raises:
            StoreUnavailableError: If the backend cannot be read and this
                process has never seen the session
        """
        session = self._fallback.get(session_id)
        if session is None:
            try:
                record = await self.backend.load(session_id)
            except (StoreUnavailableError, OSError) as e:
                session = self._last_known.get(session_id)
                if session is None:
                    log.warning("session_store_unavailable", session_id=session_id, error=str(e))
                    raise StoreUnavailableError(f"Session store unavailable for {session_id}") from e
                log.warning("session_store_read_fallback", session_id=session_id, error=str(e))
                session = session.model_copy(deep=True)
            else:
                if record is None:
                    self._last_known.pop(session_id, None)
                    return None
                try:
                    session = Session.model_validate(record)
                except ValidationError as e:
                    log.error("session_record_invalid", session_id=session_id, error=str(e))
                    return None
                self._last_known[session_id] = session.model_copy(deep=True)
        else:
            session = session.model_copy(deep=True)

        if purge_expired and session.is_expired():
            log.info("session_expired", session_id=session_id)
            await self._delete(session_id)
            return None
        return session

    async def _write(self, session: Session) -> None:
        """Persist a session, falling back to process memory. Caller holds the lock."""
        try:
            await self.backend.save(session.id, session.model_dump(mode="json"))
        except (StoreUnavailableError, OSError) as e:
            if session.id not in self._fallback:
                log.warning("session_store_fallback", session_id=session.id, error=str(e))
            self._fallback[session.id] = session.model_copy(deep=True)
            return
        self._last_known[session.id] = session.model_copy(deep=True)
        if self._fallback.pop(session.id, None) is not None:
            log.info("session_store_recovered", session_id=session.id)

    async def _delete(self, session_id: str) -> None:
        self._fallback.pop(session_id, None)
        self._last_known.pop(session_id, None)
        try:
            await self.backend.delete(session_id)
        except (StoreUnavailableError, OSError) as e:
            log.warning("session_delete_failed", session_id=session_id, error=str(e))

    async def _audit(self, session_id: str, entries: list[LogEntry]) -> None:
        for entry in entries:
            try:
                await self.backend.append_audit(session_id, entry.model_dump(mode="json"))
            except (StoreUnavailableError, OSError) as e:
                log.debug("audit_append_failed", session_id=session_id, error=str(e))
                return

    def _raise_progress(self, session: Session, progress: float) -> None:
        clamped = max(0.0, min(100.0, float(progress)))
        session.progress = max(session.progress, clamped)
        # Estimate from the stored progress, which a lower report never moves.
        if session.progress >= 100:
            session.estimated_completion_at = utcnow()
        elif session.progress > 0:
            elapsed = utcnow() - session.started_at
            session.estimated_completion_at = session.started_at + elapsed / session.progress * 100

    def _trim_logs(self, session: Session) -> None:
        overflow = len(session.logs) - self.log_retention
        if overflow > 0:
            del session.logs[:overflow]
