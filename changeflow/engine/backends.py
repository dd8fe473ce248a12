"""
Storage backends for session records.

Backends move raw JSON-compatible dictionaries in and out of storage. They
know nothing about session semantics (TTL, log caps, progress rules); those
live in ``SessionStore``.

File Layout:
    ``FileSessionBackend`` keeps two files per session in its directory::

        change_2410_9f3a61c2.json        # current record, rewritten atomically
        change_2410_9f3a61c2.log.jsonl   # append-only audit log, one entry per line

Example:
    >>> backend = FileSessionBackend(".changeflow/sessions")
    >>> await backend.save("change_2410_9f3a61c2", {"id": "change_2410_9f3a61c2"})
    >>> await backend.load("change_2410_9f3a61c2")
    {'id': 'change_2410_9f3a61c2'}
"""

import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from changeflow.exceptions import StoreUnavailableError

log = structlog.get_logger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


def is_valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_PATTERN.match(session_id))


class SessionBackend(ABC):
    """Abstract storage for session records and their audit logs."""

    @abstractmethod
    async def load(self, session_id: str) -> dict[str, Any] | None:
        """Return the stored record, or None when absent."""
        pass

    @abstractmethod
    async def save(self, session_id: str, record: dict[str, Any]) -> None:
        """Replace the stored record."""
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove the record and its audit log. Missing ids are ignored."""
        pass

    @abstractmethod
    async def list_ids(self) -> list[str]:
        """Ids of every stored record."""
        pass

    @abstractmethod
    async def append_audit(self, session_id: str, entry: dict[str, Any]) -> None:
        """Append one entry to the unbounded audit log."""
        pass

    @abstractmethod
    async def read_audit(self, session_id: str) -> list[dict[str, Any]]:
        """Every audit entry for the session, oldest first."""
        pass


class MemorySessionBackend(SessionBackend):
    """Process-local backend. Useful for tests and single-process runs."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self._audit: dict[str, list[str]] = {}

    async def load(self, session_id: str) -> dict[str, Any] | None:
        raw = self._records.get(session_id)
        return json.loads(raw) if raw is not None else None

    async def save(self, session_id: str, record: dict[str, Any]) -> None:
        self._records[session_id] = json.dumps(record)

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)
        self._audit.pop(session_id, None)

    async def list_ids(self) -> list[str]:
        return list(self._records)

    async def append_audit(self, session_id: str, entry: dict[str, Any]) -> None:
        self._audit.setdefault(session_id, []).append(json.dumps(entry))

    async def read_audit(self, session_id: str) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self._audit.get(session_id, [])]


class FileSessionBackend(SessionBackend):
    """JSON-file backend with atomic record writes.

    Records are written to a ``.tmp`` file and renamed over the target, so a
    crash mid-write never leaves a truncated record behind. Filesystem errors
    surface as ``StoreUnavailableError``.

    Attributes:
        state_dir: Directory holding the session files.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the backend, creating ``state_dir`` if needed.

        Args:
            state_dir: Directory for session files.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _record_path(self, session_id: str) -> Path:
        if not is_valid_session_id(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.state_dir / f"{session_id}.json"

    def _audit_path(self, session_id: str) -> Path:
        if not is_valid_session_id(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.state_dir / f"{session_id}.log.jsonl"

    async def load(self, session_id: str) -> dict[str, Any] | None:
        path = self._record_path(session_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read session {session_id}: {e}") from e
        try:
            record = json.loads(content)
        except json.JSONDecodeError as e:
            log.error("session_record_corrupt", session_id=session_id, error=str(e))
            raise StoreUnavailableError(f"Session record {session_id} is corrupt") from e
        return record if isinstance(record, dict) else None

    async def save(self, session_id: str, record: dict[str, Any]) -> None:
        path = self._record_path(session_id)
        tmp_path = path.with_suffix(".tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(record, indent=2))
            # Atomic on POSIX when source and target share a filesystem
            tmp_path.replace(path)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot write session {session_id}: {e}") from e

    async def delete(self, session_id: str) -> None:
        try:
            self._record_path(session_id).unlink(missing_ok=True)
            self._audit_path(session_id).unlink(missing_ok=True)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot delete session {session_id}: {e}") from e

    async def list_ids(self) -> list[str]:
        try:
            return sorted(path.stem for path in self.state_dir.glob("*.json"))
        except OSError as e:
            raise StoreUnavailableError(f"Cannot list sessions: {e}") from e

    async def append_audit(self, session_id: str, entry: dict[str, Any]) -> None:
        try:
            async with aiofiles.open(self._audit_path(session_id), "a") as f:
                await f.write(json.dumps(entry) + "\n")
        except OSError as e:
            raise StoreUnavailableError(f"Cannot append audit log for {session_id}: {e}") from e

    async def read_audit(self, session_id: str) -> list[dict[str, Any]]:
        path = self._audit_path(session_id)
        if not path.exists():
            return []
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read audit log for {session_id}: {e}") from e

        entries: list[dict[str, Any]] = []
        for line in content.splitlines():
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                log.warning("audit_line_corrupt", session_id=session_id)
        return entries
