"""
Domain models for changeflow.

Session records and change batches are Pydantic models because they cross
process boundaries: sessions are persisted as JSON by the session store and
batches arrive through the HTTP API and the CLI. Results returned by the
external hosts are plain dataclasses.

Example:
    Creating a session for a submitted batch::

        batch = ChangeBatch(
            project_id="site-42",
            repository="acme/site",
            changes=[
                ChangeRequest(
                    id="c1",
                    file_path="src/components/Header.tsx",
                    description="Make the logo link to the home page",
                    component_id="Header",
                )
            ],
        )
        session = Session.new(batch, ttl_seconds=604800)
"""

import re
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from changeflow.enums import (
    DeploymentState,
    FailureReason,
    FileStatus,
    LogLevel,
    Priority,
    SessionStatus,
    WorkflowKind,
)
from changeflow.utils.paths import normalize_path


def utcnow() -> datetime:
    return datetime.now(UTC)


def generate_session_id(kind: WorkflowKind, project: str | None = None, now: datetime | None = None) -> str:
    """Build a session id of the form ``<prefix>_[<project>_]<yymm>_<random8>``.

    Args:
        kind: Workflow kind, selects the prefix (``change`` or ``init``)
        project: Optional project slug embedded in the id
        now: Timestamp used for the ``yymm`` component

    Example:
        >>> generate_session_id(WorkflowKind.CHANGE_REQUEST)
        'change_2410_9f3a61c2'
    """
    stamp = (now or utcnow()).strftime("%y%m")
    parts = [kind.id_prefix]
    slug = re.sub(r"[^a-z0-9]+", "-", (project or "").lower()).strip("-")[:40].rstrip("-")
    if slug:
        parts.append(slug)
    parts.extend([stamp, secrets.token_hex(4)])
    return "_".join(parts)


class ChangeRequest(BaseModel):
    """One natural-language change tied to a source file."""

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    file_path: str = Field(default="", description="Repository path of the file to change")
    description: str = Field(default="", description="Requested change in natural language")
    component_id: str | None = Field(default=None, description="UI component the change targets")
    category: str | None = Field(default=None, description="Free-form change category, e.g. 'styling'")
    priority: Priority = Priority.MEDIUM

    @field_validator("file_path")
    @classmethod
    def canonical_path(cls, value: str) -> str:
        return normalize_path(value)


class ChangeBatch(BaseModel):
    """A submission: a set of change requests against one repository."""

    submission_id: str = Field(default_factory=lambda: uuid4().hex)
    project_id: str
    repository: str = Field(..., description="owner/name of the target repository")
    base_branch: str = "develop"
    kind: WorkflowKind = WorkflowKind.CHANGE_REQUEST
    changes: list[ChangeRequest] = Field(default_factory=list)
    auto_test: bool = Field(default=False, description="Run the verify phase after deployment")
    provision_database: bool = Field(default=False, description="Provision a database (initialization only)")
    project_name: str | None = None

    def changes_by_file(self) -> dict[str, list[ChangeRequest]]:
        """Group changes by file path, keeping first-seen file order."""
        grouped: dict[str, list[ChangeRequest]] = {}
        for change in self.changes:
            grouped.setdefault(change.file_path, []).append(change)
        return grouped


class LogEntry(BaseModel):
    """A session-visible log line."""

    level: LogLevel = LogLevel.INFO
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    component: str | None = None
    metadata: dict[str, Any] | None = None


class RetryState(BaseModel):
    """Bookkeeping for the whole-pipeline retry loop."""

    attempt: int
    max_attempts: int
    last_error: str
    next_attempt_at: datetime | None = None


class FileUnit(BaseModel):
    """Per-file processing state inside a session."""

    status: FileStatus = FileStatus.PENDING
    change_count: int = 0
    processing_time_ms: float | None = None
    error: str | None = None


class Session(BaseModel):
    """Durable record of one workflow run.

    Only the session store mutates status and progress. ``results`` is owned
    by the pipeline and never interpreted by the store.
    """

    id: str
    kind: WorkflowKind = WorkflowKind.CHANGE_REQUEST
    status: SessionStatus = SessionStatus.RECEIVED
    progress: float = 0.0
    current_step: str = "Request received"
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    estimated_completion_at: datetime | None = None
    expires_at: datetime
    logs: list[LogEntry] = Field(default_factory=list)
    retry_state: RetryState | None = None
    file_units: dict[str, FileUnit] = Field(default_factory=dict)
    results: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    failure_reason: FailureReason | None = None
    batch: ChangeBatch

    @classmethod
    def new(cls, batch: ChangeBatch, ttl_seconds: int, session_id: str | None = None) -> "Session":
        now = utcnow()
        return cls(
            id=session_id or generate_session_id(batch.kind, batch.project_name),
            kind=batch.kind,
            started_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            batch=batch,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @property
    def total_files(self) -> int:
        return len(self.file_units)

    @property
    def completed_files(self) -> int:
        return sum(1 for unit in self.file_units.values() if unit.status == FileStatus.COMPLETED)

    @property
    def failed_files(self) -> int:
        return sum(1 for unit in self.file_units.values() if unit.status == FileStatus.FAILED)


class SessionSummary(BaseModel):
    """Polling view of a session. Carries no task-graph state."""

    id: str
    kind: WorkflowKind
    status: SessionStatus
    progress: float
    current_step: str
    branch_name: str | None = None
    pr_url: str | None = None
    preview_url: str | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None
    started_at: datetime
    completed_at: datetime | None = None
    estimated_completion_at: datetime | None = None
    total_files: int = 0
    completed_files: int = 0
    failed_files: int = 0
    commit_count: int = 0
    logs: list[LogEntry] = Field(default_factory=list)
    retry_state: RetryState | None = None


@dataclass
class TransformResult:
    """Outcome of a code transformation for one file."""

    success: bool
    new_content: str = ""
    explanation: str = ""
    error: str | None = None


@dataclass
class PullRequestInfo:
    """Pull request created (or found) on the source-control host."""

    number: int
    url: str
    branch: str
    created: bool = True
    """False when an existing pull request for the branch was reused."""


@dataclass
class CommitInfo:
    """A commit written to the feature branch."""

    path: str
    sha: str
    changed: bool = True
    """False when the branch already held identical content and nothing was written."""


@dataclass
class DeploymentStatus:
    """Deployment state reported for a git ref."""

    state: DeploymentState
    url: str | None = None
    error: str | None = None


@dataclass
class ProvisionResult:
    """Connection details for a freshly provisioned database."""

    cluster_name: str
    connection_info: dict[str, Any] = field(default_factory=dict)
