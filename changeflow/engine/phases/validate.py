"""Validate phase: reject malformed batches and missing targets before any work."""

import structlog

from changeflow.engine.phases.base import Phase
from changeflow.enums import SessionStatus, WorkflowKind
from changeflow.exceptions import BaseBranchMissingError, InvalidBatchError
from changeflow.models.domain import Session

log = structlog.get_logger(__name__)


class ValidatePhase(Phase):
    """Check the batch and confirm the repository and base branch exist.

    Every error raised here is fatal: a malformed batch or a missing base
    branch will not fix itself on retry.
    """

    name = "validate"

    async def execute(self, session: Session) -> None:
        await self.status(session.id, SessionStatus.VALIDATING, 5, "Validating request")
        batch = session.batch

        if batch.kind is WorkflowKind.CHANGE_REQUEST and not batch.changes:
            raise InvalidBatchError("Batch contains no changes")
        if batch.kind is WorkflowKind.INITIALIZATION and not batch.project_name:
            raise InvalidBatchError("Initialization requires a project name")

        for index, change in enumerate(batch.changes):
            if not change.file_path.strip():
                raise InvalidBatchError(f"Change {change.id or index} has no file path")
            if not change.description.strip():
                raise InvalidBatchError(f"Change {change.id or index} has no description")

        host = self.hosts.source_control
        await host.connect()
        if not await host.branch_exists(batch.base_branch):
            raise BaseBranchMissingError(batch.base_branch, host.repository)

        files = batch.changes_by_file()
        await self.log(
            session.id,
            f"Validated {len(batch.changes)} change(s) across {len(files)} file(s)",
            repository=host.repository,
            base_branch=batch.base_branch,
        )
        log.info("batch_validated", session_id=session.id, changes=len(batch.changes), files=len(files))
