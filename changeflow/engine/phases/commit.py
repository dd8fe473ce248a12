"""Commit phase: write transformed files to the feature branch."""

import structlog

from changeflow.engine.phases.base import Phase
from changeflow.engine.phases.implement import processing_order
from changeflow.enums import SessionStatus
from changeflow.exceptions import AlreadyExistsError
from changeflow.models.domain import ChangeRequest, Session

log = structlog.get_logger(__name__)

MAX_SUBJECT_LENGTH = 72


def commit_message(path: str, changes: list[ChangeRequest]) -> str:
    """Subject line naming the file, body listing each requested change."""
    subject = f"Update {path}"
    if len(subject) > MAX_SUBJECT_LENGTH:
        subject = subject[: MAX_SUBJECT_LENGTH - 3] + "..."
    body = "\n".join(f"- {change.description.strip()}" for change in changes)
    return f"{subject}\n\n{body}" if body else subject


class CommitPhase(Phase):
    """Commit each transformed file once.

    Commits already recorded in ``results.commits`` are skipped on retry, and
    a branch that already holds the content counts as committed.
    """

    name = "commit"

    async def execute(self, session: Session) -> None:
        transformed: dict[str, str] = session.results.get("transformed") or {}
        if not transformed:
            await self.log(session.id, "Nothing to commit")
            return

        await self.status(session.id, SessionStatus.PROCESSING, 70, "Committing changes")
        branch = session.results["branch_name"]
        commits: dict[str, str] = dict(session.results.get("commits") or {})
        files = session.batch.changes_by_file()

        written = 0
        for path in processing_order(session, [p for p in files if p in transformed]):
            if path in commits:
                continue
            try:
                info = await self.hosts.source_control.commit_file(
                    path, transformed[path], commit_message(path, files[path]), branch
                )
                sha, changed = info.sha, info.changed
            except AlreadyExistsError:
                sha, changed = "", False

            await self.store.merge_results(session.id, "commits", {path: sha})
            commits[path] = sha
            if changed:
                written += 1
            log.info("file_committed", session_id=session.id, path=path, sha=sha, changed=changed)

        await self.log(
            session.id,
            f"Committed {len(commits)} file(s) to {branch}",
            new_commits=written,
        )
