"""Publish and merge phases: open the pull request and, for new projects, merge it."""

from typing import Any

import structlog

from changeflow.engine.phases.base import Phase
from changeflow.enums import FileStatus, SessionStatus, WorkflowKind
from changeflow.models.domain import Session

log = structlog.get_logger(__name__)


def pull_request_title(session: Session) -> str:
    batch = session.batch
    if batch.kind is WorkflowKind.INITIALIZATION:
        return f"Initialize {batch.project_name or batch.project_id}"
    feature = session.results.get("feature_name", "changes").replace("-", " ")
    return f"{feature[:1].upper()}{feature[1:]} ({len(batch.changes)} change(s))"


def pull_request_body(session: Session) -> str:
    """Markdown description listing changes, risk and suggested follow-ups."""
    results = session.results
    risk: dict[str, str] = (results.get("analysis") or {}).get("risk", {})
    lines = [f"Automated changes for project `{session.batch.project_id}` (session `{session.id}`).", ""]

    lines.append("## Changes")
    for path, changes in session.batch.changes_by_file().items():
        unit = session.file_units.get(path)
        marker = "x" if unit is not None and unit.status is FileStatus.COMPLETED else " "
        tier = f" _(risk: {risk[path]})_" if path in risk else ""
        lines.append(f"- [{marker}] `{path}`{tier}")
        for change in changes:
            lines.append(f"  - {change.description.strip()}")

    failed = [path for path, unit in session.file_units.items() if unit.status is FileStatus.FAILED]
    if failed:
        lines.extend(["", "## Not applied"])
        lines.extend(f"- `{path}`: {session.file_units[path].error}" for path in failed)

    suggestions: list[dict[str, Any]] = results.get("suggestions") or []
    if suggestions:
        lines.extend(["", "## Files that may need follow-up"])
        lines.extend(f"- `{s['file_path']}` ({s['priority']}): {s['reason']}" for s in suggestions)

    cycles: list[list[str]] = (results.get("analysis") or {}).get("cycles", [])
    if cycles:
        lines.extend(["", "## Circular dependencies"])
        lines.extend(f"- {' -> '.join([*cycle, cycle[0]])}" for cycle in cycles)

    return "\n".join(lines) + "\n"


class PublishPhase(Phase):
    """Open a pull request from the feature branch into the base branch.

    An open pull request for the branch, or one recorded by an earlier
    attempt, is reused.
    """

    name = "publish"

    async def execute(self, session: Session) -> None:
        if not session.results.get("commits"):
            await self.log(session.id, "No commits to publish")
            return

        await self.status(session.id, SessionStatus.PUBLISHING, 80, "Creating pull request")
        if session.results.get("pr_number"):
            await self.log(session.id, f"Reusing pull request #{session.results['pr_number']}")
            return

        pr = await self.hosts.source_control.create_pull_request(
            title=pull_request_title(session),
            body=pull_request_body(session),
            head=session.results["branch_name"],
            base=session.batch.base_branch,
        )
        await self.store.set_results(session.id, pr_number=pr.number, pr_url=pr.url)
        verb = "Created" if pr.created else "Found existing"
        await self.log(session.id, f"{verb} pull request #{pr.number}", url=pr.url)
        log.info("pull_request_ready", session_id=session.id, number=pr.number, created=pr.created)


class MergePhase(Phase):
    """Merge the pull request of an initialization run into the base branch.

    The session is moved to ``deploying`` first: once a merge has started,
    the session can no longer be cancelled.
    """

    name = "merge"

    async def execute(self, session: Session) -> None:
        number = session.results.get("pr_number")
        if not number:
            await self.log(session.id, "No pull request to merge")
            return
        if session.results.get("merged"):
            return

        await self.status(session.id, SessionStatus.DEPLOYING, 82, "Merging pull request")
        merged_now = await self.hosts.source_control.merge_pull_request(
            number, message=f"Merge {pull_request_title(session)}"
        )
        await self.store.set_results(session.id, merged=True)
        await self.log(session.id, f"Pull request #{number} {'merged' if merged_now else 'was already merged'}")
