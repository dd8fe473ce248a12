"""Branch phase: create the feature branch, reusing the name of earlier attempts."""

import re

import structlog

from changeflow.engine.phases.base import Phase
from changeflow.enums import SessionStatus, WorkflowKind
from changeflow.exceptions import AlreadyExistsError
from changeflow.models.domain import ChangeBatch, Session, utcnow

log = structlog.get_logger(__name__)


def slugify(value: str) -> str:
    """Lowercase ``value`` and collapse every run of non-alphanumerics into ``-``."""
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def generate_branch_name(batch: ChangeBatch, session_id: str) -> tuple[str, str]:
    """Derive the feature branch and feature name for a batch.

    A batch touching a single component becomes ``feature/update-<component>``,
    a single category becomes ``feature/improve-<category>``, anything else
    ``feature/multiple-ui-updates-<timestamp>``. Initialization runs use
    ``feature/initialize-<project>``. The session's random suffix is
    appended so concurrent sessions never share a branch.

    Returns:
        (branch_name, feature_name)
    """
    suffix = session_id.rsplit("_", 1)[-1]

    if batch.kind is WorkflowKind.INITIALIZATION:
        feature = f"initialize-{slugify(batch.project_name or batch.project_id)}"
    else:
        components = {c.component_id for c in batch.changes if c.component_id}
        categories = {c.category for c in batch.changes if c.category}
        if len(components) == 1:
            feature = f"update-{slugify(components.pop())}"
        elif len(categories) == 1:
            feature = f"improve-{slugify(categories.pop())}"
        else:
            feature = f"multiple-ui-updates-{utcnow().strftime('%Y%m%d%H%M%S')}"

    feature = feature.strip("-") or "changes"
    return f"feature/{feature}-{suffix}", feature


class BranchPhase(Phase):
    """Create the feature branch from the batch's base branch.

    The branch name is computed once and persisted as ``results.branch_name``
    so retries reuse it. An existing branch counts as success.
    """

    name = "branch"

    async def execute(self, session: Session) -> None:
        await self.status(session.id, SessionStatus.PROCESSING, 20, "Creating feature branch")

        branch = session.results.get("branch_name")
        if not branch:
            branch, feature = generate_branch_name(session.batch, session.id)
            await self.store.set_results(session.id, branch_name=branch, feature_name=feature)

        try:
            created = await self.hosts.source_control.create_branch(branch, session.batch.base_branch)
        except AlreadyExistsError:
            created = False

        if created:
            await self.log(session.id, f"Created branch {branch} from {session.batch.base_branch}", branch=branch)
        else:
            await self.log(session.id, f"Reusing existing branch {branch}", branch=branch)
        log.info("feature_branch_ready", session_id=session.id, branch=branch, created=created)
