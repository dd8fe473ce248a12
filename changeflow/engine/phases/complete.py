"""Complete phase: mark the session finished."""

from changeflow.engine.phases.base import Phase
from changeflow.models.domain import Session


class CompletePhase(Phase):
    name = "complete"

    async def execute(self, session: Session) -> None:
        pr_url = session.results.get("pr_url")
        step = f"Completed: {pr_url}" if pr_url else "Completed successfully"
        await self.store.mark_completed(session.id, step)
