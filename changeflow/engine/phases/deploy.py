"""Deploy phase: wait for the deployment host to build the published ref."""

import asyncio

import structlog

from changeflow.engine.phases.base import Phase
from changeflow.enums import DeploymentState, LogLevel, SessionStatus, WorkflowKind
from changeflow.exceptions import ConfigurationError, DeploymentTimeoutError, ExternalServiceError
from changeflow.models.domain import DeploymentStatus, Session

log = structlog.get_logger(__name__)


class DeployPhase(Phase):
    """Poll the deployment host until the deploy is ready, errored, or times out.

    Change requests are observed on their feature branch (a preview deploy);
    initialization runs on the base branch after the merge. Every outcome
    other than ``ready`` is logged as a warning and the session carries on.
    """

    name = "deploy"

    async def execute(self, session: Session) -> None:
        host = self.hosts.deployment
        config = self.settings.deployment
        if host is None or not config.enabled:
            await self.log(session.id, "Deployment tracking disabled, skipping")
            return
        if session.results.get("preview_url"):
            return

        await self.status(session.id, SessionStatus.DEPLOYING, 85, "Waiting for deployment")
        ref = session.batch.base_branch if session.kind is WorkflowKind.INITIALIZATION else session.results["branch_name"]

        try:
            status = await self.wait_for_deployment(ref, config.timeout, config.poll_interval)
        except (DeploymentTimeoutError, ExternalServiceError) as e:
            await self.log(session.id, f"Deployment not confirmed: {e.message}", LogLevel.WARN, ref=ref)
            log.warning("deployment_unconfirmed", session_id=session.id, ref=ref, error=e.message)
            return

        if status.state is DeploymentState.READY:
            await self.store.set_results(session.id, preview_url=status.url)
            await self.log(session.id, f"Deployment ready at {status.url}", url=status.url)
        else:
            await self.log(
                session.id,
                f"Deployment failed: {status.error or 'unknown error'}",
                LogLevel.WARN,
                ref=ref,
            )

    async def wait_for_deployment(self, ref: str, timeout: float, poll_interval: float) -> DeploymentStatus:
        """Poll until the deployment for ``ref`` is ready or errored.

        Raises:
            DeploymentTimeoutError: If ``timeout`` seconds pass first
            ConfigurationError: If no deployment host is configured
        """
        host = self.hosts.deployment
        if host is None:
            raise ConfigurationError("No deployment host is configured")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DeploymentTimeoutError(ref, timeout)
            try:
                status = await asyncio.wait_for(host.get_deployment(ref), timeout=remaining)
            except TimeoutError as e:
                raise DeploymentTimeoutError(ref, timeout) from e

            log.debug("deployment_polled", ref=ref, state=str(status.state))
            if status.state in (DeploymentState.READY, DeploymentState.ERROR):
                return status

            await self.sleep(min(poll_interval, max(deadline - loop.time(), 0)))
