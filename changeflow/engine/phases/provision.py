"""Provision phase: best-effort database provisioning for initialization runs."""

import structlog

from changeflow.engine.phases.base import Phase
from changeflow.enums import LogLevel, SessionStatus
from changeflow.exceptions import ExternalServiceError
from changeflow.models.domain import Session

log = structlog.get_logger(__name__)


class ProvisionPhase(Phase):
    """Provision a managed database at most once per session.

    ``results.provisioning`` is written before the host is called, so a
    pipeline retry never provisions twice. Failures are logged as warnings
    and the run continues without a database.
    """

    name = "provision"

    async def execute(self, session: Session) -> None:
        batch = session.batch
        if not batch.provision_database or self.hosts.provisioning is None:
            return
        if session.results.get("provisioning") is not None:
            await self.log(session.id, "Provisioning already attempted for this session")
            return

        await self.status(session.id, SessionStatus.PROVISIONING, 25, "Provisioning database")
        await self.store.set_results(session.id, provisioning={"status": "started"})

        name = batch.project_name or batch.project_id
        try:
            result = await self.hosts.provisioning.provision(name)
        except ExternalServiceError as e:
            await self.store.set_results(session.id, provisioning={"status": "failed", "error": e.message})
            await self.log(session.id, f"Database provisioning failed: {e.message}", LogLevel.WARN)
            log.warning("provisioning_failed", session_id=session.id, error=e.message, status_code=e.status_code)
            return

        await self.store.set_results(
            session.id,
            provisioning={
                "status": "ready",
                "cluster_name": result.cluster_name,
                "connection_info": result.connection_info,
            },
        )
        await self.log(session.id, f"Provisioned database cluster {result.cluster_name}")
