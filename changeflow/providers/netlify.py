"""Deployment host backed by the Netlify deploys API."""

import httpx
import structlog

from changeflow.enums import DeploymentState
from changeflow.exceptions import ExternalServiceError
from changeflow.models.domain import DeploymentStatus
from changeflow.providers.base import DeploymentHost
from changeflow.utils.retry import async_retry

log = structlog.get_logger(__name__)

_STATE_MAP = {
    "ready": DeploymentState.READY,
    "error": DeploymentState.ERROR,
    "rejected": DeploymentState.ERROR,
}


class NetlifyDeploymentHost(DeploymentHost):
    """Reports the latest deploy of a site for a branch or commit.

    Netlify builds branch deploys on push, so observing is enough: the
    pipeline never triggers builds itself.
    """

    def __init__(
        self,
        token: str,
        site_id: str,
        api_base: str = "https://api.netlify.com/api/v1",
        client: httpx.AsyncClient | None = None,
    ):
        self.site_id = site_id
        self.api_base = api_base.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=30.0,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def disconnect(self) -> None:
        await self.client.aclose()

    @async_retry(max_attempts=3, base_delay=1.0, exceptions=(httpx.TransportError,))
    async def _list_deploys(self) -> list[dict]:
        response = await self.client.get(f"{self.api_base}/sites/{self.site_id}/deploys", params={"per_page": 20})
        response.raise_for_status()
        deploys = response.json()
        return deploys if isinstance(deploys, list) else []

    async def get_deployment(self, ref: str) -> DeploymentStatus:
        try:
            deploys = await self._list_deploys()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                f"Netlify API error ({e.response.status_code})",
                status_code=e.response.status_code,
                response_text=e.response.text[:500],
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Netlify API unreachable: {e}") from e

        for deploy in deploys:
            if ref not in (deploy.get("branch"), deploy.get("commit_ref")):
                continue
            state = _STATE_MAP.get(str(deploy.get("state", "")).lower(), DeploymentState.BUILDING)
            url = deploy.get("deploy_ssl_url") or deploy.get("deploy_url")
            log.debug("netlify_deploy_state", ref=ref, state=str(state), deploy_id=deploy.get("id"))
            return DeploymentStatus(state=state, url=url, error=deploy.get("error_message"))

        return DeploymentStatus(state=DeploymentState.BUILDING)
