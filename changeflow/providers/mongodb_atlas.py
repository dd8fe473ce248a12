"""Provisioning host that creates MongoDB Atlas clusters."""

import re
from typing import Any

import httpx
import structlog

from changeflow.exceptions import ExternalServiceError
from changeflow.models.domain import ProvisionResult
from changeflow.providers.base import ProvisioningHost

log = structlog.get_logger(__name__)

MAX_CLUSTER_NAME = 23


def cluster_name_for(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return (slug[:MAX_CLUSTER_NAME].rstrip("-")) or "cluster"


class AtlasProvisioningHost(ProvisioningHost):
    """Creates a shared-tier cluster per project through the Atlas admin API.

    A cluster that already exists under the same name is reused.
    """

    def __init__(
        self,
        project_id: str,
        public_key: str,
        private_key: str,
        api_base: str = "https://cloud.mongodb.com/api/atlas/v1.0",
        region: str = "US_EAST_1",
        client: httpx.AsyncClient | None = None,
    ):
        self.project_id = project_id
        self.api_base = api_base.rstrip("/")
        self.region = region
        self.client = client or httpx.AsyncClient(
            timeout=60.0,
            auth=httpx.DigestAuth(public_key, private_key),
            headers={"Accept": "application/json"},
        )

    async def disconnect(self) -> None:
        await self.client.aclose()

    async def provision(self, name: str) -> ProvisionResult:
        cluster = cluster_name_for(name)
        url = f"{self.api_base}/groups/{self.project_id}/clusters"
        body = {
            "name": cluster,
            "providerSettings": {
                "providerName": "TENANT",
                "backingProviderName": "AWS",
                "instanceSizeName": "M0",
                "regionName": self.region,
            },
        }
        log.info("atlas_provision_requested", cluster=cluster)

        try:
            response = await self.client.post(url, json=body)
            if response.status_code == 409:
                log.info("atlas_cluster_exists", cluster=cluster)
                response = await self.client.get(f"{url}/{cluster}")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                f"Atlas API error ({e.response.status_code})",
                status_code=e.response.status_code,
                response_text=e.response.text[:500],
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Atlas API unreachable: {e}") from e

        data: dict[str, Any] = response.json()
        connection_strings = data.get("connectionStrings") or {}
        return ProvisionResult(
            cluster_name=cluster,
            connection_info={
                "state": data.get("stateName"),
                "srv": connection_strings.get("standardSrv"),
                "project_id": self.project_id,
            },
        )
