"""Factory for the external hosts a pipeline run needs."""

from dataclasses import dataclass

import structlog

from changeflow.config.settings import OrchestratorSettings
from changeflow.enums import TransformerBackend
from changeflow.exceptions import ConfigurationError
from changeflow.models.domain import ChangeBatch
from changeflow.providers.base import CodeTransformer, DeploymentHost, ProvisioningHost, SourceControlHost
from changeflow.providers.github import GitHubSourceControl
from changeflow.providers.mongodb_atlas import AtlasProvisioningHost
from changeflow.providers.netlify import NetlifyDeploymentHost
from changeflow.providers.openai_compatible import OpenAICompatibleTransformer

log = structlog.get_logger(__name__)


@dataclass
class Hosts:
    """External collaborators used by one pipeline run.

    Attributes:
        source_control: Branches, commits and pull requests.
        transformer: Code transformer.
        deployment: Deployment host, or None to skip deployment tracking.
        provisioning: Provisioning host, or None to skip provisioning.
    """

    source_control: SourceControlHost
    transformer: CodeTransformer
    deployment: DeploymentHost | None = None
    provisioning: ProvisioningHost | None = None

    async def close(self) -> None:
        """Disconnect every host, logging (not raising) disconnect failures."""
        for host in (self.source_control, self.transformer, self.deployment, self.provisioning):
            if host is None:
                continue
            try:
                await host.disconnect()
            except Exception as e:
                log.warning("host_disconnect_failed", host=type(host).__name__, error=str(e))


def create_transformer(settings: OrchestratorSettings) -> CodeTransformer:
    """Create the configured code transformer.

    Raises:
        ConfigurationError: If the backend is not supported
    """
    config = settings.transformer
    if config.backend is TransformerBackend.OPENAI_COMPATIBLE:
        log.info("creating_openai_compatible_transformer", base_url=config.base_url, model=config.model)
        return OpenAICompatibleTransformer(
            base_url=config.base_url,
            model=config.model,
            api_key=config.api_key.get_secret_value() if config.api_key else None,
            timeout=config.timeout,
            temperature=config.temperature,
        )
    raise ConfigurationError(f"Unsupported transformer backend: {config.backend}")


def create_hosts(settings: OrchestratorSettings, batch: ChangeBatch) -> Hosts:
    """Create hosts for the repository named in ``batch``.

    Args:
        settings: Orchestrator settings with host credentials
        batch: Submitted batch; its ``repository`` selects the target

    Returns:
        Hosts bundle. Deployment and provisioning hosts are only created
        when configured.

    Raises:
        ConfigurationError: If the repository name is not ``owner/name``
    """
    owner, _, name = batch.repository.partition("/")
    if not owner or not name:
        raise ConfigurationError(f"Repository must be given as owner/name, got: {batch.repository}")

    source_control = GitHubSourceControl(
        token=settings.source_control.token.get_secret_value(),
        owner=owner,
        repo=name,
        base_url=settings.source_control.base_url,
    )

    deployment: DeploymentHost | None = None
    deploy = settings.deployment
    if deploy.enabled and deploy.token and deploy.site_id:
        deployment = NetlifyDeploymentHost(
            token=deploy.token.get_secret_value(),
            site_id=deploy.site_id,
            api_base=deploy.api_base,
        )

    provisioning: ProvisioningHost | None = None
    prov = settings.provisioning
    if prov.enabled and prov.project_id and prov.public_key and prov.private_key:
        provisioning = AtlasProvisioningHost(
            project_id=prov.project_id,
            public_key=prov.public_key,
            private_key=prov.private_key.get_secret_value(),
            api_base=prov.api_base,
            region=prov.region,
        )

    return Hosts(
        source_control=source_control,
        transformer=create_transformer(settings),
        deployment=deployment,
        provisioning=provisioning,
    )
