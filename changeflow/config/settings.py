"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for every part of changeflow: the
repository and its hosts, the code transformer, the session store, the task
scheduler, the pipeline retry policy and the dependency resolver.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from changeflow.enums import TransformerBackend
from changeflow.exceptions import ConfigurationError


class RepositoryConfig(BaseModel):
    """Repository configuration."""

    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    base_branch: str = Field(default="develop", description="Branch feature branches are cut from")

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class SourceControlConfig(BaseModel):
    """Source-control host configuration (GitHub or GitHub Enterprise)."""

    base_url: str = Field(default="https://api.github.com", description="API base URL")
    token: SecretStr = Field(..., description="Access token used for branches, commits and pull requests")


class TransformerConfig(BaseModel):
    """Code transformer (AI) configuration."""

    backend: TransformerBackend = Field(
        default=TransformerBackend.OPENAI_COMPATIBLE, description="Transformer backend"
    )
    base_url: str = Field(default="https://api.openai.com/v1", description="Chat completions API base URL")
    model: str = Field(default="gpt-4o", description="Model identifier")
    api_key: SecretStr | None = Field(default=None, description="API key for the transformer endpoint")
    timeout: float = Field(default=300.0, gt=0, description="Request timeout in seconds")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="Sampling temperature")


class DeploymentConfig(BaseModel):
    """Deployment host configuration (Netlify-style preview deploys)."""

    enabled: bool = Field(default=True, description="Wait for a preview deployment after publishing")
    api_base: str = Field(default="https://api.netlify.com/api/v1", description="Deployment API base URL")
    token: SecretStr | None = Field(default=None, description="Deployment API token")
    site_id: str | None = Field(default=None, description="Site identifier on the deployment host")
    poll_interval: float = Field(default=10.0, gt=0, description="Seconds between deployment status polls")
    timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for a deployment before giving up")

    @model_validator(mode="after")
    def validate_site(self) -> DeploymentConfig:
        """A site id is required once deployment waiting is enabled with a token."""
        if self.enabled and self.token and not self.site_id:
            raise ValueError("deployment.site_id is required when a deployment token is configured")
        return self


class ProvisioningConfig(BaseModel):
    """Database provisioning configuration for initialization runs."""

    enabled: bool = Field(default=False, description="Provision a database for initialization runs")
    api_base: str = Field(
        default="https://cloud.mongodb.com/api/atlas/v1.0", description="Provisioning API base URL"
    )
    project_id: str | None = Field(default=None, description="Provisioning project (group) id")
    public_key: str | None = Field(default=None, description="API public key")
    private_key: SecretStr | None = Field(default=None, description="API private key")
    region: str = Field(default="US_EAST_1", description="Region for new clusters")


class StoreConfig(BaseModel):
    """Session store configuration."""

    state_directory: str = Field(default=".changeflow/sessions", description="Directory for session files")
    ttl_seconds: int = Field(default=7 * 24 * 3600, ge=60, description="Session time-to-live")
    log_retention: int = Field(default=500, ge=1, description="Log entries kept on the session record")
    summary_log_count: int = Field(default=10, ge=0, description="Log entries included in status summaries")


class SchedulerConfig(BaseModel):
    """Task scheduler configuration."""

    max_concurrency: int = Field(default=2, ge=1, le=10, description="Maximum concurrently running tasks")
    max_task_retries: int = Field(default=2, ge=0, description="Retries a recovery hook may grant per task")
    task_timeout: float = Field(default=600.0, gt=0, description="Per-task timeout in seconds")


class RetryConfig(BaseModel):
    """Whole-pipeline retry policy."""

    max_attempts: int = Field(default=3, ge=1, description="Maximum pipeline attempts per session")
    base_delay: float = Field(default=1.0, ge=0.0, description="Backoff base in seconds")
    max_delay: float = Field(default=30.0, ge=0.0, description="Backoff cap in seconds")
    fatal_patterns: list[str] = Field(
        default_factory=lambda: ["does not exist"],
        description="Case-insensitive message fragments that mark an error as fatal",
    )


class ResolverConfig(BaseModel):
    """Dependency resolver configuration."""

    max_depth: int = Field(default=3, ge=0, description="Depth bound for the related-file walk")
    max_related_files: int = Field(default=50, ge=0, description="Cap on related files pulled into the graph")
    path_aliases: dict[str, str] = Field(
        default_factory=lambda: {"@/": "src/"},
        description="Import prefixes mapped to repository paths",
    )


class OrchestratorSettings(BaseSettings):
    """Main changeflow settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="CHANGEFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    repository: RepositoryConfig
    source_control: SourceControlConfig
    transformer: TransformerConfig = Field(default_factory=TransformerConfig)
    deployment: DeploymentConfig = Field(default_factory=DeploymentConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)

    @property
    def state_dir(self) -> Path:
        """Get session directory as Path object."""
        return Path(self.store.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> OrchestratorSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            OrchestratorSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left untouched.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
