"""
Abstract base classes for the external hosts the pipeline drives.

Four collaborators are consumed through these interfaces:

- ``CodeTransformer``: rewrites one file according to change requests.
- ``SourceControlHost``: branches, commits and pull requests.
- ``DeploymentHost``: preview/production deployment status for a git ref.
- ``ProvisioningHost``: managed database provisioning for new projects.

Idempotency Contract:
    The pipeline re-runs every phase after a transient failure, so every
    create-style call must treat "already exists" as a distinguishable,
    non-fatal outcome. Implementations either report it in their return
    value (``create_branch`` returns False, ``CommitInfo.changed`` is False,
    ``PullRequestInfo.created`` is False, ``merge_pull_request`` returns
    False) or raise ``AlreadyExistsError``; the phases accept both.
"""

from abc import ABC, abstractmethod

from changeflow.models.domain import (
    ChangeRequest,
    CommitInfo,
    DeploymentStatus,
    ProvisionResult,
    PullRequestInfo,
    TransformResult,
)


class CodeTransformer(ABC):
    """Rewrites source files according to natural-language change requests.

    Each call is independent so files can be transformed concurrently.
    """

    async def connect(self) -> None:
        """Prepare clients. The default does nothing."""
        pass

    async def disconnect(self) -> None:
        """Release clients. The default does nothing."""
        pass

    @abstractmethod
    async def transform(self, file_path: str, content: str, changes: list[ChangeRequest]) -> TransformResult:
        """Apply ``changes`` to ``content``.

        Args:
            file_path: Repository path of the file, for context.
            content: Current file content. Empty for files that do not exist yet.
            changes: Change requests targeting this file.

        Returns:
            TransformResult. ``success`` False reports a transformation the
            backend could not perform; transport problems raise instead.
        """
        pass

    @abstractmethod
    async def suggest_tests(self, file_path: str, content: str) -> str:
        """Suggest test cases for the new version of a file.

        Returns:
            Free-form text describing suggested tests.
        """
        pass


class SourceControlHost(ABC):
    """Repository operations on a git hosting service."""

    async def connect(self) -> None:
        """Open the connection. Raise ``RepositoryNotFoundError`` for unknown repositories."""
        pass

    async def disconnect(self) -> None:
        pass

    @property
    @abstractmethod
    def repository(self) -> str:
        """``owner/name`` of the repository this host operates on."""
        pass

    @abstractmethod
    async def branch_exists(self, branch: str) -> bool:
        pass

    @abstractmethod
    async def create_branch(self, branch: str, from_branch: str) -> bool:
        """Create ``branch`` from ``from_branch``.

        Returns:
            True when the branch was created, False when it already existed.

        Raises:
            BaseBranchMissingError: If ``from_branch`` does not exist.
        """
        pass

    @abstractmethod
    async def get_file_contents(self, path: str, ref: str) -> str | None:
        """Content of ``path`` at ``ref``, or None when the file does not exist."""
        pass

    @abstractmethod
    async def commit_file(self, path: str, content: str, message: str, branch: str) -> CommitInfo:
        """Create or update one file on ``branch``.

        Returns:
            CommitInfo. ``changed`` is False when the branch already held
            identical content.
        """
        pass

    @abstractmethod
    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequestInfo:
        """Open a pull request, or return the open one for ``head``."""
        pass

    @abstractmethod
    async def merge_pull_request(self, number: int, message: str | None = None) -> bool:
        """Merge a pull request.

        Returns:
            True when merged by this call, False when it was already merged.
        """
        pass


class DeploymentHost(ABC):
    """Observes deployments triggered by pushes to the repository."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def get_deployment(self, ref: str) -> DeploymentStatus:
        """Latest deployment state for a branch name or commit sha."""
        pass


class ProvisioningHost(ABC):
    """Provisions managed infrastructure for newly initialized projects."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def provision(self, name: str) -> ProvisionResult:
        """Provision resources named ``name`` and return connection details."""
        pass
