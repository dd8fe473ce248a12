"""Custom exception hierarchy for changeflow.

This module defines a structured exception hierarchy that lets the pipeline
tell configuration problems (which no amount of retrying will fix) apart from
transient failures, and lets callers of the service map errors to responses.

Exception Hierarchy:
    ChangeflowError (base)
    ├── ConfigurationError
    ├── StoreUnavailableError
    ├── SessionNotFoundError
    ├── SessionTerminatedError
    ├── SessionNotCancellableError
    ├── AlreadyExistsError
    ├── WorkflowError
    │   ├── FatalWorkflowError
    │   │   ├── BaseBranchMissingError
    │   │   ├── RepositoryNotFoundError
    │   │   └── InvalidBatchError
    │   ├── NoSuccessfulChangesError
    │   ├── DependencyFailedError
    │   └── TaskExecutionError
    └── ExternalServiceError
        └── DeploymentTimeoutError

Example Usage:
    >>> from changeflow.exceptions import BaseBranchMissingError
    >>> if not await host.branch_exists("develop"):
    ...     raise BaseBranchMissingError("develop", "acme/site")
"""

from typing import Any


class ChangeflowError(Exception):
    """Base exception for all changeflow errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(ChangeflowError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings. The pipeline treats these as fatal.
    """

    pass


class StoreUnavailableError(ChangeflowError):
    """The durable session backend could not be reached."""

    pass


class SessionNotFoundError(ChangeflowError):
    """No session exists for the given id, or it has expired."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionTerminatedError(ChangeflowError):
    """A mutation was attempted on a completed or failed session.

    Terminal sessions are immutable. The pipeline uses this error to notice
    that a session was cancelled underneath it and stops without retrying.
    """

    def __init__(self, session_id: str, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is already {status}")


class SessionNotCancellableError(ChangeflowError):
    """Cancellation was requested for a session in a non-cancellable state."""

    def __init__(self, session_id: str, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} cannot be cancelled in state '{status}'")


class AlreadyExistsError(ChangeflowError):
    """A remote resource (branch, pull request, commit) already exists.

    Steps that create remote resources treat this as success.

    Attributes:
        resource: Kind of resource, e.g. "branch"
        identifier: Name or number of the existing resource
    """

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} already exists: {identifier}")


class WorkflowError(ChangeflowError):
    """Workflow execution errors.

    Raised when a phase of the pipeline fails. Unless a subclass says
    otherwise the failure is considered transient and the whole pipeline
    is retried.
    """

    pass


class FatalWorkflowError(WorkflowError):
    """A workflow failure that retrying cannot fix."""

    pass


class BaseBranchMissingError(FatalWorkflowError):
    """The base branch of a batch does not exist in the repository."""

    def __init__(self, branch: str, repository: str) -> None:
        self.branch = branch
        self.repository = repository
        super().__init__(f"Base branch '{branch}' does not exist in repository {repository}")


class RepositoryNotFoundError(FatalWorkflowError):
    """The target repository does not exist or is not reachable with the configured token."""

    def __init__(self, repository: str) -> None:
        self.repository = repository
        super().__init__(f"Repository {repository} does not exist or is not accessible")


class InvalidBatchError(FatalWorkflowError):
    """The submitted batch is empty or malformed."""

    pass


class NoSuccessfulChangesError(WorkflowError):
    """No file in the batch was transformed successfully."""

    def __init__(self, failed_files: list[str]) -> None:
        self.failed_files = failed_files
        super().__init__(f"No changes could be applied ({len(failed_files)} file(s) failed)")


class DependencyFailedError(WorkflowError):
    """A task was skipped because one of its dependencies failed."""

    def __init__(self, task_id: str, failed_dependencies: list[str]) -> None:
        self.task_id = task_id
        self.failed_dependencies = failed_dependencies
        super().__init__(f"Task {task_id} skipped, failed dependencies: {', '.join(failed_dependencies)}")


class TaskExecutionError(WorkflowError):
    """A scheduled task failed to execute.

    Attributes:
        task_id: Identifier of the failed task
    """

    def __init__(self, message: str, task_id: str | None = None) -> None:
        self.task_id = task_id
        super().__init__(message)


class ExternalServiceError(ChangeflowError):
    """External service errors (source-control host, deployment host, AI API).

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code (if applicable)
        response_text: Raw response text from service (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code
            response_text: Raw response text
        """
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text

    def details(self) -> dict[str, Any]:
        """Structured fields suitable for log context."""
        return {
            "message": self.message,
            "status_code": self.status_code,
            "response_text": self.response_text,
        }


class DeploymentTimeoutError(ExternalServiceError):
    """A deployment did not reach a final state before the deadline."""

    def __init__(self, ref: str, timeout: float) -> None:
        self.ref = ref
        self.timeout = timeout
        super().__init__(f"Deployment for {ref} not ready after {timeout:.0f}s")
