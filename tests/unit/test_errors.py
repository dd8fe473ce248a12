"""Tests for engine/errors.py and the exception hierarchy."""

import pytest

from changeflow.engine.errors import classify_error, is_fatal
from changeflow.enums import ErrorClass
from changeflow.exceptions import (
    BaseBranchMissingError,
    ChangeflowError,
    ConfigurationError,
    DeploymentTimeoutError,
    ExternalServiceError,
    FatalWorkflowError,
    InvalidBatchError,
    NoSuccessfulChangesError,
    RepositoryNotFoundError,
    TaskExecutionError,
    WorkflowError,
)


class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.parametrize(
        "error",
        [
            BaseBranchMissingError("develop", "acme/site"),
            RepositoryNotFoundError("acme/missing"),
            InvalidBatchError("Batch contains no changes"),
            ConfigurationError("bad config"),
            RuntimeError("Resource does not exist"),
            RuntimeError("Branch DOES NOT EXIST"),
        ],
    )
    def test_fatal(self, error: Exception):
        assert classify_error(error) is ErrorClass.FATAL

    @pytest.mark.parametrize(
        "error",
        [
            TimeoutError("read timed out"),
            ConnectionError("connection reset"),
            ExternalServiceError("GitHub create branch failed: Server Error", status_code=502),
            NoSuccessfulChangesError(["src/App.tsx"]),
            TaskExecutionError("Task implement:src/App.tsx timed out after 600s"),
        ],
    )
    def test_transient(self, error: Exception):
        assert classify_error(error) is ErrorClass.TRANSIENT

    def test_custom_patterns(self):
        error = RuntimeError("quota exceeded for project")

        assert is_fatal(error, ["quota exceeded"])
        assert not is_fatal(error, [])

    def test_empty_pattern_ignored(self):
        assert not is_fatal(RuntimeError("anything"), [""])


class TestExceptionHierarchy:
    """Tests for exception types and messages."""

    def test_fatal_errors_are_workflow_errors(self):
        assert issubclass(BaseBranchMissingError, FatalWorkflowError)
        assert issubclass(FatalWorkflowError, WorkflowError)
        assert issubclass(WorkflowError, ChangeflowError)

    def test_base_branch_message(self):
        error = BaseBranchMissingError("develop", "acme/site")

        assert error.message == "Base branch 'develop' does not exist in repository acme/site"
        assert error.branch == "develop"

    def test_external_service_details(self):
        error = ExternalServiceError("Netlify API error (500)", status_code=500, response_text="oops")

        assert error.details() == {
            "message": "Netlify API error (500)",
            "status_code": 500,
            "response_text": "oops",
        }

    def test_deployment_timeout_is_external(self):
        error = DeploymentTimeoutError("feature/x", 300)

        assert isinstance(error, ExternalServiceError)
        assert "feature/x" in error.message
