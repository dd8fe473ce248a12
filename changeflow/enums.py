"""Enumerations shared across the session store, scheduler and pipeline."""

from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle state of a workflow session.

    The happy path for a change request is::

        received -> validating -> analyzing -> processing -> publishing
        -> deploying -> testing -> completed

    Initialization runs pass through ``provisioning`` instead of
    ``analyzing``. ``failed`` is reachable from any non-terminal state.
    """

    RECEIVED = "received"
    VALIDATING = "validating"
    ANALYZING = "analyzing"
    PROCESSING = "processing"
    PROVISIONING = "provisioning"
    PUBLISHING = "publishing"
    DEPLOYING = "deploying"
    TESTING = "testing"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)

    @property
    def is_cancellable(self) -> bool:
        """Whether a user may still cancel a session in this state.

        Deployment is excluded because merge and deploy side effects are
        already under way on the remote hosts.
        """
        return self in _CANCELLABLE


_CANCELLABLE = frozenset(
    {
        SessionStatus.RECEIVED,
        SessionStatus.VALIDATING,
        SessionStatus.ANALYZING,
        SessionStatus.PROCESSING,
        SessionStatus.PROVISIONING,
        SessionStatus.PUBLISHING,
        SessionStatus.TESTING,
    }
)


class WorkflowKind(str, Enum):
    """Kind of run a session tracks. Selects the phase sequence."""

    CHANGE_REQUEST = "change_request"
    INITIALIZATION = "initialization"

    def __str__(self) -> str:
        return self.value

    @property
    def id_prefix(self) -> str:
        return "change" if self is WorkflowKind.CHANGE_REQUEST else "init"


class FailureReason(str, Enum):
    """Why a session ended in ``failed``."""

    FATAL = "fatal"
    RETRY_EXHAUSTED = "retry_exhausted"
    CANCELLED = "cancelled"
    NO_SUCCESSFUL_CHANGES = "no_successful_changes"

    def __str__(self) -> str:
        return self.value


class ErrorClass(str, Enum):
    """How the pipeline treats an error that escaped a phase."""

    FATAL = "fatal"
    TRANSIENT = "transient"

    def __str__(self) -> str:
        return self.value


class FileStatus(str, Enum):
    """Processing state of a single file unit."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class LogLevel(str, Enum):
    """Severity of a session log entry."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"

    def __str__(self) -> str:
        return self.value


class TaskType(str, Enum):
    """Kinds of work unit the scheduler runs."""

    ANALYZE = "analyze"
    PLAN = "plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    TEST = "test"

    def __str__(self) -> str:
        return self.value


class TaskStatus(str, Enum):
    """Scheduler-side state of a task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class WorkerRole(str, Enum):
    """Closed set of worker roles a task can be assigned to."""

    LEAD = "lead"
    ANALYZER = "analyzer"
    DEVELOPER = "developer"
    TESTER = "tester"
    REVIEWER = "reviewer"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def for_task_type(cls, task_type: TaskType) -> "WorkerRole":
        return _ROLE_BY_TASK_TYPE[task_type]


_ROLE_BY_TASK_TYPE = {
    TaskType.ANALYZE: WorkerRole.ANALYZER,
    TaskType.PLAN: WorkerRole.LEAD,
    TaskType.IMPLEMENT: WorkerRole.DEVELOPER,
    TaskType.REVIEW: WorkerRole.REVIEWER,
    TaskType.TEST: WorkerRole.TESTER,
}


class RiskLevel(str, Enum):
    """Risk tier of changing a file, derived from its fan-in."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def __str__(self) -> str:
        return self.value

    def escalate(self) -> "RiskLevel":
        if self is RiskLevel.LOW:
            return RiskLevel.MEDIUM
        return RiskLevel.HIGH


class Priority(str, Enum):
    """Priority attached to change requests and update suggestions."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class DeploymentState(str, Enum):
    """State reported by the deployment host."""

    BUILDING = "building"
    READY = "ready"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class TransformerBackend(str, Enum):
    """Code transformer backends that can be configured."""

    OPENAI_COMPATIBLE = "openai-compatible"

    def __str__(self) -> str:
        return self.value
