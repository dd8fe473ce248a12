"""Pytest configuration and shared fixtures."""

from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from changeflow.config.settings import OrchestratorSettings
from changeflow.engine.backends import MemorySessionBackend
from changeflow.engine.session_store import SessionStore
from changeflow.enums import DeploymentState
from changeflow.exceptions import AlreadyExistsError, StoreUnavailableError
from changeflow.models.domain import (
    ChangeBatch,
    ChangeRequest,
    CommitInfo,
    DeploymentStatus,
    ProvisionResult,
    PullRequestInfo,
    TransformResult,
)
from changeflow.providers.base import CodeTransformer, DeploymentHost, ProvisioningHost, SourceControlHost
from changeflow.providers.factory import Hosts


class FakeSourceControl(SourceControlHost):
    """In-memory source-control host recording every call."""

    def __init__(self, files: dict[str, str] | None = None, branches: set[str] | None = None):
        self.files = dict(files or {})
        self.branches = set(branches if branches is not None else {"develop"})
        self.connected = False
        self.created_branches: list[str] = []
        self.commits: list[tuple[str, str, str]] = []
        self.pull_requests: list[dict] = []
        self.merged: list[int] = []
        self.branch_error: Exception | None = None

    @property
    def repository(self) -> str:
        return "acme/site"

    async def connect(self) -> None:
        self.connected = True

    async def branch_exists(self, branch: str) -> bool:
        return branch in self.branches

    async def create_branch(self, branch: str, from_branch: str) -> bool:
        if self.branch_error is not None:
            raise self.branch_error
        if branch in self.branches:
            raise AlreadyExistsError("branch", branch)
        self.branches.add(branch)
        self.created_branches.append(branch)
        return True

    async def get_file_contents(self, path: str, ref: str) -> str | None:
        return self.files.get(path)

    async def commit_file(self, path: str, content: str, message: str, branch: str) -> CommitInfo:
        self.commits.append((path, message, branch))
        return CommitInfo(path=path, sha=f"sha-{len(self.commits)}")

    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequestInfo:
        number = len(self.pull_requests) + 1
        self.pull_requests.append({"title": title, "body": body, "head": head, "base": base})
        return PullRequestInfo(number=number, url=f"https://github.com/acme/site/pull/{number}", branch=head)

    async def merge_pull_request(self, number: int, message: str | None = None) -> bool:
        self.merged.append(number)
        return True


class FakeTransformer(CodeTransformer):
    """Transformer appending a marker per change; paths in ``fail`` always fail."""

    def __init__(self, fail: set[str] | None = None, errors: dict[str, list[Exception]] | None = None):
        self.fail = set(fail or ())
        self.errors = {path: list(queue) for path, queue in (errors or {}).items()}
        self.calls: list[str] = []

    async def transform(self, file_path: str, content: str, changes: list[ChangeRequest]) -> TransformResult:
        self.calls.append(file_path)
        queued = self.errors.get(file_path)
        if queued:
            raise queued.pop(0)
        if file_path in self.fail:
            return TransformResult(success=False, error=f"cannot transform {file_path}")
        notes = "".join(f"\n// {change.description}" for change in changes)
        return TransformResult(success=True, new_content=content + notes, explanation="applied")

    async def suggest_tests(self, file_path: str, content: str) -> str:
        return f"- renders {file_path}"


class FakeDeploymentHost(DeploymentHost):
    """Returns queued states, then repeats the last one."""

    def __init__(self, states: list[DeploymentStatus] | None = None):
        self.states = list(states or [DeploymentStatus(DeploymentState.READY, url="https://preview.example.com")])
        self.refs: list[str] = []

    async def get_deployment(self, ref: str) -> DeploymentStatus:
        self.refs.append(ref)
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]


class FakeProvisioningHost(ProvisioningHost):
    def __init__(self) -> None:
        self.names: list[str] = []

    async def provision(self, name: str) -> ProvisionResult:
        self.names.append(name)
        return ProvisionResult(cluster_name=name, connection_info={"srv": "mongodb+srv://example"})


class OutageBackend(MemorySessionBackend):
    """Memory backend that can be taken offline for reads, writes or both."""

    def __init__(self) -> None:
        super().__init__()
        self.readable = True
        self.writable = True

    def go_down(self) -> None:
        self.readable = self.writable = False

    def come_back(self) -> None:
        self.readable = self.writable = True

    async def load(self, session_id: str) -> dict[str, Any] | None:
        if not self.readable:
            raise StoreUnavailableError("backend down")
        return await super().load(session_id)

    async def save(self, session_id: str, record: dict[str, Any]) -> None:
        if not self.writable:
            raise StoreUnavailableError("backend down")
        await super().save(session_id, record)

    async def list_ids(self) -> list[str]:
        if not self.readable:
            raise StoreUnavailableError("backend down")
        return await super().list_ids()

    async def append_audit(self, session_id: str, entry: dict[str, Any]) -> None:
        if not self.writable:
            raise StoreUnavailableError("backend down")
        await super().append_audit(session_id, entry)

    async def read_audit(self, session_id: str) -> list[dict[str, Any]]:
        if not self.readable:
            raise StoreUnavailableError("backend down")
        return await super().read_audit(session_id)


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary session directory."""
    state_dir = tmp_path / "sessions"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def settings(temp_state_dir: Path) -> OrchestratorSettings:
    """Settings with fast retries and deployment polling."""
    return OrchestratorSettings(
        repository={"owner": "acme", "name": "site"},
        source_control={"token": "test-token"},
        deployment={"enabled": True, "poll_interval": 0.01, "timeout": 0.2},
        store={"state_directory": str(temp_state_dir)},
        retry={"max_attempts": 3, "base_delay": 1.0, "max_delay": 30.0},
    )


@pytest.fixture
def store() -> SessionStore:
    """Session store over an in-memory backend."""
    return SessionStore(MemorySessionBackend(), ttl_seconds=3600, log_retention=50, summary_log_count=5)


@pytest.fixture
def sample_files() -> dict[str, str]:
    """A small repository where App imports Header and Header imports a shared type."""
    return {
        "src/App.tsx": "import Header from './components/Header'\nexport default function App() { return <Header /> }\n",
        "src/components/Header.tsx": (
            "import { Theme } from '../types'\nexport const Header = () => <div className='header' />\n"
        ),
        "src/types.ts": "export interface Theme { color: string }\n",
    }


@pytest.fixture
def sample_batch() -> ChangeBatch:
    """Change request touching two files."""
    return ChangeBatch(
        project_id="site-42",
        repository="acme/site",
        changes=[
            ChangeRequest(
                id="c1",
                file_path="src/App.tsx",
                description="Add a footer",
                component_id="App",
            ),
            ChangeRequest(
                id="c2",
                file_path="src/components/Header.tsx",
                description="Make the header sticky",
                component_id="App",
            ),
        ],
    )


@pytest.fixture
def source_control(sample_files: dict[str, str]) -> FakeSourceControl:
    return FakeSourceControl(files=sample_files)


@pytest.fixture
def transformer() -> FakeTransformer:
    return FakeTransformer()


@pytest.fixture
def deployment() -> FakeDeploymentHost:
    return FakeDeploymentHost()


@pytest.fixture
def hosts(source_control: FakeSourceControl, transformer: FakeTransformer, deployment: FakeDeploymentHost) -> Hosts:
    return Hosts(source_control=source_control, transformer=transformer, deployment=deployment)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fakes() -> SimpleNamespace:
    """Fake host and backend classes for tests that need custom behaviour."""
    return SimpleNamespace(
        SourceControl=FakeSourceControl,
        Transformer=FakeTransformer,
        DeploymentHost=FakeDeploymentHost,
        ProvisioningHost=FakeProvisioningHost,
        SleepRecorder=SleepRecorder,
        OutageBackend=OutageBackend,
    )
