"""GitHub source-control host using PyGithub."""

import asyncio
from collections.abc import Callable
from typing import TypeVar

import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from changeflow.exceptions import BaseBranchMissingError, ExternalServiceError, RepositoryNotFoundError
from changeflow.models.domain import CommitInfo, PullRequestInfo
from changeflow.providers.base import SourceControlHost

log = structlog.get_logger(__name__)

T = TypeVar("T")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous PyGithub call in a worker thread."""
    return await asyncio.to_thread(func)


def _service_error(action: str, error: GithubException) -> ExternalServiceError:
    data = error.data if isinstance(error.data, dict) else {}
    detail = data.get("message") or str(error)
    return ExternalServiceError(f"GitHub {action} failed: {detail}", status_code=error.status, response_text=str(data))


def _already_exists(error: GithubException) -> bool:
    return error.status == 422 and "already exists" in str(error.data).lower()


class GitHubSourceControl(SourceControlHost):
    """Source-control host backed by the GitHub REST API."""

    def __init__(self, token: str, owner: str, repo: str, base_url: str = "https://api.github.com"):
        """Initialize GitHub host.

        Args:
            token: GitHub personal access token or App token
            owner: Repository owner (user or organization)
            repo: Repository name
            base_url: GitHub API base URL (for GitHub Enterprise)
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        self.base_url = base_url.rstrip("/")
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    async def connect(self) -> None:
        """Open the client and load the repository.

        Raises:
            RepositoryNotFoundError: If the repository is missing or hidden from the token
        """
        if self._repo is not None:
            return

        def _connect() -> tuple[Github, GHRepository]:
            client = Github(auth=Auth.Token(self.token), base_url=self.base_url)
            return client, client.get_repo(self.repository)

        try:
            self._client, self._repo = await _run_sync(_connect)
        except GithubException as e:
            if e.status in (403, 404):
                raise RepositoryNotFoundError(self.repository) from e
            raise _service_error("connect", e) from e
        log.info("github_connected", base_url=self.base_url, repository=self.repository)

    async def disconnect(self) -> None:
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None

    async def _repository(self) -> GHRepository:
        if self._repo is None:
            await self.connect()
        if self._repo is None:
            raise RepositoryNotFoundError(self.repository)
        return self._repo

    async def branch_exists(self, branch: str) -> bool:
        repo = await self._repository()
        try:
            await _run_sync(lambda: repo.get_branch(branch))
            return True
        except GithubException as e:
            if e.status == 404:
                return False
            raise _service_error("get branch", e) from e

    async def create_branch(self, branch: str, from_branch: str) -> bool:
        log.info("create_branch", branch=branch, from_branch=from_branch)
        repo = await self._repository()

        def _create() -> None:
            try:
                source_sha = repo.get_git_ref(f"heads/{from_branch}").object.sha
            except GithubException as e:
                if e.status == 404:
                    raise BaseBranchMissingError(from_branch, self.repository) from e
                raise
            repo.create_git_ref(ref=f"refs/heads/{branch}", sha=source_sha)

        try:
            await _run_sync(_create)
        except GithubException as e:
            if _already_exists(e):
                log.info("github_branch_exists", branch=branch)
                return False
            log.error("github_create_branch_failed", branch=branch, error=str(e))
            raise _service_error("create branch", e) from e
        return True

    async def get_file_contents(self, path: str, ref: str) -> str | None:
        repo = await self._repository()

        def _get() -> str | None:
            contents = repo.get_contents(path, ref=ref)
            if isinstance(contents, list):
                return None
            return contents.decoded_content.decode("utf-8")

        try:
            return await _run_sync(_get)
        except GithubException as e:
            if e.status == 404:
                return None
            log.error("github_get_file_failed", path=path, ref=ref, error=str(e))
            raise _service_error("get file", e) from e

    async def commit_file(self, path: str, content: str, message: str, branch: str) -> CommitInfo:
        log.info("commit_file", path=path, branch=branch)
        repo = await self._repository()

        def _commit() -> CommitInfo:
            try:
                existing = repo.get_contents(path, ref=branch)
            except GithubException as e:
                if e.status != 404:
                    raise
                existing = None

            if existing is None or isinstance(existing, list):
                result = repo.create_file(path=path, message=message, content=content, branch=branch)
                return CommitInfo(path=path, sha=result["commit"].sha)

            if existing.decoded_content.decode("utf-8") == content:
                return CommitInfo(path=path, sha=repo.get_branch(branch).commit.sha, changed=False)

            result = repo.update_file(path=path, message=message, content=content, sha=existing.sha, branch=branch)
            return CommitInfo(path=path, sha=result["commit"].sha)

        try:
            return await _run_sync(_commit)
        except GithubException as e:
            log.error("github_commit_file_failed", path=path, branch=branch, error=str(e))
            raise _service_error("commit file", e) from e

    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequestInfo:
        log.info("create_pull_request", title=title, head=head, base=base)
        repo = await self._repository()

        def _find_open() -> GHPullRequest | None:
            for pr in repo.get_pulls(state="open", head=f"{self.owner}:{head}", base=base):
                return pr
            return None

        try:
            existing = await _run_sync(_find_open)
            if existing is not None:
                return PullRequestInfo(number=existing.number, url=existing.html_url, branch=head, created=False)
            pr = await _run_sync(lambda: repo.create_pull(title=title, body=body, head=head, base=base))
        except GithubException as e:
            if _already_exists(e):
                existing = await _run_sync(_find_open)
                if existing is not None:
                    return PullRequestInfo(number=existing.number, url=existing.html_url, branch=head, created=False)
            log.error("github_create_pr_failed", head=head, error=str(e))
            raise _service_error("create pull request", e) from e

        return PullRequestInfo(number=pr.number, url=pr.html_url, branch=head)

    async def merge_pull_request(self, number: int, message: str | None = None) -> bool:
        log.info("merge_pull_request", number=number)
        repo = await self._repository()

        def _merge() -> bool:
            pr = repo.get_pull(number)
            if pr.merged:
                return False
            pr.merge(commit_message=message or "")
            return True

        try:
            return await _run_sync(_merge)
        except GithubException as e:
            log.error("github_merge_pr_failed", number=number, error=str(e))
            raise _service_error("merge pull request", e) from e
