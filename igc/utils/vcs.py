"""
Pull request (GitHub) and merge request (GitLab) handling for the branch
lock strategy. Both hosts are wrapped behind the same small interface.
"""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlparse

from github import (
    Github,
    GithubException,
    UnknownObjectException,
)
from gitlab import Gitlab
from gitlab.exceptions import (
    GitlabAuthenticationError,
    GitlabCreateError,
    GitlabDeleteError,
    GitlabError,
    GitlabMRClosedError,
)
from gitlab.v4.objects import ProjectMergeRequest
from sretoolbox.utils import retry

from igc.utils.exceptions import (
    AuthenticationError,
    GitError,
    StaleBaseError,
)
from igc.utils.gitops_config import GitOpsCredential

GH_PUBLIC_HOST = "github.com"
GH_PUBLIC_API = "https://api.github.com"

# status codes the hosts answer with when the merge lost a race
MERGE_CONFLICT_STATUS_CODES = {405, 406, 409, 422}
AUTH_STATUS_CODES = {401, 403}

GITLAB_PENDING_MERGE_STATUS = {
    "unchecked",
    "checking",
    "preparing",
    "approvals_syncing",
}


@dataclass(frozen=True)
class ApiCallContext:
    method: str
    repo_url: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    url: str
    source_branch: str
    target_branch: str


class MergeabilityUnknown(Exception):
    pass


def repo_path(repo_url: str) -> str:
    path = urlparse(repo_url).path.strip("/")
    return path.removesuffix(".git")


def github_api_url(repo_url: str) -> str:
    parsed = urlparse(repo_url)
    if parsed.hostname == GH_PUBLIC_HOST:
        return GH_PUBLIC_API
    return f"{parsed.scheme or 'https'}://{parsed.netloc}/api/v3"


class PullRequestApi(ABC):
    def __init__(
        self,
        repo_url: str,
        before_api_call_hooks: list[Callable[[ApiCallContext], None]] | None = None,
    ) -> None:
        self.repo_url = repo_url
        self._before_api_call_hooks = before_api_call_hooks or []

    def _execute_hooks(self, method: str) -> None:
        context = ApiCallContext(method=method, repo_url=self.repo_url)
        for hook in self._before_api_call_hooks:
            hook(context)

    @abstractmethod
    def create_pull_request(
        self, source_branch: str, target_branch: str, title: str, body: str
    ) -> PullRequest:
        pass

    @abstractmethod
    def merge(self, pr: PullRequest) -> None:
        """
        :raises StaleBaseError: the pull request can not be merged anymore
            because its base moved
        """

    @abstractmethod
    def close(self, pr: PullRequest) -> None:
        pass

    @abstractmethod
    def delete_branch(self, branch: str) -> None:
        pass


class GithubPullRequestApi(PullRequestApi):
    def __init__(
        self,
        repo_url: str,
        token: str,
        timeout: int = 30,
        github: Github | None = None,
        before_api_call_hooks: list[Callable[[ApiCallContext], None]] | None = None,
    ) -> None:
        super().__init__(repo_url, before_api_call_hooks)
        git_cli = github
        if not git_cli:
            git_cli = Github(token, base_url=github_api_url(repo_url), timeout=timeout)
        self._execute_hooks("get_repo")
        try:
            self._repo = git_cli.get_repo(repo_path(repo_url))
        except GithubException as e:
            if e.status in AUTH_STATUS_CODES:
                raise AuthenticationError(
                    f"access to {repo_url} denied: {e.status}"
                ) from None
            raise

    def create_pull_request(
        self, source_branch: str, target_branch: str, title: str, body: str
    ) -> PullRequest:
        self._execute_hooks("create_pull")
        try:
            pr = self._repo.create_pull(
                title=title, body=body, base=target_branch, head=source_branch
            )
        except GithubException as e:
            if e.status in AUTH_STATUS_CODES:
                raise AuthenticationError(
                    f"unable to open pull request on {self.repo_url}: {e.status}"
                ) from None
            raise GitError(
                f"unable to open pull request on {self.repo_url}: {e.data}"
            ) from e
        return PullRequest(
            number=pr.number,
            url=pr.html_url,
            source_branch=source_branch,
            target_branch=target_branch,
        )

    @retry(exceptions=MergeabilityUnknown, max_attempts=5)
    def _mergeable(self, number: int) -> bool:
        self._execute_hooks("get_pull")
        mergeable = self._repo.get_pull(number).mergeable
        if mergeable is None:
            raise MergeabilityUnknown(f"mergeability of #{number} not computed yet")
        return mergeable

    def merge(self, pr: PullRequest) -> None:
        try:
            mergeable = self._mergeable(pr.number)
        except MergeabilityUnknown:
            # let the merge call decide
            mergeable = True
        if not mergeable:
            raise StaleBaseError(f"pull request {pr.url} is not mergeable")

        self._execute_hooks("merge")
        try:
            status = self._repo.get_pull(pr.number).merge(merge_method="squash")
        except GithubException as e:
            if e.status in AUTH_STATUS_CODES:
                raise AuthenticationError(
                    f"unable to merge {pr.url}: {e.status}"
                ) from None
            if e.status in MERGE_CONFLICT_STATUS_CODES:
                raise StaleBaseError(f"unable to merge {pr.url}: {e.data}") from e
            raise
        if not status.merged:
            raise StaleBaseError(f"unable to merge {pr.url}: {status.message}")

    def close(self, pr: PullRequest) -> None:
        self._execute_hooks("close_pull")
        self._repo.get_pull(pr.number).edit(state="closed")

    def delete_branch(self, branch: str) -> None:
        self._execute_hooks("delete_branch")
        try:
            self._repo.get_git_ref(f"heads/{branch}").delete()
        except UnknownObjectException:
            logging.debug(f"branch {branch} already gone")


class GitLabMergeRequestApi(PullRequestApi):
    def __init__(
        self,
        repo_url: str,
        token: str,
        timeout: int = 30,
        gitlab: Gitlab | None = None,
        before_api_call_hooks: list[Callable[[ApiCallContext], None]] | None = None,
        ssl_verify: bool = True,
    ) -> None:
        super().__init__(repo_url, before_api_call_hooks)
        parsed = urlparse(repo_url)
        gl = gitlab
        if not gl:
            gl = Gitlab(
                f"{parsed.scheme or 'https'}://{parsed.netloc}",
                private_token=token,
                timeout=timeout,
                ssl_verify=ssl_verify,
            )
        self._execute_hooks("get_project")
        try:
            self.project = gl.projects.get(repo_path(repo_url))
        except GitlabAuthenticationError as e:
            raise AuthenticationError(
                f"access to {repo_url} denied: {e.response_code}"
            ) from None

    def create_pull_request(
        self, source_branch: str, target_branch: str, title: str, body: str
    ) -> PullRequest:
        self._execute_hooks("create_mr")
        try:
            mr = self.project.mergerequests.create({
                "source_branch": source_branch,
                "target_branch": target_branch,
                "title": title,
                "description": body,
                "remove_source_branch": True,
            })
        except GitlabCreateError as e:
            if e.response_code in AUTH_STATUS_CODES:
                raise AuthenticationError(
                    f"unable to open merge request on {self.repo_url}: "
                    f"{e.response_code}"
                ) from None
            raise GitError(
                f"unable to open merge request on {self.repo_url}: {e.error_message}"
            ) from e
        return PullRequest(
            number=mr.iid,
            url=mr.web_url,
            source_branch=source_branch,
            target_branch=target_branch,
        )

    @retry(exceptions=MergeabilityUnknown, max_attempts=5)
    def _merge_request(self, number: int) -> ProjectMergeRequest:
        self._execute_hooks("get_mr")
        mr = self.project.mergerequests.get(number)
        if getattr(mr, "detailed_merge_status", None) in GITLAB_PENDING_MERGE_STATUS:
            raise MergeabilityUnknown(f"merge status of !{number} not computed yet")
        return mr

    def merge(self, pr: PullRequest) -> None:
        try:
            mr = self._merge_request(pr.number)
        except MergeabilityUnknown:
            mr = self.project.mergerequests.get(pr.number)
        if getattr(mr, "has_conflicts", False):
            raise StaleBaseError(f"merge request {pr.url} has conflicts")

        self._execute_hooks("merge")
        try:
            mr.merge(should_remove_source_branch=True)
        except GitlabMRClosedError as e:
            if e.response_code in AUTH_STATUS_CODES:
                raise AuthenticationError(
                    f"unable to merge {pr.url}: {e.response_code}"
                ) from None
            if e.response_code in MERGE_CONFLICT_STATUS_CODES:
                raise StaleBaseError(
                    f"unable to merge {pr.url}: {e.error_message}"
                ) from e
            raise

    def close(self, pr: PullRequest) -> None:
        self._execute_hooks("close_mr")
        mr = self.project.mergerequests.get(pr.number)
        mr.state_event = "close"
        mr.save()

    def delete_branch(self, branch: str) -> None:
        self._execute_hooks("delete_branch")
        try:
            self.project.branches.delete(branch)
        except GitlabDeleteError as e:
            if e.response_code != 404:
                raise
            logging.debug(f"branch {branch} already gone")


def init_pr_api(
    repo_url: str,
    credential: GitOpsCredential,
    before_api_call_hooks: list[Callable[[ApiCallContext], None]] | None = None,
    timeout: int = 30,
) -> PullRequestApi:
    host = urlparse(repo_url).hostname or ""
    token = credential.token.get_secret_value()
    if "gitlab" in host:
        return GitLabMergeRequestApi(
            repo_url,
            token,
            timeout=timeout,
            before_api_call_hooks=before_api_call_hooks,
        )
    return GithubPullRequestApi(
        repo_url,
        token,
        timeout=timeout,
        before_api_call_hooks=before_api_call_hooks,
    )


def cleanup_pull_request(api: PullRequestApi, pr: PullRequest) -> None:
    """Closes a pull request that will not be merged and removes its branch."""
    try:
        api.close(pr)
        api.delete_branch(pr.source_branch)
    except (GithubException, GitlabError) as e:
        logging.error(f"failed to clean up pull request {pr.url}: {e}")


def cleanup_branch(api: PullRequestApi, branch: str) -> None:
    try:
        api.delete_branch(branch)
    except (GithubException, GitlabError) as e:
        logging.error(f"failed to delete branch {branch}: {e}")
