import base64
import logging
import os
import re
import subprocess
import tempfile
from collections.abc import (
    Callable,
    Iterator,
)
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from igc.utils.exceptions import (
    AuthenticationError,
    GitError,
    StaleBaseError,
)
from igc.utils.gitops_config import GitOpsCredential

DEFAULT_AUTHOR_NAME = "igc-cli"
DEFAULT_AUTHOR_EMAIL = "igc-cli@users.noreply.github.com"
DEFAULT_TIMEOUT = 300

STALE_BASE_MARKERS = [
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "stale info",
    "cannot lock ref",
    "failed to update ref",
]

AUTHENTICATION_MARKERS = [
    "Authentication failed",
    "could not read Username",
    "Permission to",
    "HTTP Basic: Access denied",
    "The requested URL returned error: 401",
    "The requested URL returned error: 403",
]


@dataclass(frozen=True)
class WorkingCopy:
    path: Path
    repo_url: str
    base_branch: str


@dataclass(frozen=True)
class PushResult:
    pushed: bool
    branch: str
    sha: str | None = None


def auth_env(credential: GitOpsCredential | None) -> dict[str, str]:
    """
    Environment passing the credential as an http header through
    GIT_CONFIG_* variables, so it ends up neither in argv nor in .git/config.
    """
    env = {"GIT_TERMINAL_PROMPT": "0"}
    if credential is None:
        return env
    basic = base64.b64encode(
        f"{credential.username}:{credential.token.get_secret_value()}".encode()
    ).decode()
    env.update({
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "http.extraHeader",
        "GIT_CONFIG_VALUE_0": f"Authorization: Basic {basic}",
    })
    return env


def mask(text: str, credential: GitOpsCredential | None) -> str:
    token = credential.token.get_secret_value() if credential else None
    if token:
        text = text.replace(token, "***")
    # tokens embedded in urls by the user
    return re.sub(r"(https?://[^:/@\s]+):[^@\s]+@", r"\1:***@", text)


def classify_error(
    action: str, stderr: str, credential: GitOpsCredential | None
) -> GitError:
    msg = f"git {action} failed: {mask(stderr.strip(), credential)}"
    if any(m in stderr for m in AUTHENTICATION_MARKERS):
        return AuthenticationError(msg)
    if action == "push" and any(m in stderr for m in STALE_BASE_MARKERS):
        return StaleBaseError(msg)
    return GitError(msg)


def browser_url(remote_url: str) -> str:
    """
    'git@github.com:org/repo.git' -> 'https://github.com/org/repo'
    """
    url = remote_url.strip()
    ssh = re.match(r"^(?:ssh://)?[^@/]+@([^:/]+)[:/](.+)$", url)
    if ssh:
        url = f"https://{ssh.group(1)}/{ssh.group(2)}"
    # drop credentials embedded in https remotes
    url = re.sub(r"^(https?://)[^@/]+@", r"\1", url)
    return url.rstrip("/").removesuffix(".git")


class GitClient:
    """
    Thin wrapper around the git binary for the clone, commit and push
    sequence of a gitops update.

    :param before_network_call: called before every command that talks to
        the remote, e.g. a rate limiter
    """

    def __init__(
        self,
        author_name: str = DEFAULT_AUTHOR_NAME,
        author_email: str = DEFAULT_AUTHOR_EMAIL,
        timeout: int = DEFAULT_TIMEOUT,
        before_network_call: Callable[[], None] | None = None,
    ) -> None:
        self.author_name = author_name
        self.author_email = author_email
        self.timeout = timeout
        self.before_network_call = before_network_call

    def _run(
        self,
        args: list[str],
        cwd: str | Path | None = None,
        credential: GitOpsCredential | None = None,
        network: bool = False,
    ) -> subprocess.CompletedProcess:
        if network and self.before_network_call:
            self.before_network_call()
        env = {**os.environ, **auth_env(credential)}
        try:
            return subprocess.run(
                ["git", *args],
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise GitError(
                f"git {args[0]} timed out after {self.timeout}s"
            ) from None
        except FileNotFoundError as e:
            raise GitError(f"git binary not found: {e}") from e

    def _check(
        self,
        action: str,
        args: list[str],
        cwd: str | Path | None = None,
        credential: GitOpsCredential | None = None,
        network: bool = False,
    ) -> str:
        result = self._run(args, cwd=cwd, credential=credential, network=network)
        if result.returncode != 0:
            raise classify_error(action, result.stderr, credential)
        return result.stdout.strip()

    def clone(
        self,
        repo_url: str,
        wd: str | Path,
        credential: GitOpsCredential | None = None,
        depth: int | None = 1,
        branch: str | None = None,
    ) -> None:
        args = ["clone"]
        if depth:
            args += ["--depth", str(depth)]
        if branch:
            args += ["--branch", branch]
        args += [repo_url, str(wd)]
        logging.debug(f"cloning {repo_url}")
        self._check("clone", args, credential=credential, network=True)

    def current_branch(self, wd: str | Path) -> str:
        return self._check("rev-parse", ["rev-parse", "--abbrev-ref", "HEAD"], cwd=wd)

    def rev_parse(self, ref: str, wd: str | Path) -> str:
        return self._check("rev-parse", ["rev-parse", ref], cwd=wd)

    @contextmanager
    def checkout(
        self,
        repo_url: str,
        credential: GitOpsCredential | None,
        tmp_dir: str | None = None,
        branch: str | None = None,
    ) -> Iterator[WorkingCopy]:
        """
        Clones the current tip of the repo into a temporary directory that
        is removed again when the context exits, on every path.
        """
        if tmp_dir:
            Path(tmp_dir).mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="igc-gitops-", dir=tmp_dir) as wd:
            path = Path(wd) / "repo"
            self.clone(repo_url, path, credential=credential, branch=branch)
            yield WorkingCopy(
                path=path,
                repo_url=repo_url,
                base_branch=branch or self.current_branch(path),
            )

    def has_changes(self, wc: WorkingCopy) -> bool:
        self._check("add", ["add", "--all"], cwd=wc.path)
        result = self._run(["diff", "--cached", "--quiet"], cwd=wc.path)
        return result.returncode != 0

    def commit(self, wc: WorkingCopy, message: str) -> str:
        self._check(
            "commit",
            [
                "-c",
                f"user.name={self.author_name}",
                "-c",
                f"user.email={self.author_email}",
                "-c",
                "commit.gpgsign=false",
                "commit",
                "--message",
                message,
            ],
            cwd=wc.path,
        )
        return self.rev_parse("HEAD", wc.path)

    def push(
        self,
        wc: WorkingCopy,
        target_branch: str,
        credential: GitOpsCredential | None,
    ) -> None:
        logging.debug(f"pushing {wc.repo_url} HEAD to {target_branch}")
        self._check(
            "push",
            ["push", "origin", f"HEAD:refs/heads/{target_branch}"],
            cwd=wc.path,
            credential=credential,
            network=True,
        )

    def commit_and_push(
        self,
        wc: WorkingCopy,
        message: str,
        target_branch: str,
        credential: GitOpsCredential | None,
    ) -> PushResult:
        if not self.has_changes(wc):
            return PushResult(pushed=False, branch=target_branch)
        sha = self.commit(wc, message)
        self.push(wc, target_branch, credential)
        return PushResult(pushed=True, branch=target_branch, sha=sha)

    def remote_url(self, remote: str, wd: str | Path | None = None) -> str | None:
        result = self._run(["remote", "get-url", remote], cwd=wd)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def is_inside_work_tree(self, wd: str | Path | None = None) -> bool:
        result = self._run(["rev-parse", "--is-inside-work-tree"], cwd=wd)
        return result.returncode == 0
