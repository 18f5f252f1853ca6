"""
Populates a gitops repository with the payload of a module and the Argo CD
Application deploying it, or removes both again.

One run goes through

    Idle -> Claiming -> Syncing -> Materializing -> Committing -> Pushing
         -> (Retrying -> Syncing | Succeeded | Failed) -> Releasing -> Done

The mutex is released on every path. Only the branch lock strategy retries:
a lost race against another writer shows up as a stale base and the whole
sequence is run again against a fresh clone.
"""

import json
import logging
import secrets
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import (
    dataclass,
    field,
)
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from igc.utils.exceptions import (
    GitOpsPopulateError,
    ParameterError,
    StaleBaseError,
)
from igc.utils.git import (
    GitClient,
    WorkingCopy,
)
from igc.utils.gitops_config import (
    GitOpsConfigResolver,
    GitOpsCredential,
    GitOpsLayer,
    GitOpsModuleInput,
    normalize_repo_url,
)
from igc.utils.mutex import (
    DEFAULT_LOCK_TIMEOUT,
    ClaimedMutex,
    LockStrategy,
    Mutex,
    MutexDescriptor,
    create_mutex,
)
from igc.utils.payload import PayloadMaterializer
from igc.utils.rate_limit import TokenBucket
from igc.utils.vcs import (
    PullRequest,
    PullRequestApi,
    cleanup_branch,
    cleanup_pull_request,
    init_pr_api,
)

LOCK_SCOPE = "gitops-module"
DEFAULT_TMP_DIR = "/tmp/gitops-module"
DEFAULT_MAX_ATTEMPTS = 5
MODULE_TYPES = ["base", "operators", "instances"]

PullRequestApiFactory = Callable[[str, GitOpsCredential], PullRequestApi]


class GitOpsModuleParams(BaseModel, frozen=True):
    name: str = Field(min_length=1)
    namespace: str = Field(default="default", min_length=1)
    layer: GitOpsLayer = GitOpsLayer.APPLICATIONS
    content_dir: str | None = None
    gitops_config_file: str | None = None
    bootstrap_repo_url: str | None = None
    gitops_credentials_file: str | None = None
    token: SecretStr | None = None
    username: str | None = None
    application_path: str | None = None
    branch: str | None = None
    server_name: str = "default"
    type: str = "base"
    value_files: list[str] = []
    lock: LockStrategy = LockStrategy.BRANCH
    auto_merge: bool = True
    delete: bool = False
    ignore_diff: list[dict[str, Any]] | None = None
    rate_limit: bool = False
    cascading_delete: bool = True
    tmp_dir: str = DEFAULT_TMP_DIR
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    is_namespace: bool = False

    @field_validator("lock", mode="before")
    @classmethod
    def parse_lock(cls, v: Any) -> LockStrategy:
        return LockStrategy.parse(v)

    @field_validator("type")
    @classmethod
    def check_type(cls, v: str) -> str:
        if v not in MODULE_TYPES:
            raise ParameterError(f"type must be one of {MODULE_TYPES}, got '{v}'")
        return v

    @field_validator("value_files", mode="before")
    @classmethod
    def split_value_files(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [f.strip() for f in v if f and f.strip()]

    @field_validator("ignore_diff", mode="before")
    @classmethod
    def parse_ignore_diff(cls, v: Any) -> list[dict[str, Any]] | None:
        if v is None or v == "":
            return None
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ParameterError(f"ignoreDiff is not valid json: {e}") from None
        if isinstance(v, dict):
            v = [v]
        if not isinstance(v, list) or not all(isinstance(d, dict) for d in v):
            raise ParameterError("ignoreDiff must be a json object or list of objects")
        return v

    @model_validator(mode="after")
    def check_exclusive_options(self) -> "GitOpsModuleParams":
        if self.gitops_config_file and self.bootstrap_repo_url:
            raise ParameterError(
                "gitopsConfigFile and bootstrapRepoUrl are mutually exclusive"
            )
        if not self.gitops_config_file and not self.bootstrap_repo_url:
            raise ParameterError(
                "one of gitopsConfigFile or bootstrapRepoUrl is required"
            )
        if self.gitops_credentials_file and self.token:
            raise ParameterError(
                "gitopsCredentialsFile and token are mutually exclusive"
            )
        return self

    @classmethod
    def build(cls, **kwargs: Any) -> "GitOpsModuleParams":
        try:
            return cls(**kwargs)
        except ValidationError as e:
            raise ParameterError(str(e)) from None

    def masked(self) -> dict[str, Any]:
        """Params as printed by --debug. SecretStr dumps as '**********'."""
        return self.model_dump(mode="json")


class State(Enum):
    IDLE = "Idle"
    CLAIMING = "Claiming"
    SYNCING = "Syncing"
    MATERIALIZING = "Materializing"
    COMMITTING = "Committing"
    PUSHING = "Pushing"
    RETRYING = "Retrying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    RELEASING = "Releasing"
    DONE = "Done"


class AttemptOutcome(Enum):
    PUSHED = "pushed"
    NO_CHANGES = "no-changes"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class AttemptResult:
    outcome: AttemptOutcome
    pull_requests: list[PullRequest] = field(default_factory=list)
    error: StaleBaseError | None = None


@dataclass(frozen=True)
class PopulateResult:
    changed: bool
    attempts: int
    pull_requests: list[PullRequest] = field(default_factory=list)


def unique_branch_name(name: str) -> str:
    return f"{name}-{secrets.token_hex(3)}"


def commit_message(module: GitOpsModuleInput, delete: bool) -> str:
    if delete:
        return f"Deletes {module.name} from {module.layer.value}"
    return f"Populates {module.name} in {module.layer.value}"


class GitOpsModuleOrchestrator:
    """
    Runs one populate or delete of a module. All collaborators are passed
    in; nothing here reads the process environment.
    """

    def __init__(
        self,
        mutex: Mutex,
        git_client: GitClient,
        config_resolver: GitOpsConfigResolver,
        materializer: PayloadMaterializer,
        pr_api_factory: PullRequestApiFactory,
    ) -> None:
        self.mutex = mutex
        self.git = git_client
        self.config_resolver = config_resolver
        self.materializer = materializer
        self.pr_api_factory = pr_api_factory
        self.lock = LockStrategy.BRANCH
        self.auto_merge = True
        self.tmp_dir: str | None = None
        self.state = State.IDLE
        self.history: list[State] = [State.IDLE]

    def _transition(self, state: State) -> None:
        logging.debug(f"{self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def run(self, params: GitOpsModuleParams) -> PopulateResult:
        self.lock = params.lock
        self.auto_merge = params.auto_merge
        self.tmp_dir = params.tmp_dir
        claim: ClaimedMutex | None = None
        try:
            self._transition(State.CLAIMING)
            claim = self.mutex.claim(
                MutexDescriptor(
                    name=params.name,
                    namespace=params.namespace,
                    content_dir=params.content_dir,
                )
            )
            logging.info(f"claimed {self.lock.value} lock for {params.name}")
            module = build_module_input(params, self.config_resolver)
            result = self._run_attempts(module, params.delete, params.max_attempts)
            self._transition(State.SUCCEEDED)
            return result
        except Exception:
            self._transition(State.FAILED)
            raise
        finally:
            self._transition(State.RELEASING)
            if claim is not None:
                claim.release()
            self._transition(State.DONE)

    def _run_attempts(
        self, module: GitOpsModuleInput, delete: bool, max_attempts: int
    ) -> PopulateResult:
        retries = max_attempts if self.lock == LockStrategy.BRANCH else 1
        last_error: StaleBaseError | None = None
        for attempt in range(1, retries + 1):
            if attempt > 1:
                self._transition(State.RETRYING)
                logging.info(
                    f"retrying {module.name} ({attempt}/{retries}) "
                    f"after conflict: {last_error}"
                )
            result = self._attempt(module, delete)
            match result.outcome:
                case AttemptOutcome.NO_CHANGES:
                    logging.info(f"no changes for {module.name}, nothing to push")
                    return PopulateResult(changed=False, attempts=attempt)
                case AttemptOutcome.PUSHED:
                    return PopulateResult(
                        changed=True,
                        attempts=attempt,
                        pull_requests=result.pull_requests,
                    )
                case AttemptOutcome.CONFLICT:
                    last_error = result.error
        raise GitOpsPopulateError(
            f"unable to update gitops repo for {module.name} after "
            f"{retries} attempts: {last_error}"
        ) from last_error

    def _attempt(self, module: GitOpsModuleInput, delete: bool) -> AttemptResult:
        self._transition(State.SYNCING)
        targets = self.materializer.targets(module)
        with ExitStack() as stack:
            working_copies: dict[str, WorkingCopy] = {}
            for url in targets.repo_urls:
                credential = module.gitops_credentials.lookup(url)
                working_copies[normalize_repo_url(url)] = stack.enter_context(
                    self.git.checkout(url, credential, tmp_dir=self.tmp_dir)
                )

            self._transition(State.MATERIALIZING)
            if delete:
                self.materializer.delete(working_copies, module)
            else:
                self.materializer.populate(working_copies, module)

            self._transition(State.COMMITTING)
            changed = [
                wc for wc in working_copies.values() if self.git.has_changes(wc)
            ]
            if not changed:
                return AttemptResult(AttemptOutcome.NO_CHANGES)

            self._transition(State.PUSHING)
            message = commit_message(module, delete)
            pull_requests: list[PullRequest] = []
            for wc in changed:
                credential = module.gitops_credentials.lookup(wc.repo_url)
                self.git.commit(wc, message)
                if self.lock != LockStrategy.BRANCH:
                    self.git.push(wc, wc.base_branch, credential)
                    logging.info(f"pushed {message!r} to {wc.repo_url}")
                    continue
                try:
                    pull_requests.append(
                        self._push_pull_request(wc, credential, module, message)
                    )
                except StaleBaseError as e:
                    return AttemptResult(AttemptOutcome.CONFLICT, error=e)
            return AttemptResult(AttemptOutcome.PUSHED, pull_requests=pull_requests)

    def _push_pull_request(
        self,
        wc: WorkingCopy,
        credential: GitOpsCredential,
        module: GitOpsModuleInput,
        message: str,
    ) -> PullRequest:
        branch = unique_branch_name(module.name)
        self.git.push(wc, branch, credential)
        api = self.pr_api_factory(wc.repo_url, credential)
        try:
            pr = api.create_pull_request(
                source_branch=branch,
                target_branch=wc.base_branch,
                title=message,
                body=f"{message}\n\nnamespace: {module.namespace}",
            )
        except Exception:
            cleanup_branch(api, branch)
            raise
        logging.info(f"opened pull request {pr.url}")
        if not self.auto_merge:
            return pr
        try:
            api.merge(pr)
        except StaleBaseError:
            logging.info(f"pull request {pr.url} lost the race, closing it")
            cleanup_pull_request(api, pr)
            raise
        except Exception:
            logging.error(f"failed to merge pull request {pr.url}, closing it")
            cleanup_pull_request(api, pr)
            raise
        logging.info(f"merged pull request {pr.url}")
        cleanup_branch(api, branch)
        return pr


def build_module_input(
    params: GitOpsModuleParams, resolver: GitOpsConfigResolver
) -> GitOpsModuleInput:
    resolved = resolver.resolve(
        gitops_config_file=params.gitops_config_file,
        bootstrap_repo_url=params.bootstrap_repo_url,
        gitops_credentials_file=params.gitops_credentials_file,
        token=params.token.get_secret_value() if params.token else None,
        username=params.username,
    )
    # fails early when the layer is not configured
    resolved.config.layer_config(params.layer)
    return GitOpsModuleInput(
        name=params.name,
        namespace=params.namespace,
        layer=params.layer,
        gitops_config=resolved.config,
        gitops_credentials=resolved.credentials,
        content_dir=params.content_dir,
        application_path=params.application_path,
        branch=params.branch,
        server_name=params.server_name,
        type=params.type,
        value_files=tuple(params.value_files),
        ignore_diff=tuple(params.ignore_diff) if params.ignore_diff else None,
        cascading_delete=params.cascading_delete,
        is_namespace=params.is_namespace,
    )


def run(
    params: GitOpsModuleParams,
    git_client: GitClient | None = None,
    pr_api_factory: PullRequestApiFactory | None = None,
) -> PopulateResult:
    hooks: list[Callable[..., None]] = []
    if params.rate_limit:
        hooks.append(TokenBucket())
    if git_client is None:
        git_client = GitClient(before_network_call=hooks[0] if hooks else None)

    def _init_pr_api(repo_url: str, credential: GitOpsCredential) -> PullRequestApi:
        return init_pr_api(repo_url, credential, before_api_call_hooks=hooks)

    orchestrator = GitOpsModuleOrchestrator(
        mutex=create_mutex(
            params.lock, params.tmp_dir, LOCK_SCOPE, timeout=params.lock_timeout
        ),
        git_client=git_client,
        config_resolver=GitOpsConfigResolver(git_client),
        materializer=PayloadMaterializer(),
        pr_api_factory=pr_api_factory or _init_pr_api,
    )
    result = orchestrator.run(params)
    if result.changed:
        logging.info(f"gitops repo updated for {params.name}")
    return result
