import logging
import tempfile
from collections.abc import (
    Iterable,
    Iterator,
)
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Protocol,
)
from urllib.parse import urlparse

import yaml
from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
)

from igc.utils.exceptions import (
    ConfigResolutionError,
    GitError,
    ParameterError,
)

BOOTSTRAP_CONFIG_FILES = ["config.yaml", "config.yml", "config.json"]


class GitOpsLayer(Enum):
    INFRASTRUCTURE = "infrastructure"
    SERVICES = "services"
    APPLICATIONS = "applications"


class PayloadConfig(BaseModel, frozen=True):
    repo: str
    url: str
    path: str


class ArgoConfig(PayloadConfig, frozen=True):
    project: str


class BootstrapConfig(BaseModel, frozen=True, populate_by_name=True):
    argocd_config: ArgoConfig = Field(alias="argocd-config")


class LayerConfig(BaseModel, frozen=True, populate_by_name=True):
    argocd_config: ArgoConfig = Field(alias="argocd-config")
    payload: PayloadConfig


class GitOpsConfig(BaseModel, frozen=True):
    bootstrap: BootstrapConfig | None = None
    infrastructure: LayerConfig | None = None
    services: LayerConfig | None = None
    applications: LayerConfig | None = None

    def layer_config(self, layer: GitOpsLayer) -> LayerConfig:
        layer_config = getattr(self, layer.value)
        if layer_config is None:
            raise ConfigResolutionError(
                f"gitops config has no section for layer '{layer.value}'"
            )
        return layer_config

    def repo_urls(self) -> list[str]:
        urls: list[str] = []
        if self.bootstrap:
            urls.append(self.bootstrap.argocd_config.url)
        for layer in GitOpsLayer:
            layer_config = getattr(self, layer.value)
            if layer_config:
                urls.append(layer_config.argocd_config.url)
                urls.append(layer_config.payload.url)
        return list(dict.fromkeys(urls))


class GitOpsCredential(BaseModel, frozen=True):
    repo: str
    url: str
    username: str
    token: SecretStr


def normalize_repo_url(url: str) -> str:
    """
    'https://github.com/org/repo.git/' -> 'github.com/org/repo'
    """
    if "://" not in url:
        url = f"https://{url}"
    parsed = urlparse(url)
    path = parsed.path.strip("/")
    path = path.removesuffix(".git")
    return f"{(parsed.hostname or '').lower()}/{path}"


def default_username(url: str) -> str:
    owner = normalize_repo_url(url).split("/")
    return owner[1] if len(owner) > 1 and owner[1] else "git"


class GitOpsCredentials:
    """Credentials of an invocation, looked up by repo url."""

    def __init__(self, credentials: Iterable[GitOpsCredential]) -> None:
        self._credentials = list(credentials)

    def __iter__(self) -> Iterator[GitOpsCredential]:
        return iter(self._credentials)

    def __len__(self) -> int:
        return len(self._credentials)

    def __repr__(self) -> str:
        return f"GitOpsCredentials(repos={[c.repo for c in self._credentials]})"

    def find(self, url: str) -> GitOpsCredential | None:
        key = normalize_repo_url(url)
        for credential in self._credentials:
            if key in {
                normalize_repo_url(credential.url),
                normalize_repo_url(credential.repo),
            }:
                return credential
        return None

    def lookup(self, url: str) -> GitOpsCredential:
        credential = self.find(url)
        if credential is None:
            raise ConfigResolutionError(f"no credentials found for repo {url}")
        return credential

    @classmethod
    def from_token(
        cls, urls: Iterable[str], token: str, username: str | None = None
    ) -> "GitOpsCredentials":
        return cls(
            GitOpsCredential(
                repo=normalize_repo_url(url),
                url=url,
                username=username or default_username(url),
                token=SecretStr(token),
            )
            for url in urls
        )


@dataclass(frozen=True)
class ResolvedGitOpsConfig:
    config: GitOpsConfig
    credentials: GitOpsCredentials


class BootstrapRepoReader(Protocol):
    def clone(
        self, repo_url: str, wd: str, credential: GitOpsCredential | None
    ) -> Any: ...


def load_data_file(path: str | Path) -> Any:
    """Loads a yaml or json file. Json is a subset of yaml."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigResolutionError(f"unable to read {path}: {e}") from e


def parse_gitops_config(data: Any, source: str) -> GitOpsConfig:
    if not isinstance(data, dict):
        raise ConfigResolutionError(f"{source} does not contain a gitops config")
    try:
        return GitOpsConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigResolutionError(f"invalid gitops config in {source}: {e}") from e


def parse_gitops_credentials(data: Any, source: str) -> GitOpsCredentials:
    if not isinstance(data, list):
        raise ConfigResolutionError(
            f"{source} does not contain a list of gitops credentials"
        )
    try:
        return GitOpsCredentials([GitOpsCredential.model_validate(c) for c in data])
    except ValidationError as e:
        # the input may hold tokens, only report locations
        errors = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in e.errors(include_input=False)
        )
        raise ConfigResolutionError(
            f"invalid gitops credentials in {source}: {errors}"
        ) from None


def bootstrap_credential(
    repo_url: str,
    credentials: GitOpsCredentials | None,
    token: str | None,
    username: str | None,
) -> GitOpsCredential | None:
    """
    Credential to clone the bootstrap repo with. None means an anonymous
    clone, e.g. for a public bootstrap repo missing from the credentials file.
    """
    if credentials is not None:
        return credentials.find(repo_url)
    if not token:
        return None
    return next(iter(GitOpsCredentials.from_token([repo_url], token, username)))


class GitOpsConfigResolver:
    """
    Produces the gitops config and the credentials of an invocation,
    either from local files or from a bootstrap repository.
    """

    def __init__(self, repo_reader: BootstrapRepoReader) -> None:
        self.repo_reader = repo_reader

    def resolve(
        self,
        gitops_config_file: str | None = None,
        bootstrap_repo_url: str | None = None,
        gitops_credentials_file: str | None = None,
        token: str | None = None,
        username: str | None = None,
    ) -> ResolvedGitOpsConfig:
        if bool(gitops_config_file) == bool(bootstrap_repo_url):
            raise ParameterError(
                "exactly one of gitopsConfigFile and bootstrapRepoUrl is required"
            )
        if gitops_credentials_file and token:
            raise ParameterError(
                "gitopsCredentialsFile and token are mutually exclusive"
            )
        if not gitops_credentials_file and not token:
            raise ConfigResolutionError(
                "either gitopsCredentialsFile or token must be provided"
            )

        # read first, the bootstrap repo may need one of these credentials
        credentials: GitOpsCredentials | None = None
        if gitops_credentials_file:
            credentials = parse_gitops_credentials(
                load_data_file(gitops_credentials_file), gitops_credentials_file
            )

        if gitops_config_file:
            config = parse_gitops_config(
                load_data_file(gitops_config_file), gitops_config_file
            )
        elif bootstrap_repo_url:
            config = self.fetch_bootstrap_config(
                bootstrap_repo_url,
                bootstrap_credential(bootstrap_repo_url, credentials, token, username),
            )
        else:
            raise ParameterError(
                "one of gitopsConfigFile or bootstrapRepoUrl is required"
            )

        if credentials is None and token:
            credentials = GitOpsCredentials.from_token(
                config.repo_urls(), token, username
            )
        if credentials is None:
            raise ConfigResolutionError(
                "either gitopsCredentialsFile or token must be provided"
            )

        return ResolvedGitOpsConfig(config=config, credentials=credentials)

    def fetch_bootstrap_config(
        self, repo_url: str, credential: GitOpsCredential | None
    ) -> GitOpsConfig:
        logging.info(f"reading gitops config from bootstrap repo {repo_url}")
        with tempfile.TemporaryDirectory(prefix="igc-bootstrap-") as wd:
            try:
                self.repo_reader.clone(repo_url, wd, credential)
            except GitError as e:
                raise ConfigResolutionError(
                    f"unable to clone bootstrap repo {repo_url}: {e}"
                ) from e
            for name in BOOTSTRAP_CONFIG_FILES:
                path = Path(wd) / name
                if path.is_file():
                    return parse_gitops_config(
                        load_data_file(path), f"{repo_url}/{name}"
                    )
        raise ConfigResolutionError(
            f"bootstrap repo {repo_url} has none of {BOOTSTRAP_CONFIG_FILES}"
        )


@dataclass(frozen=True)
class GitOpsModuleInput:
    """The validated, fully resolved request to populate or delete a module."""

    name: str
    namespace: str
    layer: GitOpsLayer
    gitops_config: GitOpsConfig
    gitops_credentials: GitOpsCredentials
    content_dir: str | None = None
    application_path: str | None = None
    branch: str | None = None
    server_name: str = "default"
    type: str = "base"
    value_files: tuple[str, ...] = ()
    ignore_diff: tuple[dict[str, Any], ...] | None = None
    cascading_delete: bool = True
    is_namespace: bool = False

    @property
    def destination_name(self) -> str:
        return self.application_path or self.name
