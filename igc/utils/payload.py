import io
import logging
import shutil
import tarfile
import tempfile
import zipfile
from collections.abc import (
    Iterator,
    Mapping,
)
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import (
    Path,
    PurePosixPath,
)
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests

from igc.utils import argocd
from igc.utils.exceptions import MaterializationError
from igc.utils.git import WorkingCopy
from igc.utils.gitops_config import (
    GitOpsModuleInput,
    normalize_repo_url,
)

NAMESPACE_DIR = "namespace"
NAMESPACE_FILE = "namespace.yaml"
HELM_CHART_FILE = "Chart.yaml"
IGNORED_CONTENT = shutil.ignore_patterns(".git")
DOWNLOAD_TIMEOUT = 60


@dataclass(frozen=True)
class RepoTarget:
    """A path inside one of the gitops repositories."""

    repo_url: str
    path: str


@dataclass(frozen=True)
class ModuleTargets:
    payload: RepoTarget
    application: RepoTarget | None = None

    @property
    def repo_urls(self) -> list[str]:
        urls = [self.payload.repo_url]
        if self.application:
            urls.append(self.application.repo_url)
        return list(dict.fromkeys(urls))


def is_url(content_dir: str) -> bool:
    return urlparse(content_dir).scheme in {"http", "https"}


def _single_root(directory: Path) -> Path:
    entries = list(directory.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return directory


def _extract(content: bytes, url: str, target: Path) -> Path:
    buffer = io.BytesIO(content)
    if zipfile.is_zipfile(buffer):
        with zipfile.ZipFile(buffer) as archive:
            archive.extractall(target)
        return _single_root(target)
    buffer.seek(0)
    try:
        with tarfile.open(fileobj=buffer, mode="r:*") as archive:
            archive.extractall(target, filter="data")
        return _single_root(target)
    except tarfile.ReadError:
        pass
    name = PurePosixPath(urlparse(url).path).name or "payload.yaml"
    (target / name).write_bytes(content)
    return target


def local_path(content_dir: str) -> Path:
    parsed = urlparse(content_dir)
    if parsed.scheme == "file":
        return Path(url2pathname(parsed.path))
    return Path(content_dir)


def has_content(directory: Path) -> bool:
    return any(p.is_file() for p in directory.rglob("*") if ".git" not in p.parts)


@contextmanager
def fetch_content(content_dir: str, allow_empty: bool = False) -> Iterator[Path]:
    """
    Yields a local directory holding the payload. file:// urls name a local
    directory, http(s) urls are downloaded and, when they point to a zip or
    tar archive, extracted. Content without any file is refused unless
    `allow_empty` is set, it would wipe the module from the gitops repo.
    """
    if not is_url(content_dir):
        path = local_path(content_dir)
        if not path.is_dir():
            raise MaterializationError(f"content directory {content_dir} not found")
        if not allow_empty and not has_content(path):
            raise MaterializationError(f"content directory {content_dir} is empty")
        yield path
        return

    logging.info(f"downloading payload from {content_dir}")
    try:
        response = requests.get(content_dir, timeout=DOWNLOAD_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        raise MaterializationError(f"unable to download {content_dir}: {e}") from e
    with tempfile.TemporaryDirectory(prefix="igc-payload-") as wd:
        try:
            content = _extract(response.content, content_dir, Path(wd))
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise MaterializationError(f"unable to extract {content_dir}: {e}") from e
        if not allow_empty and not has_content(content):
            raise MaterializationError(f"archive {content_dir} holds no files")
        yield content


def resolve_in(root: Path, relative: str) -> Path:
    destination = (root / relative).resolve()
    if not destination.is_relative_to(root.resolve()) or destination == root.resolve():
        raise MaterializationError(
            f"refusing to write to {relative} outside of the repository"
        )
    return destination


def namespace_manifest(name: str) -> dict:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


class PayloadMaterializer:
    """
    Writes a module into checked out gitops repositories, or removes it.

    A module consists of its payload directory in the layer's payload repo
    and an Argo CD Application in the layer's argocd repo. A namespace only
    consists of its payload directory. Writing the same input twice leaves
    the repositories unchanged.
    """

    def targets(self, module: GitOpsModuleInput) -> ModuleTargets:
        layer_config = module.gitops_config.layer_config(module.layer)
        payload = layer_config.payload
        if module.is_namespace:
            return ModuleTargets(
                payload=RepoTarget(
                    repo_url=payload.url,
                    path=f"{payload.path}/{NAMESPACE_DIR}/{module.destination_name}",
                )
            )
        argocd_config = layer_config.argocd_config
        return ModuleTargets(
            payload=RepoTarget(
                repo_url=payload.url,
                path=f"{payload.path}/{module.destination_name}",
            ),
            application=RepoTarget(
                repo_url=argocd_config.url,
                path=(
                    f"{argocd_config.path}/cluster/{module.server_name}/{module.type}"
                ),
            ),
        )

    @staticmethod
    def _working_copy(
        working_copies: Mapping[str, WorkingCopy], target: RepoTarget
    ) -> WorkingCopy:
        try:
            return working_copies[normalize_repo_url(target.repo_url)]
        except KeyError:
            raise MaterializationError(
                f"no working copy for repo {target.repo_url}"
            ) from None

    @staticmethod
    def application_file(module: GitOpsModuleInput) -> str:
        return f"{argocd.application_name(module.name, module.namespace)}.yaml"

    def populate(
        self, working_copies: Mapping[str, WorkingCopy], module: GitOpsModuleInput
    ) -> None:
        targets = self.targets(module)
        payload_wc = self._working_copy(working_copies, targets.payload)
        destination = resolve_in(payload_wc.path, targets.payload.path)

        if module.is_namespace:
            self._write_namespace(destination, module)
            return

        if not module.content_dir:
            raise MaterializationError(f"no content provided for module {module.name}")
        with fetch_content(module.content_dir) as content:
            self._replace_directory(content, destination)
        logging.info(
            f"payload of {module.name} written to {targets.payload.path} "
            f"in {targets.payload.repo_url}"
        )

        if targets.application is None:
            raise MaterializationError(f"no argocd target for module {module.name}")
        app_wc = self._working_copy(working_copies, targets.application)
        app_dir = resolve_in(app_wc.path, targets.application.path)
        app_dir.mkdir(parents=True, exist_ok=True)
        layer_config = module.gitops_config.layer_config(module.layer)
        application = argocd.render_application(
            name=module.name,
            namespace=module.namespace,
            project=layer_config.argocd_config.project,
            repo_url=targets.payload.repo_url,
            path=targets.payload.path,
            target_revision=module.branch or payload_wc.base_branch,
            server_name=module.server_name,
            value_files=module.value_files,
            helm=(destination / HELM_CHART_FILE).is_file(),
            cascading_delete=module.cascading_delete,
            ignore_differences=module.ignore_diff,
        )
        app_file = self.application_file(module)
        self._write_if_changed(app_dir / app_file, argocd.dump_manifest(application))
        argocd.add_kustomization_resource(app_dir, app_file)
        logging.info(
            f"argocd application {app_file} written to "
            f"{targets.application.path} in {targets.application.repo_url}"
        )

    def delete(
        self, working_copies: Mapping[str, WorkingCopy], module: GitOpsModuleInput
    ) -> None:
        targets = self.targets(module)
        payload_wc = self._working_copy(working_copies, targets.payload)
        destination = resolve_in(payload_wc.path, targets.payload.path)
        if destination.exists():
            shutil.rmtree(destination)
            logging.info(f"removed {targets.payload.path}")

        if targets.application is None:
            return
        app_wc = self._working_copy(working_copies, targets.application)
        app_dir = resolve_in(app_wc.path, targets.application.path)
        app_file = self.application_file(module)
        if (app_dir / app_file).exists():
            (app_dir / app_file).unlink()
            logging.info(f"removed {targets.application.path}/{app_file}")
        argocd.remove_kustomization_resource(app_dir, app_file)

    def _write_namespace(self, destination: Path, module: GitOpsModuleInput) -> None:
        if module.content_dir:
            # the namespace manifest is written regardless of the content
            with fetch_content(module.content_dir, allow_empty=True) as content:
                self._replace_directory(content, destination)
        else:
            destination.mkdir(parents=True, exist_ok=True)
        self._write_if_changed(
            destination / NAMESPACE_FILE,
            argocd.dump_manifest(namespace_manifest(module.name)),
        )

    @staticmethod
    def _replace_directory(source: Path, destination: Path) -> None:
        if source.resolve() == destination.resolve():
            raise MaterializationError(f"content directory {source} is the target")
        if destination.exists():
            shutil.rmtree(destination)
        try:
            shutil.copytree(source, destination, ignore=IGNORED_CONTENT)
        except (OSError, shutil.Error) as e:
            raise MaterializationError(f"unable to copy {source}: {e}") from e

    @staticmethod
    def _write_if_changed(path: Path, content: str) -> None:
        if path.exists() and path.read_text(encoding="utf-8") == content:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
