"""Rendering of Argo CD Application manifests and their kustomization index."""

import io
from collections.abc import (
    Mapping,
    Sequence,
)
from pathlib import Path
from typing import Any

import yaml
from ruamel.yaml import YAML

CASCADE_FINALIZER = "resources-finalizer.argocd.argoproj.io"
DEFAULT_SERVER_NAME = "default"
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"
KUSTOMIZATION_FILE = "kustomization.yaml"


def application_name(name: str, namespace: str) -> str:
    return f"{namespace}-{name}"


def destination(server_name: str, namespace: str) -> dict[str, str]:
    # "default" is the cluster Argo CD itself runs in
    if server_name == DEFAULT_SERVER_NAME:
        return {"server": IN_CLUSTER_SERVER, "namespace": namespace}
    return {"name": server_name, "namespace": namespace}


def render_application(
    name: str,
    namespace: str,
    project: str,
    repo_url: str,
    path: str,
    target_revision: str,
    server_name: str,
    value_files: Sequence[str] = (),
    helm: bool = False,
    cascading_delete: bool = True,
    ignore_differences: Sequence[Mapping[str, Any]] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": application_name(name, namespace)}
    if cascading_delete:
        metadata["finalizers"] = [CASCADE_FINALIZER]

    source: dict[str, Any] = {
        "repoURL": repo_url,
        "path": path,
        "targetRevision": target_revision,
    }
    if helm or value_files:
        source["helm"] = {"releaseName": name}
        if value_files:
            source["helm"]["valueFiles"] = list(value_files)

    spec: dict[str, Any] = {
        "project": project,
        "destination": destination(server_name, namespace),
        "source": source,
        "syncPolicy": {"automated": {"prune": True, "selfHeal": True}},
    }
    if ignore_differences:
        spec["ignoreDifferences"] = [dict(d) for d in ignore_differences]

    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": metadata,
        "spec": spec,
    }


def dump_manifest(manifest: Mapping[str, Any]) -> str:
    # key order follows the construction order, so the output is stable
    return yaml.safe_dump(
        manifest, sort_keys=False, default_flow_style=False, width=4096
    )


def _ruamel() -> YAML:
    ruamel_instance = YAML()
    ruamel_instance.preserve_quotes = True
    ruamel_instance.width = 4096
    ruamel_instance.indent(mapping=2, sequence=4, offset=2)
    return ruamel_instance


def _read_kustomization(path: Path) -> Any:
    if not path.exists():
        return None
    return _ruamel().load(path.read_text(encoding="utf-8"))


def _write_kustomization(path: Path, data: Any) -> None:
    out = io.StringIO()
    _ruamel().dump(data, out)
    content = out.getvalue()
    if path.exists() and path.read_text(encoding="utf-8") == content:
        return
    path.write_text(content, encoding="utf-8")


def add_kustomization_resource(directory: Path, resource: str) -> None:
    """
    Lists `resource` in the kustomization.yaml of `directory`, creating the
    file if needed. Existing entries and formatting are left untouched.
    """
    path = directory / KUSTOMIZATION_FILE
    data = _read_kustomization(path)
    if data is None:
        data = {
            "apiVersion": "kustomize.config.k8s.io/v1beta1",
            "kind": "Kustomization",
            "resources": [],
        }
    resources = data.get("resources")
    if resources is None:
        resources = data["resources"] = []
    if resource in resources:
        return
    index = next((i for i, r in enumerate(resources) if str(r) > resource), None)
    if index is None:
        resources.append(resource)
    else:
        resources.insert(index, resource)
    _write_kustomization(path, data)


def remove_kustomization_resource(directory: Path, resource: str) -> None:
    """
    Drops `resource` from the kustomization.yaml of `directory`. The file is
    removed once it does not list any resource anymore.
    """
    path = directory / KUSTOMIZATION_FILE
    data = _read_kustomization(path)
    if data is None:
        return
    resources = data.get("resources") or []
    if resource not in resources:
        return
    resources.remove(resource)
    if not resources and set(data.keys()) <= {"apiVersion", "kind", "resources"}:
        path.unlink()
        return
    _write_kustomization(path, data)
