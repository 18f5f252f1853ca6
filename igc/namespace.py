"""
Provisions a development namespace: creates it and copies the shared tool
configuration, pull secrets and permissions from a template namespace.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

from igc.utils.oc import (
    OCCli,
    strip_server_metadata,
)

TOOLS_LABELS = {"group": "catalyst-tools"}
PULL_SECRET_PATTERN = ".*icr-io"
ARGOCD_ROLE_BINDING = "argocd-admin"
PRIVILEGED_SCC = "privileged"


@dataclass(frozen=True)
class NamespaceParams:
    namespace: str
    template_namespace: str = "tools"
    service_account: str = "default"
    tekton: bool = False
    argocd: bool = False
    argocd_namespace: str = "tools"


def pull_secret_patterns(template_namespace: str) -> list[str]:
    return [
        f"({re.escape(template_namespace)}-.*icr-io)",
        "([a-z]{2}-icr-io)",
        "(icr-io)",
        "(all-icr-io)",
    ]


def is_pull_secret(name: str, template_namespace: str) -> bool:
    return any(re.search(p, name) for p in pull_secret_patterns(template_namespace))


def argocd_role_binding(argocd_namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {"name": ARGOCD_ROLE_BINDING},
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": "admin",
        },
        "subjects": [
            {
                "apiGroup": "rbac.authorization.k8s.io",
                "kind": "Group",
                "name": f"system:serviceaccounts:{argocd_namespace}",
            }
        ],
    }


def merge_pull_secrets(
    current: list[dict[str, str]], names: list[str]
) -> list[dict[str, str]]:
    merged = list(current)
    known = {s.get("name") for s in merged}
    for name in names:
        if name not in known:
            merged.append({"name": name})
            known.add(name)
    return merged


class NamespaceProvisioner:
    def __init__(self, oc: OCCli) -> None:
        self.oc = oc

    def create(self, params: NamespaceParams) -> str:
        namespace = params.namespace
        if not self.oc.project_exists(namespace):
            logging.info(f"creating namespace {namespace}")
            self.oc.new_project(namespace)
        else:
            logging.info(f"namespace {namespace} already exists")

        if params.argocd:
            logging.info(
                f"granting argocd service accounts in {params.argocd_namespace} "
                f"access to {namespace}"
            )
            self.oc.apply(namespace, argocd_role_binding(params.argocd_namespace))
        else:
            self.copy_all("ConfigMap", params.template_namespace, namespace)
            self.copy_all("Secret", params.template_namespace, namespace)
            if params.tekton:
                self.setup_tekton_pipeline_sa(namespace)

        self.setup_pull_secrets(namespace, params.template_namespace)
        self.setup_service_account(namespace, params.service_account)

        self.oc.set_current_namespace(namespace)
        return namespace

    def copy_all(self, kind: str, from_namespace: str, to_namespace: str) -> None:
        if from_namespace == to_namespace:
            return
        items = self.oc.get_items(kind, namespace=from_namespace, labels=TOOLS_LABELS)
        for item in items:
            logging.info(f"copying {kind} {item['metadata']['name']}")
            self.oc.apply(to_namespace, strip_server_metadata(item))

    def setup_pull_secrets(self, namespace: str, template_namespace: str) -> None:
        if namespace == template_namespace:
            return
        for secret in self.oc.get_items("Secret", namespace=template_namespace):
            name = secret["metadata"]["name"]
            if not is_pull_secret(name, template_namespace):
                continue
            logging.info(f"copying pull secret {name}")
            self.oc.apply(namespace, strip_server_metadata(secret))

    def setup_service_account(self, namespace: str, name: str) -> None:
        secrets = self.oc.get_items("Secret", namespace=namespace)
        names = [
            s["metadata"]["name"]
            for s in secrets
            if re.match(PULL_SECRET_PATTERN, s["metadata"]["name"])
        ]
        sa = self.oc.get(namespace, "ServiceAccount", name, allow_not_found=True)
        if not sa:
            sa = {
                "apiVersion": "v1",
                "kind": "ServiceAccount",
                "metadata": {"name": name},
            }
        current = sa.get("imagePullSecrets") or []
        merged = merge_pull_secrets(current, names)
        if merged == current and sa.get("metadata", {}).get("uid"):
            return
        sa["imagePullSecrets"] = merged
        logging.info(f"adding pull secrets to service account {name}")
        self.oc.apply(namespace, strip_server_metadata(sa))

    def setup_tekton_pipeline_sa(self, namespace: str) -> None:
        scc = self.oc.get(None, "SecurityContextConstraints", PRIVILEGED_SCC)
        users = scc.get("users") or []
        pipeline_sa = f"system:serviceaccount:{namespace}:pipeline"
        if pipeline_sa in users:
            return
        logging.info(f"adding {pipeline_sa} to the {PRIVILEGED_SCC} scc")
        scc["users"] = [*users, pipeline_sa]
        self.oc.apply(None, strip_server_metadata(scc))
