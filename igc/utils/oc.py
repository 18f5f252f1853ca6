import json
import logging
import shutil
import subprocess
from typing import Any

from sretoolbox.utils import retry

SERVER_POPULATED_METADATA = [
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "managedFields",
    "ownerReferences",
    "selfLink",
    "namespace",
    "generation",
]
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


class StatusCodeError(Exception):
    pass


class NoOutputError(Exception):
    pass


class JSONParsingError(Exception):
    pass


def find_binary() -> str | None:
    """`oc` when installed, `kubectl` otherwise."""
    for b in ["oc", "kubectl"]:
        if shutil.which(b):
            return b
    return None


def strip_server_metadata(resource: dict[str, Any]) -> dict[str, Any]:
    """Copy of `resource` that can be created in another namespace."""
    body = {k: v for k, v in resource.items() if k != "status"}
    metadata = {
        k: v
        for k, v in resource.get("metadata", {}).items()
        if k not in SERVER_POPULATED_METADATA
    }
    annotations = {
        k: v
        for k, v in metadata.get("annotations", {}).items()
        if k != LAST_APPLIED_ANNOTATION
    }
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    body["metadata"] = metadata
    return body


class OCCli:
    """
    Subprocess wrapper around `oc` (or `kubectl`) using the current kube
    context of the user.
    """

    def __init__(self, binary: str = "oc") -> None:
        self.binary = binary
        self._api_resources: set[str] | None = None

    @retry(exceptions=NoOutputError, max_attempts=3)
    def _run(self, cmd: list[str], **kwargs: Any) -> bytes:
        stdin = kwargs.get("stdin")
        stdin_text = stdin.encode() if stdin else None
        result = subprocess.run(
            [self.binary, *cmd], input=stdin_text, capture_output=True, check=False
        )
        err = result.stderr.decode("utf-8") if result.stderr else ""
        allow_not_found = kwargs.get("allow_not_found")
        if result.returncode != 0:
            if not (allow_not_found and "NotFound" in err):
                raise StatusCodeError(f"[{self.binary} {cmd[0]}]: {err}")

        if not result.stdout:
            if allow_not_found or kwargs.get("allow_empty"):
                return b"{}"
            raise NoOutputError(err)

        return result.stdout.strip()

    def _run_json(self, cmd: list[str], allow_not_found: bool = False) -> Any:
        out = self._run(cmd, allow_not_found=allow_not_found)

        try:
            out_json = json.loads(out)
        except ValueError as e:
            raise JSONParsingError(out.decode() + "\n" + str(e)) from e

        return out_json

    def is_kind_supported(self, kind: str) -> bool:
        if self._api_resources is None:
            out = self._run(["api-resources", "--no-headers", "-o", "name"])
            self._api_resources = {
                line.split(".", 1)[0].lower() for line in out.decode().splitlines()
            }
        return f"{kind.lower()}s" in self._api_resources

    def get_items(
        self,
        kind: str,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        cmd = ["get", kind, "-o", "json"]
        if namespace:
            cmd.extend(["-n", namespace])
        if labels:
            cmd.extend(["-l", ",".join(f"{k}={v}" for k, v in labels.items())])
        items = self._run_json(cmd).get("items")
        if items is None:
            raise JSONParsingError("Expecting items")
        return items

    def get(
        self,
        namespace: str | None,
        kind: str,
        name: str | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any]:
        cmd = ["get", "-o", "json", kind]
        if name:
            cmd.append(name)
        if namespace is not None:
            cmd.extend(["-n", namespace])
        return self._run_json(cmd, allow_not_found=allow_not_found)

    def apply(self, namespace: str | None, resource: dict[str, Any]) -> None:
        cmd = ["apply", "-f", "-"]
        if namespace:
            cmd.extend(["-n", namespace])
        self._run(cmd, stdin=json.dumps(resource, sort_keys=True))

    def project_exists(self, name: str) -> bool:
        kind = "Project" if self.is_kind_supported("Project") else "Namespace"
        return bool(self.get(None, kind, name, allow_not_found=True))

    def new_project(self, namespace: str) -> None:
        if self.is_kind_supported("Project"):
            cmd = ["new-project", namespace, "--skip-config-write"]
        else:
            cmd = ["create", "namespace", namespace]
        try:
            self._run(cmd)
        except StatusCodeError as e:
            if "AlreadyExists" not in str(e):
                raise

    def set_current_namespace(self, namespace: str) -> None:
        logging.debug(f"setting current context namespace to {namespace}")
        self._run(
            ["config", "set-context", "--current", f"--namespace={namespace}"],
            allow_empty=True,
        )
