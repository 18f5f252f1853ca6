import time
from pathlib import Path
from typing import Any

import pytest
import yaml

from igc.test.fixtures import (
    Fixtures,
    GitOpsRemotes,
    make_remote,
)


def layer(argocd: str, payload: str, index: int, name: str) -> dict[str, Any]:
    return {
        "argocd-config": {
            "project": f"{index}-{name}",
            "repo": argocd,
            "url": argocd,
            "path": f"argocd/{index}-{name}",
        },
        "payload": {
            "repo": payload,
            "url": payload,
            "path": f"payload/{index}-{name}",
        },
    }


@pytest.fixture
def patch_sleep(mocker):
    yield mocker.patch.object(time, "sleep")


@pytest.fixture
def fxt() -> Fixtures:
    return Fixtures("gitops")


@pytest.fixture
def payload_dir() -> str:
    return Fixtures("payload").path("svc-a")


@pytest.fixture
def gitops_remotes(tmp_path: Path) -> GitOpsRemotes:
    """An argocd and a payload repository plus matching config files."""
    remotes = tmp_path / "remotes"
    remotes.mkdir()
    argocd = make_remote(remotes, "argocd")
    payload = make_remote(remotes, "payload")
    config = {
        "bootstrap": {
            "argocd-config": {
                "project": "0-bootstrap",
                "repo": argocd,
                "url": argocd,
                "path": "argocd/0-bootstrap",
            }
        },
        "infrastructure": layer(argocd, payload, 1, "infrastructure"),
        "services": layer(argocd, payload, 2, "services"),
        "applications": layer(argocd, payload, 3, "applications"),
    }
    config_file = tmp_path / "gitops-config.yaml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    credentials_file = tmp_path / "gitops-credentials.yaml"
    credentials_file.write_text(
        yaml.safe_dump([
            {"repo": url, "url": url, "username": "test", "token": "secret-token"}
            for url in [argocd, payload]
        ]),
        encoding="utf-8",
    )
    return GitOpsRemotes(
        argocd=argocd,
        payload=payload,
        config_file=str(config_file),
        credentials_file=str(credentials_file),
        tmp_dir=str(tmp_path / "tmp"),
    )
