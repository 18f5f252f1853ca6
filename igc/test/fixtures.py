import json
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


class Fixtures:
    def __init__(self, base_path: str):
        self.base_path = base_path

    def path(self, fixture: str) -> str:
        return os.path.join(
            os.path.dirname(__file__), "fixtures", self.base_path, fixture
        )

    def get(self, fixture: str) -> str:
        with open(self.path(fixture), encoding="utf-8") as f:
            return f.read().strip()

    def get_yaml(self, fixture: str) -> Any:
        return yaml.safe_load(self.get(fixture))

    def get_json(self, fixture: str) -> Any:
        return json.loads(self.get(fixture))


@dataclass
class GitOpsRemotes:
    argocd: str
    payload: str
    config_file: str
    credentials_file: str
    tmp_dir: str


def run_git(*args: str, cwd: str | Path) -> str:
    result = subprocess.run(
        [
            "git",
            "-c",
            "user.name=test",
            "-c",
            "user.email=test@example.com",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def make_remote(base: Path, name: str) -> str:
    """Bare repository with one commit on `main`."""
    seed = base / f"{name}-seed"
    seed.mkdir(parents=True)
    run_git("init", "-b", "main", cwd=seed)
    (seed / "README.md").write_text(f"# {name}\n", encoding="utf-8")
    run_git("add", "README.md", cwd=seed)
    run_git("commit", "-m", "initial commit", cwd=seed)
    remote = base / f"{name}.git"
    run_git("clone", "--bare", str(seed), str(remote), cwd=base)
    return str(remote)


def clone_remote(remote: str, target: Path) -> Path:
    run_git("clone", remote, str(target), cwd=target.parent)
    return target


def commit_count(remote: str, branch: str = "main") -> int:
    return int(run_git("rev-list", "--count", branch, cwd=remote))
