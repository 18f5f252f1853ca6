import itertools
import json
import threading
import time
from pathlib import Path

import pytest

from igc.utils.exceptions import (
    LockTimeoutError,
    ParameterError,
)
from igc.utils.mutex import (
    FileMutex,
    LockStrategy,
    MutexDescriptor,
    NoopMutex,
    create_mutex,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("optimistic", LockStrategy.OPTIMISTIC),
        ("o", LockStrategy.OPTIMISTIC),
        ("pessimistic", LockStrategy.PESSIMISTIC),
        ("p", LockStrategy.PESSIMISTIC),
        ("branch", LockStrategy.BRANCH),
        ("b", LockStrategy.BRANCH),
        (LockStrategy.BRANCH, LockStrategy.BRANCH),
    ],
)
def test_lock_strategy_parse(value: str, expected: LockStrategy) -> None:
    assert LockStrategy.parse(value) == expected


def test_lock_strategy_parse_unknown() -> None:
    with pytest.raises(ParameterError):
        LockStrategy.parse("x")


def test_create_mutex(tmp_path: Path) -> None:
    assert isinstance(create_mutex("p", str(tmp_path), "scope"), FileMutex)
    assert isinstance(create_mutex("optimistic", str(tmp_path), "scope"), NoopMutex)
    assert isinstance(create_mutex("branch", str(tmp_path), "scope"), NoopMutex)


def test_noop_mutex_never_blocks() -> None:
    mutex = NoopMutex()
    descriptor = MutexDescriptor(name="svc-a")
    claims = [mutex.claim(descriptor) for _ in range(3)]
    for claim in claims:
        claim.release()
        assert claim.released


def test_file_mutex_claim_and_release(tmp_path: Path) -> None:
    mutex = FileMutex(str(tmp_path), "gitops-module")
    claim = mutex.claim(
        MutexDescriptor(name="svc-a", namespace="dev", content_dir="/payload")
    )

    assert claim.marker == tmp_path / "gitops-module" / "svc-a.lock"
    assert claim.marker.exists()
    content = json.loads(claim.marker.read_text())
    assert content["name"] == "svc-a"
    assert content["namespace"] == "dev"
    assert content["contentDir"] == "/payload"

    claim.release()
    assert not claim.marker.exists()


def test_file_mutex_release_is_idempotent(tmp_path: Path) -> None:
    mutex = FileMutex(str(tmp_path), "gitops-module")
    claim = mutex.claim(MutexDescriptor(name="svc-a"))
    claim.release()
    # somebody else claims the same name now
    other = mutex.claim(MutexDescriptor(name="svc-a"))
    claim.release()
    assert other.marker and other.marker.exists()
    other.release()


def test_file_mutex_scope_ignores_namespace(tmp_path: Path) -> None:
    mutex = FileMutex(str(tmp_path), "gitops-module", timeout=0)
    with mutex.claim(MutexDescriptor(name="svc-a", namespace="a")):
        with pytest.raises(LockTimeoutError):
            mutex.claim(MutexDescriptor(name="svc-a", namespace="b"))
        # other module names are not affected
        mutex.claim(MutexDescriptor(name="svc-b")).release()


def test_file_mutex_timeout(tmp_path: Path, mocker, patch_sleep) -> None:
    mutex = FileMutex(str(tmp_path), "gitops-module", timeout=3, poll_interval=1)
    mutex.claim(MutexDescriptor(name="svc-a"))
    mocker.patch("igc.utils.mutex.time.monotonic", side_effect=itertools.count())

    with pytest.raises(LockTimeoutError):
        mutex.claim(MutexDescriptor(name="svc-a"))
    assert [c.args[0] for c in patch_sleep.call_args_list] == [1, 1]


def test_file_mutex_removes_unwritten_marker(tmp_path: Path, mocker) -> None:
    mocker.patch("igc.utils.mutex.json.dump", side_effect=OSError("disk full"))
    mutex = FileMutex(str(tmp_path), "gitops-module", timeout=0)

    with pytest.raises(OSError):
        mutex.claim(MutexDescriptor(name="svc-a"))

    assert not mutex.marker_path(MutexDescriptor(name="svc-a")).exists()


def test_file_mutex_sanitizes_marker_name(tmp_path: Path) -> None:
    mutex = FileMutex(str(tmp_path), "gitops-module")
    marker = mutex.marker_path(MutexDescriptor(name="../svc a"))
    assert marker.parent == tmp_path / "gitops-module"
    assert marker.name == ".._svc_a.lock"


def test_file_mutex_blocks_until_released(tmp_path: Path) -> None:
    mutex = FileMutex(str(tmp_path), "gitops-module", timeout=10, poll_interval=0.01)
    claimed = threading.Event()
    events: list[str] = []

    def hold() -> None:
        claim = mutex.claim(MutexDescriptor(name="svc-a"))
        claimed.set()
        time.sleep(0.2)
        events.append("released")
        claim.release()

    t = threading.Thread(target=hold)
    t.start()
    claimed.wait(5)
    claim = mutex.claim(MutexDescriptor(name="svc-a"))
    events.append("claimed")
    claim.release()
    t.join()

    assert events == ["released", "claimed"]
