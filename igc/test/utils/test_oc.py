import json
from subprocess import CompletedProcess
from unittest.mock import MagicMock

import pytest
from pytest_mock import MockerFixture

from igc.utils.oc import (
    LAST_APPLIED_ANNOTATION,
    NoOutputError,
    OCCli,
    StatusCodeError,
    find_binary,
    strip_server_metadata,
)


def completed(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
    return CompletedProcess(
        args=[], returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture
def oc_cli() -> OCCli:
    return OCCli("oc")


@pytest.fixture
def run(mocker: MockerFixture) -> MagicMock:
    return mocker.patch("igc.utils.oc.subprocess.run", return_value=completed(b"{}"))


def test_find_binary(mocker: MockerFixture) -> None:
    which = mocker.patch("igc.utils.oc.shutil.which")
    which.side_effect = lambda b: "/usr/bin/kubectl" if b == "kubectl" else None
    assert find_binary() == "kubectl"

    which.side_effect = lambda b: f"/usr/bin/{b}"
    assert find_binary() == "oc"

    which.side_effect = lambda b: None
    assert find_binary() is None


def test_strip_server_metadata() -> None:
    resource = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": "all-icr-io",
            "namespace": "tools",
            "uid": "1234",
            "resourceVersion": "42",
            "labels": {"group": "catalyst-tools"},
            "annotations": {LAST_APPLIED_ANNOTATION: "{}"},
        },
        "data": {"a": "b"},
        "status": {},
    }
    assert strip_server_metadata(resource) == {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "all-icr-io", "labels": {"group": "catalyst-tools"}},
        "data": {"a": "b"},
    }
    # the input is left untouched
    assert resource["metadata"]["uid"] == "1234"


def test_get_items(oc_cli: OCCli, run: MagicMock) -> None:
    run.return_value = completed(json.dumps({"items": [{"kind": "Secret"}]}).encode())

    items = oc_cli.get_items("Secret", namespace="tools", labels={"group": "g"})

    assert items == [{"kind": "Secret"}]
    assert run.call_args.args[0] == [
        "oc",
        "get",
        "Secret",
        "-o",
        "json",
        "-n",
        "tools",
        "-l",
        "group=g",
    ]


def test_get_not_found(oc_cli: OCCli, run: MagicMock) -> None:
    run.return_value = completed(
        stderr=b'Error from server (NotFound): serviceaccounts "x" not found',
        returncode=1,
    )
    assert oc_cli.get("dev", "ServiceAccount", "x", allow_not_found=True) == {}


def test_get_error(oc_cli: OCCli, run: MagicMock) -> None:
    run.return_value = completed(stderr=b"Unauthorized", returncode=1)
    with pytest.raises(StatusCodeError):
        oc_cli.get("dev", "ServiceAccount", "x")


def test_no_output_is_retried(oc_cli: OCCli, run: MagicMock, patch_sleep) -> None:
    run.return_value = completed()
    with pytest.raises(NoOutputError):
        oc_cli.get("dev", "ServiceAccount", "x")
    assert run.call_count == 3


def test_apply(oc_cli: OCCli, run: MagicMock) -> None:
    oc_cli.apply("dev", {"kind": "ConfigMap"})

    assert run.call_args.args[0] == ["oc", "apply", "-f", "-", "-n", "dev"]
    assert run.call_args.kwargs["input"] == b'{"kind": "ConfigMap"}'


def test_is_kind_supported(oc_cli: OCCli, run: MagicMock) -> None:
    run.return_value = completed(b"projects.project.openshift.io\nsecrets\n")

    assert oc_cli.is_kind_supported("Project")
    assert oc_cli.is_kind_supported("Secret")
    assert not oc_cli.is_kind_supported("Route")
    run.assert_called_once()


def test_new_project(oc_cli: OCCli, run: MagicMock) -> None:
    run.side_effect = [
        completed(b"secrets\nnamespaces\n"),
        completed(b"namespace/dev created"),
    ]

    oc_cli.new_project("dev")

    assert run.call_args.args[0] == ["oc", "create", "namespace", "dev"]


def test_new_project_already_exists(oc_cli: OCCli, run: MagicMock) -> None:
    run.side_effect = [
        completed(b"projects.project.openshift.io\n"),
        completed(
            stderr=b'project.project.openshift.io "dev" AlreadyExists',
            returncode=1,
        ),
    ]

    oc_cli.new_project("dev")

    assert run.call_args.args[0] == [
        "oc",
        "new-project",
        "dev",
        "--skip-config-write",
    ]


def test_set_current_namespace(oc_cli: OCCli, run: MagicMock) -> None:
    run.return_value = completed()

    oc_cli.set_current_namespace("dev")

    assert run.call_args.args[0] == [
        "oc",
        "config",
        "set-context",
        "--current",
        "--namespace=dev",
    ]
