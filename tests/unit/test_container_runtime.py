"""
Unit tests for the docker CLI wrapper.
"""
import subprocess

import pytest
from stackship.RUNNERS.container_runtime import DockerRuntime
from stackship.errors import RuntimeCommandError


class Recorder:
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.calls = []

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        return subprocess.CompletedProcess(command, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def recorder(monkeypatch):
    rec = Recorder()
    monkeypatch.setattr(subprocess, "run", rec)
    return rec


def test_run_container_arguments(recorder):
    DockerRuntime().run_container(
        "shop-backend", "ghcr.io/acme/backend:latest", restart="always",
        env={"A": "1"}, ports=["127.0.0.1:8000:8000"], volumes=["shop_data:/data"],
        network="shop_default", aliases=["backend"], labels={"io.stackship.project": "shop"},
        command=["serve", "--port", "8000"],
    )
    command, kwargs = recorder.calls[0]
    assert command == [
        "docker", "run", "--detach", "--name", "shop-backend", "--restart", "always",
        "--env", "A=1", "--publish", "127.0.0.1:8000:8000", "--volume", "shop_data:/data",
        "--network", "shop_default", "--network-alias", "backend",
        "--label", "io.stackship.project=shop",
        "ghcr.io/acme/backend:latest", "serve", "--port", "8000",
    ]
    assert kwargs["shell"] is False


def test_login_password_on_stdin(recorder):
    DockerRuntime().login("ghcr.io", "ci", "hunter2")
    command, kwargs = recorder.calls[0]
    assert "hunter2" not in command
    assert kwargs["input"] == "hunter2"


def test_remove_keeps_volumes(recorder):
    DockerRuntime().remove_container("shop-db")
    assert recorder.calls[0][0] == ["docker", "rm", "shop-db"]


def test_inspect_missing_container(recorder):
    recorder.returncode = 1
    assert DockerRuntime().inspect_container("ghost") is None


def test_inspect_container(recorder):
    recorder.stdout = '[{"Name": "/shop-db", "State": {"Status": "running"}}]'
    assert DockerRuntime().inspect_container("shop-db")["State"]["Status"] == "running"


def test_list_containers(recorder):
    recorder.stdout = "shop-db\nshop-backend\n\n"
    assert DockerRuntime().list_containers({"io.stackship.project": "shop"}) == ["shop-db", "shop-backend"]
    assert "label=io.stackship.project=shop" in recorder.calls[0][0]


def test_listing_failure_raises(recorder):
    recorder.returncode = 1
    recorder.stderr = "Cannot connect to the Docker daemon"
    with pytest.raises(RuntimeCommandError, match="Docker daemon"):
        DockerRuntime().list_volumes({})


def test_missing_binary(monkeypatch):
    def missing(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(subprocess, "run", missing)
    with pytest.raises(RuntimeCommandError, match="not found"):
        DockerRuntime(binary="podman-nope").pull("postgres:16")


def test_timeout_is_a_failed_result(monkeypatch):
    def slow(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", slow)
    result = DockerRuntime(timeout=1).pull("postgres:16")
    assert not result.ok
    assert result.returncode == 124
