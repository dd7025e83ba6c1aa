"""
Shared fixtures: an in-memory container engine and a three-tier stack.
"""
import os

import pytest

from stackship.MANAGERS.deployment_orchestrator import DeploymentOrchestrator
from stackship.MODELS.deployment import DeploymentTarget
from stackship.PARSERS.stack_parser import StackParser
from stackship.RUNNERS.container_runtime import CommandResult


STACK_YAML = """
project: shop
services:
  db:
    image: postgres:16
    restart: unless-stopped
    environment:
      POSTGRES_PASSWORD: ${DB_PASSWORD:-secret}
    volumes:
      - db_data:/var/lib/postgresql/data
  backend:
    image: ghcr.io/acme/backend:latest
    restart: always
    depends_on: [db]
    environment:
      DATABASE_URL: postgres://db:5432/shop
    ports:
      - "127.0.0.1:8000:8000"
  frontend:
    image: ghcr.io/acme/frontend:latest
    restart: always
    depends_on: [backend]
    ports:
      - "80:80"
volumes:
  db_data: {}
"""

IMAGES = {
    "postgres:16": "sha256:db1",
    "ghcr.io/acme/backend:latest": "sha256:be1",
    "ghcr.io/acme/frontend:latest": "sha256:fe1",
}


class FakeRuntime:
    """
    Models containers, volumes, networks and a remote registry in memory,
    with the same methods as DockerRuntime.
    """

    def __init__(self, registry=None):
        self.registry = dict(registry if registry is not None else IMAGES)
        self.images = {}
        self.pull_errors = {}
        self.start_failures = {}
        self.stop_failures = {}
        self.exit_on_start = set()
        self.containers = {}
        self.volumes = {}
        self.networks = {}
        self.calls = []
        self.logins = []

    # Images

    def pull(self, image):
        self.calls.append(("pull", image))
        if image in self.pull_errors:
            return CommandResult(1, "", self.pull_errors[image])
        if image not in self.registry:
            return CommandResult(
                1, "", f"Error response from daemon: manifest for {image} not found: manifest unknown"
            )
        self.images[image] = self.registry[image]
        return CommandResult(0, self.registry[image], "")

    def image_id(self, image):
        return self.images.get(image)

    def login(self, registry, username, password):
        self.logins.append((registry, username))
        return CommandResult(0, "Login Succeeded", "")

    # Containers

    def run_container(self, name, image, restart="no", env=None, ports=None, volumes=None,
                      network=None, aliases=None, labels=None, health=None, command=None):
        self.calls.append(("start", name))
        if name in self.containers:
            return CommandResult(125, "", f'Conflict. The container name "/{name}" is already in use')
        if name in self.start_failures:
            return CommandResult(125, "", self.start_failures[name])
        self.containers[name] = {
            "image": image,
            "status": "exited" if name in self.exit_on_start else "running",
            "restart": restart,
            "env": dict(env or {}),
            "ports": list(ports or []),
            "volumes": [v.split(":")[0] for v in volumes or []],
            "network": network,
            "labels": dict(labels or {}),
        }
        return CommandResult(0, f"id-{name}", "")

    def stop_container(self, name, timeout=10):
        self.calls.append(("stop", name))
        if name in self.stop_failures:
            return CommandResult(1, "", self.stop_failures[name])
        if name not in self.containers:
            return CommandResult(1, "", f"Error response from daemon: No such container: {name}")
        self.containers[name]["status"] = "exited"
        return CommandResult(0, name, "")

    def remove_container(self, name):
        self.calls.append(("remove", name))
        if name not in self.containers:
            return CommandResult(1, "", f"Error response from daemon: No such container: {name}")
        if self.containers[name]["status"] == "running":
            return CommandResult(1, "", "You cannot remove a running container")
        del self.containers[name]
        return CommandResult(0, name, "")

    def inspect_container(self, name):
        container = self.containers.get(name)
        if container is None:
            return None
        return {"Name": f"/{name}", "State": {"Status": container["status"]},
                "Config": {"Labels": container["labels"]}}

    def list_containers(self, labels):
        return [
            name for name, c in self.containers.items()
            if all(c["labels"].get(k) == v for k, v in labels.items())
        ]

    def containers_using_volume(self, volume):
        return [name for name, c in self.containers.items() if volume in c["volumes"]]

    # Volumes

    def volume_exists(self, name):
        return name in self.volumes

    def create_volume(self, name, labels=None):
        self.calls.append(("create_volume", name))
        self.volumes[name] = {"labels": dict(labels or {}), "data": {}}
        return CommandResult(0, name, "")

    def list_volumes(self, labels):
        return [
            name for name, v in self.volumes.items()
            if all(v["labels"].get(k) == val for k, val in labels.items())
        ]

    def remove_volume(self, name):
        self.calls.append(("remove_volume", name))
        del self.volumes[name]
        return CommandResult(0, name, "")

    # Networks

    def network_exists(self, name):
        return name in self.networks

    def create_network(self, name, labels=None):
        self.networks[name] = dict(labels or {})
        return CommandResult(0, name, "")

    # Test helpers

    def ops(self, op):
        return [name for kind, name in self.calls if kind == op]

    def destructive_calls(self):
        return [c for c in self.calls if c[0] in ("stop", "remove", "remove_volume")]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keeps STACKSHIP_* variables of the machine running the tests out of Settings."""
    for name in list(os.environ):
        if name.startswith("STACKSHIP_"):
            monkeypatch.delenv(name)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def stack():
    return StackParser(context={}).parse_from_string(STACK_YAML)


@pytest.fixture
def target(tmp_path):
    return DeploymentTarget(host="localhost", stack_dir=str(tmp_path))


@pytest.fixture
def orchestrator(runtime):
    return DeploymentOrchestrator(
        runtime,
        port_probe=lambda port, host: True,
        settle_seconds=0,
        lock_wait_seconds=0,
    )
