# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Lifecycle management for the service containers of one stack.
"""
import logging
import time
from typing import Callable, Dict, List, Optional

from ..MODELS.deployment import ServiceState
from ..MODELS.service_definition import ServiceSpec
from ..MODELS.stack_spec import StackSpec
from ..RUNNERS.container_runtime import DockerRuntime, PROJECT_LABEL, SERVICE_LABEL
from ..UTILS.port_finder import is_port_free
from ..errors import DependencyNotRunning, PortConflict, RuntimeCommandError
from .volume_manager import VolumeStore

logger = logging.getLogger(__name__)

IMAGE_LABEL = "io.stackship.image"

_ENGINE_STATES = {
    "created": ServiceState.STARTING,
    "restarting": ServiceState.STARTING,
    "running": ServiceState.RUNNING,
    "removing": ServiceState.STOPPING,
    "paused": ServiceState.FAILED,
    "exited": ServiceState.FAILED,
    "dead": ServiceState.FAILED,
}

_PORT_IN_USE_MARKERS = ("port is already allocated", "address already in use")


class ServiceSupervisor:
    """
    Starts, stops and removes the containers of a stack's services.

    States: absent -> starting -> running -> stopping -> absent. A container
    that exited or died is ``failed``; its restart policy decides whether the
    engine brings it back.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        stack: StackSpec,
        volumes: Optional[VolumeStore] = None,
        port_probe: Callable[[int, str], bool] = is_port_free,
        settle_seconds: float = 10.0,
        poll_interval: float = 0.5,
    ):
        """
        Initializes the supervisor.

        :param runtime: Engine that runs the containers.
        :param stack: Stack whose services are supervised.
        :param volumes: Volume store; one is created for the stack when omitted.
        :param port_probe: Returns True when a host port can be bound.
        :param settle_seconds: How long ``start`` waits for ``starting`` to become
            ``running``. Zero disables waiting.
        :param poll_interval: Seconds between state checks while waiting.
        """
        self.runtime = runtime
        self.stack = stack
        self.project = stack.project
        self.volumes = volumes or VolumeStore(runtime, stack.project)
        self.port_probe = port_probe
        self.settle_seconds = settle_seconds
        self.poll_interval = poll_interval

    @property
    def network(self) -> str:
        return f"{self.project}_default"

    def container_name(self, name: str) -> str:
        return f"{self.project}-{name}"

    def status(self, name: str) -> ServiceState:
        """
        Current state of a service's container.
        """
        info = self.runtime.inspect_container(self.container_name(name))
        if not info:
            return ServiceState.ABSENT
        state = info.get("State", {})
        mapped = _ENGINE_STATES.get(state.get("Status", ""), ServiceState.FAILED)
        health = (state.get("Health") or {}).get("Status")
        if mapped == ServiceState.RUNNING and health == "starting":
            return ServiceState.STARTING
        if mapped == ServiceState.RUNNING and health == "unhealthy":
            return ServiceState.FAILED
        return mapped

    def ps(self) -> Dict[str, ServiceState]:
        """
        State of every declared service, in declaration order.
        """
        return {name: self.status(name) for name in self.stack.services}

    def stack_services(self) -> List[str]:
        """
        Service names of every container labelled with this project,
        declared or not.
        """
        names = []
        prefix = f"{self.project}-"
        for container in self.runtime.list_containers({PROJECT_LABEL: self.project}):
            name = container[len(prefix):] if container.startswith(prefix) else container
            if name not in names:
                names.append(name)
        return names

    def stop(self, name: str) -> None:
        """
        Stops a service container. Stopping an absent service is a no-op.
        """
        if self.status(name) == ServiceState.ABSENT:
            return
        logger.info("Stopping service %s", name)
        result = self.runtime.stop_container(self.container_name(name))
        if not result.ok:
            raise RuntimeCommandError(
                f"could not stop {name}: {result.detail}", service=name,
                returncode=result.returncode, stderr=result.stderr,
            )

    def remove(self, name: str) -> None:
        """
        Removes a stopped service container. Its volumes are kept.
        """
        if self.status(name) == ServiceState.ABSENT:
            return
        logger.info("Removing container of service %s", name)
        result = self.runtime.remove_container(self.container_name(name))
        if not result.ok:
            raise RuntimeCommandError(
                f"could not remove {name}: {result.detail}", service=name,
                returncode=result.returncode, stderr=result.stderr,
            )

    def start(self, spec: ServiceSpec) -> ServiceState:
        """
        Creates and starts the container of a service. A leftover container
        with the same name is replaced.

        :param spec: The service to start.
        :return: The state reached once the settle window is over.
        :raises DependencyNotRunning: If a declared dependency is not running.
        :raises PortConflict: If a requested host port is already bound.
        :raises RuntimeCommandError: If the engine refuses the container.
        """
        for dep in spec.depends_on:
            dep_state = self.status(dep)
            if dep_state != ServiceState.RUNNING:
                raise DependencyNotRunning(
                    f"{spec.name} needs {dep}, which is {dep_state.value}", service=spec.name
                )

        if self.status(spec.name) != ServiceState.ABSENT:
            self.stop(spec.name)
            self.remove(spec.name)

        for port in spec.ports:
            if port.host_port is not None and not self.port_probe(port.host_port, port.bind_address):
                raise PortConflict(
                    f"host port {port.host_port} for {spec.name} is already in use", service=spec.name
                )

        self._ensure_network()
        mounts = []
        for mount in spec.volumes:
            volume = self.volumes.ensure(self.stack.volumes[mount.source])
            mounts.append(f"{volume.engine_name}:{mount.target}{':ro' if mount.read_only else ''}")

        labels = dict(spec.labels)
        labels.update({
            PROJECT_LABEL: self.project,
            SERVICE_LABEL: spec.name,
            IMAGE_LABEL: spec.image,
        })
        health = spec.health_check.model_dump() if spec.health_check else None

        logger.info("Starting service %s (%s)", spec.name, spec.image)
        result = self.runtime.run_container(
            self.container_name(spec.name),
            spec.image,
            restart=spec.restart_policy.value,
            env=spec.environment,
            ports=[arg for arg in (p.publish_arg() for p in spec.ports) if arg],
            volumes=mounts,
            network=self.network,
            aliases=[spec.name],
            labels=labels,
            health=health,
            command=spec.command,
        )
        if not result.ok:
            if any(marker in result.stderr.lower() for marker in _PORT_IN_USE_MARKERS):
                raise PortConflict(f"{spec.name}: {result.detail}", service=spec.name)
            raise RuntimeCommandError(
                f"could not start {spec.name}: {result.detail}", service=spec.name,
                returncode=result.returncode, stderr=result.stderr,
            )
        return self.wait_until_running(spec)

    def wait_until_running(self, spec: ServiceSpec) -> ServiceState:
        """
        Waits while the service is ``starting``, bounded by the settle window
        (or the health check's own window when one is declared).
        """
        state = self.status(spec.name)
        if not self.settle_seconds:
            return state
        timeout = self.settle_seconds
        hc = spec.health_check
        if hc:
            timeout = max(timeout, hc.start_period + hc.interval * hc.retries)

        start_time = time.monotonic()
        while state == ServiceState.STARTING and time.monotonic() - start_time < timeout:
            time.sleep(self.poll_interval)
            state = self.status(spec.name)
        if state != ServiceState.RUNNING:
            logger.warning("Service %s is %s after %.0fs", spec.name, state.value, timeout)
        return state

    def _ensure_network(self) -> None:
        if self.runtime.network_exists(self.network):
            return
        logger.info("Creating network %s", self.network)
        result = self.runtime.create_network(self.network, labels={PROJECT_LABEL: self.project})
        if not result.ok:
            raise RuntimeCommandError(
                f"could not create network {self.network}: {result.detail}",
                returncode=result.returncode, stderr=result.stderr,
            )
