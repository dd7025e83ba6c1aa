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
Reconciliation of a running stack to its declared state.

A run pulls every image first and aborts before touching containers if any
pull fails. It then stops the stack dependents-first (removing orphans),
starts it dependencies-first and reports a per-service outcome. Named volumes
are never removed. There is no rollback: a partially started stack stays as
it is until the operator runs reconcile again.
"""
import logging
import os
from typing import Callable, Dict, List, Optional

from ..MODELS.deployment import (
    DeploymentTarget,
    ReconciliationResult,
    ReconciliationStatus,
    ServiceOutcome,
    ServiceResult,
    ServiceState,
)
from ..MODELS.stack_spec import StackSpec
from ..PARSERS.stack_parser import fingerprint
from ..REGISTRY.registry_client import ImageRegistryClient, PullResult
from ..RUNNERS.container_runtime import DockerRuntime
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.port_finder import is_port_free
from ..errors import PULL_ERRORS, StackshipError
from .run_lock import RunLock
from .service_supervisor import ServiceSupervisor

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    Brings the services of a stack to the declared images without losing volume data.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        registry: Optional[ImageRegistryClient] = None,
        port_probe: Callable[[int, str], bool] = is_port_free,
        settle_seconds: float = 10.0,
        lease_seconds: float = 900.0,
        lock_wait_seconds: float = 300.0,
    ):
        """
        Initializes the orchestrator.

        :param runtime: Engine on the deployment host.
        :param registry: Registry client; one is built on ``runtime`` when omitted.
        :param port_probe: Host port availability check passed to the supervisor.
        :param settle_seconds: Per-service wait for ``starting`` to become ``running``.
        :param lease_seconds: Lifetime of the run lease.
        :param lock_wait_seconds: How long to wait for an overlapping run.
        """
        self.runtime = runtime
        self.registry = registry or ImageRegistryClient(runtime)
        self.resolver = DependencyResolver()
        self.port_probe = port_probe
        self.settle_seconds = settle_seconds
        self.lease_seconds = lease_seconds
        self.lock_wait_seconds = lock_wait_seconds

    def supervisor_for(self, stack: StackSpec) -> ServiceSupervisor:
        return ServiceSupervisor(
            self.runtime,
            stack,
            port_probe=self.port_probe,
            settle_seconds=self.settle_seconds,
        )

    def lock_for(self, target: DeploymentTarget, stack: StackSpec) -> RunLock:
        path = os.path.join(target.stack_dir, ".stackship", f"{stack.project}.lock")
        return RunLock(path, lease_seconds=self.lease_seconds, wait_seconds=self.lock_wait_seconds)

    def pull_all(self, stack: StackSpec, pulls: Optional[Dict[str, PullResult]] = None) -> Dict[str, PullResult]:
        """
        Pulls every service image in declared order, stopping at the first failure.

        :param pulls: Filled in place, so it holds the completed pulls when a pull fails.
        :raises RegistryUnavailable, AuthRequired, ImageNotFound: On the first failed pull.
        """
        pulls = {} if pulls is None else pulls
        for name, spec in stack.services.items():
            pulls[name] = self.registry.pull(spec)
        return pulls

    def stop_all(self, stack: StackSpec, supervisor: Optional[ServiceSupervisor] = None) -> List[ServiceResult]:
        """
        Stops and removes the stack's containers, dependents before dependencies,
        then any container of the project that is no longer declared.
        Volumes are left in place.
        """
        supervisor = supervisor or self.supervisor_for(stack)
        results = []
        for name in self.resolver.shutdown_order(stack):
            results.append(self._stop_one(supervisor, name, stack.services[name].image, orphan=False))

        for name in supervisor.stack_services():
            if name not in stack.services:
                logger.info("Service %s is no longer declared, removing it", name)
                results.append(self._stop_one(supervisor, name, "", orphan=True))
        return results

    def start_all(
        self,
        stack: StackSpec,
        pulls: Optional[Dict[str, PullResult]] = None,
        supervisor: Optional[ServiceSupervisor] = None,
    ) -> List[ServiceResult]:
        """
        Starts every service, dependencies before dependents. A service that
        fails to start does not stop independent services from starting;
        its dependents are reported as failed.
        """
        supervisor = supervisor or self.supervisor_for(stack)
        results = []
        for name in self.resolver.resolve_order(stack):
            spec = stack.services[name]
            try:
                state = supervisor.start(spec)
            except StackshipError as e:
                logger.error("Service %s failed to start: %s", name, e.message)
                dependents = self.resolver.dependents_of(stack, name)
                if dependents:
                    logger.warning("Services depending on %s will not start: %s", name, ", ".join(dependents))
                results.append(ServiceResult(
                    name=name, outcome=ServiceOutcome.FAILED, image=spec.image,
                    state=supervisor.status(name), error=e.message, error_kind=e.kind,
                ))
                continue

            if state != ServiceState.RUNNING:
                results.append(ServiceResult(
                    name=name, outcome=ServiceOutcome.FAILED, image=spec.image, state=state,
                    error=f"service is {state.value} after start",
                ))
                continue

            pull = (pulls or {}).get(name)
            outcome = ServiceOutcome.UNCHANGED if pull and not pull.changed else ServiceOutcome.RECREATED
            results.append(ServiceResult(name=name, outcome=outcome, image=spec.image, state=state))
        return results

    def reconcile(self, target: DeploymentTarget, stack: StackSpec) -> ReconciliationResult:
        """
        Reconciles the running stack on ``target`` to ``stack``.

        :param target: Deployment target; its stack directory holds the run lease.
        :param stack: Declared stack, read-only for the duration of the run.
        :return: Overall status and per-service outcome.
        :raises LockTimeout: If an overlapping run does not finish in time.
        """
        supervisor = self.supervisor_for(stack)
        stack_hash = fingerprint(stack)
        logger.info("Reconciling %s on %s (stack %s)", stack.project, target, stack_hash[:12])

        pulls: Dict[str, PullResult] = {}
        try:
            self.pull_all(stack, pulls)
        except PULL_ERRORS as e:
            name = next(n for n in stack.services if n not in pulls)
            logger.error("Pull failed for %s, leaving the running stack untouched: %s", name, e.message)
            return ReconciliationResult(
                status=ReconciliationStatus.ABORTED_BEFORE_CHANGE,
                services=self._aborted_results(stack, supervisor, pulls, name, e),
                stack_fingerprint=stack_hash,
            )

        with self.lock_for(target, stack):
            stop_results = self.stop_all(stack, supervisor)
            start_results = self.start_all(stack, pulls, supervisor)

        services = start_results + [r for r in stop_results if r.orphan]
        failed = [r.name for r in start_results if r.outcome == ServiceOutcome.FAILED]
        status = ReconciliationStatus.PARTIAL_FAILURE if failed else ReconciliationStatus.SUCCESS
        if failed:
            logger.error("Reconciliation finished with failed services: %s", ", ".join(failed))
        else:
            logger.info("Reconciliation succeeded: %s", ", ".join(r.name for r in start_results))
        return ReconciliationResult(status=status, services=services, stack_fingerprint=stack_hash)

    def _stop_one(self, supervisor: ServiceSupervisor, name: str, image: str, orphan: bool) -> ServiceResult:
        outcome = ServiceOutcome.REMOVED if orphan else ServiceOutcome.STOPPED
        try:
            supervisor.stop(name)
            supervisor.remove(name)
        except StackshipError as e:
            logger.error("Could not stop %s: %s", name, e.message)
            return ServiceResult(
                name=name, outcome=ServiceOutcome.FAILED, image=image, state=supervisor.status(name),
                error=e.message, error_kind=e.kind, orphan=orphan,
            )
        return ServiceResult(name=name, outcome=outcome, image=image, state=ServiceState.ABSENT, orphan=orphan)

    @staticmethod
    def _aborted_results(stack: StackSpec, supervisor: ServiceSupervisor, pulls: Dict[str, PullResult],
                         failed_name: str, error: StackshipError) -> List[ServiceResult]:
        results = []
        for name, spec in stack.services.items():
            state = supervisor.status(name)
            if name == failed_name:
                results.append(ServiceResult(
                    name=name, outcome=ServiceOutcome.FAILED, image=spec.image, state=state,
                    error=error.message, error_kind=error.kind,
                ))
            elif name in pulls:
                results.append(ServiceResult(name=name, outcome=ServiceOutcome.PULLED, image=spec.image, state=state))
            else:
                results.append(ServiceResult(name=name, outcome=ServiceOutcome.UNCHANGED, image=spec.image, state=state))
        return results
