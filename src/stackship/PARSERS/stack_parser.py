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
Parser for stack files: a compose-style YAML document listing services and volumes.
Also produces the canonical form used to fingerprint a stack.
"""
import hashlib
import os
import re
import shlex
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..MODELS.service_definition import (
    HealthCheck,
    PortMapping,
    PortScope,
    RestartPolicyCondition,
    ServiceSpec,
    VolumeMount,
)
from ..MODELS.stack_spec import RetentionPolicy, StackSpec, VolumeSpec
from ..REGISTRY.image_reference import ImageReference
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..errors import StackSpecError

_DURATION = re.compile(r'(\d+(?:\.\d+)?)(ms|h|m|s)')
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_LOOPBACK = ("127.0.0.1", "localhost", "::1")


class StackParser:
    """
    Parser for stack files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for ${VAR} interpolation; defaults to the process environment.
        """
        self.context = dict(os.environ) if context is None else context

    def parse(self, stack_path: str) -> StackSpec:
        """
        Parses a stack file from a path.

        :param stack_path: Path to the stack file.
        :return: Parsed stack.
        :raises StackSpecError: If the file is missing or invalid.
        """
        try:
            with open(stack_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise StackSpecError(f"cannot read stack file {stack_path}: {e.strerror or e}")
        default_project = os.path.basename(os.path.dirname(os.path.abspath(stack_path)))
        return self.parse_from_string(content, default_project=default_project)

    def parse_from_string(self, content: str, default_project: str = "stack") -> StackSpec:
        """
        Parses a stack file from a string.

        :param content: YAML content of the stack file.
        :param default_project: Project name used when the document names none.
        :return: Parsed stack.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise StackSpecError(f"interpolation failed: {e.args[0]}")

        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise StackSpecError(f"invalid YAML: {e}")
        if not isinstance(data, dict):
            raise StackSpecError("stack file must be a mapping")

        services_data = data.get('services') or {}
        if not isinstance(services_data, dict) or not services_data:
            raise StackSpecError("stack file declares no services")

        project = str(data.get('project') or data.get('name') or default_project)
        project = re.sub(r'[^a-z0-9_-]', '', project.lower()) or "stack"

        try:
            services = {}
            for name, spec in services_data.items():
                services[str(name)] = self._parse_service(str(name), spec or {})
            volumes_data = data.get('volumes') or {}
            if not isinstance(volumes_data, dict):
                raise StackSpecError("volumes must be a mapping of volume names")
            volumes = self._parse_volumes(volumes_data, services)
            return StackSpec(project=project, services=services, volumes=volumes)
        except ValidationError as e:
            raise StackSpecError(f"invalid stack: {e}")
        except KeyError as e:
            raise StackSpecError(f"invalid stack: missing key {e}")
        except (TypeError, ValueError, AttributeError) as e:
            raise StackSpecError(f"invalid stack: {e}")

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceSpec:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The service mapping.
        :return: A ServiceSpec instance.
        """
        if not isinstance(spec, dict):
            raise StackSpecError(f"service {name} must be a mapping")
        image = spec.get('image')
        if not image:
            raise StackSpecError(f"service {name} has no image")
        try:
            ImageReference.parse(str(image))
        except ValueError as e:
            raise StackSpecError(f"service {name}: {e}")

        depends = spec.get('depends_on') or []
        if isinstance(depends, dict):
            depends = list(depends.keys())

        health = spec.get('healthcheck')
        if health is not None and not isinstance(health, dict):
            raise StackSpecError(f"service {name}: healthcheck must be a mapping")
        return ServiceSpec(
            name=name,
            image=str(image),
            restart_policy=RestartPolicyCondition.parse(spec.get('restart', 'no')),
            ports=[self._parse_port(p) for p in spec.get('ports') or []],
            environment=self._parse_environment(spec.get('environment') or {}),
            depends_on=[str(d) for d in depends],
            volumes=[self._parse_mount(v) for v in spec.get('volumes') or []],
            health_check=self._parse_health(health) if health and not health.get('disable') else None,
            command=self._to_list(spec.get('command')),
            labels={str(k): str(v) for k, v in (spec.get('labels') or {}).items()},
        )

    def _parse_volumes(self, data: Dict[str, Any], services: Dict[str, ServiceSpec]) -> Dict[str, VolumeSpec]:
        volumes = {}
        for name, spec in data.items():
            spec = spec or {}
            mount_path = spec.get('mount_path', '')
            if not mount_path:
                for svc in services.values():
                    for mount in svc.volumes:
                        if mount.source == name:
                            mount_path = mount.target
                            break
                    if mount_path:
                        break
            volumes[str(name)] = VolumeSpec(
                name=str(name),
                mount_path=mount_path,
                retention=RetentionPolicy(spec.get('retention', RetentionPolicy.PERSISTENT.value)),
            )
        return volumes

    @staticmethod
    def _parse_port(value: Any) -> PortMapping:
        if isinstance(value, dict):
            if 'target' not in value:
                raise StackSpecError(f"port mapping {value!r} has no target")
            scope = value.get('scope')
            if scope is None:
                scope = PortScope.INTERNAL if value.get('host_ip') in _LOOPBACK else PortScope.PUBLIC
            return PortMapping(
                container_port=int(value['target']),
                host_port=int(value['published']) if value.get('published') is not None else None,
                scope=PortScope(scope),
            )
        parts = str(value).split('/')[0].split(':')
        if len(parts) == 1:
            return PortMapping(container_port=int(parts[0]))
        if len(parts) == 2:
            return PortMapping(container_port=int(parts[1]), host_port=int(parts[0]))
        if len(parts) == 3:
            scope = PortScope.INTERNAL if parts[0] in _LOOPBACK else PortScope.PUBLIC
            return PortMapping(container_port=int(parts[2]), host_port=int(parts[1]), scope=scope)
        raise StackSpecError(f"cannot parse port {value!r}")

    @staticmethod
    def _parse_mount(value: Any) -> VolumeMount:
        if isinstance(value, dict):
            if 'source' not in value or 'target' not in value:
                raise StackSpecError(f"volume mount {value!r} needs a source and a target")
            return VolumeMount(
                source=value['source'],
                target=value['target'],
                read_only=bool(value.get('read_only', False)),
            )
        parts = str(value).split(':')
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro'))
        raise StackSpecError(f"cannot parse volume {value!r}; expected name:/path[:ro]")

    @staticmethod
    def _parse_environment(value: Any) -> Dict[str, str]:
        environment = {}
        if isinstance(value, list):
            for entry in value:
                if '=' in entry:
                    k, v = entry.split('=', 1)
                    environment[k] = v
        elif isinstance(value, dict):
            for k, v in value.items():
                if isinstance(v, bool):
                    v = 'true' if v else 'false'
                environment[str(k)] = '' if v is None else str(v)
        return environment

    def _parse_health(self, value: Dict[str, Any]) -> HealthCheck:
        test = value.get('test') or []
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        test = list(test)
        if test and test[0] == 'CMD-SHELL':
            test = [' '.join(test[1:])]
        elif test and test[0] == 'CMD':
            test = test[1:]
        kwargs = {'test': test}
        for key in ('interval', 'timeout', 'start_period'):
            if key in value:
                kwargs[key] = parse_duration(value[key])
        if 'retries' in value:
            kwargs['retries'] = int(value['retries'])
        return HealthCheck(**kwargs)

    @staticmethod
    def _to_list(val: Any) -> List[str]:
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]


def parse_duration(value: Any) -> float:
    """
    Seconds from a number or a duration string such as ``10s`` or ``1m30s``.
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    matches = _DURATION.findall(text)
    if not matches or ''.join(n + u for n, u in matches) != text:
        raise ValueError(f"invalid duration {value!r}")
    return sum(float(n) * _UNIT_SECONDS[u] for n, u in matches)


def dump_stack(stack: StackSpec) -> str:
    """
    Canonical YAML for a stack. Parsing the output yields an equal stack and
    dumping that again yields identical bytes.
    """
    services = {}
    for name, svc in stack.services.items():
        entry: Dict[str, Any] = {'image': svc.image, 'restart': svc.restart_policy.value}
        if svc.depends_on:
            entry['depends_on'] = list(svc.depends_on)
        if svc.environment:
            entry['environment'] = {k: svc.environment[k] for k in sorted(svc.environment)}
        if svc.ports:
            entry['ports'] = [_dump_port(p) for p in svc.ports]
        if svc.volumes:
            entry['volumes'] = [
                f"{m.source}:{m.target}{':ro' if m.read_only else ''}" for m in svc.volumes
            ]
        if svc.health_check:
            hc = svc.health_check
            entry['healthcheck'] = {
                'test': ['CMD'] + list(hc.test),
                'interval': hc.interval,
                'timeout': hc.timeout,
                'retries': hc.retries,
                'start_period': hc.start_period,
            }
        if svc.command:
            entry['command'] = list(svc.command)
        if svc.labels:
            entry['labels'] = {k: svc.labels[k] for k in sorted(svc.labels)}
        services[name] = entry

    volumes = {
        name: {'mount_path': vol.mount_path, 'retention': vol.retention.value}
        for name, vol in sorted(stack.volumes.items())
    }
    document: Dict[str, Any] = {'project': stack.project, 'services': services}
    if volumes:
        document['volumes'] = volumes
    text = yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
    # Values are already interpolated; escape them so a re-parse leaves them alone.
    return text.replace('$', '$$')


def _dump_port(port: PortMapping) -> Dict[str, Any]:
    entry: Dict[str, Any] = {'target': port.container_port}
    if port.host_port is not None:
        entry['published'] = port.host_port
    entry['scope'] = port.scope.value
    return entry


def fingerprint(stack: StackSpec) -> str:
    """
    sha256 of the canonical form of a stack.
    """
    return hashlib.sha256(dump_stack(stack).encode('utf-8')).hexdigest()
