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
Execution of container engine commands through the ``docker`` CLI.
"""
import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..errors import RuntimeCommandError

logger = logging.getLogger(__name__)

PROJECT_LABEL = "io.stackship.project"
SERVICE_LABEL = "io.stackship.service"


@dataclass
class CommandResult:
    """Exit status and captured output of one engine command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def detail(self) -> str:
        text = (self.stdout if self.ok else self.stderr).strip()
        return text or ("ok" if self.ok else "failed")


class DockerRuntime:
    """
    Thin wrapper around the ``docker`` command line.
    Methods return ``CommandResult`` and leave the interpretation of failures
    to the caller, except for lookups which return None/False when absent.
    """

    def __init__(self, binary: str = "docker", timeout: int = 600):
        """
        Args:
            binary: Engine CLI executable.
            timeout: Seconds before a single engine command is abandoned.
        """
        self.binary = binary
        self.timeout = timeout

    def _run(self, args: List[str], input: Optional[str] = None) -> CommandResult:
        command = [self.binary] + args
        # Never log stdin: it carries registry passwords.
        logger.debug("running %s", " ".join(command))
        try:
            process = subprocess.run(
                command,
                input=input,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except FileNotFoundError:
            raise RuntimeCommandError(f"{self.binary} not found in PATH")
        except subprocess.TimeoutExpired:
            return CommandResult(124, "", f"{args[0]} timed out after {self.timeout}s")
        return CommandResult(process.returncode, process.stdout, process.stderr)

    # Images

    def pull(self, image: str) -> CommandResult:
        return self._run(["pull", "--quiet", image])

    def image_id(self, image: str) -> Optional[str]:
        result = self._run(["image", "inspect", "--format", "{{.Id}}", image])
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def login(self, registry: str, username: str, password: str) -> CommandResult:
        return self._run(
            ["login", registry, "--username", username, "--password-stdin"],
            input=password,
        )

    # Containers

    def run_container(
        self,
        name: str,
        image: str,
        restart: str = "no",
        env: Optional[Dict[str, str]] = None,
        ports: Optional[List[str]] = None,
        volumes: Optional[List[str]] = None,
        network: Optional[str] = None,
        aliases: Optional[List[str]] = None,
        labels: Optional[Dict[str, str]] = None,
        health: Optional[Dict[str, Any]] = None,
        command: Optional[List[str]] = None,
    ) -> CommandResult:
        """Creates and starts a detached container."""
        args = ["run", "--detach", "--name", name, "--restart", restart]
        for key, value in (env or {}).items():
            args += ["--env", f"{key}={value}"]
        for port in ports or []:
            args += ["--publish", port]
        for volume in volumes or []:
            args += ["--volume", volume]
        if network:
            args += ["--network", network]
            for alias in aliases or []:
                args += ["--network-alias", alias]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        if health:
            args += ["--health-cmd", " ".join(health["test"])]
            args += ["--health-interval", f"{health['interval']}s"]
            args += ["--health-timeout", f"{health['timeout']}s"]
            args += ["--health-retries", str(health["retries"])]
            args += ["--health-start-period", f"{health['start_period']}s"]
        args.append(image)
        args += command or []
        return self._run(args)

    def stop_container(self, name: str, timeout: int = 10) -> CommandResult:
        return self._run(["stop", "--time", str(timeout), name])

    def remove_container(self, name: str) -> CommandResult:
        # No --volumes: anonymous or named, volumes outlive the container.
        return self._run(["rm", name])

    def inspect_container(self, name: str) -> Optional[Dict[str, Any]]:
        result = self._run(["container", "inspect", name])
        if not result.ok:
            return None
        data = json.loads(result.stdout or "[]")
        return data[0] if data else None

    def list_containers(self, labels: Dict[str, str]) -> List[str]:
        args = ["ps", "--all", "--format", "{{.Names}}"]
        for key, value in labels.items():
            args += ["--filter", f"label={key}={value}"]
        return self._lines(self._run(args))

    def containers_using_volume(self, volume: str) -> List[str]:
        return self._lines(
            self._run(["ps", "--all", "--filter", f"volume={volume}", "--format", "{{.Names}}"])
        )

    # Volumes

    def volume_exists(self, name: str) -> bool:
        return self._run(["volume", "inspect", name]).ok

    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> CommandResult:
        args = ["volume", "create"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        return self._run(args + [name])

    def list_volumes(self, labels: Dict[str, str]) -> List[str]:
        args = ["volume", "ls", "--format", "{{.Name}}"]
        for key, value in labels.items():
            args += ["--filter", f"label={key}={value}"]
        return self._lines(self._run(args))

    def remove_volume(self, name: str) -> CommandResult:
        return self._run(["volume", "rm", name])

    # Networks

    def network_exists(self, name: str) -> bool:
        return self._run(["network", "inspect", name]).ok

    def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> CommandResult:
        args = ["network", "create"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        return self._run(args + [name])

    @staticmethod
    def _lines(result: CommandResult) -> List[str]:
        if not result.ok:
            raise RuntimeCommandError(
                f"engine listing failed: {result.detail}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]
