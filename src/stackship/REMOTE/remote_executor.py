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
Remote execution over ssh: runs a command sequence in the stack directory of a
deployment target and surfaces the outcome.
"""
import logging
import os
import shlex
import socket
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..MODELS.deployment import DeploymentTarget, ReconciliationResult
from ..errors import AuthFailed, CommandFailed, ConfigError, HostUnreachable

logger = logging.getLogger(__name__)

# ssh exits 255 for its own errors; these stderr fragments mean the key was refused.
_AUTH_MARKERS = (
    "permission denied",
    "authentication failed",
    "no supported authentication methods",
    "too many authentication failures",
    "load key",
    "no such identity",
    "host key verification failed",
)


@dataclass
class RemoteOutcome:
    """Result of one remote session."""

    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0


class RemoteExecutor:
    """
    Runs commands on a deployment target through a single ssh session.

    The target is probed for TCP reachability first, so a stale host address
    fails with HostUnreachable before anything runs remotely.
    """

    def __init__(
        self,
        ssh_binary: str = "ssh",
        connect_timeout: float = 10.0,
        command_timeout: float = 1800.0,
        probe_attempts: int = 3,
        probe_backoff: float = 1.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        connector: Callable[..., socket.socket] = socket.create_connection,
    ):
        """
        Args:
            ssh_binary: ssh client executable.
            connect_timeout: Seconds allowed for the TCP probe and ssh connect.
            command_timeout: Seconds allowed for the whole remote session.
            probe_attempts: Reachability attempts before giving up.
            probe_backoff: Base of the exponential wait between attempts.
            runner: ``subprocess.run`` compatible callable.
            connector: ``socket.create_connection`` compatible callable.
        """
        self.ssh_binary = ssh_binary
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.probe_attempts = probe_attempts
        self.probe_backoff = probe_backoff
        self.runner = runner
        self.connector = connector

    def probe(self, target: DeploymentTarget) -> float:
        """
        Checks that the target's ssh port accepts connections.

        Returns:
            Connect latency in milliseconds.

        Raises:
            HostUnreachable: If every attempt fails.
        """
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.probe_attempts)),
            wait=wait_exponential(multiplier=self.probe_backoff, max=10),
            retry=retry_if_exception_type(OSError),
            reraise=True,
        )
        start = time.monotonic()
        try:
            for attempt in retrying:
                with attempt:
                    start = time.monotonic()
                    conn = self.connector((target.host, target.port), timeout=self.connect_timeout)
                    conn.close()
        except OSError as e:
            raise HostUnreachable(
                f"{target.host}:{target.port} is unreachable ({e}); "
                "check that the configured host address is current"
            )
        return (time.monotonic() - start) * 1000.0

    def ssh_command(self, target: DeploymentTarget, script: str) -> List[str]:
        command = [
            self.ssh_binary,
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={int(self.connect_timeout)}",
            "-p", str(target.port),
        ]
        if target.credential:
            command += ["-i", target.credential, "-o", "IdentitiesOnly=yes"]
        command += [target.destination, script]
        return command

    def execute(self, target: DeploymentTarget, commands: List[str]) -> RemoteOutcome:
        """
        Runs ``commands`` in order inside ``target.stack_dir``, stopping at the first failure.

        Raises:
            AuthFailed: If the key is missing or refused.
            HostUnreachable: If the host cannot be reached.
            CommandFailed: If the remote sequence exits non-zero.
        """
        if target.credential and not os.path.exists(target.credential):
            raise AuthFailed(f"ssh key {target.credential} does not exist")
        if not commands:
            raise ConfigError("no remote commands to run")

        self.probe(target)

        script = " && ".join([f"cd {shlex.quote(target.stack_dir)}"] + list(commands))
        logger.info("Running on %s: %s", target, script)
        start = time.monotonic()
        try:
            process = self.runner(
                self.ssh_command(target, script),
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except FileNotFoundError:
            raise ConfigError(f"{self.ssh_binary} not found in PATH")
        except subprocess.TimeoutExpired:
            raise CommandFailed(
                f"remote command on {target.host} timed out after {self.command_timeout:.0f}s",
                remote_exit_code=124,
            )
        outcome = RemoteOutcome(
            exit_code=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
            duration=time.monotonic() - start,
        )

        if outcome.exit_code == 255:
            text = outcome.stderr.lower()
            if any(marker in text for marker in _AUTH_MARKERS):
                raise AuthFailed(f"ssh authentication to {target.destination} failed: {outcome.stderr.strip()}")
            raise HostUnreachable(f"ssh connection to {target.destination} failed: {outcome.stderr.strip()}")
        if outcome.exit_code != 0:
            raise CommandFailed(
                f"remote command exited with {outcome.exit_code}: {outcome.stderr.strip() or 'no output'}",
                remote_exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )
        return outcome

    def reconcile(self, target: DeploymentTarget, remote_command: str = "stackship",
                  env_file: Optional[str] = None) -> ReconciliationResult:
        """
        Runs ``reconcile`` on the target and returns the result it reports.

        A remote run that ends in PartialFailure or AbortedBeforeChange exits
        non-zero but still prints its result; that result is returned as is.
        """
        command = f"{remote_command} --json -f {shlex.quote(target.stack_file)}"
        if env_file:
            command += f" --env-file {shlex.quote(env_file)}"
        command += " reconcile"
        try:
            outcome = self.execute(target, [command])
        except CommandFailed as e:
            try:
                return ReconciliationResult.from_output(e.stdout)
            except ValueError:
                raise e
        try:
            return ReconciliationResult.from_output(outcome.stdout)
        except ValueError:
            raise CommandFailed(
                "remote reconcile printed no result", remote_exit_code=0,
                stdout=outcome.stdout, stderr=outcome.stderr,
            )
