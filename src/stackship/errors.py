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
Exception hierarchy. Every error carries the process exit code the CLI uses
when the error ends a run.
"""
from typing import Optional


class StackshipError(Exception):
    """Base class for all deployment errors."""

    exit_code = 1

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.service = service

    @property
    def kind(self) -> str:
        return type(self).__name__


class StackSpecError(StackshipError):
    """The stack file is invalid."""

    exit_code = 2


class ConfigError(StackshipError):
    """Run configuration (environment, .env file) is missing or invalid."""

    exit_code = 2


# Pull phase: fatal to the run, never retried.

class RegistryUnavailable(StackshipError):
    exit_code = 10


class AuthRequired(StackshipError):
    exit_code = 11


class ImageNotFound(StackshipError):
    exit_code = 12


# Start phase: fatal to one service only.

class DependencyNotRunning(StackshipError):
    exit_code = 20


class PortConflict(StackshipError):
    exit_code = 21


class RuntimeCommandError(StackshipError):
    """The container engine rejected a command."""

    exit_code = 22

    def __init__(self, message: str, service: Optional[str] = None,
                 returncode: int = 1, stderr: str = ""):
        super().__init__(message, service)
        self.returncode = returncode
        self.stderr = stderr


class LockTimeout(StackshipError):
    """Another reconciliation holds the run lease."""

    exit_code = 30


class VolumeInUse(StackshipError):
    exit_code = 31


# Remote execution phase: fatal to the whole run.

class HostUnreachable(StackshipError):
    exit_code = 40


class AuthFailed(StackshipError):
    exit_code = 41


class CommandFailed(StackshipError):
    exit_code = 42

    def __init__(self, message: str, remote_exit_code: int = 1,
                 stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.remote_exit_code = remote_exit_code
        self.stdout = stdout
        self.stderr = stderr


PULL_ERRORS = (RegistryUnavailable, AuthRequired, ImageNotFound)

ERRORS_BY_KIND = {
    cls.__name__: cls
    for cls in (
        StackSpecError,
        ConfigError,
        RegistryUnavailable,
        AuthRequired,
        ImageNotFound,
        DependencyNotRunning,
        PortConflict,
        RuntimeCommandError,
        LockTimeout,
        VolumeInUse,
        HostUnreachable,
        AuthFailed,
        CommandFailed,
    )
}


def exit_code_for(kind: Optional[str]) -> int:
    """Maps an error kind name back to its exit code (1 when unknown)."""
    cls = ERRORS_BY_KIND.get(kind or "")
    return cls.exit_code if cls else 1
