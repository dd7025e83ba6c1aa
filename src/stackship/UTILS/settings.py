"""
Run configuration read once at start from the environment and an optional .env file.
"""
import os
from typing import Optional

from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..MODELS.deployment import DeploymentTarget
from ..errors import ConfigError

PREFIX = "STACKSHIP_"


class Settings(BaseSettings):
    """
    Deployment settings, each read from ``STACKSHIP_<FIELD>``.

    Order of precedence (highest to lowest):
        1. Keyword arguments
        2. Environment variables
        3. The ``.env`` file given to ``load``
        4. Defaults below

    Secrets are SecretStr and never rendered by repr or logs.
    """

    host: Optional[str] = None
    user: Optional[str] = None
    ssh_port: int = 22
    ssh_key: Optional[str] = None
    stack_dir: str = "."
    stack_file: str = "stack.yml"
    registry: Optional[str] = None
    registry_user: Optional[str] = None
    registry_password: Optional[SecretStr] = None
    lock_timeout: float = 300.0
    lease_seconds: float = 900.0
    settle_seconds: float = 10.0
    ssh_timeout: float = 1800.0
    remote_command: str = "stackship"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix=PREFIX,
        env_file=None,
        env_ignore_empty=True,
        extra="ignore",
    )

    @classmethod
    def load(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Builds settings from the environment and ``env_file``.

        :raises ConfigError: If the env file is missing or a value cannot be converted.
        """
        if env_file and not os.path.exists(env_file):
            raise ConfigError(f"env file {env_file} not found")
        try:
            return cls(_env_file=env_file)
        except ValidationError as e:
            raise ConfigError(f"invalid configuration: {e}")

    @property
    def has_registry_credentials(self) -> bool:
        return bool(self.registry and self.registry_user and self.registry_password)

    def target(self, host: Optional[str] = None) -> DeploymentTarget:
        """
        The deployment target for this run.

        :param host: Overrides ``STACKSHIP_HOST``.
        :raises ConfigError: If no host is configured.
        """
        host = host or self.host
        if not host:
            raise ConfigError(f"no deployment host configured; set {PREFIX}HOST")
        return DeploymentTarget(
            host=host,
            user=self.user,
            port=self.ssh_port,
            credential=os.path.expanduser(self.ssh_key) if self.ssh_key else None,
            stack_dir=self.stack_dir,
            stack_file=self.stack_file,
        )
