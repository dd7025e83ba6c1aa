"""
Models for defining services, including restart policies, ports, health checks, and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum

class RestartPolicyCondition(str, Enum):
    """
    Conditions under which the engine restarts a service container.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"

    @classmethod
    def parse(cls, value: str) -> "RestartPolicyCondition":
        """
        Accepts the engine spellings plus ``never`` as an alias for ``no``.
        """
        value = str(value).strip().lower()
        if value in ("never", "false", ""):
            return cls.NO
        return cls(value)

class PortScope(str, Enum):
    """
    Where a published port is reachable from.
    """
    PUBLIC = "public"
    INTERNAL = "internal"

class PortMapping(BaseModel):
    """
    A container port, optionally published on a host port.
    """
    container_port: int
    host_port: Optional[int] = None
    scope: PortScope = PortScope.PUBLIC

    @field_validator("container_port", "host_port")
    @classmethod
    def _check_range(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 < value < 65536:
            raise ValueError(f"port {value} out of range")
        return value

    @property
    def bind_address(self) -> str:
        return "127.0.0.1" if self.scope == PortScope.INTERNAL else "0.0.0.0"

    def publish_arg(self) -> Optional[str]:
        """
        The engine's ``-p`` argument, or None when the port is not published.
        """
        if self.host_port is None:
            return None
        if self.scope == PortScope.INTERNAL:
            return f"127.0.0.1:{self.host_port}:{self.container_port}"
        return f"{self.host_port}:{self.container_port}"

class HealthCheck(BaseModel):
    """
    Defines a command the engine runs to check the health of a service.
    """
    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0

class VolumeMount(BaseModel):
    """
    Mounts a named volume at a path inside the service container.
    """
    source: str
    target: str
    read_only: bool = False

class ServiceSpec(BaseModel):
    """
    The full definition of a single service in a stack.
    """
    name: str
    image: str
    restart_policy: RestartPolicyCondition = RestartPolicyCondition.NO
    ports: List[PortMapping] = []
    environment: Dict[str, str] = {}
    depends_on: List[str] = []
    volumes: List[VolumeMount] = []
    health_check: Optional[HealthCheck] = None
    command: List[str] = []
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value or not value.replace("-", "").replace("_", "").isalnum():
            raise ValueError(f"invalid service name {value!r}")
        return value

    @field_validator("depends_on")
    @classmethod
    def _unique_deps(cls, value: List[str]) -> List[str]:
        seen = []
        for dep in value:
            if dep not in seen:
                seen.append(dep)
        return seen
