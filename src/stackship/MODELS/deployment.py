"""
Models for deployment targets and reconciliation results.
"""
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from ..errors import exit_code_for

class DeploymentTarget(BaseModel):
    """
    The host a stack is deployed to. Supplied per run, never cached.
    """
    host: str
    user: Optional[str] = None
    port: int = 22
    credential: Optional[str] = None  # path to a private key; None uses the ssh agent
    stack_dir: str = "."
    stack_file: str = "stack.yml"

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def __str__(self) -> str:
        return f"{self.destination}:{self.port}"

class ServiceState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"

class ServiceOutcome(str, Enum):
    PULLED = "pulled"
    RECREATED = "recreated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    STOPPED = "stopped"
    REMOVED = "removed"

class ReconciliationStatus(str, Enum):
    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    ABORTED_BEFORE_CHANGE = "AbortedBeforeChange"

class ServiceResult(BaseModel):
    """
    What happened to one service during a run.
    """
    name: str
    outcome: ServiceOutcome
    image: str = ""
    state: ServiceState = ServiceState.ABSENT
    error: Optional[str] = None
    error_kind: Optional[str] = None
    orphan: bool = False

class ReconciliationResult(BaseModel):
    """
    Overall status of a reconciliation plus a per-service breakdown.
    """
    status: ReconciliationStatus
    services: List[ServiceResult] = []
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stack_fingerprint: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == ReconciliationStatus.SUCCESS

    @property
    def failed_services(self) -> List[str]:
        return [s.name for s in self.services if s.outcome == ServiceOutcome.FAILED]

    def outcomes(self) -> Dict[str, ServiceOutcome]:
        """
        Outcome per declared service (orphans excluded).
        """
        return {s.name: s.outcome for s in self.services if not s.orphan}

    @property
    def exit_code(self) -> int:
        if self.status == ReconciliationStatus.SUCCESS:
            return 0
        if self.status == ReconciliationStatus.PARTIAL_FAILURE:
            return 3
        for svc in self.services:
            if svc.error_kind:
                return exit_code_for(svc.error_kind)
        return 1

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_output(cls, output: str) -> "ReconciliationResult":
        """
        Parses the JSON document a remote ``reconcile --json`` run prints.
        Leading log noise before the document is skipped.
        """
        start = output.find("{")
        if start < 0:
            raise ValueError("no reconciliation result in output")
        data, _ = json.JSONDecoder().raw_decode(output[start:])
        return cls.model_validate(data)
