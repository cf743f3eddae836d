from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class MirrorState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class CommandOutcome(str, Enum):
    OK = "ok"
    MIRRORING_DISABLED = "mirroring_disabled"
    FAILED = "failed"


class CheckStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    FAILED = "failed"


@dataclass(frozen=True)
class PersistentVolumeRef:
    name: str
    claim_namespace: str
    claim_name: str
    image_name: str
    pool_name: str


@dataclass(frozen=True)
class MirrorStatusRow:
    namespace: str
    claim_name: str
    volume_name: str
    state: MirrorState
    ref: PersistentVolumeRef


@dataclass(frozen=True)
class BootstrapToken:
    site_name: str
    token: bytes
    pool_name: str


@dataclass(frozen=True)
class CommandResult:
    command: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    outcome: CommandOutcome

    @property
    def succeeded(self) -> bool:
        return self.outcome == CommandOutcome.OK


@dataclass(frozen=True)
class CheckResult:
    cluster: str
    name: str
    status: CheckStatus
    message: str


@dataclass(frozen=True)
class WorkflowEvent:
    workflow: str
    level: str
    message: str
    cluster: str | None = None
