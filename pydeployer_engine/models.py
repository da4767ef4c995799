import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BuildStatus(Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class StageName(Enum):
    CHECKOUT = "Checkout"
    CREDENTIAL_ACQUIRE = "CredentialAcquire"
    HARDEN = "Harden"
    TRANSFER = "Transfer"
    CLEANUP = "Cleanup"


class StageState(Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# Execution order. Cleanup is always last and always runs.
PIPELINE_STAGES = [
    StageName.CHECKOUT,
    StageName.CREDENTIAL_ACQUIRE,
    StageName.HARDEN,
    StageName.TRANSFER,
    StageName.CLEANUP,
]


@dataclass
class Stage:
    name: StageName
    state: StageState = StageState.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    message: Optional[str] = None
    error_kind: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name.value,
            "state": self.state.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "message": self.message,
            "error_kind": self.error_kind,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Stage':
        return cls(
            name=StageName(data['name']),
            state=StageState(data.get('state', StageState.PENDING.value)),
            started_at=data.get('started_at'),
            finished_at=data.get('finished_at'),
            message=data.get('message'),
            error_kind=data.get('error_kind'),
            warnings=data.get('warnings', []),
        )


@dataclass
class DeploymentTarget:
    host: str
    remote_path: str
    auth_principal: str
    port: int = 22
    verify_host_key: bool = True # Disabling this is an explicit, logged opt-in
    known_hosts_file: Optional[str] = None
    atomic: bool = False # Stage into a sibling directory and swap on success

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "remote_path": self.remote_path,
            "auth_principal": self.auth_principal,
            "port": self.port,
            "verify_host_key": self.verify_host_key,
            "known_hosts_file": self.known_hosts_file,
            "atomic": self.atomic,
        }


@dataclass
class PushNotification:
    repository_id: str
    revision: str
    ref: str


@dataclass
class Credential:
    credential_id: str
    path: Path
    owner_principal: Optional[str]
    build_id: str
    # The key material itself is only ever on disk at `path`.


@dataclass
class BuildContext:
    """Everything a stage needs to know about the build it runs for."""
    build_id: str
    revision: str
    workspace_root: Path
    source_dir: Path
    target: DeploymentTarget
    credential_path: Optional[Path] = None
    abort_event: threading.Event = field(default_factory=threading.Event)
    abort_reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def request_abort(self, reason: str):
        if not self.abort_event.is_set():
            self.abort_reason = reason
            self.abort_event.set()


@dataclass
class HardeningStepResult:
    operation: str
    principal: Optional[str] = None
    ok: bool = True
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"operation": self.operation, "principal": self.principal, "ok": self.ok, "error": self.error}


@dataclass
class HardeningReport:
    path: str
    steps: List[HardeningStepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)

    @property
    def failed_operations(self) -> List[str]:
        return [step.operation for step in self.steps if not step.ok]

    @property
    def warnings(self) -> List[str]:
        return [f"{step.operation} failed: {step.error}" for step in self.steps if not step.ok]

    def to_dict(self) -> dict:
        return {"path": self.path, "ok": self.ok, "steps": [s.to_dict() for s in self.steps]}


@dataclass
class TransferResult:
    host: str
    remote_path: str
    files_copied: int = 0
    bytes_copied: int = 0
    attempts: int = 1
    atomic: bool = False

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "remote_path": self.remote_path,
            "files_copied": self.files_copied,
            "bytes_copied": self.bytes_copied,
            "attempts": self.attempts,
            "atomic": self.atomic,
        }


@dataclass
class Build:
    id: str
    revision: str
    status: BuildStatus
    queued_at: str  # ISO 8601
    repository_id: Optional[str] = None
    ref: Optional[str] = None
    triggered_by: str = "webhook"
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    stage_log: List[Stage] = field(default_factory=list)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    exit_code: Optional[int] = None
    hardening_report: Optional[Dict[str, Any]] = None
    transfer_result: Optional[Dict[str, Any]] = None

    @classmethod
    def new(cls, revision: str, repository_id: Optional[str] = None, ref: Optional[str] = None,
            triggered_by: str = "webhook") -> 'Build':
        return cls(
            id=str(uuid.uuid4()),
            revision=revision,
            status=BuildStatus.QUEUED,
            queued_at=utc_now(),
            repository_id=repository_id,
            ref=ref,
            triggered_by=triggered_by,
            stage_log=[Stage(name=name) for name in PIPELINE_STAGES],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (BuildStatus.SUCCEEDED, BuildStatus.FAILED)

    def stage(self, name: StageName) -> Stage:
        for stage in self.stage_log:
            if stage.name == name:
                return stage
        raise KeyError(name.value)

    def current_stage(self) -> Stage:
        """The running stage, else the last stage that actually ran."""
        for stage in self.stage_log:
            if stage.state == StageState.RUNNING:
                return stage
        ran = [s for s in self.stage_log if s.state in (StageState.SUCCEEDED, StageState.FAILED)]
        if ran:
            return ran[-1]
        return self.stage_log[0]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "revision": self.revision,
            "status": self.status.value,
            "queued_at": self.queued_at,
            "repository_id": self.repository_id,
            "ref": self.ref,
            "triggered_by": self.triggered_by,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stage_log": [s.to_dict() for s in self.stage_log],
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "exit_code": self.exit_code,
            "hardening_report": self.hardening_report,
            "transfer_result": self.transfer_result,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Build':
        build = cls(
            id=data['id'],
            revision=data['revision'],
            status=BuildStatus(data['status']),
            queued_at=data.get('queued_at'),
        )
        build.repository_id = data.get('repository_id')
        build.ref = data.get('ref')
        build.triggered_by = data.get('triggered_by', "unknown")
        build.started_at = data.get('started_at')
        build.finished_at = data.get('finished_at')
        build.stage_log = [Stage.from_dict(s) for s in data.get('stage_log', [])]
        build.error_kind = data.get('error_kind')
        build.error_message = data.get('error_message')
        build.exit_code = data.get('exit_code')
        build.hardening_report = data.get('hardening_report')
        build.transfer_result = data.get('transfer_result')
        return build
