"""
Execution schemas - instances, executions and the transition log.

JobInstance is a job identity. JobExecution is one attempt at running a
JobInstance. StepExecution tracks one attempt at running a step within a
JobExecution. Transition is one append-only entry of the tracker log.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .parameters import JobParameters


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class BatchStatus(str, Enum):
    """Status of a job or step execution."""
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self is not BatchStatus.STARTED

    @property
    def is_restartable(self) -> bool:
        return self in (BatchStatus.FAILED, BatchStatus.STOPPED)


class TransitionKind(str, Enum):
    """Kinds of entries in the execution tracker log."""
    JOB_STARTED = "job_started"
    STEP_STARTED = "step_started"
    CHUNK_COMMITTED = "chunk_committed"
    STEP_FINISHED = "step_finished"
    JOB_FINISHED = "job_finished"


@dataclass(frozen=True)
class JobInstance:
    """
    A job identity: (job name, identifying parameters).

    Created on the first run with a given identity, immutable thereafter.
    """
    instance_id: int
    job_name: str
    identity_key: str
    parameters: JobParameters
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "job_name": self.job_name,
            "identity_key": self.identity_key,
            "parameters": self.parameters.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobInstance":
        return cls(
            instance_id=data["instance_id"],
            job_name=data["job_name"],
            identity_key=data["identity_key"],
            parameters=JobParameters.from_dict(data.get("parameters", {})),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class StepExecution:
    """
    One attempt to run a step within a JobExecution.

    Attributes:
        step_name: Name of the step
        execution_id: Owning JobExecution
        status: STARTED while running, then COMPLETED/FAILED/STOPPED
        read_count: Items successfully read
        write_count: Items written in committed chunks
        filter_count: Items the processor filtered out (returned None)
        read_skip_count: Malformed items skipped at read time
        process_skip_count: Items skipped because processing rejected them
        write_skip_count: Items skipped because the store rejected them
        commit_count: Committed chunk transactions
        rollback_count: Rolled-back chunk transactions
        retry_count: Chunk write retries after transient failures
        position: Reader position as of the last committed chunk
        start_position: Reader position this execution resumed from
        exit_code: Final exit code (COMPLETED, FAILED, STOPPED or custom)
        failures: Error details ({"type", "message"}) for failed steps
    """
    step_name: str
    execution_id: int
    status: BatchStatus = BatchStatus.STARTED
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    read_skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    retry_count: int = 0
    position: int = 0
    start_position: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    exit_code: Optional[str] = None
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def skip_count(self) -> int:
        return self.read_skip_count + self.process_skip_count + self.write_skip_count

    @property
    def duration_ms(self) -> Optional[int]:
        if self.ended_at:
            return int((self.ended_at - self.started_at).total_seconds() * 1000)
        return None

    def finish(self, status: BatchStatus, exit_code: Optional[str] = None) -> None:
        self.status = status
        self.exit_code = exit_code or status.value
        self.ended_at = _utcnow()

    def add_failure(self, error: BaseException) -> None:
        self.failures.append({"type": type(error).__name__, "message": str(error)})

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "step_name": self.step_name,
            "execution_id": self.execution_id,
            "status": self.status.value,
            "read_count": self.read_count,
            "write_count": self.write_count,
            "filter_count": self.filter_count,
            "read_skip_count": self.read_skip_count,
            "process_skip_count": self.process_skip_count,
            "write_skip_count": self.write_skip_count,
            "commit_count": self.commit_count,
            "rollback_count": self.rollback_count,
            "retry_count": self.retry_count,
            "position": self.position,
            "start_position": self.start_position,
            "started_at": self.started_at.isoformat(),
        }
        if self.ended_at is not None:
            result["ended_at"] = self.ended_at.isoformat()
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.failures:
            result["failures"] = self.failures
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepExecution":
        return cls(
            step_name=data["step_name"],
            execution_id=data["execution_id"],
            status=BatchStatus(data["status"]),
            read_count=data.get("read_count", 0),
            write_count=data.get("write_count", 0),
            filter_count=data.get("filter_count", 0),
            read_skip_count=data.get("read_skip_count", 0),
            process_skip_count=data.get("process_skip_count", 0),
            write_skip_count=data.get("write_skip_count", 0),
            commit_count=data.get("commit_count", 0),
            rollback_count=data.get("rollback_count", 0),
            retry_count=data.get("retry_count", 0),
            position=data.get("position", 0),
            start_position=data.get("start_position", 0),
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=_from_iso(data.get("ended_at")),
            exit_code=data.get("exit_code"),
            failures=list(data.get("failures", [])),
        )


@dataclass
class JobExecution:
    """
    One attempt to run a JobInstance.

    A JobInstance may have several executions only while none of them
    has COMPLETED. Terminal executions are never mutated again.
    """
    execution_id: int
    instance_id: int
    job_name: str
    parameters: JobParameters
    status: BatchStatus = BatchStatus.STARTED
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    exit_code: Optional[str] = None
    exit_description: str = ""
    step_executions: list[StepExecution] = field(default_factory=list)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.ended_at:
            return int((self.ended_at - self.started_at).total_seconds() * 1000)
        return None

    def get_step_execution(self, step_name: str) -> Optional[StepExecution]:
        for step_execution in self.step_executions:
            if step_execution.step_name == step_name:
                return step_execution
        return None

    def finish(self, status: BatchStatus, exit_description: str = "") -> None:
        self.status = status
        self.exit_code = status.value
        self.exit_description = exit_description
        self.ended_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "execution_id": self.execution_id,
            "instance_id": self.instance_id,
            "job_name": self.job_name,
            "parameters": self.parameters.to_dict(),
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "step_executions": [s.to_dict() for s in self.step_executions],
        }
        if self.ended_at is not None:
            result["ended_at"] = self.ended_at.isoformat()
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.exit_description:
            result["exit_description"] = self.exit_description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobExecution":
        return cls(
            execution_id=data["execution_id"],
            instance_id=data["instance_id"],
            job_name=data["job_name"],
            parameters=JobParameters.from_dict(data.get("parameters", {})),
            status=BatchStatus(data["status"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=_from_iso(data.get("ended_at")),
            exit_code=data.get("exit_code"),
            exit_description=data.get("exit_description", ""),
            step_executions=[StepExecution.from_dict(s) for s in data.get("step_executions", [])],
        )


@dataclass(frozen=True)
class Transition:
    """
    One append-only entry in the execution tracker log.

    Keyed by (job_name, identity_key, execution_id). Step-level entries
    carry the step name and the reader position at the time of the entry.
    """
    seq: int
    job_name: str
    identity_key: str
    execution_id: int
    kind: TransitionKind
    status: BatchStatus
    step_name: Optional[str] = None
    position: Optional[int] = None
    payload: dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "seq": self.seq,
            "job_name": self.job_name,
            "identity_key": self.identity_key,
            "execution_id": self.execution_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "recorded_at": self.recorded_at.isoformat(),
        }
        if self.step_name is not None:
            result["step_name"] = self.step_name
        if self.position is not None:
            result["position"] = self.position
        if self.payload:
            result["payload"] = self.payload
        return result
