"""
ExecutionTracker - Persist job/step execution state.

The tracker manages:
- JobInstances (one per job name + identifying parameters)
- JobExecutions with their StepExecutions (current snapshot)
- Transitions (append-only log of every state change and chunk commit)

Every record_transition call stores the log entry and the execution
snapshot together and is durable before it returns, so the Step
Orchestrator can rely on the last chunk_committed position after a crash.

Storage backends:
- In-memory (for testing)
- SQLite (durable, shared between processes)
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from chunkbatch.errors import DuplicateCompletedRun, JobExecutionAlreadyRunning
from chunkbatch.schemas import (
    BatchStatus,
    JobExecution,
    JobInstance,
    JobParameters,
    StepExecution,
    Transition,
    TransitionKind,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def check_can_start(instance: JobInstance, latest: Optional[JobExecution]) -> None:
    """
    Raise if a new execution may not be created for this instance.

    Raises:
        JobExecutionAlreadyRunning: If the latest execution is still STARTED
        DuplicateCompletedRun: If the instance already COMPLETED
    """
    if latest is None:
        return
    if latest.status == BatchStatus.STARTED:
        raise JobExecutionAlreadyRunning(
            f"Job '{instance.job_name}' instance {instance.instance_id} is already running "
            f"(execution {latest.execution_id})"
        )
    if latest.status == BatchStatus.COMPLETED:
        raise DuplicateCompletedRun(instance.job_name, instance.identity_key)


class _IdentityLocks:
    """Per-identity locks; distinct identities never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}

    @contextmanager
    def hold(self, job_name: str, identity_key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault((job_name, identity_key), threading.Lock())
        with lock:
            yield


class ExecutionTracker(ABC):
    """
    Abstract base class for execution history storage.

    Implementations must provide methods to:
    - Find, create and list JobInstances
    - Create, update, retrieve and list JobExecutions
    - Append Transitions durably
    """

    def __init__(self) -> None:
        self._identity_locks = _IdentityLocks()

    @contextmanager
    def instance_lock(self, job_name: str, identity_key: str) -> Iterator[None]:
        """
        Mutually exclusive section for one job identity.

        Held by the Job Orchestrator around the duplicate-run check and
        execution creation. Different identities do not block each other.
        """
        with self._identity_locks.hold(job_name, identity_key):
            yield

    @abstractmethod
    def find_instance(self, job_name: str, identity_key: str) -> Optional[JobInstance]:
        """Return the instance for (job_name, identity_key), or None."""
        pass

    @abstractmethod
    def get_instance(self, instance_id: int) -> Optional[JobInstance]:
        pass

    @abstractmethod
    def create_instance(self, job_name: str, parameters: JobParameters) -> JobInstance:
        """
        Create a new JobInstance.

        Args:
            job_name: The job name
            parameters: Run parameters; the identifying subset defines identity

        Returns:
            The created JobInstance
        """
        pass

    @abstractmethod
    def list_instances(self, job_name: Optional[str] = None) -> list[JobInstance]:
        """List instances (optionally for one job), oldest first."""
        pass

    @abstractmethod
    def create_execution(self, instance: JobInstance, parameters: JobParameters) -> JobExecution:
        """
        Create a STARTED execution and record its job_started transition.

        The start check runs atomically with the insert.

        Raises:
            JobExecutionAlreadyRunning: If the instance has a STARTED execution
            DuplicateCompletedRun: If the instance has a COMPLETED execution
        """
        pass

    @abstractmethod
    def update_execution(self, execution: JobExecution) -> None:
        """Persist the current snapshot of an execution and its steps."""
        pass

    @abstractmethod
    def get_execution(self, execution_id: int) -> Optional[JobExecution]:
        pass

    @abstractmethod
    def list_executions(
        self,
        instance: Optional[JobInstance] = None,
        job_name: Optional[str] = None,
    ) -> list[JobExecution]:
        """List executions oldest first, filtered by instance or job name."""
        pass

    @abstractmethod
    def record_transition(
        self,
        execution: JobExecution,
        kind: TransitionKind,
        step_execution: Optional[StepExecution] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Transition:
        """
        Append a transition and persist the execution snapshot with it.

        Durable before returning.
        """
        pass

    @abstractmethod
    def list_transitions(self, execution_id: Optional[int] = None) -> list[Transition]:
        """Transitions in append order, optionally for one execution."""
        pass

    # Derived queries

    def latest_execution(self, instance: JobInstance) -> Optional[JobExecution]:
        """The most recent execution of an instance, or None."""
        executions = self.list_executions(instance=instance)
        return executions[-1] if executions else None

    def is_completed(self, instance: JobInstance) -> bool:
        """Whether any execution of the instance COMPLETED."""
        return any(e.status == BatchStatus.COMPLETED for e in self.list_executions(instance=instance))

    def last_step_execution(self, instance: JobInstance, step_name: str) -> Optional[StepExecution]:
        """
        The most recent StepExecution of a step across the instance's executions.

        Used to skip steps that already completed and to find the resume
        position of a step that failed or stopped.
        """
        for execution in reversed(self.list_executions(instance=instance)):
            step_execution = execution.get_step_execution(step_name)
            if step_execution is not None:
                return step_execution
        return None


class InMemoryExecutionTracker(ExecutionTracker):
    """
    In-memory implementation of ExecutionTracker for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._instances: dict[int, JobInstance] = {}
        self._executions: dict[int, dict[str, Any]] = {}  # execution_id -> snapshot dict
        self._transitions: list[Transition] = []
        self._next_instance_id = 1
        self._next_execution_id = 1

    def find_instance(self, job_name: str, identity_key: str) -> Optional[JobInstance]:
        with self._lock:
            for instance in self._instances.values():
                if instance.job_name == job_name and instance.identity_key == identity_key:
                    return instance
        return None

    def get_instance(self, instance_id: int) -> Optional[JobInstance]:
        with self._lock:
            return self._instances.get(instance_id)

    def create_instance(self, job_name: str, parameters: JobParameters) -> JobInstance:
        with self._lock:
            identity_key = parameters.identity_key()
            existing = self.find_instance(job_name, identity_key)
            if existing is not None:
                return existing
            instance = JobInstance(
                instance_id=self._next_instance_id,
                job_name=job_name,
                identity_key=identity_key,
                parameters=parameters,
            )
            self._instances[instance.instance_id] = instance
            self._next_instance_id += 1
            return instance

    def list_instances(self, job_name: Optional[str] = None) -> list[JobInstance]:
        with self._lock:
            return [
                i for i in self._instances.values()
                if job_name is None or i.job_name == job_name
            ]

    def create_execution(self, instance: JobInstance, parameters: JobParameters) -> JobExecution:
        with self._lock:
            check_can_start(instance, self.latest_execution(instance))
            execution = JobExecution(
                execution_id=self._next_execution_id,
                instance_id=instance.instance_id,
                job_name=instance.job_name,
                parameters=parameters,
            )
            self._next_execution_id += 1
            self.record_transition(execution, TransitionKind.JOB_STARTED)
            return execution

    def update_execution(self, execution: JobExecution) -> None:
        with self._lock:
            self._executions[execution.execution_id] = execution.to_dict()

    def get_execution(self, execution_id: int) -> Optional[JobExecution]:
        with self._lock:
            data = self._executions.get(execution_id)
        return JobExecution.from_dict(data) if data is not None else None

    def list_executions(
        self,
        instance: Optional[JobInstance] = None,
        job_name: Optional[str] = None,
    ) -> list[JobExecution]:
        with self._lock:
            snapshots = [self._executions[k] for k in sorted(self._executions)]
        result = []
        for data in snapshots:
            if instance is not None and data["instance_id"] != instance.instance_id:
                continue
            if job_name is not None and data["job_name"] != job_name:
                continue
            result.append(JobExecution.from_dict(data))
        return result

    def record_transition(
        self,
        execution: JobExecution,
        kind: TransitionKind,
        step_execution: Optional[StepExecution] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Transition:
        with self._lock:
            instance = self._instances[execution.instance_id]
            transition = Transition(
                seq=len(self._transitions) + 1,
                job_name=execution.job_name,
                identity_key=instance.identity_key,
                execution_id=execution.execution_id,
                kind=kind,
                status=step_execution.status if step_execution else execution.status,
                step_name=step_execution.step_name if step_execution else None,
                position=step_execution.position if step_execution else None,
                payload=dict(payload or {}),
            )
            self._transitions.append(transition)
            self._executions[execution.execution_id] = execution.to_dict()
            return transition

    def list_transitions(self, execution_id: Optional[int] = None) -> list[Transition]:
        with self._lock:
            return [
                t for t in self._transitions
                if execution_id is None or t.execution_id == execution_id
            ]

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._instances.clear()
            self._executions.clear()
            self._transitions.clear()


SCHEMA = """
CREATE TABLE IF NOT EXISTS job_instances (
    instance_id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    identity_key TEXT NOT NULL,
    parameters TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (job_name, identity_key)
);
CREATE TABLE IF NOT EXISTS job_executions (
    execution_id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id INTEGER NOT NULL REFERENCES job_instances (instance_id),
    job_name TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    snapshot TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_job_executions_instance ON job_executions (instance_id);
CREATE TABLE IF NOT EXISTS transitions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    identity_key TEXT NOT NULL,
    execution_id INTEGER NOT NULL REFERENCES job_executions (execution_id),
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    step_name TEXT,
    position INTEGER,
    payload TEXT,
    recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transitions_execution ON transitions (execution_id);
"""


class SqliteExecutionTracker(ExecutionTracker):
    """
    SQLite implementation of ExecutionTracker.

    Tables:
        job_instances   one row per (job_name, identity_key)
        job_executions  current snapshot per execution (JSON)
        transitions     append-only log

    Every call opens its own connection, so the tracker may be shared by
    threads running independent jobs. Writes use BEGIN IMMEDIATE with
    synchronous=FULL and commit before returning. The start check in
    create_execution runs inside the same write transaction as the insert,
    which also excludes a second process racing on the same identity.
    """

    def __init__(self, path: Path | str, timeout: float = 30.0):
        super().__init__()
        if str(path) == ":memory:":
            raise ValueError("SqliteExecutionTracker needs a file path; use InMemoryExecutionTracker")
        self._path = Path(path)
        self._timeout = timeout
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._path), timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> JobInstance:
        return JobInstance(
            instance_id=row["instance_id"],
            job_name=row["job_name"],
            identity_key=row["identity_key"],
            parameters=JobParameters.from_dict(json.loads(row["parameters"])),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_transition(row: sqlite3.Row) -> Transition:
        return Transition(
            seq=row["seq"],
            job_name=row["job_name"],
            identity_key=row["identity_key"],
            execution_id=row["execution_id"],
            kind=TransitionKind(row["kind"]),
            status=BatchStatus(row["status"]),
            step_name=row["step_name"],
            position=row["position"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )

    def find_instance(self, job_name: str, identity_key: str) -> Optional[JobInstance]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_instances WHERE job_name = ? AND identity_key = ?",
                (job_name, identity_key),
            ).fetchone()
        return self._row_to_instance(row) if row else None

    def get_instance(self, instance_id: int) -> Optional[JobInstance]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_instances WHERE instance_id = ?", (instance_id,)
            ).fetchone()
        return self._row_to_instance(row) if row else None

    def create_instance(self, job_name: str, parameters: JobParameters) -> JobInstance:
        identity_key = parameters.identity_key()
        with self._write() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO job_instances (job_name, identity_key, parameters, created_at) "
                "VALUES (?, ?, ?, ?)",
                (job_name, identity_key, json.dumps(parameters.to_dict()), _utcnow().isoformat()),
            )
            row = conn.execute(
                "SELECT * FROM job_instances WHERE job_name = ? AND identity_key = ?",
                (job_name, identity_key),
            ).fetchone()
        return self._row_to_instance(row)

    def list_instances(self, job_name: Optional[str] = None) -> list[JobInstance]:
        with self._connect() as conn:
            if job_name is None:
                rows = conn.execute("SELECT * FROM job_instances ORDER BY instance_id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM job_instances WHERE job_name = ? ORDER BY instance_id",
                    (job_name,),
                ).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def create_execution(self, instance: JobInstance, parameters: JobParameters) -> JobExecution:
        with self._write() as conn:
            row = conn.execute(
                "SELECT snapshot FROM job_executions WHERE instance_id = ? "
                "ORDER BY execution_id DESC LIMIT 1",
                (instance.instance_id,),
            ).fetchone()
            latest = JobExecution.from_dict(json.loads(row["snapshot"])) if row else None
            check_can_start(instance, latest)

            execution = JobExecution(
                execution_id=0,
                instance_id=instance.instance_id,
                job_name=instance.job_name,
                parameters=parameters,
            )
            cursor = conn.execute(
                "INSERT INTO job_executions (instance_id, job_name, status, started_at, snapshot) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    instance.instance_id,
                    instance.job_name,
                    execution.status.value,
                    execution.started_at.isoformat(),
                    "{}",
                ),
            )
            execution.execution_id = cursor.lastrowid
            self._append(conn, execution, instance.identity_key, TransitionKind.JOB_STARTED, None, None)
        return execution

    def update_execution(self, execution: JobExecution) -> None:
        with self._write() as conn:
            self._store_snapshot(conn, execution)

    def get_execution(self, execution_id: int) -> Optional[JobExecution]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT snapshot FROM job_executions WHERE execution_id = ?", (execution_id,)
            ).fetchone()
        return JobExecution.from_dict(json.loads(row["snapshot"])) if row else None

    def list_executions(
        self,
        instance: Optional[JobInstance] = None,
        job_name: Optional[str] = None,
    ) -> list[JobExecution]:
        sql = "SELECT snapshot FROM job_executions"
        clauses, args = [], []
        if instance is not None:
            clauses.append("instance_id = ?")
            args.append(instance.instance_id)
        if job_name is not None:
            clauses.append("job_name = ?")
            args.append(job_name)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY execution_id"
        with self._connect() as conn:
            rows = conn.execute(sql, args).fetchall()
        return [JobExecution.from_dict(json.loads(r["snapshot"])) for r in rows]

    def record_transition(
        self,
        execution: JobExecution,
        kind: TransitionKind,
        step_execution: Optional[StepExecution] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Transition:
        with self._write() as conn:
            row = conn.execute(
                "SELECT identity_key FROM job_instances WHERE instance_id = ?",
                (execution.instance_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown instance {execution.instance_id}")
            return self._append(conn, execution, row["identity_key"], kind, step_execution, payload)

    def list_transitions(self, execution_id: Optional[int] = None) -> list[Transition]:
        with self._connect() as conn:
            if execution_id is None:
                rows = conn.execute("SELECT * FROM transitions ORDER BY seq").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM transitions WHERE execution_id = ? ORDER BY seq",
                    (execution_id,),
                ).fetchall()
        return [self._row_to_transition(r) for r in rows]

    def _store_snapshot(self, conn: sqlite3.Connection, execution: JobExecution) -> None:
        conn.execute(
            "UPDATE job_executions SET status = ?, ended_at = ?, snapshot = ? WHERE execution_id = ?",
            (
                execution.status.value,
                execution.ended_at.isoformat() if execution.ended_at else None,
                json.dumps(execution.to_dict()),
                execution.execution_id,
            ),
        )

    def _append(
        self,
        conn: sqlite3.Connection,
        execution: JobExecution,
        identity_key: str,
        kind: TransitionKind,
        step_execution: Optional[StepExecution],
        payload: Optional[dict[str, Any]],
    ) -> Transition:
        status = step_execution.status if step_execution else execution.status
        step_name = step_execution.step_name if step_execution else None
        position = step_execution.position if step_execution else None
        recorded_at = _utcnow()
        cursor = conn.execute(
            "INSERT INTO transitions "
            "(job_name, identity_key, execution_id, kind, status, step_name, position, payload, recorded_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                execution.job_name,
                identity_key,
                execution.execution_id,
                kind.value,
                status.value,
                step_name,
                position,
                json.dumps(payload) if payload else None,
                recorded_at.isoformat(),
            ),
        )
        self._store_snapshot(conn, execution)
        return Transition(
            seq=cursor.lastrowid,
            job_name=execution.job_name,
            identity_key=identity_key,
            execution_id=execution.execution_id,
            kind=kind,
            status=status,
            step_name=step_name,
            position=position,
            payload=dict(payload or {}),
            recorded_at=recorded_at,
        )
