import sqlite3
from pathlib import Path
from typing import Optional

import pytest

from chunkbatch.assembly import ensure_person_table
from chunkbatch.config import BatchConfig
from chunkbatch.schemas import JobParameters
from chunkbatch.tracker import InMemoryExecutionTracker


@pytest.fixture
def batch_config(tmp_path) -> BatchConfig:
    return BatchConfig(
        tracker_path=str(tmp_path / "executions.db"),
        target_database=str(tmp_path / "target.db"),
        default_backoff_seconds=0.0,
    )


@pytest.fixture
def target_db(batch_config) -> Path:
    """Target store with an empty person table."""
    ensure_person_table(batch_config.target_database)
    return Path(batch_config.target_database)


@pytest.fixture
def tracker() -> InMemoryExecutionTracker:
    return InMemoryExecutionTracker()


def write_people(
    path: Path,
    count: int,
    malformed: tuple[int, ...] = (),
    header_comment: bool = True,
    with_ids: bool = False,
) -> Path:
    """Write `count` person rows; rows listed in `malformed` (1-indexed) get a bad age."""
    lines = []
    if header_comment:
        lines.append("-- name,email,age,id")
    for n in range(1, count + 1):
        age = "not-a-number" if n in malformed else str(20 + n % 50)
        person_id = str(n) if with_ids else ""
        lines.append(f"Person {n},person{n}@example.com,{age},{person_id}")
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def people_file(tmp_path):
    """Factory fixture: people_file(count, malformed=(...)) -> path."""
    def _make(count: int, malformed: tuple[int, ...] = (), name: str = "people.csv", **kwargs) -> Path:
        return write_people(tmp_path / name, count, malformed=malformed, **kwargs)
    return _make


def count_rows(database: Path, table: str = "person") -> int:
    conn = sqlite3.connect(str(database))
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


def start_execution(tracker, job_name: str = "test_job", parameters: Optional[JobParameters] = None):
    """Create an instance and a STARTED execution for step-level tests."""
    parameters = parameters or JobParameters({"run": "1"})
    instance = tracker.create_instance(job_name, parameters)
    return instance, tracker.create_execution(instance, parameters)
