"""Tests for the Step Orchestrator.

Tests cover:
- Chunk boundaries and chunk_committed transitions
- Read/process/write skips and the skip limit
- Retry of transient write failures with backoff
- Whole-chunk rollback (no partial rows)
- Step checkpoints committed with each chunk
- Stop at chunk boundaries
- Action (tasklet) steps
"""

from unittest.mock import MagicMock

import pytest

from conftest import count_rows, start_execution

from chunkbatch.errors import ConnectionLost, InvalidRecord, MalformedRecord
from chunkbatch.processors import ValidatingProcessor
from chunkbatch.readers import DelimitedFileReader, IterableReader
from chunkbatch.records import Person, validate_person
from chunkbatch.schemas import BatchStatus, StepExecution, TransitionKind
from chunkbatch.step import (
    ActionBehavior,
    ChunkBehavior,
    StepContext,
    StepDefinition,
    StepRunner,
)
from chunkbatch.transactions import ResourcelessTransactionManager, SqliteTransactionManager
from chunkbatch.writers import ListWriter, SqlBatchWriter

INSERT_PERSON = "INSERT INTO person (id, name, email, age) VALUES (:id, :name, :email, :age)"


# =============================================================================
# FIXTURES
# =============================================================================


class FlakyWriter:
    """Delegates to a ListWriter but loses the connection on the first `failures` writes."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0
        self.delegate = ListWriter()

    @property
    def items(self):
        return self.delegate.items

    def write(self, items, transaction):
        self.calls += 1
        self.delegate.write(items, transaction)
        if self.failures:
            self.failures -= 1
            raise ConnectionLost("connection reset")


def person_reader(path):
    return DelimitedFileReader(
        path,
        names=["name", "email", "age", "id"],
        comments=("--",),
        record_factory=Person.from_fields,
    )


@pytest.fixture
def make_context(tracker):
    """Factory: a fresh StepContext for a step starting at `position`."""
    def _make(step_name: str = "load", position: int = 0, stop_requested=None):
        _, execution = start_execution(tracker)
        step_execution = StepExecution(
            step_name=step_name,
            execution_id=execution.execution_id,
            position=position,
            start_position=position,
        )
        execution.step_executions.append(step_execution)
        return StepContext(
            job_execution=execution,
            step_execution=step_execution,
            parameters=execution.parameters,
            tracker=tracker,
            stop_requested=stop_requested or (lambda: False),
        )
    return _make


def chunk_commits(tracker, execution_id):
    return [
        t for t in tracker.list_transitions(execution_id)
        if t.kind == TransitionKind.CHUNK_COMMITTED
    ]


def sql_step(path, target_db, **kwargs) -> StepDefinition:
    return StepDefinition(
        name="load",
        behavior=ChunkBehavior(
            reader=person_reader(path),
            processor=ValidatingProcessor(validate_person),
            writer=SqlBatchWriter(INSERT_PERSON),
            transaction_manager=SqliteTransactionManager(target_db),
        ),
        **kwargs,
    )


# =============================================================================
# CHUNKING
# =============================================================================


class TestChunking:
    """Tests for chunk boundaries."""

    def test_450_records_in_chunks_of_200(self, people_file, target_db, make_context, tracker):
        """450 records, chunk size 200: three commits, all rows written."""
        context = make_context()
        step = sql_step(people_file(450), target_db, chunk_size=200)

        result = StepRunner().run_step(step, context)

        assert result.status == BatchStatus.COMPLETED
        assert result.read_count == 450
        assert result.write_count == 450
        assert result.commit_count == 3
        assert result.skip_count == 0
        assert result.position == 450
        assert count_rows(target_db) == 450

        commits = chunk_commits(tracker, context.job_execution.execution_id)
        assert [t.position for t in commits] == [200, 400, 450]
        assert [t.payload["items"] for t in commits] == [200, 200, 50]

    def test_step_transitions_bracket_chunks(self, people_file, target_db, make_context, tracker):
        context = make_context()
        StepRunner().run_step(sql_step(people_file(5), target_db, chunk_size=2), context)

        kinds = [t.kind for t in tracker.list_transitions(context.job_execution.execution_id)]
        assert kinds == [
            TransitionKind.JOB_STARTED,
            TransitionKind.STEP_STARTED,
            TransitionKind.CHUNK_COMMITTED,
            TransitionKind.CHUNK_COMMITTED,
            TransitionKind.CHUNK_COMMITTED,
            TransitionKind.STEP_FINISHED,
        ]
        stored = tracker.get_execution(context.job_execution.execution_id)
        assert stored.get_step_execution("load").status == BatchStatus.COMPLETED

    def test_exact_multiple_of_chunk_size(self, make_context, tracker):
        context = make_context()
        writer = ListWriter()
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(IterableReader(range(4)), writer, ResourcelessTransactionManager()),
            chunk_size=2,
        )
        result = StepRunner().run_step(step, context)

        assert result.status == BatchStatus.COMPLETED
        assert writer.items == [0, 1, 2, 3]
        assert result.commit_count == 2
        assert len(chunk_commits(tracker, context.job_execution.execution_id)) == 2

    def test_empty_input(self, make_context):
        writer = ListWriter()
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(IterableReader([]), writer, ResourcelessTransactionManager()),
        )
        result = StepRunner().run_step(step, make_context())
        assert result.status == BatchStatus.COMPLETED
        assert result.commit_count == 0
        assert writer.items == []

    def test_resumes_from_position(self, people_file, target_db, make_context):
        context = make_context(position=400)
        result = StepRunner().run_step(sql_step(people_file(450), target_db), context)

        assert result.status == BatchStatus.COMPLETED
        assert result.read_count == 50
        assert result.start_position == 400
        assert result.position == 450
        assert count_rows(target_db) == 50

    def test_filtered_items_are_not_written(self, make_context):
        writer = ListWriter()
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(
                reader=IterableReader(range(10)),
                processor=lambda n: n if n % 2 == 0 else None,
                writer=writer,
                transaction_manager=ResourcelessTransactionManager(),
            ),
            chunk_size=4,
        )
        result = StepRunner().run_step(step, make_context())

        assert writer.items == [0, 2, 4, 6, 8]
        assert result.filter_count == 5
        assert result.skip_count == 0
        assert result.write_count == 5


# =============================================================================
# SKIPS
# =============================================================================


class TestSkips:
    """Tests for the skip policy."""

    def test_malformed_record_301_is_skipped(self, people_file, target_db, make_context, tracker):
        """Record 301 malformed with skip limit 1: 449 written, one skip."""
        context = make_context()
        step = sql_step(people_file(450, malformed=(301,)), target_db, chunk_size=200, skip_limit=1)

        result = StepRunner().run_step(step, context)

        assert result.status == BatchStatus.COMPLETED
        assert result.write_count == 449
        assert result.read_skip_count == 1
        assert result.skip_count == 1
        assert result.commit_count == 3
        assert count_rows(target_db) == 449
        assert len(chunk_commits(tracker, context.job_execution.execution_id)) == 3

    def test_undecodable_line_is_skipped(self, tmp_path, target_db, make_context):
        path = tmp_path / "people.csv"
        path.write_bytes(b"A,a@x.com,30,\n\xff\xfe,b@x.com,31,\nC,c@x.com,32,\n")

        result = StepRunner().run_step(sql_step(path, target_db, skip_limit=5), make_context())

        assert result.status == BatchStatus.COMPLETED
        assert result.read_skip_count == 1
        assert result.write_count == 2
        assert result.position == 3
        assert count_rows(target_db) == 2

    def test_skip_limit_exceeded_fails_step(self, people_file, target_db, make_context):
        context = make_context()
        step = sql_step(people_file(450, malformed=(301,)), target_db, chunk_size=200, skip_limit=0)

        result = StepRunner().run_step(step, context)

        assert result.status == BatchStatus.FAILED
        assert result.failures[-1]["type"] == "SkipLimitExceeded"
        # Chunk 1 committed before the skip; the failing chunk never wrote
        assert count_rows(target_db) == 200
        assert result.position == 200
        assert result.commit_count == 1

    def test_process_skips_count_against_limit(self, make_context):
        def reject_odd(n):
            if n % 2:
                raise InvalidRecord(f"odd: {n}")
            return n

        writer = ListWriter()
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(
                IterableReader(range(6)), writer, ResourcelessTransactionManager(), processor=reject_odd
            ),
            skip_limit=3,
        )
        result = StepRunner().run_step(step, make_context())

        assert result.status == BatchStatus.COMPLETED
        assert result.process_skip_count == 3
        assert writer.items == [0, 2, 4]

    def test_mixed_skips_share_the_limit(self, make_context):
        def reject_three(n):
            if n == 3:
                raise InvalidRecord("three")
            return n

        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(
                IterableReader([1, MalformedRecord("bad"), 3, 4]),
                ListWriter(),
                ResourcelessTransactionManager(),
                processor=reject_three,
            ),
            skip_limit=1,
        )
        result = StepRunner().run_step(step, make_context())

        assert result.status == BatchStatus.FAILED
        assert result.read_skip_count == 1
        assert result.process_skip_count == 1

    def test_skipped_items_do_not_fill_the_chunk(self, make_context):
        writer = ListWriter()
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(
                IterableReader([1, MalformedRecord("bad"), 2, 3]), writer, ResourcelessTransactionManager()
            ),
            chunk_size=2,
            skip_limit=1,
        )
        result = StepRunner().run_step(step, make_context())

        assert result.commit_count == 2
        assert writer.items == [1, 2, 3]
        assert result.position == 4

    def test_write_rejection_fails_without_scan(self, people_file, target_db, make_context):
        # Ids 6 and 8 collide: the second chunk is rejected and rolled back whole
        path = people_file(10, with_ids=True)
        path.write_text(path.read_text().replace(",8\n", ",6\n"))
        context = make_context()

        result = StepRunner().run_step(sql_step(path, target_db, chunk_size=5), context)

        assert result.status == BatchStatus.FAILED
        assert result.failures[-1]["type"] == "WriteRejected"
        assert result.rollback_count == 1
        assert count_rows(target_db) == 5
        assert result.position == 5

    def test_write_rejection_scan_mode(self, people_file, target_db, make_context):
        path = people_file(10, with_ids=True)
        path.write_text(path.read_text().replace(",8\n", ",6\n"))
        step = sql_step(path, target_db, chunk_size=5, skip_limit=1, skip_write_rejections=True)

        result = StepRunner().run_step(step, make_context())

        assert result.status == BatchStatus.COMPLETED
        assert result.write_skip_count == 1
        assert result.write_count == 9
        assert count_rows(target_db) == 9


# =============================================================================
# RETRY AND ROLLBACK
# =============================================================================


class TestRetry:
    """Tests for transient failure handling."""

    def test_connection_lost_retried(self, make_context):
        sleep = MagicMock()
        writer = FlakyWriter(failures=2)
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(IterableReader(range(3)), writer, ResourcelessTransactionManager()),
            retry_limit=2,
            backoff_seconds=0.5,
            backoff_multiplier=2.0,
        )
        result = StepRunner(sleep=sleep).run_step(step, make_context())

        assert result.status == BatchStatus.COMPLETED
        assert writer.items == [0, 1, 2]
        assert writer.calls == 3
        assert result.retry_count == 2
        assert result.rollback_count == 2
        assert result.commit_count == 1
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_retries_exhausted_fail_step(self, make_context):
        writer = FlakyWriter(failures=5)
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(IterableReader(range(3)), writer, ResourcelessTransactionManager()),
            retry_limit=2,
        )
        result = StepRunner(sleep=MagicMock()).run_step(step, make_context())

        assert result.status == BatchStatus.FAILED
        assert result.failures[-1]["type"] == "ConnectionLost"
        assert writer.items == []
        assert result.rollback_count == 3
        assert result.position == 0

    def test_no_retry_by_default(self, make_context):
        writer = FlakyWriter(failures=1)
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(IterableReader(range(3)), writer, ResourcelessTransactionManager()),
        )
        result = StepRunner(sleep=MagicMock()).run_step(step, make_context())
        assert result.status == BatchStatus.FAILED
        assert writer.calls == 1

    def test_unexpected_error_rolls_back_whole_chunk(self, people_file, target_db, make_context):
        class ExplodingWriter(SqlBatchWriter):
            def write(self, items, transaction):
                super().write(items, transaction)
                raise RuntimeError("disk on fire")

        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(
                person_reader(people_file(10)),
                ExplodingWriter(INSERT_PERSON),
                SqliteTransactionManager(target_db),
            ),
            chunk_size=4,
            retry_limit=3,
        )
        result = StepRunner(sleep=MagicMock()).run_step(step, make_context())

        assert result.status == BatchStatus.FAILED
        assert result.failures == [{"type": "RuntimeError", "message": "disk on fire"}]
        assert result.retry_count == 0
        assert count_rows(target_db) == 0


class TestCheckpoints:
    """Tests for the step checkpoint committed with each chunk."""

    def test_chunk_commit_saves_checkpoint(self, people_file, target_db, make_context):
        context = make_context()
        step = sql_step(people_file(450), target_db, chunk_size=200)

        StepRunner().run_step(step, context)

        manager = step.behavior.transaction_manager
        assert manager.load_checkpoint(context.checkpoint_key("load")) == 450

    def test_rolled_back_chunk_leaves_no_checkpoint(self, people_file, target_db, make_context):
        class ExplodingWriter(SqlBatchWriter):
            def write(self, items, transaction):
                super().write(items, transaction)
                raise RuntimeError("disk on fire")

        context = make_context()
        manager = SqliteTransactionManager(target_db)
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(person_reader(people_file(10)), ExplodingWriter(INSERT_PERSON), manager),
        )
        StepRunner().run_step(step, context)

        assert manager.load_checkpoint(context.checkpoint_key("load")) is None

    def test_resume_uses_later_store_checkpoint(self, people_file, target_db, make_context):
        """The store committed through 400 but the tracker only saw 200."""
        context = make_context(position=200)
        context.resuming = True
        with SqliteTransactionManager(target_db).begin() as transaction:
            transaction.save_checkpoint(context.checkpoint_key("load"), 400)

        result = StepRunner().run_step(sql_step(people_file(450), target_db), context)

        assert result.status == BatchStatus.COMPLETED
        assert result.start_position == 400
        assert result.read_count == 50
        assert count_rows(target_db) == 50

    def test_first_run_ignores_stale_checkpoint(self, people_file, target_db, make_context):
        context = make_context()
        with SqliteTransactionManager(target_db).begin() as transaction:
            transaction.save_checkpoint(context.checkpoint_key("load"), 400)

        result = StepRunner().run_step(sql_step(people_file(450), target_db), context)

        assert result.start_position == 0
        assert result.read_count == 450

    def test_reader_closed_when_open_fails(self, make_context):
        class UnopenableReader(IterableReader):
            closed = False

            def open(self, position=0):
                raise OSError("disk gone")

            def close(self):
                self.closed = True

        reader = UnopenableReader([])
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(reader, ListWriter(), ResourcelessTransactionManager()),
        )
        result = StepRunner().run_step(step, make_context())

        assert result.status == BatchStatus.FAILED
        assert result.failures[-1]["type"] == "OSError"
        assert reader.closed


# =============================================================================
# STOP AND ACTIONS
# =============================================================================


class TestStop:
    """Tests for stop requests."""

    def test_stop_at_chunk_boundary(self, make_context, tracker):
        writer = ListWriter()
        commits = []

        def stop_requested():
            return len(commits) >= 1

        context = make_context(stop_requested=stop_requested)
        original_write = writer.write

        def recording_write(items, transaction):
            original_write(items, transaction)
            transaction.after_commit(lambda: commits.append(len(items)))

        writer.write = recording_write
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(IterableReader(range(10)), writer, ResourcelessTransactionManager()),
            chunk_size=3,
        )
        result = StepRunner().run_step(step, context)

        assert result.status == BatchStatus.STOPPED
        assert writer.items == [0, 1, 2]
        assert result.position == 3
        stored = tracker.get_execution(context.job_execution.execution_id)
        assert stored.get_step_execution("load").status == BatchStatus.STOPPED

    def test_stop_before_first_chunk(self, make_context):
        writer = ListWriter()
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(IterableReader(range(10)), writer, ResourcelessTransactionManager()),
        )
        result = StepRunner().run_step(step, make_context(stop_requested=lambda: True))
        assert result.status == BatchStatus.STOPPED
        assert writer.items == []


class TestActionSteps:
    """Tests for action (tasklet) steps."""

    def test_action_runs_once(self, make_context):
        action = MagicMock(return_value=None)
        context = make_context(step_name="hello")
        result = StepRunner().run_step(StepDefinition("hello", ActionBehavior(action)), context)

        action.assert_called_once_with(context)
        assert result.status == BatchStatus.COMPLETED
        assert result.exit_code == "COMPLETED"
        assert result.commit_count == 1

    def test_action_exit_code(self, make_context):
        result = StepRunner().run_step(
            StepDefinition("hello", ActionBehavior(lambda ctx: "NOOP")),
            make_context(step_name="hello"),
        )
        assert result.exit_code == "NOOP"

    def test_action_failure_rolls_back(self, make_context):
        def failing(ctx):
            raise ValueError("nope")

        result = StepRunner().run_step(
            StepDefinition("hello", ActionBehavior(failing)),
            make_context(step_name="hello"),
        )
        assert result.status == BatchStatus.FAILED
        assert result.rollback_count == 1
        assert result.failures[-1]["message"] == "nope"

    def test_source_unavailable_fails_step(self, tmp_path, make_context):
        step = StepDefinition(
            name="load",
            behavior=ChunkBehavior(
                person_reader(tmp_path / "missing.csv"), ListWriter(), ResourcelessTransactionManager()
            ),
        )
        result = StepRunner().run_step(step, make_context())
        assert result.status == BatchStatus.FAILED
        assert result.failures[-1]["type"] == "SourceUnavailable"


class TestStepDefinition:
    """Tests for StepDefinition validation."""

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError, match="chunk_size"):
            StepDefinition("x", ActionBehavior(lambda ctx: None), chunk_size=0)

    def test_limits_must_be_non_negative(self):
        with pytest.raises(ValueError):
            StepDefinition("x", ActionBehavior(lambda ctx: None), skip_limit=-1)
