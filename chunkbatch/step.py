"""
Step Orchestrator - drives one step of a job execution.

A step is either chunk-oriented or a single action:

    StepBehavior = ChunkBehavior(reader, processor, writer, transaction_manager)
                 | ActionBehavior(action, transaction_manager)

Chunk-oriented execution flow:
1. Open the reader at the resume position (0 on a first run)
2. Read up to chunk_size items, running the processor on each
   - MalformedRecord from reader or processor -> skip (bounded by skip_limit)
   - processor returns None -> filtered
3. Write the chunk and the step checkpoint inside one transaction and
   commit it
   - TransientError (ConnectionLost) -> roll back, retry the chunk with backoff
   - WriteRejected -> roll back; fail, or scan item by item when
     skip_write_rejections is set
4. Record a chunk_committed transition carrying the reader position
5. Check for a stop request, then repeat until input is exhausted

A failed chunk is always rolled back as a whole; the step's position only
advances after a commit, so a restart resumes at the first uncommitted
chunk. When the process dies after a chunk commit but before the tracker
records it, a resuming step takes the later position from the store's
checkpoint instead.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Union

from chunkbatch.errors import (
    MalformedRecord,
    SkipLimitExceeded,
    TransientError,
    WriteRejected,
)
from chunkbatch.processors import ItemProcessor
from chunkbatch.readers import END_OF_INPUT, ItemReader
from chunkbatch.schemas import (
    BatchStatus,
    JobExecution,
    JobParameters,
    StepExecution,
    TransitionKind,
)
from chunkbatch.tracker import ExecutionTracker
from chunkbatch.transactions import ResourcelessTransactionManager, TransactionManager
from chunkbatch.utils import retry_with_backoff
from chunkbatch.writers import ItemWriter

logger = logging.getLogger(__name__)

# (checkpoint key, reader position after the chunk)
Checkpoint = tuple[str, int]


@dataclass
class StepContext:
    """
    Runtime context handed to a step.

    Attributes:
        job_execution: The owning JobExecution
        step_execution: The StepExecution being driven
        parameters: Job parameters of the run
        tracker: Execution tracker used to record progress
        stop_requested: Returns True once a stop was requested
        resuming: An earlier execution of the same instance ran this step
    """
    job_execution: JobExecution
    step_execution: StepExecution
    parameters: JobParameters
    tracker: ExecutionTracker
    stop_requested: Callable[[], bool] = lambda: False
    resuming: bool = False

    def checkpoint_key(self, step_name: str) -> str:
        """Key of this step's checkpoint in the target store (stable across restarts)."""
        execution = self.job_execution
        return (
            f"{execution.job_name}:{execution.instance_id}:"
            f"{execution.parameters.identity_key()}:{step_name}"
        )


@dataclass(frozen=True)
class ChunkBehavior:
    """Reader -> processor -> writer, committed chunk by chunk."""
    reader: ItemReader
    writer: ItemWriter
    transaction_manager: TransactionManager
    processor: Optional[ItemProcessor] = None


@dataclass(frozen=True)
class ActionBehavior:
    """
    Single action run once inside one transaction.

    The action receives the StepContext and may return an exit code.
    """
    action: Callable[[StepContext], Optional[str]]
    transaction_manager: TransactionManager = field(default_factory=ResourcelessTransactionManager)


StepBehavior = Union[ChunkBehavior, ActionBehavior]


@dataclass(frozen=True)
class StepDefinition:
    """
    A runnable step.

    Attributes:
        name: Step name (unique within the job)
        behavior: ChunkBehavior or ActionBehavior
        chunk_size: Items read per chunk
        skip_limit: Maximum skipped items before the step fails
        retry_limit: Maximum retries of a chunk after transient write failures
        backoff_seconds: Delay before the first retry
        backoff_multiplier: Delay multiplier for each further retry
        skip_write_rejections: Rewrite rejected chunks item by item, skipping
            the items the store rejects
    """
    name: str
    behavior: StepBehavior
    chunk_size: int = 200
    skip_limit: int = 0
    retry_limit: int = 0
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 2.0
    skip_write_rejections: bool = False

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError(f"Step '{self.name}': chunk_size must be >= 1")
        if self.skip_limit < 0 or self.retry_limit < 0:
            raise ValueError(f"Step '{self.name}': skip_limit and retry_limit must be >= 0")
        if self.backoff_seconds < 0:
            raise ValueError(f"Step '{self.name}': backoff_seconds must be >= 0")


class StepRunner:
    """
    Executes StepDefinitions and records their progress.

    Usage:
        runner = StepRunner()
        step_execution = runner.run_step(step_def, context)
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    def run_step(self, step_def: StepDefinition, context: StepContext) -> StepExecution:
        """
        Run one step to a terminal state.

        Errors are caught at this boundary and recorded on the
        StepExecution; the returned status is COMPLETED, FAILED or STOPPED.
        """
        step_execution = context.step_execution
        tracker = context.tracker
        log_extra = {
            "job": context.job_execution.job_name,
            "step": step_def.name,
            "execution_id": context.job_execution.execution_id,
        }

        tracker.record_transition(context.job_execution, TransitionKind.STEP_STARTED, step_execution)
        logger.info(f"Step {step_def.name} started", extra=log_extra)

        try:
            behavior = step_def.behavior
            if isinstance(behavior, ChunkBehavior):
                self._run_chunks(step_def, behavior, context)
            elif isinstance(behavior, ActionBehavior):
                self._run_action(step_def, behavior, context)
            else:
                raise TypeError(f"Unknown step behavior: {type(behavior).__name__}")
        except Exception as e:
            logger.error(f"Step {step_def.name} failed: {e}", exc_info=True, extra=log_extra)
            step_execution.add_failure(e)
            step_execution.finish(BatchStatus.FAILED)

        tracker.record_transition(context.job_execution, TransitionKind.STEP_FINISHED, step_execution)
        logger.info(
            f"Step {step_def.name} {step_execution.status.value}: "
            f"read={step_execution.read_count} written={step_execution.write_count} "
            f"skipped={step_execution.skip_count} filtered={step_execution.filter_count} "
            f"commits={step_execution.commit_count} rollbacks={step_execution.rollback_count}",
            extra=log_extra,
        )
        return step_execution

    # =========================================================================
    # Chunk-oriented steps
    # =========================================================================

    def _run_chunks(self, step_def: StepDefinition, behavior: ChunkBehavior, context: StepContext) -> None:
        step_execution = context.step_execution
        reader = behavior.reader
        checkpoint_key = context.checkpoint_key(step_def.name)
        if context.resuming:
            self._resume_from_checkpoint(step_def, behavior, step_execution, checkpoint_key)

        try:
            reader.open(step_execution.start_position)
            step_execution.position = reader.position
            chunk_number = 0
            while True:
                if context.stop_requested():
                    logger.info(f"Step {step_def.name} stopping at position {step_execution.position}")
                    step_execution.finish(BatchStatus.STOPPED)
                    return

                items, consumed, exhausted = self._read_chunk(step_def, behavior, step_execution)
                if consumed == 0 and exhausted:
                    break

                chunk_number += 1
                checkpoint = (checkpoint_key, reader.position)
                self._write_chunk(step_def, behavior, step_execution, items, checkpoint)
                step_execution.position = reader.position
                context.tracker.record_transition(
                    context.job_execution,
                    TransitionKind.CHUNK_COMMITTED,
                    step_execution,
                    payload={"chunk": chunk_number, "items": len(items)},
                )
                logger.info(
                    f"Step {step_def.name} committed chunk {chunk_number} "
                    f"({len(items)} items, position {step_execution.position})",
                    extra={"step": step_def.name, "chunk": chunk_number, "position": step_execution.position},
                )
                if exhausted:
                    break
        finally:
            reader.close()

        step_execution.finish(BatchStatus.COMPLETED)

    def _resume_from_checkpoint(
        self,
        step_def: StepDefinition,
        behavior: ChunkBehavior,
        step_execution: StepExecution,
        checkpoint_key: str,
    ) -> None:
        """Move the resume position forward when the store committed a chunk the tracker missed."""
        saved = behavior.transaction_manager.load_checkpoint(checkpoint_key)
        if saved is None or saved <= step_execution.start_position:
            return
        logger.warning(
            f"Step {step_def.name}: store holds chunks through position {saved} but the "
            f"tracker recorded {step_execution.start_position}; resuming at {saved}"
        )
        step_execution.start_position = saved
        step_execution.position = saved

    def _read_chunk(
        self,
        step_def: StepDefinition,
        behavior: ChunkBehavior,
        step_execution: StepExecution,
    ) -> tuple[list[Any], int, bool]:
        """
        Read and process one chunk.

        Returns:
            Tuple of (items to write, source records consumed, input exhausted)
        """
        items: list[Any] = []
        read_in_chunk = 0
        consumed = 0
        exhausted = False

        while read_in_chunk < step_def.chunk_size:
            try:
                item = behavior.reader.read()
            except MalformedRecord as e:
                consumed += 1
                step_execution.read_skip_count += 1
                self._on_skip(step_def, step_execution, e, "read")
                continue

            if item is END_OF_INPUT:
                exhausted = True
                break

            consumed += 1
            read_in_chunk += 1
            step_execution.read_count += 1

            if behavior.processor is None:
                items.append(item)
                continue

            try:
                processed = behavior.processor(item)
            except MalformedRecord as e:
                step_execution.process_skip_count += 1
                self._on_skip(step_def, step_execution, e, "process")
                continue

            if processed is None:
                step_execution.filter_count += 1
            else:
                items.append(processed)

        return items, consumed, exhausted

    def _on_skip(
        self,
        step_def: StepDefinition,
        step_execution: StepExecution,
        error: BaseException,
        phase: str,
    ) -> None:
        if step_execution.skip_count > step_def.skip_limit:
            raise SkipLimitExceeded(step_def.name, step_def.skip_limit, error) from error
        logger.warning(
            f"Step {step_def.name} skipped item at {phase} "
            f"({step_execution.skip_count}/{step_def.skip_limit}): {error}"
        )

    def _write_chunk(
        self,
        step_def: StepDefinition,
        behavior: ChunkBehavior,
        step_execution: StepExecution,
        items: Sequence[Any],
        checkpoint: Checkpoint,
    ) -> None:
        try:
            self._write_with_retry(step_def, behavior, step_execution, items, checkpoint)
        except WriteRejected as e:
            if not step_def.skip_write_rejections:
                raise
            logger.warning(f"Step {step_def.name}: chunk rejected ({e}); rewriting item by item")
            self._scan_chunk(step_def, behavior, step_execution, items, checkpoint)
            return
        step_execution.write_count += len(items)

    def _scan_chunk(
        self,
        step_def: StepDefinition,
        behavior: ChunkBehavior,
        step_execution: StepExecution,
        items: Sequence[Any],
        checkpoint: Checkpoint,
    ) -> None:
        """Write a rejected chunk one item per transaction, skipping rejected items.

        The checkpoint is saved once every item has been written or skipped,
        so a crash in the middle of a scan replays the whole chunk.
        """
        for item in items:
            try:
                self._write_with_retry(step_def, behavior, step_execution, [item])
            except WriteRejected as e:
                step_execution.write_skip_count += 1
                self._on_skip(step_def, step_execution, e, "write")
                continue
            step_execution.write_count += 1
        self._write_with_retry(step_def, behavior, step_execution, [], checkpoint)

    def _write_with_retry(
        self,
        step_def: StepDefinition,
        behavior: ChunkBehavior,
        step_execution: StepExecution,
        items: Sequence[Any],
        checkpoint: Optional[Checkpoint] = None,
    ) -> None:
        def on_retry(attempt: int, error: BaseException) -> None:
            step_execution.retry_count += 1

        retry_with_backoff(
            lambda: self._write_items(behavior, step_execution, items, checkpoint),
            retry_on=(TransientError,),
            max_retries=step_def.retry_limit,
            backoff_seconds=step_def.backoff_seconds,
            backoff_multiplier=step_def.backoff_multiplier,
            logger=logger,
            on_retry=on_retry,
            sleep=self._sleep,
        )

    def _write_items(
        self,
        behavior: ChunkBehavior,
        step_execution: StepExecution,
        items: Sequence[Any],
        checkpoint: Optional[Checkpoint] = None,
    ) -> None:
        """One transaction: the items and the checkpoint, everything or nothing."""
        transaction = behavior.transaction_manager.begin()
        try:
            if items:
                behavior.writer.write(items, transaction)
            if checkpoint is not None:
                transaction.save_checkpoint(*checkpoint)
            transaction.commit()
        except BaseException:
            transaction.rollback()
            step_execution.rollback_count += 1
            raise
        step_execution.commit_count += 1

    # =========================================================================
    # Action steps
    # =========================================================================

    def _run_action(self, step_def: StepDefinition, behavior: ActionBehavior, context: StepContext) -> None:
        step_execution = context.step_execution
        if context.stop_requested():
            step_execution.finish(BatchStatus.STOPPED)
            return

        transaction = behavior.transaction_manager.begin()
        try:
            exit_code = behavior.action(context)
            transaction.commit()
        except BaseException:
            transaction.rollback()
            step_execution.rollback_count += 1
            raise
        step_execution.commit_count += 1
        step_execution.finish(BatchStatus.COMPLETED, exit_code)
