"""
Job Orchestrator - runs job definitions as tracked executions.

Execution flow for run_job():
1. Look up the JobDef and validate the parameters against its schema
2. Apply the incrementer (if any) to derive a fresh run identity
3. Under the instance lock: find or create the JobInstance, refuse duplicate
   or concurrent runs, create a STARTED JobExecution
4. Run the steps in order, skipping steps that already COMPLETED in an
   earlier execution of the instance and resuming the others from their
   last committed position
5. Stop at the first step that does not complete; record job_finished

Start errors (DuplicateCompletedRun, JobExecutionAlreadyRunning,
JobRestartError, JobParametersInvalid) are raised to the caller before any
step runs. Step failures never raise: they are recorded and reflected in
the returned execution's status.
"""

import logging
import threading
from typing import Any, Mapping, Optional, Protocol, Union

from chunkbatch.errors import (
    DuplicateCompletedRun,
    ExecutionNotFoundError,
    JobRestartError,
)
from chunkbatch.registry import JobRegistry
from chunkbatch.schemas import (
    BatchStatus,
    JobDef,
    JobExecution,
    JobInstance,
    JobParameter,
    JobParameters,
    ParameterType,
    StepDef,
    StepExecution,
    TransitionKind,
)
from chunkbatch.step import StepContext, StepDefinition, StepRunner
from chunkbatch.tracker import ExecutionTracker, check_can_start

logger = logging.getLogger(__name__)

RUN_ID_PARAMETER = "run.id"


class StepBuilder(Protocol):
    """Turns a declarative StepDef into a runnable StepDefinition."""

    def build(self, step_def: StepDef, parameters: JobParameters) -> StepDefinition:
        ...


class RunIdIncrementer:
    """
    Adds an identifying `run.id` one higher than any seen for the job.

    Every run therefore gets a new JobInstance.
    """

    def next_parameters(
        self,
        parameters: JobParameters,
        tracker: ExecutionTracker,
        job_name: str,
    ) -> JobParameters:
        highest = 0
        for instance in tracker.list_instances(job_name):
            run_id = instance.parameters.value(RUN_ID_PARAMETER)
            if isinstance(run_id, int) and run_id > highest:
                highest = run_id
        return parameters.with_parameter(
            RUN_ID_PARAMETER, JobParameter(highest + 1, ParameterType.LONG, identifying=True)
        )


INCREMENTERS = {
    "run_id": RunIdIncrementer(),
}


class JobOrchestrator:
    """
    Runs jobs and records their executions.

    Usage:
        orchestrator = JobOrchestrator(registry, tracker, step_factory)
        execution = orchestrator.run_job("person_import", {"input_file": "people.csv"})
        if execution.status != BatchStatus.COMPLETED:
            orchestrator.restart(execution.execution_id)
    """

    def __init__(
        self,
        registry: JobRegistry,
        tracker: ExecutionTracker,
        step_factory: StepBuilder,
        runner: Optional[StepRunner] = None,
    ):
        self._registry = registry
        self._tracker = tracker
        self._step_factory = step_factory
        self._runner = runner or StepRunner()
        self._stop_flags: dict[int, threading.Event] = {}
        self._flags_lock = threading.Lock()

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def tracker(self) -> ExecutionTracker:
        return self._tracker

    def run_job(
        self,
        name: str,
        parameters: Union[JobParameters, Mapping[str, Any], None] = None,
    ) -> JobExecution:
        """
        Run a job with the given parameters.

        Returns:
            The finished JobExecution (COMPLETED, FAILED or STOPPED)

        Raises:
            JobNotFoundError: Unknown job name
            JobParametersInvalid: Parameters do not match the job's schema
            DuplicateCompletedRun: The identity already completed
            JobExecutionAlreadyRunning: The identity is currently running
            JobRestartError: The identity failed before and the job is not restartable
        """
        job_def = self._registry.get(name)
        if not isinstance(parameters, JobParameters):
            parameters = JobParameters(parameters or {})
        parameters = job_def.validate_parameters(parameters)

        if job_def.incrementer is not None:
            incrementer = INCREMENTERS[job_def.incrementer]
            # Serialise run-id allocation per job so two runs never pick the same id
            with self._tracker.instance_lock(job_def.name, f"incrementer:{job_def.incrementer}"):
                parameters = incrementer.next_parameters(parameters, self._tracker, job_def.name)
                instance, execution = self._start(job_def, parameters)
        else:
            instance, execution = self._start(job_def, parameters)

        return self._execute(job_def, instance, execution)

    def restart(self, execution_id: int) -> JobExecution:
        """
        Restart the instance of a FAILED or STOPPED execution.

        The original parameters are reused as-is (no increment), so the run
        continues the same JobInstance.

        Raises:
            ExecutionNotFoundError: Unknown execution id
            JobRestartError: Execution not FAILED/STOPPED, or job not restartable
        """
        previous = self._get_execution(execution_id)
        if not previous.status.is_restartable:
            raise JobRestartError(
                f"Execution {execution_id} is {previous.status.value}; "
                f"only FAILED or STOPPED executions can be restarted"
            )
        job_def = self._registry.get(previous.job_name)
        if not job_def.restartable:
            raise JobRestartError(f"Job '{job_def.name}' is not restartable")

        instance = self._tracker.get_instance(previous.instance_id)
        if instance is None:
            raise ExecutionNotFoundError(f"Instance {previous.instance_id} not found")

        logger.info(f"Restarting job {job_def.name} from execution {execution_id}")
        with self._tracker.instance_lock(instance.job_name, instance.identity_key):
            execution = self._tracker.create_execution(instance, previous.parameters)
        return self._execute(job_def, instance, execution)

    def stop(self, execution_id: int) -> bool:
        """
        Request a running execution to stop at its next chunk boundary.

        Returns:
            True if the execution is running in this orchestrator
        """
        with self._flags_lock:
            flag = self._stop_flags.get(execution_id)
        if flag is None:
            return False
        logger.info(f"Stop requested for execution {execution_id}")
        flag.set()
        return True

    def recover(self, execution_id: int) -> JobExecution:
        """
        Mark an execution abandoned by a crashed process as FAILED.

        The instance can then be restarted; steps resume from the position
        of their last committed chunk.

        Raises:
            ExecutionNotFoundError: Unknown execution id
            JobRestartError: Execution is not STARTED, or is running here
        """
        execution = self._get_execution(execution_id)
        if execution.status != BatchStatus.STARTED:
            raise JobRestartError(
                f"Execution {execution_id} is {execution.status.value}; only STARTED executions can be recovered"
            )
        with self._flags_lock:
            if execution_id in self._stop_flags:
                raise JobRestartError(f"Execution {execution_id} is running in this process")

        for step_execution in execution.step_executions:
            if step_execution.status == BatchStatus.STARTED:
                step_execution.finish(BatchStatus.FAILED)
        execution.finish(BatchStatus.FAILED, "Recovered after abnormal termination")
        self._tracker.record_transition(execution, TransitionKind.JOB_FINISHED)
        logger.warning(f"Execution {execution_id} of job {execution.job_name} marked FAILED")
        return execution

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_execution(self, execution_id: int) -> JobExecution:
        execution = self._tracker.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return execution

    def _start(self, job_def: JobDef, parameters: JobParameters) -> tuple[JobInstance, JobExecution]:
        identity_key = parameters.identity_key()
        with self._tracker.instance_lock(job_def.name, identity_key):
            instance = self._tracker.find_instance(job_def.name, identity_key)
            if instance is None:
                instance = self._tracker.create_instance(job_def.name, parameters)
            else:
                if self._tracker.is_completed(instance):
                    raise DuplicateCompletedRun(job_def.name, identity_key)
                latest = self._tracker.latest_execution(instance)
                check_can_start(instance, latest)
                if latest is not None and not job_def.restartable:
                    raise JobRestartError(
                        f"Job '{job_def.name}' is not restartable and instance "
                        f"{instance.instance_id} already ran (execution {latest.execution_id})"
                    )
            execution = self._tracker.create_execution(instance, parameters)
        return instance, execution

    def _execute(self, job_def: JobDef, instance: JobInstance, execution: JobExecution) -> JobExecution:
        stop_flag = threading.Event()
        with self._flags_lock:
            self._stop_flags[execution.execution_id] = stop_flag

        log_extra = {"job": job_def.name, "execution_id": execution.execution_id}
        logger.info(
            f"Job {job_def.name} execution {execution.execution_id} started "
            f"(instance {instance.instance_id})",
            extra=log_extra,
        )

        try:
            status = BatchStatus.COMPLETED
            description = ""
            for step_def in job_def.steps:
                step_execution = self._run_step(job_def, instance, execution, step_def, stop_flag)
                if step_execution is None:
                    continue
                if step_execution.status != BatchStatus.COMPLETED:
                    status = step_execution.status
                    description = f"Step '{step_def.name}' {step_execution.status.value}"
                    if step_execution.failures:
                        failure = step_execution.failures[-1]
                        description += f": {failure['type']}: {failure['message']}"
                    break
        except Exception as e:
            logger.error(f"Job {job_def.name} aborted: {e}", exc_info=True, extra=log_extra)
            execution.finish(BatchStatus.FAILED, f"{type(e).__name__}: {e}")
            self._tracker.record_transition(execution, TransitionKind.JOB_FINISHED)
            raise
        finally:
            with self._flags_lock:
                self._stop_flags.pop(execution.execution_id, None)

        execution.finish(status, description)
        self._tracker.record_transition(execution, TransitionKind.JOB_FINISHED)
        logger.info(
            f"Job {job_def.name} execution {execution.execution_id} {status.value}",
            extra=log_extra,
        )
        return execution

    def _run_step(
        self,
        job_def: JobDef,
        instance: JobInstance,
        execution: JobExecution,
        step_def: StepDef,
        stop_flag: threading.Event,
    ) -> Optional[StepExecution]:
        """Run one step, or return None when it already completed for this instance."""
        previous = self._tracker.last_step_execution(instance, step_def.name)
        if previous is not None and previous.status == BatchStatus.COMPLETED:
            logger.info(
                f"Step {step_def.name} already completed in execution {previous.execution_id}; skipping"
            )
            return None

        start_position = previous.position if previous is not None else 0
        step_execution = StepExecution(
            step_name=step_def.name,
            execution_id=execution.execution_id,
            position=start_position,
            start_position=start_position,
        )
        execution.step_executions.append(step_execution)

        try:
            runnable = self._step_factory.build(step_def, execution.parameters)
        except Exception as e:
            logger.error(f"Step {step_def.name} could not be built: {e}", exc_info=True)
            step_execution.add_failure(e)
            step_execution.finish(BatchStatus.FAILED)
            self._tracker.record_transition(execution, TransitionKind.STEP_FINISHED, step_execution)
            return step_execution

        context = StepContext(
            job_execution=execution,
            step_execution=step_execution,
            parameters=execution.parameters,
            tracker=self._tracker,
            stop_requested=stop_flag.is_set,
            resuming=previous is not None,
        )
        return self._runner.run_step(runnable, context)
