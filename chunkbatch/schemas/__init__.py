"""
chunkbatch.schemas - Data model for the batch engine.

JobDef -> JobInstance -> JobExecution -> StepExecution

Lifecycle:
1. JobDef: Static job definition (steps + parameter schema), registered at startup
2. JobParameters: Typed run-time parameters; the identifying subset is the run identity
3. JobInstance: Created on first run for (job name, identifying parameters)
4. JobExecution: One attempt at running a JobInstance
5. StepExecution: One attempt at running a step, with item counters and position
6. Transition: Append-only tracker log entry
"""

from .parameters import (
    ParameterType,
    JobParameter,
    JobParameters,
)
from .job_def import (
    JobDef,
    StepDef,
    ParameterDef,
)
from .execution import (
    BatchStatus,
    TransitionKind,
    JobInstance,
    JobExecution,
    StepExecution,
    Transition,
)

__all__ = [
    # Parameters
    "ParameterType",
    "JobParameter",
    "JobParameters",
    # Job Definition
    "JobDef",
    "StepDef",
    "ParameterDef",
    # Executions
    "BatchStatus",
    "TransitionKind",
    "JobInstance",
    "JobExecution",
    "StepExecution",
    "Transition",
]
