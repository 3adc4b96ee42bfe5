"""
Error classes for chunkbatch execution.

These error types enable retry and skip classification at step boundaries:
- TransientError: Safe to retry (lost connections, locked databases)
- PermanentError: Do not retry (bad input, constraint violations, bad runs)

Readers, processors and writers raise these errors to signal how the
Step Orchestrator should react. The orchestrators catch them at the chunk
and step boundary for retry/skip handling and execution recording.

Error handling contract:
- Errors are exceptions, not values
- A failed chunk is always rolled back as a whole
- Job-start errors reach the caller before any step runs
"""

from typing import Optional


class BatchError(Exception):
    """Base exception for chunkbatch."""
    pass


class TransientError(BatchError):
    """
    Transient error - safe to retry.

    The Step Orchestrator retries the whole chunk (bounded, with backoff)
    when a writer raises a TransientError.
    """
    pass


class PermanentError(BatchError):
    """
    Permanent error - do not retry.

    Depending on the subtype and the step's skip policy the offending item
    is skipped or the step fails immediately.
    """
    pass


class SourceUnavailable(PermanentError):
    """The reader's underlying resource cannot be opened. Fatal for the step."""
    pass


class MalformedRecord(PermanentError):
    """
    A record could not be parsed or mapped.

    Skippable under the step's skip policy. Carries the source position
    so skip reports can point at the offending line.
    """

    def __init__(self, message: str, line: Optional[int] = None, raw: Optional[str] = None):
        self.line = line
        self.raw = raw
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class InvalidRecord(MalformedRecord):
    """A record parsed fine but violates the record's validity rules."""
    pass


class WriteRejected(PermanentError):
    """The target store refused the batch (constraint violation)."""
    pass


class ConnectionLost(TransientError):
    """The target store went away mid-write. Retryable."""
    pass


class SkipLimitExceeded(PermanentError):
    """More items were skipped than the step's skip policy allows."""

    def __init__(self, step_name: str, skip_limit: int, cause: BaseException):
        self.step_name = step_name
        self.skip_limit = skip_limit
        self.cause = cause
        super().__init__(
            f"Step '{step_name}': skip limit of {skip_limit} exceeded "
            f"({type(cause).__name__}: {cause})"
        )


class DuplicateCompletedRun(PermanentError):
    """A COMPLETED execution already exists for this job identity."""

    def __init__(self, job_name: str, identity_key: str):
        self.job_name = job_name
        self.identity_key = identity_key
        super().__init__(
            f"Job '{job_name}' already completed for these identifying parameters "
            f"(identity {identity_key[:12]}). Change the parameters or configure an incrementer."
        )


class JobExecutionAlreadyRunning(PermanentError):
    """An execution for this job identity is still STARTED."""
    pass


class JobRestartError(PermanentError):
    """The execution cannot be restarted (not restartable, or wrong status)."""
    pass


class JobParametersInvalid(PermanentError):
    """Run parameters do not satisfy the job's parameter schema."""
    pass


class JobNotFoundError(PermanentError):
    """Raised when a job definition is not registered."""
    pass


class JobRegistrationError(PermanentError):
    """Raised when a job definition cannot be registered."""
    pass


class StepConfigError(PermanentError):
    """A step's configuration cannot be turned into a runnable step."""
    pass


class ExecutionNotFoundError(PermanentError):
    """Raised when an execution id is unknown to the tracker."""
    pass
