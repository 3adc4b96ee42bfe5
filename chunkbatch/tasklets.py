"""Built-in tasklets.

A tasklet is a plain function taking the StepContext (plus keyword
arguments from the step's `args`) and returning an optional exit code.
Tasklet steps reference them as "chunkbatch.tasklets:<function>".
"""

import logging
from typing import Optional

import click

from chunkbatch.step import StepContext

logger = logging.getLogger(__name__)


def print_message(context: StepContext, message: str = "Hello world!") -> Optional[str]:
    """Print a message to stdout."""
    click.echo(message)
    logger.debug(f"Printed message for execution {context.job_execution.execution_id}")
    return None
