"""
CLI interface for the chunkbatch engine.

Provides commands to run, restart and recover jobs and to inspect job
definitions and execution history.

Jobs are defined as YAML files in chunkbatch/jobs/definitions (plus the
optional definitions_dir from config.yaml). Execution history lives in the
SQLite tracker at tracker_path.
"""

from pathlib import Path

import click

from chunkbatch import __version__
from chunkbatch.errors import BatchError
from chunkbatch.schemas import BatchStatus, JobExecution, JobParameters
from chunkbatch.utils import format_duration, print_error, print_info, print_success, print_warning


@click.group()
@click.version_option(version=__version__, prog_name="chunkbatch")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to config.yaml (default: $CHUNKBATCH_HOME/config.yaml)",
)
@click.pass_context
def main(ctx, config_path):
    """
    chunkbatch - Chunk-oriented batch job engine.

    Run jobs that read, process and write records in committed chunks,
    with restart from the last committed chunk.
    """
    from chunkbatch.config import load_config
    from chunkbatch.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except Exception as e:
        # init does not need a config; other commands report the error
        ctx.obj["config_error"] = str(e)
        return
    ctx.obj["config"] = config
    setup_logging(config.log_level, config.log_format, config.log_file)


def _get_orchestrator(ctx):
    from chunkbatch.assembly import build_orchestrator

    if "config" not in ctx.obj:
        print_error(f"Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}")
        click.echo("Run 'chunkbatch init' to create a configuration file.", err=True)
        raise SystemExit(1)
    try:
        return build_orchestrator(ctx.obj["config"])
    except BatchError as e:
        print_error(f"Failed to load job definitions: {e}")
        raise SystemExit(1)


def _echo_step_counts(execution: JobExecution) -> None:
    for step in execution.step_executions:
        click.echo(
            f"  {step.step_name}: {step.status.value} "
            f"read={step.read_count} written={step.write_count} "
            f"filtered={step.filter_count} skipped={step.skip_count} "
            f"(read={step.read_skip_count} process={step.process_skip_count} write={step.write_skip_count}) "
            f"commits={step.commit_count} rollbacks={step.rollback_count} retries={step.retry_count} "
            f"position={step.position}"
        )
        for failure in step.failures:
            click.echo(f"    {failure['type']}: {failure['message']}")


def _report(execution: JobExecution) -> None:
    """Print the outcome of an execution and exit non-zero unless COMPLETED."""
    duration = execution.duration_ms
    took = f" in {format_duration(duration / 1000)}" if duration is not None else ""
    summary = f"{execution.job_name} execution {execution.execution_id} {execution.status.value}{took}"
    if execution.status == BatchStatus.COMPLETED:
        print_success(summary)
    elif execution.status == BatchStatus.STOPPED:
        print_warning(summary)
    else:
        print_error(summary)
        if execution.exit_description:
            click.echo(f"  {execution.exit_description}")
    _echo_step_counts(execution)
    if execution.status != BatchStatus.COMPLETED:
        raise SystemExit(1)


@main.command("run", context_settings={"ignore_unknown_options": True})
@click.argument("job")
@click.argument("params", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run(ctx, job: str, params: tuple[str, ...]):
    """
    Run a job.

    JOB is the job name. PARAMS are job parameters:

        name=value          identifying string

        name(long)=5        typed (string, long, date, double)

        -name=value         non-identifying

    Examples:

        chunkbatch run person_import input_file=data/person.csv

        chunkbatch run hello -message="Hello there"
    """
    orchestrator = _get_orchestrator(ctx)
    try:
        parameters = JobParameters.from_cli(params)
        execution = orchestrator.run_job(job, parameters)
    except BatchError as e:
        print_error(f"{job}: {e}")
        raise SystemExit(1)
    _report(execution)


@main.command("restart")
@click.argument("execution_id", type=int)
@click.pass_context
def restart(ctx, execution_id: int):
    """Restart a FAILED or STOPPED execution from its last committed chunk."""
    orchestrator = _get_orchestrator(ctx)
    try:
        execution = orchestrator.restart(execution_id)
    except BatchError as e:
        print_error(f"Cannot restart execution {execution_id}: {e}")
        raise SystemExit(1)
    _report(execution)


@main.command("recover")
@click.argument("execution_id", type=int)
@click.pass_context
def recover(ctx, execution_id: int):
    """Mark an execution left STARTED by a crashed process as FAILED."""
    orchestrator = _get_orchestrator(ctx)
    try:
        execution = orchestrator.recover(execution_id)
    except BatchError as e:
        print_error(f"Cannot recover execution {execution_id}: {e}")
        raise SystemExit(1)
    print_success(f"Execution {execution.execution_id} marked {execution.status.value}")
    click.echo(f"Run 'chunkbatch restart {execution.execution_id}' to resume it.")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize chunkbatch configuration."""
    import yaml

    from chunkbatch.config import BatchConfig, get_chunkbatch_home

    home = get_chunkbatch_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = BatchConfig.default(home).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    click.echo(f"Initialized chunkbatch config at {cfg_path}")


# =============================================================================
# Job definitions
# =============================================================================

@main.group("jobs")
def jobs_group():
    """Inspect job definitions."""
    pass


@jobs_group.command("list")
@click.pass_context
def list_jobs(ctx):
    """List registered jobs."""
    orchestrator = _get_orchestrator(ctx)
    registry = orchestrator.registry
    names = registry.list_jobs()
    if not names:
        click.echo("No job definitions found.")
        return
    for name in names:
        description = registry.get(name).description
        click.echo(f"  {name}" + (f"  {description}" if description else ""))


@jobs_group.command("show")
@click.argument("job")
@click.pass_context
def show_job(ctx, job: str):
    """Show a job definition."""
    import yaml

    orchestrator = _get_orchestrator(ctx)
    registry = orchestrator.registry
    if job not in registry:
        print_error(f"Unknown job: {job}")
        raise SystemExit(1)

    job_def = registry.get(job)
    click.echo(f"Job: {job_def.name}")
    click.echo(f"Definition: {registry.source_of(job)}")
    click.echo(f"Hash: {registry.compute_hash(job_def)[:12]}")
    click.echo()
    click.echo(yaml.safe_dump(job_def.to_dict(), sort_keys=False).rstrip())


# =============================================================================
# Execution history
# =============================================================================

@main.group("executions")
def executions_group():
    """Inspect execution history."""
    pass


@executions_group.command("list")
@click.option("--job", "job_name", help="Only executions of this job")
@click.pass_context
def list_executions(ctx, job_name: str = None):
    """List executions, newest last."""
    orchestrator = _get_orchestrator(ctx)
    executions = orchestrator.tracker.list_executions(job_name=job_name)
    if not executions:
        click.echo("No executions found.")
        return
    for execution in executions:
        click.echo(
            f"{execution.execution_id:>5}  {execution.job_name:<24} {execution.status.value:<10} "
            f"instance={execution.instance_id} started={execution.started_at.isoformat(timespec='seconds')}"
        )


@executions_group.command("show")
@click.argument("execution_id", type=int)
@click.pass_context
def show_execution(ctx, execution_id: int):
    """Show an execution with its parameters and step counts."""
    orchestrator = _get_orchestrator(ctx)
    execution = orchestrator.tracker.get_execution(execution_id)
    if execution is None:
        print_error(f"Execution not found: {execution_id}")
        raise SystemExit(1)

    click.echo(f"Execution: {execution.execution_id}")
    click.echo(f"Job: {execution.job_name} (instance {execution.instance_id})")
    click.echo(f"Status: {execution.status.value}")
    if execution.exit_description:
        click.echo(f"Exit: {execution.exit_description}")
    click.echo(f"Started: {execution.started_at.isoformat()}")
    if execution.ended_at is not None:
        click.echo(f"Ended: {execution.ended_at.isoformat()}")
    if len(execution.parameters):
        click.echo("Parameters:")
        for name, param in execution.parameters.items():
            marker = "" if param.identifying else " (non-identifying)"
            click.echo(f"  {name}({param.type.value})={param.value}{marker}")
    if execution.step_executions:
        click.echo("Steps:")
        _echo_step_counts(execution)
    else:
        print_info("No steps ran in this execution")


if __name__ == "__main__":
    main()
