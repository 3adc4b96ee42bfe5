"""
Assembly - explicit construction of the engine from configuration.

build_orchestrator() wires config -> tracker, registry, step factory ->
JobOrchestrator. StepFactory turns the declarative StepDefs of a JobDef
into runnable StepDefinitions for one execution:

- @param.* references in step config are resolved from the JobParameters
- reader, processor and writer names are looked up in component tables
- tasklets are loaded from allowlisted "module:function" paths

Example step config (YAML):

    - name: import_people
      type: chunk
      chunk_size: 200
      reader:
        type: delimited
        path: "@param.input_file"
        names: [name, email, age, id]
        comments: ["--"]
        record: person
      processor: person_validator
      writer:
        type: sql
        sql: "INSERT INTO person (id, name, email, age) VALUES (:id, :name, :email, :age)"
"""

import importlib
import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Callable, Optional

from chunkbatch.config import BatchConfig
from chunkbatch.errors import JobParametersInvalid, MalformedRecord, StepConfigError
from chunkbatch.job import JobOrchestrator
from chunkbatch.processors import (
    CompositeProcessor,
    ItemProcessor,
    PassThroughProcessor,
    ValidatingProcessor,
)
from chunkbatch.readers import DelimitedFileReader, IterableReader, ItemReader
from chunkbatch.records import get_record_factory, validate_person
from chunkbatch.registry import JobRegistry
from chunkbatch.schemas import JobParameters, StepDef
from chunkbatch.step import ActionBehavior, ChunkBehavior, StepContext, StepDefinition, StepRunner
from chunkbatch.tracker import ExecutionTracker, SqliteExecutionTracker
from chunkbatch.transactions import (
    ResourcelessTransactionManager,
    SqliteTransactionManager,
    TransactionManager,
)
from chunkbatch.writers import ItemWriter, ListWriter, SqlBatchWriter

logger = logging.getLogger(__name__)

PARAM_REF_PATTERN = re.compile(r"^@param\.([A-Za-z_][\w.]*)$")

# Tasklets may only be loaded from these modules (exact match or submodule)
ALLOWED_TASKLET_MODULES = [
    "chunkbatch.tasklets",
]

PERSON_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS person (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    age INTEGER NOT NULL
)
"""


# =============================================================================
# PARAMETER REFERENCES
# =============================================================================

def resolve_param_refs(value: Any, parameters: JobParameters) -> Any:
    """
    Recursively resolve "@param.<name>" references.

    Only full-string references are resolved; other strings pass through.

    Raises:
        JobParametersInvalid: If a referenced parameter is not present
    """
    if isinstance(value, str):
        match = PARAM_REF_PATTERN.match(value)
        if match:
            name = match.group(1)
            if name not in parameters:
                raise JobParametersInvalid(f"Step config references missing parameter: {value}")
            return parameters[name].value
        return value
    elif isinstance(value, dict):
        return {k: resolve_param_refs(v, parameters) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_param_refs(v, parameters) for v in value]
    return value


# =============================================================================
# TASKLET LOADER
# =============================================================================

def _is_allowed_module(module_path: str, allowed_modules: list[str]) -> bool:
    for allowed in allowed_modules:
        if module_path == allowed or module_path.startswith(allowed + "."):
            return True
    return False


def load_tasklet(tasklet_path: str, allowed_modules: Optional[list[str]] = None) -> Callable[..., Any]:
    """Load a tasklet function by "module:function" path.

    Raises:
        StepConfigError: If the path is malformed, not allowlisted, or not callable
    """
    allowed_modules = ALLOWED_TASKLET_MODULES if allowed_modules is None else allowed_modules
    if ":" not in tasklet_path:
        raise StepConfigError(f"Tasklet path must be 'module:function', got: {tasklet_path}")

    module_path, func_name = tasklet_path.rsplit(":", 1)
    if not _is_allowed_module(module_path, allowed_modules):
        raise StepConfigError(
            f"Tasklet module '{module_path}' not in allowlist. Allowed: {allowed_modules}"
        )

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise StepConfigError(f"Cannot import tasklet module '{module_path}': {e}") from e

    func = getattr(module, func_name, None)
    if func is None:
        raise StepConfigError(f"Tasklet function '{func_name}' not found in '{module_path}'")
    if not callable(func):
        raise StepConfigError(f"{tasklet_path} is not callable")
    return func


# =============================================================================
# STEP FACTORY
# =============================================================================

def _component_spec(raw: Any, kind: str) -> dict[str, Any]:
    """Normalise a component entry: "name" or {"type": "name", ...}."""
    if isinstance(raw, str):
        return {"type": raw}
    if isinstance(raw, dict) and "type" in raw:
        return dict(raw)
    raise StepConfigError(f"{kind} must be a name or a mapping with 'type', got: {raw!r}")


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


class StepFactory:
    """
    Builds StepDefinitions from StepDefs.

    Component tables map names used in job definitions to builders:
        readers:    delimited, inline
        processors: person_validator, passthrough
        writers:    sql, list
    """

    def __init__(
        self,
        config: BatchConfig,
        allowed_tasklet_modules: Optional[list[str]] = None,
    ):
        self._config = config
        self._allowed_tasklet_modules = (
            list(ALLOWED_TASKLET_MODULES) if allowed_tasklet_modules is None else allowed_tasklet_modules
        )
        self._readers: dict[str, Callable[[dict[str, Any]], ItemReader]] = {
            "delimited": self._delimited_reader,
            "inline": self._inline_reader,
        }
        self._processors: dict[str, Callable[[dict[str, Any]], ItemProcessor]] = {
            "person_validator": lambda spec: ValidatingProcessor(validate_person),
            "passthrough": lambda spec: PassThroughProcessor(),
        }
        self._writers: dict[str, Callable[[dict[str, Any]], ItemWriter]] = {
            "sql": self._sql_writer,
            "list": self._list_writer,
        }
        # Last ListWriter built per step, for dry runs and inspection
        self.list_writers: dict[str, ListWriter] = {}

    def build(self, step_def: StepDef, parameters: JobParameters) -> StepDefinition:
        """
        Build a runnable step for one execution.

        Raises:
            JobParametersInvalid: A @param reference cannot be resolved
            StepConfigError: The step config is invalid
        """
        config = resolve_param_refs(step_def.config, parameters)
        if step_def.type == "chunk":
            behavior = self._chunk_behavior(step_def.name, config)
        else:
            behavior = self._action_behavior(step_def.name, config)

        try:
            return StepDefinition(
                name=step_def.name,
                behavior=behavior,
                chunk_size=int(config.get("chunk_size", self._config.default_chunk_size)),
                skip_limit=int(config.get("skip_limit", self._config.default_skip_limit)),
                retry_limit=int(config.get("retry_limit", self._config.default_retry_limit)),
                backoff_seconds=float(config.get("backoff_seconds", self._config.default_backoff_seconds)),
                backoff_multiplier=float(config.get("backoff_multiplier", 2.0)),
                skip_write_rejections=bool(config.get("skip_write_rejections", False)),
            )
        except (TypeError, ValueError) as e:
            raise StepConfigError(f"Step '{step_def.name}': {e}") from e

    # Chunk steps

    def _chunk_behavior(self, step_name: str, config: dict[str, Any]) -> ChunkBehavior:
        if "reader" not in config or "writer" not in config:
            raise StepConfigError(f"Step '{step_name}': chunk steps need a reader and a writer")

        reader_spec = _component_spec(config["reader"], "reader")
        writer_spec = _component_spec(config["writer"], "writer")
        writer_spec.setdefault("step", step_name)

        reader = self._lookup(self._readers, reader_spec, "reader", step_name)(reader_spec)
        writer = self._lookup(self._writers, writer_spec, "writer", step_name)(writer_spec)
        processor = self._processor(step_name, config.get("processor"))

        return ChunkBehavior(
            reader=reader,
            processor=processor,
            writer=writer,
            transaction_manager=self._transaction_manager(writer_spec),
        )

    def _processor(self, step_name: str, raw: Any) -> Optional[ItemProcessor]:
        if raw is None:
            return None
        entries = raw if isinstance(raw, list) else [raw]
        processors = []
        for entry in entries:
            spec = _component_spec(entry, "processor")
            processors.append(self._lookup(self._processors, spec, "processor", step_name)(spec))
        return processors[0] if len(processors) == 1 else CompositeProcessor(processors)

    @staticmethod
    def _lookup(table: dict[str, Callable], spec: dict[str, Any], kind: str, step_name: str) -> Callable:
        builder = table.get(spec["type"])
        if builder is None:
            raise StepConfigError(
                f"Step '{step_name}': unknown {kind} '{spec['type']}'. Available: {sorted(table)}"
            )
        return builder

    def _record_factory(self, spec: dict[str, Any]):
        try:
            return get_record_factory(spec.get("record", "dict"))
        except KeyError as e:
            raise StepConfigError(str(e)) from e

    def _delimited_reader(self, spec: dict[str, Any]) -> DelimitedFileReader:
        if not spec.get("path"):
            raise StepConfigError("delimited reader requires 'path'")
        if not spec.get("names"):
            raise StepConfigError("delimited reader requires 'names'")
        return DelimitedFileReader(
            Path(str(spec["path"])).expanduser(),
            names=spec["names"],
            record_factory=self._record_factory(spec),
            delimiter=spec.get("delimiter", ","),
            comments=_as_tuple(spec.get("comments", "#")),
            skip_lines=int(spec.get("skip_lines", 0)),
            encoding=spec.get("encoding", "utf-8"),
        )

    def _inline_reader(self, spec: dict[str, Any]) -> IterableReader:
        factory = self._record_factory(spec)
        items: list[Any] = []
        for number, raw in enumerate(spec.get("items", []), start=1):
            try:
                items.append(factory(raw))
            except MalformedRecord as e:
                items.append(e)
            except (TypeError, ValueError) as e:
                items.append(MalformedRecord(str(e), line=number))
        return IterableReader(items)

    def _sql_writer(self, spec: dict[str, Any]) -> SqlBatchWriter:
        if not spec.get("sql"):
            raise StepConfigError("sql writer requires 'sql'")
        return SqlBatchWriter(spec["sql"])

    def _list_writer(self, spec: dict[str, Any]) -> ListWriter:
        writer = ListWriter()
        self.list_writers[spec["step"]] = writer
        return writer

    def _transaction_manager(self, writer_spec: dict[str, Any]) -> TransactionManager:
        if writer_spec["type"] == "sql":
            return SqliteTransactionManager(writer_spec.get("database") or self._config.target_database)
        return ResourcelessTransactionManager()

    # Tasklet steps

    def _action_behavior(self, step_name: str, config: dict[str, Any]) -> ActionBehavior:
        if "tasklet" not in config:
            raise StepConfigError(f"Step '{step_name}': tasklet steps need a 'tasklet' path")
        func = load_tasklet(config["tasklet"], self._allowed_tasklet_modules)
        kwargs = dict(config.get("args") or {})

        def action(context: StepContext) -> Optional[str]:
            return func(context, **kwargs)

        database = config.get("database")
        manager: TransactionManager = (
            SqliteTransactionManager(database) if database else ResourcelessTransactionManager()
        )
        return ActionBehavior(action=action, transaction_manager=manager)


# =============================================================================
# WIRING
# =============================================================================

def ensure_person_table(database: Path | str) -> None:
    """Create the person table in the target store if it does not exist."""
    Path(database).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(database))
    try:
        conn.execute(PERSON_TABLE_DDL)
        conn.commit()
    finally:
        conn.close()


def build_registry(config: BatchConfig) -> JobRegistry:
    """Built-in job definitions plus those under config.definitions_dir."""
    registry = JobRegistry.with_builtins()
    if config.definitions_dir is not None:
        registry.load_directory(config.definitions_dir)
    return registry


def build_orchestrator(
    config: BatchConfig,
    tracker: Optional[ExecutionTracker] = None,
    registry: Optional[JobRegistry] = None,
    runner: Optional[StepRunner] = None,
) -> JobOrchestrator:
    """
    Wire a JobOrchestrator from configuration.

    Args:
        config: Engine configuration
        tracker: Execution tracker (default: SQLite at config.tracker_path)
        registry: Job registry (default: built-ins + config.definitions_dir)
        runner: Step runner (default: StepRunner())
    """
    if tracker is None:
        tracker = SqliteExecutionTracker(config.tracker_path)
    if registry is None:
        registry = build_registry(config)
    ensure_person_table(config.target_database)
    return JobOrchestrator(registry, tracker, StepFactory(config), runner)
