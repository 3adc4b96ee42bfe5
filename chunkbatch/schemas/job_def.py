"""
JobDef schema - the declarative job definition.

A JobDef is the static, version-controlled definition of a job: its name,
its ordered steps and its parameter schema. Step configs may contain
@param.* references that are resolved from JobParameters when the step is
built for an execution.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from chunkbatch.errors import JobParametersInvalid, JobRegistrationError

from .parameters import JobParameter, JobParameters, ParameterType


STEP_TYPES = ("chunk", "tasklet")
INCREMENTERS = ("run_id",)


@dataclass(frozen=True)
class ParameterDef:
    """
    Declared job parameter.

    Attributes:
        name: Parameter name
        type: Declared type; supplied values are coerced to it
        required: Fail the run when missing and no default exists
        identifying: Whether the parameter contributes to run identity
        default: Value used when the parameter is not supplied
    """
    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    identifying: bool = True
    default: Any = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "type": self.type.value}
        if self.required:
            result["required"] = True
        if not self.identifying:
            result["identifying"] = False
        if self.default is not None:
            result["default"] = self.default
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParameterDef":
        return cls(
            name=data["name"],
            type=ParameterType.from_string(data.get("type", "string")),
            required=data.get("required", False),
            identifying=data.get("identifying", True),
            default=data.get("default"),
        )


@dataclass(frozen=True)
class StepDef:
    """
    A step definition within a JobDef.

    Attributes:
        name: Unique name of the step within the job
        type: "chunk" (reader -> processor -> writer) or "tasklet" (single action)
        config: Step settings (chunk_size, skip_limit, reader, writer, tasklet, ...)
    """
    name: str
    type: Literal["chunk", "tasklet"]
    config: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in STEP_TYPES:
            raise JobRegistrationError(
                f"Step '{self.name}': unknown type '{self.type}'. Valid: {', '.join(STEP_TYPES)}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, **self.config}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepDef":
        config = {k: v for k, v in data.items() if k not in ("name", "type")}
        return cls(name=data["name"], type=data.get("type", "chunk"), config=config)


@dataclass(frozen=True)
class JobDef:
    """
    A job definition.

    JobDef is immutable once registered. It defines what a job does,
    but not with what specific parameters.

    Attributes:
        name: Unique job name
        steps: Ordered step definitions
        parameters: Declared parameter schema
        incrementer: Run-identity increment strategy ("run_id") or None
        restartable: Whether FAILED/STOPPED executions may be restarted
        description: Human-readable summary
    """
    name: str
    steps: tuple[StepDef, ...] = field(default_factory=tuple)
    parameters: tuple[ParameterDef, ...] = field(default_factory=tuple)
    incrementer: Optional[str] = None
    restartable: bool = True
    description: str = ""

    def __post_init__(self):
        names = [s.name for s in self.steps]
        if len(names) != len(set(names)):
            duplicates = {n for n in names if names.count(n) > 1}
            raise JobRegistrationError(f"Job '{self.name}': duplicate step names: {duplicates}")
        if not self.steps:
            raise JobRegistrationError(f"Job '{self.name}': at least one step is required")
        if self.incrementer is not None and self.incrementer not in INCREMENTERS:
            raise JobRegistrationError(
                f"Job '{self.name}': unknown incrementer '{self.incrementer}'"
            )

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self.steps)

    def get_step(self, name: str) -> Optional[StepDef]:
        """Get a step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def validate_parameters(self, params: JobParameters) -> JobParameters:
        """
        Apply the parameter schema to supplied parameters.

        Declared parameters get their default when missing and are coerced
        to the declared type. Undeclared parameters pass through unchanged.

        Raises:
            JobParametersInvalid: If a required parameter is missing or
                a value cannot be coerced
        """
        resolved: dict[str, JobParameter] = dict(params)
        missing = []
        for pdef in self.parameters:
            supplied = resolved.get(pdef.name)
            if supplied is None:
                if pdef.default is not None:
                    resolved[pdef.name] = JobParameter(
                        pdef.type.coerce(pdef.default, pdef.name), pdef.type, pdef.identifying
                    )
                elif pdef.required:
                    missing.append(pdef.name)
                continue
            resolved[pdef.name] = JobParameter(
                pdef.type.coerce(supplied.value, pdef.name), pdef.type, supplied.identifying and pdef.identifying
            )
        if missing:
            raise JobParametersInvalid(
                f"Job '{self.name}': missing required parameters: {', '.join(missing)}"
            )
        return JobParameters(resolved)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML/JSON output."""
        result: dict[str, Any] = {"name": self.name}
        if self.description:
            result["description"] = self.description
        if self.incrementer:
            result["incrementer"] = self.incrementer
        if not self.restartable:
            result["restartable"] = False
        if self.parameters:
            result["parameters"] = [p.to_dict() for p in self.parameters]
        result["steps"] = [s.to_dict() for s in self.steps]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobDef":
        """Deserialize from dictionary."""
        if "name" not in data:
            raise JobRegistrationError("Job definition is missing 'name'")
        return cls(
            name=data["name"],
            steps=tuple(StepDef.from_dict(s) for s in data.get("steps", [])),
            parameters=tuple(ParameterDef.from_dict(p) for p in data.get("parameters", [])),
            incrementer=data.get("incrementer"),
            restartable=data.get("restartable", True),
            description=data.get("description", ""),
        )
