"""
JobParameters schema - typed run-time parameters and run identity.

Parameters are typed (string, long, date, double). The identifying subset
determines the JobInstance a run belongs to: two runs with the same job
name and the same identifying parameters are the same instance.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Iterator, Mapping, Optional

from chunkbatch.errors import JobParametersInvalid


# name(type)=value, with an optional leading "-" for non-identifying
CLI_PARAM_PATTERN = re.compile(r"^(?P<neg>-)?(?P<name>[A-Za-z_][\w.]*)(?:\((?P<type>\w+)\))?=(?P<value>.*)$")


class ParameterType(str, Enum):
    """Supported job parameter types."""
    STRING = "string"
    LONG = "long"
    DATE = "date"
    DOUBLE = "double"

    @classmethod
    def from_string(cls, value: str) -> "ParameterType":
        try:
            return cls(value.lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise JobParametersInvalid(f"Unknown parameter type '{value}'. Valid: {valid}")

    @classmethod
    def infer(cls, value: Any) -> "ParameterType":
        """Infer the type of a native Python value."""
        if isinstance(value, bool):
            return cls.STRING
        if isinstance(value, int):
            return cls.LONG
        if isinstance(value, float):
            return cls.DOUBLE
        if isinstance(value, (date, datetime)):
            return cls.DATE
        return cls.STRING

    def coerce(self, value: Any, name: str = "?") -> Any:
        """
        Coerce a raw value into this type.

        Raises:
            JobParametersInvalid: If the value cannot be converted
        """
        try:
            if self is ParameterType.STRING:
                return str(value)
            if self is ParameterType.LONG:
                if isinstance(value, float) and not value.is_integer():
                    raise ValueError("not an integral value")
                return int(value)
            if self is ParameterType.DOUBLE:
                return float(value)
            if isinstance(value, (date, datetime)):
                return value
            text = str(value)
            if "T" in text or " " in text:
                return datetime.fromisoformat(text)
            return date.fromisoformat(text)
        except (TypeError, ValueError) as e:
            raise JobParametersInvalid(
                f"Parameter '{name}': cannot convert {value!r} to {self.value}: {e}"
            )


def _encode_value(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class JobParameter:
    """A single typed parameter value."""
    value: Any
    type: ParameterType = ParameterType.STRING
    identifying: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": _encode_value(self.value),
            "type": self.type.value,
            "identifying": self.identifying,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobParameter":
        ptype = ParameterType.from_string(data.get("type", "string"))
        return cls(
            value=ptype.coerce(data["value"]),
            type=ptype,
            identifying=data.get("identifying", True),
        )


class JobParameters(Mapping[str, JobParameter]):
    """
    Immutable mapping of parameter name to JobParameter.

    Native values passed to the constructor are wrapped as identifying
    parameters with an inferred type.
    """

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        wrapped: dict[str, JobParameter] = {}
        for name, value in (params or {}).items():
            if isinstance(value, JobParameter):
                wrapped[name] = value
            else:
                wrapped[name] = JobParameter(value, ParameterType.infer(value))
        self._params = wrapped

    def __getitem__(self, name: str) -> JobParameter:
        return self._params[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, JobParameters):
            return self._params == other._params
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.identity_key())

    def __repr__(self) -> str:
        return f"JobParameters({self.raw_values()!r})"

    def value(self, name: str, default: Any = None) -> Any:
        """Get the raw value of a parameter."""
        param = self._params.get(name)
        return param.value if param is not None else default

    def raw_values(self) -> dict[str, Any]:
        """Raw values of all parameters."""
        return {name: p.value for name, p in self._params.items()}

    def identifying(self) -> dict[str, JobParameter]:
        """Only the parameters that contribute to run identity."""
        return {name: p for name, p in self._params.items() if p.identifying}

    def identity_key(self) -> str:
        """
        SHA256 over the canonical JSON of the identifying parameters.

        Key order is irrelevant and non-identifying parameters never
        affect the result.
        """
        canonical = json.dumps(
            {name: [p.type.value, _encode_value(p.value)] for name, p in self.identifying().items()},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    def with_parameter(self, name: str, parameter: JobParameter) -> "JobParameters":
        """Return a copy with one parameter added or replaced."""
        merged = dict(self._params)
        merged[name] = parameter
        return JobParameters(merged)

    def to_dict(self) -> dict[str, Any]:
        return {name: p.to_dict() for name, p in self._params.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobParameters":
        return cls({name: JobParameter.from_dict(p) for name, p in data.items()})

    @classmethod
    def from_cli(cls, tokens: Iterable[str]) -> "JobParameters":
        """
        Parse CLI parameter tokens.

        Formats:
            name=value          identifying string
            name(long)=5        typed (string, long, date, double)
            -name=value         non-identifying

        Raises:
            JobParametersInvalid: On a malformed token or bad typed value
        """
        params: dict[str, JobParameter] = {}
        for token in tokens:
            match = CLI_PARAM_PATTERN.match(token)
            if not match:
                raise JobParametersInvalid(
                    f"Invalid parameter '{token}'. Expected name=value or name(type)=value"
                )
            name = match.group("name")
            ptype = ParameterType.from_string(match.group("type") or "string")
            params[name] = JobParameter(
                value=ptype.coerce(match.group("value"), name),
                type=ptype,
                identifying=match.group("neg") is None,
            )
        return cls(params)
