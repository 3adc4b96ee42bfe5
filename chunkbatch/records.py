"""Domain records flowing from readers to writers.

Person is the example record: a row with name, email, age and id fields,
mapped field for field from a delimited file and bulk-inserted into the
`person` table. Record factories are looked up by name from job
definitions (reader.record).
"""

from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Callable, Optional

from chunkbatch.errors import InvalidRecord, MalformedRecord


RecordFactory = Callable[[dict[str, str]], Any]


def _optional_int(fields: dict[str, str], name: str) -> Optional[int]:
    raw = (fields.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise MalformedRecord(f"field '{name}' is not an integer: {raw!r}")


@dataclass(frozen=True)
class Person:
    """A person row. `id` is None when the store should assign one."""
    name: str
    email: str
    age: Optional[int]
    id: Optional[int] = None

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "Person":
        """Map named columns onto a Person.

        Raises:
            MalformedRecord: If age or id is not an integer
        """
        return cls(
            name=(fields.get("name") or "").strip(),
            email=(fields.get("email") or "").strip(),
            age=_optional_int(fields, "age"),
            id=_optional_int(fields, "id"),
        )


def validate_person(person: Person) -> Person:
    """Check the Person validity rules.

    Raises:
        InvalidRecord: If name or email is empty, or age is missing or negative
    """
    if not person.name:
        raise InvalidRecord("name is required")
    if not person.email:
        raise InvalidRecord(f"email is required (name={person.name!r})")
    if person.age is None:
        raise InvalidRecord(f"age is required (name={person.name!r})")
    if person.age < 0:
        raise InvalidRecord(f"age must be non-negative, got {person.age} (name={person.name!r})")
    return person


def record_to_params(item: Any) -> dict[str, Any]:
    """Bind a record by field name: dataclasses and mappings are supported."""
    if is_dataclass(item) and not isinstance(item, type):
        return asdict(item)
    if isinstance(item, dict):
        return item
    raise TypeError(f"Cannot bind {type(item).__name__} by field name")


RECORD_FACTORIES: dict[str, RecordFactory] = {
    "person": Person.from_fields,
    "dict": dict,
}


def get_record_factory(name: str) -> RecordFactory:
    """Look up a record factory by name.

    Raises:
        KeyError: If no factory is registered under that name
    """
    if name not in RECORD_FACTORIES:
        raise KeyError(f"Unknown record type: {name}. Registered: {list(RECORD_FACTORIES.keys())}")
    return RECORD_FACTORIES[name]
