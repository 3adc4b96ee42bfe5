"""Chunk processors - optional per-record transform/validation.

A processor is any callable taking one item and returning the item to
write, or None to filter it out. Raising MalformedRecord (or InvalidRecord)
marks the item as a skip candidate under the step's skip policy.
"""

from typing import Any, Callable, Optional, Sequence

ItemProcessor = Callable[[Any], Optional[Any]]


class PassThroughProcessor:
    """Returns every item unchanged."""

    def __call__(self, item: Any) -> Any:
        return item


class ValidatingProcessor:
    """Runs a validator that raises on invalid items; valid items pass through."""

    def __init__(self, validator: Callable[[Any], Any]):
        self._validator = validator

    def __call__(self, item: Any) -> Any:
        self._validator(item)
        return item


class CompositeProcessor:
    """Chains processors; a None from any of them filters the item."""

    def __init__(self, processors: Sequence[ItemProcessor]):
        self._processors = list(processors)

    def __call__(self, item: Any) -> Optional[Any]:
        for processor in self._processors:
            item = processor(item)
            if item is None:
                return None
        return item
