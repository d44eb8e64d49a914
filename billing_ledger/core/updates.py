"""
Tri-state field updates.

An optional column update is one of:

- ``UNCHANGED``     leave the column as it is
- ``CLEAR``         set the column to NULL
- ``SetTo(value)``  set the column to ``value``
"""
from dataclasses import dataclass
from typing import Any, Dict, Generic, TypeVar, Union

T = TypeVar("T")


class Unchanged:
    """Marker for a field that must not be written."""

    _instance = None

    def __new__(cls) -> "Unchanged":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNCHANGED"


class Clear:
    """Marker for a field that must be set to NULL."""

    _instance = None

    def __new__(cls) -> "Clear":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CLEAR"


@dataclass(frozen=True)
class SetTo(Generic[T]):
    """Set the field to ``value``."""

    value: T


UNCHANGED = Unchanged()
CLEAR = Clear()

FieldUpdate = Union[Unchanged, Clear, SetTo[T]]


def apply_field_update(values: Dict[str, Any], column: str, field_update: FieldUpdate) -> None:
    """
    Write a tri-state update into a column/value mapping.

    Args:
        values: Column values about to be written
        column: Column name
        field_update: UNCHANGED, CLEAR or SetTo(value)
    """
    if isinstance(field_update, SetTo):
        values[column] = field_update.value
    elif isinstance(field_update, Clear):
        values[column] = None
    elif not isinstance(field_update, Unchanged):
        raise TypeError(f"Not a field update: {field_update!r}")
