"""
Ordered enumerations for lamps and grades.

Every game declares its lamps and grades as an OrderedEnum; the position of a
value in that sequence is its ordinal index, and a higher index is better.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterator, Mapping, Tuple

from scoretracker.utils.score_exceptions import UnknownOrdinalValueError


class Ordering(Enum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


@dataclass(frozen=True)
class OrderedEnum:
    """An immutable, ordered sequence of string values with O(1) index lookup."""
    name: str
    values: Tuple[str, ...]
    _index: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if len(set(self.values)) != len(self.values):
            raise ValueError(f"{self.name} contains duplicate values")
        object.__setattr__(self, 'values', tuple(self.values))
        object.__setattr__(
            self, '_index', MappingProxyType({v: i for i, v in enumerate(self.values)})
        )

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __contains__(self, value) -> bool:
        return value in self._index

    def index_of(self, value: str) -> int:
        try:
            return self._index[value]
        except (KeyError, TypeError):
            raise UnknownOrdinalValueError(self.name, value) from None

    def value_at(self, index: int) -> str:
        if not 0 <= index < len(self.values):
            raise UnknownOrdinalValueError(self.name, index)
        return self.values[index]

    @property
    def lowest(self) -> str:
        return self.values[0]

    @property
    def highest(self) -> str:
        return self.values[-1]


def ordinal_index(ordered: OrderedEnum, value: str) -> int:
    """Position of value in ordered. Undeclared values raise, they never clamp."""
    return ordered.index_of(value)


def compare(ordered: OrderedEnum, a: str, b: str) -> Ordering:
    """Compare two values of the same enumeration by index order."""
    ia = ordered.index_of(a)
    ib = ordered.index_of(b)
    if ia < ib:
        return Ordering.LESS
    if ia > ib:
        return Ordering.GREATER
    return Ordering.EQUAL
