"""Query Predicate Model.

A store-independent condition tree produced by the search compiler and
executed by storage adapters. Criteria refer to logical field names; each
adapter maps those names onto its own columns.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class Operator(str, Enum):
    """Comparison operators a store must support."""
    EQ = "eq"                    # exact equality
    IEQ = "ieq"                  # case-insensitive equality
    ISTARTS = "istarts"          # case-insensitive prefix match
    ICONTAINS = "icontains"      # case-insensitive substring match
    GE = "ge"                    # greater than or equal
    LT = "lt"                    # strictly less than


@dataclass(frozen=True)
class FieldCriterion:
    """Compare one logical field with a value."""

    field: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class AnyOf:
    """Disjunction of criteria."""

    criteria: tuple['Criterion', ...]


@dataclass(frozen=True)
class AllOf:
    """Conjunction of criteria."""

    criteria: tuple['Criterion', ...]


@dataclass(frozen=True)
class MemberCriterion:
    """Holds when an obs group has a member of the given concept matching ``criterion``.

    Attributes:
        concept_reference: Terminology reference of the member ("CIEL:1410")
        criterion: Condition evaluated against the member's fields
    """

    concept_reference: str
    criterion: 'Criterion'


Criterion = Union[FieldCriterion, AnyOf, AllOf, MemberCriterion]


@dataclass(frozen=True)
class Predicate:
    """Top-level conjunction of criteria; no criteria means match all."""

    criteria: tuple[Criterion, ...] = ()

    @property
    def is_match_all(self) -> bool:
        return not self.criteria

    def and_(self, criterion: Criterion) -> 'Predicate':
        return Predicate(criteria=self.criteria + (criterion,))


MATCH_ALL = Predicate()
