"""Search Predicate Compiler.

Folds a ``SearchFilterSet`` into a single ``Predicate`` for the store.

Each resource declares a table of ``SearchField``s mapping a search parameter
name to the logical store fields it constrains. For every parameter present
in the filter set the compiler folds its AND-of-ORs expression into a
criterion; the criteria of all parameters are then conjoined. Absent
parameters and empty OR-groups contribute nothing, so a filter set with no
parameters compiles to a match-all predicate.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fhir_bridge.domain.ports import InvalidSearchParameterError
from fhir_bridge.domain.predicate import (
    MATCH_ALL,
    AllOf,
    AnyOf,
    Criterion,
    FieldCriterion,
    MemberCriterion,
    Operator,
    Predicate,
)
from fhir_bridge.domain.search import (
    AndOrParam,
    DateParam,
    DateRangeParam,
    ParamPrefix,
    ReferenceParam,
    SearchFilterSet,
    StringParam,
    TokenParam,
)

logger = logging.getLogger(__name__)


class ParamKind(str, Enum):
    """Kinds of search parameters."""
    STRING = "string"
    TOKEN = "token"
    DATE = "date"
    REFERENCE = "reference"


_TOKEN_TYPES = {
    ParamKind.STRING: StringParam,
    ParamKind.TOKEN: TokenParam,
    ParamKind.DATE: DateRangeParam,
    ParamKind.REFERENCE: ReferenceParam,
}

_STRING_MODES = {
    "start": Operator.ISTARTS,
    "exact": Operator.IEQ,
    "contains": Operator.ICONTAINS,
}


@dataclass(frozen=True)
class SearchField:
    """Declaration of one search parameter of a resource.

    Attributes:
        name: Parameter name as exposed to clients ("family", "address-city")
        kind: Parameter kind
        fields: Logical store fields; a match on any of them satisfies a token
        system_field: Logical field holding the coding system (token kind)
        member_concept: Terminology reference of the obs-group member the
            fields belong to, for parameters over obs-group slots
        target_type: Resource type referenced (reference kind)
    """

    name: str
    kind: ParamKind
    fields: tuple[str, ...]
    system_field: Optional[str] = None
    member_concept: Optional[str] = None
    target_type: Optional[str] = None


class SearchPredicateCompiler:
    """Compile search filter sets against a resource's parameter table."""

    def __init__(self, search_fields: list[SearchField], string_mode: str = "start"):
        """Initialize compiler.

        Parameters:
            search_fields: Parameter table of the resource
            string_mode: Default string matching mode ("start", "exact" or "contains")
        """
        if string_mode not in _STRING_MODES:
            raise ValueError(f"Unknown string matching mode: {string_mode}")
        self.fields = {f.name: f for f in search_fields}
        self.string_mode = string_mode

    @property
    def parameter_names(self) -> list[str]:
        return list(self.fields)

    def compile(self, filter_set: SearchFilterSet) -> Predicate:
        """Fold every present parameter into one conjunctive predicate.

        Parameters:
            filter_set: Parameters of the search request

        Returns:
            Predicate: Conjunction of the compiled parameters, MATCH_ALL if none

        Raises:
            InvalidSearchParameterError: On an unknown parameter name or a
                token that does not fit its parameter
        """
        predicate = MATCH_ALL
        for name, param in filter_set.present():
            search_field = self.fields.get(name)
            if search_field is None:
                raise InvalidSearchParameterError(
                    f"Unknown search parameter '{name}'",
                    details={"parameter": name, "supported": self.parameter_names}
                )
            criterion = self._compile_param(search_field, param)
            if criterion is not None:
                predicate = predicate.and_(criterion)

        logger.debug(f"Compiled search into {len(predicate.criteria)} criteria")
        return predicate

    def _compile_param(self, search_field: SearchField, param: AndOrParam) -> Optional[Criterion]:
        conjuncts = []
        for group in param.groups:
            alternatives = [
                c for c in (self._compile_token(search_field, token) for token in group)
                if c is not None
            ]
            if not alternatives:
                continue
            conjuncts.append(alternatives[0] if len(alternatives) == 1 else AnyOf(tuple(alternatives)))

        if not conjuncts:
            return None
        criterion = conjuncts[0] if len(conjuncts) == 1 else AllOf(tuple(conjuncts))

        if search_field.member_concept:
            return MemberCriterion(search_field.member_concept, criterion)
        return criterion

    def _compile_token(self, search_field: SearchField, token) -> Optional[Criterion]:
        expected = _TOKEN_TYPES[search_field.kind]
        if not isinstance(token, expected):
            raise InvalidSearchParameterError(
                f"Search parameter '{search_field.name}' expects a {search_field.kind.value} value",
                details={"parameter": search_field.name}
            )

        if search_field.kind == ParamKind.STRING:
            return self._compile_string(search_field, token)
        if search_field.kind == ParamKind.TOKEN:
            return self._compile_coded(search_field, token)
        if search_field.kind == ParamKind.DATE:
            return self._compile_date(search_field, token)
        return self._compile_reference(search_field, token)

    def _compile_string(self, search_field: SearchField, token: StringParam) -> Optional[Criterion]:
        if not token.value:
            return None
        if token.exact:
            operator, value = Operator.EQ, token.value
        elif token.contains:
            operator, value = Operator.ICONTAINS, token.value
        else:
            operator, value = _STRING_MODES[self.string_mode], token.value
        return self._any_field(search_field, lambda f: FieldCriterion(f, operator, value))

    def _compile_coded(self, search_field: SearchField, token: TokenParam) -> Optional[Criterion]:
        if not token.code:
            return None
        code = FieldCriterion(search_field.fields[0], Operator.EQ, token.code)
        if search_field.system_field and token.system:
            return AllOf((code, FieldCriterion(search_field.system_field, Operator.EQ, token.system)))
        return code

    def _compile_date(self, search_field: SearchField, token: DateRangeParam) -> Optional[Criterion]:
        bounds = []
        if token.lower is not None:
            bounds.append(self._lower_bound(token.lower))
        if token.upper is not None:
            bounds.append(self._upper_bound(token.upper))
        if not bounds:
            return None

        def build(f: str) -> Criterion:
            criteria = tuple(FieldCriterion(f, operator, value) for operator, value in bounds)
            return criteria[0] if len(criteria) == 1 else AllOf(criteria)

        return self._any_field(search_field, build)

    @staticmethod
    def _lower_bound(param: DateParam):
        if param.prefix == ParamPrefix.GT:
            return Operator.GE, param.period_end()
        return Operator.GE, param.period_start()

    @staticmethod
    def _upper_bound(param: DateParam):
        if param.prefix == ParamPrefix.LT:
            return Operator.LT, param.period_start()
        return Operator.LT, param.period_end()

    def _compile_reference(self, search_field: SearchField, token: ReferenceParam) -> Optional[Criterion]:
        if not token.id_part:
            return None
        if token.resource_type and search_field.target_type and token.resource_type != search_field.target_type:
            raise InvalidSearchParameterError(
                f"Search parameter '{search_field.name}' references {search_field.target_type}, "
                f"not {token.resource_type}",
                details={"parameter": search_field.name}
            )
        return FieldCriterion(search_field.fields[0], Operator.EQ, token.id_part)

    @staticmethod
    def _any_field(search_field: SearchField, build) -> Criterion:
        criteria = tuple(build(f) for f in search_field.fields)
        return criteria[0] if len(criteria) == 1 else AnyOf(criteria)
