"""Search query parsing.

Turns URL query parameters into a ``SearchFilterSet`` plus a page window:

    - repeated parameters are conjoined (``family=a&family=b``)
    - comma separated values are disjoined (``family=a,b``)
    - string parameters accept ``:exact`` and ``:contains`` modifiers
    - ``_count`` and ``_offset`` select the page
    - date parameters take ``eq``/``ge``/``gt``/``le``/``lt`` prefixes and are
      combined into one range per parameter
"""

import logging
from typing import Optional

from fhir_bridge.domain.ports import InvalidSearchParameterError
from fhir_bridge.domain.search import (
    AndOrParam,
    DateParam,
    DateRangeParam,
    ReferenceParam,
    SearchFilterSet,
    StringParam,
    TokenParam,
)
from fhir_bridge.domain.services.search_compiler import ParamKind, SearchField

logger = logging.getLogger(__name__)

# Result parameters accepted and ignored
IGNORED_PARAMETERS = {"_format", "_pretty", "_summary", "_elements"}

STRING_MODIFIERS = {"exact", "contains"}


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _int_param(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise InvalidSearchParameterError(f"Parameter '{name}' must be an integer, got '{raw}'")
    if value < 0:
        raise InvalidSearchParameterError(f"Parameter '{name}' must not be negative, got {value}")
    return value


def parse_search_query(
    items: list[tuple[str, str]],
    search_fields: dict[str, SearchField]
) -> tuple[SearchFilterSet, int, Optional[int]]:
    """Parse query parameters.

    Parameters:
        items: Query parameters in request order (repeats allowed)
        search_fields: Parameter table of the resource, by name

    Returns:
        (filter set, offset, count); count is None when not given

    Raises:
        InvalidSearchParameterError: On unknown parameters, modifiers or malformed values
    """
    filter_set = SearchFilterSet()
    offset = 0
    count: Optional[int] = None
    dates: dict[str, list[DateParam]] = {}

    for raw_name, value in items:
        name, _, modifier = raw_name.partition(":")

        if name == "_count":
            count = _int_param(name, value)
            continue
        if name == "_offset":
            offset = _int_param(name, value)
            continue
        if name in IGNORED_PARAMETERS:
            continue

        search_field = search_fields.get(name)
        if search_field is None:
            raise InvalidSearchParameterError(
                f"Unknown search parameter '{raw_name}'",
                details={"parameter": raw_name, "supported": sorted(search_fields)}
            )

        if modifier and (search_field.kind != ParamKind.STRING or modifier not in STRING_MODIFIERS):
            raise InvalidSearchParameterError(f"Unsupported modifier '{modifier}' on parameter '{name}'")

        if search_field.kind == ParamKind.DATE:
            dates.setdefault(name, []).extend(DateParam.parse(v) for v in _split(value))
            continue

        if search_field.kind == ParamKind.STRING:
            tokens = [
                StringParam(v, exact=modifier == "exact", contains=modifier == "contains")
                for v in _split(value)
            ]
        elif search_field.kind == ParamKind.TOKEN:
            tokens = [TokenParam.parse(v) for v in _split(value)]
        else:
            tokens = [ReferenceParam.parse(v) for v in _split(value)]

        filter_set.add(name, AndOrParam.any_of(*tokens) if tokens else None)

    for name, params in dates.items():
        filter_set.add(name, AndOrParam.of(DateRangeParam.from_params(params)))

    logger.debug(f"Parsed search: {[n for n, _ in filter_set.present()]} offset={offset} count={count}")
    return filter_set, offset, count
