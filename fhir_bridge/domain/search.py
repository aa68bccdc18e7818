"""Search Parameter Models.

Typed search parameters as handed over by the protocol layer. Every named
parameter is an AND-of-ORs expression (``AndOrParam``) over atomic tokens:
strings, coded tokens, date ranges and references to other resources. A
``SearchFilterSet`` collects the parameters of one search request; absent
parameters are simply not present in the set.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Generic, Iterator, Optional, TypeVar, Union

from fhir_bridge.domain.ports import InvalidSearchParameterError

T = TypeVar('T')

_DATE_PATTERN = re.compile(
    r"^(?P<year>\d{4})"
    r"(?:-(?P<month>\d{2})"
    r"(?:-(?P<day>\d{2})"
    r"(?:T(?P<hour>\d{2})"
    r"(?::(?P<minute>\d{2})"
    r"(?::(?P<second>\d{2})(?:\.\d+)?)?)?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?)?)?)?$"
)


class DatePrecision(str, Enum):
    """Unit of precision a date token was supplied with."""
    YEAR = "year"
    MONTH = "month"
    DAY = "day"
    HOUR = "hour"
    MINUTE = "minute"
    SECOND = "second"


class ParamPrefix(str, Enum):
    """Comparison prefixes accepted on date tokens."""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    SA = "sa"
    EB = "eb"
    AP = "ap"


@dataclass(frozen=True)
class StringParam:
    """A string token. ``exact`` and ``contains`` mirror the :exact/:contains modifiers."""

    value: str
    exact: bool = False
    contains: bool = False


@dataclass(frozen=True)
class TokenParam:
    """A coded token, ``[system|]code``."""

    code: str
    system: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> 'TokenParam':
        if "|" in raw:
            system, code = raw.split("|", 1)
            return cls(code=code, system=system or None)
        return cls(code=raw)


@dataclass(frozen=True)
class DateParam:
    """A date token with its prefix and the precision it was supplied with."""

    value: datetime
    precision: DatePrecision
    prefix: ParamPrefix = ParamPrefix.EQ

    @classmethod
    def parse(cls, raw: str) -> 'DateParam':
        """Parse ``[prefix]YYYY[-MM[-DD[Thh[:mm[:ss]][tz]]]]``.

        Timezone-qualified values are converted to naive UTC.

        Raises:
            InvalidSearchParameterError: If the value is not a valid date token
        """
        prefix = ParamPrefix.EQ
        text = raw.strip()
        if len(text) > 2 and text[:2].isalpha():
            try:
                prefix = ParamPrefix(text[:2].lower())
            except ValueError:
                raise InvalidSearchParameterError(f"Unknown date prefix in '{raw}'")
            text = text[2:]

        match = _DATE_PATTERN.match(text)
        if not match:
            raise InvalidSearchParameterError(f"Invalid date search value: '{raw}'")

        parts = match.groupdict()
        precision = DatePrecision.YEAR
        for name, unit in (
            ("month", DatePrecision.MONTH),
            ("day", DatePrecision.DAY),
            ("hour", DatePrecision.HOUR),
            ("minute", DatePrecision.MINUTE),
            ("second", DatePrecision.SECOND),
        ):
            if parts[name] is not None:
                precision = unit

        try:
            value = datetime(
                int(parts["year"]),
                int(parts["month"] or 1),
                int(parts["day"] or 1),
                int(parts["hour"] or 0),
                int(parts["minute"] or 0),
                int(parts["second"] or 0),
            )
        except ValueError as e:
            raise InvalidSearchParameterError(f"Invalid date search value: '{raw}' ({e})")

        if parts["tz"]:
            offset = timezone.utc if parts["tz"] == "Z" else datetime.strptime(parts["tz"], "%z").tzinfo
            try:
                value = value.replace(tzinfo=offset).astimezone(timezone.utc).replace(tzinfo=None)
            except OverflowError:
                value = datetime.max if value.year == datetime.max.year else datetime.min

        return cls(value=value, precision=precision, prefix=prefix)

    def period_start(self) -> datetime:
        """Start of the period the token denotes (inclusive)."""
        return self.value

    def period_end(self) -> datetime:
        """End of the period the token denotes (exclusive).

        Periods reaching past the last representable instant end at ``datetime.max``.
        """
        try:
            return self._next_period()
        except (ValueError, OverflowError):
            return datetime.max

    def _next_period(self) -> datetime:
        v = self.value
        if self.precision == DatePrecision.YEAR:
            return v.replace(year=v.year + 1)
        if self.precision == DatePrecision.MONTH:
            if v.month == 12:
                return v.replace(year=v.year + 1, month=1)
            return v.replace(month=v.month + 1)
        if self.precision == DatePrecision.DAY:
            return v + timedelta(days=1)
        if self.precision == DatePrecision.HOUR:
            return v + timedelta(hours=1)
        if self.precision == DatePrecision.MINUTE:
            return v + timedelta(minutes=1)
        return v + timedelta(seconds=1)


@dataclass(frozen=True)
class DateRangeParam:
    """An inclusive date range made of optional lower and upper bound tokens."""

    lower: Optional[DateParam] = None
    upper: Optional[DateParam] = None

    @classmethod
    def from_params(cls, params: list[DateParam]) -> 'DateRangeParam':
        """Combine date tokens into one range.

        ``eq`` tokens bound both sides; ``ge``/``gt`` the lower side and
        ``le``/``lt`` the upper side.

        Raises:
            InvalidSearchParameterError: On conflicting bounds or unsupported prefixes
        """
        lower: Optional[DateParam] = None
        upper: Optional[DateParam] = None

        def _set(current: Optional[DateParam], new: DateParam) -> DateParam:
            if current is not None:
                raise InvalidSearchParameterError("Date range can only have one lower and one upper bound")
            return new

        for param in params:
            if param.prefix == ParamPrefix.EQ:
                lower = _set(lower, DateParam(param.value, param.precision, ParamPrefix.GE))
                upper = _set(upper, DateParam(param.value, param.precision, ParamPrefix.LE))
            elif param.prefix in (ParamPrefix.GE, ParamPrefix.GT):
                lower = _set(lower, param)
            elif param.prefix in (ParamPrefix.LE, ParamPrefix.LT):
                upper = _set(upper, param)
            else:
                raise InvalidSearchParameterError(
                    f"Date prefix '{param.prefix.value}' is not supported"
                )
        return cls(lower=lower, upper=upper)


@dataclass(frozen=True)
class ReferenceParam:
    """A reference to another resource, ``[Type/]id``."""

    id_part: str
    resource_type: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> 'ReferenceParam':
        text = raw.strip().rstrip("/")
        if "/" in text:
            resource_type, id_part = text.rsplit("/", 1)
            resource_type = resource_type.rsplit("/", 1)[-1]
            return cls(id_part=id_part, resource_type=resource_type or None)
        return cls(id_part=text)


SearchToken = Union[StringParam, TokenParam, DateRangeParam, ReferenceParam]


@dataclass(frozen=True)
class AndOrParam(Generic[T]):
    """AND-of-ORs expression: the groups are conjoined, each group's tokens disjoined."""

    groups: tuple[tuple[T, ...], ...]

    @classmethod
    def of(cls, *tokens: T) -> 'AndOrParam[T]':
        """One OR-group per token (all tokens must match)."""
        return cls(groups=tuple((t,) for t in tokens))

    @classmethod
    def any_of(cls, *tokens: T) -> 'AndOrParam[T]':
        """A single OR-group (any token may match)."""
        return cls(groups=(tuple(tokens),))

    def and_(self, other: 'AndOrParam[T]') -> 'AndOrParam[T]':
        return AndOrParam(groups=self.groups + other.groups)


@dataclass
class SearchFilterSet:
    """Named, independently-optional search parameters of one request."""

    params: dict[str, Optional[AndOrParam]] = field(default_factory=dict)

    def add(self, name: str, param: Optional[AndOrParam]) -> 'SearchFilterSet':
        """Add a parameter, conjoining with any expression already present."""
        if param is None:
            self.params.setdefault(name, None)
            return self
        existing = self.params.get(name)
        self.params[name] = param if existing is None else existing.and_(param)
        return self

    def present(self) -> Iterator[tuple[str, AndOrParam]]:
        """Iterate over the parameters that were supplied."""
        for name, param in self.params.items():
            if param is not None:
                yield name, param

    def is_empty(self) -> bool:
        return not any(True for _ in self.present())
