"""Filter and grouping builder shared by every rollup.

Label filters and group-by keys are turned into a ``Predicate`` (a list of
typed terms, always scoped to one account) and a ``Grouping`` (an ordered
key extractor). Adapters either evaluate the predicate in Python with
``Predicate.matches`` or compile its terms into their own query language.

Dimension names resolve in this order:

- a field of the event stream (``service_name``, ``host_name``,
  ``metric_name``, ...), see ``FIELD_DIMENSIONS``;
- ``resource.<key>`` resolves to ``resource_attributes[<key>]``;
- anything else resolves to ``labels[<key>]``.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Self

from obsfly.core.exceptions import MissingAccountScopeError
from obsfly.core.models import FIELD_DIMENSIONS, EventKind, TelemetryEvent

FIELD = "field"
LABEL = "label"
RESOURCE = "resource"

_RESOURCE_PREFIX = "resource."


@dataclass(frozen=True)
class Dimension:
    """A resolvable key: an event field, a label or a resource attribute."""

    scope: str
    key: str

    def value_of(self, event: TelemetryEvent) -> str | None:
        """Return the event's value for this dimension, None when absent."""
        if self.scope == FIELD:
            value = getattr(event, self.key, None)
            return None if value is None else str(value)
        if self.scope == RESOURCE:
            return event.resource_attributes.get(self.key)
        return event.labels.get(self.key)


def resolve_dimension(kind: EventKind, name: str) -> Dimension:
    """Resolve a dimension name against an event stream."""
    fields = FIELD_DIMENSIONS[kind]
    if name in fields:
        return Dimension(FIELD, fields[name])
    if name.startswith(_RESOURCE_PREFIX) and len(name) > len(_RESOURCE_PREFIX):
        return Dimension(RESOURCE, name[len(_RESOURCE_PREFIX) :])
    return Dimension(LABEL, name)


# --- Predicate terms ---


@dataclass(frozen=True)
class Equals:
    """Dimension equals value. An absent dimension never matches."""

    dimension: Dimension
    value: str

    def matches(self, event: TelemetryEvent) -> bool:
        return self.dimension.value_of(event) == self.value


@dataclass(frozen=True)
class AnyOf:
    """Dimension is one of a fixed set of values."""

    dimension: Dimension
    values: tuple[str, ...]

    def matches(self, event: TelemetryEvent) -> bool:
        return self.dimension.value_of(event) in self.values


@dataclass(frozen=True)
class Contains:
    """Dimension contains a substring."""

    dimension: Dimension
    substring: str

    def matches(self, event: TelemetryEvent) -> bool:
        value = self.dimension.value_of(event)
        return value is not None and self.substring in value


PredicateTerm = Equals | AnyOf | Contains


@dataclass(frozen=True)
class Predicate:
    """Account scope plus a conjunction of typed terms."""

    kind: EventKind
    account_id: int | None
    terms: tuple[PredicateTerm, ...] = ()

    def require_account(self) -> int:
        """Return the account id, rejecting unscoped predicates."""
        if self.account_id is None:
            raise MissingAccountScopeError(
                f"{self.kind.value} query is missing the account scope"
            )
        return self.account_id

    def matches(self, event: TelemetryEvent) -> bool:
        if event.account_id != self.require_account():
            return False
        return all(term.matches(event) for term in self.terms)


class FilterBuilder:
    """Accumulates typed predicate terms, assembled once by ``build``.

    Example:
        ```python
        predicate = (
            FilterBuilder(account_id=1)
            .where("metric_name", "cpu_usage")
            .where_labels({"device": "sda"})
            .build()
        )
        ```
    """

    def __init__(self, account_id: int, kind: EventKind = EventKind.METRIC) -> None:
        self._account_id = account_id
        self._kind = kind
        self._terms: list[PredicateTerm] = []

    def _add(self, term: PredicateTerm) -> Self:
        # Equality on an already filtered dimension: the later value wins.
        if isinstance(term, Equals):
            for index, existing in enumerate(self._terms):
                if isinstance(existing, Equals) and existing.dimension == term.dimension:
                    self._terms[index] = term
                    return self
        self._terms.append(term)
        return self

    def where(self, name: str, value: str) -> Self:
        """Require ``name`` to equal ``value`` exactly."""
        return self._add(Equals(resolve_dimension(self._kind, name), value))

    def where_labels(self, filters: Mapping[str, str]) -> Self:
        """Require every filter key to be present with exactly that value."""
        for name, value in filters.items():
            self.where(name, value)
        return self

    def where_any(self, name: str, values: Iterable[str]) -> Self:
        """Require ``name`` to equal one of ``values``."""
        return self._add(AnyOf(resolve_dimension(self._kind, name), tuple(values)))

    def where_contains(self, name: str, substring: str) -> Self:
        """Require ``name`` to contain ``substring``."""
        return self._add(Contains(resolve_dimension(self._kind, name), substring))

    def build(self) -> Predicate:
        return Predicate(
            kind=self._kind, account_id=self._account_id, terms=tuple(self._terms)
        )


@dataclass(frozen=True)
class Grouping:
    """Ordered group-by keys and the composite key extractor.

    Absent values serialize as the empty string so every key tuple has the
    same arity and compares stably.
    """

    kind: EventKind
    keys: tuple[str, ...] = ()

    @property
    def dimensions(self) -> tuple[Dimension, ...]:
        return tuple(resolve_dimension(self.kind, key) for key in self.keys)

    def key(self, event: TelemetryEvent) -> tuple[str, ...]:
        return tuple(dim.value_of(event) or "" for dim in self.dimensions)

    def labels_for(self, key: tuple[str, ...]) -> dict[str, str]:
        """Map a composite key back to ``{group_by key: value}`` in order."""
        return dict(zip(self.keys, key, strict=True))


def build_filters(
    account_id: int,
    filters: Mapping[str, str],
    group_by: Iterable[str],
    kind: EventKind = EventKind.METRIC,
) -> tuple[Predicate, Grouping]:
    """Build the predicate and grouping for one set of filters and keys."""
    predicate = FilterBuilder(account_id, kind).where_labels(filters).build()
    return predicate, Grouping(kind, tuple(group_by))
