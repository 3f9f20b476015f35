"""Error taxonomy for the query engine.

Malformed durations and aggregation keywords are coerced to defaults and
never raise. Division by zero is coerced to 0. Only the cases below surface
as exceptions.
"""


class ObsflyError(Exception):
    """Base class for all obsfly errors."""


class DataSourceError(ObsflyError):
    """The event store failed to answer a query.

    Raised for driver errors, unavailable stores and expired deadlines.
    The whole request fails; no partial data is returned.
    """


class MissingAccountScopeError(ObsflyError):
    """A read was issued with a predicate that is not account scoped."""


class InvalidQueryError(ObsflyError):
    """A request is structurally invalid (e.g. no metrics to resolve)."""
