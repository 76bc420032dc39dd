import builtins


class QueryError(RuntimeError):
    """Base class for every error raised while building or running a plan."""


class ConnectionError(QueryError, builtins.ConnectionError):
    """The database cannot be reached or refused the credentials."""


class NotFoundError(QueryError):
    """A referenced schema or table does not exist."""


class UnknownColumnError(QueryError, KeyError):
    def __init__(self, missing, available):
        self.missing = tuple(missing)
        self.available = tuple(available)
        super().__init__(
            f"Unknown column(s) {list(self.missing)}; "
            f"available columns are {list(self.available)}"
        )

    # KeyError.__str__ would repr() the whole message
    __str__ = RuntimeError.__str__


class AmbiguousColumnError(QueryError):
    """A non-key column appears on both sides of a join."""


class KeyTypeError(QueryError, TypeError):
    """Join keys have incompatible types on the two sides."""


class UnsupportedExpressionError(QueryError):
    """An expression cannot be translated to SQL."""


class ExecutionError(QueryError):
    """The engine rejected or failed the translated query."""

    def __init__(self, message: str, sql: str = ""):
        self.sql = sql
        super().__init__(message)
