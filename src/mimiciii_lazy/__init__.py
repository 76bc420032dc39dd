from .db import DB
from .errors import (
    AmbiguousColumnError,
    ConnectionError,
    ExecutionError,
    KeyTypeError,
    NotFoundError,
    QueryError,
    UnknownColumnError,
    UnsupportedExpressionError,
)
from .expr import (
    coalesce,
    col,
    count,
    desc,
    first,
    if_else,
    lit,
    max_,
    mean,
    min_,
    mode,
    n,
    n_distinct,
    sql,
    sum_,
)
from .plan import GroupedPlan, Plan
from .registry import registry

__all__ = [
    "DB",
    "Plan",
    "GroupedPlan",
    "registry",
    "col",
    "lit",
    "sql",
    "desc",
    "if_else",
    "coalesce",
    "n",
    "count",
    "n_distinct",
    "sum_",
    "mean",
    "min_",
    "max_",
    "first",
    "mode",
    "QueryError",
    "ConnectionError",
    "NotFoundError",
    "UnknownColumnError",
    "AmbiguousColumnError",
    "KeyTypeError",
    "UnsupportedExpressionError",
    "ExecutionError",
]
