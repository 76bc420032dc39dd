"""Operation nodes stored, in order, inside a plan."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Tuple

from sqlalchemy.types import TypeEngine

from .expr import Expr, Order

if TYPE_CHECKING:
    from .plan import Plan

JOIN_KINDS = ("inner", "left", "right", "full", "semi", "anti")


# eq=False: nodes hold expressions, whose == builds SQL instead of comparing
@dataclass(frozen=True, eq=False)
class Source:
    name: str
    schema_name: Optional[str]
    types: Tuple[Tuple[str, TypeEngine], ...]


@dataclass(frozen=True, eq=False)
class Select:
    columns: Tuple[str, ...]


@dataclass(frozen=True, eq=False)
class Rename:
    # new name for each old name, in output order
    names: Tuple[Tuple[str, str], ...]


@dataclass(frozen=True, eq=False)
class Filter:
    predicate: Expr


@dataclass(frozen=True, eq=False)
class Mutate:
    name: str
    expr: Expr


@dataclass(frozen=True, eq=False)
class Join:
    other: "Plan"
    how: str
    by: Tuple[str, ...]


@dataclass(frozen=True, eq=False)
class Distinct:
    columns: Tuple[str, ...]
    keep_all: bool = False


@dataclass(frozen=True, eq=False)
class TopN:
    groups: Tuple[str, ...]
    n: int
    order: str
    largest: bool = True


@dataclass(frozen=True, eq=False)
class Summarize:
    groups: Tuple[str, ...]
    aggregations: Tuple[Tuple[str, Expr], ...]


@dataclass(frozen=True, eq=False)
class Arrange:
    keys: Tuple[Order, ...]


@dataclass(frozen=True, eq=False)
class Limit:
    n: int
