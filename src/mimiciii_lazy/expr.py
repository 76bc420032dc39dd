"""
Column expressions for lazy plans.

Expressions are small immutable trees built with ``col()``, ``lit()`` and the
Python operators. They know which columns they reference and what kind of
value they produce, so a plan can validate them against its schema before
anything is sent to the database. Translation to SQLAlchemy happens only when
the plan is compiled.

Example:
    (col("prev_careunit").is_null()) & (col("curr_careunit") == "CCU")
"""
from __future__ import annotations

import datetime as dt
import decimal
import operator
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

import sqlalchemy as sa

from .errors import UnknownColumnError, UnsupportedExpressionError

Schema = Mapping[str, Optional[str]]

NUMERIC = "numeric"
STRING = "string"
DATETIME = "datetime"
BOOLEAN = "boolean"

_COMPARISONS = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "le": operator.le,
    "gt": operator.gt,
    "ge": operator.ge,
}
_ARITHMETIC = {
    "add": operator.add,
    "sub": operator.sub,
    "mul": operator.mul,
    "truediv": operator.truediv,
    "mod": operator.mod,
}
_DATE_PARTS = ("year", "month", "day", "hour")


def affinity_of(type_: sa.types.TypeEngine) -> Optional[str]:
    """Map a SQLAlchemy column type onto the coarse affinity used for checks."""
    if isinstance(type_, sa.Boolean):
        return BOOLEAN
    if isinstance(type_, (sa.DateTime, sa.Date, sa.Time)):
        return DATETIME
    if isinstance(type_, (sa.Integer, sa.Numeric, sa.Float)):
        return NUMERIC
    if isinstance(type_, (sa.String, sa.Enum)):
        return STRING
    return None


def _literal_affinity(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, (int, float, decimal.Decimal)):
        return NUMERIC
    if isinstance(value, str):
        return STRING
    if isinstance(value, (dt.date, dt.datetime, dt.time)):
        return DATETIME
    return None


def _wrap(value: Any) -> "Expr":
    if isinstance(value, Expr):
        return value
    return Lit(value)


class Expr:
    """Base class of every expression node."""

    children: Tuple["Expr", ...] = ()

    # --- Python operators build new nodes ---
    def __eq__(self, other):  # type: ignore[override]
        return BinOp("eq", self, _wrap(other))

    def __ne__(self, other):  # type: ignore[override]
        return BinOp("ne", self, _wrap(other))

    def __lt__(self, other):
        return BinOp("lt", self, _wrap(other))

    def __le__(self, other):
        return BinOp("le", self, _wrap(other))

    def __gt__(self, other):
        return BinOp("gt", self, _wrap(other))

    def __ge__(self, other):
        return BinOp("ge", self, _wrap(other))

    def __and__(self, other):
        return BinOp("and", self, _wrap(other))

    def __rand__(self, other):
        return BinOp("and", _wrap(other), self)

    def __or__(self, other):
        return BinOp("or", self, _wrap(other))

    def __ror__(self, other):
        return BinOp("or", _wrap(other), self)

    def __invert__(self):
        return Not(self)

    def __add__(self, other):
        return BinOp("add", self, _wrap(other))

    def __radd__(self, other):
        return BinOp("add", _wrap(other), self)

    def __sub__(self, other):
        return BinOp("sub", self, _wrap(other))

    def __rsub__(self, other):
        return BinOp("sub", _wrap(other), self)

    def __mul__(self, other):
        return BinOp("mul", self, _wrap(other))

    def __rmul__(self, other):
        return BinOp("mul", _wrap(other), self)

    def __truediv__(self, other):
        return BinOp("truediv", self, _wrap(other))

    def __rtruediv__(self, other):
        return BinOp("truediv", _wrap(other), self)

    def __mod__(self, other):
        return BinOp("mod", self, _wrap(other))

    def __bool__(self):
        raise UnsupportedExpressionError(
            "Expressions have no truth value; use & | ~ instead of and/or/not "
            "and avoid chained comparisons"
        )

    __hash__ = object.__hash__

    # --- Vocabulary ---
    def is_null(self) -> "Expr":
        return IsNull(self)

    def not_null(self) -> "Expr":
        return IsNull(self, negate=True)

    def contains(self, pattern: str) -> "Expr":
        return Match("contains", self, pattern)

    def startswith(self, prefix: str) -> "Expr":
        return Match("startswith", self, prefix)

    def endswith(self, suffix: str) -> "Expr":
        return Match("endswith", self, suffix)

    def isin(self, values) -> "Expr":
        return IsIn(self, tuple(values))

    def lower(self) -> "Expr":
        return Func("lower", self)

    def upper(self) -> "Expr":
        return Func("upper", self)

    def year(self) -> "Expr":
        return Func("year", self)

    def month(self) -> "Expr":
        return Func("month", self)

    def day(self) -> "Expr":
        return Func("day", self)

    def hour(self) -> "Expr":
        return Func("hour", self)

    # --- Introspection ---
    def walk(self) -> Iterator["Expr"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def columns(self) -> set:
        return {node.name for node in self.walk() if isinstance(node, Col)}

    def bare_columns(self) -> set:
        """Columns referenced outside of any aggregate."""
        if isinstance(self, Col):
            return {self.name}
        if isinstance(self, Aggregate):
            return set()
        out = set()
        for child in self.children:
            out |= child.bare_columns()
        return out

    def has_aggregate(self) -> bool:
        return any(isinstance(node, Aggregate) for node in self.walk())

    def validate(self, schema: Schema) -> None:
        missing = sorted(self.columns() - set(schema))
        if missing:
            raise UnknownColumnError(missing, schema)
        for node in self.walk():
            node._check(schema)

    def _check(self, schema: Schema) -> None:
        pass

    def affinity(self, schema: Schema) -> Optional[str]:
        return None

    def compile(self, cols, ctx: Optional[Dict[int, Any]] = None):
        raise NotImplementedError


class Col(Expr):
    def __init__(self, name: str):
        if not isinstance(name, str) or not name:
            raise UnsupportedExpressionError(f"Invalid column name: {name!r}")
        self.name = name

    def __repr__(self):
        return f"col({self.name!r})"

    def affinity(self, schema):
        return schema.get(self.name)

    def compile(self, cols, ctx=None):
        return cols[self.name]


class Lit(Expr):
    def __init__(self, value: Any):
        if type(value).__module__ == "numpy" and hasattr(value, "item"):
            value = value.item()
        if value is not None and _literal_affinity(value) is None:
            raise UnsupportedExpressionError(
                f"Cannot use {type(value).__name__} value {value!r} in a query"
            )
        self.value = value

    def __repr__(self):
        return f"lit({self.value!r})"

    def affinity(self, schema):
        return _literal_affinity(self.value)

    def compile(self, cols, ctx=None):
        if self.value is None:
            return sa.null()
        return sa.literal(self.value)


class Sql(Expr):
    """Raw SQL fragment passed through to the engine unchecked."""

    def __init__(self, text: str):
        self.text = text

    def __repr__(self):
        return f"sql({self.text!r})"

    def compile(self, cols, ctx=None):
        return sa.literal_column(self.text)


class BinOp(Expr):
    def __init__(self, op: str, left: Expr, right: Expr):
        self.op = op
        self.left = left
        self.right = right
        self.children = (left, right)

    def __repr__(self):
        return f"({self.left!r} {self.op} {self.right!r})"

    def _check(self, schema):
        if self.op in ("and", "or"):
            for side in self.children:
                aff = side.affinity(schema)
                if aff not in (BOOLEAN, None):
                    raise UnsupportedExpressionError(
                        f"'{self.op}' needs boolean operands, got {aff} in {side!r}"
                    )
        elif self.op in _ARITHMETIC:
            for side in self.children:
                if side.affinity(schema) in (STRING, BOOLEAN):
                    raise UnsupportedExpressionError(
                        f"Arithmetic '{self.op}' is not defined for {side!r}"
                    )

    def affinity(self, schema):
        if self.op in _COMPARISONS or self.op in ("and", "or"):
            return BOOLEAN
        left, right = (side.affinity(schema) for side in self.children)
        if DATETIME in (left, right):
            return None
        return NUMERIC

    def compile(self, cols, ctx=None):
        left = self.left.compile(cols, ctx)
        if self.op in ("eq", "ne") and isinstance(self.right, Lit) and self.right.value is None:
            return left.is_(None) if self.op == "eq" else left.is_not(None)
        right = self.right.compile(cols, ctx)
        if self.op == "and":
            return sa.and_(left, right)
        if self.op == "or":
            return sa.or_(left, right)
        if self.op in _COMPARISONS:
            return _COMPARISONS[self.op](left, right)
        return _ARITHMETIC[self.op](left, right)


class Not(Expr):
    def __init__(self, operand: Expr):
        self.operand = operand
        self.children = (operand,)

    def __repr__(self):
        return f"~{self.operand!r}"

    def affinity(self, schema):
        return BOOLEAN

    def compile(self, cols, ctx=None):
        return sa.not_(self.operand.compile(cols, ctx))


class IsNull(Expr):
    def __init__(self, operand: Expr, negate: bool = False):
        self.operand = operand
        self.negate = negate
        self.children = (operand,)

    def __repr__(self):
        return f"{self.operand!r}.{'not_null' if self.negate else 'is_null'}()"

    def affinity(self, schema):
        return BOOLEAN

    def compile(self, cols, ctx=None):
        target = self.operand.compile(cols, ctx)
        return target.is_not(None) if self.negate else target.is_(None)


class Match(Expr):
    """Substring / prefix / suffix test, with LIKE wildcards escaped."""

    def __init__(self, kind: str, operand: Expr, pattern: str):
        if not isinstance(pattern, str):
            raise UnsupportedExpressionError(f"{kind}() needs a string, got {pattern!r}")
        self.kind = kind
        self.operand = operand
        self.pattern = pattern
        self.children = (operand,)

    def __repr__(self):
        return f"{self.operand!r}.{self.kind}({self.pattern!r})"

    def _check(self, schema):
        if self.operand.affinity(schema) not in (STRING, None):
            raise UnsupportedExpressionError(f"{self.kind}() applies to strings only: {self!r}")

    def affinity(self, schema):
        return BOOLEAN

    def compile(self, cols, ctx=None):
        target = self.operand.compile(cols, ctx)
        return getattr(target, self.kind)(self.pattern, autoescape=True)


class IsIn(Expr):
    def __init__(self, operand: Expr, values: Tuple[Any, ...]):
        self.operand = operand
        self.values = tuple(Lit(v).value for v in values)
        self.children = (operand,)

    def __repr__(self):
        return f"{self.operand!r}.isin({list(self.values)!r})"

    def affinity(self, schema):
        return BOOLEAN

    def compile(self, cols, ctx=None):
        return self.operand.compile(cols, ctx).in_(self.values)


class Func(Expr):
    def __init__(self, name: str, operand: Expr):
        self.name = name
        self.operand = operand
        self.children = (operand,)

    def __repr__(self):
        return f"{self.operand!r}.{self.name}()"

    def _check(self, schema):
        aff = self.operand.affinity(schema)
        expected = DATETIME if self.name in _DATE_PARTS else STRING
        if aff not in (expected, None):
            raise UnsupportedExpressionError(f"{self.name}() is not defined for {aff} {self.operand!r}")

    def affinity(self, schema):
        return NUMERIC if self.name in _DATE_PARTS else STRING

    def compile(self, cols, ctx=None):
        target = self.operand.compile(cols, ctx)
        if self.name in _DATE_PARTS:
            return sa.extract(self.name, target)
        return getattr(sa.func, self.name)(target)


class IfElse(Expr):
    def __init__(self, condition: Expr, yes: Expr, no: Expr):
        self.condition = condition
        self.yes = yes
        self.no = no
        self.children = (condition, yes, no)

    def __repr__(self):
        return f"if_else({self.condition!r}, {self.yes!r}, {self.no!r})"

    def _check(self, schema):
        if self.condition.affinity(schema) not in (BOOLEAN, None):
            raise UnsupportedExpressionError(f"if_else() condition is not boolean: {self.condition!r}")

    def affinity(self, schema):
        kinds = {self.yes.affinity(schema), self.no.affinity(schema)} - {None}
        return kinds.pop() if len(kinds) == 1 else None

    def compile(self, cols, ctx=None):
        return sa.case(
            (self.condition.compile(cols, ctx), self.yes.compile(cols, ctx)),
            else_=self.no.compile(cols, ctx),
        )


class Coalesce(Expr):
    def __init__(self, *args: Expr):
        self.children = tuple(args)

    def __repr__(self):
        return f"coalesce({', '.join(map(repr, self.children))})"

    def affinity(self, schema):
        for arg in self.children:
            aff = arg.affinity(schema)
            if aff is not None:
                return aff
        return None

    def compile(self, cols, ctx=None):
        return sa.func.coalesce(*(arg.compile(cols, ctx) for arg in self.children))


class Aggregate(Expr):
    """Reduces a group of rows to a single value; only valid in summarize()."""

    _functions = {
        "count": sa.func.count,
        "sum": sa.func.sum,
        "mean": sa.func.avg,
        "min": sa.func.min,
        "max": sa.func.max,
    }

    def __init__(self, fn: str, operand: Optional[Expr] = None):
        self.fn = fn
        self.operand = operand
        self.children = () if operand is None else (operand,)

    def __repr__(self):
        return f"{self.fn}({'' if self.operand is None else repr(self.operand)})"

    def _check(self, schema):
        nested = [node for child in self.children for node in child.walk() if isinstance(node, Aggregate)]
        if nested:
            raise UnsupportedExpressionError(f"Nested aggregate in {self!r}")
        if self.fn in ("sum", "mean") and self.operand.affinity(schema) in (STRING, DATETIME):
            raise UnsupportedExpressionError(f"{self.fn}() needs a numeric column: {self!r}")

    def affinity(self, schema):
        if self.fn in ("min", "max", "mode"):
            return self.operand.affinity(schema)
        return NUMERIC

    def compile(self, cols, ctx=None):
        if self.fn == "n":
            return sa.func.count()
        target = self.operand.compile(cols, ctx)
        if self.fn == "n_distinct":
            return sa.func.count(sa.distinct(target))
        if self.fn == "mode":
            return sa.func.mode().within_group(target)
        return self._functions[self.fn](target)


class First(Aggregate):
    """First value per group; row order comes from ``order_by`` or the engine."""

    def __init__(self, operand: Expr, order_by: Optional[Expr] = None, descending: bool = False):
        super().__init__("first", operand)
        self.order_by = order_by
        self.descending = descending
        if order_by is not None:
            self.children = (operand, order_by)

    def affinity(self, schema):
        return self.operand.affinity(schema)

    def compile(self, cols, ctx=None):
        rank = (ctx or {}).get(id(self))
        if rank is None:
            raise UnsupportedExpressionError("first() is only valid inside summarize()")
        return sa.func.max(sa.case((rank == 1, self.operand.compile(cols, ctx)), else_=None))


@dataclass(frozen=True)
class Order:
    """Sort key for arrange(); build with ``desc("col")`` or a plain name."""

    column: str
    descending: bool = False


# --- Public constructors ---
def col(name: str) -> Col:
    return Col(name)


def lit(value: Any) -> Lit:
    return Lit(value)


def sql(text: str) -> Sql:
    """Escape hatch: a SQL fragment the engine interprets as-is (e.g. ``date_part``)."""
    return Sql(text)


def if_else(condition: Expr, yes: Any, no: Any) -> IfElse:
    return IfElse(condition, _wrap(yes), _wrap(no))


def coalesce(*args: Any) -> Coalesce:
    return Coalesce(*(_wrap(a) for a in args))


def desc(column: str) -> Order:
    return Order(column, descending=True)


def _subject(value: Union[Expr, str]) -> Expr:
    # aggregate subjects may be given by column name
    return Col(value) if isinstance(value, str) else _wrap(value)


def n() -> Aggregate:
    return Aggregate("n")


def count(x: Union[Expr, str]) -> Aggregate:
    return Aggregate("count", _subject(x))


def n_distinct(x: Union[Expr, str]) -> Aggregate:
    return Aggregate("n_distinct", _subject(x))


def sum_(x: Union[Expr, str]) -> Aggregate:
    return Aggregate("sum", _subject(x))


def mean(x: Union[Expr, str]) -> Aggregate:
    return Aggregate("mean", _subject(x))


def min_(x: Union[Expr, str]) -> Aggregate:
    return Aggregate("min", _subject(x))


def max_(x: Union[Expr, str]) -> Aggregate:
    return Aggregate("max", _subject(x))


def mode(x: Union[Expr, str]) -> Aggregate:
    """Most frequent value; rendered as PostgreSQL's ``mode() WITHIN GROUP``."""
    return Aggregate("mode", _subject(x))


def first(x: Union[Expr, str], order_by: Union[Expr, str, None] = None, descending: bool = False) -> First:
    return First(_subject(x), None if order_by is None else _subject(order_by), descending)
