"""
Lazy, immutable query plans.

A :class:`Plan` is a table reference plus an ordered tuple of operations and
the output schema those operations produce. Every method returns a new plan;
nothing reaches the database until :meth:`Plan.collect` (or one of the
helpers built on it) is called.

Example:
    ccu = (
        db.table("transfers")
        .filter(col("prev_careunit").is_null(), col("curr_careunit") == "CCU")
        .select("subject_id", "hadm_id")
        .distinct()
    )
    df = ccu.collect()
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from . import ops
from .compiler import compile_plan, render
from .errors import AmbiguousColumnError, KeyTypeError, UnknownColumnError, UnsupportedExpressionError
from .expr import BOOLEAN, Expr, Order, _wrap, affinity_of
from .expr import n as count_rows

if TYPE_CHECKING:
    from .db import DB

logger = logging.getLogger(__name__)

SchemaPairs = Tuple[Tuple[str, Optional[str]], ...]


def _names(columns: Sequence[Union[str, Sequence[str]]]) -> Tuple[str, ...]:
    # accept select("a", "b") as well as select(["a", "b"])
    if len(columns) == 1 and not isinstance(columns[0], str):
        columns = tuple(columns[0])
    for name in columns:
        if not isinstance(name, str):
            raise TypeError(f"Column names must be strings, got {name!r}")
    if len(set(columns)) != len(columns):
        raise ValueError(f"Duplicate column names in {list(columns)}")
    return tuple(columns)


@dataclass(frozen=True, eq=False)
class Plan:
    db: "DB"
    ops: Tuple[Any, ...]
    schema: SchemaPairs

    @classmethod
    def from_source(cls, db: "DB", source: ops.Source) -> "Plan":
        schema = tuple((name, affinity_of(type_)) for name, type_ in source.types)
        return cls(db=db, ops=(source,), schema=schema)

    # --- Schema helpers ---
    @property
    def columns(self) -> List[str]:
        return [name for name, _ in self.schema]

    @property
    def source(self) -> ops.Source:
        return self.ops[0]

    def _types(self) -> Dict[str, Optional[str]]:
        return dict(self.schema)

    def _require(self, names: Iterable[str]) -> None:
        types = self._types()
        missing = [name for name in names if name not in types]
        if missing:
            raise UnknownColumnError(missing, self.columns)

    def _then(self, op, schema: Iterable[Tuple[str, Optional[str]]]) -> "Plan":
        return replace(self, ops=self.ops + (op,), schema=tuple(schema))

    # --- Relational operations ---
    def select(self, *columns: Union[str, Sequence[str]]) -> "Plan":
        """Keep only ``columns``, in the order given."""
        names = _names(columns)
        if not names:
            raise ValueError("select() needs at least one column")
        self._require(names)
        types = self._types()
        return self._then(ops.Select(names), ((name, types[name]) for name in names))

    def rename(self, **names: str) -> "Plan":
        """Rename columns, ``new=old``; used to disambiguate before a join."""
        self._require(names.values())
        targets = list(names.values())
        if len(set(targets)) != len(targets):
            raise AmbiguousColumnError(f"Each column can only be renamed once: {names}")
        new_for = {old: new for new, old in names.items()}
        pairs = tuple((old, new_for.get(old, old)) for old in self.columns)
        out = [new for _, new in pairs]
        if len(set(out)) != len(out):
            raise AmbiguousColumnError(f"Renaming would duplicate a column: {out}")
        types = self._types()
        return self._then(ops.Rename(pairs), ((new, types[old]) for old, new in pairs))

    def filter(self, *predicates: Expr) -> "Plan":
        """Keep rows matching every predicate; conjoined with earlier filters."""
        if not predicates:
            return self
        types = self._types()
        for predicate in predicates:
            if not isinstance(predicate, Expr):
                raise UnsupportedExpressionError(
                    f"filter() needs an expression built from col(), got {predicate!r}"
                )
            predicate.validate(types)
            if predicate.has_aggregate():
                raise UnsupportedExpressionError(f"Aggregates are not allowed in filter(): {predicate!r}")
            kind = predicate.affinity(types)
            if kind not in (BOOLEAN, None):
                raise UnsupportedExpressionError(f"filter() predicate is {kind}, not boolean: {predicate!r}")
        combined = predicates[0]
        for predicate in predicates[1:]:
            combined = combined & predicate
        return self._then(ops.Filter(combined), self.schema)

    def mutate(self, **exprs: Any) -> "Plan":
        """Add or replace columns; each assignment sees the ones before it."""
        plan = self
        for name, value in exprs.items():
            expr = _wrap(value)
            types = plan._types()
            expr.validate(types)
            if expr.has_aggregate():
                raise UnsupportedExpressionError(
                    f"Aggregates are only allowed in summarize(), not mutate(): {expr!r}"
                )
            kind = expr.affinity(types)
            if name in types:
                schema = [(c, kind if c == name else t) for c, t in plan.schema]
            else:
                schema = list(plan.schema) + [(name, kind)]
            plan = plan._then(ops.Mutate(name, expr), schema)
        return plan

    def join(self, other: "Plan", by: Union[str, Sequence[str]], how: str = "inner") -> "Plan":
        """Join on equal ``by`` columns.

        ``how`` is one of inner, left, right, full, semi or anti. The result has
        the left columns followed by the right non-key columns (left columns
        only for semi and anti).
        """
        if how not in ops.JOIN_KINDS:
            raise ValueError(f"Unknown join kind {how!r}; expected one of {ops.JOIN_KINDS}")
        if not isinstance(other, Plan):
            raise TypeError(f"Can only join another Plan, got {type(other).__name__}")
        if other.db is not self.db:
            raise ValueError("Cannot join plans bound to different connections")
        keys = (by,) if isinstance(by, str) else _names(tuple(by))
        if not keys:
            raise ValueError("join() needs at least one key column")
        self._require(keys)
        other._require(keys)

        mine, theirs = self._types(), other._types()
        for key in keys:
            if mine[key] and theirs[key] and mine[key] != theirs[key]:
                raise KeyTypeError(
                    f"Join key {key!r} is {mine[key]} on the left but {theirs[key]} on the right"
                )

        if how in ("semi", "anti"):
            return self._then(ops.Join(other, how, keys), self.schema)

        clash = [c for c in other.columns if c in mine and c not in keys]
        if clash:
            raise AmbiguousColumnError(
                f"Columns {clash} exist on both sides of the join; rename() one side first"
            )
        schema = list(self.schema) + [(c, t) for c, t in other.schema if c not in keys]
        return self._then(ops.Join(other, how, keys), schema)

    def semi_join(self, other: "Plan", by: Union[str, Sequence[str]]) -> "Plan":
        return self.join(other, by, how="semi")

    def anti_join(self, other: "Plan", by: Union[str, Sequence[str]]) -> "Plan":
        return self.join(other, by, how="anti")

    def distinct(self, *columns: Union[str, Sequence[str]], keep_all: bool = False) -> "Plan":
        """Drop duplicate rows, optionally judged on ``columns`` only.

        With columns, only those columns are returned unless ``keep_all`` is
        set, in which case the first full row of each distinct key is kept.
        """
        names = _names(columns) if columns else tuple(self.columns)
        self._require(names)
        if keep_all:
            return self._then(ops.Distinct(names, keep_all=True), self.schema)
        types = self._types()
        return self._then(ops.Distinct(names), ((name, types[name]) for name in names))

    def group_by(self, *columns: Union[str, Sequence[str]]) -> "GroupedPlan":
        names = _names(columns)
        self._require(names)
        return GroupedPlan(self, names)

    def summarize(self, **aggregations: Any) -> "Plan":
        """Reduce the whole plan to a single row."""
        return GroupedPlan(self, ()).summarize(**aggregations)

    def count(self, *columns: Union[str, Sequence[str]], name: str = "n") -> "Plan":
        return self.group_by(*columns).summarize(**{name: count_rows()})

    def arrange(self, *keys: Union[str, Order]) -> "Plan":
        """Order rows; NULLs sort last. Only preserved as the final step or before head()."""
        orders = tuple(key if isinstance(key, Order) else Order(key) for key in keys)
        self._require(order.column for order in orders)
        return self._then(ops.Arrange(orders), self.schema)

    def head(self, n: int = 10) -> "Plan":
        if int(n) < 0:
            raise ValueError("head() needs a non-negative row count")
        n = int(n)
        last = self.ops[-1]
        if isinstance(last, ops.Limit):
            return replace(self, ops=self.ops[:-1] + (ops.Limit(min(n, last.n)),))
        return self._then(ops.Limit(n), self.schema)

    # --- Translation and materialization ---
    def to_select(self):
        """The SQLAlchemy ``Select`` this plan translates to."""
        return compile_plan(self)

    def show_query(self) -> str:
        return render(self.to_select(), self.db.engine.dialect)

    def collect(self) -> pd.DataFrame:
        """Run the plan and return every row; the only call that blocks on the database."""
        stmt = self.to_select()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Collecting plan over %s:\n%s", self.source.name, self.show_query())
        return self.db.query_df(stmt)

    def pull(self, column: str) -> pd.Series:
        return self.select(column).collect()[column]

    def preview(self, n: int = 10) -> pd.DataFrame:
        return self.head(n).collect()

    def __repr__(self) -> str:
        source = self.source
        table = f"{source.schema_name}.{source.name}" if source.schema_name else source.name
        return f"<Plan {table} [{', '.join(self.columns)}] ops={len(self.ops) - 1}>"

    def _repr_html_(self) -> str:
        return self.preview().to_html()


@dataclass(frozen=True, eq=False)
class GroupedPlan:
    """A plan partitioned by ``groups``, awaiting top_n() or summarize()."""

    plan: Plan
    groups: Tuple[str, ...]

    def ungroup(self) -> Plan:
        return self.plan

    def top_n(self, n: int, order_column: str, largest: bool = True) -> Plan:
        """Keep the ``n`` rows per group with the largest (or smallest) ``order_column``.

        Ties are broken by the remaining columns in ascending order, so exactly
        ``n`` rows (or fewer) come back per group.
        """
        if int(n) < 1:
            raise ValueError("top_n() needs n >= 1")
        self.plan._require([order_column])
        op = ops.TopN(self.groups, int(n), order_column, largest)
        return self.plan._then(op, self.plan.schema)

    def summarize(self, **aggregations: Any) -> Plan:
        """One row per group with the given aggregates, e.g. ``n=n(), first_icu=first("icustay_id")``."""
        if not aggregations:
            raise ValueError("summarize() needs at least one aggregation")
        types = self.plan._types()
        schema = [(g, types[g]) for g in self.groups]
        pairs = []
        for name, value in aggregations.items():
            expr = _wrap(value)
            expr.validate(types)
            if not expr.has_aggregate():
                raise UnsupportedExpressionError(f"summarize() needs an aggregate for {name!r}, got {expr!r}")
            stray = sorted(expr.bare_columns() - set(self.groups))
            if stray:
                raise UnsupportedExpressionError(
                    f"{name!r} uses {stray} outside an aggregate; they are not grouping columns"
                )
            if name in self.groups:
                raise AmbiguousColumnError(f"Aggregate {name!r} would overwrite a grouping column")
            pairs.append((name, expr))
            schema.append((name, expr.affinity(types)))
        return self.plan._then(ops.Summarize(self.groups, tuple(pairs)), schema)

    def count(self, name: str = "n") -> Plan:
        return self.summarize(**{name: count_rows()})
