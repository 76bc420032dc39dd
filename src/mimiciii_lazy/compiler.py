"""
Translate a plan into a single SQLAlchemy ``Select``.

Operations that only narrow, rename, extend or order the current statement
(select, rename, filter, mutate, semi and anti joins, distinct, arrange) are
folded into it. Joins, windows and grouping, and any step after a distinct,
arrange or limit, wrap the statement built so far in a named subquery
(``q01``, ``q02``, ...) and select from it. ``Limit`` attaches to the statement it
follows, so ``arrange(...).head(n)`` keeps its order.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List

import sqlalchemy as sa
from sqlalchemy.engine import Dialect
from sqlalchemy.exc import CompileError

from . import ops
from .expr import Expr, First, Sql

logger = logging.getLogger(__name__)


def _fresh(name: str, taken: Iterable[str]) -> str:
    taken = set(taken)
    while name in taken:
        name = "_" + name
    return name


def _raw(expr: Expr) -> bool:
    # sql() text names columns as the engine sees them, so it needs a subquery
    return any(isinstance(node, Sql) for node in expr.walk())


class PlanCompiler:
    def __init__(self):
        self._count = 0
        # statements with no grouping, window, distinct, order or limit of their own
        self._flat: Dict[int, sa.Select] = {}

    def _alias(self) -> str:
        self._count += 1
        return f"q{self._count:02d}"

    def _sub(self, stmt: sa.Select):
        return stmt.subquery(self._alias())

    def _open(self, stmt: sa.Select) -> sa.Select:
        self._flat[id(stmt)] = stmt
        return stmt

    def _level(self, stmt: sa.Select, fold: bool = True):
        """The statement to extend and the columns to build on."""
        if fold and self._flat.get(id(stmt)) is stmt:
            return stmt, stmt.selected_columns
        sub = self._sub(stmt)
        return sa.select(*sub.c), sub.c

    def compile(self, plan) -> sa.Select:
        stmt = None
        for op in plan.ops:
            handler = getattr(self, "_" + type(op).__name__.lower())
            stmt = handler(stmt, op)
        return stmt

    def _source(self, stmt, op: ops.Source):
        table = sa.table(
            op.name,
            *(sa.column(name, type_) for name, type_ in op.types),
            schema=op.schema_name,
        )
        return self._open(sa.select(*table.c))

    def _select(self, stmt, op: ops.Select):
        base, cols = self._level(stmt)
        columns = [cols[name] for name in op.columns]
        return self._open(base.with_only_columns(*columns, maintain_column_froms=True))

    def _rename(self, stmt, op: ops.Rename):
        base, cols = self._level(stmt)
        columns = [cols[old].label(new) for old, new in op.names]
        return self._open(base.with_only_columns(*columns, maintain_column_froms=True))

    def _filter(self, stmt, op: ops.Filter):
        base, cols = self._level(stmt, fold=not _raw(op.predicate))
        return self._open(base.where(op.predicate.compile(cols)))

    def _mutate(self, stmt, op: ops.Mutate):
        base, cols = self._level(stmt, fold=not _raw(op.expr))
        value = op.expr.compile(cols).label(op.name)
        columns = [value if name == op.name else c for name, c in cols.items()]
        if op.name not in cols:
            columns.append(value)
        return self._open(base.with_only_columns(*columns, maintain_column_froms=True))

    def _join(self, stmt, op: ops.Join):
        right = self._sub(self.compile(op.other))

        if op.how in ("semi", "anti"):
            base, cols = self._level(stmt)
            on = sa.and_(*(cols[k] == right.c[k] for k in op.by))
            match = sa.select(sa.literal(1)).select_from(right).where(on).exists()
            return self._open(base.where(match if op.how == "semi" else ~match))

        left = self._sub(stmt)
        on = sa.and_(*(left.c[k] == right.c[k] for k in op.by))
        if op.how == "right":
            keys = {k: right.c[k] for k in op.by}
            joined = right.join(left, on, isouter=True)
        else:
            keys = {k: left.c[k] for k in op.by}
            joined = left.join(right, on, isouter=op.how == "left", full=op.how == "full")
        if op.how == "full":
            keys = {k: sa.func.coalesce(left.c[k], right.c[k]).label(k) for k in op.by}

        columns = [keys.get(c.name, c) for c in left.c]
        columns += [c for c in right.c if c.name not in keys]
        return self._open(sa.select(*columns).select_from(joined))

    def _distinct(self, stmt, op: ops.Distinct):
        if op.keep_all:
            return self._first_per_group(self._sub(stmt), op.columns, [])
        base, cols = self._level(stmt)
        columns = [cols[name] for name in op.columns]
        return base.with_only_columns(*columns, maintain_column_froms=True).distinct()

    def _topn(self, stmt, op: ops.TopN):
        sub = self._sub(stmt)
        key = sub.c[op.order]
        order = key.desc() if op.largest else key.asc()
        return self._first_per_group(sub, op.groups, [order.nulls_last()], n=op.n, skip=(op.order,))

    def _first_per_group(self, sub, groups, order_by: List, n: int = 1, skip=()):
        """Keep the first ``n`` rows per group.

        Ties on ``order_by`` fall back to the remaining columns in column
        order, ascending with NULLs last, so the same rows come back on every
        run.
        """
        tiebreak = [c.asc().nulls_last() for c in sub.c if c.name not in groups and c.name not in skip]
        rank_name = _fresh("_rank", sub.c.keys())
        rank = sa.func.row_number().over(
            partition_by=[sub.c[g] for g in groups] or None,
            order_by=order_by + tiebreak or None,
        )
        ranked = sa.select(*sub.c, rank.label(rank_name)).subquery(self._alias())
        kept = sa.select(*(c for c in ranked.c if c.name != rank_name))
        return self._open(kept.where(ranked.c[rank_name] <= n))

    def _summarize(self, stmt, op: ops.Summarize):
        sub = self._sub(stmt)
        firsts = [
            node
            for _, expr in op.aggregations
            for node in expr.walk()
            if isinstance(node, First)
        ]
        ctx: Dict[int, sa.ColumnElement] = {}
        if firsts:
            # number the rows of each group once per first() call
            extra, names = [], list(sub.c.keys())
            for i, node in enumerate(firsts):
                name = _fresh(f"_first_{i}", names)
                names.append(name)
                order_by = None
                if node.order_by is not None:
                    key = node.order_by.compile(sub.c)
                    order_by = (key.desc() if node.descending else key.asc()).nulls_last()
                extra.append(
                    sa.func.row_number()
                    .over(partition_by=[sub.c[g] for g in op.groups] or None, order_by=order_by)
                    .label(name)
                )
            sub = sa.select(*sub.c, *extra).subquery(self._alias())
            ctx = {id(node): sub.c[name] for node, name in zip(firsts, names[-len(firsts):])}

        groups = [sub.c[g] for g in op.groups]
        values = [expr.compile(sub.c, ctx).label(name) for name, expr in op.aggregations]
        # n() names no column, so the FROM has to be explicit
        result = sa.select(*groups, *values).select_from(sub)
        return result.group_by(*groups) if groups else result

    def _arrange(self, stmt, op: ops.Arrange):
        base, cols = self._level(stmt)
        keys = []
        for key in op.keys:
            column = cols[key.column]
            keys.append((column.desc() if key.descending else column.asc()).nulls_last())
        return base.order_by(*keys)

    def _limit(self, stmt, op: ops.Limit):
        return stmt.limit(op.n)


def compile_plan(plan) -> sa.Select:
    return PlanCompiler().compile(plan)


def render(stmt: sa.Select, dialect: Dialect) -> str:
    """SQL text in ``dialect``, with literal values inlined where the dialect can."""
    try:
        return str(stmt.compile(dialect=dialect, compile_kwargs={"literal_binds": True}))
    except (CompileError, NotImplementedError):
        logger.debug("Falling back to bound parameters when rendering SQL")
        return str(stmt.compile(dialect=dialect))
