from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd
import sqlalchemy as sa
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import ArgumentError, DBAPIError, NoSuchModuleError, SQLAlchemyError
from sqlalchemy.sql.expression import Executable

from .config import DEFAULT_SCHEMA, ConnectionConfig
from .errors import ConnectionError, ExecutionError, NotFoundError
from .ops import Source
from .plan import Plan
from .registry import lookup

logger = logging.getLogger(__name__)

QueryFn = Callable[..., Any]
Rows = Union[pd.DataFrame, Iterable[Mapping[str, Any]]]


def _engine_message(err: SQLAlchemyError) -> str:
    # the driver's own diagnostic, without SQLAlchemy's statement dump
    orig = getattr(err, "orig", None)
    return str(orig).strip() if orig is not None else str(err)


def _column_type(series: pd.Series) -> sa.types.TypeEngine:
    """SQL type for a staged column, from its pandas dtype or first value."""
    if pd.api.types.is_bool_dtype(series):
        return sa.Boolean()
    if pd.api.types.is_integer_dtype(series):
        return sa.BigInteger()
    if pd.api.types.is_float_dtype(series):
        return sa.Float()
    if pd.api.types.is_datetime64_any_dtype(series):
        return sa.DateTime()
    present = series.dropna()
    if present.empty:
        return sa.Text()
    sample = present.iloc[0]
    if isinstance(sample, bool):
        return sa.Boolean()
    if isinstance(sample, int):
        return sa.BigInteger()
    if isinstance(sample, float):
        return sa.Float()
    if isinstance(sample, pd.Timestamp) or hasattr(sample, "hour"):
        return sa.DateTime()
    if hasattr(sample, "isoformat"):
        return sa.Date()
    return sa.Text()


@dataclass
class DB:
    engine: Engine
    schema: Optional[str] = DEFAULT_SCHEMA
    _registry: Dict[str, QueryFn] = field(default_factory=dict)
    _conn: Optional[Connection] = field(default=None, repr=False)
    _staged: int = field(default=0, repr=False)
    _sources: Dict[tuple, Source] = field(default_factory=dict, repr=False)

    # --- Factory constructors ---
    @classmethod
    def from_url(
        cls,
        url: Union[str, sa.engine.URL],
        schema: Optional[str] = DEFAULT_SCHEMA,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_pre_ping: bool = True,
        **kwargs: Any,
    ) -> DB:
        """Create a DB object from a database URL. No connection is opened yet."""
        try:
            eng = create_engine(
                url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=pool_pre_ping,
                future=True,
                **kwargs,
            )
        except (ArgumentError, NoSuchModuleError) as e:
            raise ConnectionError(f"Invalid database URL: {e}") from e
        return cls(engine=eng, schema=schema)

    @classmethod
    def from_config(cls, config: Optional[ConnectionConfig] = None, **kwargs: Any) -> DB:
        """Create a DB object from host/port/dbname/schema/user/password options."""
        config = config or ConnectionConfig.from_env()
        return cls.from_url(config.url(), schema=config.schema, **kwargs)

    # --- Session connection ---
    @property
    def connection(self) -> Connection:
        """The single session connection; temporary tables live on it."""
        if self._conn is None or self._conn.closed:
            try:
                self._conn = self.engine.connect()
            except DBAPIError as e:
                raise ConnectionError(f"Cannot connect to the database: {_engine_message(e)}") from e
            logger.info("Opened connection to %s", self.engine.url.render_as_string(hide_password=True))
        return self._conn

    # --- Core data operations ---
    def query_df(
        self, sql: Union[str, Executable], params: Optional[Mapping[str, Any]] = None
    ) -> pd.DataFrame:
        """
        Execute a SELECT query and return the result as a DataFrame.

        Args:
            sql (str | Select): The SQL query string, or a SQLAlchemy selectable. Use named
                parameters (e.g. :param_name) for safe substitution in strings.
            params (dict, optional): A dictionary of parameter names and values to bind to the query.

        Returns:
            pd.DataFrame: The query results as a DataFrame.

        Raises:
            ExecutionError: The engine rejected the query; the message is the engine's.

        Example:
            db.query_df(
                "SELECT * FROM mimiciii.admissions WHERE admittime >= :since",
                {"since": "2150-01-01"}
            )
        """
        stmt = text(sql) if isinstance(sql, str) else sql
        conn = self.connection
        try:
            df = pd.read_sql_query(stmt, conn, params=params)
        except (SQLAlchemyError, pd.errors.DatabaseError) as e:
            conn.rollback()
            raise ExecutionError(f"Database query failed: {_engine_message(e)}", sql=str(stmt)) from e
        conn.commit()
        return df

    def execute(self, sql: Union[str, Executable], params: Optional[Mapping[str, Any]] = None) -> None:
        """Execute a statement that returns no rows."""
        stmt = text(sql) if isinstance(sql, str) else sql
        conn = self.connection
        try:
            conn.execute(stmt, params or {})
        except SQLAlchemyError as e:
            conn.rollback()
            raise ExecutionError(f"Database statement failed: {_engine_message(e)}", sql=str(stmt)) from e
        conn.commit()

    # --- Table references ---
    def list_tables(self, schema: Optional[str] = None) -> List[str]:
        """Names of the tables in ``schema`` (the default schema if omitted)."""
        try:
            return sa.inspect(self.connection).get_table_names(schema=schema or self.schema)
        except SQLAlchemyError as e:
            raise NotFoundError(f"Cannot list tables in schema {schema or self.schema!r}: {e}") from e

    def table(self, name: str, schema: Optional[str] = None) -> Plan:
        """
        Reference a table as a lazy plan selecting all of its columns.

        The table's columns are introspected on the first reference and cached
        per name; building on the plan never touches the database until it is
        collected.

        Raises:
            ConnectionError: The database cannot be reached.
            NotFoundError: The table does not exist in the schema.
        """
        schema = schema or self.schema
        cached = self._sources.get((schema, name))
        if cached is not None:
            return Plan.from_source(self, cached)
        inspector = sa.inspect(self.connection)
        qualified = f"{schema}.{name}" if schema else name
        try:
            if not inspector.has_table(name, schema=schema):
                raise NotFoundError(f"Table {qualified} does not exist")
            columns = inspector.get_columns(name, schema=schema)
        except SQLAlchemyError as e:
            raise NotFoundError(f"Cannot read table {qualified}: {e}") from e
        finally:
            # introspection autobegins a transaction; don't leave it open
            self.connection.rollback()
        types = tuple((c["name"], c["type"]) for c in columns)
        source = self._sources[(schema, name)] = Source(name, schema, types)
        return Plan.from_source(self, source)

    def table_df(
        self, table: str, limit: Optional[int] = 100, schema: Optional[str] = None
    ) -> pd.DataFrame:
        """Quickly preview a table."""
        plan = self.table(table, schema=schema)
        return (plan.head(limit) if limit else plan).collect()

    def copy_to(self, rows: Rows, name: Optional[str] = None, replace: bool = False) -> Plan:
        """
        Stage local rows as a temporary table and return a plan over it.

        The table lives on the session connection until ``dispose()``, so
        the rows can be joined against database tables without another
        round trip per comparison.

        Args:
            rows: A DataFrame or an iterable of row mappings.
            name: Table name; defaults to ``staged_001``, ``staged_002``, ...
            replace: Drop an existing temporary table of the same name first.
        """
        df = rows if isinstance(rows, pd.DataFrame) else pd.DataFrame(list(rows))
        if len(df.columns) == 0:
            raise ValueError("Cannot stage rows without any columns")
        if name is None:
            self._staged += 1
            name = f"staged_{self._staged:03d}"

        columns = [sa.Column(str(c), _column_type(df[c])) for c in df.columns]
        table = sa.Table(name, sa.MetaData(), *columns, prefixes=["TEMPORARY"])
        records = df.astype(object).where(df.notna(), None).to_dict("records")
        records = [{str(k): v for k, v in row.items()} for row in records]

        conn = self.connection
        try:
            if replace:
                table.drop(conn, checkfirst=True)
            table.create(conn)
            if records:
                conn.execute(table.insert(), records)
        except SQLAlchemyError as e:
            conn.rollback()
            raise ExecutionError(f"Could not stage rows into {name}: {_engine_message(e)}") from e
        conn.commit()
        logger.info("Staged %d rows into temporary table %s", len(records), name)

        types = tuple((c.name, c.type) for c in columns)
        return Plan.from_source(self, Source(name, None, types))

    # --- Named query registry ---
    def register(self, name: str):
        """Decorator to register a plan builder (or a ``(sql, params)`` query function)."""

        def _decorator(fn: QueryFn) -> QueryFn:
            self._registry[name] = fn
            return fn

        return _decorator

    def run(self, name: str, **kwargs: Any) -> pd.DataFrame:
        """Build a registered query by name and collect it.

        Builders registered on this DB take precedence over the package-wide
        ``@registry`` ones. A builder receives this DB as its first argument
        and returns a Plan, a DataFrame, or a ``(sql, params)`` tuple.
        """
        fn = self._registry.get(name) or lookup(name)
        result = fn(self, **kwargs)
        if isinstance(result, Plan):
            return result.collect()
        if isinstance(result, tuple):
            sql, params = result
            return self.query_df(sql, params)
        return result

    # --- Resource cleanup ---
    def dispose(self) -> None:
        """Close the session connection (dropping temporary tables) and all pools."""
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
            logger.info("Closed database connection")
        self._conn = None
        self.engine.dispose()

    def __enter__(self) -> DB:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.dispose()
