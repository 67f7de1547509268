"""
Database abstraction for Postgres and an in-memory test implementation.

Route handlers describe reads with a small fluent ``Query`` and hand it to a
``DbClient``. The Postgres client turns it into SQLAlchemy Core statements;
the in-memory client evaluates it over dicts.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Protocol

from sqlalchemy import (
    PrimaryKeyConstraint,
    Table,
    UniqueConstraint,
    create_engine,
    delete as sa_delete,
    func,
    or_,
    select,
    update as sa_update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pecup.errors import DbError, UniqueViolation
from pecup.tables import Base, utc_now_iso


@dataclass
class Query:
    """A filtered, ordered and paginated read of one table."""

    table: str
    filters: list[tuple[str, Any, Any]] = field(default_factory=list)
    ordering: list[tuple[str, bool]] = field(default_factory=list)
    limit_value: Optional[int] = None
    offset_value: int = 0

    def eq(self, column: str, value: Any) -> "Query":
        self.filters.append(("eq", column, value))
        return self

    def neq(self, column: str, value: Any) -> "Query":
        self.filters.append(("neq", column, value))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "Query":
        self.filters.append(("in", column, list(values)))
        return self

    def gt(self, column: str, value: Any) -> "Query":
        self.filters.append(("gt", column, value))
        return self

    def gte(self, column: str, value: Any) -> "Query":
        self.filters.append(("gte", column, value))
        return self

    def lt(self, column: str, value: Any) -> "Query":
        self.filters.append(("lt", column, value))
        return self

    def lte(self, column: str, value: Any) -> "Query":
        self.filters.append(("lte", column, value))
        return self

    def is_null(self, column: str) -> "Query":
        self.filters.append(("is_null", column, None))
        return self

    def not_null(self, column: str) -> "Query":
        self.filters.append(("not_null", column, None))
        return self

    def contains(self, column: str, text: str) -> "Query":
        """Case-insensitive substring match (``ILIKE '%text%'``)."""
        self.filters.append(("contains", column, text))
        return self

    def search(self, columns: Iterable[str], text: str) -> "Query":
        """Case-insensitive substring match on any of ``columns``."""
        self.filters.append(("search", tuple(columns), text))
        return self

    def order(self, column: str, *, desc: bool = False) -> "Query":
        self.ordering.append((column, desc))
        return self

    def limit(self, value: int) -> "Query":
        self.limit_value = value
        return self

    def offset(self, value: int) -> "Query":
        self.offset_value = value
        return self


def query(table: str) -> Query:
    return Query(table=table)


class DbClient(Protocol):
    """Interface for database access."""

    def select(self, q: Query) -> list[dict]:
        ...

    def select_one(self, q: Query) -> Optional[dict]:
        ...

    def count(self, q: Query) -> int:
        ...

    def get(self, table: str, row_id: Any) -> Optional[dict]:
        ...

    def insert(self, table: str, values: dict) -> dict:
        ...

    def update(self, q: Query, values: dict) -> list[dict]:
        ...

    def delete(self, q: Query) -> list[dict]:
        ...

    def upsert(self, table: str, values: dict, on_conflict: Iterable[str]) -> dict:
        ...

    def reset(self) -> None:
        ...


def _table(name: str) -> Table:
    try:
        return Base.metadata.tables[name]
    except KeyError as exc:
        raise DbError(f"Unknown table: {name}") from exc


def _primary_key(table: Table) -> tuple[str, ...]:
    return tuple(column.name for column in table.primary_key.columns)


def _unique_groups(table: Table) -> list[tuple[str, ...]]:
    groups = []
    for constraint in table.constraints:
        if isinstance(constraint, (UniqueConstraint, PrimaryKeyConstraint)):
            names = tuple(column.name for column in constraint.columns)
            if names:
                groups.append(names)
    return groups


def _check_columns(table: Table, values: dict) -> None:
    unknown = [key for key in values if key not in table.c]
    if unknown:
        raise DbError(f"Unknown column(s) for {table.name}: {', '.join(unknown)}")


def _prepare_insert(table: Table, values: dict) -> dict:
    """Return a full row for ``values`` with column defaults applied."""
    _check_columns(table, values)
    row: dict = {}
    for column in table.columns:
        if column.name in values:
            row[column.name] = values[column.name]
        elif column.default is not None:
            default = column.default
            if default.is_callable:
                row[column.name] = default.arg(None)
            elif default.is_scalar:
                row[column.name] = default.arg
            else:
                row[column.name] = None
        else:
            row[column.name] = None
    return row


def _prepare_update(table: Table, values: dict) -> dict:
    _check_columns(table, values)
    prepared = dict(values)
    if "updated_at" in table.c and "updated_at" not in prepared:
        prepared["updated_at"] = utc_now_iso()
    return prepared


def _conflict_query(table: str, values: dict, columns: Iterable[str]) -> Query:
    q = query(table)
    for name in columns:
        q.eq(name, values.get(name))
    return q


def _lower(value: Any) -> str:
    return str(value).lower() if value is not None else ""


def _matches(row: dict, op: str, column: Any, value: Any) -> bool:
    if op == "search":
        needle = _lower(value)
        return any(needle in _lower(row.get(name)) for name in column)
    current = row.get(column)
    if op == "eq":
        # Matches SQLAlchemy, which compiles `col == None` to IS NULL.
        if value is None:
            return current is None
        return current is not None and current == value
    if op == "neq":
        return current is not None and current != value
    if op == "in":
        return current in value
    if op == "is_null":
        return current is None
    if op == "not_null":
        return current is not None
    if op == "contains":
        return current is not None and _lower(value) in _lower(current)
    if current is None:
        return False
    if op == "gt":
        return current > value
    if op == "gte":
        return current >= value
    if op == "lt":
        return current < value
    if op == "lte":
        return current <= value
    raise DbError(f"Unsupported filter: {op}")


def _sort_rows(rows: list[dict], ordering: list[tuple[str, bool]]) -> list[dict]:
    # Postgres places NULLs last when ascending and first when descending.
    for column, desc in reversed(ordering):
        rows.sort(
            key=lambda row: (
                row.get(column) is None,
                row.get(column) if row.get(column) is not None else 0,
            ),
            reverse=desc,
        )
    return rows


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.tables: Dict[str, Dict[tuple, dict]] = {
            name: {} for name in Base.metadata.tables
        }
        self._lock = threading.RLock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            for rows in self.tables.values():
                rows.clear()

    def _rows(self, name: str) -> Dict[tuple, dict]:
        _table(name)
        return self.tables[name]

    def _filtered(self, q: Query) -> list[dict]:
        rows = [
            row
            for row in self._rows(q.table).values()
            if all(_matches(row, op, column, value) for op, column, value in q.filters)
        ]
        return _sort_rows(rows, q.ordering)

    def _page(self, rows: list[dict], q: Query) -> list[dict]:
        start = q.offset_value or 0
        end = start + q.limit_value if q.limit_value is not None else None
        return rows[start:end]

    def _check_unique(self, table: Table, row: dict, ignore_key: Optional[tuple] = None) -> None:
        for group in _unique_groups(table):
            candidate = tuple(row.get(name) for name in group)
            if any(value is None for value in candidate):
                continue
            for key, existing in self.tables[table.name].items():
                if key == ignore_key:
                    continue
                if tuple(existing.get(name) for name in group) == candidate:
                    raise UniqueViolation(
                        f"duplicate key value violates unique constraint on "
                        f"{table.name}({', '.join(group)})"
                    )

    def select(self, q: Query) -> list[dict]:
        with self._lock:
            return copy.deepcopy(self._page(self._filtered(q), q))

    def select_one(self, q: Query) -> Optional[dict]:
        rows = self.select(q)
        return rows[0] if rows else None

    def count(self, q: Query) -> int:
        with self._lock:
            return len(self._filtered(q))

    def get(self, table: str, row_id: Any) -> Optional[dict]:
        with self._lock:
            row = self._rows(table).get((row_id,))
            return copy.deepcopy(row) if row else None

    def insert(self, table: str, values: dict) -> dict:
        sa_table = _table(table)
        with self._lock:
            row = _prepare_insert(sa_table, copy.deepcopy(values))
            self._check_unique(sa_table, row)
            key = tuple(row[name] for name in _primary_key(sa_table))
            self.tables[table][key] = row
            return copy.deepcopy(row)

    def update(self, q: Query, values: dict) -> list[dict]:
        sa_table = _table(q.table)
        pk = _primary_key(sa_table)
        with self._lock:
            prepared = _prepare_update(sa_table, copy.deepcopy(values))
            targets = self._page(self._filtered(q), q)
            updated = []
            for row in targets:
                key = tuple(row[name] for name in pk)
                candidate = {**row, **prepared}
                self._check_unique(sa_table, candidate, ignore_key=key)
                new_key = tuple(candidate[name] for name in pk)
                del self.tables[q.table][key]
                self.tables[q.table][new_key] = candidate
                updated.append(copy.deepcopy(candidate))
            return updated

    def delete(self, q: Query) -> list[dict]:
        sa_table = _table(q.table)
        pk = _primary_key(sa_table)
        with self._lock:
            targets = self._page(self._filtered(q), q)
            for row in targets:
                self.tables[q.table].pop(tuple(row[name] for name in pk), None)
            return copy.deepcopy(targets)

    def upsert(self, table: str, values: dict, on_conflict: Iterable[str]) -> dict:
        with self._lock:
            conflict_query = _conflict_query(table, values, on_conflict)
            existing = self._filtered(conflict_query)
            if existing:
                return self.update(conflict_query, values)[0]
            return self.insert(table, values)


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def reset(self) -> None:
        with self.Session() as session:
            for table in reversed(Base.metadata.sorted_tables):
                session.execute(sa_delete(table))
            session.commit()

    def _condition(self, table: Table, op: str, column: Any, value: Any):
        if op == "search":
            pattern = f"%{value}%"
            return or_(*[table.c[name].ilike(pattern) for name in column])
        col = table.c[column]
        if op == "eq":
            return col == value
        if op == "neq":
            return col != value
        if op == "in":
            return col.in_(value)
        if op == "gt":
            return col > value
        if op == "gte":
            return col >= value
        if op == "lt":
            return col < value
        if op == "lte":
            return col <= value
        if op == "is_null":
            return col.is_(None)
        if op == "not_null":
            return col.is_not(None)
        if op == "contains":
            return col.ilike(f"%{value}%")
        raise DbError(f"Unsupported filter: {op}")

    def _where(self, stmt, table: Table, q: Query):
        for op, column, value in q.filters:
            stmt = stmt.where(self._condition(table, op, column, value))
        return stmt

    def _select_stmt(self, q: Query):
        table = _table(q.table)
        stmt = self._where(select(table), table, q)
        for column, desc in q.ordering:
            col = table.c[column]
            stmt = stmt.order_by(col.desc().nulls_first() if desc else col.asc().nulls_last())
        if q.limit_value is not None:
            stmt = stmt.limit(q.limit_value)
        if q.offset_value:
            stmt = stmt.offset(q.offset_value)
        return stmt

    def _execute_rows(self, session: Session, stmt) -> list[dict]:
        return [dict(row._mapping) for row in session.execute(stmt)]

    def select(self, q: Query) -> list[dict]:
        try:
            with self.Session() as session:
                return self._execute_rows(session, self._select_stmt(q))
        except SQLAlchemyError as exc:
            raise DbError(str(exc)) from exc

    def select_one(self, q: Query) -> Optional[dict]:
        if q.limit_value is None:
            q.limit(1)
        rows = self.select(q)
        return rows[0] if rows else None

    def count(self, q: Query) -> int:
        table = _table(q.table)
        stmt = self._where(select(func.count()).select_from(table), table, q)
        try:
            with self.Session() as session:
                return int(session.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise DbError(str(exc)) from exc

    def get(self, table: str, row_id: Any) -> Optional[dict]:
        sa_table = _table(table)
        pk_name = _primary_key(sa_table)[0]
        return self.select_one(query(table).eq(pk_name, row_id))

    def insert(self, table: str, values: dict) -> dict:
        sa_table = _table(table)
        row = _prepare_insert(sa_table, values)
        try:
            with self.Session() as session:
                session.execute(sa_table.insert().values(**row))
                session.commit()
        except IntegrityError as exc:
            raise UniqueViolation(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise DbError(str(exc)) from exc
        return row

    def update(self, q: Query, values: dict) -> list[dict]:
        table = _table(q.table)
        prepared = _prepare_update(table, values)
        pk = _primary_key(table)
        try:
            with self.Session() as session:
                targets = self._execute_rows(session, self._select_stmt(q))
                if not targets:
                    return []
                for row in targets:
                    stmt = sa_update(table).values(**prepared)
                    for name in pk:
                        stmt = stmt.where(table.c[name] == row[name])
                    session.execute(stmt)
                session.commit()
        except IntegrityError as exc:
            raise UniqueViolation(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise DbError(str(exc)) from exc
        return [{**row, **prepared} for row in targets]

    def delete(self, q: Query) -> list[dict]:
        table = _table(q.table)
        pk = _primary_key(table)
        try:
            with self.Session() as session:
                targets = self._execute_rows(session, self._select_stmt(q))
                for row in targets:
                    stmt = sa_delete(table)
                    for name in pk:
                        stmt = stmt.where(table.c[name] == row[name])
                    session.execute(stmt)
                session.commit()
        except SQLAlchemyError as exc:
            raise DbError(str(exc)) from exc
        return targets

    def upsert(self, table: str, values: dict, on_conflict: Iterable[str]) -> dict:
        columns = list(on_conflict)
        existing = self.select_one(_conflict_query(table, values, columns))
        if existing is not None:
            return self.update(_conflict_query(table, values, columns), values)[0]
        return self.insert(table, values)
