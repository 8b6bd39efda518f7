"""
Null-preserving merge upsert into a shared table, in fixed-size chunks
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from sqlalchemy import Table, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.exceptions import UpsertError
import logging

logger = logging.getLogger(__name__)

_INSERT_CONSTRUCTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _as_table(target: Any) -> Table:
    """Accept either a Table or a declarative model class."""
    return target if isinstance(target, Table) else target.__table__


@dataclass(frozen=True)
class MergePolicy:
    """
    How records of one feed are merged into their destination.

    Attributes:
        table: Destination Table or model class
        unique_key: Columns identifying a row (must carry a unique index)
        mergeable_columns: Columns updated on conflict; all others are insert-only
        resource: Lock resource name, defaults to the table name
    """
    table: Any
    unique_key: Tuple[str, ...]
    mergeable_columns: Tuple[str, ...]
    resource: Optional[str] = None

    @property
    def resource_name(self) -> str:
        return self.resource or _as_table(self.table).name


class MergeUpsertLoader:
    """
    Merge records into a table with INSERT ... ON CONFLICT DO UPDATE.

    Merge rule per mergeable column: the incoming value replaces the stored
    one only when it is not null (COALESCE(excluded.col, table.col)).

    Ensures:
    - One set-based statement per chunk of ``chunk_size`` records
    - No commit: the caller's lock-scoped transaction owns it
    - A row is touched at most once per statement
    """

    def __init__(self, chunk_size: Optional[int] = None, dialect: Optional[str] = None):
        self.chunk_size = chunk_size or settings.UPSERT_CHUNK_SIZE
        self.dialect = dialect

    async def merge_upsert(
        self,
        session: AsyncSession,
        table: Any,
        records: Sequence[Dict[str, Any]],
        unique_key: Sequence[str],
        mergeable_columns: Sequence[str]
    ) -> int:
        """
        Merge ``records`` into ``table``.

        Args:
            session: Session inside the lock-holding transaction
            table: Destination Table or model class
            records: Column -> value mappings
            unique_key: Conflict target columns
            mergeable_columns: Columns to merge on conflict

        Returns:
            Number of rows inserted or updated
        """
        if not records:
            return 0

        table = _as_table(table)
        unique_key = tuple(unique_key)
        if not unique_key:
            raise ValueError("merge_upsert needs at least one unique key column")

        known = set(table.c.keys())
        unknown = [c for c in (*unique_key, *mergeable_columns) if c not in known]
        if unknown:
            raise ValueError(f"Unknown columns for {table.name}: {unknown}")

        mergeable = tuple(c for c in mergeable_columns if c not in unique_key)
        dialect = self.dialect or session.get_bind().dialect.name

        total_affected = 0
        chunk_count = 0

        for chunk_index, start in enumerate(range(0, len(records), self.chunk_size)):
            chunk = records[start:start + self.chunk_size]
            rows = _widen(_collapse_duplicates(chunk, unique_key, mergeable, table.name), table, mergeable)
            stmt = self._build_statement(dialect, table, rows, unique_key, mergeable)

            try:
                result = await session.execute(stmt)
            except SQLAlchemyError as e:
                raise UpsertError(
                    f"Merge upsert into {table.name} failed",
                    context={
                        "table_name": table.name,
                        "chunk_index": chunk_index,
                        "chunk_size": len(rows),
                        "conflict_fields": list(unique_key)
                    },
                    original_exception=e
                )

            rowcount = result.rowcount
            affected = rowcount if isinstance(rowcount, int) and rowcount >= 0 else len(rows)
            total_affected += affected
            chunk_count += 1
            logger.debug(f"Chunk {chunk_index + 1}: merged {len(rows)} rows into {table.name}")

        logger.info(
            f"Merged {len(records)} records into {table.name} "
            f"({chunk_count} chunks, {total_affected} rows affected)"
        )
        return total_affected

    @staticmethod
    def _build_statement(
        dialect: str,
        table: Table,
        rows: List[Dict[str, Any]],
        unique_key: Tuple[str, ...],
        mergeable: Tuple[str, ...]
    ):
        insert = _INSERT_CONSTRUCTS.get(dialect)
        if insert is None:
            raise UpsertError(
                f"Merge upsert is not supported on {dialect}",
                context={"table_name": table.name, "dialect": dialect}
            )

        stmt = insert(table).values(rows)

        if not mergeable:
            return stmt.on_conflict_do_nothing(index_elements=list(unique_key))

        set_ = {
            column: func.coalesce(stmt.excluded[column], table.c[column])
            for column in mergeable
        }
        # Columns like updated_at follow their insert default on every merge
        for column in table.columns:
            if column.onupdate is not None and column.name not in set_ and column.name not in unique_key:
                set_[column.name] = stmt.excluded[column.name]

        return stmt.on_conflict_do_update(index_elements=list(unique_key), set_=set_)


def _collapse_duplicates(
    records: Sequence[Dict[str, Any]],
    unique_key: Tuple[str, ...],
    mergeable: Tuple[str, ...],
    table_name: str
) -> List[Dict[str, Any]]:
    """
    Fold records sharing a unique key into one, in order.

    Same outcome as applying them one after another: mergeable columns take
    the last non-null value, insert-only columns keep the first record's value.
    """
    merged: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
    mergeable_set = set(mergeable)

    for record in records:
        key = tuple(record.get(column) for column in unique_key)
        if any(part is None for part in key):
            raise UpsertError(
                f"Record without unique key for {table_name}",
                context={"table_name": table_name, "conflict_fields": list(unique_key)}
            )

        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(record)
            continue

        for column, value in record.items():
            if column in mergeable_set and (value is not None or column not in existing):
                existing[column] = value

    return list(merged.values())


def _widen(
    records: List[Dict[str, Any]],
    table: Optional[Table] = None,
    mergeable: Sequence[str] = ()
) -> List[Dict[str, Any]]:
    """
    Give every row the same columns; a multi-row VALUES needs one shape.

    A column missing from a record takes the column's insert default, as it
    would in a single-row insert. Mergeable columns are filled with None
    instead so a missing value never overwrites a stored one.
    """
    columns: Dict[str, None] = {}
    for record in records:
        for column in record:
            columns.setdefault(column, None)

    fillers = {column: _missing_value(table, column, mergeable) for column in columns}
    return [
        {column: record[column] if column in record else fillers[column]() for column in columns}
        for record in records
    ]


def _missing_value(table: Optional[Table], column: str, mergeable: Sequence[str]) -> Callable[[], Any]:
    default = table.c[column].default if table is not None and column in table.c else None
    if default is None or column in mergeable:
        return lambda: None
    if getattr(default, "is_callable", False):
        # SQLAlchemy wraps zero-argument callables to take the execution context
        return lambda: default.arg(None)
    if getattr(default, "is_scalar", False) or getattr(default, "is_clause_element", False):
        return lambda: default.arg
    return lambda: None
