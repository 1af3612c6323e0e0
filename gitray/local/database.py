"""Versioned embedded storage for Gitray.

Each logical database (``db_name``) is one SQLite file holding any number of
named sub-stores. A sub-store is a table of ``(key, value JSON)`` rows plus
expression indexes over fields of the JSON value.

Creating a sub-store is a schema upgrade: the database version recorded in
``_gitray_schema`` is bumped by one and the new table, its indexes and its
registry row are created inside the same ``BEGIN IMMEDIATE`` transaction, so
an upgrade is applied entirely or not at all.
"""

import json
import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from sqlalchemy import (
    JSON,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    event,
    func,
    literal_column,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DatabaseError
from sqlalchemy.pool import StaticPool

from ..exceptions import LocalStoreCorruptedError, SchemaUpgradeConflictError

logger = logging.getLogger(__name__)

SCHEMA_TABLE = "_gitray_schema"
REGISTRY_TABLE = "_gitray_stores"
MAX_UPGRADE_RETRIES = 3

_FIELD_NAME = re.compile(r"^[A-Za-z0-9_$-]+$")

Key = Union[str, Sequence[Any]]


@dataclass
class StoreOptions:
    """How a sub-store keys and indexes its values.

    Attributes:
        key_path: Field (or tuple of fields for a compound key) holding the key
        indexes: Index name -> fields covered by the index
    """

    key_path: Union[str, Tuple[str, ...]] = "id"
    indexes: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @property
    def key_fields(self) -> Tuple[str, ...]:
        if isinstance(self.key_path, str):
            return (self.key_path,)
        return tuple(self.key_path)

    def key_for(self, value: Dict[str, Any]) -> str:
        """Extract the primary key of ``value``."""
        fields = self.key_fields
        missing = [f for f in fields if f not in value]
        if missing:
            raise KeyError(f"Value is missing key field(s) {missing}")
        if len(fields) == 1:
            return encode_key(value[fields[0]])
        return encode_key(tuple(value[f] for f in fields))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_path": list(self.key_fields)
            if not isinstance(self.key_path, str)
            else self.key_path,
            "indexes": {name: list(fields) for name, fields in self.indexes.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoreOptions":
        key_path = data.get("key_path", "id")
        return cls(
            key_path=key_path if isinstance(key_path, str) else tuple(key_path),
            indexes={
                name: tuple(fields) for name, fields in data.get("indexes", {}).items()
            },
        )


def encode_key(key: Any) -> str:
    """Encode a scalar or compound key as the stored row key."""
    if isinstance(key, (tuple, list)):
        return json.dumps(list(key), separators=(",", ":"), ensure_ascii=False)
    return str(key)


def _field_expr(table: Table, name: str):
    # Literal JSON paths so SQLite can match queries against expression indexes.
    if not _FIELD_NAME.match(name):
        raise ValueError(f"Unsupported field name for indexing: {name!r}")
    return func.json_extract(table.c.value, literal_column(f"'$.\"{name}\"'"))


class StoreHandle:
    """Access to one sub-store of a LocalDatabase."""

    def __init__(
        self,
        database: "LocalDatabase",
        name: str,
        table: Table,
        options: StoreOptions,
    ):
        self.database = database
        self.name = name
        self.table = table
        self.options = options

    def __repr__(self):
        return f"StoreHandle({self.database.name!r}, {self.name!r})"

    @contextmanager
    def _connection(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.database.transaction() as new_conn:
                yield new_conn

    def key_for(self, value: Dict[str, Any]) -> str:
        return self.options.key_for(value)

    def get(
        self, key: Key, conn: Optional[Connection] = None
    ) -> Optional[Dict[str, Any]]:
        with self._connection(conn) as c:
            row = c.execute(
                select(self.table.c.value).where(self.table.c.key == encode_key(key))
            ).first()
        return row[0] if row else None

    def get_many(
        self, keys: Iterable[Key], conn: Optional[Connection] = None
    ) -> List[Optional[Dict[str, Any]]]:
        """Values for ``keys`` in the same order; missing keys yield None."""
        encoded = [encode_key(k) for k in keys]
        if not encoded:
            return []
        with self._connection(conn) as c:
            rows = c.execute(
                select(self.table.c.key, self.table.c.value).where(
                    self.table.c.key.in_(encoded)
                )
            ).all()
        found = {row[0]: row[1] for row in rows}
        return [found.get(k) for k in encoded]

    def put(self, value: Dict[str, Any], conn: Optional[Connection] = None) -> str:
        """Insert or replace ``value``; returns its key."""
        return self.put_many([value], conn=conn)[0]

    def put_many(
        self, values: Iterable[Dict[str, Any]], conn: Optional[Connection] = None
    ) -> List[str]:
        rows = [{"key": self.key_for(v), "value": v} for v in values]
        if not rows:
            return []
        stmt = sqlite_insert(self.table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[self.table.c.key], set_={"value": stmt.excluded.value}
        )
        with self._connection(conn) as c:
            c.execute(stmt, rows)
        return [row["key"] for row in rows]

    def delete(self, key: Key, conn: Optional[Connection] = None) -> None:
        self.delete_many([key], conn=conn)

    def delete_many(
        self, keys: Iterable[Key], conn: Optional[Connection] = None
    ) -> None:
        encoded = [encode_key(k) for k in keys]
        if not encoded:
            return
        with self._connection(conn) as c:
            c.execute(delete(self.table).where(self.table.c.key.in_(encoded)))

    def delete_where(
        self, where: Dict[str, Any], conn: Optional[Connection] = None
    ) -> None:
        """Delete every value matching ``where`` (same semantics as ``find``)."""
        stmt = delete(self.table)
        for name, expected in where.items():
            expr = _field_expr(self.table, name)
            stmt = stmt.where(expr.is_(None) if expected is None else expr == expected)
        with self._connection(conn) as c:
            c.execute(stmt)

    def clear(self, conn: Optional[Connection] = None) -> None:
        with self._connection(conn) as c:
            c.execute(delete(self.table))

    def all(self, conn: Optional[Connection] = None) -> List[Dict[str, Any]]:
        with self._connection(conn) as c:
            rows = c.execute(
                select(self.table.c.value).order_by(self.table.c.key)
            ).all()
        return [row[0] for row in rows]

    def find(
        self,
        where: Optional[Dict[str, Any]] = None,
        order_by: Union[str, Sequence[str], None] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        conn: Optional[Connection] = None,
    ) -> List[Dict[str, Any]]:
        """
        Query values by field equality.

        Args:
            where: Field -> required value (None matches a missing/null field)
            order_by: Field or fields to sort on
            descending: Reverse the sort order
            limit: Maximum number of values to return

        Returns:
            Matching values, ties broken by key
        """
        stmt = select(self.table.c.value)
        for name, expected in (where or {}).items():
            expr = _field_expr(self.table, name)
            stmt = stmt.where(expr.is_(None) if expected is None else expr == expected)

        if isinstance(order_by, str):
            order_by = [order_by]
        for name in order_by or []:
            expr = _field_expr(self.table, name)
            stmt = stmt.order_by(expr.desc() if descending else expr.asc())
        stmt = stmt.order_by(
            self.table.c.key.desc() if descending else self.table.c.key.asc()
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._connection(conn) as c:
            rows = c.execute(stmt).all()
        return [row[0] for row in rows]

    def count(
        self, where: Optional[Dict[str, Any]] = None, conn: Optional[Connection] = None
    ) -> int:
        stmt = select(func.count()).select_from(self.table)
        for name, expected in (where or {}).items():
            expr = _field_expr(self.table, name)
            stmt = stmt.where(expr.is_(None) if expected is None else expr == expected)
        with self._connection(conn) as c:
            return c.execute(stmt).scalar_one()


class LocalDatabase:
    """One SQLite database holding versioned sub-stores."""

    def __init__(self, name: str, path: Optional[Path] = None):
        self.name = name
        self.path = path
        self._lock = threading.Lock()
        self._handles: Dict[str, StoreHandle] = {}
        self.engine = self._create_engine()

        self.metadata = MetaData()
        self.schema_table = Table(
            SCHEMA_TABLE,
            self.metadata,
            Column("id", Integer, primary_key=True),
            Column("version", Integer, nullable=False),
        )
        self.registry_table = Table(
            REGISTRY_TABLE,
            self.metadata,
            Column("name", String, primary_key=True),
            Column("options", JSON, nullable=False),
        )
        self._initialize()

    def _create_engine(self) -> Engine:
        if self.path is None:
            engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(
                f"sqlite:///{self.path}",
                connect_args={"check_same_thread": False},
            )

        # pysqlite's own transaction handling is disabled so that every
        # transaction takes the write lock up front.
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    def _initialize(self) -> None:
        try:
            with self.transaction() as conn:
                self.metadata.create_all(conn)
                row = conn.execute(
                    select(self.schema_table.c.version).where(
                        self.schema_table.c.id == 1
                    )
                ).first()
                if row is None:
                    conn.execute(self.schema_table.insert().values(id=1, version=0))
        except DatabaseError as e:
            if "locked" in str(e):
                raise
            raise LocalStoreCorruptedError(
                f"Local database {self.name} is unreadable: {e}"
            ) from e

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Run several operations, across sub-stores, atomically."""
        with self.engine.begin() as conn:
            yield conn

    def version(self, conn: Optional[Connection] = None) -> int:
        if conn is not None:
            return self._read_version(conn)
        with self.engine.connect() as c:
            return self._read_version(c)

    def _read_version(self, conn: Connection) -> int:
        return conn.execute(
            select(self.schema_table.c.version).where(self.schema_table.c.id == 1)
        ).scalar_one()

    def store_names(self) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(self.registry_table.c.name)).all()
        return [row[0] for row in rows]

    def _build_table(self, store_name: str, options: StoreOptions) -> Table:
        table_name = f"store_{store_name}"
        if table_name in self.metadata.tables:
            return self.metadata.tables[table_name]
        table = Table(
            table_name,
            self.metadata,
            Column("key", String, primary_key=True),
            Column("value", JSON, nullable=False),
        )
        for index_name, fields in options.indexes.items():
            Index(
                f"ix_{table_name}_{index_name}",
                *[_field_expr(table, f) for f in fields],
            )
        return table

    def ensure_store(
        self, store_name: str, options: Optional[StoreOptions] = None
    ) -> StoreHandle:
        """
        Open a sub-store, creating it through a version upgrade if missing.

        Args:
            store_name: Name of the sub-store
            options: Key path and indexes, used when the store is created

        Returns:
            Handle on the sub-store

        Raises:
            SchemaUpgradeConflictError: If the version kept moving underneath
                every retry
        """
        options = options or StoreOptions()
        with self._lock:
            handle = self._handles.get(store_name)
            if handle is not None:
                return handle

            for attempt in range(MAX_UPGRADE_RETRIES):
                expected = self.version()
                try:
                    handle = self._upgrade(expected, store_name, options)
                    break
                except SchemaUpgradeConflictError as e:
                    logger.warning(f"{e} (attempt {attempt + 1}/{MAX_UPGRADE_RETRIES})")
                    if attempt == MAX_UPGRADE_RETRIES - 1:
                        raise

            self._handles[store_name] = handle
            return handle

    def _upgrade(
        self, expected: int, store_name: str, options: StoreOptions
    ) -> StoreHandle:
        with self.transaction() as conn:
            row = conn.execute(
                select(self.registry_table.c.options).where(
                    self.registry_table.c.name == store_name
                )
            ).first()
            if row is not None:
                existing = StoreOptions.from_dict(row[0])
                return StoreHandle(
                    self, store_name, self._build_table(store_name, existing), existing
                )

            current = self._read_version(conn)
            if current != expected:
                raise SchemaUpgradeConflictError(self.name, expected, current)

            table = self._build_table(store_name, options)
            table.create(conn, checkfirst=True)
            conn.execute(
                self.registry_table.insert().values(
                    name=store_name, options=options.to_dict()
                )
            )
            conn.execute(
                update(self.schema_table)
                .where(self.schema_table.c.id == 1)
                .values(version=expected + 1)
            )
        logger.debug(
            f"Upgraded {self.name} to version {expected + 1} with store {store_name}"
        )
        return StoreHandle(self, store_name, table, options)

    def close(self) -> None:
        self._handles.clear()
        self.engine.dispose()


class LocalStoreManager:
    """Opens and caches one LocalDatabase per database name.

    Args:
        data_dir: Directory for database files; None keeps every database in
            memory for the lifetime of the manager
    """

    def __init__(self, data_dir: Union[str, Path, None] = None):
        self.data_dir = Path(data_dir).expanduser() if data_dir is not None else None
        self._databases: Dict[str, LocalDatabase] = {}
        self._lock = threading.Lock()

    def database_path(self, db_name: str) -> Optional[Path]:
        if self.data_dir is None:
            return None
        return self.data_dir / f"{db_name}.sqlite3"

    def open(self, db_name: str) -> LocalDatabase:
        with self._lock:
            database = self._databases.get(db_name)
            if database is None:
                path = self.database_path(db_name)
                if path is not None:
                    path.parent.mkdir(parents=True, exist_ok=True)
                database = LocalDatabase(db_name, path)
                self._databases[db_name] = database
            return database

    def ensure_store(
        self, db_name: str, store_name: str, options: Optional[StoreOptions] = None
    ) -> StoreHandle:
        return self.open(db_name).ensure_store(store_name, options)

    def version(self, db_name: str) -> int:
        return self.open(db_name).version()

    def delete_database(self, db_name: str) -> None:
        """Drop a whole database, including every sub-store. Irreversible."""
        with self._lock:
            database = self._databases.pop(db_name, None)
            if database is not None:
                database.close()
            path = self.database_path(db_name)
            if path is not None and path.exists():
                path.unlink()
        logger.info(f"Deleted local database {db_name}")

    def close(self) -> None:
        with self._lock:
            for database in self._databases.values():
                database.close()
            self._databases.clear()
