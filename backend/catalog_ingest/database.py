"""
Database connection management and schema for the Sinalite tables.

PostgreSQL is the production target (psycopg2 ThreadedConnectionPool sized to
the worker count). A sqlite:/// URL selects SQLite, which shares a single
connection behind a lock; the test suite runs entirely on SQLite.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Generator, Optional, Tuple

import psycopg2
import psycopg2.pool


logger = logging.getLogger(__name__)

SQLITE_PREFIX = "sqlite:"


# =============================================================================
# Dialect helpers
# =============================================================================

def is_postgres(conn) -> bool:
    """Check if connection is PostgreSQL (anything that is not sqlite3)."""
    return not isinstance(conn, sqlite3.Connection)


def db_placeholder(conn) -> str:
    """Return the correct placeholder for the database type."""
    return '%s' if is_postgres(conn) else '?'


def now_sql(conn) -> str:
    return 'NOW()' if is_postgres(conn) else 'CURRENT_TIMESTAMP'


def is_connection_error(error: BaseException) -> bool:
    """Check if exception is a connection-related error."""
    if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return True
    error_str = str(error).lower()
    connection_errors = [
        'connection already closed',
        'connection is closed',
        'server closed the connection',
        'could not receive data',
        'ssl syscall error',
        'connection refused',
        'connection reset',
        'broken pipe',
    ]
    return any(err in error_str for err in connection_errors)


def sqlite_path(database_url: str) -> str:
    """sqlite:///data/ingest.db -> data/ingest.db; sqlite:// -> :memory:"""
    path = database_url[len(SQLITE_PREFIX):]
    if path.startswith("///"):
        path = path[3:]
    elif path.startswith("//"):
        path = path[2:]
    return path or ":memory:"


# =============================================================================
# Table definitions
# =============================================================================

@dataclass(frozen=True)
class TableSpec:
    """Upsert metadata for one table."""
    name: str
    key_columns: Tuple[str, ...]
    value_columns: Tuple[str, ...]
    json_columns: Tuple[str, ...] = ("raw_json",)

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.key_columns + self.value_columns


PRODUCTS = TableSpec(
    "sinalite_products",
    key_columns=("product_id",),
    value_columns=("sku", "name", "category", "enabled", "raw_json"),
)
PRODUCT_OPTIONS = TableSpec(
    "sinalite_product_options",
    key_columns=("product_id", "store_code", "option_id"),
    value_columns=("option_group", "option_name", "raw_json"),
)
PRODUCT_PRICING = TableSpec(
    "sinalite_product_pricing",
    key_columns=("product_id", "store_code", "hash"),
    value_columns=("value", "raw_json"),
)
PRODUCT_METADATA = TableSpec(
    "sinalite_product_metadata",
    key_columns=("product_id", "store_code", "metadata_index"),
    value_columns=("raw_json",),
)
ROLL_LABEL_OPTIONS = TableSpec(
    "sinalite_roll_label_options",
    key_columns=("product_id", "store_code", "option_id", "opt_val_id"),
    value_columns=(
        "name", "label", "option_val", "html_type", "opt_sort_order",
        "opt_val_sort_order", "img_src", "extra_turnaround_days", "raw_json",
    ),
)
ROLL_LABEL_EXCLUSIONS = TableSpec(
    "sinalite_roll_label_exclusions",
    key_columns=("product_id", "store_code", "exclusion_index"),
    value_columns=(
        "size_id", "qty",
        "pricing_product_option_entity_id_1", "pricing_product_option_value_entity_id_1",
        "pricing_product_option_entity_id_2", "pricing_product_option_value_entity_id_2",
        "raw_json",
    ),
)
ROLL_LABEL_CONTENT = TableSpec(
    "sinalite_roll_label_content",
    key_columns=("product_id", "store_code", "pricing_product_option_value_entity_id", "content_type"),
    value_columns=("content", "raw_json"),
)

REGULAR_TABLES = (PRODUCT_OPTIONS, PRODUCT_PRICING, PRODUCT_METADATA)
ROLL_LABEL_TABLES = (ROLL_LABEL_OPTIONS, ROLL_LABEL_EXCLUSIONS, ROLL_LABEL_CONTENT)
ALL_TABLES = (PRODUCTS,) + REGULAR_TABLES + ROLL_LABEL_TABLES


POSTGRES_TYPES = {'json': 'JSONB', 'bool': 'BOOLEAN', 'ts': 'TIMESTAMPTZ', 'now': 'NOW()'}
SQLITE_TYPES = {'json': 'TEXT', 'bool': 'INTEGER', 'ts': 'TEXT', 'now': 'CURRENT_TIMESTAMP'}

SCHEMA_DDL = [
    '''
    CREATE TABLE IF NOT EXISTS sinalite_products (
        product_id BIGINT PRIMARY KEY,
        sku TEXT,
        name TEXT,
        category TEXT,
        enabled {bool},
        raw_json {json} NOT NULL,
        created_at {ts} NOT NULL DEFAULT {now},
        updated_at {ts} NOT NULL DEFAULT {now}
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS sinalite_product_options (
        product_id BIGINT NOT NULL,
        store_code TEXT NOT NULL,
        option_id BIGINT NOT NULL,
        option_group TEXT,
        option_name TEXT,
        raw_json {json} NOT NULL,
        created_at {ts} NOT NULL DEFAULT {now},
        updated_at {ts} NOT NULL DEFAULT {now},
        PRIMARY KEY (product_id, store_code, option_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS sinalite_product_pricing (
        product_id BIGINT NOT NULL,
        store_code TEXT NOT NULL,
        hash TEXT NOT NULL,
        value TEXT,
        raw_json {json} NOT NULL,
        created_at {ts} NOT NULL DEFAULT {now},
        updated_at {ts} NOT NULL DEFAULT {now},
        PRIMARY KEY (product_id, store_code, hash)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS sinalite_product_metadata (
        product_id BIGINT NOT NULL,
        store_code TEXT NOT NULL,
        metadata_index INTEGER NOT NULL,
        raw_json {json} NOT NULL,
        created_at {ts} NOT NULL DEFAULT {now},
        updated_at {ts} NOT NULL DEFAULT {now},
        PRIMARY KEY (product_id, store_code, metadata_index)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS sinalite_roll_label_options (
        product_id BIGINT NOT NULL,
        store_code TEXT NOT NULL,
        option_id BIGINT NOT NULL,
        opt_val_id BIGINT NOT NULL,
        name TEXT,
        label TEXT,
        option_val TEXT,
        html_type TEXT,
        opt_sort_order INTEGER,
        opt_val_sort_order INTEGER,
        img_src TEXT,
        extra_turnaround_days INTEGER,
        raw_json {json} NOT NULL,
        created_at {ts} NOT NULL DEFAULT {now},
        updated_at {ts} NOT NULL DEFAULT {now},
        PRIMARY KEY (product_id, store_code, option_id, opt_val_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS sinalite_roll_label_exclusions (
        product_id BIGINT NOT NULL,
        store_code TEXT NOT NULL,
        exclusion_index INTEGER NOT NULL,
        size_id BIGINT,
        qty INTEGER,
        pricing_product_option_entity_id_1 BIGINT,
        pricing_product_option_value_entity_id_1 BIGINT,
        pricing_product_option_entity_id_2 BIGINT,
        pricing_product_option_value_entity_id_2 BIGINT,
        raw_json {json} NOT NULL,
        created_at {ts} NOT NULL DEFAULT {now},
        updated_at {ts} NOT NULL DEFAULT {now},
        PRIMARY KEY (product_id, store_code, exclusion_index)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS sinalite_roll_label_content (
        product_id BIGINT NOT NULL,
        store_code TEXT NOT NULL,
        pricing_product_option_value_entity_id BIGINT NOT NULL,
        content_type TEXT NOT NULL,
        content TEXT,
        raw_json {json} NOT NULL,
        created_at {ts} NOT NULL DEFAULT {now},
        updated_at {ts} NOT NULL DEFAULT {now},
        PRIMARY KEY (product_id, store_code, pricing_product_option_value_entity_id, content_type)
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_sinalite_products_category ON sinalite_products (category)',
]

SCHEMA_DDL += [
    f'CREATE INDEX IF NOT EXISTS idx_{table.name}_product_store ON {table.name} (product_id, store_code)'
    for table in REGULAR_TABLES + ROLL_LABEL_TABLES
]


def ensure_schema(conn) -> None:
    """Create the Sinalite tables and indexes if they don't exist (idempotent)."""
    types = POSTGRES_TYPES if is_postgres(conn) else SQLITE_TYPES
    cursor = conn.cursor()
    try:
        for statement in SCHEMA_DDL:
            cursor.execute(statement.format(**types))
    finally:
        cursor.close()
    logger.info("Ensured Sinalite tables and indexes exist (%s)",
                "PostgreSQL" if is_postgres(conn) else "SQLite")


# =============================================================================
# Connection pool
# =============================================================================

class DatabasePool:
    """
    Connection pool for PostgreSQL, or a lock-guarded SQLite connection.

    get_connection() is one transaction: it commits when the block exits
    cleanly and rolls back (then re-raises) on any exception.
    """

    def __init__(self, database_url: Optional[str] = None, size: int = 1):
        self.database_url = database_url
        self.size = max(1, size)
        self._pg_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
        self._sqlite_conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @classmethod
    def from_connection(cls, conn: sqlite3.Connection) -> "DatabasePool":
        """Wrap an existing SQLite connection (used by tests)."""
        pool = cls(database_url=None)
        pool._sqlite_conn = conn
        return pool

    @property
    def is_sqlite(self) -> bool:
        if self._sqlite_conn is not None:
            return True
        return bool(self.database_url) and self.database_url.startswith(SQLITE_PREFIX)

    def initialize(self) -> None:
        """Open the connection(s). Raises psycopg2/sqlite3 errors as-is."""
        if self._pg_pool is not None or self._sqlite_conn is not None:
            return
        if not self.database_url:
            raise ValueError("DATABASE_URL not configured")

        if self.is_sqlite:
            path = sqlite_path(self.database_url)
            self._sqlite_conn = sqlite3.connect(path, check_same_thread=False)
            self._sqlite_conn.row_factory = sqlite3.Row
            logger.info("Connected to SQLite: %s", path)
        else:
            self._pg_pool = psycopg2.pool.ThreadedConnectionPool(1, self.size, self.database_url)
            logger.info("Connected to PostgreSQL (pool size %d)", self.size)

    @contextmanager
    def get_connection(self) -> Generator:
        """
        Borrow a connection for one transaction.

        Example:
            with pool.get_connection() as conn:
                persist_pair(conn, product, "en_us", detail)
        """
        if self._pg_pool is None and self._sqlite_conn is None:
            self.initialize()

        if self._sqlite_conn is not None:
            with self._lock:
                conn = self._sqlite_conn
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            return

        conn = self._pg_pool.getconn()
        discard = False
        try:
            yield conn
            conn.commit()
        except Exception as e:
            discard = is_connection_error(e.__cause__ or e)
            try:
                conn.rollback()
            except psycopg2.Error:
                discard = True
            raise
        finally:
            if conn.closed:
                discard = True
            if discard:
                logger.warning("Discarding broken database connection")
            self._pg_pool.putconn(conn, close=discard)

    def close(self) -> None:
        """Close all connections."""
        if self._pg_pool is not None:
            self._pg_pool.closeall()
            self._pg_pool = None
        if self._sqlite_conn is not None:
            self._sqlite_conn.close()
            self._sqlite_conn = None


def table_counts(conn, tables=ALL_TABLES) -> Dict[str, int]:
    """Row count per table (used by the report and tests)."""
    counts = {}
    cursor = conn.cursor()
    try:
        for table in tables:
            cursor.execute(f"SELECT COUNT(*) FROM {table.name}")
            counts[table.name] = cursor.fetchone()[0]
    finally:
        cursor.close()
    return counts
