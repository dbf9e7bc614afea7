"""
Normalize classified detail payloads into rows and upsert them.

Every write for one (product, store) pair happens inside the caller's
transaction (DatabasePool.get_connection), so a pair is either fully written
or not at all.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import psycopg2

from .classifier import ClassifiedDetail, DetailArrays, ProductFamily
from .database import (
    PRODUCT_METADATA,
    PRODUCT_OPTIONS,
    PRODUCT_PRICING,
    PRODUCTS,
    REGULAR_TABLES,
    ROLL_LABEL_CONTENT,
    ROLL_LABEL_EXCLUSIONS,
    ROLL_LABEL_OPTIONS,
    ROLL_LABEL_TABLES,
    TableSpec,
    db_placeholder,
    is_postgres,
    now_sql,
)
from .discovery import ProductRef, coerce_int
from .errors import PersistenceError


logger = logging.getLogger(__name__)

DB_ERRORS = (psycopg2.Error, sqlite3.Error)


@dataclass
class TableCounts:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0

    def record(self, inserted: bool) -> None:
        if inserted:
            self.inserted += 1
        else:
            self.updated += 1


@dataclass
class PersistCounts:
    """Per-table outcome of persisting one pair."""
    family: ProductFamily
    tables: Dict[str, TableCounts] = field(default_factory=dict)
    skipped_rows: int = 0

    def table(self, name: str) -> TableCounts:
        return self.tables.setdefault(name, TableCounts())

    @property
    def rows_written(self) -> int:
        return sum(c.inserted + c.updated for c in self.tables.values())


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return to_json(value)
    return str(value)


# =============================================================================
# Generic SQL
# =============================================================================

def _insert_values(conn, table: TableSpec, row: Dict[str, Any]) -> Tuple[List[Any], List[str]]:
    pg = is_postgres(conn)
    ph = db_placeholder(conn)
    values = [to_json(row.get(c)) if c in table.json_columns else row.get(c) for c in table.columns]
    placeholders = [f"{ph}::jsonb" if pg and c in table.json_columns else ph for c in table.columns]
    return values, placeholders


def upsert_row(conn, table: TableSpec, row: Dict[str, Any]) -> bool:
    """
    INSERT ... ON CONFLICT (key) DO UPDATE for one row.

    Returns:
        True if the row was inserted, False if an existing row was updated.
    """
    pg = is_postgres(conn)
    ph = db_placeholder(conn)
    now = now_sql(conn)

    columns = table.columns
    values, placeholders = _insert_values(conn, table, row)
    updates = [f"{c} = EXCLUDED.{c}" for c in table.value_columns] + [f"updated_at = {now}"]

    sql = (
        f"INSERT INTO {table.name} ({', '.join(columns)}, updated_at) "
        f"VALUES ({', '.join(placeholders)}, {now}) "
        f"ON CONFLICT ({', '.join(table.key_columns)}) DO UPDATE SET {', '.join(updates)}"
    )

    cursor = conn.cursor()
    try:
        if pg:
            cursor.execute(sql + " RETURNING (xmax = 0) AS inserted", values)
            return bool(cursor.fetchone()[0])

        where = " AND ".join(f"{c} = {ph}" for c in table.key_columns)
        cursor.execute(f"SELECT 1 FROM {table.name} WHERE {where}",
                       [row.get(c) for c in table.key_columns])
        existed = cursor.fetchone() is not None
        cursor.execute(sql, values)
        return not existed
    finally:
        cursor.close()


def insert_row_if_missing(conn, table: TableSpec, row: Dict[str, Any]) -> bool:
    """INSERT ... ON CONFLICT (key) DO NOTHING. Returns True if a row was inserted."""
    columns = table.columns
    values, placeholders = _insert_values(conn, table, row)

    cursor = conn.cursor()
    try:
        cursor.execute(
            f"INSERT INTO {table.name} ({', '.join(columns)}, updated_at) "
            f"VALUES ({', '.join(placeholders)}, {now_sql(conn)}) "
            f"ON CONFLICT ({', '.join(table.key_columns)}) DO NOTHING",
            values,
        )
        return cursor.rowcount == 1
    finally:
        cursor.close()


def delete_pair_rows(conn, table: TableSpec, product_id: int, store_code: str) -> int:
    """Delete every row of a table for one pair. Returns the number deleted."""
    ph = db_placeholder(conn)
    cursor = conn.cursor()
    try:
        cursor.execute(
            f"DELETE FROM {table.name} WHERE product_id = {ph} AND store_code = {ph}",
            (product_id, store_code),
        )
        return max(cursor.rowcount, 0)
    finally:
        cursor.close()


def prune_pair_rows(conn, table: TableSpec, product_id: int, store_code: str,
                    keep: Set[Tuple]) -> int:
    """
    Delete a pair's rows whose key is not in keep.

    keep holds the key columns after (product_id, store_code), as tuples.
    """
    ph = db_placeholder(conn)
    extra_keys = table.key_columns[2:]
    cursor = conn.cursor()
    try:
        cursor.execute(
            f"SELECT {', '.join(extra_keys)} FROM {table.name} "
            f"WHERE product_id = {ph} AND store_code = {ph}",
            (product_id, store_code),
        )
        stale = [tuple(r) for r in cursor.fetchall() if tuple(r) not in keep]
        where = " AND ".join(f"{c} = {ph}" for c in table.key_columns)
        for key in stale:
            cursor.execute(f"DELETE FROM {table.name} WHERE {where}", (product_id, store_code) + key)
    finally:
        cursor.close()
    return len(stale)


# =============================================================================
# Row builders
# =============================================================================

def regular_option_rows(items: List[Any]) -> Iterable[Dict[str, Any]]:
    for item in items:
        if not isinstance(item, dict) or not all(k in item for k in ("id", "group", "name")):
            continue
        yield {
            'option_id': coerce_int(item.get('id')),
            'option_group': _text(item.get('group')),
            'option_name': _text(item.get('name')),
            'raw_json': item,
        }


def regular_pricing_rows(items: List[Any]) -> Iterable[Dict[str, Any]]:
    for item in items:
        if not isinstance(item, dict) or not item.get('hash'):
            continue
        yield {
            'hash': str(item['hash']),
            'value': _text(item.get('value')),
            'raw_json': item,
        }


def regular_metadata_rows(items: List[Any]) -> Iterable[Dict[str, Any]]:
    for index, item in enumerate(items):
        yield {'metadata_index': index, 'raw_json': item}


def roll_option_rows(items: List[Any]) -> Iterable[Dict[str, Any]]:
    for item in items:
        if not isinstance(item, dict) or 'option_id' not in item or 'opt_val_id' not in item:
            continue
        yield {
            'option_id': coerce_int(item.get('option_id')),
            'opt_val_id': coerce_int(item.get('opt_val_id')),
            'name': _text(item.get('name')),
            'label': _text(item.get('label')),
            'option_val': _text(item.get('option_val')),
            'html_type': _text(item.get('html_type')),
            'opt_sort_order': coerce_int(item.get('opt_sort_order')),
            'opt_val_sort_order': coerce_int(item.get('opt_val_sort_order')),
            'img_src': _text(item.get('img_src')),
            'extra_turnaround_days': coerce_int(item.get('extra_turnaround_days')),
            'raw_json': item,
        }


def roll_exclusion_rows(items: List[Any]) -> Iterable[Dict[str, Any]]:
    for index, item in enumerate(items):
        fields = item if isinstance(item, dict) else {}
        yield {
            'exclusion_index': index,
            'size_id': coerce_int(fields.get('size_id')),
            'qty': coerce_int(fields.get('qty')),
            'pricing_product_option_entity_id_1': coerce_int(fields.get('pricing_product_option_entity_id_1')),
            'pricing_product_option_value_entity_id_1': coerce_int(fields.get('pricing_product_option_value_entity_id_1')),
            'pricing_product_option_entity_id_2': coerce_int(fields.get('pricing_product_option_entity_id_2')),
            'pricing_product_option_value_entity_id_2': coerce_int(fields.get('pricing_product_option_value_entity_id_2')),
            'raw_json': item,
        }


def roll_content_rows(items: List[Any]) -> Iterable[Dict[str, Any]]:
    for item in items:
        if not isinstance(item, dict) or item.get('pricing_product_option_value_entity_id') is None:
            continue
        content_type = item.get('content_type')
        yield {
            'pricing_product_option_value_entity_id': coerce_int(item.get('pricing_product_option_value_entity_id')),
            'content_type': '' if content_type is None else str(content_type),
            'content': _text(item.get('content')),
            'raw_json': item,
        }


RowBuilder = Callable[[List[Any]], Iterable[Dict[str, Any]]]

# (table, builder, which array feeds it)
FAMILY_LAYOUT: Dict[ProductFamily, List[Tuple[TableSpec, RowBuilder, str]]] = {
    ProductFamily.REGULAR: [
        (PRODUCT_OPTIONS, regular_option_rows, 'arr1'),
        (PRODUCT_PRICING, regular_pricing_rows, 'arr2'),
        (PRODUCT_METADATA, regular_metadata_rows, 'arr3'),
    ],
    ProductFamily.ROLL_LABEL: [
        (ROLL_LABEL_OPTIONS, roll_option_rows, 'arr1'),
        (ROLL_LABEL_EXCLUSIONS, roll_exclusion_rows, 'arr2'),
        (ROLL_LABEL_CONTENT, roll_content_rows, 'arr3'),
    ],
}

OTHER_FAMILY_TABLES = {
    ProductFamily.REGULAR: ROLL_LABEL_TABLES,
    ProductFamily.ROLL_LABEL: REGULAR_TABLES,
}


# =============================================================================
# Pair persistence
# =============================================================================

def product_row(product: ProductRef) -> Dict[str, Any]:
    return {
        'product_id': product.product_id,
        'sku': product.sku,
        'name': product.name,
        'category': product.category,
        'enabled': product.enabled,
        'raw_json': product.raw,
    }


def upsert_product(conn, product: ProductRef) -> bool:
    return upsert_row(conn, PRODUCTS, product_row(product))


def write_product(conn, product: ProductRef) -> Optional[bool]:
    """
    Write the sinalite_products row for a product.

    Listed products are upserted from their catalog fragment. A bare id from
    --productId has no listing data, so it only creates a missing row and
    never overwrites name, sku or raw_json.

    Returns:
        True if inserted, False if updated, None if an existing row was kept.
    """
    if product.listed:
        return upsert_product(conn, product)
    return True if insert_row_if_missing(conn, PRODUCTS, product_row(product)) else None


def _write_family_table(conn, table: TableSpec, rows: Iterable[Dict[str, Any]],
                        product_id: int, store_code: str, counts: PersistCounts) -> None:
    table_counts = counts.table(table.name)
    extra_keys = table.key_columns[2:]
    keep: Set[Tuple] = set()

    for row in rows:
        key = tuple(row[c] for c in extra_keys)
        if any(part is None for part in key):
            counts.skipped_rows += 1
            logger.warning("product=%s store=%s: skipping %s row with non-integer key %s",
                           product_id, store_code, table.name, dict(zip(extra_keys, key)))
            continue
        row = dict(row, product_id=product_id, store_code=store_code)
        table_counts.record(upsert_row(conn, table, row))
        keep.add(key)

    table_counts.deleted += prune_pair_rows(conn, table, product_id, store_code, keep)


def persist_pair(conn, product: ProductRef, store_code: str, detail: ClassifiedDetail,
                 include_product: bool = True) -> PersistCounts:
    """
    Write one classified (product, store) payload.

    Args:
        conn: Connection inside an open transaction
        product: Catalog entry (its listing fragment becomes the product row)
        store_code: Storefront code
        detail: Classified payload; must be REGULAR or ROLL_LABEL
        include_product: Upsert the sinalite_products row first

    Returns:
        PersistCounts with inserted/updated/deleted per table.

    Raises:
        PersistenceError: any database error (the caller's transaction rolls back)
    """
    if detail.family not in FAMILY_LAYOUT:
        raise ValueError(f"Cannot persist payload of family {detail.family.value}")

    product_id = product.product_id
    counts = PersistCounts(family=detail.family)
    arrays: DetailArrays = detail.arrays

    try:
        if include_product:
            written = write_product(conn, product)
            if written is not None:
                counts.table(PRODUCTS.name).record(written)

        for table in OTHER_FAMILY_TABLES[detail.family]:
            deleted = delete_pair_rows(conn, table, product_id, store_code)
            if deleted:
                counts.table(table.name).deleted += deleted
                logger.info("product=%s store=%s: removed %d stale %s rows after family change",
                            product_id, store_code, deleted, table.name)

        for table, builder, source in FAMILY_LAYOUT[detail.family]:
            _write_family_table(conn, table, builder(getattr(arrays, source)),
                                product_id, store_code, counts)
    except DB_ERRORS as e:
        raise PersistenceError(
            f"Database error for product={product_id} store={store_code}: {e}", original=e
        ) from e

    return counts
