"""
Ingestion orchestration.

schema -> token -> discovery -> for each product: refresh its product row, then
for each store: fetch, classify, persist, record. Pair-level errors are
recorded and the run continues; configuration, auth and discovery errors
propagate and abort the run.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional

from .classifier import ClassifiedDetail, classify
from .client import SinaliteClient
from .config import Settings
from .database import PRODUCTS, DatabasePool, ensure_schema
from .discovery import CatalogDiscoverer, ProductRef
from .errors import IngestCancelled, IngestError, PersistenceError
from .retry import cancellable_sleep
from .stats import (
    SKIP_NOT_FOUND,
    SKIP_UNKNOWN_FORMAT,
    PairOutcome,
    ProgressTracker,
    StatsTracker,
)
from .upserter import DB_ERRORS, PersistCounts, persist_pair, write_product


logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


class IngestPipeline:
    """
    One ingestion run.

    Usage:
        pipeline = IngestPipeline(settings, dry_run=False, limit=10)
        stats = pipeline.run()
        stats.print_report()
    """

    def __init__(
        self,
        settings: Settings,
        *,
        dry_run: bool = False,
        limit: Optional[int] = None,
        product_id: Optional[int] = None,
        client: Optional[SinaliteClient] = None,
        pool: Optional[DatabasePool] = None,
        stats: Optional[StatsTracker] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.settings = settings
        self.dry_run = dry_run
        self.limit = limit
        self.product_id = product_id
        self.cancel_event = cancel_event or threading.Event()

        self.client = client or SinaliteClient(
            settings,
            sleep=cancellable_sleep(self.cancel_event),
            should_stop=self.cancel_event.is_set,
        )
        if pool is None and not dry_run:
            pool = DatabasePool(settings.database_url, size=settings.workers)
        self.pool = pool
        self.stats = stats or StatsTracker(
            settings.store_codes, dry_run=dry_run, limit=limit, product_id=product_id
        )

        self._written_products = set()
        self._written_lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def prepare_database(self) -> None:
        """Connect and create the tables. Raises PersistenceError on failure."""
        try:
            self.pool.initialize()
            with self.pool.get_connection() as conn:
                ensure_schema(conn)
        except DB_ERRORS as e:
            raise PersistenceError(f"Database setup failed: {e}", original=e) from e

    def run(self) -> StatsTracker:
        """
        Execute the run.

        Raises:
            FatalIngestError: auth or discovery failed
            PersistenceError: the database could not be prepared
            IngestCancelled: cancelled before processing started
        """
        logger.info("Starting Sinalite ingestion (dry_run=%s, limit=%s, product_id=%s, stores=%s, workers=%d)",
                    self.dry_run, self.limit, self.product_id,
                    ",".join(self.settings.store_codes), self.settings.workers)

        if self.dry_run:
            logger.info("Dry run enabled; skipping DDL and writes")
        else:
            self.prepare_database()

        self.client.authenticate()

        products = CatalogDiscoverer(self.client).list_products(
            product_id=self.product_id, limit=self.limit
        )
        self.stats.set_discovered(len(products))
        logger.info("Processing %d products x %d store codes",
                    len(products), len(self.settings.store_codes))

        progress = ProgressTracker(len(products) * len(self.settings.store_codes))
        if self.settings.workers <= 1:
            for product in products:
                if self.cancelled:
                    break
                self.process_product(product, progress)
        else:
            self._run_parallel(products, progress)

        if self.cancelled:
            logger.warning("Run interrupted; %d of %d pairs processed",
                           progress.processed, progress.total)
            self.stats.mark_interrupted()
        else:
            logger.info("Completed ingestion")
        return self.stats

    def _run_parallel(self, products: List[ProductRef], progress: ProgressTracker) -> None:
        # One product per task: no two workers ever write the same pair
        with ThreadPoolExecutor(max_workers=self.settings.workers,
                                thread_name_prefix="ingest") as executor:
            futures = [executor.submit(self.process_product, product, progress) for product in products]
            for future in as_completed(futures):
                future.result()

    def process_product(self, product: ProductRef, progress: Optional[ProgressTracker] = None) -> None:
        if not self.dry_run and not self.cancelled:
            self.write_product_row(product)
        for store_code in self.settings.store_codes:
            if self.cancelled:
                return
            outcome = self.process_pair(product, store_code)
            if progress is not None and outcome is not None:
                progress.update(product.product_id, store_code, outcome.status)

    def process_pair(self, product: ProductRef, store_code: str) -> Optional[PairOutcome]:
        """
        Fetch, classify and persist one pair, recording the outcome.

        Returns None if cancellation interrupted the pair before it finished.
        """
        product_id = product.product_id
        start = time.time()
        try:
            self.stats.record_detail_call()
            payload = self.client.fetch_detail(product_id, store_code)
            if payload is None:
                logger.warning("product=%s store=%s: no detail payload, skipping", product_id, store_code)
                return self.stats.record_skip(product_id, store_code, SKIP_NOT_FOUND,
                                              duration_ms=_elapsed_ms(start))

            detail = classify(payload)
            if detail.is_unknown:
                logger.warning("product=%s store=%s: unrecognized detail format arrays=%s, skipping",
                               product_id, store_code, detail.arrays.sizes())
                return self.stats.record_skip(product_id, store_code, SKIP_UNKNOWN_FORMAT,
                                              family=detail.family, duration_ms=_elapsed_ms(start))

            counts = None
            if not self.dry_run:
                counts = self._persist(product, store_code, detail)

            logger.info("product=%s store=%s: processed family=%s arrays=%s rows=%d in %dms",
                        product_id, store_code, detail.family.value, detail.arrays.sizes(),
                        counts.rows_written if counts else 0, _elapsed_ms(start))
            return self.stats.record_success(product_id, store_code, detail.family, counts,
                                             duration_ms=_elapsed_ms(start))

        except IngestCancelled:
            logger.info("product=%s store=%s: cancelled", product_id, store_code)
            return None
        except IngestError as e:
            logger.error("product=%s store=%s: %s", product_id, store_code, e)
            return self.stats.record_failure(product_id, store_code, e, duration_ms=_elapsed_ms(start))
        except Exception as e:
            logger.exception("product=%s store=%s: unexpected error", product_id, store_code)
            return self.stats.record_failure(product_id, store_code, e, duration_ms=_elapsed_ms(start))

    def write_product_row(self, product: ProductRef) -> None:
        """
        Refresh the sinalite_products row before the product's pairs.

        On a database error the row is left to the product's first committed pair.
        """
        try:
            with self.pool.get_connection() as conn:
                inserted = write_product(conn, product)
        except DB_ERRORS as e:
            logger.error("product=%s: product row write failed, deferring to its first pair: %s",
                         product.product_id, e)
            return

        self.stats.record_row_write(PRODUCTS.name, inserted)
        with self._written_lock:
            self._written_products.add(product.product_id)

    def _persist(self, product: ProductRef, store_code: str, detail: ClassifiedDetail) -> PersistCounts:
        with self._written_lock:
            include_product = product.product_id not in self._written_products

        try:
            with self.pool.get_connection() as conn:
                counts = persist_pair(conn, product, store_code, detail, include_product=include_product)
        except DB_ERRORS as e:
            # Commit-time failures surface outside persist_pair
            raise PersistenceError(
                f"Commit failed for product={product.product_id} store={store_code}: {e}", original=e
            ) from e

        if include_product:
            with self._written_lock:
                self._written_products.add(product.product_id)
        return counts

    def close(self) -> None:
        self.client.close()
        if self.pool is not None:
            self.pool.close()
