"""
Run statistics, progress reporting, and CSV export of pair outcomes.
"""

import logging
import os
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import pandas as pd

from .classifier import ProductFamily
from .upserter import PersistCounts, TableCounts


logger = logging.getLogger(__name__)

SKIP_NOT_FOUND = "not_found"
SKIP_UNKNOWN_FORMAT = "unknown_format"

STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass
class PairOutcome:
    """Result of processing one (product, store) pair."""
    product_id: int
    store_code: str
    status: str
    family: Optional[str] = None
    reason: Optional[str] = None
    error_type: Optional[str] = None
    message: Optional[str] = None
    rows_written: int = 0
    duration_ms: int = 0


# =============================================================================
# Statistics Tracker
# =============================================================================

class StatsTracker:
    """
    Track ingestion statistics for reporting.

    Shared by all workers; every mutation takes the lock.
    """

    def __init__(self, store_codes: Sequence[str] = (), dry_run: bool = False,
                 limit: Optional[int] = None, product_id: Optional[int] = None):
        self.store_codes = tuple(store_codes)
        self.dry_run = dry_run
        self.limit = limit
        self.product_id = product_id
        self.started_at = datetime.now()
        self.completed_at: Optional[datetime] = None

        # Counters
        self.products_discovered = 0
        self.pairs_attempted = 0
        self.pairs_succeeded = 0
        self.pairs_skipped = 0
        self.pairs_failed = 0
        self.detail_calls = 0
        self.skip_reasons: Counter = Counter()
        self.family_counts: Counter = Counter()
        self.table_counts: Dict[str, TableCounts] = {}

        self.outcomes: List[PairOutcome] = []
        self.failures: List[PairOutcome] = []
        self.interrupted = False
        self.fatal_error: Optional[str] = None

        self._lock = threading.Lock()

    def set_discovered(self, count: int) -> None:
        with self._lock:
            self.products_discovered = count

    def record_detail_call(self) -> None:
        with self._lock:
            self.detail_calls += 1

    def record_row_write(self, table_name: str, inserted: Optional[bool]) -> None:
        """Count a write made outside any pair; None means the row was left as is."""
        if inserted is None:
            return
        with self._lock:
            self.table_counts.setdefault(table_name, TableCounts()).record(inserted)

    def record_success(self, product_id: int, store_code: str, family: ProductFamily,
                       counts: Optional[PersistCounts] = None, duration_ms: int = 0) -> PairOutcome:
        outcome = PairOutcome(
            product_id=product_id,
            store_code=store_code,
            status=STATUS_SUCCESS,
            family=family.value,
            rows_written=counts.rows_written if counts else 0,
            duration_ms=duration_ms,
        )
        with self._lock:
            self.pairs_attempted += 1
            self.pairs_succeeded += 1
            self.family_counts[family.value] += 1
            if counts:
                for name, table in counts.tables.items():
                    total = self.table_counts.setdefault(name, TableCounts())
                    total.inserted += table.inserted
                    total.updated += table.updated
                    total.deleted += table.deleted
            self.outcomes.append(outcome)
        return outcome

    def record_skip(self, product_id: int, store_code: str, reason: str,
                    family: Optional[ProductFamily] = None, duration_ms: int = 0) -> PairOutcome:
        outcome = PairOutcome(
            product_id=product_id,
            store_code=store_code,
            status=STATUS_SKIPPED,
            family=family.value if family else None,
            reason=reason,
            duration_ms=duration_ms,
        )
        with self._lock:
            self.pairs_attempted += 1
            self.pairs_skipped += 1
            self.skip_reasons[reason] += 1
            if family:
                self.family_counts[family.value] += 1
            self.outcomes.append(outcome)
        return outcome

    def record_failure(self, product_id: int, store_code: str, error: BaseException,
                       duration_ms: int = 0) -> PairOutcome:
        outcome = PairOutcome(
            product_id=product_id,
            store_code=store_code,
            status=STATUS_FAILED,
            error_type=type(error).__name__,
            message=str(error),
            duration_ms=duration_ms,
        )
        with self._lock:
            self.pairs_attempted += 1
            self.pairs_failed += 1
            self.failures.append(outcome)
            self.outcomes.append(outcome)
        return outcome

    def mark_interrupted(self) -> None:
        with self._lock:
            self.interrupted = True

    def mark_fatal(self, message: str) -> None:
        with self._lock:
            self.fatal_error = message

    def exit_code(self) -> int:
        """1 if any pair failed, the run was interrupted, or a precondition failed."""
        if self.pairs_failed or self.interrupted or self.fatal_error:
            return 1
        return 0

    def print_report(self):
        """Print the final ingestion statistics report to console."""
        self.completed_at = datetime.now()
        duration = self.completed_at - self.started_at
        duration_str = str(timedelta(seconds=int(duration.total_seconds())))

        print("\n" + "=" * 70)
        print("SINALITE INGESTION REPORT")
        print("=" * 70)
        print(f"\nRun Duration: {duration_str}")
        print(f"Dry Run: {'Yes' if self.dry_run else 'No'}")
        print(f"Store Codes: {', '.join(self.store_codes) or '-'}")
        if self.product_id is not None:
            print(f"Product ID: {self.product_id}")
        if self.limit:
            print(f"Limit: {self.limit}")
        if self.interrupted:
            print("Status: INTERRUPTED")
        if self.fatal_error:
            print(f"Status: ABORTED ({self.fatal_error})")

        print("\n--- PRODUCTS ---")
        print(f"  Discovered:    {self.products_discovered:>6}")
        print(f"  Detail calls:  {self.detail_calls:>6}")

        print("\n--- PAIRS ---")
        print(f"  Attempted:     {self.pairs_attempted:>6}")
        print(f"  Succeeded:     {self.pairs_succeeded:>6}")
        print(f"  Skipped:       {self.pairs_skipped:>6}")
        for reason, count in sorted(self.skip_reasons.items()):
            print(f"    {reason:<20} {count:>6}")
        print(f"  Failed:        {self.pairs_failed:>6}")

        if self.family_counts:
            print("\n--- FAMILIES ---")
            for family, count in sorted(self.family_counts.items()):
                print(f"  {family:<25} {count:>6}")

        if self.table_counts:
            print("\n--- TABLES (inserted / updated / deleted) ---")
            for name, counts in sorted(self.table_counts.items()):
                print(f"  {name:<35} {counts.inserted:>6} {counts.updated:>6} {counts.deleted:>6}")

        if self.failures:
            print("\n--- FAILURES ---")
            for failure in self.failures[:20]:
                print(f"  product_id={failure.product_id} store_code={failure.store_code} "
                      f"{failure.error_type}: {failure.message}")
            if len(self.failures) > 20:
                print(f"  ... ({len(self.failures)} total)")

        print("\n" + "=" * 70)

    def save_csv(self, output_dir: str = "output", output_file: str = None) -> str:
        """
        Save per-pair outcomes to a CSV file.
        If output_file is provided, uses that filename. Otherwise generates timestamped name.
        Returns the filepath of the created file.
        """
        if not self.outcomes:
            print("No pair outcomes to save")
            return ""

        df = pd.DataFrame([asdict(o) for o in self.outcomes])
        df = df.sort_values(['product_id', 'store_code'], kind='stable')

        os.makedirs(output_dir, exist_ok=True)
        if output_file:
            filepath = output_file if os.path.isabs(output_file) else os.path.join(output_dir, output_file)
        else:
            timestamp = datetime.now().strftime("%Y-%m-%d_%H%M%S")
            filepath = os.path.join(output_dir, f"sinalite_ingest_{timestamp}.csv")

        df.to_csv(filepath, index=False)
        print(f"\nSaved {len(df)} pair outcomes to: {filepath}")
        return filepath


# =============================================================================
# Progress Tracker
# =============================================================================

class ProgressTracker:
    """Track per-pair progress with rate calculation."""

    def __init__(self, total: int):
        self.total = total
        self.processed = 0
        self.start_time = time.time()
        self._lock = threading.Lock()

    def update(self, product_id: int, store_code: str, status: str) -> str:
        """Count one finished pair and log a progress line with rate and ETA."""
        with self._lock:
            self.processed += 1
            elapsed = time.time() - self.start_time
            rate = self.processed / elapsed if elapsed > 0 else 0.0
            if rate > 0:
                eta = str(timedelta(seconds=int((self.total - self.processed) / rate)))
            else:
                eta = "calculating..."
            pct = (self.processed / self.total * 100) if self.total > 0 else 0
            line = (f"[{self.processed}/{self.total}] ({pct:5.1f}%) "
                    f"product={product_id} store={store_code} [{status}] | "
                    f"{rate:.1f}/s | ETA: {eta}")
        logger.info(line)
        return line
