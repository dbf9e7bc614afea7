#!/usr/bin/env python3
"""
Sinalite Catalog Ingestion

Authenticates against the Sinalite API, discovers the product catalog, and
upserts per-store product details into PostgreSQL (or SQLite for local runs).

Credentials and the database URL are read from environment variables
(backend/.env is loaded first). Exit status is 0 when every pair succeeded
or was skipped, 1 on any pair failure, interruption, or fatal error.
"""

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from catalog_ingest.config import load_env_file, load_settings, split_store_codes
from catalog_ingest.errors import ConfigError, FatalIngestError, IngestCancelled, PersistenceError
from catalog_ingest.logging_config import setup_logging
from catalog_ingest.pipeline import IngestPipeline


logger = logging.getLogger("sinalite_ingest")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Sinalite product catalog ingestion'
    )
    parser.add_argument('--limit', type=int, default=None,
                        help='Maximum products to process (for testing)')
    parser.add_argument('--productId', '--product-id', dest='product_id', type=int, default=None,
                        help='Process a single product id (skips catalog discovery)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Fetch and classify only; no DDL and no writes')
    parser.add_argument('--storeCodes', '--store-codes', dest='store_codes', default=None,
                        help='Comma-separated store codes (default: SINALITE_STORE_CODES or en_ca,en_us)')
    parser.add_argument('--workers', type=int, default=None,
                        help='Parallel workers, one product per task (default: SINALITE_WORKERS or 1)')
    parser.add_argument('--output-dir', default=None,
                        help='Write a CSV of pair outcomes to this directory')
    parser.add_argument('--log-level', default=None,
                        help='Log level (default: LOG_LEVEL or INFO)')
    return parser.parse_args(argv)


def install_signal_handlers(cancel_event: threading.Event) -> dict:
    """Route SIGINT/SIGTERM to cancel_event. Returns the previous handlers."""
    def _handle(signum, frame):
        if not cancel_event.is_set():
            logger.warning("Received %s, finishing in-flight work and stopping",
                           signal.Signals(signum).name)
        cancel_event.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the ingestion job."""
    args = parse_args(argv)
    setup_logging(args.log_level or "INFO")
    load_env_file()

    try:
        settings = load_settings(
            store_codes=split_store_codes(args.store_codes) if args.store_codes else None,
            workers=args.workers,
            log_level=args.log_level,
            require_database=not args.dry_run,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1

    setup_logging(settings.log_level)

    cancel_event = threading.Event()
    pipeline = IngestPipeline(
        settings,
        dry_run=args.dry_run,
        limit=args.limit,
        product_id=args.product_id,
        cancel_event=cancel_event,
    )
    stats = pipeline.stats

    previous_handlers = install_signal_handlers(cancel_event)
    try:
        pipeline.run()
    except FatalIngestError as e:
        logger.error("Fatal: %s", e)
        stats.mark_fatal(str(e))
    except PersistenceError as e:
        logger.error("Fatal database error: %s", e)
        stats.mark_fatal(str(e))
    except IngestCancelled:
        logger.warning("Cancelled before processing started")
        stats.mark_interrupted()
    finally:
        restore_signal_handlers(previous_handlers)
        pipeline.close()

    stats.print_report()
    if args.output_dir:
        stats.save_csv(args.output_dir)

    return stats.exit_code()


if __name__ == "__main__":
    sys.exit(main())
