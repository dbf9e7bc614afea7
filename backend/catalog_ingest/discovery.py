"""
Catalog discovery.

Lists every vendor product id. The /product endpoint has returned several
shapes over time, so each is accepted; when none matches, the storefront
category tree is crawled instead.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import requests

from .client import SinaliteClient
from .errors import ApiResponseError, DiscoveryError, TransientNetworkError


logger = logging.getLogger(__name__)

PER_PAGE = 100
LIST_KEYS = ("products", "data", "items", "results")

# requests errors that get_json does not retry (redirect loops, bad URLs, decoding)
LISTING_ERRORS = (TransientNetworkError, ApiResponseError, requests.exceptions.RequestException)


def coerce_int(value: Any) -> Optional[int]:
    """Convert an id-like value to int, or None when it is not integral."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return None
            return int(number) if number.is_integer() else None
    return None


def coerce_enabled(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "enabled"):
            return True
        if lowered in ("0", "false", "no", "disabled"):
            return False
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass
class ProductRef:
    """A product id plus the catalog listing fragment it came from."""
    product_id: int
    name: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    enabled: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    listed: bool = True

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["ProductRef"]:
        """Build from a listing entry; None when the entry has no numeric id."""
        if not isinstance(raw, dict):
            return None
        product_id = coerce_int(raw.get('id', raw.get('product_id')))
        if product_id is None:
            return None
        category = raw.get('category')
        if isinstance(category, dict):
            category = category.get('name')
        return cls(
            product_id=product_id,
            name=_text(raw.get('name')),
            sku=_text(raw.get('sku')),
            category=_text(category),
            enabled=coerce_enabled(raw.get('enabled')),
            raw=raw,
        )

    @classmethod
    def synthetic(cls, product_id: int) -> "ProductRef":
        """A bare id given on the command line; it carries no listing data."""
        return cls(product_id=product_id, raw={'id': product_id}, listed=False)


def extract_list(payload: Any, keys: Iterable[str] = LIST_KEYS) -> Optional[List[Any]]:
    """Return the payload itself if it is a list, else the first list under one of keys."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return None


def dedupe_products(entries: Iterable[Any]) -> List[ProductRef]:
    """Convert listing entries to ProductRefs, dropping id-less and repeated entries."""
    seen = set()
    products = []
    dropped = 0
    for entry in entries:
        ref = ProductRef.from_raw(entry)
        if ref is None:
            dropped += 1
            continue
        if ref.product_id in seen:
            continue
        seen.add(ref.product_id)
        products.append(ref)
    if dropped:
        logger.warning("Dropped %d catalog entries without a numeric id", dropped)
    return products


class CatalogDiscoverer:
    """Lists products from /product, falling back to the storefront crawl."""

    def __init__(self, client: SinaliteClient, locale: Optional[str] = None):
        self.client = client
        self.locale = locale or client.settings.storefront_locale

    def list_products(self, product_id: Optional[int] = None, limit: Optional[int] = None) -> List[ProductRef]:
        """
        Discover the products to ingest.

        Args:
            product_id: Process just this id (skips discovery entirely)
            limit: Keep only the first N discovered products

        Raises:
            DiscoveryError: the catalog could not be listed or was empty
        """
        if product_id is not None:
            logger.info("Single product mode: product=%s", product_id)
            return [ProductRef.synthetic(product_id)]

        entries = self._list_direct()
        if not entries:
            logger.info("Catalog endpoint returned no usable list, crawling storefront '%s'", self.locale)
            entries = self._crawl()

        products = dedupe_products(entries)
        if not products:
            raise DiscoveryError(
                "Catalog discovery found zero products (check SINALITE_API_BASE and credentials)"
            )

        logger.info("Discovered %d products", len(products))
        if limit is not None and limit > 0:
            products = products[:limit]
        return products

    def _list_direct(self) -> Optional[List[Any]]:
        """Entries from GET /product, or None when the response is unusable."""
        try:
            payload = self.client.get_json("product")
        except LISTING_ERRORS as e:
            logger.warning("GET product failed: %s", e)
            return None

        if isinstance(payload, list):
            return payload

        if isinstance(payload, dict):
            rows = payload.get('products')
            if isinstance(rows, list):
                return rows + self._remaining_pages(payload)
            if coerce_int(payload.get('id')) is not None:
                return [payload]

        return None

    def _remaining_pages(self, first_page: Dict[str, Any]) -> List[Any]:
        total_pages = coerce_int(first_page.get('total_pages'))
        if not total_pages or total_pages <= 1 or not first_page.get('products'):
            return []

        gathered: List[Any] = []
        for page in range(2, total_pages + 1):
            try:
                payload = self.client.get_json("product", params={'page': page, 'per_page': PER_PAGE})
            except LISTING_ERRORS as e:
                raise DiscoveryError(f"Catalog page {page}/{total_pages} failed: {e}") from e
            rows = extract_list(payload, ("products",)) or []
            logger.debug("Catalog page %d/%d: %d products", page, total_pages, len(rows))
            if not rows:
                break
            gathered.extend(rows)
        return gathered

    def _crawl(self) -> List[Any]:
        """Walk categories -> subcategories -> products for the storefront locale."""
        base = f"storefront/{self.locale}"
        try:
            categories = extract_list(self.client.get_json(f"{base}/categories"), ("categories",) + LIST_KEYS)
        except LISTING_ERRORS as e:
            raise DiscoveryError(f"Storefront category listing failed: {e}") from e
        if not categories:
            raise DiscoveryError(f"Storefront '{self.locale}' returned no categories")

        entries: List[Any] = []
        for category in categories:
            category_id = coerce_int(category.get('id')) if isinstance(category, dict) else None
            if category_id is None:
                continue
            subcategories = self._crawl_step(
                f"{base}/categories/{category_id}/subcategories", ("subcategories",) + LIST_KEYS
            )
            for subcategory in subcategories:
                subcategory_id = coerce_int(subcategory.get('id')) if isinstance(subcategory, dict) else None
                if subcategory_id is None:
                    continue
                entries.extend(self._crawl_step(f"{base}/subcategories/{subcategory_id}/products", LIST_KEYS))

        logger.info("Storefront crawl collected %d product entries from %d categories",
                    len(entries), len(categories))
        return entries

    def _crawl_step(self, path: str, keys: Iterable[str]) -> List[Any]:
        try:
            return extract_list(self.client.get_json(path), keys) or []
        except LISTING_ERRORS as e:
            logger.warning("Skipping %s: %s", path, e)
            return []
