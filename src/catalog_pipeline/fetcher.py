"""Extraction Fetcher Module

Paginated retrieval of the vendor catalog (Shopify-style ``products.json``
listings), either for the whole store or per named collection.

The loop is deliberately sequential and rate limited: one GET per page, a
fixed politeness delay between requests, a page-count ceiling per source and
an optional global deadline checked between requests. A page that times out
or cannot be parsed is recorded and treated as empty; extraction then moves
on to the next page and never re-requests a failed one.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from .config import PipelineConfig
from .errors import MalformedResponseError, TransientFetchError
from .models import SkipReason, SkipRecord, SourceSpec, VendorProduct

logger = logging.getLogger(__name__)

USER_AGENT = "catalog-pipeline/1.0 (+batch import)"


class FetchedPage(BaseModel):
    """One page of vendor products, tagged with the collection it came from."""
    collection: Optional[str] = None
    page: int
    products: List[VendorProduct] = []
    failed: bool = False


class ExtractionFetcher:
    """Sequential, rate-limited pager over the vendor catalog API."""

    def __init__(
        self,
        config: PipelineConfig,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = config.vendor_base_url
        self.page_size = config.page_size
        self.max_pages = config.max_pages
        self.delay = config.request_delay_seconds
        self.timeout = config.request_timeout_seconds
        self.run_deadline = config.run_deadline_seconds
        self.client = client or httpx.Client(headers={"User-Agent": USER_AGENT})
        self._sleep = sleep
        self._clock = clock

        self.errors: List[SkipRecord] = []
        self.pages_requested = 0
        self.products_fetched = 0
        self.deadline_hit = False
        self._started_at: Optional[float] = None
        self._last_request_at: Optional[float] = None

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    def listing_url(self, collection: Optional[str]) -> str:
        if collection:
            return f"{self.base_url}/collections/{collection}/products.json"
        return f"{self.base_url}/products.json"

    # ------------------------------------------------------------------
    # Paging
    # ------------------------------------------------------------------

    def iter_pages(self, source: SourceSpec) -> Iterator[FetchedPage]:
        """Yield pages lazily for every collection in ``source`` (or the full listing)."""
        if self._started_at is None:
            self._started_at = self._clock()

        targets: List[Optional[str]] = [None] if source.is_all_products else list(source.collections)
        for collection in targets:
            if self.deadline_hit:
                break
            yield from self._iter_source(collection)

    def _iter_source(self, collection: Optional[str]) -> Iterator[FetchedPage]:
        label = collection or "all products"
        for page in range(1, self.max_pages + 1):
            if self._deadline_passed():
                self.deadline_hit = True
                logger.warning("Run deadline reached; stopping extraction before %s page %d", label, page)
                return

            self._wait_politely()
            try:
                products = self.fetch_page(collection, page)
            except (TransientFetchError, MalformedResponseError) as e:
                reason = (
                    SkipReason.MALFORMED_RESPONSE
                    if isinstance(e, MalformedResponseError)
                    else SkipReason.FETCH_ERROR
                )
                self.errors.append(SkipRecord(reason=reason, detail=f"{e.url}: {e}"))
                logger.warning("Page %d of %s failed (%s); treating as empty", page, label, e)
                yield FetchedPage(collection=collection, page=page, failed=True)
                continue

            logger.info("Fetched %s page %d: %d products", label, page, len(products))
            yield FetchedPage(collection=collection, page=page, products=products)
            if not products:
                return
        else:
            logger.warning("Reached page ceiling (%d) for %s, stopping.", self.max_pages, label)

    def fetch_page(self, collection: Optional[str], page: int) -> List[VendorProduct]:
        """GET one page and parse its products.

        Raises:
            TransientFetchError: timeout, transport error or non-2xx status
            MalformedResponseError: body is not JSON or has no ``products`` list
        """
        url = self.listing_url(collection)
        params = {"limit": self.page_size, "page": page}
        self.pages_requested += 1
        self._last_request_at = self._clock()

        try:
            response = self.client.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientFetchError(f"{type(e).__name__}: {e}", url=url) from e

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"invalid JSON: {e}", url=url) from e

        raw_products = data.get("products") if isinstance(data, dict) else None
        if not isinstance(raw_products, list):
            raise MalformedResponseError("response has no 'products' array", url=url)

        products: List[VendorProduct] = []
        for raw in raw_products:
            product = self._parse_product(raw, collection, url)
            if product is not None:
                products.append(product)
        self.products_fetched += len(products)
        return products

    def _parse_product(
        self,
        raw: Dict[str, Any],
        collection: Optional[str],
        url: str,
    ) -> Optional[VendorProduct]:
        if not isinstance(raw, dict):
            self.errors.append(
                SkipRecord(reason=SkipReason.MALFORMED_RESPONSE, detail=f"{url}: non-object product")
            )
            return None
        try:
            product = VendorProduct.model_validate(raw)
        except ValidationError as e:
            logger.warning("Skipping malformed product id=%r from %s: %s", raw.get("id"), url, e)
            self.errors.append(
                SkipRecord(
                    reason=SkipReason.MALFORMED_RESPONSE,
                    vendor_id=str(raw["id"]) if raw.get("id") is not None else None,
                    vendor=raw.get("vendor"),
                    detail=str(e).splitlines()[0],
                )
            )
            return None
        if collection and collection not in product.collections:
            product.collections.append(collection)
        return product

    # ------------------------------------------------------------------
    # Pacing
    # ------------------------------------------------------------------

    def _wait_politely(self) -> None:
        if self._last_request_at is None or self.delay <= 0:
            return
        remaining = self.delay - (self._clock() - self._last_request_at)
        if remaining > 0:
            self._sleep(remaining)

    def _deadline_passed(self) -> bool:
        if self.run_deadline is None or self._started_at is None:
            return False
        return self._clock() - self._started_at >= self.run_deadline

    def close(self) -> None:
        self.client.close()
