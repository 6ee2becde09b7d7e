"""Enrichment Merger

Two-way reconciliation between the canonical products of this run and the
description records held by the content service.

Pass 1, product -> content (match by product id, then by handle):
  - matched, fingerprint unchanged (or unknown)   -> current, untouched
  - matched, fingerprint changed                 -> marked outdated
  - matched by handle only                       -> relinked to the product id,
                                                    if the catalog knows the handle
  - unmatched                                    -> default record written by
                                                    the copywriter and created

Pass 2, content -> product (match by product id only):
  - records claimed in pass 1 are skipped
  - records whose product id is not in the catalog are orphans -> deleted
  - records without a product id are left alone

Remote writes run on the bounded worker pool; a failed write affects only
its own product or record.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .catalog_client import CatalogView
from .copywriter import TemplateCopywriter
from .errors import EnrichmentServiceError
from .models import (
    CanonicalProduct,
    EnrichmentRecord,
    SkipReason,
    SkipRecord,
    SyncStatus,
)
from .taxonomy import TaxonomyMapper
from .workers import run_bounded

logger = logging.getLogger(__name__)


def product_fingerprint(product: CanonicalProduct) -> str:
    """Stable hash of the product fields a description is written from."""
    material = {
        "title": product.title,
        "handle": product.handle,
        "vendor": product.vendor,
        "category_path": product.category_path,
        "variants": [
            [v.title, v.sku, v.price, v.compare_at_price] for v in product.variants
        ],
        "tags": product.tags,
    }
    encoded = json.dumps(material, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class EnrichmentCounts(BaseModel):
    current: int = 0
    outdated: int = 0
    relinked: int = 0
    created: int = 0
    deleted: int = 0
    failed: int = 0
    unlinked_kept: int = 0


class EnrichmentResult(BaseModel):
    """Outcome of one reconciliation.

    ``records`` maps canonical product id -> the record to publish with it;
    products missing from it failed enrichment and are listed in ``skips``.
    """
    records: Dict[str, EnrichmentRecord] = {}
    counts: EnrichmentCounts = Field(default_factory=EnrichmentCounts)
    skips: List[SkipRecord] = []
    orphaned_product_ids: List[str] = []


class EnrichmentMerger:

    def __init__(
        self,
        client,
        copywriter: TemplateCopywriter,
        taxonomy: TaxonomyMapper,
        max_workers: int = 4,
        item_timeout: Optional[float] = None,
        dry_run: bool = False,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.copywriter = copywriter
        self.taxonomy = taxonomy
        self.max_workers = max_workers
        self.item_timeout = item_timeout
        self.dry_run = dry_run
        self._now = now

    # ------------------------------------------------------------------

    def reconcile(self, products: Sequence[CanonicalProduct], catalog: CatalogView) -> EnrichmentResult:
        result = EnrichmentResult()

        try:
            records = self.client.list_records()
        except EnrichmentServiceError as e:
            # without the current records neither pass can be decided safely
            logger.error("Could not list content records, enrichment skipped: %s", e)
            result.counts.failed = len(products)
            result.skips = [self._skip(p, f"listing failed: {e}") for p in products]
            return result

        logger.info("Reconciling %d products against %d content records", len(products), len(records))
        claimed = self._product_pass(products, records, catalog, result)
        self._content_pass(records, claimed, catalog, result)

        logger.info(
            "✓ Enrichment: current=%d outdated=%d relinked=%d created=%d deleted=%d failed=%d",
            result.counts.current,
            result.counts.outdated,
            result.counts.relinked,
            result.counts.created,
            result.counts.deleted,
            result.counts.failed,
        )
        return result

    # ------------------------------------------------------------------
    # Pass 1: product -> content
    # ------------------------------------------------------------------

    def _product_pass(
        self,
        products: Sequence[CanonicalProduct],
        records: List[EnrichmentRecord],
        catalog: CatalogView,
        result: EnrichmentResult,
    ) -> set:
        by_id: Dict[str, int] = {}
        by_handle: Dict[str, int] = {}
        for idx, record in enumerate(records):
            if record.product_id and record.product_id not in by_id:
                by_id[record.product_id] = idx
            if record.product_handle and record.product_handle not in by_handle:
                by_handle[record.product_handle] = idx

        claimed: set = set()
        # id matches are claimed first so a handle match can't steal them
        for product in products:
            if product.id in by_id:
                claimed.add(by_id[product.id])

        to_create: List[CanonicalProduct] = []
        to_update: List[Tuple[CanonicalProduct, EnrichmentRecord, Dict]] = []

        for product in products:
            idx = by_id.get(product.id)
            relink = False
            if idx is None:
                idx = by_handle.get(product.handle) if catalog.exists_handle(product.handle) else None
                if idx is None or idx in claimed:
                    to_create.append(product)
                    continue
                claimed.add(idx)
                relink = True

            record = records[idx]
            fingerprint = product_fingerprint(product)
            fields: Dict = {}
            if relink:
                fields["product_id"] = product.id
                result.counts.relinked += 1

            if record.product_fingerprint and record.product_fingerprint != fingerprint:
                result.counts.outdated += 1
                if record.sync_status != SyncStatus.OUTDATED:
                    fields["sync_status"] = SyncStatus.OUTDATED
            else:
                result.counts.current += 1

            if fields:
                to_update.append((product, record, fields))
            else:
                result.records[product.id] = record

        self._apply_updates(to_update, result)
        self._apply_creates(to_create, result)
        return claimed

    def _apply_updates(self, updates: List[Tuple[CanonicalProduct, EnrichmentRecord, Dict]], result: EnrichmentResult) -> None:
        if not updates:
            return
        if self.dry_run:
            for product, record, fields in updates:
                result.records[product.id] = record.model_copy(update=fields)
            return

        def update(item):
            product, record, fields = item
            if not record.record_id:
                raise EnrichmentServiceError(f"record for {product.id} has no id")
            self.client.update_record(record.record_id, fields)
            return record.model_copy(update=fields)

        for outcome in run_bounded(update, updates, self.max_workers, self.item_timeout, label="enrichment-update"):
            product = outcome.item[0]
            if outcome.ok:
                result.records[product.id] = outcome.value
            else:
                result.counts.failed += 1
                result.skips.append(self._skip(product, f"update failed: {outcome.error}"))

    def _apply_creates(self, products: List[CanonicalProduct], result: EnrichmentResult) -> None:
        if not products:
            return

        def create(product: CanonicalProduct) -> EnrichmentRecord:
            record = self.copywriter.write(product, self.taxonomy.names(product.category_path))
            record = record.model_copy(
                update={
                    "product_fingerprint": product_fingerprint(product),
                    "last_synced": self._now(),
                }
            )
            if self.dry_run:
                return record
            return self.client.create_record(record)

        for outcome in run_bounded(create, products, self.max_workers, self.item_timeout, label="enrichment-create"):
            if outcome.ok:
                result.records[outcome.item.id] = outcome.value
                result.counts.created += 1
            else:
                result.counts.failed += 1
                result.skips.append(self._skip(outcome.item, f"create failed: {outcome.error}"))

    # ------------------------------------------------------------------
    # Pass 2: content -> product
    # ------------------------------------------------------------------

    def _content_pass(
        self,
        records: List[EnrichmentRecord],
        claimed: set,
        catalog: CatalogView,
        result: EnrichmentResult,
    ) -> None:
        orphans: List[EnrichmentRecord] = []
        for idx, record in enumerate(records):
            if idx in claimed:
                continue
            if not record.product_id:
                result.counts.unlinked_kept += 1
                continue
            if not catalog.exists(record.product_id):
                orphans.append(record)

        if not orphans:
            return
        logger.info("Found %d orphaned content records", len(orphans))

        if self.dry_run:
            result.counts.deleted += len(orphans)
            result.orphaned_product_ids.extend(sorted(r.product_id for r in orphans))
            return

        def delete(record: EnrichmentRecord) -> str:
            if not record.record_id:
                raise EnrichmentServiceError(f"orphan record for {record.product_id} has no id")
            self.client.delete_record(record.record_id)
            return record.product_id

        for outcome in run_bounded(delete, orphans, self.max_workers, self.item_timeout, label="enrichment-delete"):
            if outcome.ok:
                result.counts.deleted += 1
                result.orphaned_product_ids.append(outcome.value)
            else:
                # the record stays upstream and is retried next run
                result.counts.failed += 1
                logger.warning("Failed to delete orphan record %s: %s", outcome.item.record_id, outcome.error)
        result.orphaned_product_ids.sort()

    @staticmethod
    def _skip(product: CanonicalProduct, detail: str) -> SkipRecord:
        return SkipRecord(
            reason=SkipReason.ENRICHMENT_FAILED,
            vendor_id=product.vendor_id,
            vendor=product.vendor or None,
            detail=detail,
        )
