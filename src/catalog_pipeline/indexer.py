"""Index Synchronizer

Shapes canonical products plus their enrichment records into search
documents and reconciles the search index with them.

Sync strategy:
  1. list the ids currently in the index
  2. snapshot every document about to be overwritten or deleted, plus the
     ids about to be added, and write the snapshot to disk
  3. push index settings (static + dynamic price/option attributes)
  4. upsert documents in batches on the worker pool
  5. delete index documents whose product no longer exists
  6. if any batch failed, wait for in-flight writes, then compensate:
     delete the ids this run added and re-index the snapshot, leaving the
     index as it was before the run. Each compensation chunk is isolated;
     chunks that still fail are counted and can be replayed from the
     snapshot file.

``restore_snapshot`` replays step 6 from a snapshot file written earlier.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError

from .catalog_client import CatalogView
from .errors import IndexSyncError
from .index_settings import INDEX_PRIMARY_KEY, build_index_settings
from .models import (
    CanonicalProduct,
    EnrichmentRecord,
    IndexDocument,
    SkipReason,
    SkipRecord,
)
from .normalizer import html_to_text
from .taxonomy import TaxonomyMapper
from .workers import run_bounded

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ---------------------------------------------------------------------------
# Document shaping
# ---------------------------------------------------------------------------


def facet_key(option_key: str) -> str:
    """'Nozzle Size' -> 'nozzle_size'"""
    return "_".join(option_key.strip().lower().split())


def convert_price(amount: float, rate: float) -> float:
    value = (Decimal(str(amount)) * Decimal(str(rate))).quantize(CENT, rounding=ROUND_HALF_UP)
    return float(value)


def build_document(
    product: CanonicalProduct,
    record: Optional[EnrichmentRecord],
    catalog: CatalogView,
    taxonomy: TaxonomyMapper,
    currencies: Dict[str, float],
) -> IndexDocument:
    """Build the search document for one product.

    Prices use the cheapest variant converted with each market rate. When no
    enrichment record is available the vendor description is indexed.
    """
    min_price = min((v.price for v in product.variants), default=0.0)
    prices = {code: convert_price(min_price, rate) for code, rate in sorted(currencies.items())}

    facets: Dict[str, set] = {}
    for variant in product.variants:
        for key, value in variant.options.items():
            facets.setdefault(facet_key(key), set()).add(value)

    quantities = [v.inventory_quantity for v in product.variants if v.inventory_quantity is not None]
    in_stock = any(
        v.available and (v.inventory_quantity is None or v.inventory_quantity > 0)
        for v in product.variants
    )

    handles = taxonomy.handles(product.category_path) or [
        part for part in product.category_path.split("/") if part
    ]
    names = taxonomy.names(product.category_path) or list(handles)

    if record is not None and record.rich_description:
        rich_description = html_to_text(record.rich_description)
    else:
        rich_description = html_to_text(product.description_html)

    return IndexDocument(
        id=product.id,
        title=product.title,
        handle=product.handle,
        thumbnail=product.images[0] if product.images else None,
        created_at_timestamp=int(product.first_seen_at.timestamp() * 1000),
        prices=prices,
        on_sale=product.on_sale,
        in_stock=in_stock,
        inventory_quantity=sum(quantities) if quantities else None,
        facets={key: sorted(values) for key, values in sorted(facets.items())},
        category_ids=[catalog.category_id(h) for h in handles],
        categories=names,
        tags=list(product.tags),
        collection_ids=list(product.collections),
        brand=catalog.brand_for(product.vendor) if product.vendor else None,
        rich_description=rich_description,
        seo_title=record.seo_title if record else None,
        seo_description=record.seo_description if record else None,
        meta_keywords=list(record.meta_keywords) if record else [],
        variants=[{"id": v.id, "title": v.title, "sku": v.sku} for v in product.variants],
    )


def build_documents(
    products: Sequence[CanonicalProduct],
    records: Dict[str, EnrichmentRecord],
    catalog: CatalogView,
    taxonomy: TaxonomyMapper,
    currencies: Dict[str, float],
) -> Tuple[List[IndexDocument], List[SkipRecord]]:
    documents: List[IndexDocument] = []
    skips: List[SkipRecord] = []
    for product in products:
        try:
            documents.append(build_document(product, records.get(product.id), catalog, taxonomy, currencies))
        except (ValidationError, ValueError) as e:
            logger.warning("Could not build index document for %s: %s", product.id, e)
            skips.append(
                SkipRecord(
                    reason=SkipReason.INDEX_FAILED,
                    vendor_id=product.vendor_id,
                    vendor=product.vendor or None,
                    detail=str(e)[:200],
                )
            )
    documents.sort(key=lambda d: d.id)
    return documents, skips


def serialize_documents(payloads: Sequence[Dict[str, Any]]) -> str:
    """Canonical JSON: same payloads, same bytes."""
    ordered = sorted(payloads, key=lambda p: p[INDEX_PRIMARY_KEY])
    return json.dumps(ordered, ensure_ascii=False, indent=2, sort_keys=True) + "\n"


# ---------------------------------------------------------------------------
# Synchronization
# ---------------------------------------------------------------------------


class IndexSnapshot(BaseModel):
    """Pre-change state of the documents a sync touches."""
    index_uid: str
    taken_at: datetime
    replaced: List[Dict[str, Any]] = []
    added_ids: List[str] = []
    deleted_ids: List[str] = []


class SyncCounts(BaseModel):
    upserted: int = 0
    deleted: int = 0
    failed: int = 0
    restored: int = 0
    restore_failed: int = 0
    rolled_back: bool = False


class RestoreCounts(BaseModel):
    removed: int = 0
    restored: int = 0
    failed: int = 0


class SyncResult(BaseModel):
    counts: SyncCounts = Field(default_factory=SyncCounts)
    skips: List[SkipRecord] = []
    indexed_ids: List[str] = []
    orphaned_ids: List[str] = []
    snapshot_path: Optional[Path] = None


def _chunks(items: Sequence, size: int) -> List[List]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _describe_batch(batch: List) -> str:
    """'vp_1..vp_9 (3 docs)' for payload or id chunks."""
    ids = [item[INDEX_PRIMARY_KEY] if isinstance(item, dict) else item for item in batch]
    if not ids:
        return "empty batch"
    return f"{ids[0]}..{ids[-1]} ({len(ids)} docs)"


class IndexSynchronizer:

    def __init__(
        self,
        client,
        batch_size: int = 100,
        max_workers: int = 4,
        item_timeout: Optional[float] = None,
        snapshot_dir: Optional[Path] = None,
        dry_run: bool = False,
    ):
        self.client = client
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.item_timeout = item_timeout
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else None
        self.dry_run = dry_run

    # ------------------------------------------------------------------

    def take_snapshot(self, upsert_ids: Sequence[str], delete_ids: Sequence[str], existing: Iterable[str]) -> IndexSnapshot:
        existing = set(existing)
        touched = sorted((set(upsert_ids) & existing) | set(delete_ids))
        replaced: List[Dict[str, Any]] = []
        for chunk in _chunks(touched, self.batch_size):
            replaced.extend(self.client.fetch_documents(chunk))
        return IndexSnapshot(
            index_uid=getattr(self.client, "index_uid", ""),
            taken_at=datetime.now(timezone.utc),
            replaced=sorted(replaced, key=lambda d: str(d.get(INDEX_PRIMARY_KEY))),
            added_ids=sorted(set(upsert_ids) - existing),
            deleted_ids=sorted(delete_ids),
        )

    def write_snapshot(self, snapshot: IndexSnapshot, run_timestamp: str) -> Optional[Path]:
        if self.snapshot_dir is None:
            return None
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        path = self.snapshot_dir / f"index_snapshot_{run_timestamp}.json"
        with path.open("w", encoding="utf-8") as f:
            f.write(snapshot.model_dump_json(indent=2))
        logger.info("✓ Saved index snapshot: %s (%d documents)", path.name, len(snapshot.replaced))
        return path

    def sync(
        self,
        documents: Sequence[IndexDocument],
        keep_ids: Iterable[str] = (),
        run_timestamp: Optional[str] = None,
    ) -> SyncResult:
        """Upsert ``documents`` and delete index entries not in them or ``keep_ids``.

        ``keep_ids`` protects canonical products that were skipped this run
        (for example after an enrichment failure) from being deleted.
        """
        result = SyncResult()
        run_timestamp = run_timestamp or datetime.now().strftime("%Y%m%d_%H%M%S")
        payloads = [d.to_payload() for d in sorted(documents, key=lambda d: d.id)]
        upsert_ids = [p[INDEX_PRIMARY_KEY] for p in payloads]

        existing = self.client.list_document_ids()
        protected = set(upsert_ids) | set(keep_ids)
        delete_ids = sorted(i for i in existing if i not in protected)
        logger.info(
            "Index %s: %d existing, %d to upsert, %d to delete",
            getattr(self.client, "index_uid", ""),
            len(existing),
            len(payloads),
            len(delete_ids),
        )

        if self.dry_run:
            logger.info("DRY RUN: skipping index writes")
            result.orphaned_ids = delete_ids
            return result

        snapshot = self.take_snapshot(upsert_ids, delete_ids, existing)
        result.snapshot_path = self.write_snapshot(snapshot, run_timestamp)

        self.client.update_settings(build_index_settings(payloads))

        for outcome in self._write(self.client.upsert_documents, _chunks(payloads, self.batch_size), "index-upsert"):
            batch_ids = [p[INDEX_PRIMARY_KEY] for p in outcome.item]
            if outcome.ok:
                result.counts.upserted += len(batch_ids)
                result.indexed_ids.extend(batch_ids)
            else:
                result.counts.failed += len(batch_ids)
                result.skips.extend(
                    SkipRecord(reason=SkipReason.INDEX_FAILED, detail=f"{doc_id}: {outcome.error}")
                    for doc_id in batch_ids
                )

        for outcome in self._write(self.client.delete_documents, _chunks(delete_ids, self.batch_size), "index-delete"):
            if outcome.ok:
                result.counts.deleted += len(outcome.item)
                result.orphaned_ids.extend(outcome.item)
            else:
                result.counts.failed += len(outcome.item)
                logger.warning("Failed to delete %d orphaned documents: %s", len(outcome.item), outcome.error)

        if result.counts.failed:
            logger.error("Index sync had %d failures, restoring pre-sync snapshot", result.counts.failed)
            restore = self.compensate(snapshot, result.snapshot_path)
            result.counts.restored = restore.restored
            result.counts.restore_failed = restore.failed
            result.counts.rolled_back = True
            result.indexed_ids = []
            result.orphaned_ids = []
        else:
            logger.info(
                "✓ Index sync complete (upserted=%d, deleted=%d)",
                result.counts.upserted,
                result.counts.deleted,
            )

        result.indexed_ids.sort()
        result.orphaned_ids.sort()
        return result

    def _write(self, func, chunks: List[List], label: str):
        # a timed-out write may still land, so it has to finish before anyone compensates
        return run_bounded(
            func,
            chunks,
            self.max_workers,
            self.item_timeout,
            label=label,
            describe=_describe_batch,
            wait_for_stragglers=True,
        )

    def compensate(self, snapshot: IndexSnapshot, source: Optional[Path] = None) -> RestoreCounts:
        """Undo a sync: drop ids it added, re-index what it replaced or deleted.

        Every chunk is attempted even when others fail; failures are counted
        on the returned ``RestoreCounts``.
        """
        counts = RestoreCounts()
        for outcome in self._write(self.client.delete_documents, _chunks(snapshot.added_ids, self.batch_size), "index-restore-delete"):
            if outcome.ok:
                counts.removed += len(outcome.item)
            else:
                counts.failed += len(outcome.item)
        for outcome in self._write(self.client.upsert_documents, _chunks(snapshot.replaced, self.batch_size), "index-restore"):
            if outcome.ok:
                counts.restored += len(outcome.item)
            else:
                counts.failed += len(outcome.item)

        if counts.failed:
            logger.error(
                "Compensation incomplete: %d documents not restored (removed %d, restored %d). "
                "Replay with --restore-snapshot %s",
                counts.failed,
                counts.removed,
                counts.restored,
                source or "<snapshot not saved>",
            )
        else:
            logger.info(
                "✓ Compensation applied (removed %d added, restored %d documents)",
                counts.removed,
                counts.restored,
            )
        return counts


def load_snapshot(path: Path | str) -> IndexSnapshot:
    with Path(path).open("r", encoding="utf-8") as f:
        return IndexSnapshot.model_validate(json.load(f))


def restore_snapshot(synchronizer: IndexSynchronizer, path: Path | str) -> int:
    """Apply the compensating action recorded in a snapshot file.

    Returns the number of documents restored.

    Raises:
        IndexSyncError: some chunks could not be applied (the rest were)
    """
    snapshot = load_snapshot(path)
    logger.info("Restoring index snapshot %s (taken %s)", Path(path).name, snapshot.taken_at.isoformat())
    counts = synchronizer.compensate(snapshot, Path(path))
    if counts.failed:
        raise IndexSyncError(f"{counts.failed} documents could not be restored from {path}")
    return counts.restored
