"""
Catalog Ingestion Pipeline

Runs one periodic ingestion of the vendor catalog end to end.

Pipeline Steps:
1. Load batch history (dedup set)
2. Extract vendor pages and filter them (dedup, vendor lists, images)
3. Build canonical products from the full history (taxonomy + normalization)
4. Load commerce catalog reference data
5. Reconcile enrichment records with the content service
6. Build index documents and save them
7. Synchronize the search index

Per-item failures never stop the run; they are counted by the reporter and
show up in the run summary. Only missing configuration or a held run lock
abort a run, and both are checked before any network I/O.
"""

from pathlib import Path
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .batch_store import BatchStore, JsonBatchStore, RunLock
from .catalog_client import CatalogView, CommerceCatalogClient, catalog_from_products
from .config import PipelineConfig
from .content_client import ContentServiceClient
from .copywriter import TemplateCopywriter, build_copywriter
from .dedup import DedupFilterEngine
from .enrichment import EnrichmentMerger
from .errors import CatalogServiceError, IndexSyncError
from .fetcher import ExtractionFetcher
from .index_client import SearchIndexClient
from .indexer import IndexSynchronizer, build_documents, serialize_documents
from .models import (
    Batch,
    CanonicalProduct,
    EnrichmentRecord,
    SkipReason,
    SkipRecord,
    SourceSpec,
)
from .normalizer import DocumentNormalizer, NormalizationError, merge_history, vendor_id_from_canonical
from .reporter import ReconciliationReporter, RunSummary, write_summary
from .taxonomy import TaxonomyMapper

logger = logging.getLogger(__name__)

TOTAL_STEPS = 7


def build_canonical_products(
    batches: Iterable[Batch],
    taxonomy: TaxonomyMapper,
    normalizer: DocumentNormalizer,
) -> Tuple[List[CanonicalProduct], List[SkipRecord]]:
    """Canonical products for every vendor id in the batch history.

    Categories are re-evaluated on every run from the merged collections.
    """
    products: List[CanonicalProduct] = []
    skips: List[SkipRecord] = []
    for vendor_product, first_seen in merge_history(batches):
        category_path = taxonomy.map(vendor_product.collections, vendor_product.product_type)
        try:
            products.append(normalizer.normalize(vendor_product, category_path, first_seen))
        except NormalizationError as e:
            logger.warning("Skipping vendor id %s: %s", vendor_product.id, e)
            skips.append(
                SkipRecord(
                    reason=SkipReason.NORMALIZATION_FAILED,
                    vendor_id=vendor_product.id,
                    vendor=vendor_product.vendor or None,
                    detail=str(e),
                )
            )
    products.sort(key=lambda p: p.id)
    return products, skips


def run_pipeline(
    config: PipelineConfig,
    source: Optional[SourceSpec] = None,
    batch_store: Optional[BatchStore] = None,
    output_dir: Path | str = "output",
    lock_dir: Path | str | None = None,
    fetcher: Optional[ExtractionFetcher] = None,
    content_client=None,
    catalog_client=None,
    index_client=None,
    taxonomy: Optional[TaxonomyMapper] = None,
    copywriter: Optional[TemplateCopywriter] = None,
    reingest_ids: Iterable[str] = (),
    skip_enrichment: bool = False,
    skip_index: bool = False,
    dry_run: bool = False,
    keep_history: bool = True,
) -> RunSummary:
    """
    Run the complete ingestion pipeline.

    Collaborators that are not injected are built from ``config``; the ones
    built here are closed before returning.

    Output Strategy:
    - ``index_documents_<ts>.json``: every document built this run, canonical JSON
    - ``run_summary_<ts>.json``: reporter summary
    - ``index_snapshot_<ts>.json``: pre-sync index state (written by the synchronizer)
    - with ``keep_history=False`` the fixed names without timestamps are overwritten
    - ``dry_run`` writes nothing: no batch, no remote writes, no output files

    Raises:
        FatalConfigError: required settings missing for the enabled stages
        RunLockedError: another run holds the lock in ``lock_dir``
    """
    config.validate_for_run(enrichment=not skip_enrichment, indexing=not skip_index)

    source = source or SourceSpec()
    output_dir = Path(output_dir)
    if batch_store is None:
        batch_store = JsonBatchStore(output_dir / "batches")
        lock_dir = lock_dir or batch_store.directory

    run_timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_id = f"pipeline_{run_timestamp}"
    job_start = time.time()

    lock = RunLock(lock_dir) if lock_dir is not None else None
    if lock is not None:
        lock.acquire()

    owned = []
    try:
        if fetcher is None:
            fetcher = ExtractionFetcher(config)
            owned.append(fetcher)
        if taxonomy is None:
            taxonomy = TaxonomyMapper.from_file(config.taxonomy_path) if config.taxonomy_path else TaxonomyMapper()
        if not skip_enrichment and content_client is None:
            content_client = ContentServiceClient(config)
            owned.append(content_client)
        if catalog_client is None and config.catalog_api_url:
            catalog_client = CommerceCatalogClient(config)
            owned.append(catalog_client)
        if not skip_index and index_client is None:
            index_client = SearchIndexClient(config)
            owned.append(index_client)
        if copywriter is None:
            copywriter = build_copywriter(
                config.copywriter,
                config.store_name,
                api_key=config.openai_api_key,
                model=config.copywriter_model,
            )

        reporter = ReconciliationReporter(run_id, source.describe())
        logger.debug("Starting pipeline run: %s", run_id)

        # ========== STEP 1: LOAD BATCH HISTORY ==========
        t0 = time.time()
        logger.info("STEP 1/%d: Loading batch history", TOTAL_STEPS)
        batches = batch_store.load_batches()
        known_ids = {p.id for b in batches for p in b.products}
        logger.info(
            "✓ Loaded %d batches (%d known vendor ids) in %.2fs",
            len(batches),
            len(known_ids),
            time.time() - t0,
        )

        # ========== STEP 2: EXTRACT + DEDUP/FILTER ==========
        t1 = time.time()
        logger.info("STEP 2/%d: Extracting %s", TOTAL_STEPS, source.describe())
        engine = DedupFilterEngine(
            known_ids,
            approved_vendors=config.approved_vendors,
            excluded_vendors=config.excluded_vendors,
            reingest_ids=reingest_ids,
        )
        fetched = 0
        for page in fetcher.iter_pages(source):
            fetched += len(page.products)
            engine.offer_all(page.products)

        retained = engine.retained
        reporter.record_fetch(fetched, fetcher.pages_requested, fetcher.deadline_hit)
        reporter.record_skips(fetcher.errors)
        reporter.record_skips(engine.skips)
        reporter.record_retained(p.id for p in retained)
        logger.info(
            "✓ Extraction completed in %.2fs (fetched=%d, retained=%d, skipped=%d)",
            time.time() - t1,
            fetched,
            len(retained),
            len(engine.skips),
        )

        if retained:
            batch = Batch(
                batch_id=batch_store.next_batch_id(run_timestamp),
                extracted_at=datetime.now(timezone.utc),
                source=source.describe(),
                products=retained,
            )
            if dry_run:
                logger.info("DRY RUN: not persisting batch %s", batch.batch_id)
            else:
                batch_store.append_batch(batch)
            batches = batches + [batch]

        # ========== STEP 3: CANONICAL PRODUCTS ==========
        t2 = time.time()
        logger.info("STEP 3/%d: Building canonical products", TOTAL_STEPS)
        normalizer = DocumentNormalizer(id_prefix=config.canonical_id_prefix)
        products, normalize_skips = build_canonical_products(batches, taxonomy, normalizer)
        reporter.record_skips(normalize_skips)
        reporter.record_canonical(products)
        logger.info(
            "✓ Built %d canonical products in %.2fs (%d failed)",
            len(products),
            time.time() - t2,
            len(normalize_skips),
        )

        # ========== STEP 4: CATALOG REFERENCE DATA ==========
        logger.info("STEP 4/%d: Loading catalog reference data", TOTAL_STEPS)
        catalog = _load_catalog(catalog_client, products)
        published: List[CanonicalProduct] = []
        for product in products:
            if catalog.exists(product.id) or catalog.exists_handle(product.handle):
                published.append(product)
            else:
                reporter.record_skips(
                    [SkipRecord(reason=SkipReason.NOT_IN_CATALOG, vendor_id=product.vendor_id, vendor=product.vendor or None)]
                )
        vendor_ids: Dict[str, str] = {p.id: p.vendor_id for p in products}

        # ========== STEP 5: ENRICHMENT ==========
        t3 = time.time()
        records: Dict[str, EnrichmentRecord] = {}
        protected_ids: List[str] = []
        if skip_enrichment:
            logger.info("STEP 5/%d: Skipping enrichment (skip_enrichment=True)", TOTAL_STEPS)
            to_index = published
        else:
            logger.info("STEP 5/%d: Reconciling enrichment records", TOTAL_STEPS)
            merger = EnrichmentMerger(
                content_client,
                copywriter,
                taxonomy,
                max_workers=config.max_workers,
                item_timeout=config.item_timeout_seconds,
                dry_run=dry_run,
            )
            enrichment = merger.reconcile(published, catalog)
            records = enrichment.records
            reporter.record_skips(enrichment.skips)
            reporter.record_enrichment(enrichment.counts, (vendor_ids[pid] for pid in records))
            to_index = [p for p in published if p.id in records]
            protected_ids = [p.id for p in published if p.id not in records]
            orphaned = [vendor_id_from_canonical(pid, config.canonical_id_prefix) for pid in enrichment.orphaned_product_ids]
            reporter.record_orphans(v for v in orphaned if v)
            logger.info("✓ Enrichment step completed in %.2fs", time.time() - t3)

        # ========== STEP 6: BUILD + SAVE INDEX DOCUMENTS ==========
        t4 = time.time()
        logger.info("STEP 6/%d: Building index documents", TOTAL_STEPS)
        documents, build_skips = build_documents(
            to_index, records, catalog, taxonomy, config.market_currencies
        )
        reporter.record_skips(build_skips)
        built_ids = {d.id for d in documents}
        protected_ids.extend(p.id for p in to_index if p.id not in built_ids)
        reporter.record_documents(len(documents))

        output_paths: Dict[str, Path] = {}
        if dry_run:
            logger.info("DRY RUN: skipping write of index documents")
        else:
            output_dir.mkdir(parents=True, exist_ok=True)
            docs_name = f"index_documents_{run_timestamp}.json" if keep_history else "index_documents.json"
            docs_path = output_dir / docs_name
            with docs_path.open("w", encoding="utf-8") as f:
                f.write(serialize_documents([d.to_payload() for d in documents]))
            output_paths["documents"] = docs_path
            logger.info("✓ Wrote %d index documents to %s (%.2fs)", len(documents), docs_name, time.time() - t4)

        # ========== STEP 7: INDEX SYNC ==========
        if skip_index:
            logger.info("STEP 7/%d: Skipping index sync (skip_index=True)", TOTAL_STEPS)
        else:
            t5 = time.time()
            logger.info("STEP 7/%d: Synchronizing search index", TOTAL_STEPS)
            synchronizer = IndexSynchronizer(
                index_client,
                batch_size=config.index_batch_size,
                max_workers=config.max_workers,
                item_timeout=config.item_timeout_seconds,
                snapshot_dir=output_dir,
                dry_run=dry_run,
            )
            try:
                sync = synchronizer.sync(documents, keep_ids=protected_ids, run_timestamp=run_timestamp)
            except IndexSyncError as e:
                logger.error("Index sync failed before any document was written: %s", e)
                reporter.record_skips([SkipRecord(reason=SkipReason.INDEX_FAILED, detail=str(e)[:500])])
            else:
                reporter.record_skips(sync.skips)
                reporter.record_index(sync.counts, (vendor_ids[i] for i in sync.indexed_ids if i in vendor_ids))
                orphaned = [vendor_id_from_canonical(i, config.canonical_id_prefix) for i in sync.orphaned_ids]
                reporter.record_orphans(v for v in orphaned if v)
                if sync.snapshot_path:
                    output_paths["snapshot"] = sync.snapshot_path
                logger.info("✓ Index step completed in %.2fs", time.time() - t5)

        # ========== RUN SUMMARY ==========
        summary = reporter.summary(status="completed", duration_seconds=time.time() - job_start)
        reporter.log_summary(summary)
        if not dry_run:
            _save_metadata(output_dir, run_timestamp, keep_history, summary)
        return summary
    finally:
        for client in owned:
            client.close()
        if lock is not None:
            lock.release()


def _load_catalog(catalog_client, products: List[CanonicalProduct]) -> CatalogView:
    if catalog_client is None:
        logger.info("✓ No commerce catalog configured; using batch history as catalog")
        return catalog_from_products(products)
    try:
        return catalog_client.load_view()
    except CatalogServiceError as e:
        # orphan detection against our own products never deletes a live record
        logger.warning("Commerce catalog unavailable (%s); using batch history as catalog", e)
        return catalog_from_products(products)


def _save_metadata(
    output_dir: Path,
    run_timestamp: str,
    keep_history: bool,
    summary: RunSummary,
) -> None:
    """Save the run summary."""
    if keep_history:
        meta_filename = f"run_summary_{run_timestamp}.json"
    else:
        meta_filename = "run_summary.json"

    try:
        write_summary(summary, output_dir / meta_filename)
        logger.info("✓ Saved: %s", meta_filename)
    except OSError:
        logger.warning("Failed to save run summary (non-fatal)", exc_info=True)


def cleanup_old_runs(output_dir: Path, keep_last_n: int = 10) -> None:
    """
    Keep only the last N pipeline runs, delete older timestamped files.

    Batch history is never touched.

    Args:
        output_dir: Directory containing pipeline outputs
        keep_last_n: Number of recent runs to keep (default: 10)

    Example:
        >>> cleanup_old_runs(Path("output"), keep_last_n=5)
    """
    output_dir = Path(output_dir)
    logger.info("Cleaning up old runs in %s (keeping last %d)", output_dir, keep_last_n)

    files = sorted(
        output_dir.glob("index_documents_*.json"),
        key=lambda x: x.name,
        reverse=True,  # timestamped names, most recent first
    )

    deleted_count = 0
    for old_file in files[keep_last_n:]:
        timestamp = old_file.stem.replace("index_documents_", "")
        logger.debug("Cleaning up run: %s", timestamp)

        run_files = [
            output_dir / f"index_documents_{timestamp}.json",
            output_dir / f"run_summary_{timestamp}.json",
            output_dir / f"index_snapshot_{timestamp}.json",
        ]
        for run_file in run_files:
            if run_file.exists():
                run_file.unlink()
                deleted_count += 1

    if deleted_count > 0:
        logger.info("Cleaned up %d old files", deleted_count)
    else:
        logger.info("No old files to clean up")
