"""Reconciliation Reporter

Pure aggregation over what the earlier stages produced. The summary is the
one artifact an operator reads to decide whether to re-run, adjust the
vendor lists, or look into a specific vendor or category.

Skips are reported in three separate kinds:
  - skipped   (not taken this run, e.g. already ingested)
  - excluded  (permanently filtered, e.g. deny-listed vendor)
  - error     (fetch/parse/service failure for one item)
"""

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from .enrichment import EnrichmentCounts
from .indexer import SyncCounts
from .models import CanonicalProduct, ProductState, SkipKind, SkipReason, SkipRecord

logger = logging.getLogger(__name__)

# a later state only replaces an earlier one in this order
STATE_RANK = {
    ProductState.UNSEEN: 0,
    ProductState.EXCLUDED: 1,
    ProductState.CANDIDATE: 2,
    ProductState.CANONICAL: 3,
    ProductState.ENRICHED: 4,
    ProductState.INDEXED: 5,
    ProductState.ORPHANED: 6,
}

# dedup filter rejections; these may pass on a later run if the filters change
FILTER_REASONS = {
    SkipReason.EXCLUDED_VENDOR,
    SkipReason.VENDOR_NOT_APPROVED,
    SkipReason.NO_IMAGES,
}


class RunSummary(BaseModel):
    run_id: str
    source: str
    status: str = "completed"
    fetched: int = 0
    retained: int = 0
    canonical: int = 0
    documents: int = 0
    by_vendor: Dict[str, int] = {}
    by_category: Dict[str, int] = {}
    by_skip_reason: Dict[str, int] = {}
    by_skip_kind: Dict[str, int] = {}
    by_state: Dict[str, int] = {}
    enrichment: Optional[EnrichmentCounts] = None
    index: Optional[SyncCounts] = None
    pages_requested: int = 0
    deadline_hit: bool = False
    errors: List[SkipRecord] = []
    duration_seconds: float = 0.0


class ReconciliationReporter:
    """Collects stage outputs for one run and renders the summary."""

    def __init__(self, run_id: str, source: str):
        self.run_id = run_id
        self.source = source
        self.skips: List[SkipRecord] = []
        self.states: Dict[str, ProductState] = {}
        self.products: List[CanonicalProduct] = []
        self.counters: Counter = Counter()
        self.enrichment: Optional[EnrichmentCounts] = None
        self.index: Optional[SyncCounts] = None
        self.pages_requested = 0
        self.deadline_hit = False

    # ------------------------------------------------------------------

    def set_state(self, vendor_id: str, state: ProductState) -> None:
        current = self.states.get(vendor_id, ProductState.UNSEEN)
        if state == ProductState.ORPHANED or STATE_RANK[state] >= STATE_RANK[current]:
            self.states[vendor_id] = state

    def record_skips(self, skips: Iterable[SkipRecord]) -> None:
        for skip in skips:
            self.skips.append(skip)
            if skip.vendor_id and skip.reason in FILTER_REASONS:
                self.set_state(skip.vendor_id, ProductState.EXCLUDED)

    def record_fetch(self, fetched: int, pages_requested: int, deadline_hit: bool) -> None:
        self.counters["fetched"] += fetched
        self.pages_requested += pages_requested
        self.deadline_hit = self.deadline_hit or deadline_hit

    def record_retained(self, vendor_ids: Iterable[str]) -> None:
        for vendor_id in vendor_ids:
            self.counters["retained"] += 1
            self.set_state(vendor_id, ProductState.CANDIDATE)

    def record_canonical(self, products: Iterable[CanonicalProduct]) -> None:
        for product in products:
            self.products.append(product)
            self.set_state(product.vendor_id, ProductState.CANONICAL)

    def record_enrichment(self, counts: EnrichmentCounts, enriched_vendor_ids: Iterable[str]) -> None:
        self.enrichment = counts
        for vendor_id in enriched_vendor_ids:
            self.set_state(vendor_id, ProductState.ENRICHED)

    def record_documents(self, count: int) -> None:
        self.counters["documents"] = count

    def record_index(self, counts: SyncCounts, indexed_vendor_ids: Iterable[str]) -> None:
        self.index = counts
        for vendor_id in indexed_vendor_ids:
            self.set_state(vendor_id, ProductState.INDEXED)

    def record_orphans(self, vendor_ids: Iterable[str]) -> None:
        """Vendor ids whose content record or index document was removed."""
        for vendor_id in vendor_ids:
            self.set_state(vendor_id, ProductState.ORPHANED)

    # ------------------------------------------------------------------

    def summary(self, status: str = "completed", duration_seconds: float = 0.0) -> RunSummary:
        by_vendor = Counter(p.vendor or "(none)" for p in self.products)
        by_category = Counter(p.category_path for p in self.products)
        by_reason = Counter(s.reason.value for s in self.skips)
        by_kind = Counter(s.kind.value for s in self.skips)
        by_state = Counter(state.value for state in self.states.values())

        return RunSummary(
            run_id=self.run_id,
            source=self.source,
            status=status,
            fetched=self.counters["fetched"],
            retained=self.counters["retained"],
            canonical=len(self.products),
            documents=self.counters["documents"],
            by_vendor=dict(sorted(by_vendor.items())),
            by_category=dict(sorted(by_category.items())),
            by_skip_reason=dict(sorted(by_reason.items())),
            by_skip_kind={kind.value: by_kind.get(kind.value, 0) for kind in SkipKind},
            by_state=dict(sorted(by_state.items())),
            enrichment=self.enrichment,
            index=self.index,
            pages_requested=self.pages_requested,
            deadline_hit=self.deadline_hit,
            errors=[s for s in self.skips if s.kind == SkipKind.ERROR],
            duration_seconds=round(duration_seconds, 3),
        )

    def log_summary(self, summary: RunSummary) -> None:
        logger.info("=" * 60)
        logger.info("Run %s (%s): %s", summary.run_id, summary.source, summary.status.upper())
        logger.info(
            "Fetched %d, retained %d, canonical %d, documents %d",
            summary.fetched,
            summary.retained,
            summary.canonical,
            summary.documents,
        )
        logger.info(
            "Skips: skipped=%d excluded=%d error=%d",
            summary.by_skip_kind.get(SkipKind.SKIPPED.value, 0),
            summary.by_skip_kind.get(SkipKind.EXCLUDED.value, 0),
            summary.by_skip_kind.get(SkipKind.ERROR.value, 0),
        )
        for reason, count in summary.by_skip_reason.items():
            logger.info("  %-22s %d", reason, count)
        for category, count in summary.by_category.items():
            logger.debug("  category %-30s %d", category, count)
        logger.info("=" * 60)


def count_reason(summary: RunSummary, reason: SkipReason) -> int:
    return summary.by_skip_reason.get(reason.value, 0)


def write_summary(summary: RunSummary, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(summary.model_dump(mode="json"), f, ensure_ascii=False, indent=2)
    return path
