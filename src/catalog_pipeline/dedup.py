"""Dedup & Filter Engine

Decides which fetched vendor products are retained in this run's batch.

Rules, in order (first failing rule wins):
  1. already ingested in a previous batch      -> ALREADY_INGESTED
  2. excluded vendor (in-house brand)           -> EXCLUDED_VENDOR
  3. vendor missing from the approved list      -> VENDOR_NOT_APPROVED
  4. no images                                  -> NO_IMAGES

A vendor id that shows up again in the same run (typically from a second
collection) is not duplicated: its collection handles are merged into the
record already retained.
"""

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Set

from .models import SkipReason, SkipRecord, VendorProduct

logger = logging.getLogger(__name__)


class DedupFilterEngine:
    """Stateful filter for one run; seeded with every vendor id seen before."""

    def __init__(
        self,
        known_ids: Iterable[str],
        approved_vendors: Iterable[str],
        excluded_vendors: Iterable[str] = (),
        reingest_ids: Iterable[str] = (),
    ):
        reingest = {str(i) for i in reingest_ids}
        self.history: Set[str] = {str(i) for i in known_ids} - reingest
        self.approved = {v.strip().lower() for v in approved_vendors}
        self.excluded = {v.strip().lower() for v in excluded_vendors}
        if reingest:
            logger.info("Re-ingestion requested for %d vendor ids", len(reingest))

        self._retained: "OrderedDict[str, VendorProduct]" = OrderedDict()
        # ids rejected this run, so a repeat sighting is not re-evaluated
        self._rejected: Dict[str, SkipReason] = {}
        self.skips: List[SkipRecord] = []

    # ------------------------------------------------------------------

    def check(self, product: VendorProduct) -> Optional[SkipReason]:
        """Return the reason ``product`` must be skipped, or None to retain it."""
        vendor = product.vendor.strip().lower()
        if product.id in self.history:
            return SkipReason.ALREADY_INGESTED
        # exclusion wins over approval when a vendor is on both lists
        if vendor in self.excluded:
            return SkipReason.EXCLUDED_VENDOR
        if vendor not in self.approved:
            return SkipReason.VENDOR_NOT_APPROVED
        if not product.images:
            return SkipReason.NO_IMAGES
        return None

    def offer(self, product: VendorProduct) -> bool:
        """Consider one product. Returns True if it is newly retained."""
        existing = self._retained.get(product.id)
        if existing is not None:
            added = [c for c in product.collections if c not in existing.collections]
            existing.collections.extend(added)
            if added:
                logger.debug("Vendor id %s seen again; merged collections %s", product.id, added)
            self._skip(product, SkipReason.DUPLICATE_IN_RUN)
            return False

        if product.id in self._rejected:
            self._skip(product, SkipReason.DUPLICATE_IN_RUN)
            return False

        reason = self.check(product)
        if reason is not None:
            self._rejected[product.id] = reason
            self._skip(product, reason)
            return False

        self._retained[product.id] = product.model_copy(deep=True)
        return True

    def offer_all(self, products: Iterable[VendorProduct]) -> int:
        return sum(1 for p in products if self.offer(p))

    def _skip(self, product: VendorProduct, reason: SkipReason) -> None:
        self.skips.append(
            SkipRecord(reason=reason, vendor_id=product.id, vendor=product.vendor or None)
        )
        logger.debug("Skipped vendor id %s (%s): %s", product.id, product.vendor, reason.value)

    # ------------------------------------------------------------------

    @property
    def retained(self) -> List[VendorProduct]:
        return list(self._retained.values())

    @property
    def seen_ids(self) -> Set[str]:
        return self.history | set(self._retained)
