"""Document Normalizer Module

Turns retained vendor products into ``CanonicalProduct`` records:

  - stable canonical ids derived from vendor ids
  - prices parsed to numbers (anything unparseable becomes 0.0)
  - per-variant and per-product ``on_sale`` from compare-at prices
  - option key/value pairs parsed from variant titles by an ordered list of
    rules (first match wins), overridable per product kind
  - deterministic SKUs for variants the vendor left without one
  - plain-text cleanup of vendor HTML for search fields
"""

import html
import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import Batch, CanonicalProduct, CanonicalVariant, VendorProduct, VendorVariant

logger = logging.getLogger(__name__)

# Regex patterns (module level for performance)
TAG_RE = re.compile(r"<[^>]+>")
BLOCK_END_RE = re.compile(r"</(p|div|li|h[1-6])>|<br\s*/?>", re.IGNORECASE)
MULTIPLE_NEWLINES = re.compile(r"\n{3,}")
MULTIPLE_SPACES = re.compile(r"[ \t]{2,}")
SLASH_PAIR_RE = re.compile(r"^(.+?)\s*/\s*(.+)$")
SIZE_RE = re.compile(r"^(\d+\.?\d*\s*(mm|ml|g|kg))", re.IGNORECASE)
NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")

SHOPIFY_DEFAULT_TITLE = "Default Title"
CENT = Decimal("0.01")

FILAMENT_KINDS = ("filament", "pla", "petg", "tpu", "abs", "asa")

# SKU prefix codes per manufacturer
MANUFACTURER_CODES: Dict[str, str] = {
    "Creality": "CRE",
    "LDO": "LDO",
    "Trianglelab": "TRI",
    "Micro Swiss": "MCS",
    "Fysetc": "FYS",
    "E3D": "E3D",
    "BIGTREETECH": "BTT",
    "Bondtech": "BND",
    "Phaetus": "PHA",
    "Sovol": "SOV",
    "Anycubic": "ANY",
    "Slice Engineering": "SLE",
    "Gates": "GAT",
    "CNC Kitchen": "CNK",
    "Polymaker": "PLY",
    "QIDI TECH": "QID",
    "Duet3D": "DU3",
    "Mellow3D": "MLW",
    "Fabreeko": "FBK",
    "Flashforge": "FLF",
    "Artillery 3D": "ART",
    "GDSTIME": "GDT",
    "West3D": "W3D",
    "Mean Well": "MNW",
}


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def to_decimal(value: Optional[str]) -> Decimal:
    """Parse a vendor price string. Never raises; invalid input is 0."""
    if value is None:
        return Decimal("0.00")
    try:
        amount = Decimal(str(value).strip().replace(",", "").lstrip("$"))
    except InvalidOperation:
        return Decimal("0.00")
    if not amount.is_finite() or amount < 0:
        return Decimal("0.00")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_price(value: Optional[str]) -> float:
    return float(to_decimal(value))


def parse_compare_at(value: Optional[str]) -> Optional[float]:
    if value is None or str(value).strip() == "":
        return None
    amount = to_decimal(value)
    return float(amount) if amount > 0 else None


def canonical_id(vendor_id: str, prefix: str = "vp") -> str:
    """Stable, injective vendor id -> canonical id mapping."""
    return f"{prefix}_{vendor_id}"


def vendor_id_from_canonical(canonical: str, prefix: str = "vp") -> Optional[str]:
    """Inverse of ``canonical_id``; None for ids this pipeline did not assign."""
    head = f"{prefix}_"
    if canonical.startswith(head) and len(canonical) > len(head):
        return canonical[len(head):]
    return None


def sku_prefix(vendor: str) -> str:
    code = MANUFACTURER_CODES.get(vendor)
    if code:
        return code
    letters = NON_ALNUM_RE.sub("", vendor).upper()
    return letters[:3] or "GEN"


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "unknown"


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def html_to_text(text: Optional[str]) -> str:
    """Strip tags from vendor/content HTML, keeping paragraph breaks.

    Steps:
    1. Turn block-level closing tags into newlines
    2. Remove remaining tags, unescape entities
    3. Normalise spaces and blank lines
    """
    if not text:
        return ""
    text = BLOCK_END_RE.sub("\n\n", text)
    text = TAG_RE.sub("", text)
    text = html.unescape(text)
    text = MULTIPLE_SPACES.sub(" ", text)
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = MULTIPLE_NEWLINES.sub("\n\n", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Product kind
# ---------------------------------------------------------------------------


def detect_kind(product: VendorProduct) -> str:
    """Coarse product kind used to pick option rules."""
    tags = " ".join(product.tags).lower()
    title = product.title.lower()
    product_type = product.product_type.lower()

    if "nozzle" in tags or "nozzle" in title:
        return "nozzle"
    if "hotend" in tags or "hotend" in title:
        return "hotend"
    if any(t in tags for t in FILAMENT_KINDS):
        return "filament"
    if "extruder" in tags or "extruder" in title:
        return "extruder"
    return product_type or "other"


# ---------------------------------------------------------------------------
# Option rules
# ---------------------------------------------------------------------------


class OptionRule:
    """One pattern matcher. ``apply`` returns options, or None if it does not match."""

    kind = "fallback"

    def __init__(self, product_kinds: Optional[Sequence[str]] = None):
        self.product_kinds = tuple(product_kinds) if product_kinds else ()

    def matches_kind(self, product_kind: str) -> bool:
        if not self.product_kinds:
            return True
        return any(k in product_kind for k in self.product_kinds)

    def apply(self, title: str) -> Optional[Dict[str, str]]:
        raise NotImplementedError


class SlashPairRule(OptionRule):
    """``"A / B"`` -> ``{keys[0]: A, keys[1]: B}``.

    ``single_key`` lets a title without a slash still match.
    ``exact_parts`` requires exactly that many slash-separated parts.
    """

    kind = "slash-pair"

    def __init__(
        self,
        keys: Tuple[str, str],
        product_kinds: Optional[Sequence[str]] = None,
        single_key: Optional[str] = None,
        exact_parts: Optional[int] = None,
    ):
        super().__init__(product_kinds)
        self.keys = keys
        self.single_key = single_key
        self.exact_parts = exact_parts

    def apply(self, title: str) -> Optional[Dict[str, str]]:
        if self.exact_parts is not None:
            parts = [p.strip() for p in title.split("/")]
            if len(parts) != self.exact_parts:
                return None
            return {self.keys[0]: parts[0], self.keys[1]: " / ".join(parts[1:])}

        match = SLASH_PAIR_RE.match(title)
        if match:
            first, rest = match.group(1).strip(), match.group(2).strip()
            rest = " / ".join(p.strip() for p in rest.split("/"))
            return {self.keys[0]: first, self.keys[1]: rest}
        if self.single_key:
            return {self.single_key: title}
        return None


class KeywordBucketRule(OptionRule):
    """Whole title goes into one key, when the product kind (or a pattern) matches."""

    kind = "keyword-bucket"

    def __init__(
        self,
        key: str,
        product_kinds: Optional[Sequence[str]] = None,
        pattern: Optional[re.Pattern] = None,
    ):
        super().__init__(product_kinds)
        self.key = key
        self.pattern = pattern

    def apply(self, title: str) -> Optional[Dict[str, str]]:
        if self.pattern is not None and not self.pattern.match(title):
            return None
        return {self.key: title}


class FallbackRule(OptionRule):
    kind = "fallback"

    def __init__(self, key: str = "Variant"):
        super().__init__()
        self.key = key

    def apply(self, title: str) -> Optional[Dict[str, str]]:
        return {self.key: title}


DEFAULT_OPTION_RULES: List[OptionRule] = [
    SlashPairRule(("Nozzle Type", "Nozzle Size"), product_kinds=["nozzle"]),
    SlashPairRule(("Fitment", "Size"), product_kinds=["hotend"], single_key="Fitment"),
    KeywordBucketRule("Colour", product_kinds=FILAMENT_KINDS),
    KeywordBucketRule("Size", pattern=SIZE_RE),
    SlashPairRule(("Type", "Variant"), exact_parts=2),
    FallbackRule("Variant"),
]


class OptionParser:
    """Ordered option rules, optionally replaced for specific product kinds.

    ``overrides`` maps a product kind (exact match) to its own rule list;
    every other kind uses ``rules``.
    """

    def __init__(
        self,
        rules: Optional[List[OptionRule]] = None,
        overrides: Optional[Dict[str, List[OptionRule]]] = None,
    ):
        self.rules = list(rules if rules is not None else DEFAULT_OPTION_RULES)
        self.overrides = dict(overrides or {})

    def parse(self, title: str, product_kind: str) -> Dict[str, str]:
        title = (title or "").strip()
        if not title or title == SHOPIFY_DEFAULT_TITLE:
            return {"Variant": "Default"}

        for rule in self.overrides.get(product_kind, self.rules):
            if not rule.matches_kind(product_kind):
                continue
            options = rule.apply(title)
            if options:
                return options
        return {"Variant": title}


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class NormalizationError(ValueError):
    """Product cannot be turned into a canonical record."""


class DocumentNormalizer:

    def __init__(self, id_prefix: str = "vp", option_parser: Optional[OptionParser] = None):
        self.id_prefix = id_prefix
        self.option_parser = option_parser or OptionParser()

    def canonical_id(self, vendor_id: str) -> str:
        return canonical_id(vendor_id, self.id_prefix)

    def variant_title(self, variant: VendorVariant) -> str:
        title = (variant.title or "").strip()
        if title:
            return title
        values = variant.option_values()
        return " / ".join(values) if values else SHOPIFY_DEFAULT_TITLE

    def normalize_variants(self, product: VendorProduct, kind: str) -> List[CanonicalVariant]:
        prefix = sku_prefix(product.vendor)
        used_skus: Set[str] = set()
        variants: List[CanonicalVariant] = []

        for variant in product.variants:
            title = self.variant_title(variant)
            price = parse_price(variant.price)
            compare_at = parse_compare_at(variant.compare_at_price)

            sku = (variant.sku or "").strip() or f"{prefix}-{variant.id}"
            if sku in used_skus:
                sku = f"{sku}-{variant.id}"
            used_skus.add(sku)

            variants.append(
                CanonicalVariant(
                    id=self.canonical_id(variant.id),
                    title=title,
                    sku=sku,
                    price=price,
                    compare_at_price=compare_at,
                    on_sale=compare_at is not None and compare_at > price,
                    options=self.option_parser.parse(title, kind),
                    available=variant.available if variant.available is not None else True,
                    inventory_quantity=variant.inventory_quantity,
                )
            )
        return variants

    def normalize(
        self,
        product: VendorProduct,
        category_path: str,
        first_seen_at: datetime,
    ) -> CanonicalProduct:
        if not product.variants:
            raise NormalizationError(f"product {product.id} has no variants")

        kind = detect_kind(product)
        return CanonicalProduct(
            id=self.canonical_id(product.id),
            vendor_id=product.id,
            title=product.title.strip(),
            handle=product.handle.strip(),
            vendor=product.vendor.strip(),
            product_type=product.product_type.strip(),
            kind=kind,
            description_html=product.body_html,
            category_path=category_path,
            variants=self.normalize_variants(product, kind),
            images=list(product.images),
            tags=sorted(set(product.tags)),
            collections=sorted(set(product.collections)),
            first_seen_at=first_seen_at,
        )


def merge_history(batches: Iterable[Batch]) -> List[Tuple[VendorProduct, datetime]]:
    """Collapse batch history to one vendor record per id.

    The latest batch supplies the fields, collections are unioned across every
    batch that held the id, and ``first_seen_at`` is the earliest extraction.
    Result is ordered by first sighting, then vendor id.
    """
    latest: Dict[str, VendorProduct] = {}
    collections: Dict[str, Set[str]] = {}
    first_seen: Dict[str, datetime] = {}

    for batch in sorted(batches, key=lambda b: (b.extracted_at, b.batch_id)):
        for product in batch.products:
            latest[product.id] = product
            collections.setdefault(product.id, set()).update(product.collections)
            first_seen.setdefault(product.id, batch.extracted_at)

    merged: List[Tuple[VendorProduct, datetime]] = []
    for vendor_id in sorted(latest, key=lambda i: (first_seen[i], i)):
        product = latest[vendor_id].model_copy(
            update={"collections": sorted(collections[vendor_id])}
        )
        merged.append((product, first_seen[vendor_id]))
    return merged
