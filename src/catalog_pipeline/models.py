"""Data Models Module

Defines Pydantic models for the records that flow through the pipeline:
raw vendor products, persisted extraction batches, canonical products,
taxonomy nodes, enrichment records and the publishable index documents.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Vendor side
# ---------------------------------------------------------------------------


class VendorVariant(BaseModel):
    """One variant as returned by the vendor catalog API."""
    id: str
    title: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[str] = None
    compare_at_price: Optional[str] = None
    option1: Optional[str] = None
    option2: Optional[str] = None
    option3: Optional[str] = None
    available: Optional[bool] = None
    inventory_quantity: Optional[int] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> str:
        if value is None or value == "":
            raise ValueError("variant id is required")
        return str(value)

    @field_validator("price", "compare_at_price", mode="before")
    @classmethod
    def _price_to_str(cls, value: Any) -> Optional[str]:
        # Shopify sends strings; some mirrors send numbers
        if value is None:
            return None
        return str(value)

    def option_values(self) -> List[str]:
        return [v for v in (self.option1, self.option2, self.option3) if v]


class VendorProduct(BaseModel):
    """Raw product record from the vendor API.

    Only lives for the duration of a fetch; retained products are persisted
    inside a ``Batch``.
    """
    id: str
    title: str
    handle: str
    vendor: str = ""
    product_type: str = ""
    body_html: Optional[str] = None
    tags: List[str] = []
    images: List[str] = []
    variants: List[VendorVariant] = []
    collections: List[str] = []

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> str:
        if value is None or value == "":
            raise ValueError("product id is required")
        return str(value)

    @field_validator("vendor", "product_type", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> List[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return [str(t).strip() for t in value if str(t).strip()]

    @field_validator("images", mode="before")
    @classmethod
    def _image_sources(cls, value: Any) -> List[str]:
        if not value:
            return []
        sources: List[str] = []
        for image in value:
            src = image.get("src") if isinstance(image, dict) else image
            if src:
                sources.append(str(src))
        return sources


class Batch(BaseModel):
    """Immutable result of one extraction run.

    Invariant: ``products`` never holds two entries with the same vendor id.
    """
    batch_id: str
    extracted_at: datetime
    source: str
    products: List[VendorProduct] = []

    @field_validator("products")
    @classmethod
    def _unique_ids(cls, value: List[VendorProduct]) -> List[VendorProduct]:
        seen = set()
        for product in value:
            if product.id in seen:
                raise ValueError(f"duplicate vendor id in batch: {product.id}")
            seen.add(product.id)
        return value


# ---------------------------------------------------------------------------
# Pipeline-internal
# ---------------------------------------------------------------------------


class CategoryNode(BaseModel):
    """Static taxonomy entry, loaded once per run."""
    name: str
    handle: str
    parent_handle: Optional[str] = None
    description: Optional[str] = None
    collections: List[str] = []
    product_types: List[str] = []
    children: List["CategoryNode"] = []


CategoryNode.model_rebuild()


class CanonicalVariant(BaseModel):
    id: str
    title: str
    sku: str
    price: float
    compare_at_price: Optional[float] = None
    on_sale: bool = False
    options: Dict[str, str] = {}
    available: bool = True
    inventory_quantity: Optional[int] = None


class CanonicalProduct(BaseModel):
    """Normalized, deduplicated representation of one vendor product."""
    id: str
    vendor_id: str
    title: str
    handle: str
    vendor: str
    product_type: str = ""
    kind: str = ""
    description_html: Optional[str] = None
    category_path: str = ""
    variants: List[CanonicalVariant] = []
    images: List[str] = []
    tags: List[str] = []
    collections: List[str] = []
    first_seen_at: datetime

    @property
    def on_sale(self) -> bool:
        return any(v.on_sale for v in self.variants)


class SyncStatus(str, Enum):
    SYNCED = "synced"
    OUTDATED = "outdated"
    PENDING = "pending"


class EnrichmentRecord(BaseModel):
    """Externally authored content for one canonical product.

    ``record_id`` is the content service's own document id; ``product_id``
    is the canonical product id it describes (may be missing on records
    authored by hand, in which case ``product_handle`` is used).
    """
    record_id: Optional[str] = None
    product_id: Optional[str] = None
    product_handle: Optional[str] = None
    product_title: Optional[str] = None
    rich_description: str = ""
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    meta_keywords: List[str] = []
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced: Optional[datetime] = None
    product_fingerprint: Optional[str] = None


class Brand(BaseModel):
    id: str
    name: str
    handle: str


class IndexDocument(BaseModel):
    """Publishable search document.

    ``prices`` and ``facets`` are data-driven: they are flattened into
    ``price_<currency>`` and ``options_<key>`` fields by ``to_payload``.
    """
    id: str
    title: str
    handle: str
    thumbnail: Optional[str] = None
    created_at_timestamp: int
    prices: Dict[str, float] = {}
    on_sale: bool = False
    in_stock: bool = False
    inventory_quantity: Optional[int] = None
    facets: Dict[str, List[str]] = {}
    category_ids: List[str] = []
    categories: List[str] = []
    tags: List[str] = []
    collection_ids: List[str] = []
    brand: Optional[Brand] = None
    rich_description: str = ""
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    meta_keywords: List[str] = []
    variants: List[Dict[str, Any]] = []

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(exclude={"prices", "facets"}, mode="json")
        for currency, amount in self.prices.items():
            payload[f"price_{currency}"] = amount
        for key, values in self.facets.items():
            payload[f"options_{key}"] = values
        return payload


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


class SkipReason(str, Enum):
    ALREADY_INGESTED = "already ingested"
    DUPLICATE_IN_RUN = "duplicate in run"
    EXCLUDED_VENDOR = "excluded vendor"
    VENDOR_NOT_APPROVED = "vendor not approved"
    NO_IMAGES = "no images"
    NOT_IN_CATALOG = "not in catalog"
    FETCH_ERROR = "fetch error"
    MALFORMED_RESPONSE = "malformed response"
    NORMALIZATION_FAILED = "normalization failed"
    ENRICHMENT_FAILED = "enrichment failed"
    INDEX_FAILED = "index failed"


class SkipKind(str, Enum):
    SKIPPED = "skipped"
    EXCLUDED = "excluded"
    ERROR = "error"


SKIP_KINDS: Dict[SkipReason, SkipKind] = {
    SkipReason.ALREADY_INGESTED: SkipKind.SKIPPED,
    SkipReason.DUPLICATE_IN_RUN: SkipKind.SKIPPED,
    SkipReason.VENDOR_NOT_APPROVED: SkipKind.SKIPPED,
    SkipReason.NO_IMAGES: SkipKind.SKIPPED,
    SkipReason.NOT_IN_CATALOG: SkipKind.SKIPPED,
    SkipReason.EXCLUDED_VENDOR: SkipKind.EXCLUDED,
    SkipReason.FETCH_ERROR: SkipKind.ERROR,
    SkipReason.MALFORMED_RESPONSE: SkipKind.ERROR,
    SkipReason.NORMALIZATION_FAILED: SkipKind.ERROR,
    SkipReason.ENRICHMENT_FAILED: SkipKind.ERROR,
    SkipReason.INDEX_FAILED: SkipKind.ERROR,
}


class SkipRecord(BaseModel):
    reason: SkipReason
    vendor_id: Optional[str] = None
    vendor: Optional[str] = None
    detail: Optional[str] = None

    @property
    def kind(self) -> SkipKind:
        return SKIP_KINDS[self.reason]


class ProductState(str, Enum):
    UNSEEN = "unseen"
    CANDIDATE = "candidate"
    CANONICAL = "canonical"
    ENRICHED = "enriched"
    INDEXED = "indexed"
    EXCLUDED = "excluded"
    ORPHANED = "orphaned"


class SourceSpec(BaseModel):
    """What to extract: the full listing, or a list of named collections."""
    collections: List[str] = Field(default_factory=list)

    @property
    def is_all_products(self) -> bool:
        return not self.collections

    def describe(self) -> str:
        if self.is_all_products:
            return "all products"
        return "collections: " + ", ".join(self.collections)
