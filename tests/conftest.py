# tests/conftest.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from src.catalog_pipeline.config import PipelineConfig
from src.catalog_pipeline.models import Batch, CanonicalProduct, CanonicalVariant, VendorProduct


def build_raw_product(
    pid: int = 1,
    title: str = "V6 Brass Nozzle",
    vendor: str = "E3D",
    product_type: str = "Nozzle",
    images: Optional[List[str]] = None,
    variants: Optional[List[Dict[str, Any]]] = None,
    tags: str = "",
    handle: Optional[str] = None,
    body_html: str = "<p>Genuine part.</p>",
) -> Dict[str, Any]:
    """Vendor API product shaped like a products.json entry."""
    if images is None:
        images = [f"https://cdn.example.com/{pid}.jpg"]
    if variants is None:
        variants = [{"id": pid * 100 + 1, "title": "V6 / 0.4mm", "price": "19.99", "sku": ""}]
    return {
        "id": pid,
        "title": title,
        "handle": handle or f"product-{pid}",
        "vendor": vendor,
        "product_type": product_type,
        "tags": tags,
        "body_html": body_html,
        "images": [{"src": src} for src in images],
        "variants": variants,
    }


@pytest.fixture
def raw_product():
    return build_raw_product


@pytest.fixture
def vendor_product():
    def make(collections: Optional[List[str]] = None, **kwargs) -> VendorProduct:
        product = VendorProduct.model_validate(build_raw_product(**kwargs))
        product.collections = list(collections or [])
        return product

    return make


@pytest.fixture
def make_batch():
    def make(batch_id: str, products: List[VendorProduct], day: int = 1) -> Batch:
        return Batch(
            batch_id=batch_id,
            extracted_at=datetime(2025, 1, day, tzinfo=timezone.utc),
            source="all products",
            products=products,
        )

    return make


@pytest.fixture
def config(tmp_path):
    """Fully populated config that never touches the real services."""
    return PipelineConfig(
        _env_file=None,
        vendor_base_url="https://vendor.test",
        request_delay_seconds=0,
        approved_vendors=["E3D", "Creality", "Acme"],
        market_currencies={"aud": 1.0, "usd": 0.66},
        content_api_url="https://content.test",
        content_api_token="content-token",
        search_url="https://search.test",
        search_api_key="search-key",
        max_workers=2,
    )


@pytest.fixture
def canonical_product():
    def make(n: int = 1, **overrides) -> CanonicalProduct:
        fields = dict(
            id=f"vp_{n}",
            vendor_id=str(n),
            title=f"V6 Nozzle {n}",
            handle=f"product-{n}",
            vendor="E3D",
            kind="nozzle",
            category_path="spare-parts/nozzles",
            variants=[
                CanonicalVariant(
                    id=f"vp_{n}01",
                    title="V6 / 0.4mm",
                    sku=f"E3D-{n}01",
                    price=19.99,
                    options={"Nozzle Type": "V6", "Size": "0.4mm"},
                )
            ],
            images=[f"https://cdn.example.com/{n}.jpg"],
            first_seen_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
        fields.update(overrides)
        return CanonicalProduct(**fields)

    return make
