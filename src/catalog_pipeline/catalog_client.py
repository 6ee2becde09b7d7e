"""Commerce Catalog Module

The commerce catalog is the source of truth for which canonical products
currently exist, and supplies brand and category reference data. It is read
over its store API; when no catalog URL is configured the batch history
stands in for it.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
from pydantic import BaseModel, PrivateAttr

from .config import PipelineConfig
from .errors import CatalogServiceError
from .models import Brand, CanonicalProduct
from .normalizer import slugify

logger = logging.getLogger(__name__)


class CatalogView(BaseModel):
    """Snapshot of catalog reference data for one run."""
    product_ids: List[str] = []
    product_handles: List[str] = []
    brands: List[Brand] = []
    category_ids: Dict[str, str] = {}

    _ids: set = PrivateAttr(default_factory=set)
    _handles: set = PrivateAttr(default_factory=set)

    def model_post_init(self, __context: Any) -> None:
        self._ids = set(self.product_ids)
        self._handles = set(self.product_handles)

    def exists(self, product_id: str) -> bool:
        return product_id in self._ids

    def exists_handle(self, handle: str) -> bool:
        return bool(handle) and handle in self._handles

    def brand_for(self, vendor: str) -> Brand:
        """Catalog brand matching ``vendor`` (case-insensitive), else one derived from the name."""
        wanted = vendor.strip().lower()
        for brand in self.brands:
            if brand.name.strip().lower() == wanted:
                return brand
        handle = slugify(vendor)
        return Brand(id=f"brand_{handle}", name=vendor, handle=handle)

    def category_id(self, handle: str) -> str:
        return self.category_ids.get(handle, handle)


def catalog_from_products(products: Iterable[CanonicalProduct]) -> CatalogView:
    """Catalog view built from the pipeline's own canonical products."""
    products = list(products)
    return CatalogView(
        product_ids=sorted(p.id for p in products),
        product_handles=sorted({p.handle for p in products if p.handle}),
    )


class CommerceCatalogClient:
    """Reads products, brands and categories from the commerce store API."""

    def __init__(
        self,
        config: PipelineConfig,
        client: Optional[httpx.Client] = None,
        page_size: int = 100,
        max_pages: int = 500,
    ):
        if not config.catalog_api_url:
            raise ValueError("catalog_api_url is required")
        self.base_url = config.catalog_api_url
        self.page_size = page_size
        self.max_pages = max_pages
        self.client = client or httpx.Client(timeout=config.item_timeout_seconds)
        self.headers: Dict[str, str] = {}
        if config.catalog_api_token:
            self.headers["x-publishable-api-key"] = config.catalog_api_token

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.client.get(url, params=params, headers=self.headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise CatalogServiceError(
                f"Catalog API error: {e.response.status_code} on GET {path}",
                status_code=e.response.status_code,
                body=e.response.text[:500],
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CatalogServiceError(f"GET {path} failed: {e}") from e

    def _paginate(self, path: str, key: str, fields: str) -> List[Dict[str, Any]]:
        """Every row of a listing, stopping at a short page, ``count``, or a page of repeats."""
        rows: List[Dict[str, Any]] = []
        seen: set = set()
        offset = 0
        for _ in range(self.max_pages):
            body = self._get(path, {"limit": self.page_size, "offset": offset, "fields": fields})
            page = body.get(key) or []
            fresh = [row for row in page if str(row.get("id")) not in seen]
            if page and not fresh:
                logger.warning("Catalog %s returned no new rows at offset %d, stopping.", path, offset)
                break
            seen.update(str(row.get("id")) for row in fresh)
            rows.extend(fresh)
            offset += len(page)
            count = body.get("count")
            if not page or len(page) < self.page_size or (count is not None and offset >= count):
                break
        else:
            logger.warning("Reached page ceiling (%d) for catalog %s, stopping.", self.max_pages, path)
        return rows

    def list_products(self) -> Tuple[List[str], List[str]]:
        """Sorted product ids and handles."""
        rows = self._paginate("/store/products", "products", "id,handle")
        ids = sorted(str(r["id"]) for r in rows)
        handles = sorted({r["handle"] for r in rows if r.get("handle")})
        return ids, handles

    def list_brands(self) -> List[Brand]:
        rows = self._paginate("/store/brands", "brands", "id,name,handle")
        return [Brand(id=str(r["id"]), name=r["name"], handle=r.get("handle") or slugify(r["name"])) for r in rows]

    def list_category_ids(self) -> Dict[str, str]:
        rows = self._paginate("/store/product-categories", "product_categories", "id,handle")
        return {r["handle"]: str(r["id"]) for r in rows if r.get("handle")}

    def load_view(self) -> CatalogView:
        product_ids, product_handles = self.list_products()
        view = CatalogView(
            product_ids=product_ids,
            product_handles=product_handles,
            brands=self.list_brands(),
            category_ids=self.list_category_ids(),
        )
        logger.info(
            "✓ Loaded catalog reference data (%d products, %d brands, %d categories)",
            len(view.product_ids),
            len(view.brands),
            len(view.category_ids),
        )
        return view

    def close(self) -> None:
        self.client.close()
