"""Content Service Client

REST client for the description records kept in the content service
(Strapi-style ``/api/<collection>`` endpoints, bearer-token auth,
``pagination[page]``/``pagination[pageSize]`` paging).

Every failure is raised as ``EnrichmentServiceError`` so callers can count
it against the single record involved.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .config import PipelineConfig
from .errors import EnrichmentServiceError
from .models import EnrichmentRecord

logger = logging.getLogger(__name__)

# record fields stored on the content service
RECORD_FIELDS = (
    "product_id",
    "product_handle",
    "product_title",
    "rich_description",
    "seo_title",
    "seo_description",
    "meta_keywords",
    "sync_status",
    "last_synced",
    "product_fingerprint",
)


def record_from_api(entry: Dict[str, Any]) -> EnrichmentRecord:
    """Build a record from one API entry (flat v5 shape or v4 ``attributes``)."""
    attrs = entry.get("attributes") if isinstance(entry.get("attributes"), dict) else entry
    record_id = entry.get("documentId") or entry.get("id")
    data = {k: attrs.get(k) for k in RECORD_FIELDS if attrs.get(k) is not None}
    if data.get("meta_keywords") and isinstance(data["meta_keywords"], str):
        data["meta_keywords"] = [k.strip() for k in data["meta_keywords"].split(",") if k.strip()]
    data["record_id"] = str(record_id) if record_id is not None else None
    return EnrichmentRecord.model_validate(data)


def record_to_api(record: EnrichmentRecord) -> Dict[str, Any]:
    payload = record.model_dump(mode="json", include=set(RECORD_FIELDS))
    return {k: v for k, v in payload.items() if v is not None}


class ContentServiceClient:
    """CRUD over enrichment records."""

    def __init__(self, config: PipelineConfig, client: Optional[httpx.Client] = None):
        if not config.content_api_url:
            raise ValueError("content_api_url is required")
        self.base_url = f"{config.content_api_url}/api/{config.content_collection}"
        self.page_size = config.content_page_size
        self.client = client or httpx.Client(timeout=config.item_timeout_seconds)
        self.headers = {
            "Authorization": f"Bearer {config.content_api_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.client.request(method, url, headers=self.headers, **kwargs)
        except httpx.HTTPError as e:
            raise EnrichmentServiceError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            raise EnrichmentServiceError(
                f"Content API error: {response.status_code} on {method} {url}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise EnrichmentServiceError(f"Content API returned invalid JSON for {method} {url}") from e

    # ------------------------------------------------------------------

    def list_records(self) -> List[EnrichmentRecord]:
        """Fetch every record, page by page."""
        records: List[EnrichmentRecord] = []
        page = 1
        while True:
            body = self._request(
                "GET",
                self.base_url,
                params={"pagination[page]": page, "pagination[pageSize]": self.page_size},
            )
            entries = body.get("data") or []
            for entry in entries:
                try:
                    records.append(record_from_api(entry))
                except ValidationError as e:
                    logger.warning("Ignoring unreadable content record %r: %s", entry.get("id"), e)

            page_count = (((body.get("meta") or {}).get("pagination") or {}).get("pageCount"))
            logger.debug("Content page %d: %d records (total %d)", page, len(entries), len(records))
            if not entries or len(entries) < self.page_size:
                break
            if page_count is not None and page >= page_count:
                break
            page += 1
        return records

    def create_record(self, record: EnrichmentRecord) -> EnrichmentRecord:
        body = self._request("POST", self.base_url, json={"data": record_to_api(record)})
        created = body.get("data") or {}
        record_id = created.get("documentId") or created.get("id")
        if record_id is None:
            raise EnrichmentServiceError("Content API did not return an id for created record")
        return record.model_copy(update={"record_id": str(record_id)})

    def update_record(self, record_id: str, fields: Dict[str, Any]) -> None:
        data = {
            k: (v.isoformat() if isinstance(v, datetime) else getattr(v, "value", v))
            for k, v in fields.items()
        }
        self._request("PUT", f"{self.base_url}/{record_id}", json={"data": data})

    def delete_record(self, record_id: str) -> None:
        self._request("DELETE", f"{self.base_url}/{record_id}")

    def close(self) -> None:
        self.client.close()
