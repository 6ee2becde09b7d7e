"""Search Index Client

httpx client for a Meilisearch-style search index. Writes are asynchronous
on the server side: each write returns a task uid which is polled until it
succeeds or fails, so a returned call means the change is visible.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from .config import PipelineConfig
from .errors import IndexSyncError
from .index_settings import INDEX_PRIMARY_KEY

logger = logging.getLogger(__name__)

TERMINAL_TASK_STATES = {"succeeded", "failed", "canceled"}


class SearchIndexClient:
    """Documents and settings of one search index."""

    def __init__(
        self,
        config: PipelineConfig,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.25,
    ):
        if not config.search_url:
            raise ValueError("search_url is required")
        self.base_url = config.search_url
        self.index_uid = config.search_index_uid
        self.task_timeout = config.index_task_timeout_seconds
        self.client = client or httpx.Client(timeout=config.item_timeout_seconds)
        self.headers = {"Content-Type": "application/json"}
        if config.search_api_key:
            self.headers["Authorization"] = f"Bearer {config.search_api_key}"
        self._sleep = sleep
        self._clock = clock
        self.poll_interval = poll_interval

    @property
    def index_url(self) -> str:
        return f"{self.base_url}/indexes/{self.index_uid}"

    def _request(self, method: str, url: str, allow_404: bool = False, **kwargs) -> Any:
        try:
            response = self.client.request(method, url, headers=self.headers, **kwargs)
        except httpx.HTTPError as e:
            raise IndexSyncError(f"{method} {url} failed: {e}") from e

        if allow_404 and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise IndexSyncError(
                f"Search API error: {response.status_code} on {method} {url}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise IndexSyncError(f"Search API returned invalid JSON for {method} {url}") from e

    def wait_for_task(self, task_uid: Optional[int]) -> Dict[str, Any]:
        """Poll a write task until it reaches a terminal state."""
        if task_uid is None:
            return {}
        deadline = self._clock() + self.task_timeout
        while True:
            task = self._request("GET", f"{self.base_url}/tasks/{task_uid}")
            status = task.get("status")
            if status in TERMINAL_TASK_STATES:
                if status != "succeeded":
                    error = task.get("error") or {}
                    raise IndexSyncError(
                        f"Index task {task_uid} {status}: {error.get('message', 'no detail')}",
                        body=str(error)[:500],
                    )
                return task
            if self._clock() >= deadline:
                raise IndexSyncError(f"Index task {task_uid} did not finish within {self.task_timeout}s")
            self._sleep(self.poll_interval)

    def _write(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        body = self._request(method, url, **kwargs) or {}
        return self.wait_for_task(body.get("taskUid"))

    # ------------------------------------------------------------------

    def update_settings(self, settings: Dict[str, Any]) -> None:
        self._write("PATCH", f"{self.index_url}/settings", json=settings)
        logger.debug("Updated settings for index %s", self.index_uid)

    def upsert_documents(self, payloads: Sequence[Dict[str, Any]]) -> None:
        if not payloads:
            return
        self._write(
            "POST",
            f"{self.index_url}/documents",
            params={"primaryKey": INDEX_PRIMARY_KEY},
            json=list(payloads),
        )

    def delete_documents(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        self._write("POST", f"{self.index_url}/documents/delete-batch", json=list(ids))

    def fetch_documents(self, ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Full documents for ``ids``; ids not in the index are simply absent."""
        if not ids:
            return []
        body = self._request(
            "POST",
            f"{self.index_url}/documents/fetch",
            allow_404=True,
            json={"ids": list(ids), "limit": len(ids)},
        )
        if body is None:
            return []
        return list(body.get("results") or [])

    def list_document_ids(self, page_size: int = 1000) -> List[str]:
        """Every document id currently in the index (empty when the index doesn't exist)."""
        ids: List[str] = []
        offset = 0
        while True:
            body = self._request(
                "GET",
                f"{self.index_url}/documents",
                allow_404=True,
                params={"fields": INDEX_PRIMARY_KEY, "limit": page_size, "offset": offset},
            )
            if body is None:
                return ids
            results = body.get("results") or []
            ids.extend(str(doc[INDEX_PRIMARY_KEY]) for doc in results)
            offset += len(results)
            total = body.get("total")
            if not results or len(results) < page_size or (total is not None and offset >= total):
                break
        return sorted(ids)

    def close(self) -> None:
        self.client.close()
