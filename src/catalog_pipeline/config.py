"""Configuration Module

Run configuration for the catalog pipeline. Values come from environment
variables (or a local ``.env`` file) and explicit keyword arguments; the CLI
builds one ``PipelineConfig`` and passes it into every component.

List settings accept comma-separated strings::

    APPROVED_VENDORS="E3D,BIGTREETECH,Creality"
    MARKET_CURRENCIES="aud:1.0,usd:0.66"
"""

import logging
from pathlib import Path
from typing import Annotated, Dict, List, Optional, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import FatalConfigError

logger = logging.getLogger(__name__)


def _split_csv(value: Any) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


class PipelineConfig(BaseSettings):
    """Settings for one pipeline run."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ========================================================================
    # Vendor extraction
    # ========================================================================

    vendor_base_url: str = Field(
        default="https://dremc.com.au",
        description="Root URL of the vendor storefront",
    )
    page_size: int = Field(default=250, ge=1, le=250)
    max_pages: int = Field(
        default=20,
        ge=1,
        description="Page-count safety ceiling per source",
    )
    request_delay_seconds: float = Field(
        default=3.0,
        ge=0,
        description="Politeness delay between vendor requests",
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    run_deadline_seconds: Optional[float] = Field(
        default=None,
        description="Global run deadline, checked between requests",
    )

    # ========================================================================
    # Filters
    # ========================================================================

    excluded_vendors: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["DREMC", "DREMC-STORE"],
    )
    approved_vendors: Annotated[List[str], NoDecode] = Field(default_factory=list)

    # ========================================================================
    # Canonical records / market
    # ========================================================================

    canonical_id_prefix: str = "vp"
    market_currencies: Annotated[Dict[str, float], NoDecode] = Field(
        default_factory=lambda: {"aud": 1.0},
        description="Currency code -> rate relative to the vendor currency",
    )
    store_name: str = "3DByte Tech"
    taxonomy_path: Optional[Path] = None

    # ========================================================================
    # Content service
    # ========================================================================

    content_api_url: Optional[str] = None
    content_api_token: Optional[str] = None
    content_collection: str = "product-descriptions"
    content_page_size: int = Field(default=100, ge=1)

    # ========================================================================
    # Commerce catalog
    # ========================================================================

    catalog_api_url: Optional[str] = None
    catalog_api_token: Optional[str] = None

    # ========================================================================
    # Search index
    # ========================================================================

    search_url: Optional[str] = None
    search_api_key: Optional[str] = None
    search_index_uid: str = "products"
    index_batch_size: int = Field(default=100, ge=1)
    index_task_timeout_seconds: float = Field(default=60.0, gt=0)

    # ========================================================================
    # Copywriter
    # ========================================================================

    copywriter: str = Field(default="template", pattern="^(template|openai)$")
    openai_api_key: Optional[str] = None
    copywriter_model: str = "gpt-4o-mini"

    # ========================================================================
    # Worker pool
    # ========================================================================

    max_workers: int = Field(default=4, ge=1, le=9)
    item_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("excluded_vendors", "approved_vendors", mode="before")
    @classmethod
    def _parse_vendor_list(cls, value: Any) -> List[str]:
        return _split_csv(value)

    @field_validator("market_currencies", mode="before")
    @classmethod
    def _parse_currencies(cls, value: Any) -> Dict[str, float]:
        if isinstance(value, dict):
            return {str(k).lower(): float(v) for k, v in value.items()}
        currencies: Dict[str, float] = {}
        for entry in _split_csv(value):
            code, _, rate = entry.partition(":")
            currencies[code.strip().lower()] = float(rate) if rate else 1.0
        return currencies

    @field_validator("vendor_base_url", "content_api_url", "catalog_api_url", "search_url")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        return value.rstrip("/") if value else value

    def validate_for_run(self, enrichment: bool = True, indexing: bool = True) -> None:
        """Raise ``FatalConfigError`` if settings needed by the enabled stages are missing.

        Must be called before any network or disk I/O.
        """
        missing: List[str] = []

        if not self.approved_vendors:
            missing.append("APPROVED_VENDORS")
        if not self.market_currencies:
            missing.append("MARKET_CURRENCIES")
        if enrichment:
            if not self.content_api_url:
                missing.append("CONTENT_API_URL")
            if not self.content_api_token:
                missing.append("CONTENT_API_TOKEN")
            if self.copywriter == "openai" and not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
        if indexing and not self.search_url:
            missing.append("SEARCH_URL")

        if missing:
            logger.error("Configuration check failed; missing: %s", ", ".join(missing))
            raise FatalConfigError(missing)

        logger.debug(
            "Configuration OK (approved_vendors=%d, currencies=%s, enrichment=%s, indexing=%s)",
            len(self.approved_vendors),
            sorted(self.market_currencies),
            enrichment,
            indexing,
        )
