"""Error Taxonomy

Exceptions raised by the pipeline stages. Per-item errors are caught at the
item boundary by the stage that owns the item and surface only as counts in
the run summary; ``FatalConfigError`` and ``RunLockedError`` abort a run
before any I/O happens.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class TransientFetchError(PipelineError):
    """Network failure or timeout while fetching one vendor page."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class MalformedResponseError(PipelineError):
    """A vendor page (or one product on it) could not be parsed."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ServiceError(PipelineError):
    """Base for failures talking to an external HTTP service."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class EnrichmentServiceError(ServiceError):
    """Create/update/delete/list against the content service failed."""


class IndexSyncError(ServiceError):
    """Upsert/delete/fetch against the search index failed."""


class CatalogServiceError(ServiceError):
    """Reading reference data from the commerce catalog failed."""


class FatalConfigError(PipelineError):
    """Required configuration is missing; the run must not start."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            "Missing required configuration: " + ", ".join(self.missing)
        )


class RunLockedError(PipelineError):
    """Another pipeline run holds the batch-history lock."""
