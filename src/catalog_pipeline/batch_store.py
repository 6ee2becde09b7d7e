"""Batch Store Module

Append-only history of extraction batches. Every later run reads the full
history to build its dedup set, so batches are written once and never
rewritten.

Two implementations share the ``BatchStore`` interface:
  - ``JsonBatchStore``: one ``batch_<timestamp>_<n>.json`` file per run
  - ``InMemoryBatchStore``: for tests and dry runs
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Set

from .errors import RunLockedError
from .models import Batch

logger = logging.getLogger(__name__)

BATCH_GLOB = "batch_*.json"
LOCK_FILENAME = ".pipeline.lock"


class BatchStore(ABC):
    """Interface the dedup engine and canonical builder depend on."""

    @abstractmethod
    def load_batches(self) -> List[Batch]:
        """Return all persisted batches, oldest first."""

    @abstractmethod
    def append_batch(self, batch: Batch) -> None:
        """Persist a new batch. Existing batches are never modified."""

    def list_known_ids(self) -> Set[str]:
        known: Set[str] = set()
        for batch in self.load_batches():
            known.update(p.id for p in batch.products)
        return known

    def next_batch_id(self, timestamp: str) -> str:
        existing = {b.batch_id for b in self.load_batches()}
        n = 1
        while f"batch_{timestamp}_{n}" in existing:
            n += 1
        return f"batch_{timestamp}_{n}"


class InMemoryBatchStore(BatchStore):

    def __init__(self, batches: List[Batch] | None = None):
        self._batches: List[Batch] = list(batches or [])

    def load_batches(self) -> List[Batch]:
        return list(self._batches)

    def append_batch(self, batch: Batch) -> None:
        if any(b.batch_id == batch.batch_id for b in self._batches):
            raise ValueError(f"Batch {batch.batch_id} already exists")
        self._batches.append(batch)


class JsonBatchStore(BatchStore):
    """Directory of JSON batch artifacts.

    File layout::

        {
          "batch_id": "...",
          "extracted_at": "2025-01-01T00:00:00+00:00",
          "source": "all products",
          "products": [...]
        }
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def _batch_files(self) -> List[Path]:
        if not self.directory.exists():
            return []
        # timestamped names sort chronologically
        return sorted(self.directory.glob(BATCH_GLOB))

    def load_batches(self) -> List[Batch]:
        batches: List[Batch] = []
        for path in self._batch_files():
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            batches.append(Batch.model_validate(data))
            logger.debug("Loaded batch %s (%d products)", path.name, len(batches[-1].products))
        batches.sort(key=lambda b: (b.extracted_at, b.batch_id))
        return batches

    def append_batch(self, batch: Batch) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{batch.batch_id}.json"
        # "x" mode: history is append-only, refuse to overwrite
        with path.open("x", encoding="utf-8") as f:
            json.dump(batch.model_dump(mode="json"), f, ensure_ascii=False, indent=2)
        logger.info("✓ Saved batch %s (%d products)", path.name, len(batch.products))

    def next_batch_id(self, timestamp: str) -> str:
        existing = {p.stem for p in self._batch_files()}
        n = 1
        while f"batch_{timestamp}_{n}" in existing:
            n += 1
        return f"batch_{timestamp}_{n}"


class RunLock:
    """Exclusive lock file serialising runs against the same batch history.

    Usage::

        with RunLock(batch_dir):
            run_pipeline(...)
    """

    def __init__(self, directory: Path | str):
        self.path = Path(directory) / LOCK_FILENAME
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            raise RunLockedError(
                f"Another run holds the lock {self.path}; remove it if that run is dead"
            ) from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        self._held = True
        logger.debug("Acquired run lock %s", self.path)

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False
            logger.debug("Released run lock %s", self.path)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
