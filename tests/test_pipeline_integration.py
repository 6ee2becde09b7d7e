# tests/test_pipeline_integration.py

"""
End-to-end runs of the ingestion pipeline against in-memory services.

The vendor API is served through httpx.MockTransport; the content service
and search index are small dict-backed stand-ins with the same methods as
the real clients.
"""

import json
import logging
from pathlib import Path

import httpx
import pytest

from src.catalog_pipeline.batch_store import InMemoryBatchStore
from src.catalog_pipeline.catalog_client import CatalogView
from src.catalog_pipeline.errors import EnrichmentServiceError
from src.catalog_pipeline.fetcher import ExtractionFetcher
from src.catalog_pipeline.models import ProductState, SkipReason, SourceSpec
from src.catalog_pipeline.pipeline import run_pipeline
from src.catalog_pipeline.reporter import count_reason


class ContentService:
    def __init__(self, reject_creates=()):
        self.records = []
        self.reject_creates = set(reject_creates)
        self.writes = 0

    def list_records(self):
        return list(self.records)

    def create_record(self, record):
        if record.product_id in self.reject_creates:
            raise EnrichmentServiceError("validation error", status_code=400)
        self.writes += 1
        stored = record.model_copy(update={"record_id": f"doc-{len(self.records) + 1}"})
        self.records.append(stored)
        return stored

    def update_record(self, record_id, fields):
        self.writes += 1

    def delete_record(self, record_id):
        self.writes += 1
        self.records = [r for r in self.records if r.record_id != record_id]


class SearchIndex:
    index_uid = "products"

    def __init__(self, docs=None):
        self.docs = {d["id"]: d for d in (docs or [])}
        self.writes = 0

    def list_document_ids(self):
        return sorted(self.docs)

    def fetch_documents(self, ids):
        return [self.docs[i] for i in ids if i in self.docs]

    def update_settings(self, settings):
        self.writes += 1

    def upsert_documents(self, payloads):
        self.writes += 1
        for payload in payloads:
            self.docs[payload["id"]] = payload

    def delete_documents(self, ids):
        self.writes += 1
        for doc_id in ids:
            self.docs.pop(doc_id, None)


@pytest.fixture
def vendor_catalog(raw_product):
    """Vendor listing: one good product and one per filter rule."""
    return [
        raw_product(1, title="V6 Brass Nozzle", vendor="E3D"),
        raw_product(2, title="House Brand Nozzle", vendor="DREMC"),
        raw_product(3, title="Imageless Hotend", vendor="Acme", images=[]),
        raw_product(4, title="Grey Import", vendor="Unknown Co"),
    ]


@pytest.fixture
def make_fetcher(config, vendor_catalog):
    def make():
        def handler(request):
            page = int(request.url.params["page"])
            products = vendor_catalog if page == 1 else []
            return httpx.Response(200, json={"products": products})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        return ExtractionFetcher(config, client=client, sleep=lambda s: None)

    return make


def run(config, store, fetcher, content, index, output_dir, **kwargs):
    return run_pipeline(
        config,
        source=SourceSpec(),
        batch_store=store,
        output_dir=output_dir,
        fetcher=fetcher,
        content_client=content,
        index_client=index,
        **kwargs,
    )


def test_full_run_reports_and_publishes(config, make_fetcher, tmp_path: Path):
    store = InMemoryBatchStore()
    content = ContentService()
    index = SearchIndex(docs=[{"id": "vp_999", "title": "Discontinued"}])

    summary = run(config, store, make_fetcher(), content, index, tmp_path / "out", keep_history=False)

    assert summary.status == "completed"
    assert summary.fetched == 4
    assert summary.retained == 1
    assert summary.canonical == 1
    assert summary.documents == 1
    assert count_reason(summary, SkipReason.EXCLUDED_VENDOR) == 1
    assert count_reason(summary, SkipReason.NO_IMAGES) == 1
    assert count_reason(summary, SkipReason.VENDOR_NOT_APPROVED) == 1
    assert summary.by_skip_kind == {"skipped": 2, "excluded": 1, "error": 0}
    assert summary.by_state == {"excluded": 3, "indexed": 1, "orphaned": 1}
    assert summary.enrichment.created == 1
    assert summary.index.upserted == 1
    assert summary.index.deleted == 1

    # one batch persisted with only the retained product
    batches = store.load_batches()
    assert len(batches) == 1
    assert [p.id for p in batches[0].products] == ["1"]

    # content record created and index reconciled
    assert [r.product_id for r in content.records] == ["vp_1"]
    assert sorted(index.docs) == ["vp_1"]
    assert index.docs["vp_1"]["price_aud"] == 19.99
    assert index.docs["vp_1"]["price_usd"] == 13.19

    out = tmp_path / "out"
    documents = json.loads((out / "index_documents.json").read_text(encoding="utf-8"))
    assert [d["id"] for d in documents] == ["vp_1"]
    saved = json.loads((out / "run_summary.json").read_text(encoding="utf-8"))
    assert saved["retained"] == 1


def test_catalog_known_by_handle_publishes_product(config, make_fetcher, tmp_path: Path):
    class HandleCatalog:
        def load_view(self):
            return CatalogView(product_handles=["product-1"])

    summary = run(
        config, InMemoryBatchStore(), make_fetcher(), ContentService(), SearchIndex(), tmp_path,
        keep_history=False, catalog_client=HandleCatalog(),
    )

    assert count_reason(summary, SkipReason.NOT_IN_CATALOG) == 0
    assert summary.documents == 1


def test_second_run_retains_nothing_and_output_is_identical(config, make_fetcher, tmp_path: Path):
    store = InMemoryBatchStore()
    content = ContentService()
    index = SearchIndex()
    out = tmp_path / "out"

    first = run(config, store, make_fetcher(), content, index, out, keep_history=False)
    first_bytes = (out / "index_documents.json").read_bytes()

    second = run(config, store, make_fetcher(), content, index, out, keep_history=False)
    second_bytes = (out / "index_documents.json").read_bytes()

    assert first.retained == 1
    assert second.retained == 0
    assert count_reason(second, SkipReason.ALREADY_INGESTED) == 1
    assert len(store.load_batches()) == 1
    assert second.canonical == 1
    assert second.enrichment.current == 1
    assert second.enrichment.created == 0
    assert first_bytes == second_bytes


def test_reingest_brings_product_back(config, make_fetcher, tmp_path: Path):
    store = InMemoryBatchStore()
    run(config, store, make_fetcher(), ContentService(), SearchIndex(), tmp_path, keep_history=False)

    summary = run(
        config, store, make_fetcher(), ContentService(), SearchIndex(), tmp_path,
        keep_history=False, reingest_ids=["1"],
    )

    assert summary.retained == 1
    assert len(store.load_batches()) == 2
    # still one canonical product for the vendor id
    assert summary.canonical == 1


def test_enrichment_failure_keeps_existing_index_document(config, make_fetcher, tmp_path: Path):
    content = ContentService(reject_creates={"vp_1"})
    index = SearchIndex(docs=[{"id": "vp_1", "title": "Published last week"}])

    summary = run(config, InMemoryBatchStore(), make_fetcher(), content, index, tmp_path, keep_history=False)

    assert summary.status == "completed"
    assert count_reason(summary, SkipReason.ENRICHMENT_FAILED) == 1
    assert summary.documents == 0
    assert [e.reason for e in summary.errors] == [SkipReason.ENRICHMENT_FAILED]
    # not republished, but not deleted either
    assert index.docs == {"vp_1": {"id": "vp_1", "title": "Published last week"}}


def test_dry_run_writes_nothing(config, make_fetcher, tmp_path: Path):
    store = InMemoryBatchStore()
    content = ContentService()
    index = SearchIndex(docs=[{"id": "vp_999"}])
    out = tmp_path / "out"

    summary = run(config, store, make_fetcher(), content, index, out, dry_run=True)

    assert summary.retained == 1
    assert summary.documents == 1
    assert store.load_batches() == []
    assert content.writes == 0
    assert index.writes == 0
    assert not out.exists()


def test_skip_stages(config, make_fetcher, tmp_path: Path):
    summary = run(
        config, InMemoryBatchStore(), make_fetcher(), None, None, tmp_path,
        skip_enrichment=True, skip_index=True,
    )

    assert summary.enrichment is None
    assert summary.index is None
    assert summary.documents == 1
    assert summary.by_state.get(ProductState.CANONICAL.value) == 1
    assert len(list(tmp_path.glob("index_documents_*.json"))) == 1
    assert len(list(tmp_path.glob("run_summary_*.json"))) == 1


def test_run_logs_each_step(config, make_fetcher, tmp_path: Path, caplog):
    caplog.set_level(logging.INFO, logger="src.catalog_pipeline.pipeline")

    run(config, InMemoryBatchStore(), make_fetcher(), ContentService(), SearchIndex(), tmp_path)

    steps = [r.getMessage() for r in caplog.records if r.getMessage().startswith("STEP ")]
    assert [s.split(":")[0] for s in steps] == [f"STEP {i}/7" for i in range(1, 8)]
