# tests/test_indexer.py

import json
import logging
import time
from datetime import datetime, timezone

import pytest

from src.catalog_pipeline.catalog_client import CatalogView
from src.catalog_pipeline.errors import IndexSyncError
from src.catalog_pipeline.indexer import (
    IndexSynchronizer,
    build_document,
    build_documents,
    convert_price,
    facet_key,
    restore_snapshot,
    serialize_documents,
)
from src.catalog_pipeline.models import Brand, CanonicalVariant, EnrichmentRecord, SkipReason
from src.catalog_pipeline.taxonomy import TaxonomyMapper

CURRENCIES = {"aud": 1.0, "usd": 0.66}


class FakeIndex:
    """Dict-backed search index with the client surface the synchronizer uses."""

    index_uid = "products"

    def __init__(self, docs=None, fail_upsert_ids=(), slow_upsert_ids=(), delay=0.3):
        self.docs = {d["id"]: d for d in (docs or [])}
        self.fail_upsert_ids = set(fail_upsert_ids)
        self.slow_upsert_ids = set(slow_upsert_ids)
        self.delay = delay
        self.settings = None
        self.calls = []

    def list_document_ids(self):
        return sorted(self.docs)

    def fetch_documents(self, ids):
        return [self.docs[i] for i in ids if i in self.docs]

    def update_settings(self, settings):
        self.calls.append("settings")
        self.settings = settings

    def upsert_documents(self, payloads):
        self.calls.append("upsert")
        if self.fail_upsert_ids & {p["id"] for p in payloads}:
            raise IndexSyncError("batch rejected", status_code=400)
        slow = self.slow_upsert_ids & {p["id"] for p in payloads}
        if slow:
            # only the first write is slow
            self.slow_upsert_ids -= slow
            time.sleep(self.delay)
        for payload in payloads:
            self.docs[payload["id"]] = payload

    def delete_documents(self, ids):
        self.calls.append("delete")
        for doc_id in ids:
            self.docs.pop(doc_id, None)


def test_facet_key_and_price_conversion():
    assert facet_key("Nozzle Type") == "nozzle_type"
    assert facet_key("  Size ") == "size"
    assert convert_price(19.99, 0.66) == 13.19
    assert convert_price(0.125, 1.0) == 0.13


def test_build_document_shapes_product(canonical_product):
    product = canonical_product(
        1,
        variants=[
            CanonicalVariant(id="v1", title="V6 / 0.4mm", sku="A", price=24.0, options={"Nozzle Type": "V6", "Size": "0.4mm"},
                             available=True, inventory_quantity=0),
            CanonicalVariant(id="v2", title="V6 / 0.6mm", sku="B", price=19.99, compare_at_price=29.99, on_sale=True,
                             options={"Nozzle Type": "V6", "Size": "0.6mm"}, available=True, inventory_quantity=3),
        ],
        tags=["brass"],
        collections=["3d-printers-nozzles"],
    )
    record = EnrichmentRecord(
        product_id="vp_1",
        rich_description="<p>Great nozzle.</p>",
        seo_title="V6 Nozzle | Store",
        meta_keywords=["E3D"],
    )
    catalog = CatalogView(
        brands=[Brand(id="brand_01", name="E3D", handle="e3d")],
        category_ids={"spare-parts": "pcat_spare", "nozzles": "pcat_nozzles"},
    )

    doc = build_document(product, record, catalog, TaxonomyMapper(), CURRENCIES)
    payload = doc.to_payload()

    assert payload["price_aud"] == 19.99
    assert payload["price_usd"] == 13.19
    assert payload["options_nozzle_type"] == ["V6"]
    assert payload["options_size"] == ["0.4mm", "0.6mm"]
    assert payload["created_at_timestamp"] == int(datetime(2025, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)
    assert payload["on_sale"] is True
    assert payload["in_stock"] is True
    assert payload["inventory_quantity"] == 3
    assert payload["category_ids"] == ["pcat_spare", "pcat_nozzles"]
    assert payload["categories"] == ["Spare Parts", "Nozzles"]
    assert payload["brand"] == {"id": "brand_01", "name": "E3D", "handle": "e3d"}
    assert payload["rich_description"] == "Great nozzle."
    assert payload["seo_title"] == "V6 Nozzle | Store"
    assert payload["thumbnail"] == "https://cdn.example.com/1.jpg"
    assert payload["variants"] == [{"id": "v1", "title": "V6 / 0.4mm", "sku": "A"}, {"id": "v2", "title": "V6 / 0.6mm", "sku": "B"}]
    assert "prices" not in payload and "facets" not in payload


def test_build_document_without_record_uses_vendor_description(canonical_product):
    product = canonical_product(1, description_html="<p>Vendor copy.</p>")
    doc = build_document(product, None, CatalogView(), TaxonomyMapper(), CURRENCIES)
    assert doc.rich_description == "Vendor copy."
    assert doc.seo_title is None
    assert doc.brand.id == "brand_e3d"


def test_sold_out_product_is_not_in_stock(canonical_product):
    product = canonical_product(
        1, variants=[CanonicalVariant(id="v1", title="x", sku="A", price=5.0, available=False)]
    )
    doc = build_document(product, None, CatalogView(), TaxonomyMapper(), CURRENCIES)
    assert doc.in_stock is False
    assert doc.inventory_quantity is None


def test_build_documents_sorted_by_id(canonical_product):
    docs, skips = build_documents(
        [canonical_product(3), canonical_product(1), canonical_product(2)], {}, CatalogView(), TaxonomyMapper(), CURRENCIES
    )
    assert [d.id for d in docs] == ["vp_1", "vp_2", "vp_3"]
    assert skips == []


def test_serialize_documents_is_deterministic(canonical_product):
    docs, _ = build_documents([canonical_product(2), canonical_product(1)], {}, CatalogView(), TaxonomyMapper(), CURRENCIES)
    payloads = [d.to_payload() for d in docs]

    first = serialize_documents(payloads)
    second = serialize_documents(list(reversed(payloads)))

    assert first == second
    assert first.endswith("\n")
    assert [d["id"] for d in json.loads(first)] == ["vp_1", "vp_2"]


def make_docs(canonical_product, *ns):
    docs, _ = build_documents([canonical_product(n) for n in ns], {}, CatalogView(), TaxonomyMapper(), CURRENCIES)
    return docs


def test_sync_upserts_and_deletes_orphans(canonical_product, tmp_path):
    index = FakeIndex(docs=[{"id": "vp_1", "title": "old"}, {"id": "vp_9", "title": "gone"}])
    sync = IndexSynchronizer(index, batch_size=1, max_workers=2, snapshot_dir=tmp_path)

    result = sync.sync(make_docs(canonical_product, 1, 2), run_timestamp="20250101_000000")

    assert sorted(index.docs) == ["vp_1", "vp_2"]
    assert index.docs["vp_1"]["title"] == "V6 Nozzle 1"
    assert result.counts.upserted == 2
    assert result.counts.deleted == 1
    assert result.indexed_ids == ["vp_1", "vp_2"]
    assert result.orphaned_ids == ["vp_9"]
    assert "price_aud" in index.settings["sortableAttributes"]
    assert index.calls[0] == "settings"
    assert result.snapshot_path == tmp_path / "index_snapshot_20250101_000000.json"

    snapshot = json.loads(result.snapshot_path.read_text())
    assert snapshot["added_ids"] == ["vp_2"]
    assert snapshot["deleted_ids"] == ["vp_9"]
    assert [d["id"] for d in snapshot["replaced"]] == ["vp_1", "vp_9"]


def test_keep_ids_are_not_deleted(canonical_product):
    index = FakeIndex(docs=[{"id": "vp_5"}, {"id": "vp_9"}])
    result = IndexSynchronizer(index).sync(make_docs(canonical_product, 1), keep_ids={"vp_5"})

    assert sorted(index.docs) == ["vp_1", "vp_5"]
    assert result.orphaned_ids == ["vp_9"]


def test_failed_batch_restores_previous_index(canonical_product, tmp_path):
    before = [{"id": "vp_1", "title": "old"}, {"id": "vp_9", "title": "gone"}]
    index = FakeIndex(docs=[dict(d) for d in before], fail_upsert_ids={"vp_3"})
    sync = IndexSynchronizer(index, batch_size=1, max_workers=1, snapshot_dir=tmp_path)

    result = sync.sync(make_docs(canonical_product, 1, 2, 3), run_timestamp="20250101_000000")

    assert result.counts.rolled_back is True
    assert result.counts.failed == 1
    assert result.counts.restored == 2
    assert result.indexed_ids == []
    assert [s.reason for s in result.skips] == [SkipReason.INDEX_FAILED]
    assert index.docs == {d["id"]: d for d in before}


def test_failed_restore_chunk_does_not_stop_the_others(canonical_product, tmp_path, caplog):
    index = FakeIndex(
        docs=[{"id": "old_a", "title": "A"}, {"id": "old_b", "title": "B"}],
        fail_upsert_ids={"vp_3", "old_a"},
    )
    sync = IndexSynchronizer(index, batch_size=1, max_workers=1, snapshot_dir=tmp_path)

    result = sync.sync(make_docs(canonical_product, 1, 3), run_timestamp="20250101_000000")

    assert result.counts.rolled_back is True
    assert result.counts.deleted == 2
    assert result.counts.restored == 1
    assert result.counts.restore_failed == 1
    # vp_1 was removed again and old_b came back even though old_a could not
    assert index.docs == {"old_b": {"id": "old_b", "title": "B"}}
    assert any(
        str(result.snapshot_path) in r.getMessage() for r in caplog.records if r.levelno == logging.ERROR
    )


def test_timed_out_upsert_cannot_land_after_rollback(canonical_product):
    index = FakeIndex(docs=[{"id": "vp_2", "title": "OLD"}], slow_upsert_ids={"vp_2"})
    sync = IndexSynchronizer(index, batch_size=1, max_workers=2, item_timeout=0.05)

    result = sync.sync(make_docs(canonical_product, 1, 2))

    assert result.counts.rolled_back is True
    assert result.counts.failed == 1
    assert result.counts.restore_failed == 0
    assert index.docs == {"vp_2": {"id": "vp_2", "title": "OLD"}}
    # nothing is still writing once sync returns
    time.sleep(0.4)
    assert index.docs == {"vp_2": {"id": "vp_2", "title": "OLD"}}


def test_dry_run_reports_without_writing(canonical_product, tmp_path):
    index = FakeIndex(docs=[{"id": "vp_9"}])
    result = IndexSynchronizer(index, snapshot_dir=tmp_path, dry_run=True).sync(make_docs(canonical_product, 1))

    assert index.calls == []
    assert result.orphaned_ids == ["vp_9"]
    assert list(tmp_path.iterdir()) == []


def test_restore_snapshot_replays_compensation(canonical_product, tmp_path):
    index = FakeIndex(docs=[{"id": "vp_1", "title": "old"}])
    sync = IndexSynchronizer(index, snapshot_dir=tmp_path)
    result = sync.sync(make_docs(canonical_product, 1, 2), run_timestamp="20250101_000000")
    assert sorted(index.docs) == ["vp_1", "vp_2"]

    restored = restore_snapshot(sync, result.snapshot_path)

    assert restored == 1
    assert index.docs == {"vp_1": {"id": "vp_1", "title": "old"}}


def test_restore_snapshot_propagates_index_errors(tmp_path):
    path = tmp_path / "snap.json"
    path.write_text(json.dumps({"index_uid": "products", "taken_at": "2025-01-01T00:00:00Z",
                                "replaced": [{"id": "vp_3"}]}))
    index = FakeIndex(fail_upsert_ids={"vp_3"})

    with pytest.raises(IndexSyncError):
        restore_snapshot(IndexSynchronizer(index), path)


def test_restore_snapshot_applies_remaining_chunks_before_raising(tmp_path):
    path = tmp_path / "snap.json"
    path.write_text(json.dumps({"index_uid": "products", "taken_at": "2025-01-01T00:00:00Z",
                                "replaced": [{"id": "vp_3"}, {"id": "vp_4"}], "added_ids": ["vp_8"]}))
    index = FakeIndex(docs=[{"id": "vp_8"}], fail_upsert_ids={"vp_3"})

    with pytest.raises(IndexSyncError, match="1 documents"):
        restore_snapshot(IndexSynchronizer(index, batch_size=1), path)

    assert index.docs == {"vp_4": {"id": "vp_4"}}
