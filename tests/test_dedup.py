# tests/test_dedup.py

from src.catalog_pipeline.batch_store import InMemoryBatchStore
from src.catalog_pipeline.dedup import DedupFilterEngine
from src.catalog_pipeline.models import SkipKind, SkipReason


def make_engine(known=(), approved=("E3D", "Acme"), excluded=("DREMC",), reingest=()):
    return DedupFilterEngine(known, approved_vendors=approved, excluded_vendors=excluded, reingest_ids=reingest)


def reasons(engine):
    return [(s.vendor_id, s.reason) for s in engine.skips]


def test_retains_new_approved_product_with_images(vendor_product):
    engine = make_engine()
    assert engine.offer(vendor_product(pid=1)) is True
    assert [p.id for p in engine.retained] == ["1"]
    assert engine.skips == []


def test_already_ingested_is_skipped(vendor_product):
    engine = make_engine(known={"1"})
    assert engine.offer(vendor_product(pid=1)) is False
    assert reasons(engine) == [("1", SkipReason.ALREADY_INGESTED)]
    assert engine.skips[0].kind == SkipKind.SKIPPED


def test_excluded_vendor_wins_over_approved(vendor_product):
    engine = make_engine(approved=("Acme",), excluded=("Acme",))
    assert engine.offer(vendor_product(pid=5, vendor="Acme")) is False
    assert reasons(engine) == [("5", SkipReason.EXCLUDED_VENDOR)]
    assert engine.skips[0].kind == SkipKind.EXCLUDED


def test_vendor_lists_are_case_insensitive(vendor_product):
    engine = make_engine(approved=("e3d",), excluded=("dremc",))
    assert engine.offer(vendor_product(pid=1, vendor="E3D")) is True
    assert engine.offer(vendor_product(pid=2, vendor="DREMC")) is False
    assert reasons(engine) == [("2", SkipReason.EXCLUDED_VENDOR)]


def test_unapproved_vendor_is_skipped(vendor_product):
    engine = make_engine()
    engine.offer(vendor_product(pid=3, vendor="Unknown Co"))
    assert reasons(engine) == [("3", SkipReason.VENDOR_NOT_APPROVED)]


def test_zero_images_is_excluded_with_no_images_reason(vendor_product):
    engine = make_engine()
    engine.offer(vendor_product(pid=4, images=[]))
    assert engine.retained == []
    assert reasons(engine) == [("4", SkipReason.NO_IMAGES)]


def test_same_id_in_second_collection_unions_collections(vendor_product):
    engine = make_engine()
    engine.offer(vendor_product(pid=1, collections=["3d-printers-nozzles"]))
    engine.offer(vendor_product(pid=1, collections=["3d-printer-parts"]))

    assert len(engine.retained) == 1
    assert engine.retained[0].collections == ["3d-printers-nozzles", "3d-printer-parts"]
    assert reasons(engine) == [("1", SkipReason.DUPLICATE_IN_RUN)]


def test_rejected_id_seen_again_is_not_reevaluated(vendor_product):
    engine = make_engine()
    engine.offer(vendor_product(pid=9, images=[]))
    engine.offer(vendor_product(pid=9))
    assert engine.retained == []
    assert reasons(engine) == [("9", SkipReason.NO_IMAGES), ("9", SkipReason.DUPLICATE_IN_RUN)]


def test_reingest_removes_ids_from_history(vendor_product):
    engine = make_engine(known={"1", "2"}, reingest=["1"])
    engine.offer_all([vendor_product(pid=1), vendor_product(pid=2)])
    assert [p.id for p in engine.retained] == ["1"]
    assert reasons(engine) == [("2", SkipReason.ALREADY_INGESTED)]


def test_dedup_is_idempotent_over_two_batch_history(vendor_product, make_batch):
    """Second pass over the same source retains nothing new."""
    store = InMemoryBatchStore(
        [
            make_batch("batch_a", [vendor_product(pid=1)], day=1),
            make_batch("batch_b", [vendor_product(pid=2)], day=2),
        ]
    )
    source = [vendor_product(pid=1), vendor_product(pid=2), vendor_product(pid=3)]

    first = make_engine(known=store.list_known_ids())
    assert first.offer_all(source) == 1
    store.append_batch(make_batch("batch_c", first.retained, day=3))

    second = make_engine(known=store.list_known_ids())
    assert second.offer_all(source) == 0
    assert {s.reason for s in second.skips} == {SkipReason.ALREADY_INGESTED}
