# tests/test_fetcher.py

import httpx
import pytest

from src.catalog_pipeline.fetcher import ExtractionFetcher
from src.catalog_pipeline.models import SkipReason, SourceSpec


def make_fetcher(config, handler, sleep=None, clock=None, **overrides):
    cfg = config.model_copy(update=overrides) if overrides else config
    client = httpx.Client(transport=httpx.MockTransport(handler))
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    if clock is not None:
        kwargs["clock"] = clock
    return ExtractionFetcher(cfg, client=client, **kwargs)


def paged_handler(pages, requests=None):
    """Serve ``pages[n-1]`` for page n; anything beyond is an empty page."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        page = int(request.url.params["page"])
        body = pages[page - 1] if page <= len(pages) else {"products": []}
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json=body)

    return handler


def collect(fetcher, source=None):
    pages = list(fetcher.iter_pages(source or SourceSpec()))
    products = [p for page in pages for p in page.products]
    return pages, products


def test_pages_until_empty_page(config, raw_product):
    requests = []
    handler = paged_handler(
        [{"products": [raw_product(1), raw_product(2)]}, {"products": [raw_product(3)]}],
        requests,
    )
    fetcher = make_fetcher(config, handler)

    pages, products = collect(fetcher)

    assert [p.id for p in products] == ["1", "2", "3"]
    assert fetcher.pages_requested == 3
    assert pages[-1].products == []
    assert str(requests[0].url).startswith("https://vendor.test/products.json")
    assert requests[0].url.params["limit"] == "250"


def test_failed_page_is_empty_and_extraction_moves_on(config, raw_product):
    handler = paged_handler(
        [httpx.Response(503, text="busy"), {"products": [raw_product(7)]}],
    )
    fetcher = make_fetcher(config, handler)

    pages, products = collect(fetcher)

    assert pages[0].failed is True
    assert pages[0].products == []
    assert [p.id for p in products] == ["7"]
    assert fetcher.pages_requested == 3  # page 1 never repeated
    assert [e.reason for e in fetcher.errors] == [SkipReason.FETCH_ERROR]


def test_transport_error_is_transient(config, raw_product):
    def handler(request):
        if request.url.params["page"] == "1":
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, json={"products": []})

    fetcher = make_fetcher(config, handler)
    pages, products = collect(fetcher)

    assert products == []
    assert pages[0].failed is True
    assert fetcher.errors[0].reason == SkipReason.FETCH_ERROR


def test_unparseable_json_is_malformed(config, raw_product):
    handler = paged_handler(
        [httpx.Response(200, text="<html>oops</html>"), {"products": [raw_product(8)]}],
    )
    fetcher = make_fetcher(config, handler)
    _, products = collect(fetcher)

    assert [p.id for p in products] == ["8"]
    assert fetcher.errors[0].reason == SkipReason.MALFORMED_RESPONSE


def test_malformed_product_skipped_siblings_kept(config, raw_product):
    broken = raw_product(9)
    del broken["title"]
    handler = paged_handler([{"products": [broken, raw_product(10)]}])
    fetcher = make_fetcher(config, handler)

    _, products = collect(fetcher)

    assert [p.id for p in products] == ["10"]
    assert fetcher.errors[0].reason == SkipReason.MALFORMED_RESPONSE
    assert fetcher.errors[0].vendor_id == "9"


def test_page_ceiling_stops_runaway_source(config, raw_product):
    def handler(request):
        return httpx.Response(200, json={"products": [raw_product(int(request.url.params["page"]))]})

    fetcher = make_fetcher(config, handler, max_pages=3)
    _, products = collect(fetcher)

    assert fetcher.pages_requested == 3
    assert len(products) == 3


def test_collections_fetched_in_order_and_tagged(config, raw_product):
    requests = []
    handler = paged_handler([{"products": [raw_product(1)]}], requests)
    fetcher = make_fetcher(config, handler)

    _, products = collect(fetcher, SourceSpec(collections=["3d-printers-nozzles", "3d-printer-parts"]))

    paths = [r.url.path for r in requests]
    assert paths[0] == "/collections/3d-printers-nozzles/products.json"
    assert paths[-1] == "/collections/3d-printer-parts/products.json"
    assert products[0].collections == ["3d-printers-nozzles"]
    assert products[1].collections == ["3d-printer-parts"]


def test_politeness_delay_between_requests(config, raw_product):
    sleeps = []
    handler = paged_handler([{"products": [raw_product(1)]}, {"products": [raw_product(2)]}])
    fetcher = make_fetcher(
        config,
        handler,
        sleep=sleeps.append,
        clock=lambda: 100.0,
        request_delay_seconds=3.0,
    )

    collect(fetcher)

    # three requests, no delay before the first
    assert sleeps == [pytest.approx(3.0), pytest.approx(3.0)]


def test_deadline_checked_between_requests(config, raw_product):
    now = [0.0]

    def handler(request):
        now[0] += 10.0
        return httpx.Response(200, json={"products": [raw_product(int(request.url.params["page"]))]})

    fetcher = make_fetcher(config, handler, clock=lambda: now[0], run_deadline_seconds=15.0)
    _, products = collect(fetcher, SourceSpec(collections=["a", "b"]))

    assert fetcher.deadline_hit is True
    assert fetcher.pages_requested == 2
    assert len(products) == 2
