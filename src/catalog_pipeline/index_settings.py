"""
Search Index Configuration

Attribute lists pushed to the search index before documents are upserted.
The static lists cover the fixed document fields; price and option facets
are data-driven (``price_<currency>``, ``options_<key>``) so they are
collected from the documents of the current run and merged in.
"""

from typing import Any, Dict, Iterable, List

# --- Core index settings ---

INDEX_PRIMARY_KEY = "id"


# --- Static attribute lists ---

FILTERABLE_ATTRIBUTES = [
    "id",
    "handle",
    "brand.id",
    "category_ids",
    "collection_ids",
    "tags",
    "on_sale",
    "in_stock",
]

SORTABLE_ATTRIBUTES = [
    "created_at_timestamp",
    "title",
]

SEARCHABLE_ATTRIBUTES = [
    "title",
    "brand.name",
    "categories",
    "tags",
    "rich_description",
    "meta_keywords",
    "variants.sku",
    "variants.title",
]

DISPLAYED_ATTRIBUTES = [
    "id",
    "title",
    "handle",
    "thumbnail",
    "created_at_timestamp",
    "on_sale",
    "in_stock",
    "inventory_quantity",
    "categories",
    "category_ids",
    "collection_ids",
    "tags",
    "brand",
    "rich_description",
    "seo_title",
    "seo_description",
    "meta_keywords",
    "variants",
]


def dynamic_attributes(payloads: Iterable[Dict[str, Any]]) -> Dict[str, List[str]]:
    """Collect the ``price_*`` and ``options_*`` fields present in ``payloads``."""
    prices = set()
    options = set()
    for payload in payloads:
        for key in payload:
            if key.startswith("price_"):
                prices.add(key)
            elif key.startswith("options_"):
                options.add(key)
    return {"prices": sorted(prices), "options": sorted(options)}


def build_index_settings(payloads: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Index settings for the given document payloads.

    Price fields are filterable and sortable; option facets are filterable
    only. Lists are sorted so the same documents always produce the same
    settings body.
    """
    found = dynamic_attributes(payloads)
    prices, options = found["prices"], found["options"]
    return {
        "filterableAttributes": FILTERABLE_ATTRIBUTES + prices + options,
        "sortableAttributes": SORTABLE_ATTRIBUTES + prices,
        "searchableAttributes": list(SEARCHABLE_ATTRIBUTES),
        "displayedAttributes": DISPLAYED_ATTRIBUTES + prices + options,
    }
