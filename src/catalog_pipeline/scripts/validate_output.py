"""Output Validation Script

Validates that a generated index documents JSON file conforms to the
document schema:
  - Required fields present and correctly typed (id, title, handle, ...)
  - ``price_*`` fields are finite, non-negative numbers
  - ``options_*`` facets are lists of strings
  - Boolean flags are booleans, ids are unique

Usage:
    python -m src.catalog_pipeline.scripts.validate_output \\
        --path output/index_documents.json \\
        --currencies aud,usd

Exits with code 0 on success, 1 on validation failure, 2 on argument error.
"""

#!/usr/bin/env python
import argparse
import json
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

REQUIRED_FIELDS = {
    "id": str,
    "title": str,
    "handle": str,
    "created_at_timestamp": int,
    "on_sale": bool,
    "in_stock": bool,
    "category_ids": list,
    "variants": list,
}

LIST_OF_STRING_FIELDS = ["category_ids", "categories", "tags", "collection_ids", "meta_keywords"]


def _parse_jsonl(lines: Sequence[str]) -> List[Dict[str, Any]]:
    documents: List[Dict[str, Any]] = []
    for line_no, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"line {line_no}: invalid JSON ({e.msg})") from e
        if not isinstance(obj, dict):
            raise ValueError(f"line {line_no}: expected an object, got {type(obj).__name__}")
        documents.append(obj)
    return documents


def load_documents(path: Path) -> List[Dict[str, Any]]:
    """Read index documents written by the pipeline (a JSON array) or as JSON Lines."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        raise ValueError(f"{path} is empty")

    if text.startswith("["):
        try:
            documents = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}: invalid JSON array ({e.msg})") from e
    else:
        documents = _parse_jsonl(text.splitlines())

    if not documents:
        raise ValueError(f"{path} holds no documents")
    return documents


def is_finite_number(x: Any) -> bool:
    """True if x is a finite int or float (bools don't count)."""
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def validate_document(
    doc: Dict[str, Any],
    idx: int,
    currencies: Optional[Sequence[str]] = None,
) -> Tuple[List[str], List[str]]:
    """Validate a single index document.

    Returns:
        (errors, warnings)
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not isinstance(doc, dict):
        return [f"[idx={idx}] document should be an object, got {type(doc).__name__}"], warnings

    # --- required fields ---
    for key, expected in REQUIRED_FIELDS.items():
        value = doc.get(key)
        if value is None:
            errors.append(f"[idx={idx}] missing '{key}'")
        elif expected is int and (isinstance(value, bool) or not isinstance(value, int)):
            errors.append(f"[idx={idx}] '{key}' should be int, got {type(value).__name__}")
        elif expected is not int and not isinstance(value, expected):
            errors.append(
                f"[idx={idx}] '{key}' should be {expected.__name__}, got {type(value).__name__}"
            )

    for key in LIST_OF_STRING_FIELDS:
        if key in doc and not _is_string_list(doc[key]):
            errors.append(f"[idx={idx}] '{key}' should be a list of strings")

    # --- dynamic price fields ---
    price_keys = [k for k in doc if k.startswith("price_")]
    if not price_keys:
        errors.append(f"[idx={idx}] no price_<currency> fields")
    for key in price_keys:
        value = doc[key]
        if not is_finite_number(value):
            errors.append(f"[idx={idx}] '{key}' is not a finite number (got {value!r})")
        elif value < 0:
            errors.append(f"[idx={idx}] '{key}' is negative ({value})")
        elif value == 0:
            warnings.append(f"[idx={idx}] '{key}' is zero")
    for currency in currencies or []:
        if f"price_{currency}" not in doc:
            errors.append(f"[idx={idx}] missing 'price_{currency}'")

    # --- dynamic option facets ---
    for key in (k for k in doc if k.startswith("options_")):
        if not _is_string_list(doc[key]):
            errors.append(f"[idx={idx}] '{key}' should be a list of strings")

    # --- variants ---
    variants = doc.get("variants")
    if isinstance(variants, list):
        if not variants:
            errors.append(f"[idx={idx}] 'variants' is empty")
        for j, variant in enumerate(variants):
            if not isinstance(variant, dict) or not variant.get("sku"):
                errors.append(f"[idx={idx}] variants[{j}] has no sku")
                break

    # --- soft checks ---
    if not doc.get("thumbnail"):
        warnings.append(f"[idx={idx}] no thumbnail")
    if not (doc.get("rich_description") or "").strip():
        warnings.append(f"[idx={idx}] rich_description is empty")
    brand = doc.get("brand")
    if brand is not None and not (isinstance(brand, dict) and brand.get("id")):
        warnings.append(f"[idx={idx}] brand has no id")

    return errors, warnings


def main(argv: list[str] | None = None) -> None:
    """Validate an index documents output file.

    Raises:
        SystemExit: With code 0 on success, 1 on validation failure
    """
    parser = argparse.ArgumentParser(
        description="Validate index documents JSON output."
    )
    parser.add_argument(
        "--path",
        type=str,
        required=True,
        help="Path to index_documents.json",
    )
    parser.add_argument(
        "--currencies",
        type=str,
        default=None,
        help="Comma-separated currency codes every document must price (e.g. aud,usd).",
    )
    args = parser.parse_args(argv)

    path = Path(args.path)
    currencies = [c.strip().lower() for c in (args.currencies or "").split(",") if c.strip()]

    try:
        documents = load_documents(path)
    except (OSError, ValueError) as e:
        print(f"FAILED TO LOAD FILE: {e}")
        raise SystemExit(1)

    all_errors: List[str] = []
    all_warnings: List[str] = []
    seen_ids = set()

    for idx, doc in enumerate(documents):
        errors, warnings = validate_document(doc, idx, currencies)
        all_errors.extend(errors)
        all_warnings.extend(warnings)
        doc_id = doc.get("id") if isinstance(doc, dict) else None
        if doc_id is not None:
            if doc_id in seen_ids:
                all_errors.append(f"[idx={idx}] duplicate id {doc_id!r}")
            seen_ids.add(doc_id)

    if all_errors:
        print("VALIDATION FAILED:\n")
        for err in all_errors:
            print(err)
        print(f"\nTotal errors: {len(all_errors)}")
        if all_warnings:
            print(f"Total warnings: {len(all_warnings)}")
        raise SystemExit(1)

    print("VALIDATION PASSED")
    print(f"Total documents: {len(documents)}")
    if all_warnings:
        print("\nWarnings (non-fatal):")
        for w in all_warnings:
            print(w)
        print(f"\nTotal warnings: {len(all_warnings)}")

    # Explicit success exit code so tests can assert on it
    raise SystemExit(0)


if __name__ == "__main__":
    main()
