"""Product-code extraction from bulk job input documents.

A job's input is either a JSON list of work items or an object with an
``items`` list. Each item names its product somewhere among a handful of
loosely standardised keys; the first value that looks like a product code
(``ND-1234``) wins.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any

CODE_REGEX = re.compile(r"[A-Za-z]{1,5}-\d+")

CODE_KEYS = (
    "spu",
    "spu_id",
    "spuId",
    "spu_code",
    "spuCode",
    "sku",
    "SKU",
    "product_id",
    "productId",
)

VARIATION_KEYS = ("variations", "variants_1688", "variant_images_1688")


def extract_product_code(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    match = CODE_REGEX.search(text)
    if not match:
        return None
    return match.group(0).upper()


def _first_code(entry: dict[str, Any]) -> str | None:
    for key in CODE_KEYS:
        code = extract_product_code(entry.get(key))
        if code:
            return code
    return None


def collect_code_from_item(item: dict[str, Any]) -> str | None:
    code = _first_code(item)
    if code:
        return code
    for key in VARIATION_KEYS:
        variations = item.get(key)
        if not isinstance(variations, list):
            continue
        for entry in variations:
            if isinstance(entry, dict):
                code = _first_code(entry)
                if code:
                    return code
    return None


def iter_items(payload: object) -> Iterator[object]:
    if isinstance(payload, list):
        yield from payload
    elif isinstance(payload, dict) and isinstance(payload.get("items"), list):
        yield from payload["items"]


def count_items(payload: object) -> int:
    return sum(1 for _ in iter_items(payload))


def collect_codes(payload: object) -> list[str]:
    codes: dict[str, None] = {}
    for item in iter_items(payload):
        if not isinstance(item, dict):
            continue
        code = collect_code_from_item(item)
        if code:
            codes.setdefault(code, None)
    return list(codes)


def load_job_codes(input_path: str | Path | None) -> list[str]:
    """Codes named by a job's input document; empty if it is gone or unreadable."""
    if not input_path:
        return []
    path = Path(input_path)
    if not path.is_file():
        return []
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []
    return collect_codes(payload)
