from __future__ import annotations

import json
from typing import Any

import yaml

from config.defaults import MEMORY_EXPORT_FORMATS
from memory.models import MemoryRecord
from misc.errors import InvalidInput


EXPORT_VERSION = 1


def normalize_format(fmt: str | None) -> str:
    value = str(fmt or "json").strip().lower()
    if value == "yml":
        value = "yaml"
    if value not in MEMORY_EXPORT_FORMATS:
        raise InvalidInput(
            f"Unsupported export format {fmt!r}. Use one of: {', '.join(MEMORY_EXPORT_FORMATS)}."
        )
    return value


def dump_records(records: list[MemoryRecord], fmt: str, *, user_id: int, exported_at_utc: str) -> str:
    doc = {
        "version": EXPORT_VERSION,
        "user_id": int(user_id),
        "exported_at_utc": exported_at_utc,
        "memories": [r.to_export_dict() for r in records],
    }
    fmt = normalize_format(fmt)
    if fmt == "yaml":
        return yaml.safe_dump(doc, sort_keys=False, allow_unicode=True)
    return json.dumps(doc, ensure_ascii=False, indent=2)


def load_records(document: str, fmt: str) -> list[dict[str, Any]]:
    """Parse an export document back into plain record dicts.

    Only content/category/tags/metadata/created_at_utc are kept; ids and the
    owner in the document are ignored on import.
    """
    fmt = normalize_format(fmt)
    try:
        if fmt == "yaml":
            data = yaml.safe_load(document or "")
        else:
            data = json.loads(document or "")
    except (yaml.YAMLError, ValueError) as e:
        raise InvalidInput(f"Could not parse {fmt} export: {e}") from e

    if isinstance(data, dict):
        items = data.get("memories")
    else:
        items = data
    if not isinstance(items, list):
        raise InvalidInput("Export document has no `memories` list.")

    out: list[dict[str, Any]] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise InvalidInput(f"Memory #{i + 1} in the export is not a mapping.")
        content = str(item.get("content") or "").strip()
        if not content:
            raise InvalidInput(f"Memory #{i + 1} in the export has no content.")
        metadata = item.get("metadata")
        out.append(
            {
                "content": content,
                "category": item.get("category"),
                "tags": item.get("tags") or [],
                "metadata": metadata if isinstance(metadata, dict) else {},
                "created_at_utc": item.get("created_at_utc"),
            }
        )
    return out
