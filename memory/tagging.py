from __future__ import annotations

import re
from typing import Iterable

from config.defaults import DEFAULT_MEMORY_CATEGORY


MAX_TAGS = 16
MAX_TAG_CHARS = 40
MAX_CATEGORY_CHARS = 40


def _clean_slug(raw: str, *, limit: int) -> str:
    value = str(raw or "").strip().lower()
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"[^\w\-:]", "", value)
    return value[:limit]


def normalize_tags(tags: Iterable[str] | str | None) -> list[str]:
    """Lowercase slug tags, deduplicated, original order kept."""
    if isinstance(tags, str):
        tags = re.split(r"[,;]+", tags)
    out: list[str] = []
    seen: set[str] = set()
    for raw_tag in (tags or []):
        clean = _clean_slug(raw_tag, limit=MAX_TAG_CHARS)
        if not clean or clean in seen:
            continue
        seen.add(clean)
        out.append(clean)
        if len(out) >= MAX_TAGS:
            break
    return out


def normalize_category(category: str | None) -> str:
    clean = _clean_slug(category or "", limit=MAX_CATEGORY_CHARS)
    return clean or DEFAULT_MEMORY_CATEGORY
