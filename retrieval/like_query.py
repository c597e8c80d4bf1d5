from __future__ import annotations

import re


LIKE_ESCAPE = "\\"
MAX_KEYWORDS = 8


def escape_like(term: str) -> str:
    """Escape LIKE metacharacters so user text only ever matches literally.

    Use together with `ESCAPE '\\'` in the SQL.
    """
    text = str(term or "")
    text = text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
    text = text.replace("%", LIKE_ESCAPE + "%")
    text = text.replace("_", LIKE_ESCAPE + "_")
    return text


def like_contains(term: str) -> str:
    return f"%{escape_like(term)}%"


def extract_keywords(q: str) -> list[str]:
    """Split free text into lowercase search keywords (no operators)."""
    text = (q or "").strip().lower()
    if not text:
        return []

    words: list[str] = []
    for word in re.findall(r"\w+", text):
        if len(word) < 2 or word in words:
            continue
        words.append(word)
        if len(words) >= MAX_KEYWORDS:
            break
    return words
