from __future__ import annotations

import os
import re


def parse_id_set(raw: str | None) -> set[int]:
    if not raw:
        return set()
    out: set[int] = set()
    for tok in re.split(r"[\s,;]+", raw.strip()):
        if not tok:
            continue
        if re.fullmatch(r"\d{1,22}", tok):
            out.add(int(tok))
        else:
            print(f"[CFG] ignoring invalid id {tok!r}")
    return out


def env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        print(f"[CFG] {name}={raw!r} is not an integer; using {default}")
        return int(default)
    if value < minimum:
        print(f"[CFG] {name}={value} is below {minimum}; using {default}")
        return int(default)
    return value


def env_str(name: str, default: str) -> str:
    return (os.getenv(name) or "").strip() or default
