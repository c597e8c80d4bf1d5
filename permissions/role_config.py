from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from config.defaults import DEFAULT_CAPABILITIES
from misc.errors import InvalidInput
from permissions.models import Capability, RoleDefinition, parse_capabilities


@dataclass(frozen=True)
class RoleConfig:
    default_capabilities: frozenset[Capability]
    roles: tuple[RoleDefinition, ...] = field(default_factory=tuple)


def default_role_config() -> RoleConfig:
    return RoleConfig(default_capabilities=frozenset(parse_capabilities(DEFAULT_CAPABILITIES)))


def _clean_caps(raw, where: str, warnings: list[str]) -> frozenset[Capability]:
    if not isinstance(raw, list):
        warnings.append(f"{where}: capabilities must be a list")
        return frozenset()
    out: set[Capability] = set()
    for item in raw:
        try:
            cap = parse_capabilities([item])[0]
        except InvalidInput as e:
            warnings.append(f"{where}: {e}")
            continue
        if cap is Capability.SUPER_USER:
            warnings.append(f"{where}: super_user can only come from SUPER_USER_IDS; ignored")
            continue
        out.add(cap)
    return frozenset(out)


def load_role_config(path: str | Path | None) -> tuple[RoleConfig, list[str]]:
    """
    Returns (config, warnings). Missing or unreadable files fall back to the
    built-in default capabilities with no seed roles.
    """
    defaults = default_role_config()
    if not path:
        return (defaults, ["roles path missing; using built-in defaults"])

    p = Path(path)
    if not p.exists():
        return (defaults, [f"roles file not found at {p}; using built-in defaults"])

    try:
        payload = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        return (defaults, [f"failed to read roles from {p}: {exc}; using built-in defaults"])
    if not isinstance(payload, dict):
        return (defaults, [f"invalid roles format in {p}; using built-in defaults"])

    warnings: list[str] = []
    if "default_capabilities" in payload:
        default_caps = _clean_caps(payload.get("default_capabilities"), "default_capabilities", warnings)
    else:
        default_caps = defaults.default_capabilities

    roles: list[RoleDefinition] = []
    raw_roles = payload.get("roles") or {}
    if not isinstance(raw_roles, dict):
        warnings.append("roles must be a mapping of role id -> definition")
        raw_roles = {}
    for raw_id, body in raw_roles.items():
        try:
            role_id = int(raw_id)
        except (TypeError, ValueError):
            warnings.append(f"role {raw_id!r}: id must be numeric")
            continue
        body = body if isinstance(body, dict) else {}
        caps = _clean_caps(body.get("capabilities") or [], f"role {role_id}", warnings)
        name = str(body.get("name") or role_id).strip()
        roles.append(RoleDefinition(role_id=role_id, name=name, capabilities=caps))

    return (RoleConfig(default_capabilities=default_caps, roles=tuple(roles)), warnings)


def seed_roles_sync(conn: sqlite3.Connection, roles: tuple[RoleDefinition, ...], now_iso: str) -> int:
    """Insert configured roles that are not in the table yet; existing rows win."""
    cur = conn.cursor()
    added = 0
    for role in roles:
        cur.execute(
            """
            INSERT OR IGNORE INTO permission_roles (role_id, name, capabilities_json, updated_by, updated_at_utc)
            VALUES (?, ?, ?, NULL, ?)
            """,
            (
                int(role.role_id),
                role.name,
                json.dumps(sorted(c.value for c in role.capabilities)),
                now_iso,
            ),
        )
        added += int(cur.rowcount or 0)
    conn.commit()
    return added
