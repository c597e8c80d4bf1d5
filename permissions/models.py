from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from misc.errors import InvalidInput


class Capability(str, Enum):
    CHAT = "chat"
    MEMORY = "memory"
    SCHEDULE = "schedule"
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    MANAGE_PERMISSIONS = "manage_permissions"
    SUPER_USER = "super_user"

    def __str__(self) -> str:
        return self.value


_ALIASES = {
    "fileread": Capability.FILE_READ,
    "file-read": Capability.FILE_READ,
    "filewrite": Capability.FILE_WRITE,
    "file-write": Capability.FILE_WRITE,
    "admin": Capability.MANAGE_PERMISSIONS,
    "manage-permissions": Capability.MANAGE_PERMISSIONS,
    "superuser": Capability.SUPER_USER,
    "super-user": Capability.SUPER_USER,
}


def parse_capability(value: str | Capability) -> Capability:
    if isinstance(value, Capability):
        return value
    key = str(value or "").strip().lower()
    try:
        return Capability(key)
    except ValueError:
        pass
    cap = _ALIASES.get(key)
    if cap is None:
        names = ", ".join(c.value for c in Capability)
        raise InvalidInput(f"Unknown capability {value!r}. Known capabilities: {names}.")
    return cap


def parse_capabilities(values: Iterable[str | Capability]) -> list[Capability]:
    out: list[Capability] = []
    for value in values or []:
        cap = parse_capability(value)
        if cap not in out:
            out.append(cap)
    return out


@dataclass(frozen=True)
class RoleDefinition:
    role_id: int
    name: str
    capabilities: frozenset[Capability]


@dataclass(frozen=True)
class PermissionGrant:
    user_id: int
    capability: Capability
    granted_by: int | None
    granted_at_utc: str
