from __future__ import annotations

import asyncio
import inspect
import sqlite3
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Union

from misc.errors import Forbidden, InvalidInput, NotFound, storage_failure
from misc.time_utils import utc_iso, utc_now
from permissions.models import Capability, PermissionGrant, RoleDefinition, parse_capabilities, parse_capability
from permissions.store import (
    delete_grant_sync,
    delete_role_sync,
    fetch_roles_sync,
    has_grant_sync,
    list_grants_sync,
    upsert_grant_sync,
    upsert_role_sync,
)


RoleLookup = Callable[[int], Union[Iterable[int], Awaitable[Iterable[int]]]]


def _role_from_row(row: dict[str, Any]) -> RoleDefinition:
    caps: set[Capability] = set()
    for raw in row.get("capabilities") or []:
        try:
            cap = parse_capability(raw)
        except InvalidInput:
            continue
        if cap is not Capability.SUPER_USER:
            caps.add(cap)
    return RoleDefinition(role_id=int(row["role_id"]), name=str(row["name"]), capabilities=frozenset(caps))


class PermissionResolver:
    """Layered capability checks.

    Order: super user allow-list, explicit per-user grant, capabilities of the
    roles the user currently holds, default capabilities. Grants and roles are
    read from the tables on every check, and role membership is looked up on
    every check, so revocations apply to the very next call.
    """

    def __init__(
        self,
        *,
        db_lock: asyncio.Lock,
        db_conn: sqlite3.Connection,
        super_user_ids: Iterable[int] = (),
        admin_user_ids: Iterable[int] = (),
        default_capabilities: Iterable[Capability | str] = (),
        role_lookup: RoleLookup | None = None,
        now_func: Callable[[], datetime] | None = None,
    ) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.super_user_ids = frozenset(int(x) for x in super_user_ids)
        self.admin_user_ids = frozenset(int(x) for x in admin_user_ids)
        self.default_capabilities = frozenset(
            c for c in parse_capabilities(default_capabilities) if c is not Capability.SUPER_USER
        )
        self.role_lookup = role_lookup
        self._now = now_func or utc_now

    async def _run(self, operation: str, fn, *args):
        try:
            async with self.db_lock:
                return await asyncio.to_thread(fn, self.db_conn, *args)
        except sqlite3.Error as e:
            raise storage_failure(operation, e) from e

    def is_super_user(self, actor: int) -> bool:
        return int(actor) in self.super_user_ids

    async def _role_ids(self, actor: int, role_lookup: RoleLookup | None) -> list[int]:
        lookup = role_lookup or self.role_lookup
        if lookup is None:
            return []
        result = lookup(int(actor))
        if inspect.isawaitable(result):
            result = await result
        return [int(r) for r in (result or [])]

    async def _role_capabilities(self, actor: int, role_lookup: RoleLookup | None) -> set[Capability]:
        role_ids = await self._role_ids(actor, role_lookup)
        if not role_ids:
            return set()
        rows = await self._run(f"load roles for user {actor}", fetch_roles_sync, role_ids)
        caps: set[Capability] = set()
        for row in rows:
            caps.update(_role_from_row(row).capabilities)
        return caps

    async def check(
        self,
        actor: int,
        capability: Capability | str,
        *,
        role_lookup: RoleLookup | None = None,
    ) -> bool:
        cap = parse_capability(capability)
        if self.is_super_user(actor):
            return True
        if cap is Capability.SUPER_USER:
            return False
        if cap is Capability.MANAGE_PERMISSIONS and int(actor) in self.admin_user_ids:
            return True
        if await self._run(f"check grant for user {actor}", has_grant_sync, int(actor), cap.value):
            return True
        if cap in await self._role_capabilities(actor, role_lookup):
            return True
        return cap in self.default_capabilities

    async def require(
        self,
        actor: int,
        capability: Capability | str,
        *,
        role_lookup: RoleLookup | None = None,
    ) -> None:
        cap = parse_capability(capability)
        if not await self.check(actor, cap, role_lookup=role_lookup):
            raise Forbidden(f"You need the `{cap.value}` capability for that.", capability=cap.value)

    async def effective_capabilities(
        self,
        actor: int,
        *,
        role_lookup: RoleLookup | None = None,
    ) -> set[Capability]:
        if self.is_super_user(actor):
            return set(Capability)
        caps = set(self.default_capabilities)
        caps.update(await self._role_capabilities(actor, role_lookup))
        for grant in await self.list_grants(actor):
            caps.add(grant.capability)
        if int(actor) in self.admin_user_ids:
            caps.add(Capability.MANAGE_PERMISSIONS)
        return caps

    async def list_grants(self, actor: int) -> list[PermissionGrant]:
        rows = await self._run(f"list grants for user {actor}", list_grants_sync, int(actor))
        out: list[PermissionGrant] = []
        for row in rows:
            try:
                cap = parse_capability(row["capability"])
            except InvalidInput:
                print(f"[Permissions] ignoring unknown stored capability {row['capability']!r} for user {actor}")
                continue
            out.append(
                PermissionGrant(
                    user_id=int(row["user_id"]),
                    capability=cap,
                    granted_by=row.get("granted_by"),
                    granted_at_utc=row["granted_at_utc"],
                )
            )
        return out

    async def _authorize_change(
        self,
        granter: int,
        caps: Iterable[Capability],
        *,
        role_lookup: RoleLookup | None,
    ) -> None:
        caps = list(caps)
        if Capability.SUPER_USER in caps:
            raise Forbidden(
                "The `super_user` capability can only be assigned through SUPER_USER_IDS.",
                capability=Capability.SUPER_USER.value,
            )
        await self.require(granter, Capability.MANAGE_PERMISSIONS, role_lookup=role_lookup)
        if Capability.MANAGE_PERMISSIONS in caps and not self.is_super_user(granter):
            raise Forbidden(
                "Only super users can assign or remove `manage_permissions`.",
                capability=Capability.SUPER_USER.value,
            )

    async def grant(
        self,
        granter: int,
        actor: int,
        capability: Capability | str,
        *,
        role_lookup: RoleLookup | None = None,
    ) -> bool:
        cap = parse_capability(capability)
        await self._authorize_change(granter, [cap], role_lookup=role_lookup)
        added = await self._run(
            f"grant {cap.value} to user {actor}",
            upsert_grant_sync,
            int(actor),
            cap.value,
            int(granter),
            utc_iso(self._now()),
        )
        print(f"[Permissions] {granter} granted {cap.value} to {actor} (new={added})")
        return added

    async def revoke(
        self,
        granter: int,
        actor: int,
        capability: Capability | str,
        *,
        role_lookup: RoleLookup | None = None,
    ) -> bool:
        cap = parse_capability(capability)
        await self._authorize_change(granter, [cap], role_lookup=role_lookup)
        removed = await self._run(f"revoke {cap.value} from user {actor}", delete_grant_sync, int(actor), cap.value)
        print(f"[Permissions] {granter} revoked {cap.value} from {actor} (removed={removed})")
        return removed

    async def list_roles(self) -> list[RoleDefinition]:
        rows = await self._run("list roles", fetch_roles_sync, None)
        return [_role_from_row(r) for r in rows]

    async def set_role(
        self,
        granter: int,
        role_id: int,
        name: str,
        capabilities: Iterable[Capability | str],
        *,
        role_lookup: RoleLookup | None = None,
    ) -> RoleDefinition:
        caps = parse_capabilities(capabilities)
        await self._authorize_change(granter, caps, role_lookup=role_lookup)
        existing = await self._run(f"load role {role_id}", fetch_roles_sync, [int(role_id)])
        if (
            existing
            and Capability.MANAGE_PERMISSIONS in _role_from_row(existing[0]).capabilities
            and not self.is_super_user(granter)
        ):
            raise Forbidden(
                "Only super users can assign or remove `manage_permissions`.",
                capability=Capability.SUPER_USER.value,
            )
        clean_name = str(name or "").strip() or str(role_id)
        await self._run(
            f"save role {role_id}",
            upsert_role_sync,
            int(role_id),
            clean_name,
            sorted(c.value for c in caps),
            int(granter),
            utc_iso(self._now()),
        )
        print(f"[Permissions] {granter} set role {role_id} ({clean_name}) -> {sorted(c.value for c in caps)}")
        return RoleDefinition(role_id=int(role_id), name=clean_name, capabilities=frozenset(caps))

    async def remove_role(
        self,
        granter: int,
        role_id: int,
        *,
        role_lookup: RoleLookup | None = None,
    ) -> None:
        await self._authorize_change(granter, [], role_lookup=role_lookup)
        rows = await self._run(f"load role {role_id}", fetch_roles_sync, [int(role_id)])
        if not rows:
            raise NotFound(f"Role {role_id} has no capability mapping.")
        role = _role_from_row(rows[0])
        if Capability.MANAGE_PERMISSIONS in role.capabilities and not self.is_super_user(granter):
            raise Forbidden(
                "Only super users can assign or remove `manage_permissions`.",
                capability=Capability.SUPER_USER.value,
            )
        await self._run(f"delete role {role_id}", delete_role_sync, int(role_id))
        print(f"[Permissions] {granter} removed role {role_id}")
