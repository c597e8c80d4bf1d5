from __future__ import annotations

import asyncio
import sqlite3
import tempfile
import unittest
from pathlib import Path

from db.migrate import apply_sqlite_migrations
from misc.errors import Forbidden, InvalidInput, NotFound
from permissions.models import Capability, parse_capabilities, parse_capability
from permissions.resolver import PermissionResolver
from permissions.role_config import load_role_config, seed_roles_sync


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _migrations_dir() -> str:
    return str(_repo_root() / "migrations")


ROOT = 1
ADMIN = 2
MOD = 3
MEMBER = 4

MOD_ROLE = 900


class PermissionResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.member_roles: dict[int, list[int]] = {}
        self.resolver = PermissionResolver(
            db_lock=asyncio.Lock(),
            db_conn=self.conn,
            super_user_ids={ROOT},
            admin_user_ids={ADMIN},
            default_capabilities=["chat"],
            role_lookup=lambda actor: self.member_roles.get(actor, []),
        )

    async def asyncTearDown(self):
        self.conn.close()

    async def test_super_user_bypasses_everything(self):
        for cap in Capability:
            self.assertTrue(await self.resolver.check(ROOT, cap))

    async def test_nobody_else_holds_super_user(self):
        self.assertFalse(await self.resolver.check(ADMIN, Capability.SUPER_USER))
        self.assertFalse(await self.resolver.check(MEMBER, "superuser"))

    async def test_defaults_apply_to_everyone(self):
        self.assertTrue(await self.resolver.check(MEMBER, "chat"))
        self.assertFalse(await self.resolver.check(MEMBER, "schedule"))
        with self.assertRaises(Forbidden) as ctx:
            await self.resolver.require(MEMBER, Capability.FILE_WRITE)
        self.assertEqual(ctx.exception.capability, "file_write")

    async def test_granting_super_user_is_refused_even_for_super_users(self):
        with self.assertRaises(Forbidden):
            await self.resolver.grant(ROOT, MEMBER, Capability.SUPER_USER)
        with self.assertRaises(Forbidden):
            await self.resolver.set_role(ROOT, MOD_ROLE, "Mods", ["chat", "super_user"])

    async def test_grant_and_revoke(self):
        self.assertTrue(await self.resolver.grant(ADMIN, MEMBER, "schedule"))
        self.assertFalse(await self.resolver.grant(ADMIN, MEMBER, "schedule"))
        self.assertTrue(await self.resolver.check(MEMBER, "schedule"))
        grants = await self.resolver.list_grants(MEMBER)
        self.assertEqual([(g.capability, g.granted_by) for g in grants], [(Capability.SCHEDULE, ADMIN)])

        self.assertTrue(await self.resolver.revoke(ADMIN, MEMBER, "schedule"))
        self.assertFalse(await self.resolver.check(MEMBER, "schedule"))

    async def test_granting_needs_manage_permissions(self):
        with self.assertRaises(Forbidden):
            await self.resolver.grant(MEMBER, MEMBER, "schedule")

    async def test_only_super_users_hand_out_manage_permissions(self):
        with self.assertRaises(Forbidden):
            await self.resolver.grant(ADMIN, MEMBER, "admin")
        await self.resolver.grant(ROOT, MEMBER, "admin")
        self.assertTrue(await self.resolver.check(MEMBER, Capability.MANAGE_PERMISSIONS))

    async def test_only_super_users_strip_manage_permissions_from_a_role(self):
        await self.resolver.set_role(ROOT, MOD_ROLE, "Mods", ["admin"])
        self.member_roles[MOD] = [MOD_ROLE]

        with self.assertRaises(Forbidden):
            await self.resolver.set_role(ADMIN, MOD_ROLE, "Mods", [])
        self.assertTrue(await self.resolver.check(MOD, Capability.MANAGE_PERMISSIONS))

        await self.resolver.set_role(ROOT, MOD_ROLE, "Mods", [])
        self.assertFalse(await self.resolver.check(MOD, Capability.MANAGE_PERMISSIONS))

    async def test_role_capabilities_follow_membership(self):
        await self.resolver.set_role(ADMIN, MOD_ROLE, "Mods", ["schedule", "file_write"])
        self.member_roles[MOD] = [MOD_ROLE]
        self.assertTrue(await self.resolver.check(MOD, "file_write"))

        # Losing the Discord role takes effect on the next check.
        self.member_roles[MOD] = []
        self.assertFalse(await self.resolver.check(MOD, "file_write"))

    async def test_role_changes_apply_immediately(self):
        self.member_roles[MOD] = [MOD_ROLE]
        await self.resolver.set_role(ADMIN, MOD_ROLE, "Mods", ["schedule"])
        self.assertTrue(await self.resolver.check(MOD, "schedule"))

        await self.resolver.set_role(ADMIN, MOD_ROLE, "Mods", ["file_read"])
        self.assertFalse(await self.resolver.check(MOD, "schedule"))

        await self.resolver.remove_role(ADMIN, MOD_ROLE)
        self.assertFalse(await self.resolver.check(MOD, "file_read"))
        with self.assertRaises(NotFound):
            await self.resolver.remove_role(ADMIN, MOD_ROLE)

    async def test_async_role_lookup_override(self):
        await self.resolver.set_role(ADMIN, MOD_ROLE, "Mods", ["schedule"])

        async def lookup(actor):
            return [MOD_ROLE]

        self.assertTrue(await self.resolver.check(MEMBER, "schedule", role_lookup=lookup))
        self.assertFalse(await self.resolver.check(MEMBER, "schedule"))

    async def test_effective_capabilities(self):
        await self.resolver.grant(ADMIN, MEMBER, "memory")
        caps = await self.resolver.effective_capabilities(MEMBER)
        self.assertEqual(caps, {Capability.CHAT, Capability.MEMORY})
        self.assertIn(Capability.MANAGE_PERMISSIONS, await self.resolver.effective_capabilities(ADMIN))
        self.assertEqual(await self.resolver.effective_capabilities(ROOT), set(Capability))


class CapabilityParsingTests(unittest.TestCase):
    def test_aliases(self):
        self.assertIs(parse_capability("admin"), Capability.MANAGE_PERMISSIONS)
        self.assertIs(parse_capability(" File-Read "), Capability.FILE_READ)
        self.assertEqual(parse_capabilities(["chat", "CHAT", "memory"]), [Capability.CHAT, Capability.MEMORY])

    def test_unknown(self):
        with self.assertRaises(InvalidInput):
            parse_capability("root")


class RoleConfigTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "roles.yml"

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file_uses_defaults(self):
        config, warnings = load_role_config(self.path)
        self.assertIn(Capability.CHAT, config.default_capabilities)
        self.assertEqual(config.roles, ())
        self.assertTrue(warnings)

    def test_super_user_is_dropped_with_warning(self):
        self.path.write_text(
            "default_capabilities: [chat]\n"
            "roles:\n"
            "  42:\n"
            "    name: Leads\n"
            "    capabilities: [schedule, super_user, bogus]\n",
            encoding="utf-8",
        )
        config, warnings = load_role_config(self.path)
        self.assertEqual(config.default_capabilities, frozenset({Capability.CHAT}))
        self.assertEqual(config.roles[0].capabilities, frozenset({Capability.SCHEDULE}))
        self.assertEqual(len(warnings), 2)

    def test_shipped_roles_file_loads_cleanly(self):
        config, warnings = load_role_config(_repo_root() / "config" / "roles.yml")
        self.assertEqual(warnings, [])
        self.assertNotIn(Capability.SUPER_USER, config.default_capabilities)

    def test_seed_does_not_overwrite_existing_roles(self):
        conn = sqlite3.connect(":memory:")
        apply_sqlite_migrations(conn, _migrations_dir())
        self.path.write_text("roles:\n  42:\n    name: Leads\n    capabilities: [schedule]\n", encoding="utf-8")
        config, _ = load_role_config(self.path)

        self.assertEqual(seed_roles_sync(conn, config.roles, "2026-01-01T00:00:00+00:00"), 1)
        self.assertEqual(seed_roles_sync(conn, config.roles, "2026-01-02T00:00:00+00:00"), 0)
        conn.close()


if __name__ == "__main__":
    unittest.main()
