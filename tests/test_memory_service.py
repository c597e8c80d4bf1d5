from __future__ import annotations

import asyncio
import json
import sqlite3
import unittest
from pathlib import Path

import yaml

from db.migrate import apply_sqlite_migrations
from memory.service import MemoryService
from memory.tagging import normalize_category, normalize_tags
from memory.tools import MemoryToolBinding
from misc.errors import InvalidInput, NotFound
from retrieval.like_query import escape_like, extract_keywords


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _migrations_dir() -> str:
    return str(_repo_root() / "migrations")


OWNER = 501
OTHER = 502


class MemoryServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.svc = MemoryService(db_lock=asyncio.Lock(), db_conn=self.conn)

    async def asyncTearDown(self):
        self.conn.close()

    async def test_recall_is_scoped_to_owner(self):
        await self.svc.remember(OWNER, "Prefers tea over coffee", category="preference")
        await self.svc.remember(OTHER, "Prefers coffee, black", category="preference")

        mine = await self.svc.recall(OWNER, "coffee")
        self.assertEqual([r.content for r in mine], ["Prefers tea over coffee"])
        theirs = await self.svc.recall(OTHER, "tea")
        self.assertEqual(theirs, [])

    async def test_like_metacharacters_match_literally(self):
        await self.svc.remember(OWNER, "Discount is 50% off")
        await self.svc.remember(OWNER, "Discount is 50 dollars off")
        await self.svc.remember(OWNER, "file_name.txt is the config")
        await self.svc.remember(OWNER, "fileXname.txt is unrelated")

        pct = await self.svc.recall(OWNER, "0%")
        self.assertEqual([r.content for r in pct], ["Discount is 50% off"])

        underscore = await self.svc.recall(OWNER, "file_name")
        self.assertEqual([r.content for r in underscore], ["file_name.txt is the config"])

    async def test_recall_ranks_phrase_hits_first(self):
        await self.svc.remember(OWNER, "The dog is called Biscuit")
        await self.svc.remember(OWNER, "Biscuit recipes with butter", tags=["dog"])

        results = await self.svc.recall(OWNER, "called Biscuit")
        self.assertEqual(results[0].content, "The dog is called Biscuit")

    async def test_old_phrase_hit_outranks_many_newer_keyword_hits(self):
        await self.svc.remember(OWNER, "my favourite color is teal")
        for i in range(501):
            await self.svc.remember(OWNER, f"color note {i}")

        results = await self.svc.recall(OWNER, "favourite color", limit=1)
        self.assertEqual([r.content for r in results], ["my favourite color is teal"])

        newest = await self.svc.recall(OWNER, "color note", limit=2)
        self.assertEqual([r.content for r in newest], ["color note 500", "color note 499"])

    async def test_recall_folds_case_beyond_ascii(self):
        await self.svc.remember(OWNER, "Café ÉCLAIR recipe")

        results = await self.svc.recall(OWNER, "éclair")
        self.assertEqual([r.content for r in results], ["Café ÉCLAIR recipe"])

    async def test_category_only_phrase_hit_is_returned(self):
        await self.svc.remember(OWNER, "Ships on Fridays", category="x")

        self.assertEqual([r.content for r in await self.svc.recall(OWNER, "x")], ["Ships on Fridays"])

    async def test_recall_matches_tags_and_category(self):
        await self.svc.remember(OWNER, "Ships on Fridays", category="work", tags=["release-train"])

        self.assertEqual(len(await self.svc.recall(OWNER, "release-train")), 1)
        self.assertEqual(len(await self.svc.recall(OWNER, "work")), 1)

    async def test_blank_recall_returns_most_recent(self):
        for i in range(3):
            await self.svc.remember(OWNER, f"fact {i}")
        results = await self.svc.recall(OWNER, "   ", limit=2)
        self.assertEqual(len(results), 2)

    async def test_forget_is_owner_only(self):
        record = await self.svc.remember(OWNER, "secret")

        with self.assertRaises(NotFound) as foreign:
            await self.svc.forget(OTHER, record.id)
        await self.svc.forget(OWNER, record.id)
        with self.assertRaises(NotFound) as missing:
            await self.svc.forget(OWNER, record.id)
        self.assertEqual(str(foreign.exception), str(missing.exception))

    async def test_update(self):
        record = await self.svc.remember(OWNER, "old text", category="misc")
        updated = await self.svc.update(OWNER, record.id, content="new text", tags="a, b")
        self.assertEqual(updated.content, "new text")
        self.assertEqual(updated.tags, ["a", "b"])
        self.assertEqual(updated.category, "misc")

        with self.assertRaises(InvalidInput):
            await self.svc.update(OWNER, record.id)
        with self.assertRaises(NotFound):
            await self.svc.update(OTHER, record.id, content="hijack")

    async def test_content_validation(self):
        with self.assertRaises(InvalidInput):
            await self.svc.remember(OWNER, "   ")
        with self.assertRaises(InvalidInput):
            await self.svc.remember(OWNER, "x" * 5000)

    async def test_list_pagination_and_categories(self):
        for i in range(12):
            await self.svc.remember(OWNER, f"note {i}", category="notes" if i % 2 else "ideas")

        first = await self.svc.list(OWNER, offset=0, limit=5)
        self.assertEqual((len(first.records), first.total), (5, 12))
        self.assertTrue(first.has_more)
        last = await self.svc.list(OWNER, offset=10, limit=5)
        self.assertEqual(len(last.records), 2)
        self.assertFalse(last.has_more)

        notes = await self.svc.list(OWNER, category="Notes")
        self.assertEqual(notes.total, 6)
        self.assertEqual(dict(await self.svc.categories(OWNER)), {"ideas": 6, "notes": 6})

    async def test_export_import_json(self):
        await self.svc.remember(OWNER, "likes hiking", category="hobby", tags=["outdoor"])
        document = await self.svc.export(OWNER, "json")
        payload = json.loads(document)
        self.assertEqual(payload["user_id"], OWNER)
        self.assertEqual(payload["memories"][0]["content"], "likes hiking")

        ids = await self.svc.import_records(OTHER, document, "json")
        self.assertEqual(len(ids), 1)
        imported = await self.svc.get(OTHER, ids[0])
        self.assertEqual((imported.content, imported.category, imported.tags), ("likes hiking", "hobby", ["outdoor"]))

    async def test_export_yaml(self):
        await self.svc.remember(OWNER, "speaks Dutch")
        payload = yaml.safe_load(await self.svc.export(OWNER, "yml"))
        self.assertEqual(payload["memories"][0]["content"], "speaks Dutch")

    async def test_import_rejects_bad_documents(self):
        with self.assertRaises(InvalidInput):
            await self.svc.import_records(OWNER, "{not json", "json")
        with self.assertRaises(InvalidInput):
            await self.svc.import_records(OWNER, json.dumps({"memories": [{"content": ""}]}), "json")
        with self.assertRaises(InvalidInput):
            await self.svc.export(OWNER, "csv")
        self.assertEqual((await self.svc.list(OWNER)).total, 0)

    async def test_export_and_clear(self):
        await self.svc.remember(OWNER, "one")
        await self.svc.remember(OWNER, "two")
        await self.svc.remember(OTHER, "keep me")

        document, removed = await self.svc.export_and_clear(OWNER)
        self.assertEqual(removed, 2)
        self.assertEqual(len(json.loads(document)["memories"]), 2)
        self.assertEqual((await self.svc.list(OWNER)).total, 0)
        self.assertEqual((await self.svc.list(OTHER)).total, 1)

    async def test_clear_keeps_memories_stored_after_the_backup(self):
        await self.svc.remember(OWNER, "backed up")
        delivered: list[str] = []

        async def deliver(document):
            delivered.append(document)
            await self.svc.remember(OWNER, "stored while the backup was sent")

        document, removed = await self.svc.export_and_clear(OWNER, deliver=deliver)
        self.assertEqual(delivered, [document])
        self.assertEqual([m["content"] for m in json.loads(document)["memories"]], ["backed up"])
        self.assertEqual(removed, 1)
        remaining = await self.svc.list(OWNER)
        self.assertEqual([r.content for r in remaining.records], ["stored while the backup was sent"])

    async def test_failed_backup_delivery_clears_nothing(self):
        await self.svc.remember(OWNER, "precious")

        async def deliver(document):
            raise ConnectionError("DMs closed")

        with self.assertRaises(ConnectionError):
            await self.svc.export_and_clear(OWNER, deliver=deliver)
        self.assertEqual((await self.svc.list(OWNER)).total, 1)


class MemoryToolBindingTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.svc = MemoryService(db_lock=asyncio.Lock(), db_conn=self.conn)
        self.tools = MemoryToolBinding(self.svc, OWNER)

    async def asyncTearDown(self):
        self.conn.close()

    async def test_remember_then_recall(self):
        stored = await self.tools.call("remember", json.dumps({"content": "Birthday is May 4", "tags": ["dates"]}))
        self.assertTrue(stored["ok"])
        record = await self.svc.get(OWNER, stored["id"])
        self.assertEqual(record.metadata, {"source": "tool"})

        found = await self.tools.call("recall", {"query": "birthday"})
        self.assertTrue(found["ok"])
        self.assertEqual(found["memories"][0]["content"], "Birthday is May 4")

    async def test_errors_are_reported_not_raised(self):
        self.assertFalse((await self.tools.call("remember", "{}"))["ok"])
        self.assertFalse((await self.tools.call("remember", "not json"))["ok"])
        self.assertFalse((await self.tools.call("delete_everything", "{}"))["ok"])

    def test_schemas(self):
        self.assertEqual(self.tools.names(), {"remember", "recall"})


class MemoryHelpersTests(unittest.TestCase):
    def test_escape_like(self):
        self.assertEqual(escape_like("50%_off\\"), "50\\%\\_off\\\\")

    def test_extract_keywords(self):
        self.assertEqual(extract_keywords("The CAT, the cat and a dog"), ["the", "cat", "and", "dog"])

    def test_normalize_tags_and_category(self):
        self.assertEqual(normalize_tags("Work, work; Side Project"), ["work", "side-project"])
        self.assertEqual(normalize_category("  "), "general")
        self.assertEqual(normalize_category("My Stuff!"), "my-stuff")


if __name__ == "__main__":
    unittest.main()
