"""Tests for the SQLite document store and its listing cursor."""

from __future__ import annotations

import os
import tempfile
import unittest

from restdata import storage
from restdata.import_contract import MalformedRecord, RevisionConflict
from restdata.pagination import InvalidPageToken, PageCursor


class _StoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        handle = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        handle.close()
        self._db_file = handle.name
        storage.set_db_path_override(self._db_file)
        storage.ensure_schema()

    def tearDown(self) -> None:
        storage.set_db_path_override(None)
        os.remove(self._db_file)


class TestPageCursor(unittest.TestCase):
    def test_token_round_trip(self) -> None:
        cursor = PageCursor(last_key="b", last_id="id-2", remaining=4, descending=True)
        token = cursor.encode()
        self.assertNotIn("=", token)
        self.assertEqual(PageCursor.decode(token), cursor)

    def test_empty_token_is_none(self) -> None:
        self.assertIsNone(PageCursor.decode(None))
        self.assertIsNone(PageCursor.decode(""))

    def test_malformed_tokens_raise(self) -> None:
        for token in ("%%%", "bm90IGpzb24", PageCursor(last_key=1, last_id="x").encode()[:-3] + "A"):
            with self.subTest(token=token):
                with self.assertRaises(InvalidPageToken):
                    PageCursor.decode(token)
        self.assertTrue(issubclass(InvalidPageToken, ValueError))


class TestDocumentRevisions(_StoreTestCase):
    def test_put_assigns_and_bumps_revision(self) -> None:
        first = storage.put_document("saved-requests", {"_id": "r1", "name": "one"})
        self.assertTrue(first["rev"].startswith("1-"))
        stored = storage.get_document("saved-requests", "r1")
        self.assertEqual(stored["_rev"], first["rev"])
        self.assertEqual(stored["name"], "one")

        second = storage.put_document("saved-requests", {**stored, "name": "two"})
        self.assertTrue(second["rev"].startswith("2-"))
        self.assertIsNone(storage.get_document("saved-requests", "r1", rev=first["rev"]))
        self.assertEqual(storage.get_document("saved-requests", "r1", rev=second["rev"])["name"], "two")

    def test_stale_revision_conflicts(self) -> None:
        first = storage.put_document("saved-requests", {"_id": "r1", "name": "one"})
        storage.put_document("saved-requests", {"_id": "r1", "_rev": first["rev"], "name": "two"})
        with self.assertRaises(RevisionConflict):
            storage.put_document("saved-requests", {"_id": "r1", "_rev": first["rev"], "name": "three"})
        with self.assertRaises(RevisionConflict):
            storage.put_document("saved-requests", {"_id": "r1", "name": "no rev"})

    def test_kinds_have_separate_id_spaces(self) -> None:
        storage.put_document("saved-requests", {"_id": "same", "type": "saved"})
        storage.put_document("history-requests", {"_id": "same", "type": "history"})
        self.assertEqual(storage.get_document("saved-requests", "same")["type"], "saved")
        self.assertEqual(storage.get_document("history-requests", "same")["type"], "history")
        self.assertEqual(storage.list_kinds(), ["history-requests", "saved-requests"])

    def test_malformed_documents_are_rejected(self) -> None:
        with self.assertRaises(MalformedRecord):
            storage.put_document("saved-requests", {"name": "no id"})
        with self.assertRaises(MalformedRecord):
            storage.put_document("saved-requests", {"_id": "r1", "bad": object()})

    def test_bulk_put_isolates_failures(self) -> None:
        storage.put_document("variables", {"_id": "v2", "variable": "b"})
        results = storage.bulk_put(
            "variables",
            [
                {"_id": "v1", "variable": "a"},
                {"_id": "v2", "_rev": "1-stale", "variable": "b"},
                {"variable": "no id"},
                {"_id": "v3", "variable": "c"},
            ],
        )
        self.assertTrue(results[0]["ok"])
        self.assertEqual(results[1]["error"], "conflict")
        self.assertEqual(results[2]["error"], "invalid")
        self.assertTrue(results[3]["ok"])
        self.assertEqual(storage.count_documents("variables"), 3)

    def test_get_documents_returns_found_only(self) -> None:
        storage.put_document("cookies", {"_id": "c1", "name": "sid"})
        found = storage.get_documents("cookies", ["c1", "missing", "c1"])
        self.assertEqual(list(found), ["c1"])

    def test_delete_document(self) -> None:
        stamp = storage.put_document("host-rules", {"_id": "h1", "from": "a", "to": "b"})
        with self.assertRaises(RevisionConflict):
            storage.delete_document("host-rules", "h1", rev="1-wrong")
        deleted = storage.delete_document("host-rules", "h1", rev=stamp["rev"])
        self.assertTrue(deleted["rev"].startswith("2-"))
        self.assertIsNone(storage.get_document("host-rules", "h1"))
        self.assertIsNone(storage.delete_document("host-rules", "h1"))

    def test_recreated_database_file_gets_schema(self) -> None:
        storage.put_document("cookies", {"_id": "c1", "name": "sid"})
        os.remove(self._db_file)
        open(self._db_file, "wb").close()
        storage.put_document("cookies", {"_id": "c2", "name": "other"})
        self.assertEqual(storage.count_documents("cookies"), 1)
        self.assertIsNone(storage.get_document("cookies", "c1"))

    def test_changes_are_published_as_events(self) -> None:
        first = storage.put_document("legacy-projects", {"_id": "p1", "name": "P"})
        second = storage.put_document("legacy-projects", {"_id": "p1", "_rev": first["rev"], "name": "Q"})
        storage.delete_document("legacy-projects", "p1")
        events = storage.list_events(10)
        self.assertEqual([event["type"] for event in events], ["document.deleted", "document.changed", "document.changed"])
        change = events[1]["payload"]
        self.assertEqual(change["kind"], "legacy-projects")
        self.assertEqual(change["rev"], second["rev"])
        self.assertEqual(change["oldRev"], first["rev"])
        self.assertEqual(change["item"]["name"], "Q")
        self.assertNotIn("oldRev", events[2]["payload"])
        self.assertEqual(len(storage.list_events(10, event_type="document.deleted")), 1)


class TestListDocuments(_StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        for index, name in enumerate(["delta", "alpha", "charlie", "bravo", "echo"]):
            storage.put_document("saved-requests", {"_id": f"r{index}", "name": name, "method": "GET" if index % 2 else "POST"})

    def _collect(self, **kwargs):
        names = []
        token = None
        pages = 0
        while True:
            page = storage.list_documents("saved-requests", page_token=token, **kwargs)
            names.extend(item["name"] for item in page["items"])
            pages += 1
            token = page["next_page_token"]
            if token is None:
                return names, pages

    def test_pages_follow_natural_sort_key(self) -> None:
        names, pages = self._collect(limit=2)
        self.assertEqual(names, ["alpha", "bravo", "charlie", "delta", "echo"])
        self.assertEqual(pages, 3)

    def test_descending_order(self) -> None:
        names, _ = self._collect(limit=3, descending=True)
        self.assertEqual(names, ["echo", "delta", "charlie", "bravo", "alpha"])

    def test_no_token_when_exhausted(self) -> None:
        page = storage.list_documents("saved-requests", limit=5)
        self.assertEqual(len(page["items"]), 5)
        self.assertIsNone(page["next_page_token"])

    def test_remaining_hint(self) -> None:
        page = storage.list_documents("saved-requests", limit=2)
        self.assertEqual(PageCursor.decode(page["next_page_token"]).remaining, 3)

    def test_filter_by_field(self) -> None:
        page = storage.list_documents("saved-requests", filter={"method": "GET"})
        self.assertEqual(sorted(item["name"] for item in page["items"]), ["alpha", "bravo"])

    def test_ties_break_on_id(self) -> None:
        storage.put_document("variables", {"_id": "b", "variable": "x"})
        storage.put_document("variables", {"_id": "a", "variable": "x"})
        page = storage.list_documents("variables", limit=1)
        self.assertEqual(page["items"][0]["_id"], "a")
        rest = storage.list_documents("variables", limit=1, page_token=page["next_page_token"])
        self.assertEqual(rest["items"][0]["_id"], "b")

    def test_token_direction_must_match(self) -> None:
        page = storage.list_documents("saved-requests", limit=2)
        with self.assertRaises(InvalidPageToken):
            storage.list_documents("saved-requests", limit=2, page_token=page["next_page_token"], descending=True)


if __name__ == "__main__":
    unittest.main()
