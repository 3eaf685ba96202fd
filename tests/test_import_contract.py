"""Tests for the canonical export contract and import progress events."""

from __future__ import annotations

import os
import tempfile
import unittest
from dataclasses import FrozenInstanceError

from restdata import storage
from restdata.import_contract import (
    EXPORT_KEYS,
    CanonicalExport,
    DataImportError,
    ImportFailure,
    ImportParseResult,
    UnrecognizedFormat,
    checksum_payload,
    midnight_ms,
    resolve_kind,
)


class TestImportContract(unittest.TestCase):
    def test_models_are_immutable(self) -> None:
        failure = ImportFailure(kind="requests", id="r1", message="broken")
        with self.assertRaises(FrozenInstanceError):
            failure.message = "fixed"
        self.assertEqual(failure.to_dict(), {"kind": "requests", "id": "r1", "message": "broken"})

        result = ImportParseResult(
            import_id="import-demo",
            source_type="document-store",
            source_metadata={"kind": "ARC#AllDataExport"},
            data=CanonicalExport(requests=[{"_id": "r1"}], projects=[{"_id": "p1"}]),
            warnings=("w",),
        )
        self.assertEqual(result.total_items, 2)
        self.assertEqual(result.counts["projects"], 1)

    def test_checksum_is_deterministic(self) -> None:
        payload = {"a": 1, "b": 2}
        reordered = {"b": 2, "a": 1}
        self.assertEqual(checksum_payload(payload), checksum_payload(reordered))

    def test_from_mapping_accepts_aliases(self) -> None:
        export = CanonicalExport.from_mapping(
            {
                "url-history": [{"url": "https://a"}],
                "authData": [{"username": "u"}],
                "host_rules": [{"from": "a"}],
                "saved": {"r1": {"_id": "r1"}},
                "kind": "ARC#AllDataExport",
                "cookies": "not a list",
            }
        )
        counts = export.counts()
        self.assertEqual(counts["urlHistory"], 1)
        self.assertEqual(counts["authData"], 1)
        self.assertEqual(counts["hostRules"], 1)
        self.assertEqual(counts["requests"], 1)
        self.assertEqual(counts["cookies"], 0)

    def test_to_dict_uses_json_names_in_write_order(self) -> None:
        self.assertEqual(list(CanonicalExport().to_dict()), [json_name for json_name, _ in EXPORT_KEYS])

    def test_resolve_kind(self) -> None:
        self.assertEqual(resolve_kind("saved-requests"), "requests")
        self.assertEqual(resolve_kind("variables-environments"), "environments")
        self.assertEqual(resolve_kind("websocket-url-history"), "websocketUrlHistory")
        self.assertEqual(resolve_kind("client_certificates"), "clientCertificates")
        self.assertIsNone(resolve_kind("settings"))

    def test_error_taxonomy(self) -> None:
        self.assertTrue(issubclass(UnrecognizedFormat, DataImportError))
        self.assertTrue(issubclass(UnrecognizedFormat, ValueError))

    def test_midnight(self) -> None:
        day = 24 * 60 * 60 * 1000
        self.assertEqual(midnight_ms(3 * day + 1234), 3 * day)


class TestImportProgressEvents(unittest.TestCase):
    def setUp(self) -> None:
        handle = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        handle.close()
        self._db_file = handle.name
        os.environ["RESTDATA_DB_PATH"] = self._db_file
        storage.ensure_schema()

    def tearDown(self) -> None:
        os.environ.pop("RESTDATA_DB_PATH", None)
        os.remove(self._db_file)

    def test_progress_events_are_recorded(self) -> None:
        storage.append_import_progress_event("import-1", "parsed", {"warning_count": 0})
        storage.append_import_progress_event("import-1", "completed", {"failure_count": 2})

        events = storage.list_events(limit=20, event_type="import.progress")
        self.assertEqual([event["payload"]["phase"] for event in events], ["completed", "parsed"])
        self.assertEqual(events[0]["payload"]["failure_count"], 2)
        self.assertEqual(events[0]["message"], "import-1: completed")


if __name__ == "__main__":
    unittest.main()
