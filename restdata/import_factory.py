"""Merge engine writing a canonical export into the document store."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from . import storage
from .identity import transform_keys
from .import_contract import (
    CLIENT_CERTIFICATE_DATA_KIND,
    STORE_KINDS,
    CanonicalExport,
    ImportFailure,
    MalformedRecord,
    Record,
    midnight_ms,
    now_ms,
)

logger = logging.getLogger(__name__)

_CONFLICT_MESSAGE = "Document update conflict"

# URL-history kinds fall back to the URL as their identifier.
_NATURAL_KEYS = {"urlHistory": "url", "websocketUrlHistory": "url"}


def _require_text(kind: str, record: Mapping[str, Any], field_name: str, allow_empty: bool = False) -> None:
    value = record.get(field_name)
    if not isinstance(value, str):
        raise MalformedRecord(kind, record.get("_id"), f"{field_name} must be a string")
    if not allow_empty and not value.strip():
        raise MalformedRecord(kind, record.get("_id"), f"{field_name} must be a non-empty string")


def _millis(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class ImportFactory:
    """Writes each kind of a canonical export through an injected store.

    ``store`` is any object exposing ``get_documents(kind, ids)`` and
    ``bulk_put(kind, docs)`` with the semantics of :mod:`restdata.storage`.
    """

    # Processing order of the export kinds.
    KIND_HANDLERS: Tuple[Tuple[str, str], ...] = (
        ("requests", "import_requests"),
        ("history", "import_history"),
        ("projects", "import_projects"),
        ("websocketUrlHistory", "import_websocket_urls"),
        ("urlHistory", "import_urls"),
        ("variables", "import_variables"),
        ("environments", "import_environments"),
        ("cookies", "import_cookies"),
        ("authData", "import_auth_data"),
        ("hostRules", "import_host_rules"),
        ("clientCertificates", "import_client_certificates"),
    )

    def __init__(self, store: Any = None) -> None:
        self.store = store if store is not None else storage
        self.saved_indexes: List[Dict[str, str]] = []
        self.history_indexes: List[Dict[str, str]] = []

    def import_data(self, export: CanonicalExport | Mapping[str, Any]) -> Optional[List[ImportFailure]]:
        """Import every kind of ``export``; returns the failures or ``None``.

        Per-record problems never raise. ``StoreUnavailable`` propagates and
        leaves the kinds written so far in place.
        """

        if not isinstance(export, CanonicalExport):
            export = CanonicalExport.from_mapping(export)
        self.saved_indexes = []
        self.history_indexes = []
        failures: List[ImportFailure] = []
        for json_name, handler_name in self.KIND_HANDLERS:
            records = export.kind(json_name)
            if not records:
                continue
            handler: Callable[[Sequence[Any]], List[ImportFailure]] = getattr(self, handler_name)
            failures.extend(handler(records))
        if failures:
            logger.warning("Import finished with %d failed records", len(failures))
            return failures
        logger.info("Import finished: %s", export.counts())
        return None

    # -- per kind ---------------------------------------------------------

    def import_requests(self, records: Sequence[Any]) -> List[ImportFailure]:
        written, failures = self._import_kind("requests", records, self._validate_request)
        self.saved_indexes.extend(self._url_index(doc, "saved") for doc in written)
        return failures

    def import_history(self, records: Sequence[Any]) -> List[ImportFailure]:
        written, failures = self._import_kind("history", records, self._validate_request, self._stamp_midnight)
        self.history_indexes.extend(self._url_index(doc, "history") for doc in written)
        return failures

    def import_projects(self, records: Sequence[Any]) -> List[ImportFailure]:
        return self._import_kind("projects", records, self._validate_named)[1]

    def import_websocket_urls(self, records: Sequence[Any]) -> List[ImportFailure]:
        return self._import_kind("websocketUrlHistory", records, self._validate_url, self._stamp_time)[1]

    def import_urls(self, records: Sequence[Any]) -> List[ImportFailure]:
        return self._import_kind("urlHistory", records, self._validate_url, self._stamp_time)[1]

    def import_variables(self, records: Sequence[Any]) -> List[ImportFailure]:
        return self._import_kind("variables", records, self._validate_variable)[1]

    def import_environments(self, records: Sequence[Any]) -> List[ImportFailure]:
        return self._import_kind("environments", records, self._validate_named)[1]

    def import_cookies(self, records: Sequence[Any]) -> List[ImportFailure]:
        return self._import_kind("cookies", records, self._validate_named)[1]

    def import_auth_data(self, records: Sequence[Any]) -> List[ImportFailure]:
        return self._import_kind("authData", records, None)[1]

    def import_host_rules(self, records: Sequence[Any]) -> List[ImportFailure]:
        return self._import_kind("hostRules", records, None)[1]

    def import_client_certificates(self, records: Sequence[Any]) -> List[ImportFailure]:
        """Store each certificate as a payload record plus an index record.

        The index record is only written once its payload record is stored.
        """

        kind = "clientCertificates"
        failures: List[ImportFailure] = []
        payloads: List[Record] = []
        indexes: Dict[str, Record] = {}
        for record in self._valid_records(kind, records, self._validate_certificate, failures):
            cert_id = record["_id"]
            payload: Record = {"_id": cert_id, "cert": record["cert"]}
            if record.get("privateKey") is not None:
                payload["privateKey"] = record["privateKey"]
            payloads.append(payload)
            index = {k: v for k, v in record.items() if k not in ("cert", "privateKey")}
            index["dataKey"] = cert_id
            indexes[cert_id] = index

        stored, data_failures = self._write(kind, CLIENT_CERTIFICATE_DATA_KIND, payloads, timestamps=False)
        failures.extend(data_failures)
        linked = [indexes[doc["_id"]] for doc in stored if doc["_id"] in indexes]
        failures.extend(self._write(kind, STORE_KINDS[kind], linked)[1])
        return failures

    # -- validation -------------------------------------------------------

    def _validate_request(self, kind: str, record: Mapping[str, Any]) -> None:
        _require_text(kind, record, "url", allow_empty=True)
        method = record.get("method")
        if method is not None and not isinstance(method, str):
            raise MalformedRecord(kind, record.get("_id"), "method must be a string")

    def _validate_named(self, kind: str, record: Mapping[str, Any]) -> None:
        _require_text(kind, record, "name")

    def _validate_url(self, kind: str, record: Mapping[str, Any]) -> None:
        _require_text(kind, record, "url")

    def _validate_variable(self, kind: str, record: Mapping[str, Any]) -> None:
        _require_text(kind, record, "variable")
        environment = record.get("environment")
        if environment is not None and not isinstance(environment, str):
            raise MalformedRecord(kind, record.get("_id"), "environment must be a string")

    def _validate_certificate(self, kind: str, record: Mapping[str, Any]) -> None:
        if record.get("cert") is None:
            raise MalformedRecord(kind, record.get("_id"), "client certificate has no cert data")

    # -- record preparation -----------------------------------------------

    def _stamp_midnight(self, doc: Record) -> None:
        if _millis(doc.get("midnight")) is None:
            doc["midnight"] = midnight_ms(doc["created"])

    def _stamp_time(self, doc: Record) -> None:
        time_value = _millis(doc.get("time"))
        if time_value is None:
            time_value = doc["created"]
            doc["time"] = time_value
        if _millis(doc.get("midnight")) is None:
            doc["midnight"] = midnight_ms(time_value)
        if not isinstance(doc.get("cnt"), int):
            doc["cnt"] = 1

    def _url_index(self, doc: Mapping[str, Any], request_type: str) -> Dict[str, str]:
        return {"id": doc["_id"], "url": doc.get("url", ""), "type": request_type}

    # -- core -------------------------------------------------------------

    def _valid_records(
        self,
        kind: str,
        records: Sequence[Any],
        validate: Optional[Callable[[str, Mapping[str, Any]], None]],
        failures: List[ImportFailure],
    ) -> List[Record]:
        valid: List[Record] = []
        for record in transform_keys(records, _NATURAL_KEYS.get(kind)):
            if not isinstance(record, dict):
                failures.append(ImportFailure(kind, None, f"expected an object, got {type(record).__name__}"))
                continue
            try:
                if validate is not None:
                    validate(kind, record)
            except MalformedRecord as exc:
                failures.append(ImportFailure(kind, exc.record_id, exc.message))
                continue
            valid.append(record)
        return valid

    def _import_kind(
        self,
        kind: str,
        records: Sequence[Any],
        validate: Optional[Callable[[str, Mapping[str, Any]], None]],
        prepare: Optional[Callable[[Record], None]] = None,
    ) -> Tuple[List[Record], List[ImportFailure]]:
        failures: List[ImportFailure] = []
        valid = self._valid_records(kind, records, validate, failures)
        written, write_failures = self._write(kind, STORE_KINDS[kind], valid, prepare=prepare)
        failures.extend(write_failures)
        logger.debug("Imported %d of %d %s records", len(written), len(records), kind)
        return written, failures

    def _write(
        self,
        kind: str,
        store_kind: str,
        records: List[Record],
        prepare: Optional[Callable[[Record], None]] = None,
        timestamps: bool = True,
    ) -> Tuple[List[Record], List[ImportFailure]]:
        """Merge ``records`` with the stored documents and write them in bulk.

        Conflicting writes are re-read and retried once.
        """

        if not records:
            return [], []
        # Repeated ids in one batch collapse to their last occurrence.
        latest: Dict[str, Record] = {}
        for record in records:
            latest[record["_id"]] = record
        if len(latest) < len(records):
            logger.debug("Collapsed %d duplicate %s records", len(records) - len(latest), kind)
        written: List[Record] = []
        failures: List[ImportFailure] = []
        pending = list(latest.values())
        for attempt in range(2):
            existing = self.store.get_documents(store_kind, [record["_id"] for record in pending])
            docs = [self._merge(record, existing.get(record["_id"]), timestamps, prepare) for record in pending]
            results = self.store.bulk_put(store_kind, docs)
            conflicted: List[Record] = []
            for record, doc, result in zip(pending, docs, results):
                if result.get("ok"):
                    doc["_rev"] = result["rev"]
                    written.append(doc)
                elif result.get("error") == "conflict" and attempt == 0:
                    conflicted.append(record)
                else:
                    failures.append(
                        ImportFailure(kind, result.get("id") or record["_id"], result.get("message") or _CONFLICT_MESSAGE)
                    )
            if not conflicted:
                break
            logger.info("Retrying %d conflicting %s records", len(conflicted), kind)
            pending = conflicted
        return written, failures

    def _merge(
        self,
        record: Mapping[str, Any],
        existing: Optional[Mapping[str, Any]],
        timestamps: bool,
        prepare: Optional[Callable[[Record], None]],
    ) -> Record:
        """Build the document to write; incoming fields win over stored ones."""

        doc: Record = {k: v for k, v in record.items() if not k.startswith("__") and k != "_rev"}
        if existing is not None:
            doc["_rev"] = existing["_rev"]
        if timestamps:
            now = now_ms()
            created = _millis(record.get("created"))
            if created is None and existing is not None:
                created = _millis(existing.get("created"))
            if created is None:
                created = now
            if existing is None:
                updated = _millis(record.get("updated")) or created
            else:
                updated = now
            doc["created"] = created
            doc["updated"] = max(updated, created)
        if prepare is not None:
            prepare(doc)
        return doc


def import_data(export: CanonicalExport | Mapping[str, Any], store: Any = None) -> Optional[List[ImportFailure]]:
    return ImportFactory(store).import_data(export)
