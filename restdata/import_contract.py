"""Shared contracts for REST-client data import.

This module defines the canonical export object every normalizer converges
to, the failure entry returned by the merge engine, the import error
taxonomy and the provider-agnostic adapter interface that all format
normalizers follow.
"""

from __future__ import annotations

import hashlib
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

Record = Dict[str, Any]

# JSON name -> attribute name, in the order kinds are written to the store.
EXPORT_KEYS: Tuple[Tuple[str, str], ...] = (
    ("requests", "requests"),
    ("history", "history"),
    ("projects", "projects"),
    ("websocketUrlHistory", "websocket_url_history"),
    ("urlHistory", "url_history"),
    ("variables", "variables"),
    ("environments", "environments"),
    ("cookies", "cookies"),
    ("authData", "auth_data"),
    ("hostRules", "host_rules"),
    ("clientCertificates", "client_certificates"),
)

_KEY_ALIASES: Dict[str, str] = {
    "url-history": "url_history",
    "websocket-url-history": "websocket_url_history",
    "auth-data": "auth_data",
    "host-rules": "host_rules",
    "client-certificates": "client_certificates",
    "saved": "requests",
    "saved-requests": "requests",
    "history-requests": "history",
    "legacy-projects": "projects",
}
for _json_name, _attr in EXPORT_KEYS:
    _KEY_ALIASES[_json_name] = _attr
    _KEY_ALIASES[_attr] = _attr

# Names of the store collections backing each canonical kind.
STORE_KINDS: Dict[str, str] = {
    "requests": "saved-requests",
    "history": "history-requests",
    "projects": "legacy-projects",
    "websocketUrlHistory": "websocket-url-history",
    "urlHistory": "url-history",
    "variables": "variables",
    "environments": "variables-environments",
    "cookies": "cookies",
    "authData": "auth-data",
    "hostRules": "host-rules",
    "clientCertificates": "client-certificates",
}
CLIENT_CERTIFICATE_DATA_KIND = "client-certificates-data"


_JSON_NAMES: Dict[str, str] = {attr: json_name for json_name, attr in EXPORT_KEYS}


def resolve_kind(name: str) -> Optional[str]:
    """Map any accepted spelling of an entity kind to its JSON name."""

    attr = _KEY_ALIASES.get(name)
    if attr is None:
        for json_name, store_kind in STORE_KINDS.items():
            if store_kind == name:
                return json_name
        return None
    return _JSON_NAMES[attr]


def now_ms() -> int:
    return int(time.time() * 1000)


def midnight_ms(timestamp: int) -> int:
    """Start of the UTC day containing ``timestamp`` (milliseconds)."""

    day = 24 * 60 * 60 * 1000
    return int(timestamp) - (int(timestamp) % day)


def checksum_payload(payload: Mapping[str, Any] | Iterable[Mapping[str, Any]] | str | bytes) -> str:
    """Create a deterministic checksum for import dedupe and revision hashing."""

    if isinstance(payload, (str, bytes)):
        raw = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        normalized = raw
    elif isinstance(payload, Mapping):
        normalized = json.dumps(dict(payload), sort_keys=True, separators=(",", ":"))
    elif isinstance(payload, Iterable):
        normalized = json.dumps(list(payload), sort_keys=True, separators=(",", ":"))
    else:
        normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"))

    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class DataImportError(Exception):
    """Base class for import failures."""


class UnrecognizedFormat(DataImportError, ValueError):
    """The payload does not match any known export signature."""


class MalformedRecord(DataImportError):
    """A single record cannot be stored; isolated to that record."""

    def __init__(self, kind: str, record_id: Optional[str], message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.record_id = record_id
        self.message = message


class RevisionConflict(DataImportError):
    """The supplied revision does not match the stored document."""

    def __init__(self, kind: str, record_id: str, message: str = "Document update conflict") -> None:
        super().__init__(f"{kind}/{record_id}: {message}")
        self.kind = kind
        self.record_id = record_id


class StoreUnavailable(DataImportError):
    """The backing store cannot be reached."""


@dataclass(frozen=True)
class ImportFailure:
    """One record that was not imported."""

    kind: str
    id: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.id, "message": self.message}


@dataclass
class CanonicalExport:
    """Format-independent representation produced by every normalizer."""

    requests: List[Record] = field(default_factory=list)
    history: List[Record] = field(default_factory=list)
    projects: List[Record] = field(default_factory=list)
    websocket_url_history: List[Record] = field(default_factory=list)
    url_history: List[Record] = field(default_factory=list)
    variables: List[Record] = field(default_factory=list)
    environments: List[Record] = field(default_factory=list)
    cookies: List[Record] = field(default_factory=list)
    auth_data: List[Record] = field(default_factory=list)
    host_rules: List[Record] = field(default_factory=list)
    client_certificates: List[Record] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CanonicalExport":
        values: Dict[str, List[Record]] = {}
        for key, records in data.items():
            attr = _KEY_ALIASES.get(key)
            if attr is None or records is None:
                continue
            if isinstance(records, Mapping):
                records = list(records.values())
            elif not isinstance(records, (list, tuple)):
                continue
            values.setdefault(attr, []).extend(records)
        return cls(**values)

    def kind(self, name: str) -> List[Record]:
        attr = _KEY_ALIASES.get(name)
        if attr is None:
            raise KeyError(name)
        return getattr(self, attr)

    def items(self) -> Iterable[Tuple[str, List[Record]]]:
        for json_name, attr in EXPORT_KEYS:
            yield json_name, getattr(self, attr)

    def to_dict(self) -> Dict[str, List[Record]]:
        return {json_name: list(records) for json_name, records in self.items()}

    def counts(self) -> Dict[str, int]:
        return {json_name: len(records) for json_name, records in self.items()}

    @property
    def total_items(self) -> int:
        return sum(len(getattr(self, f.name)) for f in fields(self))


@dataclass(frozen=True)
class ImportParseResult:
    """Adapter parse output for one import payload."""

    import_id: str
    source_type: str
    source_metadata: Dict[str, Any]
    data: CanonicalExport
    warnings: Tuple[str, ...]

    @property
    def counts(self) -> Dict[str, int]:
        return self.data.counts()

    @property
    def total_items(self) -> int:
        return self.data.total_items


class ImportSourceAdapter(ABC):
    """Contract shared by each format-specific normalizer."""

    source_type: str = "generic"

    @abstractmethod
    def parse(self, source_payload: Mapping[str, Any]) -> ImportParseResult:
        """Transform a detected export blob into the canonical export object."""

    @abstractmethod
    def source_metadata(self, source_payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Return stable metadata for audit and provenance tracking."""
