"""Structural detection of export formats.

Every supported export is recognised by a signature over its top-level
keys. Signatures are evaluated in a fixed order so that the more specific
ones win over the general ones; the first match classifies the payload.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Tuple

from .import_contract import UnrecognizedFormat

logger = logging.getLogger(__name__)


class FormatVariant(str, Enum):
    LEGACY_DOCUMENT = "legacy-document"
    LEGACY_MULTI = "legacy-multi"
    DOCUMENT_STORE = "document-store"
    SINGLE_REQUEST = "single-request"
    COLLECTION_V1 = "collection-v1"
    COLLECTION_V2 = "collection-v2"
    COLLECTION_BACKUP = "collection-backup"
    ENVIRONMENT = "environment"


DOCUMENT_STORE_KINDS = frozenset(
    {
        "ARC#AllDataExport",
        "ARC#Import",
        "ARC#SavedDataExport",
        "ARC#SavedExport",
        "ARC#SavedHistoryDataExport",
        "ARC#HistoryDataExport",
        "ARC#HistoryExport",
        "ARC#ProjectExport",
        "ARC#RequestsExport",
        "ARC#SessionCookies",
    }
)
SINGLE_REQUEST_KINDS = frozenset({"ARC#RequestData", "ARC#HttpRequest"})


def coerce_payload(source_payload: Any) -> Any:
    """Parse raw ``bytes``/``str`` exports; mappings pass through."""

    if isinstance(source_payload, bytes):
        source_payload = source_payload.decode("utf-8", errors="replace")
    if isinstance(source_payload, str):
        raw = source_payload.strip()
        if raw.startswith("\ufeff"):
            raw = raw[1:]
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise UnrecognizedFormat(f"Import data is not valid JSON: {exc}") from exc
    return source_payload


def _is_document_store(data: Mapping[str, Any]) -> bool:
    return data.get("kind") in DOCUMENT_STORE_KINDS


def _is_collection_v2(data: Mapping[str, Any]) -> bool:
    info = data.get("info")
    if not isinstance(info, Mapping):
        return False
    schema = info.get("schema")
    if isinstance(schema, str) and "/collection/v2" in schema:
        return True
    return isinstance(data.get("item"), list) and "_postman_id" in info


def _is_collection_backup(data: Mapping[str, Any]) -> bool:
    return "version" in data and isinstance(data.get("collections"), list)


def _is_environment(data: Mapping[str, Any]) -> bool:
    if not isinstance(data.get("values"), list) or "name" not in data:
        return False
    return "requests" not in data and "item" not in data


def _is_collection_v1(data: Mapping[str, Any]) -> bool:
    return "id" in data and "name" in data and isinstance(data.get("requests"), list)


def _embeds_requests(project: Any) -> bool:
    if not isinstance(project, Mapping):
        return False
    requests = project.get("requests")
    return isinstance(requests, list) and any(isinstance(item, Mapping) for item in requests)


def _is_legacy_multi(data: Mapping[str, Any]) -> bool:
    if "kind" in data:
        return False
    if isinstance(data.get("requests"), Mapping) or isinstance(data.get("history"), Mapping):
        return True
    projects = data.get("projects")
    return isinstance(projects, list) and any(_embeds_requests(project) for project in projects)


def _is_legacy_document(data: Mapping[str, Any]) -> bool:
    if "kind" in data:
        return False
    return isinstance(data.get("requests"), list) or isinstance(data.get("projects"), list)


def _is_single_request(data: Mapping[str, Any]) -> bool:
    if data.get("kind") in SINGLE_REQUEST_KINDS:
        return True
    if "requests" in data or "projects" in data:
        return False
    return isinstance(data.get("url"), str) and "method" in data


SIGNATURES: Tuple[Tuple[FormatVariant, Callable[[Mapping[str, Any]], bool]], ...] = (
    (FormatVariant.DOCUMENT_STORE, _is_document_store),
    (FormatVariant.COLLECTION_V2, _is_collection_v2),
    (FormatVariant.COLLECTION_BACKUP, _is_collection_backup),
    (FormatVariant.ENVIRONMENT, _is_environment),
    (FormatVariant.COLLECTION_V1, _is_collection_v1),
    (FormatVariant.LEGACY_MULTI, _is_legacy_multi),
    (FormatVariant.LEGACY_DOCUMENT, _is_legacy_document),
    (FormatVariant.SINGLE_REQUEST, _is_single_request),
)


def detect_format(data: Any) -> FormatVariant:
    """Classify ``data`` into exactly one supported export format."""

    data = coerce_payload(data)
    if not isinstance(data, Mapping):
        raise UnrecognizedFormat(f"Unsupported import data of type {type(data).__name__}")
    for variant, matches in SIGNATURES:
        if matches(data):
            logger.debug("Detected %s export", variant.value)
            return variant
    raise UnrecognizedFormat("Import data does not match any supported export format")


def describe_signatures() -> List[Dict[str, Any]]:
    return [{"priority": index, "format": variant.value} for index, (variant, _) in enumerate(SIGNATURES)]
