"""Identifier assignment and project/request relinking."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .import_contract import CanonicalExport, Record

logger = logging.getLogger(__name__)

# Transient marker set by normalizers on a request that was lifted out of a
# project payload. Holds the owning project's ``_id``.
NESTED_IN = "__nestedIn"

_DERIVED_NAMESPACE = uuid.UUID("6f1d7b0e-3c55-4c4f-9a53-5e0d2f7e2d41")

# Kinds whose records carry a natural key usable as the identifier.
_NATURAL_KEYS = {
    "urlHistory": "url",
    "websocketUrlHistory": "url",
}


def generate_id() -> str:
    return str(uuid.uuid4())


def derived_id(scope: str, *parts: Any) -> str:
    """Deterministic identifier for a record whose export carries no key."""

    return str(uuid.uuid5(_DERIVED_NAMESPACE, ":".join([scope, *(str(part) for part in parts)])))


def environment_id(name: str) -> str:
    """Stable identifier for an environment that is only known by name."""

    return derived_id("environment", name)


def transform_keys(records: Iterable[Any], natural_key: Optional[str] = None) -> List[Any]:
    """Map export ``key`` to ``_id``, drop ``kind`` and fill missing ids.

    Non-mapping entries are passed through untouched so that the caller can
    report them as malformed.
    """

    out: List[Any] = []
    for record in records:
        if not isinstance(record, dict):
            out.append(record)
            continue
        item = dict(record)
        item.pop("kind", None)
        key = item.pop("key", None)
        current = item.get("_id")
        if isinstance(current, int) and not isinstance(current, bool):
            item["_id"] = str(current)
        elif not (isinstance(current, str) and current):
            if isinstance(key, (str, int)) and str(key):
                item["_id"] = str(key)
            elif natural_key and isinstance(item.get(natural_key), str) and item[natural_key]:
                item["_id"] = item[natural_key]
            else:
                item["_id"] = generate_id()
        out.append(item)
    return out


def add_request_to_project(project: Record, request_id: str) -> bool:
    """Append ``request_id`` to the project's request list once."""

    requests = project.get("requests")
    if not isinstance(requests, list):
        requests = []
        project["requests"] = requests
    if request_id in requests:
        return False
    requests.append(request_id)
    return True


class IdentityResolver:
    """Fills identifier gaps left by a normalizer and re-links nested requests."""

    def resolve(self, export: CanonicalExport) -> CanonicalExport:
        for json_name, records in export.items():
            records[:] = transform_keys(records, _NATURAL_KEYS.get(json_name))
        self._relink(export)
        return export

    def _relink(self, export: CanonicalExport) -> None:
        projects: Dict[str, Record] = {
            project["_id"]: project for project in export.projects if isinstance(project, dict)
        }
        relinked = 0
        for request in export.requests:
            if not isinstance(request, dict):
                continue
            project_id = request.pop(NESTED_IN, None)
            if not project_id:
                continue
            project = projects.get(project_id)
            if project is None:
                logger.debug("Nested request %s points at unknown project %s", request["_id"], project_id)
                continue
            if add_request_to_project(project, request["_id"]):
                relinked += 1
            owners = request.get("projects")
            if not isinstance(owners, list):
                owners = []
                request["projects"] = owners
            if project_id not in owners:
                owners.append(project_id)
        if relinked:
            logger.debug("Relinked %d nested requests into projects", relinked)
