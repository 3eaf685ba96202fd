"""Normalizers turning each supported export format into the canonical export."""

from __future__ import annotations

import json
import logging
import re
from abc import abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

from .detection import FormatVariant, coerce_payload, detect_format
from .identity import NESTED_IN, IdentityResolver, derived_id, environment_id, generate_id
from .import_contract import (
    CanonicalExport,
    ImportParseResult,
    ImportSourceAdapter,
    Record,
    UnrecognizedFormat,
    checksum_payload,
    midnight_ms,
    resolve_kind,
)

logger = logging.getLogger(__name__)

_VARIABLE_SYNTAX = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")

_REQUEST_FIELDS: Tuple[str, ...] = (
    "name",
    "url",
    "method",
    "headers",
    "payload",
    "description",
    "projects",
    "created",
    "updated",
    "midnight",
    "requestActions",
    "responseActions",
    "auth",
    "authType",
    "config",
    "ui",
    "driveId",
)
_PROJECT_FIELDS: Tuple[str, ...] = ("name", "description", "order", "requests", "created", "updated")
_COOKIE_FIELDS: Tuple[str, ...] = (
    "name",
    "value",
    "domain",
    "path",
    "expires",
    "secure",
    "httpOnly",
    "hostOnly",
    "session",
    "persistent",
    "created",
    "lastAccess",
)
_AUTH_FIELDS: Tuple[str, ...] = ("username", "password", "domain", "type", "token")
_HOST_RULE_FIELDS: Tuple[str, ...] = ("from", "to", "enabled", "comment", "created", "updated")


def ensure_variables_syntax(value: str) -> str:
    """Rewrite ``{{name}}`` placeholders to the ``${name}`` syntax."""

    if not value or "{{" not in value:
        return value
    return _VARIABLE_SYNTAX.sub(lambda match: "${" + match.group(1) + "}", value)


class _ExportNormalizer(ImportSourceAdapter):
    """Shared record builders. Builders never raise for incomplete records."""

    variant: FormatVariant

    def parse(self, source_payload: Mapping[str, Any] | str | bytes) -> ImportParseResult:
        data = coerce_payload(source_payload)
        if not isinstance(data, Mapping):
            raise UnrecognizedFormat(f"{self.source_type} export must be an object")
        export = CanonicalExport()
        warnings: List[str] = []
        self._transform(data, export, warnings)
        logger.info("Normalized %s export: %s", self.source_type, export.counts())
        return ImportParseResult(
            import_id=checksum_payload(json.dumps(data, sort_keys=True, default=str)),
            source_type=self.source_type,
            source_metadata=self.source_metadata(data),
            data=export,
            warnings=tuple(warnings),
        )

    @abstractmethod
    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        """Fill ``export`` from ``data``; problems that do not stop parsing go to ``warnings``."""

    def source_metadata(self, source_payload: Mapping[str, Any] | str | bytes) -> Dict[str, Any]:
        data = coerce_payload(source_payload)
        metadata: Dict[str, Any] = {
            "source_type": self.source_type,
            "adapter": self.__class__.__name__,
        }
        if isinstance(data, Mapping):
            for key in ("version", "createdAt", "kind", "appVersion"):
                if data.get(key) is not None:
                    metadata[key] = data[key]
        return metadata

    # -- value coercion ---------------------------------------------------

    def _coerce_text(self, value: Any, default: str = "") -> str:
        if value is None:
            return default
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        try:
            return json.dumps(value)
        except (TypeError, ValueError):
            return default

    def _coerce_millis(self, raw: Any) -> Optional[int]:
        """Milliseconds from a numeric, digit-string or ISO-8601 timestamp.

        Numbers are milliseconds as every supported export writes them;
        only values above 10**15 are taken as microseconds. Digit strings of
        at most ten digits are Unix seconds.
        """

        if raw is None or isinstance(raw, bool):
            return None
        if isinstance(raw, (int, float)):
            if raw > 10**15:
                return int(raw / 1000)
            return int(raw)
        if isinstance(raw, str):
            candidate = raw.strip()
            if not candidate:
                return None
            if candidate.isdigit():
                if len(candidate) <= 10:
                    return int(candidate) * 1000
                return self._coerce_millis(int(candidate))
            try:
                parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)
        return None

    def _coerce_method(self, value: Any) -> str:
        method = self._coerce_text(value).strip().upper()
        return method or "GET"

    def _coerce_bool(self, value: Any, default: bool = True) -> bool:
        if value is None:
            return default
        if isinstance(value, str):
            return value.strip().lower() not in {"false", "0", "no", ""}
        return bool(value)

    def _coerce_id(self, record: Mapping[str, Any], *keys: str) -> Optional[str]:
        for key in keys:
            value = record.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
                return str(value)
        return None

    def _headers_text(self, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        lines: List[str] = []
        if isinstance(value, Mapping):
            for name, header_value in value.items():
                lines.append(f"{name}: {self._coerce_text(header_value)}")
        elif isinstance(value, list):
            for header in value:
                if isinstance(header, str):
                    lines.append(header)
                    continue
                if not isinstance(header, Mapping):
                    continue
                if header.get("disabled") is True or header.get("enabled") is False:
                    continue
                name = self._coerce_text(header.get("key") or header.get("name")).strip()
                if not name:
                    continue
                lines.append(f"{name}: {self._coerce_text(header.get('value'))}")
        return "\n".join(lines)

    def _payload_text(self, value: Any) -> str:
        return self._coerce_text(value)

    def _pick(self, record: Mapping[str, Any], allowed: Iterable[str]) -> Record:
        return {key: record[key] for key in allowed if key in record and record[key] is not None}

    def _with_identity(self, item: Record, record: Mapping[str, Any]) -> Record:
        record_id = self._coerce_id(record, "_id", "key")
        if record_id:
            item["_id"] = record_id
        if isinstance(record.get("_rev"), str):
            item["_rev"] = record["_rev"]
        return item

    # -- canonical record builders ----------------------------------------

    def _saved_request(self, record: Mapping[str, Any]) -> Record:
        item = self._pick(record, _REQUEST_FIELDS)
        item["type"] = "saved"
        item["name"] = self._coerce_text(record.get("name")).strip() or "Unnamed request"
        item["url"] = self._coerce_text(record.get("url"))
        item["method"] = self._coerce_method(record.get("method"))
        item["headers"] = self._headers_text(record.get("headers"))
        item["payload"] = self._payload_text(record.get("payload"))
        projects = record.get("projects")
        item["projects"] = [str(pid) for pid in projects if pid] if isinstance(projects, list) else []
        self._apply_timestamps(item, record)
        return self._with_identity(item, record)

    def _history_request(self, record: Mapping[str, Any]) -> Record:
        item: Record = {
            "type": "history",
            "url": self._coerce_text(record.get("url")),
            "method": self._coerce_method(record.get("method")),
            "headers": self._headers_text(record.get("headers")),
            "payload": self._payload_text(record.get("payload")),
        }
        for key in ("auth", "authType", "config", "response", "timings"):
            if record.get(key) is not None:
                item[key] = record[key]
        self._apply_timestamps(item, record)
        if "created" in item:
            item["midnight"] = self._coerce_millis(record.get("midnight")) or midnight_ms(item["created"])
        return self._with_identity(item, record)

    def _project(self, record: Mapping[str, Any], order: int = 0) -> Record:
        item = self._pick(record, _PROJECT_FIELDS)
        item["name"] = self._coerce_text(record.get("name")).strip() or "Unnamed project"
        order_value = record.get("order")
        item["order"] = order_value if isinstance(order_value, int) and not isinstance(order_value, bool) else order
        requests = record.get("requests")
        item["requests"] = [str(rid) for rid in requests if isinstance(rid, (str, int))] if isinstance(requests, list) else []
        self._apply_timestamps(item, record)
        return self._with_identity(item, record)

    def _variable(self, record: Mapping[str, Any], environment: str) -> Record:
        item: Record = {
            "environment": self._coerce_text(environment).strip() or "default",
            "variable": self._coerce_text(record.get("variable") or record.get("key") or record.get("name")),
            "value": self._coerce_text(record.get("value")),
            "enabled": self._coerce_bool(record.get("enabled"), default=record.get("disabled") is not True),
        }
        return item

    def _environment(self, name: str, record: Optional[Mapping[str, Any]] = None) -> Record:
        item: Record = {"name": name}
        if record is not None:
            self._apply_timestamps(item, record)
        return item

    def _apply_timestamps(self, item: Record, record: Mapping[str, Any]) -> None:
        created = self._coerce_millis(record.get("created"))
        if created is None:
            created = self._coerce_millis(record.get("time") or record.get("timestamp") or record.get("createdAt"))
        updated = self._coerce_millis(record.get("updated") or record.get("updatedAt"))
        if created is not None:
            item["created"] = created
        else:
            item.pop("created", None)
        if updated is not None:
            item["updated"] = max(updated, created) if created is not None else updated
        else:
            item.pop("updated", None)
            if created is not None:
                item["updated"] = created

    def _nest(self, request: Record, project: Record) -> Record:
        """Mark ``request`` as lifted out of ``project``'s payload."""

        if "_id" not in project:
            project["_id"] = generate_id()
        request[NESTED_IN] = project["_id"]
        return request

    def _records(self, value: Any) -> List[Mapping[str, Any]]:
        """Records of a collection stored as a list or as a mapping keyed by index."""

        if isinstance(value, Mapping):
            def _index(key: Any) -> Tuple[int, str]:
                text = str(key)
                return (int(text), text) if text.isdigit() else (2**31, text)

            return [value[key] for key in sorted(value.keys(), key=_index) if isinstance(value[key], Mapping)]
        if isinstance(value, list):
            return [record for record in value if isinstance(record, Mapping)]
        return []


class LegacyDocumentNormalizer(_ExportNormalizer):
    """Single-document export of the in-browser legacy application.

    Projects and requests carry numeric ids; a request points at its project
    through a numeric ``project`` field.
    """

    variant = FormatVariant.LEGACY_DOCUMENT
    source_type = FormatVariant.LEGACY_DOCUMENT.value

    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        projects_by_legacy_id: Dict[str, Record] = {}
        for index, raw_project in enumerate(self._records(data.get("projects"))):
            project = self._project({k: v for k, v in raw_project.items() if k != "requests"}, order=index)
            project["_id"] = generate_id()
            legacy_id = self._coerce_id(raw_project, "id")
            if legacy_id is not None:
                projects_by_legacy_id[legacy_id] = project
            export.projects.append(project)

        for raw_request in self._records(data.get("requests")):
            if self._is_history(raw_request):
                history = self._history_request(raw_request)
                history["_id"] = generate_id()
                export.history.append(history)
                continue
            request = self._saved_request(raw_request)
            request["_id"] = generate_id()
            legacy_project = self._coerce_id(raw_request, "project")
            if legacy_project and legacy_project != "0":
                project = projects_by_legacy_id.get(legacy_project)
                if project is not None:
                    self._nest(request, project)
                else:
                    warnings.append(f"Request {request['name']} references unknown project {legacy_project}")
            export.requests.append(request)

        for raw_history in self._records(data.get("history")):
            history = self._history_request(raw_history)
            history["_id"] = generate_id()
            export.history.append(history)

    def _is_history(self, record: Mapping[str, Any]) -> bool:
        kind = self._coerce_text(record.get("type")).lower()
        return kind == "history" or record.get("history") is True


class LegacyMultiObjectNormalizer(_ExportNormalizer):
    """Multi-object export of the indexed-database era.

    Collections may be keyed by numeric index, the record type follows from
    the collection it was read from, and projects embed full request objects.
    """

    variant = FormatVariant.LEGACY_MULTI
    source_type = FormatVariant.LEGACY_MULTI.value

    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        projects = data.get("projects")
        if isinstance(projects, Mapping):
            projects = list(projects.values())
        for index, raw_project in enumerate(projects if isinstance(projects, list) else []):
            if not isinstance(raw_project, Mapping):
                warnings.append(f"Skipping project entry #{index}: not an object")
                continue
            embedded = raw_project.get("requests")
            references = [
                str(ref) for ref in (embedded if isinstance(embedded, list) else []) if isinstance(ref, (str, int))
            ]
            project = self._project({**raw_project, "requests": references}, order=index)
            project["_id"] = generate_id()
            export.projects.append(project)
            for raw_request in self._records(embedded):
                request = self._saved_request(raw_request)
                request["_id"] = generate_id()
                request["projects"] = []
                export.requests.append(self._nest(request, project))

        for raw_request in self._records(data.get("requests")):
            request = self._saved_request(raw_request)
            request["_id"] = generate_id()
            export.requests.append(request)

        for raw_history in self._records(data.get("history")):
            history = self._history_request(raw_history)
            history["_id"] = generate_id()
            export.history.append(history)


class DocumentStoreNormalizer(_ExportNormalizer):
    """Document-store export; already close to the canonical shape."""

    variant = FormatVariant.DOCUMENT_STORE
    source_type = FormatVariant.DOCUMENT_STORE.value

    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        for key, value in data.items():
            kind = resolve_kind(key)
            if kind is None:
                continue
            records = self._records(value)
            skipped = (len(value) if isinstance(value, (list, Mapping)) else 0) - len(records)
            if skipped:
                warnings.append(f"Skipped {skipped} non-object entries in {key}")
            builder = getattr(self, f"_read_{kind}")
            export.kind(kind).extend(builder(record) for record in records)
        self._link_legacy_projects(export)
        self._derive_environments(export)

    def _read_requests(self, record: Mapping[str, Any]) -> Record:
        request = self._saved_request(record)
        legacy_project = self._coerce_id(record, "legacyProject")
        if legacy_project:
            request["legacyProject"] = legacy_project
        return request

    def _read_history(self, record: Mapping[str, Any]) -> Record:
        return self._history_request(record)

    def _read_projects(self, record: Mapping[str, Any]) -> Record:
        return self._project(record)

    def _read_variables(self, record: Mapping[str, Any]) -> Record:
        return self._with_identity(self._variable(record, self._coerce_text(record.get("environment"))), record)

    def _read_environments(self, record: Mapping[str, Any]) -> Record:
        name = self._coerce_text(record.get("name")).strip() or "default"
        return self._with_identity(self._environment(name, record), record)

    def _read_cookies(self, record: Mapping[str, Any]) -> Record:
        item = self._pick(record, _COOKIE_FIELDS)
        item["name"] = self._coerce_text(record.get("name"))
        item["value"] = self._coerce_text(record.get("value"))
        item["domain"] = self._coerce_text(record.get("domain"))
        item["path"] = self._coerce_text(record.get("path")) or "/"
        for flag in ("secure", "httpOnly", "hostOnly", "session"):
            item[flag] = bool(record.get(flag, False))
        return self._with_identity(item, record)

    def _read_url_history(self, record: Mapping[str, Any]) -> Record:
        url = self._coerce_text(record.get("url") or record.get("_id") or record.get("key"))
        time_value = self._coerce_millis(record.get("time"))
        item: Record = {"url": url, "cnt": record.get("cnt") if isinstance(record.get("cnt"), int) else 1}
        if time_value is not None:
            item["time"] = time_value
            item["midnight"] = self._coerce_millis(record.get("midnight")) or midnight_ms(time_value)
        return self._with_identity(item, record)

    _read_urlHistory = _read_url_history
    _read_websocketUrlHistory = _read_url_history

    def _read_authData(self, record: Mapping[str, Any]) -> Record:
        return self._with_identity(self._pick(record, _AUTH_FIELDS), record)

    def _read_hostRules(self, record: Mapping[str, Any]) -> Record:
        item = self._pick(record, _HOST_RULE_FIELDS)
        item["from"] = self._coerce_text(record.get("from"))
        item["to"] = self._coerce_text(record.get("to"))
        item["enabled"] = self._coerce_bool(record.get("enabled"))
        item["comment"] = self._coerce_text(record.get("comment"))
        return self._with_identity(item, record)

    def _read_clientCertificates(self, record: Mapping[str, Any]) -> Record:
        item: Record = {
            "name": self._coerce_text(record.get("name")).strip() or "Client certificate",
            "type": self._coerce_text(record.get("type")).strip() or "p12",
        }
        created = self._coerce_millis(record.get("created"))
        if created is not None:
            item["created"] = created
        cert = record.get("cert")
        if cert is not None:
            item["cert"] = self._certificate_payload(cert)
        private_key = record.get("pKey", record.get("privateKey"))
        if private_key is not None:
            item["privateKey"] = self._certificate_payload(private_key)
        return self._with_identity(item, record)

    def _certificate_payload(self, value: Any) -> Any:
        if isinstance(value, str):
            return {"data": value}
        if isinstance(value, list):
            return [self._certificate_payload(part) for part in value]
        return value

    def _link_legacy_projects(self, export: CanonicalExport) -> None:
        projects = {project["_id"]: project for project in export.projects if "_id" in project}
        for request in export.requests:
            legacy_project = request.pop("legacyProject", None)
            if not legacy_project:
                continue
            project = projects.get(legacy_project)
            if project is None:
                if legacy_project not in request["projects"]:
                    request["projects"].append(legacy_project)
                continue
            self._nest(request, project)

    def _derive_environments(self, export: CanonicalExport) -> None:
        known = {environment.get("name") for environment in export.environments}
        for variable in export.variables:
            name = variable.get("environment")
            if not name or name == "default" or name in known:
                continue
            export.environments.append({"_id": environment_id(name), "name": name})
            known.add(name)


class SingleRequestNormalizer(_ExportNormalizer):
    """A lone request object exported by the legacy application."""

    variant = FormatVariant.SINGLE_REQUEST
    source_type = FormatVariant.SINGLE_REQUEST.value

    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        if self._coerce_text(data.get("type")).lower() == "history":
            export.history.append(self._history_request(data))
        else:
            export.requests.append(self._saved_request(data))


class _CollectionNormalizer(_ExportNormalizer):
    """Helpers shared by the third-party collection formats."""

    def _collection_project(self, collection_id: Optional[str], name: str, description: Any, order: int) -> Record:
        project: Record = {
            "name": name or "Imported collection",
            "order": order,
            "requests": [],
        }
        if description:
            project["description"] = self._coerce_text(
                description.get("content") if isinstance(description, Mapping) else description
            )
        project["_id"] = collection_id or derived_id("collection", project["name"])
        return project

    def _assign_stable_ids(self, project: Mapping[str, Any], requests: Sequence[Record]) -> None:
        """Give keyless requests ids derived from their collection and content.

        Identical keyless requests in one collection are told apart by their
        occurrence number, so re-importing the collection maps onto the same ids.
        """

        seen: Dict[Tuple[str, str, str], int] = {}
        for request in requests:
            if request.get("_id"):
                continue
            signature = (request["method"], request["url"], request["name"])
            occurrence = seen.get(signature, 0)
            seen[signature] = occurrence + 1
            request["_id"] = derived_id("request", project["_id"], *signature, occurrence)

    def _encode_params(self, params: Any) -> str:
        if isinstance(params, str):
            return params
        pairs: List[str] = []
        for param in params if isinstance(params, list) else []:
            if not isinstance(param, Mapping) or param.get("disabled") is True or param.get("enabled") is False:
                continue
            if param.get("type") == "file":
                continue
            name = self._coerce_text(param.get("key"))
            if not name:
                continue
            value = self._coerce_text(param.get("value"))
            pairs.append(f"{quote(name, safe='{}$')}={quote(value, safe='{}$')}")
        return "&".join(pairs)

    def _environment_variables(
        self,
        export: CanonicalExport,
        name: str,
        values: Any,
        environment_key: Optional[str],
    ) -> None:
        """Append one environment and its variables.

        The environment keeps the export id (or one derived from its name);
        variables carry no stable key in these formats and stay keyless.
        """

        environment: Record = {"_id": environment_key or environment_id(name), "name": name}
        if not any(existing.get("_id") == environment["_id"] for existing in export.environments):
            export.environments.append(environment)
        for raw_variable in values if isinstance(values, list) else []:
            if not isinstance(raw_variable, Mapping):
                continue
            variable = self._variable(raw_variable, name)
            if not variable["variable"]:
                continue
            export.variables.append(variable)


class CollectionV1Normalizer(_CollectionNormalizer):
    """Collection format v1: flat request list with folder ordering."""

    variant = FormatVariant.COLLECTION_V1
    source_type = FormatVariant.COLLECTION_V1.value

    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        self._read_collection(data, export, warnings, order=0)

    def _read_collection(
        self,
        data: Mapping[str, Any],
        export: CanonicalExport,
        warnings: List[str],
        order: int,
    ) -> None:
        project = self._collection_project(
            self._coerce_id(data, "id"),
            self._coerce_text(data.get("name")).strip(),
            data.get("description"),
            order,
        )
        self._apply_timestamps(project, data)
        export.projects.append(project)
        requests = [self._request(raw_request) for raw_request in self._ordered_requests(data, warnings)]
        self._assign_stable_ids(project, requests)
        export.requests.extend(self._nest(request, project) for request in requests)

    def _ordered_requests(self, data: Mapping[str, Any], warnings: List[str]) -> List[Mapping[str, Any]]:
        requests = self._records(data.get("requests"))
        by_id: Dict[str, Mapping[str, Any]] = {}
        for request in requests:
            request_id = self._coerce_id(request, "id")
            if request_id:
                by_id[request_id] = request

        folders = self._records(data.get("folders"))
        folders_by_id = {self._coerce_id(folder, "id"): folder for folder in folders}
        folder_sequence: List[Mapping[str, Any]] = []
        for folder_id in data.get("folders_order") or []:
            folder = folders_by_id.get(str(folder_id))
            if folder is not None and folder not in folder_sequence:
                folder_sequence.append(folder)
        for folder in folders:
            if folder not in folder_sequence:
                folder_sequence.append(folder)

        ordered_ids: List[str] = []
        for request_id in data.get("order") or []:
            ordered_ids.append(str(request_id))
        for folder in folder_sequence:
            for request_id in folder.get("order") or []:
                ordered_ids.append(str(request_id))

        out: List[Mapping[str, Any]] = []
        taken: set[int] = set()
        for request_id in ordered_ids:
            request = by_id.get(request_id)
            if request is None:
                warnings.append(f"Collection order references missing request {request_id}")
                continue
            if id(request) in taken:
                continue
            taken.add(id(request))
            out.append(request)
        for request in requests:
            if id(request) not in taken:
                taken.add(id(request))
                out.append(request)
        return out

    def _request(self, record: Mapping[str, Any]) -> Record:
        headers = record.get("headers")
        if not headers and isinstance(record.get("headerData"), list):
            headers = record["headerData"]
        request: Record = {
            "type": "saved",
            "name": self._coerce_text(record.get("name")).strip() or "Unnamed request",
            "url": ensure_variables_syntax(self._coerce_text(record.get("url"))),
            "method": self._coerce_method(record.get("method")),
            "headers": ensure_variables_syntax(self._headers_text(headers)),
            "payload": ensure_variables_syntax(self._body(record)),
            "projects": [],
        }
        if record.get("description"):
            request["description"] = self._coerce_text(record["description"])
        self._apply_timestamps(request, record)
        request_id = self._coerce_id(record, "id")
        if request_id:
            request["_id"] = request_id
        return request

    def _body(self, record: Mapping[str, Any]) -> str:
        mode = self._coerce_text(record.get("dataMode")).lower()
        if mode == "raw":
            return self._coerce_text(record.get("rawModeData"))
        if mode in {"params", "urlencoded"}:
            return self._encode_params(record.get("data"))
        if mode == "graphql":
            return self._coerce_text(record.get("graphqlModeData"))
        if record.get("rawModeData"):
            return self._coerce_text(record.get("rawModeData"))
        return ""


class CollectionV2Normalizer(_CollectionNormalizer):
    """Collection format v2.x: arbitrarily nested folders of items."""

    variant = FormatVariant.COLLECTION_V2
    source_type = FormatVariant.COLLECTION_V2.value

    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        info = data.get("info") if isinstance(data.get("info"), Mapping) else {}
        name = self._coerce_text(info.get("name")).strip()
        project = self._collection_project(
            self._coerce_id(info, "_postman_id", "id"),
            name,
            info.get("description"),
            0,
        )
        export.projects.append(project)
        requests = [self._request(raw_request, item) for raw_request, item in self._flatten(data.get("item"), depth=0)]
        self._assign_stable_ids(project, requests)
        export.requests.extend(self._nest(request, project) for request in requests)
        if isinstance(data.get("variable"), list) and data["variable"]:
            self._environment_variables(export, project["name"], data["variable"], None)

    def _flatten(self, items: Any, depth: int) -> Iterable[Tuple[Any, Mapping[str, Any]]]:
        """Yield ``(request, item)`` pairs from every folder level, in document order."""

        for item in items if isinstance(items, list) else []:
            if not isinstance(item, Mapping):
                continue
            if isinstance(item.get("item"), list):
                logger.debug("Flattening folder %r at depth %d", item.get("name"), depth + 1)
                yield from self._flatten(item["item"], depth + 1)
                continue
            if "request" in item:
                yield item["request"], item

    def _request(self, raw_request: Any, item: Mapping[str, Any]) -> Record:
        request_data: Mapping[str, Any] = raw_request if isinstance(raw_request, Mapping) else {"url": raw_request}
        request: Record = {
            "type": "saved",
            "name": self._coerce_text(item.get("name")).strip() or "Unnamed request",
            "url": ensure_variables_syntax(self._url(request_data.get("url"))),
            "method": self._coerce_method(request_data.get("method")),
            "headers": ensure_variables_syntax(self._headers_text(request_data.get("header"))),
            "payload": ensure_variables_syntax(self._body(request_data.get("body"))),
            "projects": [],
        }
        description = request_data.get("description") or item.get("description")
        if description:
            request["description"] = self._coerce_text(
                description.get("content") if isinstance(description, Mapping) else description
            )
        request_id = self._coerce_id(item, "id", "_postman_id")
        if request_id:
            request["_id"] = request_id
        return request

    def _url(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        if not isinstance(value, Mapping):
            return ""
        if isinstance(value.get("raw"), str):
            return value["raw"]
        host = value.get("host")
        path = value.get("path")
        url = ""
        if value.get("protocol"):
            url += f"{self._coerce_text(value['protocol'])}://"
        url += ".".join(self._coerce_text(part) for part in host) if isinstance(host, list) else self._coerce_text(host)
        if value.get("port"):
            url += f":{self._coerce_text(value['port'])}"
        if isinstance(path, list) and path:
            url += "/" + "/".join(self._coerce_text(part) for part in path)
        elif isinstance(path, str) and path:
            url += path if path.startswith("/") else f"/{path}"
        query = self._encode_params(value.get("query"))
        if query:
            url += f"?{query}"
        return url

    def _body(self, body: Any) -> str:
        if not isinstance(body, Mapping):
            return ""
        mode = self._coerce_text(body.get("mode")).lower()
        if mode == "raw":
            return self._coerce_text(body.get("raw"))
        if mode == "urlencoded":
            return self._encode_params(body.get("urlencoded"))
        if mode == "formdata":
            return self._encode_params(body.get("formdata"))
        if mode == "graphql" and isinstance(body.get("graphql"), Mapping):
            return self._coerce_text(body["graphql"].get("query"))
        return ""


class EnvironmentNormalizer(_CollectionNormalizer):
    """Standalone environment export; produces only environments and variables."""

    variant = FormatVariant.ENVIRONMENT
    source_type = FormatVariant.ENVIRONMENT.value

    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        name = self._coerce_text(data.get("name")).strip() or "Imported environment"
        self._environment_variables(export, name, data.get("values"), self._coerce_id(data, "id"))


class CollectionBackupNormalizer(CollectionV1Normalizer):
    """Full data dump of the collection tool: collections, environments and globals."""

    variant = FormatVariant.COLLECTION_BACKUP
    source_type = FormatVariant.COLLECTION_BACKUP.value

    def _transform(self, data: Mapping[str, Any], export: CanonicalExport, warnings: List[str]) -> None:
        for index, collection in enumerate(self._records(data.get("collections"))):
            self._read_collection(collection, export, warnings, order=index)
        for environment in self._records(data.get("environments")):
            name = self._coerce_text(environment.get("name")).strip() or "Imported environment"
            self._environment_variables(export, name, environment.get("values"), self._coerce_id(environment, "id"))
        globals_ = data.get("globals")
        if isinstance(globals_, list) and globals_:
            for raw_variable in globals_:
                if isinstance(raw_variable, Mapping):
                    variable = self._variable(raw_variable, "default")
                    if variable["variable"]:
                        export.variables.append(variable)


_ADAPTERS: Dict[FormatVariant, _ExportNormalizer] = {
    adapter.variant: adapter
    for adapter in (
        LegacyDocumentNormalizer(),
        LegacyMultiObjectNormalizer(),
        DocumentStoreNormalizer(),
        SingleRequestNormalizer(),
        CollectionV1Normalizer(),
        CollectionV2Normalizer(),
        CollectionBackupNormalizer(),
        EnvironmentNormalizer(),
    )
}


def get_import_adapter(variant: FormatVariant | str) -> Optional[ImportSourceAdapter]:
    try:
        return _ADAPTERS.get(FormatVariant(variant))
    except ValueError:
        return None


def supported_formats() -> Sequence[str]:
    return [variant.value for variant in _ADAPTERS]


def parse_import(source_payload: Any) -> ImportParseResult:
    """Detect the export format, normalize it and fill identifier gaps."""

    data = coerce_payload(source_payload)
    variant = detect_format(data)
    result = _ADAPTERS[variant].parse(data)
    IdentityResolver().resolve(result.data)
    return result


def normalize(source_payload: Any) -> CanonicalExport:
    return parse_import(source_payload).data
