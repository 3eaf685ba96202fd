"""FastAPI surface for importing REST-client data and browsing the store."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from . import storage
from .detection import describe_signatures
from .import_adapters import parse_import, supported_formats
from .import_contract import (
    STORE_KINDS,
    CLIENT_CERTIFICATE_DATA_KIND,
    CanonicalExport,
    ImportFailure,
    StoreUnavailable,
    UnrecognizedFormat,
    checksum_payload,
    resolve_kind,
)
from .import_factory import ImportFactory
from .pagination import InvalidPageToken

logger = logging.getLogger(__name__)

app = FastAPI(title="REST client data import API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class CanonicalExportBody(BaseModel):
    """Canonical export posted as JSON; accepts the JSON kind names."""

    model_config = ConfigDict(populate_by_name=True)

    requests: List[Dict[str, Any]] = Field(default_factory=list)
    history: List[Dict[str, Any]] = Field(default_factory=list)
    projects: List[Dict[str, Any]] = Field(default_factory=list)
    websocket_url_history: List[Dict[str, Any]] = Field(default_factory=list, alias="websocketUrlHistory")
    url_history: List[Dict[str, Any]] = Field(default_factory=list, alias="urlHistory")
    variables: List[Dict[str, Any]] = Field(default_factory=list)
    environments: List[Dict[str, Any]] = Field(default_factory=list)
    cookies: List[Dict[str, Any]] = Field(default_factory=list)
    auth_data: List[Dict[str, Any]] = Field(default_factory=list, alias="authData")
    host_rules: List[Dict[str, Any]] = Field(default_factory=list, alias="hostRules")
    client_certificates: List[Dict[str, Any]] = Field(default_factory=list, alias="clientCertificates")

    def to_export(self) -> CanonicalExport:
        return CanonicalExport(**self.model_dump())


@app.on_event("startup")
def _startup() -> None:
    storage.ensure_schema()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_legacy_token = os.getenv("RESTDATA_API_TOKEN", "").strip()
_admin_token = os.getenv("RESTDATA_ADMIN_TOKEN", "").strip()
_viewer_token = os.getenv("RESTDATA_READ_TOKEN", "").strip()

if _admin_token and _viewer_token and _admin_token == _viewer_token:
    _viewer_token = ""
if not _admin_token:
    _admin_token = _legacy_token
if not _viewer_token:
    _viewer_token = _admin_token or _legacy_token

if _viewer_token and not _admin_token:
    _admin_token = _viewer_token
storage.set_db_path_override(os.getenv("RESTDATA_DB_PATH"))


def _role_from_token(auth_token: Optional[str] = None, query_token: Optional[str] = None) -> str:
    if not (_admin_token or _viewer_token):
        return "admin"

    token = auth_token or query_token or ""
    if token.startswith("Bearer "):
        token = token[7:].strip()

    if _admin_token and token == _admin_token:
        return "admin"
    if _viewer_token and token == _viewer_token:
        return "viewer"
    return ""


def _require_role(required: str = "viewer"):
    def _checker(
        auth: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False)),
        token: Optional[str] = Query(default=None, alias="token"),
    ) -> str:
        role = _role_from_token(auth.credentials if auth else None, token)
        if not role:
            raise HTTPException(status_code=401, detail="Unauthorized")
        if required == "admin" and role != "admin":
            raise HTTPException(status_code=403, detail="Admin token required for this action.")
        return role

    return _checker


def _store_kind(kind: str) -> str:
    if kind == CLIENT_CERTIFICATE_DATA_KIND:
        return kind
    json_name = resolve_kind(kind)
    if json_name is None:
        raise HTTPException(status_code=404, detail=f"unknown data kind '{kind}'")
    return STORE_KINDS[json_name]


def _failures_payload(failures: Optional[List[ImportFailure]]) -> List[Dict[str, Any]]:
    return [failure.to_dict() for failure in failures or []]


def _run_import(import_id: str, export: CanonicalExport) -> Dict[str, Any]:
    factory = ImportFactory(storage)
    storage.append_import_progress_event(import_id, "importing", {"counts": export.counts()})
    try:
        failures = factory.import_data(export)
    except StoreUnavailable as exc:
        logger.error("Import %s aborted: %s", import_id, exc)
        raise HTTPException(status_code=503, detail=f"document store unavailable: {exc}")
    failed = _failures_payload(failures)
    storage.append_import_progress_event(
        import_id,
        "completed",
        {"failure_count": len(failed), "saved_indexes": len(factory.saved_indexes)},
    )
    return {
        "import_id": import_id,
        "counts": export.counts(),
        "failures": failed,
        "saved_indexes": factory.saved_indexes,
        "history_indexes": factory.history_indexes,
    }


async def _read_upload(source_file: UploadFile) -> bytes:
    raw_data = await source_file.read()
    if not raw_data:
        raise HTTPException(status_code=400, detail="source_file is empty")
    return raw_data


@app.get("/api/health")
def health() -> Dict[str, Any]:
    try:
        storage.ensure_schema()
        store_status = "ok"
    except StoreUnavailable:
        store_status = "unavailable"
    return {
        "status": "ok",
        "service": "restdata-import",
        "store": store_status,
        "updated_at": _now_iso(),
    }


@app.get("/api/import/formats")
def get_formats(role: str = Depends(_require_role("viewer"))) -> Dict[str, Any]:
    return {"formats": supported_formats(), "detection_order": describe_signatures()}


@app.post("/api/import/normalize")
async def normalize_upload(
    source_file: UploadFile = File(...),
    role: str = Depends(_require_role("viewer")),
) -> Dict[str, Any]:
    raw_data = await _read_upload(source_file)
    try:
        result = parse_import(raw_data)
    except UnrecognizedFormat as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "import_id": result.import_id,
        "format": result.source_type,
        "source_metadata": result.source_metadata,
        "counts": result.counts,
        "warnings": list(result.warnings),
        "data": result.data.to_dict(),
    }


@app.post("/api/import")
async def import_upload(
    source_file: UploadFile = File(...),
    role: str = Depends(_require_role("admin")),
) -> Dict[str, Any]:
    raw_data = await _read_upload(source_file)
    try:
        result = parse_import(raw_data)
    except UnrecognizedFormat as exc:
        storage.append_event("import", f"Import rejected: {exc}", "error")
        raise HTTPException(status_code=400, detail=str(exc))

    storage.append_import_progress_event(
        result.import_id,
        "parsed",
        {"format": result.source_type, "warning_count": len(result.warnings)},
    )
    payload = _run_import(result.import_id, result.data)
    payload["format"] = result.source_type
    payload["warnings"] = list(result.warnings)
    return payload


@app.post("/api/import/data")
def import_canonical(body: CanonicalExportBody, role: str = Depends(_require_role("admin"))) -> Dict[str, Any]:
    export = body.to_export()
    import_id = checksum_payload(export.to_dict())
    return _run_import(import_id, export)


@app.get("/api/data")
def get_kinds(role: str = Depends(_require_role("viewer"))) -> Dict[str, Any]:
    try:
        kinds = {kind: storage.count_documents(kind) for kind in storage.list_kinds()}
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"kinds": kinds, "updated_at": _now_iso()}


@app.get("/api/data/{kind}")
def list_data(
    kind: str,
    limit: int = Query(default=25, ge=1, le=500),
    page_token: Optional[str] = Query(default=None, alias="pageToken"),
    descending: bool = False,
    role: str = Depends(_require_role("viewer")),
) -> Dict[str, Any]:
    store_kind = _store_kind(kind)
    try:
        page = storage.list_documents(store_kind, limit=limit, page_token=page_token, descending=descending)
    except InvalidPageToken as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"kind": store_kind, **page}


@app.get("/api/data/{kind}/{doc_id}")
def get_data(kind: str, doc_id: str, role: str = Depends(_require_role("viewer"))) -> Dict[str, Any]:
    store_kind = _store_kind(kind)
    try:
        document = storage.get_document(store_kind, doc_id)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if document is None:
        raise HTTPException(status_code=404, detail=f"{store_kind} '{doc_id}' not found")
    return {"kind": store_kind, "item": document}


@app.get("/api/events")
def get_events(
    limit: int = 25,
    event_type: Optional[str] = Query(default=None, alias="type"),
    role: str = Depends(_require_role("viewer")),
) -> Dict[str, Any]:
    events = storage.list_events(limit, event_type=event_type)
    return {"events": events, "updated_at": _now_iso()}


@app.websocket("/api/events/ws")
async def events_ws(ws: WebSocket) -> None:
    role = _role_from_token(
        auth_token=ws.headers.get("authorization") or "",
        query_token=ws.query_params.get("token", ""),
    )
    if not role:
        await ws.close(code=4401)
        return

    await ws.accept()
    last_event_id = None
    try:
        while True:
            rows = storage.list_events(25, event_type="document.changed")
            current = rows[0]["id"] if rows else None
            if current != last_event_id:
                last_event_id = current
                await ws.send_json({"type": "events", "role": role, "events": rows, "updated_at": _now_iso()})
            await asyncio.sleep(1.5)
    except WebSocketDisconnect:
        return
    except StoreUnavailable:
        await ws.close(code=1011)
