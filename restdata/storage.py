"""SQLite document store with revision stamps and a change-event log."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .import_contract import MalformedRecord, RevisionConflict, StoreUnavailable, checksum_payload
from .pagination import InvalidPageToken, PageCursor

logger = logging.getLogger(__name__)

# Natural listing order per store kind; everything else sorts by id.
SORT_KEYS: Dict[str, str] = {
    "saved-requests": "name",
    "history-requests": "created",
    "legacy-projects": "order",
    "url-history": "time",
    "websocket-url-history": "time",
}

_MAX_PAGE_SIZE = 500
_IN_CHUNK = 500


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_DB_PATH_OVERRIDE: Optional[Path] = None


def set_db_path_override(path: Optional[str]) -> None:
    global _DB_PATH_OVERRIDE
    if path:
        _DB_PATH_OVERRIDE = Path(path)
    else:
        _DB_PATH_OVERRIDE = None


def _resolve_db_path() -> Path:
    if _DB_PATH_OVERRIDE is not None:
        return _DB_PATH_OVERRIDE

    env_path = os.getenv("RESTDATA_DB_PATH")
    if env_path:
        return Path(env_path)

    data_dir = Path(__file__).resolve().parents[1] / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "restdata.db"


def _dict_from_row(row: sqlite3.Row) -> Dict:
    return {k: row[k] for k in row.keys()}


def _coerce_json_payload(value: Optional[str]) -> Optional[Any]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed


def _create_tables(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS documents (
            kind TEXT NOT NULL,
            id TEXT NOT NULL,
            rev TEXT NOT NULL,
            body TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (kind, id)
        );

        CREATE INDEX IF NOT EXISTS idx_documents_kind
            ON documents(kind);

        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL,
            level TEXT NOT NULL,
            payload TEXT
        );
        """
    )


def _has_tables(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT COUNT(*) AS total FROM sqlite_master WHERE type = 'table' AND name IN ('documents', 'events')"
    ).fetchone()
    return int(row["total"]) == 2


@contextmanager
def get_connection():
    path = _resolve_db_path()
    try:
        conn = sqlite3.connect(path, check_same_thread=False)
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"cannot open document store at {path}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        if not _has_tables(conn):
            _create_tables(conn)
            conn.commit()
        yield conn
    except sqlite3.OperationalError as exc:
        logger.warning("Document store at %s failed: %s", path, exc)
        raise StoreUnavailable(str(exc)) from exc
    finally:
        conn.close()


def ensure_schema() -> None:
    with get_connection():
        pass


def _next_rev(previous: Optional[str], body: Mapping[str, Any]) -> str:
    generation = 0
    if previous:
        head = previous.split("-", 1)[0]
        generation = int(head) if head.isdigit() else 0
    return f"{generation + 1}-{checksum_payload(body)[:32]}"


def _document_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    payload = _coerce_json_payload(row["body"]) or {}
    payload["_id"] = row["id"]
    payload["_rev"] = row["rev"]
    return payload


def _serialize_body(kind: str, doc: Mapping[str, Any]) -> tuple[str, Dict[str, Any], str]:
    if not isinstance(doc, Mapping):
        raise MalformedRecord(kind, None, f"expected an object, got {type(doc).__name__}")
    doc_id = doc.get("_id")
    if not isinstance(doc_id, str) or not doc_id:
        raise MalformedRecord(kind, None, "document has no string _id")
    body = {k: v for k, v in doc.items() if k not in ("_id", "_rev")}
    try:
        serialized = json.dumps(body, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise MalformedRecord(kind, doc_id, f"document is not JSON serializable: {exc}") from exc
    return doc_id, body, serialized


def _append_event_row(
    conn: sqlite3.Connection,
    event_type: str,
    message: str,
    level: str = "info",
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    event_id = f"evt-{uuid.uuid4().hex[:12]}"
    now = _now_iso()
    conn.execute(
        "INSERT INTO events(id, type, message, created_at, level, payload) VALUES(?, ?, ?, ?, ?, ?)",
        (event_id, event_type, message, now, level, json.dumps(payload) if payload is not None else None),
    )
    return {
        "id": event_id,
        "type": event_type,
        "message": message,
        "created_at": now,
        "level": level,
        "payload": payload,
    }


def _write_document(conn: sqlite3.Connection, kind: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
    doc_id, body, serialized = _serialize_body(kind, doc)
    existing = conn.execute(
        "SELECT rev FROM documents WHERE kind = ? AND id = ?",
        (kind, doc_id),
    ).fetchone()
    now = _now_iso()
    old_rev = existing["rev"] if existing else None
    if existing is not None and doc.get("_rev") != old_rev:
        raise RevisionConflict(kind, doc_id)

    rev = _next_rev(old_rev, body)
    if existing is None:
        conn.execute(
            "INSERT INTO documents(kind, id, rev, body, created_at, updated_at) VALUES(?, ?, ?, ?, ?, ?)",
            (kind, doc_id, rev, serialized, now, now),
        )
    else:
        conn.execute(
            "UPDATE documents SET rev = ?, body = ?, updated_at = ? WHERE kind = ? AND id = ?",
            (rev, serialized, now, kind, doc_id),
        )

    change: Dict[str, Any] = {"kind": kind, "id": doc_id, "rev": rev, "item": {**body, "_id": doc_id, "_rev": rev}}
    if old_rev:
        change["oldRev"] = old_rev
    _append_event_row(conn, "document.changed", f"{kind}/{doc_id}: {rev}", payload=change)
    return {"id": doc_id, "rev": rev, "oldRev": old_rev}


def get_document(kind: str, doc_id: str, rev: Optional[str] = None) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM documents WHERE kind = ? AND id = ?",
            (kind, doc_id),
        ).fetchone()
    if not row:
        return None
    if rev is not None and row["rev"] != rev:
        return None
    return _document_from_row(row)


def get_documents(kind: str, doc_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    ids = [doc_id for doc_id in dict.fromkeys(doc_ids) if isinstance(doc_id, str)]
    out: Dict[str, Dict[str, Any]] = {}
    if not ids:
        return out
    with get_connection() as conn:
        for start in range(0, len(ids), _IN_CHUNK):
            chunk = ids[start : start + _IN_CHUNK]
            placeholders = ",".join("?" for _ in chunk)
            rows = conn.execute(
                f"SELECT * FROM documents WHERE kind = ? AND id IN ({placeholders})",
                (kind, *chunk),
            ).fetchall()
            for row in rows:
                out[row["id"]] = _document_from_row(row)
    return out


def put_document(kind: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
    with get_connection() as conn:
        result = _write_document(conn, kind, doc)
        conn.commit()
    return {"id": result["id"], "rev": result["rev"]}


def bulk_put(kind: str, docs: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Write ``docs`` one by one; each result is a success stamp or a per-record error.

    Every successful write is committed on its own, so a store failure part
    way through leaves the earlier writes durable.
    """

    results: List[Dict[str, Any]] = []
    if not docs:
        return results
    with get_connection() as conn:
        for doc in docs:
            try:
                written = _write_document(conn, kind, doc)
            except MalformedRecord as exc:
                results.append({"error": "invalid", "id": exc.record_id, "message": exc.message})
                continue
            except RevisionConflict as exc:
                results.append({"error": "conflict", "id": exc.record_id, "message": "Document update conflict"})
                continue
            except sqlite3.IntegrityError as exc:
                doc_id = doc.get("_id") if isinstance(doc, Mapping) else None
                results.append({"error": "invalid", "id": doc_id, "message": str(exc)})
                continue
            conn.commit()
            results.append({"ok": True, "id": written["id"], "rev": written["rev"]})
    return results


def delete_document(kind: str, doc_id: str, rev: Optional[str] = None) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM documents WHERE kind = ? AND id = ?",
            (kind, doc_id),
        ).fetchone()
        if not row:
            return None
        if rev is not None and row["rev"] != rev:
            raise RevisionConflict(kind, doc_id)
        conn.execute("DELETE FROM documents WHERE kind = ? AND id = ?", (kind, doc_id))
        deleted_rev = _next_rev(row["rev"], {"_deleted": True})
        _append_event_row(
            conn,
            "document.deleted",
            f"{kind}/{doc_id}: deleted",
            payload={"kind": kind, "id": doc_id, "rev": deleted_rev, "oldRev": row["rev"]},
        )
        conn.commit()
    return {"id": doc_id, "rev": deleted_rev}


def count_documents(kind: str) -> int:
    with get_connection() as conn:
        row = conn.execute("SELECT COUNT(*) AS total FROM documents WHERE kind = ?", (kind,)).fetchone()
    return int(row["total"])


def list_kinds() -> List[str]:
    with get_connection() as conn:
        rows = conn.execute("SELECT DISTINCT kind FROM documents ORDER BY kind").fetchall()
    return [row["kind"] for row in rows]


def list_documents(
    kind: str,
    limit: int = 25,
    page_token: Optional[str] = None,
    filter: Optional[Mapping[str, Any]] = None,
    descending: bool = False,
) -> Dict[str, Any]:
    cursor = PageCursor.decode(page_token)
    if cursor is not None and cursor.descending != descending:
        raise InvalidPageToken("page token was issued for the opposite sort order")
    page_size = max(1, min(int(limit), _MAX_PAGE_SIZE))
    sort_field = SORT_KEYS.get(kind)
    if sort_field:
        sort_expr = "COALESCE(json_extract(body, ?), '')"
        sort_args: List[Any] = [f"$.{sort_field}"]
    else:
        sort_expr = "id"
        sort_args = []

    clauses = ["kind = ?"]
    args: List[Any] = [kind]
    for field_name, value in (filter or {}).items():
        clauses.append("json_extract(body, ?) = ?")
        args.extend([f"$.{field_name}", value])

    cursor_clause = ""
    cursor_args: List[Any] = []
    if cursor is not None:
        op = "<" if descending else ">"
        cursor_clause = f" AND ({sort_expr} {op} ? OR ({sort_expr} = ? AND id {op} ?))"
        cursor_args = [*sort_args, cursor.last_key, *sort_args, cursor.last_key, cursor.last_id]

    where = " AND ".join(clauses) + cursor_clause
    direction = "DESC" if descending else "ASC"
    query = (
        f"SELECT *, {sort_expr} AS sort_key FROM documents WHERE {where} "
        f"ORDER BY sort_key {direction}, id {direction} LIMIT ?"
    )
    with get_connection() as conn:
        rows = conn.execute(query, (*sort_args, *args, *cursor_args, page_size)).fetchall()
        total = conn.execute(
            f"SELECT COUNT(*) AS total FROM documents WHERE {where}",
            (*args, *cursor_args),
        ).fetchone()["total"]

    items = [_document_from_row(row) for row in rows]
    remaining = int(total) - len(items)
    next_page_token = None
    if remaining > 0 and rows:
        last = rows[-1]
        next_page_token = PageCursor(
            last_key=last["sort_key"],
            last_id=last["id"],
            remaining=remaining,
            descending=descending,
        ).encode()
    return {"items": items, "next_page_token": next_page_token}


def list_events(limit: int = 25, event_type: Optional[str] = None) -> List[Dict]:
    normalized_limit = max(1, min(limit, 500))
    with get_connection() as conn:
        if event_type:
            rows = conn.execute(
                "SELECT * FROM events WHERE type = ? ORDER BY rowid DESC LIMIT ?",
                (event_type, normalized_limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM events ORDER BY rowid DESC LIMIT ?",
                (normalized_limit,),
            ).fetchall()
        out = []
        for row in rows:
            payload = _dict_from_row(row)
            payload["payload"] = _coerce_json_payload(payload.get("payload"))
            out.append(payload)
        return out


def append_event(event_type: str, message: str, level: str = "info", payload: Optional[Dict[str, Any]] = None) -> Dict:
    with get_connection() as conn:
        event = _append_event_row(conn, event_type, message, level, payload)
        conn.commit()
    return event


def append_import_progress_event(import_id: str, phase: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return append_event(
        event_type="import.progress",
        message=f"{import_id}: {phase}",
        payload={"import_id": import_id, "phase": phase, **(details or {})},
    )
