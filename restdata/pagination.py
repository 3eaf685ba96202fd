"""Continuation tokens for bounded listings."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Optional


class InvalidPageToken(ValueError):
    pass


@dataclass(frozen=True)
class PageCursor:
    """Resume point of a listing: the last sort key and id that were returned."""

    last_key: Any
    last_id: str
    remaining: int = 0
    descending: bool = False

    def encode(self) -> str:
        raw = json.dumps(
            {"k": self.last_key, "i": self.last_id, "r": self.remaining, "d": self.descending},
            separators=(",", ":"),
        )
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, token: Optional[str]) -> Optional["PageCursor"]:
        if not token:
            return None
        padded = token + "=" * (-len(token) % 4)
        try:
            payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        except (ValueError, UnicodeError) as exc:
            raise InvalidPageToken(f"invalid page token: {token}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("i"), str):
            raise InvalidPageToken(f"invalid page token: {token}")
        remaining = payload.get("r") or 0
        if not isinstance(remaining, int):
            raise InvalidPageToken(f"invalid page token: {token}")
        return cls(
            last_key=payload.get("k"),
            last_id=payload["i"],
            remaining=remaining,
            descending=bool(payload.get("d")),
        )
