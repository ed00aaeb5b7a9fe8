from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Position in a newest-first listing: the last item of the previous page."""

    created_at: float
    item_id: str

    def as_tuple(self) -> tuple[float, str]:
        return (self.created_at, self.item_id)


def encode_cursor(cursor: Cursor) -> str:
    raw = json.dumps({"created_at": cursor.created_at, "id": cursor.item_id}, separators=(",", ":")).encode(
        "utf-8"
    )
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str) -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    # Add padding for base64 decoding.
    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        raw = base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8")
        obj = json.loads(raw)
        return Cursor(created_at=float(obj["created_at"]), item_id=str(obj["id"]))
    except (ValueError, KeyError, TypeError, UnicodeError) as e:
        raise CursorError("Invalid cursor") from e


def finalize_page(page: dict[str, Any]) -> dict[str, Any]:
    """Replace the store's `(created_at, id)` next_cursor tuple with its opaque encoding."""
    next_cursor = page.get("next_cursor")
    if next_cursor is not None:
        created_at, item_id = next_cursor
        page["next_cursor"] = encode_cursor(Cursor(created_at=float(created_at), item_id=str(item_id)))
    return page
