from __future__ import annotations

import pytest

from src.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor, finalize_page


def test_cursor_is_opaque_and_reversible() -> None:
    c = Cursor(created_at=1717000000.25, item_id="job_3f2a")
    encoded = encode_cursor(c)
    assert "=" not in encoded
    assert "job_3f2a" not in encoded
    decoded = decode_cursor(encoded)
    assert decoded.created_at == pytest.approx(c.created_at)
    assert decoded.item_id == c.item_id


@pytest.mark.parametrize("value", ["", "   ", "not-a-valid-cursor", "e30"])
def test_cursor_invalid(value: str) -> None:
    with pytest.raises(CursorError):
        decode_cursor(value)


def test_finalize_page_encodes_next_cursor() -> None:
    page = finalize_page({"items": [], "has_more": True, "next_cursor": (12.5, "job_b")})
    assert decode_cursor(page["next_cursor"]) == Cursor(created_at=12.5, item_id="job_b")

    last = finalize_page({"items": [], "has_more": False, "next_cursor": None})
    assert last["next_cursor"] is None
