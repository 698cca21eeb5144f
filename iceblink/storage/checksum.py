"""
Drift detection for a user's code set.

Clients compare this digest with one computed from their local cache; a
mismatch means a full re-sync is needed.
"""

from __future__ import annotations

import hashlib
from typing import Iterable, Optional

from iceblink.storage.codes import Code, list_codes

_NULL = b"\x00"
_PRESENT = b"\x01"


def _feed(h, value: Optional[str]) -> None:
    # Length-prefixed so ("ab", "c") and ("a", "bc") hash differently; None differs from "".
    if value is None:
        h.update(_NULL)
        return
    data = value.encode("utf-8")
    h.update(_PRESENT)
    h.update(len(data).to_bytes(8, "big"))
    h.update(data)


def checksum_codes(codes: Iterable[Code]) -> str:
    """SHA-256 over every field of every code, in id order. Input order does not matter."""
    h = hashlib.sha256()
    for code in sorted(codes, key=lambda c: c.id):
        for value in (code.id, code.owner_id, code.content, code.display_name, code.icon_url, code.website_url):
            _feed(h, value)
    return h.hexdigest()


def user_checksum(conn, owner_id: str) -> str:
    return checksum_codes(list_codes(conn, owner_id))
