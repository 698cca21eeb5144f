"""
Ownership-scoped storage for authenticator codes.

Every statement that touches a code carries `owner_id = %s` in its WHERE
clause. A code owned by someone else looks exactly like a missing one.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from iceblink.auth.util import random_token

logger = logging.getLogger(__name__)

CODE_ID_BYTES = 12  # 16 URL-safe characters
CODE_ID_ATTEMPTS = 3

_COLUMNS = "id, owner_id, content, display_name, icon_url, website_url"
_EDITABLE = ("content", "display_name", "icon_url", "website_url")


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marks an edit field the caller did not supply (distinct from an explicit None).
UNSET: Any = _Unset()


@dataclass(frozen=True)
class Code:
    id: str
    owner_id: str
    content: str
    display_name: str
    icon_url: Optional[str] = None
    website_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _row_to_code(row: Tuple[Any, ...]) -> Code:
    code_id, owner_id, content, display_name, icon_url, website_url = row
    return Code(
        id=code_id,
        owner_id=owner_id,
        content=content,
        display_name=display_name,
        icon_url=icon_url,
        website_url=website_url,
    )


def new_code_id() -> str:
    return random_token(CODE_ID_BYTES)


def create_code(
    conn,
    owner_id: str,
    *,
    content: str,
    display_name: str,
    icon_url: Optional[str] = None,
    website_url: Optional[str] = None,
) -> Code:
    """
    Insert a new code for `owner_id` with a freshly generated id.

    Raises psycopg.errors.ForeignKeyViolation if the owner no longer exists.
    """
    for _ in range(CODE_ID_ATTEMPTS):
        code_id = new_code_id()
        row = conn.execute(
            f"""
            INSERT INTO codes (id, owner_id, content, display_name, icon_url, website_url)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            RETURNING {_COLUMNS}
            """,
            (code_id, owner_id, content, display_name, icon_url, website_url),
        ).fetchone()
        if row:
            return _row_to_code(row)
        logger.warning("Generated code id collided; retrying")
    raise RuntimeError("Unable to allocate a unique code id")


def list_codes(conn, owner_id: str) -> List[Code]:
    """All codes owned by `owner_id`, in insertion order."""
    rows = conn.execute(
        f"SELECT {_COLUMNS} FROM codes WHERE owner_id = %s ORDER BY seq",
        (owner_id,),
    ).fetchall()
    return [_row_to_code(r) for r in rows]


def get_code(conn, code_id: str, owner_id: str) -> Optional[Code]:
    row = conn.execute(
        f"SELECT {_COLUMNS} FROM codes WHERE id = %s AND owner_id = %s",
        (code_id, owner_id),
    ).fetchone()
    return _row_to_code(row) if row else None


def edit_code(
    conn,
    code_id: str,
    owner_id: str,
    *,
    content: Any = UNSET,
    display_name: Any = UNSET,
    icon_url: Any = UNSET,
    website_url: Any = UNSET,
) -> Optional[Code]:
    """
    Apply a partial update and return the stored code, or None if not found.

    Only supplied fields are written, all within one transaction. Nullable
    fields can be cleared by passing None explicitly.
    """
    supplied = {"content": content, "display_name": display_name, "icon_url": icon_url, "website_url": website_url}
    changes = [(col, supplied[col]) for col in _EDITABLE if supplied[col] is not UNSET]
    for col in ("content", "display_name"):
        if supplied[col] is None:
            raise ValueError(f"{col} cannot be null")

    if not changes:
        return get_code(conn, code_id, owner_id)

    assignments = ", ".join(f"{col} = %s" for col, _ in changes)
    params = [value for _, value in changes] + [code_id, owner_id]
    with conn.transaction():
        row = conn.execute(
            f"UPDATE codes SET {assignments} WHERE id = %s AND owner_id = %s RETURNING {_COLUMNS}",
            tuple(params),
        ).fetchone()
    return _row_to_code(row) if row else None


def delete_code(conn, code_id: str, owner_id: str) -> bool:
    """Delete a code. False means it was missing (or already deleted)."""
    cur = conn.execute("DELETE FROM codes WHERE id = %s AND owner_id = %s", (code_id, owner_id))
    return cur.rowcount > 0


def upsert_user(conn, user_id: str, display_name: Optional[str]) -> None:
    """Record a user on login; the first login creates the row."""
    conn.execute(
        """
        INSERT INTO users (id, display_name)
        VALUES (%s, %s)
        ON CONFLICT (id) DO UPDATE SET display_name = COALESCE(EXCLUDED.display_name, users.display_name)
        """,
        (user_id, display_name),
    )


def delete_user(conn, user_id: str) -> bool:
    """Delete a user and every code they own."""
    with conn.transaction():
        conn.execute("DELETE FROM codes WHERE owner_id = %s", (user_id,))
        cur = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
        deleted = cur.rowcount > 0
    return deleted
