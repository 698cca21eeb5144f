from __future__ import annotations

import base64
import os


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    # 3 bytes encode to 4 chars; multiples of 3 give a fixed length without padding.
    return b64url(os.urandom(nbytes))
