"""
Icon proxy for code entries.

Clients never fetch third-party icon URLs themselves; the server fetches them
once and serves cached bytes. Only hosts that resolve to public addresses are
contacted, and every redirect hop is checked the same way.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from collections import OrderedDict
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import requests

logger = logging.getLogger(__name__)

ICON_TIMEOUT_SECONDS = 5
ICON_MAX_BYTES = 512 * 1024
ICON_CACHE_ENTRIES = 256
ICON_MAX_REDIRECTS = 3

_REDIRECT_STATUSES = (301, 302, 303, 307, 308)


def _resolve(host: str) -> List[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return [str(info[4][0]) for info in infos]


def _is_public_address(raw: str) -> bool:
    try:
        address = ipaddress.ip_address(raw.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    ):
        return False
    # Catches shared address space (100.64.0.0/10) and similar non-routable ranges.
    return address.is_global


def is_public_url(url: str) -> bool:
    """True for http(s) URLs whose host resolves only to public addresses."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return False
    host = parts.hostname
    try:
        ipaddress.ip_address(host.split("%", 1)[0])
        addresses = [host]
    except ValueError:
        try:
            addresses = _resolve(host)
        except OSError:
            return False
    return bool(addresses) and all(_is_public_address(a) for a in addresses)


class IconStore:
    """Fetch-through cache of icon bytes keyed by URL."""

    def __init__(self, *, max_entries: int = ICON_CACHE_ENTRIES) -> None:
        self._cache: "OrderedDict[str, Tuple[bytes, str]]" = OrderedDict()
        self._max_entries = max_entries
        self._lock = threading.Lock()

    def fetch(self, url: str) -> Optional[Tuple[bytes, str]]:
        """Return (bytes, content_type) for an icon URL, or None if it can't be served."""
        if not url.startswith(("http://", "https://")):
            return None
        with self._lock:
            hit = self._cache.get(url)
            if hit is not None:
                self._cache.move_to_end(url)
                return hit

        icon = self._download(url)
        if icon is None:
            return None
        with self._lock:
            self._cache[url] = icon
            self._cache.move_to_end(url)
            while len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)
        return icon

    def _download(self, url: str) -> Optional[Tuple[bytes, str]]:
        for _ in range(ICON_MAX_REDIRECTS + 1):
            if not is_public_url(url):
                logger.info("Refusing icon URL that does not resolve to a public host")
                return None
            try:
                with requests.get(url, timeout=ICON_TIMEOUT_SECONDS, stream=True, allow_redirects=False) as r:
                    if r.status_code in _REDIRECT_STATUSES:
                        location = (r.headers.get("Location") or "").strip()
                        if not location:
                            return None
                        url = urljoin(url, location)
                        continue
                    return _read_image(r)
            except requests.RequestException as e:
                logger.info("Icon fetch failed: %s", type(e).__name__)
                return None
        logger.info("Icon fetch exceeded %d redirects", ICON_MAX_REDIRECTS)
        return None


def _read_image(r: requests.Response) -> Optional[Tuple[bytes, str]]:
    if r.status_code != 200:
        logger.info("Icon fetch returned status=%d", r.status_code)
        return None
    content_type = (r.headers.get("Content-Type") or "").split(";")[0].strip().lower()
    if not content_type.startswith("image/"):
        return None
    body = bytearray()
    for chunk in r.iter_content(chunk_size=16 * 1024):
        body.extend(chunk)
        if len(body) > ICON_MAX_BYTES:
            logger.info("Icon exceeds %d bytes; not serving", ICON_MAX_BYTES)
            return None
    return bytes(body), content_type
