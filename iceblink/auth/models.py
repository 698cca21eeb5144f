from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class IdentityClaims:
    """Verified identity returned by the OpenID provider after a code exchange."""

    subject: str  # provider `sub`; used as the user id
    issuer: str
    name: Optional[str] = None
    email: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def display_name(self) -> Optional[str]:
        return self.name or self.email
