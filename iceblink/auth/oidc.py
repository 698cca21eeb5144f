from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from iceblink.auth.models import IdentityClaims

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"
HTTP_TIMEOUT_SECONDS = 10.0
# Clock skew tolerance for provider-issued id tokens.
ID_TOKEN_LEEWAY_SECONDS = 30

_ASYMMETRIC_ALGORITHMS = ("RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512")


class DiscoveryError(ValueError):
    """The provider's discovery document or key set could not be loaded."""


class ExchangeError(ValueError):
    """
    Authorization-code exchange failed.

    `kind` tells callers what to do about it:
    - REJECTED: the provider refused the code or returned no id token; the user should restart login.
    - UNAVAILABLE: the provider could not be reached or answered with a server error.
    - INVALID_TOKEN: the returned id token failed verification (configuration/security issue).
    """

    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"
    INVALID_TOKEN = "invalid_token"

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class ProviderMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    algorithms: Tuple[str, ...] = ("RS256",)


def _get_json(url: str, timeout: float) -> Dict[str, Any]:
    r = requests.get(url, timeout=timeout, headers={"Accept": "application/json"})
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def parse_metadata(doc: Dict[str, Any]) -> ProviderMetadata:
    """Validate a discovery document and pick the fields we rely on."""
    required = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")
    missing = [k for k in required if not str(doc.get(k) or "").strip()]
    if missing:
        raise DiscoveryError(f"OIDC discovery missing {', '.join(missing)}")

    advertised = doc.get("id_token_signing_alg_values_supported")
    algorithms: Tuple[str, ...] = ("RS256",)
    if isinstance(advertised, list):
        picked = tuple(a for a in advertised if a in _ASYMMETRIC_ALGORITHMS)
        if picked:
            algorithms = picked

    return ProviderMetadata(
        issuer=str(doc["issuer"]).strip(),
        authorization_endpoint=str(doc["authorization_endpoint"]).strip(),
        token_endpoint=str(doc["token_endpoint"]).strip(),
        jwks_uri=str(doc["jwks_uri"]).strip(),
        algorithms=algorithms,
    )


class OpenIdClient:
    """
    A discovered OpenID Connect provider plus our client credentials.

    Built once at startup by `discover()` and shared by every request. Only the
    key set can change afterwards, and only when the provider rotates keys.
    """

    def __init__(
        self,
        metadata: ProviderMetadata,
        *,
        client_id: str,
        client_secret: str,
        jwks: Dict[str, Any],
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.metadata = metadata
        self.client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._keys = _index_keys(jwks)
        self._keys_lock = threading.Lock()

    def authorize_url(
        self,
        *,
        redirect_uri: str,
        state: str,
        code_challenge: Optional[str] = None,
        scope: str = "openid profile",
    ) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scope,
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self.metadata.authorization_endpoint}?{urlencode(params)}"

    def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        *,
        code_verifier: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> IdentityClaims:
        """
        Trade an authorization code for verified identity claims.

        Raises ExchangeError (see `ExchangeError.kind`).
        """
        tokens = self._request_tokens(code, redirect_uri, code_verifier=code_verifier)
        id_token = str(tokens.get("id_token") or "").strip()
        if not id_token:
            raise ExchangeError(ExchangeError.REJECTED, "Token response did not include an id_token")
        return self.validate_id_token(id_token, nonce=nonce)

    def _request_tokens(self, code: str, redirect_uri: str, *, code_verifier: Optional[str]) -> Dict[str, Any]:
        payload = {
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            payload["code_verifier"] = code_verifier

        try:
            r = requests.post(self.metadata.token_endpoint, data=payload, timeout=self._timeout)
        except requests.RequestException as e:
            logger.warning("Token exchange request failed: %s", type(e).__name__)
            raise ExchangeError(ExchangeError.UNAVAILABLE, "Identity provider unreachable") from e

        if r.status_code >= 500:
            raise ExchangeError(ExchangeError.UNAVAILABLE, f"Token exchange failed (status={r.status_code})")
        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise ExchangeError(ExchangeError.REJECTED, f"Token exchange rejected (status={r.status_code})")

        try:
            data = r.json()
        except ValueError as e:
            raise ExchangeError(ExchangeError.UNAVAILABLE, "Invalid token response") from e
        if not isinstance(data, dict):
            raise ExchangeError(ExchangeError.UNAVAILABLE, "Invalid token response")
        return data

    def validate_id_token(self, id_token: str, *, nonce: Optional[str] = None) -> IdentityClaims:
        """
        Validate an ID token from the provider.
        - Verifies JWT signature using the provider's public keys
        - Validates issuer, audience and expiry
        - Checks the nonce when one was used to start the login
        """
        try:
            hdr = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise ExchangeError(ExchangeError.INVALID_TOKEN, "Malformed id token") from e

        key = self._signing_key(str(hdr.get("kid") or ""))
        try:
            claims = jwt.decode(
                id_token,
                key=key,
                algorithms=list(self.metadata.algorithms),
                audience=self.client_id,
                issuer=self.metadata.issuer,
                leeway=ID_TOKEN_LEEWAY_SECONDS,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.InvalidTokenError as e:
            raise ExchangeError(ExchangeError.INVALID_TOKEN, f"Id token rejected: {type(e).__name__}") from e

        if nonce is not None and str(claims.get("nonce") or "") != nonce:
            raise ExchangeError(ExchangeError.INVALID_TOKEN, "Nonce mismatch")

        subject = str(claims.get("sub") or "").strip()
        if not subject:
            raise ExchangeError(ExchangeError.INVALID_TOKEN, "Id token has an empty subject")

        name = str(claims.get("name") or claims.get("preferred_username") or "").strip() or None
        email = str(claims.get("email") or "").strip() or None
        return IdentityClaims(subject=subject, issuer=self.metadata.issuer, name=name, email=email, raw=claims)

    def _signing_key(self, kid: str) -> Any:
        with self._keys_lock:
            key = _pick_key(self._keys, kid)
            if key is not None:
                return key
            # Unknown kid: the provider may have rotated keys since discovery.
            logger.info("Signing key %r not in cached key set; refreshing JWKS", kid)
            try:
                self._keys = _index_keys(_get_json(self.metadata.jwks_uri, self._timeout))
            except (requests.RequestException, ValueError) as e:
                raise ExchangeError(ExchangeError.UNAVAILABLE, "Unable to refresh provider keys") from e
            key = _pick_key(self._keys, kid)
        if key is None:
            raise ExchangeError(ExchangeError.INVALID_TOKEN, "Unknown signing key (kid)")
        return key


def _index_keys(jwks: Dict[str, Any]) -> List[Tuple[str, Any]]:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise ValueError("Invalid JWKS keys")
    out: List[Tuple[str, Any]] = []
    for k in keys:
        if not isinstance(k, dict) or k.get("use", "sig") != "sig":
            continue
        try:
            out.append((str(k.get("kid") or ""), jwt.PyJWK(k).key))
        except (jwt.PyJWKError, jwt.InvalidKeyError):
            # Providers publish key types we may not support; skip them.
            logger.debug("Skipping unusable JWK kid=%r kty=%r", k.get("kid"), k.get("kty"))
    return out


def _pick_key(keys: List[Tuple[str, Any]], kid: str) -> Any:
    if kid:
        for k_id, key in keys:
            if k_id == kid:
                return key
        return None
    # Tokens without a kid are only unambiguous when the provider publishes one key.
    if len(keys) == 1:
        return keys[0][1]
    return None


def discover(
    server_url: str,
    client_id: str,
    client_secret: str,
    *,
    timeout: float = HTTP_TIMEOUT_SECONDS,
) -> OpenIdClient:
    """
    Fetch the provider's discovery document and signing keys.

    Raises DiscoveryError when the provider is unreachable, answers with
    something that isn't a discovery document, or lacks required endpoints.
    """
    base = (server_url or "").strip().rstrip("/")
    if not base:
        raise DiscoveryError("OIDC server URL not configured")
    if not client_id:
        raise DiscoveryError("OIDC client ID not configured")

    url = base + DISCOVERY_PATH
    try:
        doc = _get_json(url, timeout)
    except (requests.RequestException, ValueError) as e:
        raise DiscoveryError(f"Unable to fetch OIDC discovery document from {url}: {e}") from e

    metadata = parse_metadata(doc)
    try:
        jwks = _get_json(metadata.jwks_uri, timeout)
        client = OpenIdClient(metadata, client_id=client_id, client_secret=client_secret, jwks=jwks, timeout=timeout)
    except (requests.RequestException, ValueError) as e:
        raise DiscoveryError(f"Unable to load provider signing keys: {e}") from e

    logger.info("Discovered OpenID provider issuer=%s", metadata.issuer)
    return client
