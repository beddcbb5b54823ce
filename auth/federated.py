"""
auth/federated.py -- OIDC ID-token verification for federated (social) sign-in.

The client app runs the provider's sign-in UI (e.g. Google Sign-In) and hands
the core an ID token. FederatedVerifier checks that token locally:

  1. Fetch the provider's discovery document (issuer, jwks_uri) -- cached.
  2. Fetch the JWKS -- cached; refetched once when a token's key id is unknown
     (the provider rotated keys).
  3. python-jose verifies signature, expiry, audience (our client id) and
     issuer.
  4. [H1] email_verified must be true. An unverified address could belong to
     an attacker who added a victim's email without confirming it.

Every failure raises ProviderError with a provider-native message that
auth.errors.classify() understands ("invalid federated token", "network",
"not configured", "email is not verified").

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import requests
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import ProviderError
from core.models import SubjectIdentity

logger = logging.getLogger("authcore.auth.federated")

# Google issues tokens with either form of its issuer string.
_GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")

_CACHE_TTL = 60 * 60  # 1 hour


class FederatedVerifier:
    """Verify OIDC ID tokens against one provider's published keys.

    Usage:
        verifier = FederatedVerifier(client_id, discovery_url)
        identity = verifier.verify(id_token)   # blocking; call via to_thread
    """

    def __init__(
        self,
        client_id: str,
        discovery_url: str,
        provider: str = "google",
        session: requests.Session | None = None,
        algorithms: tuple[str, ...] = ("RS256",),
    ) -> None:
        self.client_id = client_id
        self.discovery_url = discovery_url
        self.provider = provider
        self.algorithms = algorithms
        # max_redirects=3 -- discovery and JWKS endpoints are known hosts;
        # a long redirect chain is a red flag, not a feature.
        self._session = session or requests.Session()
        self._session.max_redirects = 3
        self._metadata: dict[str, Any] | None = None
        self._jwks: dict[str, Any] | None = None
        self._fetched_at = 0.0

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    def _get_json(self, url: str) -> dict[str, Any]:
        try:
            resp = self._session.get(url, timeout=10)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            logger.warning("Federated key fetch failed for %s: %s", url, e)
            raise ProviderError(f"network error contacting {self.provider}: {e}") from e

    def _load_keys(self, force: bool = False) -> tuple[dict[str, Any], dict[str, Any]]:
        stale = time.monotonic() - self._fetched_at > _CACHE_TTL
        if force or stale or self._metadata is None or self._jwks is None:
            metadata = self._get_json(self.discovery_url)
            jwks_uri = metadata.get("jwks_uri")
            if not jwks_uri:
                raise ProviderError(f"{self.provider} service unavailable: discovery document has no jwks_uri")
            self._metadata = metadata
            self._jwks = self._get_json(jwks_uri)
            self._fetched_at = time.monotonic()
        return self._metadata, self._jwks

    def _issuers(self, metadata: dict[str, Any]) -> tuple[str, ...] | str:
        issuer = metadata.get("issuer", "")
        if issuer in _GOOGLE_ISSUERS:
            return _GOOGLE_ISSUERS
        return issuer

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _decode(self, id_token: str, metadata: dict[str, Any], jwks: dict[str, Any]) -> dict[str, Any]:
        return jwt.decode(
            id_token,
            jwks,
            algorithms=list(self.algorithms),
            audience=self.client_id,
            issuer=self._issuers(metadata),
            # at_hash needs the access token, which the client does not send.
            options={"verify_at_hash": False},
        )

    def _known_kid(self, id_token: str, jwks: dict[str, Any]) -> bool:
        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
        except JWTError:
            return True  # malformed; let decode() report it
        if kid is None:
            return True
        return any(k.get("kid") == kid for k in jwks.get("keys", []))

    def verify(self, id_token: str) -> SubjectIdentity:
        """Verify id_token and return the identity it asserts.

        Raises ProviderError on any failure.
        """
        if not self.client_id:
            raise ProviderError(f"{self.provider} sign-in is not configured")

        metadata, jwks = self._load_keys()
        if not self._known_kid(id_token, jwks):
            logger.info("Unknown key id in %s token -- refreshing JWKS", self.provider)
            metadata, jwks = self._load_keys(force=True)

        try:
            claims = self._decode(id_token, metadata, jwks)
        except ExpiredSignatureError as e:
            raise ProviderError("invalid federated token: token has expired") from e
        except JWTError as e:
            raise ProviderError(f"invalid federated token: {e}") from e

        return _claims_to_identity(claims, self.provider)


def _claims_to_identity(claims: dict[str, Any], provider: str) -> SubjectIdentity:
    """Map ID-token claims to a SubjectIdentity, enforcing email verification [H1].

    Some OIDC providers omit email_verified entirely -- that counts as
    unverified. Some send it as the string "true".
    """
    verified = claims.get("email_verified", False)
    if verified not in (True, "true", "True"):
        raise ProviderError(f"{provider} email is not verified")

    email = claims.get("email")
    subject = claims.get("sub")
    if not email or not subject:
        raise ProviderError(f"invalid federated token: missing email or sub claim from {provider}")

    return SubjectIdentity(
        subject_id=str(subject),
        email=str(email).lower(),
        display_name=claims.get("name") or "",
        email_verified=True,
        photo_ref=claims.get("picture"),
    )
