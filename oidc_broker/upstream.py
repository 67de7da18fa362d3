"""
Relying-party side of the broker: everything that talks to the upstream
OpenID Connect provider.

The provider's discovery document and its signing keys are cached in the
state store for an hour so that independent broker instances share them.
Concurrent requests racing on a cold cache may each fetch the document; the
last write wins and either copy is equally valid.
"""

import hmac
import secrets
from typing import Iterable, Optional

import httpx
import jwt
from pydantic import BaseModel

from oidc_broker.config import Secret, Secrets, Settings, callback_url
from oidc_broker.logging_util import get_logger
from oidc_broker.persistence import StateStore
from oidc_broker.state import (
    KEY_PROVIDER_METADATA,
    KV_CACHE,
    PROVIDER_METADATA_TTL,
    StoredProviderMetadata,
)
from oidc_broker.utils.exceptions import (
    ClaimsVerificationError,
    DiscoveryError,
    MissingEmailClaimError,
    MissingIdTokenError,
    UpstreamRequestError,
    UpstreamTokenError,
)
from oidc_broker.utils.urls import build_url_with_params

logger = get_logger(__name__)

# 23 bytes gives a 1 in 10^55 guess chance. The CSRF token doubles as a
# ten minute password for the pending authorization record.
CSRF_TOKEN_BYTES = 23
NONCE_BYTES = 32

REQUIRED_METADATA_FIELDS = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")


class UpstreamAuthorization(BaseModel):
    redirect_url: str
    csrf_token: str
    nonce: str


class IdentityResult(BaseModel):
    """Verified identity extracted from an upstream token response."""

    refresh_token: Optional[str] = None
    email: str
    subject: str
    issued_at: int
    expiry: int


class UpstreamClient:

    def __init__(
        self,
        secrets_: Secrets,
        store: StateStore,
        http_client: httpx.AsyncClient,
        issuer_url: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ):
        self.secrets = secrets_
        self.store = store
        self.http = http_client
        self.issuer_url = (issuer_url or Settings.UPSTREAM_ISSUER_URL).rstrip("/")
        self._redirect_uri = redirect_uri

    @property
    def client_id(self) -> str:
        return self.secrets.get(Secret.GOOGLE_CLIENT_ID)

    @property
    def redirect_uri(self) -> str:
        if self._redirect_uri is None:
            self._redirect_uri = callback_url(self.secrets)
        return self._redirect_uri

    # ---------- Discovery ----------

    async def get_provider_metadata(self, force_refresh: bool = False) -> StoredProviderMetadata:
        """Cached discovery document plus key set, fetched when missing or stale."""
        if not force_refresh:
            cached = await self.store.get(KV_CACHE, KEY_PROVIDER_METADATA, StoredProviderMetadata)
            if cached is not None:
                return cached

        logger.info(f"Fetching provider metadata from {self.issuer_url}")
        metadata = await self._get_json(f"{self.issuer_url}/.well-known/openid-configuration")

        missing = [f for f in REQUIRED_METADATA_FIELDS if not metadata.get(f)]
        if missing:
            raise DiscoveryError(f"Discovery document is missing: {', '.join(missing)}")
        if metadata["issuer"].rstrip("/") != self.issuer_url:
            raise DiscoveryError(f"Discovery issuer {metadata['issuer']!r} does not match {self.issuer_url!r}")

        jwks = await self._get_json(metadata["jwks_uri"])
        if not isinstance(jwks.get("keys"), list):
            raise DiscoveryError("JWKS document has no key list")

        stored = StoredProviderMetadata(metadata=metadata, jwks=jwks)
        await self.store.put(KV_CACHE, KEY_PROVIDER_METADATA, stored, PROVIDER_METADATA_TTL)
        return stored

    async def _get_json(self, url: str) -> dict:
        try:
            response = await self.http.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DiscoveryError(f"Failed to fetch {url}: {e}") from e
        if not isinstance(document, dict):
            raise DiscoveryError(f"Expected a JSON object from {url}")
        return document

    # ---------- Authorization ----------

    async def build_authorization_url(self, scopes: Iterable[str]) -> UpstreamAuthorization:
        """
        Upstream authorization URL for the code flow. `openid` and `email`
        are always requested; the caller's scopes are appended.
        """
        provider = await self.get_provider_metadata()

        requested = ["openid", "email"]
        for scope in scopes:
            if scope not in requested:
                requested.append(scope)

        csrf_token = secrets.token_urlsafe(CSRF_TOKEN_BYTES)
        nonce = secrets.token_urlsafe(NONCE_BYTES)

        redirect_url = build_url_with_params(provider.metadata["authorization_endpoint"], {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(requested),
            "state": csrf_token,
            "nonce": nonce,
        })
        return UpstreamAuthorization(redirect_url=redirect_url, csrf_token=csrf_token, nonce=nonce)

    # ---------- Token exchange ----------

    async def exchange_code(self, code: str, expected_nonce: str) -> IdentityResult:
        return await self._exchange({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }, expected_nonce)

    async def exchange_refresh(self, refresh_token: str, expected_nonce: str) -> IdentityResult:
        return await self._exchange({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }, expected_nonce)

    async def _exchange(self, form: dict[str, str], expected_nonce: str) -> IdentityResult:
        provider = await self.get_provider_metadata()
        token_response = await self._request_token(provider.metadata["token_endpoint"], form)

        id_token = token_response.get("id_token")
        if not id_token:
            raise MissingIdTokenError()

        claims = await self._verify_id_token(id_token, provider, expected_nonce)

        email = claims.get("email")
        if not email:
            raise MissingEmailClaimError()

        return IdentityResult(
            refresh_token=token_response.get("refresh_token"),
            email=email,
            subject=str(claims["sub"]),
            issued_at=int(claims["iat"]),
            expiry=int(claims["exp"]),
        )

    async def _request_token(self, token_endpoint: str, form: dict[str, str]) -> dict:
        """
        POST to the upstream token endpoint with HTTP Basic client credentials.

        A structured OAuth2 error body is raised as UpstreamTokenError so that
        callers can tell a rejected grant apart from a network failure.
        """
        try:
            response = await self.http.post(
                token_endpoint,
                data=form,
                auth=(self.client_id, self.secrets.get(Secret.GOOGLE_CLIENT_SECRET)),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise UpstreamRequestError(f"Upstream token request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_success:
            if not isinstance(body, dict):
                raise UpstreamRequestError("Upstream token response is not a JSON object")
            return body

        if 400 <= response.status_code < 500 and isinstance(body, dict) and isinstance(body.get("error"), str):
            logger.warning(f"Upstream token endpoint rejected {form['grant_type']} grant: {body['error']}")
            raise UpstreamTokenError(
                body["error"],
                body.get("error_description"),
                body.get("error_uri"),
            )

        raise UpstreamRequestError(f"Upstream token endpoint returned HTTP {response.status_code}")

    # ---------- ID token verification ----------

    async def _verify_id_token(self, id_token: str, provider: StoredProviderMetadata, expected_nonce: str) -> dict:
        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
        except jwt.PyJWTError as e:
            raise ClaimsVerificationError(f"Malformed id_token: {e}") from e

        key = self._find_signing_key(provider.jwks, kid)
        if key is None:
            # the provider may have rotated its keys since we cached them
            provider = await self.get_provider_metadata(force_refresh=True)
            key = self._find_signing_key(provider.jwks, kid)
            if key is None:
                raise ClaimsVerificationError(f"No upstream signing key matches kid {kid!r}")

        algorithms = [
            alg for alg in provider.metadata.get("id_token_signing_alg_values_supported", ["RS256"])
            if alg != "none" and not alg.startswith("HS")
        ]

        try:
            claims = jwt.decode(
                id_token,
                key.key,
                algorithms=algorithms,
                audience=self.client_id,
                issuer=provider.metadata["issuer"],
                options={"require": ["iss", "aud", "sub", "exp", "iat"]},
            )
        except jwt.PyJWTError as e:
            raise ClaimsVerificationError(f"Invalid upstream id_token: {e}") from e

        nonce = claims.get("nonce")
        if not isinstance(nonce, str) or not hmac.compare_digest(nonce, expected_nonce):
            raise ClaimsVerificationError("Upstream id_token nonce does not match")

        return claims

    @staticmethod
    def _find_signing_key(jwks: dict, kid: Optional[str]) -> Optional[jwt.PyJWK]:
        try:
            keys = jwt.PyJWKSet.from_dict(jwks).keys
        except jwt.PyJWTError:
            return None

        keys = [k for k in keys if k.public_key_use in (None, "sig")]
        if kid is None:
            return keys[0] if len(keys) == 1 else None
        return next((k for k in keys if k.key_id == kid), None)
