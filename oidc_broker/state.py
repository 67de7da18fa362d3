"""Records kept in the state store between requests, and where they live."""

from datetime import timedelta

from pydantic import BaseModel

from oidc_broker.persistence import StateStore


# --- Namespaces ---

KV_AUTHORIZE_STATE = "KV_AUTHORIZE_STATE"
KV_ACCESS_TOKEN_STATE = "KV_ACCESS_TOKEN_STATE"
KV_REFRESH_TOKEN_STATE = "KV_REFRESH_TOKEN_STATE"

# computed values shared by all broker instances
KV_CACHE = "KV_CACHE"
KEY_PROVIDER_METADATA = "KEY_PROVIDER_METADATA"
KEY_SERVICEACCOUNT_OAUTH_TOKEN = "KEY_SERVICEACCOUNT_OAUTH_TOKEN"

# --- Lifetimes ---

AUTHORIZE_STATE_TTL = timedelta(minutes=10)
ACCESS_TOKEN_STATE_TTL = timedelta(minutes=10)
# upstream refresh tokens expire after a year of inactivity
REFRESH_TOKEN_STATE_TTL = timedelta(days=364)
PROVIDER_METADATA_TTL = timedelta(hours=1)


class PendingAuthorization(BaseModel):
    """Keyed by the upstream CSRF token handed out by /authorize."""

    client_id: str
    client_redirect: str
    client_state: str
    client_nonce: str
    upstream_nonce: str
    groups_scope: bool


class AccessExchangeState(BaseModel):
    """Keyed by the local authorization code handed out by /callback."""

    client_id: str
    client_redirect: str
    client_nonce: str
    upstream_nonce: str
    groups_scope: bool
    upstream_code: str


class RefreshState(BaseModel):
    """Keyed by the local refresh token handed out by /token."""

    client_id: str
    client_nonce: str
    upstream_nonce: str
    groups_scope: bool
    upstream_refresh: str


class StoredProviderMetadata(BaseModel):
    # The discovery document only references its key set by URL,
    # so the fetched JWKS is cached next to it.
    metadata: dict
    jwks: dict


async def store_refresh_state(store: StateStore, refresh_token: str, state: RefreshState) -> None:
    """Write (or re-write) a refresh record, restarting its 364 day lifetime."""
    await store.put(KV_REFRESH_TOKEN_STATE, refresh_token, state, REFRESH_TOKEN_STATE_TTL)
