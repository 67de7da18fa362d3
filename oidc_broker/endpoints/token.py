"""
## Token Endpoint

Serves the `authorization_code` and `refresh_token` grants. Both end in a
freshly signed local ID token; the access token handed out alongside it is
an opaque placeholder that nothing ever validates.

Sources:
  https://www.rfc-editor.org/rfc/rfc6749#section-4.1.3
  https://www.rfc-editor.org/rfc/rfc6749#section-6
  https://openid.net/specs/openid-connect-core-1_0.html#TokenResponse
"""

from typing import Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from oidc_broker.broker import Broker
from oidc_broker.config import normalize_url
from oidc_broker.logging_util import get_logger
from oidc_broker.state import (
    KV_ACCESS_TOKEN_STATE,
    KV_REFRESH_TOKEN_STATE,
    AccessExchangeState,
    RefreshState,
    store_refresh_state,
)
from oidc_broker.tokens import REFRESH_TOKEN_BYTES, SHORT_TOKEN_BYTES, new_opaque_token
from oidc_broker.upstream import IdentityResult
from oidc_broker.utils.exceptions import (
    TOKEN_HEADERS,
    TokenError,
    UpstreamTokenError,
    token_error_response,
    token_server_error_response,
)

logger = get_logger(__name__)

ACCESS_TOKEN_EXPIRES_IN = 3600


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = ACCESS_TOKEN_EXPIRES_IN
    refresh_token: Optional[str] = None
    id_token: str


def _require(value: Optional[str], name: str) -> str:
    if not value:
        raise TokenError("invalid_request", f"Missing {name}")
    return value


async def _mint_id_token(
    broker: Broker,
    identity: IdentityResult,
    client_id: str,
    client_nonce: str,
    groups_scope: bool,
) -> str:
    groups = await broker.groups.resolve_groups(identity.email) if groups_scope else None

    # The client's nonce is bound here, never the one sent upstream.
    return broker.minter.sign_identity_token(
        audience=client_id,
        subject=identity.subject,
        nonce=client_nonce,
        issued_at=identity.issued_at,
        expiry=identity.expiry,
        groups=groups,
    )


async def exchange_authorization_code(
    broker: Broker,
    code: str,
    redirect_uri: str,
    client_id: str,
) -> TokenResponse:
    state = await broker.store.get(KV_ACCESS_TOKEN_STATE, code, AccessExchangeState)
    if state is None:
        raise TokenError("invalid_grant", "Invalid code")

    try:
        redirect_uri = normalize_url(redirect_uri)
    except ValueError:
        raise TokenError("invalid_grant", "Invalid redirect_uri")

    if state.client_id != client_id:
        logger.warning(f"Authorization code presented by client_id: {client_id} belongs to another client")
        raise TokenError("invalid_grant", "Invalid client_id")
    if state.client_redirect != redirect_uri:
        logger.warning(f"Authorization code presented by client_id: {client_id} with a different redirect_uri")
        raise TokenError("invalid_grant", "Invalid redirect_uri")

    identity = await broker.upstream.exchange_code(state.upstream_code, state.upstream_nonce)

    id_token = await _mint_id_token(broker, identity, state.client_id, state.client_nonce, state.groups_scope)

    refresh_token = None
    if identity.refresh_token:
        refresh_token = new_opaque_token(REFRESH_TOKEN_BYTES)
        await store_refresh_state(broker.store, refresh_token, RefreshState(
            client_id=state.client_id,
            client_nonce=state.client_nonce,
            upstream_nonce=state.upstream_nonce,
            groups_scope=state.groups_scope,
            upstream_refresh=identity.refresh_token,
        ))
    else:
        logger.warning(f"Upstream issued no refresh token for client_id: {client_id}")

    # Consumed only once the response is ready; a failed exchange leaves it untouched.
    await broker.store.delete(KV_ACCESS_TOKEN_STATE, code)

    logger.info(f"Issued tokens for client_id: {client_id}")
    return TokenResponse(
        access_token=new_opaque_token(SHORT_TOKEN_BYTES),
        refresh_token=refresh_token,
        id_token=id_token,
    )


async def exchange_refresh_token(
    broker: Broker,
    refresh_token: str,
    client_id: Optional[str] = None,
) -> TokenResponse:
    state = await broker.store.get(KV_REFRESH_TOKEN_STATE, refresh_token, RefreshState)
    if state is None:
        # no record means the user is not (or no longer) authorized
        raise TokenError("invalid_grant", "Invalid refresh_token")

    if client_id is not None and client_id != state.client_id:
        logger.warning(f"Refresh token presented by client_id: {client_id} belongs to another client")
        raise TokenError("invalid_grant", "Invalid client_id")

    try:
        identity = await broker.upstream.exchange_refresh(state.upstream_refresh, state.upstream_nonce)
    except UpstreamTokenError as e:
        if e.error == "invalid_grant":
            # upstream credential was revoked or expired, revoke ours too
            logger.info(f"Upstream refresh token revoked, dropping local refresh token for client_id: {state.client_id}")
            await broker.store.delete(KV_REFRESH_TOKEN_STATE, refresh_token)
        raise

    id_token = await _mint_id_token(broker, identity, state.client_id, state.client_nonce, state.groups_scope)

    # Re-writing restarts the record's lifetime, so the local token never
    # needs rotating; a replacement upstream credential is swapped in.
    if identity.refresh_token and identity.refresh_token != state.upstream_refresh:
        state.upstream_refresh = identity.refresh_token
    await store_refresh_state(broker.store, refresh_token, state)

    logger.info(f"Refreshed tokens for client_id: {state.client_id}")
    return TokenResponse(
        access_token=new_opaque_token(SHORT_TOKEN_BYTES),
        refresh_token=refresh_token,
        id_token=id_token,
    )


async def handle_token(
    broker: Broker,
    grant_type: Optional[str],
    code: Optional[str] = None,
    redirect_uri: Optional[str] = None,
    client_id: Optional[str] = None,
    refresh_token: Optional[str] = None,
):
    try:
        grant_type = _require(grant_type, "grant_type")
        if grant_type == "authorization_code":
            response = await exchange_authorization_code(
                broker,
                _require(code, "code"),
                _require(redirect_uri, "redirect_uri"),
                _require(client_id, "client_id"),
            )
        elif grant_type == "refresh_token":
            response = await exchange_refresh_token(broker, _require(refresh_token, "refresh_token"), client_id)
        else:
            raise TokenError("unsupported_grant_type")
    except TokenError as e:
        logger.warning(f"Token request rejected for client_id: {client_id}: {e}")
        return token_error_response(e)
    except Exception:
        logger.exception(f"Token request failed for client_id: {client_id}")
        return token_server_error_response()

    return JSONResponse(content=response.model_dump(exclude_none=True), headers=TOKEN_HEADERS)
