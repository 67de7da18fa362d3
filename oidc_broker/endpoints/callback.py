"""
## Callback Endpoint

Redirect target registered with the upstream provider. Swaps the upstream
authorization code for a local one and sends the user back to the client.
"""

from typing import Optional

from fastapi import status
from fastapi.responses import PlainTextResponse, RedirectResponse

from oidc_broker.broker import Broker
from oidc_broker.endpoints.authorize import error_redirect_url
from oidc_broker.logging_util import get_logger
from oidc_broker.state import (
    ACCESS_TOKEN_STATE_TTL,
    KV_ACCESS_TOKEN_STATE,
    KV_AUTHORIZE_STATE,
    AccessExchangeState,
    PendingAuthorization,
)
from oidc_broker.tokens import SHORT_TOKEN_BYTES, new_opaque_token
from oidc_broker.utils.exceptions import AuthorizeError, StateNotFoundError
from oidc_broker.utils.urls import build_url_with_params

logger = get_logger(__name__)


def unauthorized_response() -> PlainTextResponse:
    return PlainTextResponse("Unauthorized", status_code=status.HTTP_401_UNAUTHORIZED)


async def load_pending_authorization(broker: Broker, csrf_token: str) -> PendingAuthorization:
    pending = await broker.store.get(KV_AUTHORIZE_STATE, csrf_token, PendingAuthorization)
    if pending is None:
        raise StateNotFoundError(KV_AUTHORIZE_STATE)
    return pending


async def complete_authorization(broker: Broker, csrf_token: str, pending: PendingAuthorization, upstream_code: str) -> str:
    """Park the upstream code under a new local code and return the client redirect URL."""
    code = new_opaque_token(SHORT_TOKEN_BYTES)

    await broker.store.put(
        KV_ACCESS_TOKEN_STATE,
        code,
        AccessExchangeState(
            client_id=pending.client_id,
            client_redirect=pending.client_redirect,
            client_nonce=pending.client_nonce,
            upstream_nonce=pending.upstream_nonce,
            groups_scope=pending.groups_scope,
            upstream_code=upstream_code,
        ),
        ACCESS_TOKEN_STATE_TTL,
    )
    # The store has no delete-on-read; dropping the record here narrows the
    # replay window to concurrent callbacks, the TTL still bounds the rest.
    await broker.store.delete(KV_AUTHORIZE_STATE, csrf_token)

    logger.info(f"Issued authorization code for client_id: {pending.client_id}")
    return build_url_with_params(pending.client_redirect, {"code": code, "state": pending.client_state})


async def handle_callback(
    broker: Broker,
    state: Optional[str],
    code: Optional[str],
    error: Optional[str],
    error_description: Optional[str],
    error_uri: Optional[str],
):
    if not state:
        logger.warning("Callback without state")
        return unauthorized_response()

    try:
        pending = await load_pending_authorization(broker, state)
    except Exception as e:
        logger.warning(f"Callback state lookup failed: {e}")
        return unauthorized_response()

    if error:
        # Forwarded unchanged, including codes we don't know about.
        logger.warning(f"Upstream authorization failed for client_id: {pending.client_id}: {error}")
        upstream_error = AuthorizeError(error, error_description, error_uri)
        return RedirectResponse(
            error_redirect_url(pending.client_redirect, upstream_error, pending.client_state),
            status_code=status.HTTP_302_FOUND,
        )

    if not code:
        logger.warning(f"Upstream callback for client_id: {pending.client_id} carried neither code nor error")
        return RedirectResponse(
            error_redirect_url(pending.client_redirect, AuthorizeError("server_error"), pending.client_state),
            status_code=status.HTTP_302_FOUND,
        )

    try:
        redirect_url = await complete_authorization(broker, state, pending, code)
    except Exception:
        logger.exception(f"Callback failed for client_id: {pending.client_id}")
        return RedirectResponse(
            error_redirect_url(pending.client_redirect, AuthorizeError("server_error"), pending.client_state),
            status_code=status.HTTP_302_FOUND,
        )

    return RedirectResponse(redirect_url, status_code=status.HTTP_302_FOUND)
