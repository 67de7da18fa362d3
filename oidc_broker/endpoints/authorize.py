"""
## Authorization Endpoint

First leg of the authorization code flow. The client's request is validated
against the client registry and then handed over to the upstream provider;
everything needed to finish the flow is parked in the state store under the
upstream CSRF token, which the provider echoes back to /callback.

Sources:
  https://www.rfc-editor.org/rfc/rfc6749.html#section-4.1.1
  https://openid.net/specs/openid-connect-core-1_0.html#AuthRequest
"""

from fastapi import status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from oidc_broker.broker import Broker
from oidc_broker.config import normalize_url
from oidc_broker.logging_util import get_logger
from oidc_broker.scope import parse_scopes
from oidc_broker.state import AUTHORIZE_STATE_TTL, KV_AUTHORIZE_STATE, PendingAuthorization
from oidc_broker.utils.exceptions import AuthorizeError, ProtocolError
from oidc_broker.utils.urls import build_url_with_params

logger = get_logger(__name__)


class AuthorizeRequest(BaseModel):
    client_id: str
    redirect_uri: str
    state: str
    nonce: str
    scope: str


def error_redirect_url(client_redirect: str, error: ProtocolError, client_state: str) -> str:
    """
    Error delivery for the authorization and callback endpoints.

    Source: https://www.rfc-editor.org/rfc/rfc6749.html#section-4.1.2.1
    """
    return build_url_with_params(client_redirect, {**error.to_params(), "state": client_state})


async def start_authorization(broker: Broker, request: AuthorizeRequest) -> str:
    """
    Validate the client's request and return the upstream URL to redirect to.

    Raises AuthorizeError for anything the client should be told about.
    """
    scopes = parse_scopes(request.scope)

    # Source: https://openid.net/specs/openid-connect-core-1_0.html#AuthRequestValidation
    if not scopes.openid:
        raise AuthorizeError("invalid_scope", 'scope field must contain "openid"')

    client = broker.secrets.client_registry().get(request.client_id)
    if client is None:
        raise AuthorizeError("access_denied", "Unregistered client_id")

    if not client.allows(request.redirect_uri):
        raise AuthorizeError("access_denied", "Unregistered redirect_uri")

    # Only the client's remaining scopes travel upstream, no other params.
    upstream = await broker.upstream.build_authorization_url(scopes.forwarded)

    await broker.store.put(
        KV_AUTHORIZE_STATE,
        upstream.csrf_token,
        PendingAuthorization(
            client_id=request.client_id,
            client_redirect=request.redirect_uri,
            client_state=request.state,
            client_nonce=request.nonce,
            upstream_nonce=upstream.nonce,
            groups_scope=scopes.groups,
        ),
        AUTHORIZE_STATE_TTL,
    )

    logger.info(f"Started upstream authorization for client_id: {request.client_id}")
    return upstream.redirect_url


async def handle_authorize(
    broker: Broker,
    response_type: str,
    client_id: str,
    redirect_uri: str,
    state: str,
    nonce: str,
    scope: str,
):
    # The redirect URI is unchecked at this point, so these two are answered directly.
    if response_type != "code":
        logger.warning(f"Unsupported response_type {response_type!r} from client_id: {client_id}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "unsupported_response_type"},
        )
    try:
        redirect_uri = normalize_url(redirect_uri)
    except ValueError:
        logger.warning(f"Unparsable redirect_uri from client_id: {client_id}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "invalid_request", "error_description": "redirect_uri is not a valid URL"},
        )

    request = AuthorizeRequest(
        client_id=client_id,
        redirect_uri=redirect_uri,
        state=state,
        nonce=nonce,
        scope=scope,
    )

    try:
        upstream_url = await start_authorization(broker, request)
    except AuthorizeError as e:
        logger.warning(f"Authorization rejected for client_id: {client_id}: {e}")
        return RedirectResponse(error_redirect_url(redirect_uri, e, state), status_code=status.HTTP_302_FOUND)
    except Exception:
        logger.exception(f"Authorization failed for client_id: {client_id}")
        return RedirectResponse(
            error_redirect_url(redirect_uri, AuthorizeError("server_error"), state),
            status_code=status.HTTP_302_FOUND,
        )

    return RedirectResponse(upstream_url, status_code=status.HTTP_302_FOUND)
