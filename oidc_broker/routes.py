"""
HTTP surface of the broker. Paths are fixed by the OIDC discovery contract.

The handlers only unpack parameters; each endpoint module holds the flow
itself and decides how its errors are delivered.
"""

from typing import Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from oidc_broker.broker import Broker
from oidc_broker.endpoints import discovery
from oidc_broker.endpoints.authorize import handle_authorize
from oidc_broker.endpoints.callback import handle_callback
from oidc_broker.endpoints.token import handle_token

authRouter = APIRouter()

# client_secret_basic; credentials are optional, nothing is verified
client_basic_auth = HTTPBasic(auto_error=False)


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


@authRouter.get("/.well-known/openid-configuration")
async def openid_configuration(broker: Broker = Depends(get_broker)):
    return JSONResponse(discovery.openid_configuration(broker.secrets))


@authRouter.get("/jwks")
async def jwks(broker: Broker = Depends(get_broker)):
    return JSONResponse(discovery.jwks(broker.secrets))


@authRouter.get("/authorize")
async def authorize_get(
    response_type: str = Query(...),
    client_id: str = Query(...),
    redirect_uri: str = Query(...),
    state: str = Query(...),
    nonce: str = Query(...),
    scope: str = Query(...),
    broker: Broker = Depends(get_broker),
):
    return await handle_authorize(broker, response_type, client_id, redirect_uri, state, nonce, scope)


@authRouter.post("/authorize")
async def authorize_post(
    response_type: str = Form(...),
    client_id: str = Form(...),
    redirect_uri: str = Form(...),
    state: str = Form(...),
    nonce: str = Form(...),
    scope: str = Form(...),
    broker: Broker = Depends(get_broker),
):
    return await handle_authorize(broker, response_type, client_id, redirect_uri, state, nonce, scope)


@authRouter.get("/callback")
async def callback(
    state: str | None = Query(None),
    code: str | None = Query(None),
    error: str | None = Query(None),
    error_description: str | None = Query(None),
    error_uri: str | None = Query(None),
    broker: Broker = Depends(get_broker),
):
    return await handle_callback(broker, state, code, error, error_description, error_uri)


@authRouter.post("/token")
async def token(
    grant_type: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    client_id: str | None = Form(None),
    refresh_token: str | None = Form(None),
    credentials: Optional[HTTPBasicCredentials] = Depends(client_basic_auth),
    broker: Broker = Depends(get_broker),
):
    if client_id is None and credentials is not None:
        # Source: https://www.rfc-editor.org/rfc/rfc6749#section-2.3.1
        client_id = unquote(credentials.username)

    return await handle_token(
        broker,
        grant_type,
        code=code,
        redirect_uri=redirect_uri,
        client_id=client_id,
        refresh_token=refresh_token,
    )
