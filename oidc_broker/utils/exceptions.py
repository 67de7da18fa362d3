from typing import Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from oidc_broker.logging_util import get_logger


logger = get_logger(__name__)

# Token responses carry bearer material and must never be cached.
# Source: https://www.rfc-editor.org/rfc/rfc6749#section-5.1
TOKEN_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
}


class BrokerError(Exception):
    """Base class for every failure raised inside the broker."""


class ProtocolError(BrokerError):
    """An OAuth2 error code that is safe to hand back to the client."""

    def __init__(self, error: str, error_description: Optional[str] = None, error_uri: Optional[str] = None):
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.error_description:
            return f"error: {self.error}, error_description: {self.error_description}"
        return f"error: {self.error}"

    def to_params(self) -> dict[str, str]:
        params = {"error": self.error}
        if self.error_description:
            params["error_description"] = self.error_description
        if self.error_uri:
            params["error_uri"] = self.error_uri
        return params


class AuthorizeError(ProtocolError):
    """
    Authorization endpoint error, delivered as a redirect to the client.

    Source: https://www.rfc-editor.org/rfc/rfc6749.html#section-4.1.2.1
    """


class TokenError(ProtocolError):
    """
    Token endpoint error, delivered as a JSON body with HTTP 400.

    Source: https://www.rfc-editor.org/rfc/rfc6749#section-5.2
    """


class UpstreamTokenError(TokenError):
    """Structured error body returned by the upstream token endpoint."""


class MissingSecretError(BrokerError):
    def __init__(self, names: list[str]):
        self.names = names
        super().__init__("Missing required secret(s): " + ", ".join(names))


class StateNotFoundError(BrokerError):
    def __init__(self, namespace: str):
        self.namespace = namespace
        # the key is a capability, keep it out of the message
        super().__init__(f'Missing entry from store "{namespace}"')


class StateDeserializationError(BrokerError):
    pass


class UpstreamRequestError(BrokerError):
    """Transport-level or unstructured HTTP failure talking to the upstream provider."""


class DiscoveryError(UpstreamRequestError):
    pass


class MissingIdTokenError(BrokerError):
    def __init__(self):
        super().__init__("Upstream token response did not contain an id_token.")


class MissingEmailClaimError(BrokerError):
    def __init__(self):
        super().__init__("Upstream id_token did not include an email claim.")


class ClaimsVerificationError(BrokerError):
    pass


class GroupsApiError(BrokerError):
    pass


def token_error_response(exc: TokenError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=exc.to_params(),
        headers=TOKEN_HEADERS,
    )


def token_server_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "server_error"},
        headers=TOKEN_HEADERS,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):

    invalid_params = []
    for error in exc.errors():
        invalid_params.append({
            "field": ".".join(map(str, error["loc"])),
            "reason": error["msg"],
            "type": error["type"]
        })

    logger.warning(
        f"Rejected malformed {request.method} {request.url.path}",
        extra={"errors": invalid_params}
    )

    fields = sorted({p["field"].rsplit(".", 1)[-1] for p in invalid_params})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "invalid_request",
            "error_description": "Missing or invalid parameter(s): " + ", ".join(fields),
        },
        headers=TOKEN_HEADERS if request.url.path == "/token" else None,
    )
