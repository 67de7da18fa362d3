from oidc_broker.config import Secrets
from oidc_broker.tokens import ID_TOKEN_ALGORITHM


def openid_configuration(secrets_: Secrets) -> dict:
    """
    Sources:
      https://openid.net/specs/openid-connect-discovery-1_0.html#ProviderMetadata
      https://accounts.google.com/.well-known/openid-configuration
    """
    base_url = secrets_.base_url
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/authorize",
        "token_endpoint": f"{base_url}/token",
        "jwks_uri": f"{base_url}/jwks",
        "response_types_supported": ["code", "none"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [ID_TOKEN_ALGORITHM],
        "scopes_supported": ["openid", "email"],
        "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
        "claims_supported": ["aud", "email", "exp", "groups", "iat", "iss", "sub"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
    }


def jwks(secrets_: Secrets) -> dict:
    return {"keys": [secrets_.public_jwk()]}
