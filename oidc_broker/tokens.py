"""
Locally issued tokens.

Authorization codes, access tokens and refresh tokens are opaque random
strings used purely as lookup keys. ID tokens are RS256 JWTs signed with the
broker's private key; the matching public key is served from /jwks.
"""

import secrets
from typing import Optional

import jwt

from oidc_broker.config import Secret, Secrets


ID_TOKEN_ALGORITHM = "RS256"

# 128 bits for short-lived codes and access tokens, 256 bits for refresh tokens
SHORT_TOKEN_BYTES = 16
REFRESH_TOKEN_BYTES = 32


def new_opaque_token(byte_length: int) -> str:
    """Cryptographically random bytes, URL-safe base64 without padding."""
    return secrets.token_urlsafe(byte_length)


def sign_identity_token(
    private_key: str,
    *,
    issuer: str,
    audience: str,
    subject: str,
    nonce: str,
    issued_at: int,
    expiry: int,
    groups: Optional[list[str]] = None,
    kid: Optional[str] = None,
) -> str:
    """
    Build and sign an OIDC ID token.

    `groups` is left out of the claims entirely when it is None; an empty
    list is a valid answer and is kept.

    Source: https://openid.net/specs/openid-connect-core-1_0.html#IDToken
    """
    claims = {
        "iss": issuer,
        "aud": audience,
        "sub": subject,
        "exp": expiry,
        "iat": issued_at,
        "nonce": nonce,
    }
    if groups is not None:
        claims["groups"] = groups

    headers = {"kid": kid} if kid else None
    return jwt.encode(claims, private_key, algorithm=ID_TOKEN_ALGORITHM, headers=headers)


class TokenMinter:
    """Signs ID tokens with the key material held in Secrets."""

    def __init__(self, secrets_: Secrets):
        self.secrets = secrets_

    def sign_identity_token(
        self,
        *,
        audience: str,
        subject: str,
        nonce: str,
        issued_at: int,
        expiry: int,
        groups: Optional[list[str]] = None,
    ) -> str:
        return sign_identity_token(
            self.secrets.get(Secret.JWK_PRIVATE),
            issuer=self.secrets.base_url,
            audience=audience,
            subject=subject,
            nonce=nonce,
            issued_at=issued_at,
            expiry=expiry,
            groups=groups,
            kid=self.secrets.public_jwk().get("kid"),
        )
