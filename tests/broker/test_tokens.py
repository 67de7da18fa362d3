import base64

import jwt

from oidc_broker.tokens import (
    REFRESH_TOKEN_BYTES,
    SHORT_TOKEN_BYTES,
    TokenMinter,
    new_opaque_token,
    sign_identity_token,
)
from tests.fakes import BROKER_URL, CLIENT_ID, private_pem


def decode_urlsafe(token: str) -> bytes:
    return base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))


class TestOpaqueTokens:

    def test_short_token_has_128_bits(self):
        assert len(decode_urlsafe(new_opaque_token(SHORT_TOKEN_BYTES))) == 16

    def test_refresh_token_has_256_bits(self):
        assert len(decode_urlsafe(new_opaque_token(REFRESH_TOKEN_BYTES))) == 32

    def test_tokens_are_url_safe_without_padding(self):
        token = new_opaque_token(SHORT_TOKEN_BYTES)
        assert "=" not in token and "+" not in token and "/" not in token

    def test_tokens_are_unique(self):
        assert len({new_opaque_token(SHORT_TOKEN_BYTES) for _ in range(100)}) == 100


class TestSignIdentityToken:

    def make_token(self, key, **overrides):
        fields = dict(
            issuer=BROKER_URL,
            audience=CLIENT_ID,
            subject="user-1",
            nonce="client-nonce",
            issued_at=1_700_000_000,
            expiry=1_700_003_600,
        )
        fields.update(overrides)
        return sign_identity_token(private_pem(key), **fields)

    def decode(self, key, token):
        return jwt.decode(
            token,
            key.public_key(),
            algorithms=["RS256"],
            audience=CLIENT_ID,
            options={"verify_exp": False, "verify_iat": False},
        )

    def test_claims_are_exact(self, broker_key):
        claims = self.decode(broker_key, self.make_token(broker_key))

        assert claims == {
            "iss": BROKER_URL,
            "aud": CLIENT_ID,
            "sub": "user-1",
            "nonce": "client-nonce",
            "iat": 1_700_000_000,
            "exp": 1_700_003_600,
        }

    def test_groups_claim_is_included_when_given(self, broker_key):
        claims = self.decode(broker_key, self.make_token(broker_key, groups=["eng", "ops"]))
        assert claims["groups"] == ["eng", "ops"]

    def test_empty_groups_are_kept(self, broker_key):
        claims = self.decode(broker_key, self.make_token(broker_key, groups=[]))
        assert claims["groups"] == []

    def test_signed_with_rs256(self, broker_key):
        header = jwt.get_unverified_header(self.make_token(broker_key, kid="k1"))
        assert header["alg"] == "RS256"
        assert header["kid"] == "k1"

    def test_no_kid_header_without_kid(self, broker_key):
        assert "kid" not in jwt.get_unverified_header(self.make_token(broker_key))


class TestTokenMinter:

    def test_uses_broker_issuer_and_published_kid(self, secrets_, broker_key):
        token = TokenMinter(secrets_).sign_identity_token(
            audience=CLIENT_ID,
            subject="user-1",
            nonce="n",
            issued_at=1_700_000_000,
            expiry=1_700_003_600,
        )

        assert jwt.get_unverified_header(token)["kid"] == "broker-key-1"
        claims = jwt.decode(
            token,
            broker_key.public_key(),
            algorithms=["RS256"],
            audience=CLIENT_ID,
            issuer=BROKER_URL,
            options={"verify_exp": False, "verify_iat": False},
        )
        assert "groups" not in claims
