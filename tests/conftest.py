import json

import httpx
import pytest

from oidc_broker.broker import Broker
from oidc_broker.config import MappingSecretProvider, Secrets
from oidc_broker.groups import GoogleGroupResolver
from oidc_broker.persistence import InMemoryStore, StateStore
from oidc_broker.tokens import TokenMinter
from oidc_broker.upstream import UpstreamClient
from tests.fakes import (
    ADMIN_EMAIL,
    BROKER_URL,
    CLIENT_ID,
    CLIENT_REDIRECT,
    GROUPS_URL,
    OTHER_CLIENT_ID,
    OTHER_CLIENT_REDIRECT,
    SERVICE_TOKEN_URL,
    UPSTREAM_CLIENT_ID,
    UPSTREAM_CLIENT_SECRET,
    UPSTREAM_ISSUER,
    WORKSPACE_DOMAIN,
    FakeUpstream,
    generate_rsa_key,
    private_pem,
    public_jwk,
)


@pytest.fixture(scope="session")
def broker_key():
    return generate_rsa_key()


@pytest.fixture(scope="session")
def upstream_key():
    return generate_rsa_key()


@pytest.fixture(scope="session")
def service_account_key():
    return generate_rsa_key()


@pytest.fixture
def secret_values(broker_key, service_account_key) -> dict[str, str]:
    return {
        "CLIENT_SECRETS": json.dumps({
            CLIENT_ID: {"redirect_uris": [CLIENT_REDIRECT]},
            OTHER_CLIENT_ID: {"redirect_uris": [OTHER_CLIENT_REDIRECT]},
        }),
        "WORKER_DOMAIN": BROKER_URL,
        "JWK_PRIVATE": private_pem(broker_key),
        "JWK_PUBLIC": json.dumps(public_jwk(broker_key, "broker-key-1")),
        "GOOGLE_ADMIN_EMAIL": ADMIN_EMAIL,
        "GOOGLE_CLIENT_ID": UPSTREAM_CLIENT_ID,
        "GOOGLE_CLIENT_SECRET": UPSTREAM_CLIENT_SECRET,
        "GOOGLE_SERVICEACCOUNT_KEY": json.dumps({
            "type": "service_account",
            "client_email": "broker@project.iam.gserviceaccount.com",
            "private_key": private_pem(service_account_key),
        }),
        "GOOGLE_WORKSPACE_DOMAIN": WORKSPACE_DOMAIN,
    }


@pytest.fixture
def secrets_(secret_values) -> Secrets:
    return Secrets(MappingSecretProvider(secret_values))


@pytest.fixture
def upstream(upstream_key) -> FakeUpstream:
    return FakeUpstream(upstream_key)


@pytest.fixture
async def http_client(upstream):
    async with httpx.AsyncClient(transport=upstream.transport()) as client:
        yield client


@pytest.fixture
def store() -> StateStore:
    return StateStore(InMemoryStore())


@pytest.fixture
def broker(secrets_, store, http_client) -> Broker:
    return Broker(
        secrets=secrets_,
        store=store,
        upstream=UpstreamClient(secrets_, store, http_client, issuer_url=UPSTREAM_ISSUER),
        groups=GoogleGroupResolver(
            secrets_, store, http_client, token_url=SERVICE_TOKEN_URL, groups_url=GROUPS_URL
        ),
        minter=TokenMinter(secrets_),
    )
