from dataclasses import dataclass

import httpx

from oidc_broker.config import Secrets, Settings
from oidc_broker.groups import GoogleGroupResolver, GroupResolver
from oidc_broker.persistence import StateStore
from oidc_broker.tokens import TokenMinter
from oidc_broker.upstream import UpstreamClient


@dataclass
class Broker:
    """Collaborators shared by every endpoint for the lifetime of the process."""

    secrets: Secrets
    store: StateStore
    upstream: UpstreamClient
    groups: GroupResolver
    minter: TokenMinter


def build_broker(secrets_: Secrets, store: StateStore, http_client: httpx.AsyncClient) -> Broker:
    return Broker(
        secrets=secrets_,
        store=store,
        upstream=UpstreamClient(secrets_, store, http_client),
        groups=GoogleGroupResolver(secrets_, store, http_client),
        minter=TokenMinter(secrets_),
    )


def new_http_client() -> httpx.AsyncClient:
    # Outbound calls inherit this deadline; there is no other cancellation.
    return httpx.AsyncClient(timeout=Settings.HTTP_TIMEOUT_SECONDS)
