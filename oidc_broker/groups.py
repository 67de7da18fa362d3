"""
Group membership lookup through the Google Admin SDK Directory API.

Source: https://developers.google.com/admin-sdk/directory/v1/guides/manage-groups#get_all_member_groups
"""

import time
from datetime import timedelta
from typing import Optional, Protocol

import httpx
import jwt

from oidc_broker.config import Secret, Secrets, Settings
from oidc_broker.logging_util import get_logger
from oidc_broker.persistence import StateStore
from oidc_broker.state import KEY_SERVICEACCOUNT_OAUTH_TOKEN, KV_CACHE
from oidc_broker.utils.exceptions import GroupsApiError

logger = get_logger(__name__)

GROUPS_READONLY_SCOPE = "https://www.googleapis.com/auth/admin.directory.group.readonly"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

SERVICE_TOKEN_LIFETIME = timedelta(hours=1)
# cache a little shorter than the issuer-stated lifetime
SERVICE_TOKEN_CACHE_TTL = SERVICE_TOKEN_LIFETIME - timedelta(minutes=1)


class GroupResolver(Protocol):
    async def resolve_groups(self, email: str) -> list[str]:
        ...


class GoogleGroupResolver:
    """
    Returns the groups of the configured workspace domain that a user belongs to.

    Groups are identified by the local part of their email address
    (`<name>@<domain>` -> `name`) because group titles are not unique.
    """

    def __init__(
        self,
        secrets_: Secrets,
        store: StateStore,
        http_client: httpx.AsyncClient,
        token_url: Optional[str] = None,
        groups_url: Optional[str] = None,
    ):
        self.secrets = secrets_
        self.store = store
        self.http = http_client
        self.token_url = token_url or Settings.SERVICE_ACCOUNT_TOKEN_URL
        self.groups_url = groups_url or Settings.DIRECTORY_GROUPS_URL

    async def resolve_groups(self, email: str) -> list[str]:
        workspace_domain = self.secrets.get(Secret.GOOGLE_WORKSPACE_DOMAIN)
        access_token = await self._service_access_token()

        groups: list[str] = []
        page_token = None
        while True:
            params = {"userKey": email}
            if page_token:
                params["pageToken"] = page_token

            page = await self._get_groups_page(access_token, params)

            for group in page.get("groups", []):
                group_email = group.get("email") if isinstance(group, dict) else None
                name, sep, domain = (group_email or "").partition("@")
                if not sep or not name:
                    logger.error(f'Invalid group email: "{group_email}"')
                    continue
                if domain == workspace_domain:
                    groups.append(name)

            page_token = page.get("nextPageToken")
            if not page_token:
                return groups

    async def _get_groups_page(self, access_token: str, params: dict[str, str]) -> dict:
        try:
            response = await self.http.get(
                self.groups_url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            page = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GroupsApiError(f"Directory groups request failed: {e}") from e
        if not isinstance(page, dict):
            raise GroupsApiError("Directory groups response is not a JSON object")
        return page

    async def _service_access_token(self) -> str:
        """
        Bearer token for the Directory API, obtained with a service-account
        JWT that impersonates the workspace admin.

        Source: https://developers.google.com/identity/protocols/oauth2/service-account#httprest
        """
        cached = await self.store.get(KV_CACHE, KEY_SERVICEACCOUNT_OAUTH_TOKEN, str)
        if cached is not None:
            return cached

        account = self.secrets.service_account()
        now = int(time.time())
        claims = {
            "iss": account.client_email,
            "sub": self.secrets.get(Secret.GOOGLE_ADMIN_EMAIL),
            "scope": GROUPS_READONLY_SCOPE,
            "aud": self.token_url,
            "iat": now,
            "exp": now + int(SERVICE_TOKEN_LIFETIME.total_seconds()),
        }
        try:
            assertion = jwt.encode(claims, account.private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError) as e:
            raise GroupsApiError(f"Could not sign service account assertion: {e}") from e

        try:
            response = await self.http.post(
                self.token_url,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
            response.raise_for_status()
            access_token = response.json()["access_token"]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise GroupsApiError(f"Service account token request failed: {e}") from e

        logger.info("Obtained new directory API access token")
        await self.store.put(KV_CACHE, KEY_SERVICEACCOUNT_OAUTH_TOKEN, access_token, SERVICE_TOKEN_CACHE_TTL)
        return access_token
