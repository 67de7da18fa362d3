import json
import os
from enum import Enum
from typing import Mapping, Optional, Protocol

from dotenv import load_dotenv
from pydantic import AnyUrl, BaseModel, TypeAdapter, ValidationError

from oidc_broker.utils.exceptions import MissingSecretError

load_dotenv()


class Settings:
    """Process-level knobs. Credentials live in `Secrets`, not here."""

    # "dev" registers the loopback callback with the upstream provider
    ENVIRONMENT = os.getenv("ENVIRONMENT", "production").lower()
    DEV_CALLBACK_URL = "http://localhost:8787/callback"

    # Upstream provider
    UPSTREAM_ISSUER_URL = os.getenv("UPSTREAM_ISSUER_URL", "https://accounts.google.com")
    SERVICE_ACCOUNT_TOKEN_URL = os.getenv("SERVICE_ACCOUNT_TOKEN_URL", "https://oauth2.googleapis.com/token")
    DIRECTORY_GROUPS_URL = os.getenv(
        "DIRECTORY_GROUPS_URL", "https://admin.googleapis.com/admin/directory/v1/groups"
    )
    HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS") or 10)

    # Persistence
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")

    # Server
    PORT = int(os.getenv("PORT", "8787"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE")


class Secret(str, Enum):
    """Every secret the broker needs. All of them are required at startup."""

    CLIENT_SECRETS = "CLIENT_SECRETS"
    WORKER_DOMAIN = "WORKER_DOMAIN"
    JWK_PRIVATE = "JWK_PRIVATE"
    JWK_PUBLIC = "JWK_PUBLIC"
    GOOGLE_ADMIN_EMAIL = "GOOGLE_ADMIN_EMAIL"
    GOOGLE_CLIENT_ID = "GOOGLE_CLIENT_ID"
    GOOGLE_CLIENT_SECRET = "GOOGLE_CLIENT_SECRET"
    GOOGLE_SERVICEACCOUNT_KEY = "GOOGLE_SERVICEACCOUNT_KEY"
    GOOGLE_WORKSPACE_DOMAIN = "GOOGLE_WORKSPACE_DOMAIN"


# Doppler exports unset secrets with this placeholder
_NO_VALUE = "<no value>"


class SecretProvider(Protocol):
    def get_secret(self, name: str) -> Optional[str]:
        ...


class EnvSecretProvider:
    def get_secret(self, name: str) -> Optional[str]:
        return os.getenv(name)


class MappingSecretProvider:
    def __init__(self, values: Mapping[str, str]):
        self._values = dict(values)

    def get_secret(self, name: str) -> Optional[str]:
        return self._values.get(name)


class RegisteredClient(BaseModel):
    redirect_uris: list[AnyUrl]

    def allows(self, redirect_uri: str) -> bool:
        return redirect_uri in {str(uri) for uri in self.redirect_uris}


class ServiceAccount(BaseModel):
    client_email: str
    private_key: str


_client_registry_adapter = TypeAdapter(dict[str, RegisteredClient])


class Secrets:
    """
    Read-only view over a SecretProvider.

    `validate()` is meant to run once at startup so that a missing secret
    stops the process instead of failing individual requests. Values are
    memoized per key on first access.
    """

    def __init__(self, provider: SecretProvider):
        self._provider = provider
        self._cache: dict[Secret, str] = {}
        self._client_registry: Optional[dict[str, RegisteredClient]] = None

    def validate(self) -> None:
        missing = [s.value for s in Secret if not self._lookup(s)]
        if missing:
            raise MissingSecretError(missing)

    def _lookup(self, secret: Secret) -> Optional[str]:
        value = self._provider.get_secret(secret.value)
        if value is None or value == "" or value == _NO_VALUE:
            return None
        return value

    def get(self, secret: Secret) -> str:
        if not isinstance(secret, Secret):
            raise KeyError(f"Unknown secret: {secret!r}")
        if secret not in self._cache:
            value = self._lookup(secret)
            if value is None:
                raise MissingSecretError([secret.value])
            self._cache[secret] = value
        return self._cache[secret]

    @property
    def base_url(self) -> str:
        return self.get(Secret.WORKER_DOMAIN).rstrip("/")

    def client_registry(self) -> dict[str, RegisteredClient]:
        if self._client_registry is None:
            self._client_registry = _client_registry_adapter.validate_json(self.get(Secret.CLIENT_SECRETS))
        return self._client_registry

    def public_jwk(self) -> dict:
        return json.loads(self.get(Secret.JWK_PUBLIC))

    def service_account(self) -> ServiceAccount:
        return ServiceAccount.model_validate_json(self.get(Secret.GOOGLE_SERVICEACCOUNT_KEY))


def callback_url(secrets: Secrets, environment: Optional[str] = None) -> str:
    """The redirect URI this broker registers with the upstream provider."""
    if (environment or Settings.ENVIRONMENT) == "dev":
        return Settings.DEV_CALLBACK_URL
    return f"{secrets.base_url}/callback"


_url_adapter = TypeAdapter(AnyUrl)


def normalize_url(value: str) -> str:
    """Canonical string form used when comparing redirect URIs."""
    try:
        return str(_url_adapter.validate_python(value))
    except ValidationError as e:
        raise ValueError(f"Invalid URL: {value!r}") from e
