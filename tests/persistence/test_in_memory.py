from datetime import timedelta
from unittest.mock import patch

import cbor2
import pytest

from oidc_broker.persistence import InMemoryStore, StateStore
from oidc_broker.state import (
    KV_AUTHORIZE_STATE,
    KV_REFRESH_TOKEN_STATE,
    PendingAuthorization,
    RefreshState,
    StoredProviderMetadata,
)
from oidc_broker.utils.exceptions import StateDeserializationError


def make_pending(**overrides) -> PendingAuthorization:
    fields = dict(
        client_id="client-a",
        client_redirect="https://app.example.com/cb",
        client_state="client-state",
        client_nonce="client-nonce",
        upstream_nonce="upstream-nonce",
        groups_scope=True,
    )
    fields.update(overrides)
    return PendingAuthorization(**fields)


class TestInMemoryStore:

    def make_store(self):
        backend = InMemoryStore()
        return backend, StateStore(backend)

    async def test_get_returns_value_that_was_put(self):
        _, store = self.make_store()
        pending = make_pending()
        await store.put(KV_AUTHORIZE_STATE, "csrf", pending, timedelta(minutes=10))

        assert await store.get(KV_AUTHORIZE_STATE, "csrf", PendingAuthorization) == pending

    async def test_missing_key_is_absent(self):
        _, store = self.make_store()
        assert await store.get(KV_AUTHORIZE_STATE, "nope", PendingAuthorization) is None

    async def test_namespaces_are_isolated(self):
        _, store = self.make_store()
        await store.put(KV_AUTHORIZE_STATE, "same-key", make_pending(), 60)

        assert await store.get(KV_REFRESH_TOKEN_STATE, "same-key", PendingAuthorization) is None

    async def test_put_replaces_previous_value(self):
        _, store = self.make_store()
        await store.put(KV_AUTHORIZE_STATE, "csrf", make_pending(client_id="first"), 60)
        await store.put(KV_AUTHORIZE_STATE, "csrf", make_pending(client_id="second"), 60)

        stored = await store.get(KV_AUTHORIZE_STATE, "csrf", PendingAuthorization)
        assert stored.client_id == "second"

    async def test_value_is_absent_after_ttl(self):
        _, store = self.make_store()

        with patch("time.monotonic") as mock_time:
            mock_time.return_value = 1000.0
            await store.put(KV_AUTHORIZE_STATE, "csrf", make_pending(), timedelta(minutes=10))

            mock_time.return_value = 1599.0
            assert await store.get(KV_AUTHORIZE_STATE, "csrf", PendingAuthorization) is not None

            mock_time.return_value = 1600.0
            assert await store.get(KV_AUTHORIZE_STATE, "csrf", PendingAuthorization) is None

    async def test_rewrite_restarts_expiry(self):
        _, store = self.make_store()
        state = RefreshState(
            client_id="client-a",
            client_nonce="n",
            upstream_nonce="u",
            groups_scope=False,
            upstream_refresh="upstream-refresh",
        )

        with patch("time.monotonic") as mock_time:
            mock_time.return_value = 1000.0
            await store.put(KV_REFRESH_TOKEN_STATE, "rt", state, 100)

            mock_time.return_value = 1090.0
            await store.put(KV_REFRESH_TOKEN_STATE, "rt", state, 100)

            mock_time.return_value = 1150.0
            assert await store.get(KV_REFRESH_TOKEN_STATE, "rt", RefreshState) == state

    async def test_delete_removes_entry(self):
        _, store = self.make_store()
        await store.put(KV_AUTHORIZE_STATE, "csrf", make_pending(), 60)
        await store.delete(KV_AUTHORIZE_STATE, "csrf")

        assert await store.get(KV_AUTHORIZE_STATE, "csrf", PendingAuthorization) is None

    async def test_delete_missing_entry_is_not_an_error(self):
        _, store = self.make_store()
        await store.delete(KV_AUTHORIZE_STATE, "never-written")

    async def test_plain_values_round_trip(self):
        _, store = self.make_store()
        await store.put("KV_CACHE", "token", "bearer-value", 60)

        assert await store.get("KV_CACHE", "token", str) == "bearer-value"

    async def test_nested_documents_round_trip(self):
        _, store = self.make_store()
        cached = StoredProviderMetadata(
            metadata={"issuer": "https://idp.example.com", "scopes": ["openid", "email"]},
            jwks={"keys": [{"kty": "RSA", "kid": "k1"}]},
        )
        await store.put("KV_CACHE", "meta", cached, 60)

        assert await store.get("KV_CACHE", "meta", StoredProviderMetadata) == cached

    async def test_records_are_stored_as_cbor(self):
        backend, store = self.make_store()
        await store.put(KV_AUTHORIZE_STATE, "csrf", make_pending(), 60)

        raw = await backend.get_bytes(KV_AUTHORIZE_STATE, "csrf")
        assert cbor2.loads(raw)["client_id"] == "client-a"

    async def test_shape_mismatch_raises_deserialization_error(self):
        _, store = self.make_store()
        await store.put(KV_AUTHORIZE_STATE, "csrf", "just a string", 60)

        with pytest.raises(StateDeserializationError):
            await store.get(KV_AUTHORIZE_STATE, "csrf", PendingAuthorization)

    async def test_garbage_bytes_raise_deserialization_error(self):
        backend, store = self.make_store()
        await backend.put_bytes(KV_AUTHORIZE_STATE, "csrf", b"\x9f\x01", 60)

        with pytest.raises(StateDeserializationError):
            await store.get(KV_AUTHORIZE_STATE, "csrf", PendingAuthorization)

    async def test_non_positive_ttl_is_rejected(self):
        _, store = self.make_store()
        with pytest.raises(ValueError):
            await store.put(KV_AUTHORIZE_STATE, "csrf", make_pending(), 0)


class TestInMemoryCleanup:

    def make_backend(self):
        return InMemoryStore()

    async def test_cleanup_drops_only_expired_entries(self):
        backend = self.make_backend()

        with patch("time.monotonic") as mock_time:
            mock_time.return_value = 1000.0
            await backend.put_bytes("ns", "short", b"a", 10)
            await backend.put_bytes("ns", "long", b"b", 100)

            mock_time.return_value = 1050.0
            assert backend.cleanup_expired() == 1

            assert await backend.get_bytes("ns", "short") is None
            assert await backend.get_bytes("ns", "long") == b"b"

    async def test_cleanup_on_empty_store(self):
        assert self.make_backend().cleanup_expired() == 0
