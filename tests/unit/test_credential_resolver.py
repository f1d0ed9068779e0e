import asyncio
import logging
from datetime import UTC, datetime, timedelta

import pytest

from gateway.auth.resolver import CredentialResolver, Identity, hash_api_key
from gateway.auth.store import InMemoryCredentialStore
from gateway.core.errors import AuthFailure

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


def _store_with_key(api_key: str = "llm_valid") -> InMemoryCredentialStore:
    store = InMemoryCredentialStore()
    asyncio.run(store.create_api_key("user-1", hash_api_key(api_key), "default"))
    return store


def test_api_key_resolves_identity_and_updates_last_used() -> None:
    store = _store_with_key()
    resolver = CredentialResolver(store, clock=lambda: NOW)

    async def _run() -> Identity:
        identity = await resolver.resolve({"x-api-key": "llm_valid"})
        await asyncio.sleep(0)
        return identity

    identity = asyncio.run(_run())

    assert identity.identity_id == "user-1"
    assert identity.method == "api_key"
    assert store.last_used(hash_api_key("llm_valid")) == NOW


def test_unknown_api_key_falls_through_to_bearer_session() -> None:
    store = _store_with_key()
    asyncio.run(store.create_session("user-2", "tok-1", NOW + timedelta(hours=1)))
    resolver = CredentialResolver(store, clock=lambda: NOW)

    identity = asyncio.run(
        resolver.resolve({"x-api-key": "llm_unknown", "authorization": "Bearer tok-1"})
    )

    assert identity.identity_id == "user-2"
    assert identity.method == "session"


def test_bearer_scheme_is_case_insensitive() -> None:
    store = InMemoryCredentialStore()
    asyncio.run(store.create_session("user-2", "tok-1", NOW + timedelta(hours=1)))
    resolver = CredentialResolver(store, clock=lambda: NOW)

    identity = asyncio.run(resolver.resolve({"authorization": "bearer tok-1"}))
    assert identity.identity_id == "user-2"


def test_expired_session_is_rejected() -> None:
    store = InMemoryCredentialStore()
    asyncio.run(store.create_session("user-2", "tok-1", NOW - timedelta(seconds=1)))
    resolver = CredentialResolver(store, clock=lambda: NOW)

    with pytest.raises(AuthFailure):
        asyncio.run(resolver.resolve({"authorization": "Bearer tok-1"}))


def test_session_expiring_now_is_rejected() -> None:
    store = InMemoryCredentialStore()
    asyncio.run(store.create_session("user-2", "tok-1", NOW))
    resolver = CredentialResolver(store, clock=lambda: NOW)

    with pytest.raises(AuthFailure):
        asyncio.run(resolver.resolve({"authorization": "Bearer tok-1"}))


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"x-api-key": "   "},
        {"authorization": "Basic dXNlcjpwYXNz"},
        {"authorization": "Bearer"},
        {"authorization": "Bearer    "},
    ],
)
def test_missing_or_malformed_credentials_raise_auth_failure(headers: dict[str, str]) -> None:
    resolver = CredentialResolver(_store_with_key(), clock=lambda: NOW)

    with pytest.raises(AuthFailure) as exc_info:
        asyncio.run(resolver.resolve(headers))

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "Invalid authentication"


def test_touch_failure_is_logged_and_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    class _BrokenTouchStore(InMemoryCredentialStore):
        async def touch_api_key(self, key_hash: str, used_at: datetime) -> None:
            raise OSError("database is locked")

    store = _BrokenTouchStore()
    asyncio.run(store.create_api_key("user-1", hash_api_key("llm_valid"), "default"))
    resolver = CredentialResolver(store, clock=lambda: NOW)

    async def _run() -> Identity:
        identity = await resolver.resolve({"x-api-key": "llm_valid"})
        await asyncio.sleep(0)
        return identity

    with caplog.at_level(logging.WARNING, logger="gateway.auth"):
        identity = asyncio.run(_run())

    assert identity.identity_id == "user-1"
    assert any(record.getMessage() == "api_key_touch_failed" for record in caplog.records)


def test_hash_api_key_is_sha256_hex() -> None:
    digest = hash_api_key("llm_valid")
    assert len(digest) == 64
    assert digest == hash_api_key("llm_valid")
    assert digest != hash_api_key("llm_other")
