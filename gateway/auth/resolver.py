import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from hashlib import sha256
from typing import Literal

from gateway.auth.store import CredentialStore
from gateway.core.errors import AuthFailure

logger = logging.getLogger("gateway.auth")

API_KEY_HEADER = "x-api-key"
AUTHORIZATION_HEADER = "authorization"


@dataclass(frozen=True)
class Identity:
    identity_id: str
    method: Literal["api_key", "session"]


def hash_api_key(api_key: str) -> str:
    return sha256(api_key.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CredentialResolver:
    """Resolve request headers to an ``Identity`` or raise ``AuthFailure``.

    API keys are tried first; a key that is not on record falls through to
    the bearer-token session check instead of failing on its own.  Headers
    that cannot be parsed count as "no credential presented".
    """

    def __init__(self, store: CredentialStore, clock: Callable[[], datetime] = _utcnow):
        self._store = store
        self._clock = clock
        self._pending: set[asyncio.Task[None]] = set()

    async def resolve(self, headers: Mapping[str, str]) -> Identity:
        api_key = self._api_key(headers)
        if api_key:
            key_hash = hash_api_key(api_key)
            record = await self._store.find_api_key(key_hash)
            if record is not None:
                self._schedule_touch(key_hash)
                return Identity(identity_id=record.identity_id, method="api_key")

        token = self._bearer_token(headers)
        if token:
            session = await self._store.find_session(token)
            if (
                session is not None
                and session.expires_at is not None
                and session.expires_at > self._clock()
            ):
                return Identity(identity_id=session.identity_id, method="session")

        raise AuthFailure()

    @staticmethod
    def _api_key(headers: Mapping[str, str]) -> str | None:
        raw_value = headers.get(API_KEY_HEADER)
        if not isinstance(raw_value, str):
            return None
        value = raw_value.strip()
        return value or None

    @staticmethod
    def _bearer_token(headers: Mapping[str, str]) -> str | None:
        raw_value = headers.get(AUTHORIZATION_HEADER)
        if not isinstance(raw_value, str):
            return None
        scheme, _, token = raw_value.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None

    def _schedule_touch(self, key_hash: str) -> None:
        async def _touch() -> None:
            try:
                await self._store.touch_api_key(key_hash, self._clock())
            except Exception as exc:
                logger.warning(
                    "api_key_touch_failed",
                    extra={"error": f"{type(exc).__name__}: {exc}"},
                )

        task = asyncio.get_running_loop().create_task(_touch())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
