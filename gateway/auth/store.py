"""Credential and session store backends.

``SQLiteCredentialStore`` is the durable backend (users, API keys and
sessions survive restarts).  ``InMemoryCredentialStore`` is the ephemeral
backend used when keys are issued per process and nothing needs to
persist.  Both expose the same async interface; the SQLite backend runs
its blocking calls through ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, Protocol


class CredentialStoreError(Exception):
    """Raised when the credential store cannot complete an operation."""


class DuplicateUserError(CredentialStoreError):
    """Raised when registering an email that already exists."""


@dataclass(frozen=True)
class CredentialRecord:
    identity_id: str
    credential_hash: str
    kind: Literal["api_key", "session"]
    expires_at: datetime | None = None
    name: str | None = None


def _parse_timestamp(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    candidate = raw_value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class CredentialStore(Protocol):
    backend: str

    async def find_api_key(self, key_hash: str) -> CredentialRecord | None:
        """Return the API-key record for ``key_hash`` or ``None``."""

    async def touch_api_key(self, key_hash: str, used_at: datetime) -> None:
        """Update the last-used timestamp of an API key."""

    async def find_session(self, token: str) -> CredentialRecord | None:
        """Return the session record for ``token`` or ``None``, expired or not."""

    async def create_api_key(self, identity_id: str, key_hash: str, name: str) -> None:
        """Store a new API key for ``identity_id``."""

    async def create_user(self, user_id: str, email: str, key_hash: str, key_name: str) -> None:
        """Create a user together with its first API key, both or neither.

        Raise ``DuplicateUserError`` if the email exists.
        """

    async def find_user_by_email(self, email: str) -> str | None:
        """Return the user id registered for ``email``."""

    async def create_session(self, identity_id: str, token: str, expires_at: datetime) -> None:
        """Store a session token for ``identity_id``."""


class InMemoryCredentialStore:
    backend = "memory"

    def __init__(self) -> None:
        self._api_keys: dict[str, CredentialRecord] = {}
        self._last_used: dict[str, datetime] = {}
        self._sessions: dict[str, CredentialRecord] = {}
        self._users: dict[str, str] = {}
        self._lock = threading.Lock()

    async def find_api_key(self, key_hash: str) -> CredentialRecord | None:
        with self._lock:
            return self._api_keys.get(key_hash)

    async def touch_api_key(self, key_hash: str, used_at: datetime) -> None:
        with self._lock:
            if key_hash in self._api_keys:
                self._last_used[key_hash] = used_at

    def last_used(self, key_hash: str) -> datetime | None:
        with self._lock:
            return self._last_used.get(key_hash)

    async def find_session(self, token: str) -> CredentialRecord | None:
        with self._lock:
            return self._sessions.get(token)

    async def create_api_key(self, identity_id: str, key_hash: str, name: str) -> None:
        with self._lock:
            self._api_keys[key_hash] = CredentialRecord(
                identity_id=identity_id,
                credential_hash=key_hash,
                kind="api_key",
                name=name,
            )

    async def create_user(self, user_id: str, email: str, key_hash: str, key_name: str) -> None:
        with self._lock:
            if email in self._users:
                raise DuplicateUserError(f"Email already registered: {email}")
            if key_hash in self._api_keys:
                raise CredentialStoreError("API key hash already exists")
            self._users[email] = user_id
            self._api_keys[key_hash] = CredentialRecord(
                identity_id=user_id,
                credential_hash=key_hash,
                kind="api_key",
                name=key_name,
            )

    async def find_user_by_email(self, email: str) -> str | None:
        with self._lock:
            return self._users.get(email)

    async def create_session(self, identity_id: str, token: str, expires_at: datetime) -> None:
        with self._lock:
            self._sessions[token] = CredentialRecord(
                identity_id=identity_id,
                credential_hash=token,
                kind="session",
                expires_at=expires_at,
            )


@dataclass
class SQLiteCredentialStore:
    path: Path
    backend: str = "sqlite"

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.path))
        connection.row_factory = sqlite3.Row
        return connection

    def _ensure_schema(self) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    key_hash TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_used_at TEXT
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)"
            )
            connection.commit()

    async def find_api_key(self, key_hash: str) -> CredentialRecord | None:
        return await asyncio.to_thread(self._find_api_key, key_hash)

    async def touch_api_key(self, key_hash: str, used_at: datetime) -> None:
        await asyncio.to_thread(self._touch_api_key, key_hash, used_at)

    async def find_session(self, token: str) -> CredentialRecord | None:
        return await asyncio.to_thread(self._find_session, token)

    async def create_api_key(self, identity_id: str, key_hash: str, name: str) -> None:
        await asyncio.to_thread(self._create_api_key, identity_id, key_hash, name)

    async def create_user(self, user_id: str, email: str, key_hash: str, key_name: str) -> None:
        await asyncio.to_thread(self._create_user, user_id, email, key_hash, key_name)

    async def find_user_by_email(self, email: str) -> str | None:
        return await asyncio.to_thread(self._find_user_by_email, email)

    async def create_session(self, identity_id: str, token: str, expires_at: datetime) -> None:
        await asyncio.to_thread(self._create_session, identity_id, token, expires_at)

    def last_used(self, key_hash: str) -> datetime | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT last_used_at FROM api_keys WHERE key_hash = ?", (key_hash,)
            ).fetchone()
        return _parse_timestamp(row["last_used_at"]) if row else None

    def _find_api_key(self, key_hash: str) -> CredentialRecord | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT user_id, name FROM api_keys WHERE key_hash = ?", (key_hash,)
            ).fetchone()
        if row is None:
            return None
        return CredentialRecord(
            identity_id=row["user_id"],
            credential_hash=key_hash,
            kind="api_key",
            name=row["name"],
        )

    def _touch_api_key(self, key_hash: str, used_at: datetime) -> None:
        with self._connect() as connection:
            connection.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE key_hash = ?",
                (used_at.astimezone(UTC).isoformat(), key_hash),
            )
            connection.commit()

    def _find_session(self, token: str) -> CredentialRecord | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT user_id, expires_at FROM sessions WHERE token = ?", (token,)
            ).fetchone()
        if row is None:
            return None
        return CredentialRecord(
            identity_id=row["user_id"],
            credential_hash=token,
            kind="session",
            expires_at=_parse_timestamp(row["expires_at"]),
        )

    def _create_api_key(self, identity_id: str, key_hash: str, name: str) -> None:
        with self._connect() as connection:
            connection.execute(
                "INSERT INTO api_keys (key_hash, user_id, name, created_at) VALUES (?, ?, ?, ?)",
                (key_hash, identity_id, name, datetime.now(UTC).isoformat()),
            )
            connection.commit()

    def _create_user(self, user_id: str, email: str, key_hash: str, key_name: str) -> None:
        created_at = datetime.now(UTC).isoformat()
        # The connection context manager rolls both inserts back on any error.
        with self._connect() as connection:
            try:
                connection.execute(
                    "INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)",
                    (user_id, email, created_at),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateUserError(f"Email already registered: {email}") from exc
            try:
                connection.execute(
                    "INSERT INTO api_keys (key_hash, user_id, name, created_at) VALUES (?, ?, ?, ?)",
                    (key_hash, user_id, key_name, created_at),
                )
            except sqlite3.IntegrityError as exc:
                raise CredentialStoreError("API key hash already exists") from exc
            connection.commit()

    def _find_user_by_email(self, email: str) -> str | None:
        with self._connect() as connection:
            row = connection.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
        return str(row["id"]) if row else None

    def _create_session(self, identity_id: str, token: str, expires_at: datetime) -> None:
        with self._connect() as connection:
            connection.execute(
                "INSERT INTO sessions (token, user_id, expires_at) VALUES (?, ?, ?)",
                (token, identity_id, expires_at.astimezone(UTC).isoformat()),
            )
            connection.commit()


def create_credential_store(*, backend: str, path: Path) -> CredentialStore:
    normalized_backend = backend.strip().lower()
    if normalized_backend == "sqlite":
        return SQLiteCredentialStore(path=path)
    if normalized_backend == "memory":
        return InMemoryCredentialStore()
    raise ValueError(f"Unsupported identity backend: {backend}")
