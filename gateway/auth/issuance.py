import logging
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from gateway.auth.resolver import hash_api_key
from gateway.auth.store import CredentialStore, DuplicateUserError
from gateway.core.errors import ConflictError, IdentityNotFound

logger = logging.getLogger("gateway.auth")


class CredentialIssuer:
    """Issue API keys and session tokens into the credential store."""

    def __init__(
        self,
        store: CredentialStore,
        rate_limit: int,
        session_ttl_seconds: int = 86_400,
        key_prefix: str = "llm_",
    ):
        self._store = store
        self._rate_limit = rate_limit
        self._session_ttl = timedelta(seconds=session_ttl_seconds)
        self._key_prefix = key_prefix

    def new_api_key(self) -> str:
        return f"{self._key_prefix}{uuid4().hex}"

    async def create_key(self, name: str | None = None) -> dict[str, object]:
        api_key = self.new_api_key()
        key_hash = hash_api_key(api_key)
        key_name = name or "default"
        await self._store.create_api_key(f"key_{key_hash[:12]}", key_hash, key_name)
        return {
            "api_key": api_key,
            "name": key_name,
            "limit": self._rate_limit,
            "expires": None,
        }

    async def register(self, email: str) -> dict[str, object]:
        user_id = str(uuid4())
        api_key = self.new_api_key()
        try:
            await self._store.create_user(user_id, email, hash_api_key(api_key), "default")
        except DuplicateUserError as exc:
            raise ConflictError("Email already exists") from exc
        return {
            "user_id": user_id,
            "api_key": api_key,
            "message": "Save your API key - it will not be shown again",
        }

    async def login(self, email: str) -> dict[str, object]:
        user_id = await self._store.find_user_by_email(email)
        if user_id is None:
            raise IdentityNotFound("User not found")

        token = uuid4().hex
        expires_at = datetime.now(UTC) + self._session_ttl
        await self._store.create_session(user_id, token, expires_at)
        logger.info("session_created", extra={"identity": user_id})
        return {"token": token, "expires_at": expires_at.isoformat()}
