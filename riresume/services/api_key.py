"""
API Key Service - Generation and validation of service API keys.

Only holders of a key with the matching permission may mint tokens through
the grant and payment intake endpoints. Keys are stored as Argon2id hashes
and looked up by their first 20 characters.
"""

import base64
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from riresume.db.models import APIKey
from riresume.exceptions import AuthenticationError

logger = get_logger(__name__)

KEY_PREFIX_LENGTH = 20
TOKENS_WRITE = "tokens:write"


@dataclass(frozen=True)
class APIKeyData:
    """Validated key metadata (never the secret)."""

    key_id: UUID
    name: str
    key_prefix: str
    permissions: list[str]
    expires_at: datetime | None


@dataclass(frozen=True)
class GeneratedAPIKey:
    """Newly created key; the plaintext is only available here."""

    key_id: UUID
    plaintext_key: str
    key_prefix: str
    name: str
    permissions: list[str]
    expires_at: datetime | None


class APIKeyService:
    """Create, validate and revoke service API keys."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.password_hasher = PasswordHasher()

    def generate_api_key(self, environment: str = "live") -> tuple[str, str, str]:
        """
        Generate a new API key.

        Returns:
            tuple: (plaintext_key, key_hash, key_prefix)
        """
        key_suffix = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")
        plaintext_key = f"rrk_{environment}_{key_suffix}"
        key_prefix = plaintext_key[:KEY_PREFIX_LENGTH]
        return plaintext_key, self.password_hasher.hash(plaintext_key), key_prefix

    async def create_api_key(
        self,
        name: str,
        permissions: list[str] | None = None,
        environment: str = "live",
        expires_in_days: int | None = None,
    ) -> GeneratedAPIKey:
        """Store a new key and return it with its plaintext (shown once)."""
        if permissions is None:
            permissions = [TOKENS_WRITE]

        plaintext_key, key_hash, key_prefix = self.generate_api_key(environment)
        expires_at = None
        if expires_in_days is not None:
            expires_at = datetime.now(UTC) + timedelta(days=expires_in_days)

        api_key = APIKey(
            key_hash=key_hash,
            key_prefix=key_prefix,
            name=name,
            permissions=permissions,
            expires_at=expires_at,
            status="active",
        )
        self.db.add(api_key)
        await self.db.commit()
        await self.db.refresh(api_key)

        logger.info("api_key_created", key_id=str(api_key.id), name=name)

        return GeneratedAPIKey(
            key_id=api_key.id,
            plaintext_key=plaintext_key,
            key_prefix=key_prefix,
            name=name,
            permissions=permissions,
            expires_at=expires_at,
        )

    async def validate_api_key(self, provided_key: str) -> APIKeyData:
        """
        Validate an API key and return its metadata.

        Raises:
            AuthenticationError if the key is malformed, unknown, revoked or expired
        """
        if not provided_key.startswith("rrk_"):
            logger.warning("api_key_invalid_format", prefix=provided_key[:10])
            raise AuthenticationError("Invalid API key format")

        key_prefix = provided_key[:KEY_PREFIX_LENGTH]
        result = await self.db.execute(
            select(APIKey).where(APIKey.key_prefix == key_prefix, APIKey.status == "active")
        )
        api_key = result.scalar_one_or_none()
        if api_key is None:
            logger.warning("api_key_not_found", prefix=key_prefix)
            raise AuthenticationError("Invalid API key")

        try:
            self.password_hasher.verify(api_key.key_hash, provided_key)
        except (VerifyMismatchError, InvalidHashError) as exc:
            logger.warning("api_key_hash_mismatch", key_id=str(api_key.id))
            raise AuthenticationError("Invalid API key") from exc

        expires_at = api_key.expires_at
        # SQLite hands back naive datetimes
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at is not None and datetime.now(UTC) > expires_at:
            api_key.status = "revoked"
            await self.db.commit()
            logger.warning("api_key_expired", key_id=str(api_key.id), expired_at=expires_at)
            raise AuthenticationError("API key expired")

        api_key.last_used_at = datetime.now(UTC)
        await self.db.commit()

        logger.info("api_key_validated", key_id=str(api_key.id), name=api_key.name)

        return APIKeyData(
            key_id=api_key.id,
            name=api_key.name,
            key_prefix=api_key.key_prefix,
            permissions=list(api_key.permissions),
            expires_at=expires_at,
        )

    async def revoke_api_key(self, key_id: UUID) -> None:
        """Revoke an API key; unknown ids are an error."""
        result = await self.db.execute(select(APIKey).where(APIKey.id == key_id))
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise AuthenticationError(f"API key {key_id} not found")

        api_key.status = "revoked"
        await self.db.commit()
        logger.info("api_key_revoked", key_id=str(key_id))
