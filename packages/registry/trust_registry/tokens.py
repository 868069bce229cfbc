"""
Access token store: issue, validate, revoke and list opaque bearer tokens.

Only a SHA-256 digest of each secret is persisted; the plaintext is handed to
the caller once, at issuance. Validation looks tokens up by that digest.
"""

from __future__ import annotations

import hashlib
import hmac
import uuid
from datetime import timedelta
from typing import Iterable, Optional

import structlog

from trust_shared.schemas.tokens import AccessToken, AccessTokenRecord, TokenIdentity

from .clock import Clock, SecretGenerator
from .config import Settings
from .errors import (
    INVALID_TOKEN_MESSAGE,
    ConflictError,
    ExpiredError,
    InvalidScopeError,
    NotFoundError,
    RevokedError,
    UnauthenticatedError,
)
from .gateway import ABSENT, CompareAndSet, PersistenceGateway, key_prefix, make_key

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Secret generation & hashing
# ---------------------------------------------------------------------------

def generate_token(prefix: str, secret: bytes) -> str:
    """Plaintext form of a token: prefix followed by the hex-encoded secret."""
    return f"{prefix}{secret.hex()}"


def hash_token(token: str) -> str:
    """One-way digest used both for storage and for lookup."""
    return hashlib.sha256(token.encode()).hexdigest()


def _token_key(token_id: str) -> str:
    return make_key("access_token", token_id)


def _hash_key(digest: str) -> str:
    return make_key("access_token_hash", digest)


def _user_index_key(user_id: str, token_id: str) -> str:
    return make_key("user_access_token", user_id, token_id)


class AccessTokenStore:
    def __init__(
        self,
        gateway: PersistenceGateway,
        settings: Settings,
        clock: Clock,
        secrets: SecretGenerator,
    ):
        self._gateway = gateway
        self._settings = settings
        self._clock = clock
        self._secrets = secrets

    async def issue(
        self,
        user_id: str,
        scopes: Iterable[str],
        ttl: Optional[timedelta] = None,
        *,
        permitted_scopes: Optional[Iterable[str]] = None,
        note: str = "",
        creator_user_id: Optional[str] = None,
    ) -> tuple[AccessToken, str]:
        """Create a token for ``user_id``. Returns (metadata, plaintext).

        The plaintext is not recoverable afterwards.
        """
        requested = set(scopes)
        allowed = set(
            permitted_scopes
            if permitted_scopes is not None
            else self._settings.token_allowed_scopes
        )
        if not requested:
            raise InvalidScopeError("at least one scope is required")
        if not requested <= allowed:
            raise InvalidScopeError(
                f"scopes not permitted: {', '.join(sorted(requested - allowed))}"
            )

        if ttl is None and self._settings.token_default_ttl_seconds is not None:
            ttl = timedelta(seconds=self._settings.token_default_ttl_seconds)

        for _ in range(self._settings.cas_max_attempts):
            now = self._clock.now()
            plaintext = generate_token(
                self._settings.token_prefix,
                self._secrets.generate(self._settings.token_secret_bytes),
            )
            record = AccessTokenRecord(
                id=str(uuid.uuid4()),
                user_id=user_id,
                scopes=sorted(requested),
                note=note,
                creator_user_id=creator_user_id,
                created_at=now,
                expires_at=now + ttl if ttl is not None else None,
                secret_hash=hash_token(plaintext),
            )
            committed = await self._gateway.transaction([
                CompareAndSet(_token_key(record.id), ABSENT, record.model_dump(mode="json")),
                CompareAndSet(_hash_key(record.secret_hash), ABSENT, {"token_id": record.id}),
                CompareAndSet(
                    _user_index_key(user_id, record.id), ABSENT, {"token_id": record.id}
                ),
            ])
            if committed:
                log.info(
                    "access_token.issued",
                    token_id=record.id,
                    user_id=user_id,
                    scopes=record.scopes,
                    expires_at=record.expires_at.isoformat() if record.expires_at else None,
                )
                return record.public(), plaintext

        raise ConflictError("could not allocate a unique access token")

    async def validate(
        self, plaintext: str, *, required_scope: Optional[str] = None
    ) -> TokenIdentity:
        """Resolve a presented token to its user and scopes.

        Unknown, expired and revoked tokens raise different errors that all
        carry the same public message.
        """
        if not plaintext.startswith(self._settings.token_prefix):
            raise UnauthenticatedError("malformed access token")

        digest = hash_token(plaintext)
        pointer = await self._gateway.get(_hash_key(digest))
        if pointer is None:
            raise UnauthenticatedError("unknown access token")

        stored = await self._gateway.get(_token_key(pointer.value["token_id"]))
        if stored is None:
            raise UnauthenticatedError("unknown access token")
        record = AccessTokenRecord.model_validate(stored.value)
        if not hmac.compare_digest(record.secret_hash, digest):
            raise UnauthenticatedError("unknown access token")

        now = self._clock.now()
        if record.revoked_at is not None:
            raise RevokedError(
                f"access token {record.id} was revoked",
                public_message=INVALID_TOKEN_MESSAGE,
            )
        if record.is_expired(now):
            raise ExpiredError(
                f"access token {record.id} expired",
                public_message=INVALID_TOKEN_MESSAGE,
            )
        if required_scope is not None and required_scope not in record.scopes:
            raise InvalidScopeError(f"access token lacks scope {required_scope!r}")

        await self._touch(record, stored.version)
        return TokenIdentity(
            token_id=record.id, user_id=record.user_id, scopes=frozenset(record.scopes)
        )

    async def revoke(self, token_id: str) -> AccessToken:
        """Mark a token revoked. Revoking a revoked token changes nothing."""
        key = _token_key(token_id)
        for _ in range(self._settings.cas_max_attempts):
            stored = await self._gateway.get(key)
            if stored is None:
                raise NotFoundError(f"access token {token_id} not found")
            record = AccessTokenRecord.model_validate(stored.value)
            if record.revoked_at is not None:
                return record.public()

            record.revoked_at = self._clock.now()
            if await self._gateway.compare_and_set(
                key, stored.version, record.model_dump(mode="json")
            ):
                log.info("access_token.revoked", token_id=token_id, user_id=record.user_id)
                return record.public()

        raise ConflictError(f"access token {token_id} is being modified concurrently")

    async def get(self, token_id: str) -> AccessToken:
        stored = await self._gateway.get(_token_key(token_id))
        if stored is None:
            raise NotFoundError(f"access token {token_id} not found")
        return AccessTokenRecord.model_validate(stored.value).public()

    async def list(self, user_id: str) -> list[AccessToken]:
        """All tokens of a user, including revoked and expired ones, newest first."""
        tokens = []
        for pointer in await self._gateway.scan(key_prefix("user_access_token", user_id)):
            stored = await self._gateway.get(_token_key(pointer.value["token_id"]))
            if stored is not None:
                tokens.append(AccessTokenRecord.model_validate(stored.value).public())
        tokens.sort(key=lambda t: t.created_at, reverse=True)
        return tokens

    async def _touch(self, record: AccessTokenRecord, version: int) -> None:
        """Best-effort last_used_at bookkeeping; a lost race is ignored."""
        now = self._clock.now()
        interval = timedelta(seconds=self._settings.token_last_used_interval_seconds)
        if record.last_used_at is not None and now - record.last_used_at < interval:
            return
        record.last_used_at = now
        await self._gateway.compare_and_set(
            _token_key(record.id), version, record.model_dump(mode="json")
        )
