"""
Access token schemas.

AccessToken is the public metadata view handed to callers. The stored record
additionally carries the secret digest, which never leaves the store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class AccessToken(BaseModel):
    id: str
    user_id: str
    scopes: list[str] = Field(default_factory=list)
    note: str = ""
    creator_user_id: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class AccessTokenRecord(AccessToken):
    """Persisted form of an access token (includes the SHA-256 digest)."""

    secret_hash: str

    def public(self) -> AccessToken:
        return AccessToken.model_validate(self.model_dump(exclude={"secret_hash"}))


class TokenIdentity(BaseModel):
    """Result of a successful token validation."""

    token_id: str
    user_id: str
    scopes: frozenset[str]
