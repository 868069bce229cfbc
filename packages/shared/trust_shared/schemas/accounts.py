"""External identity account schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ExternalAccount(BaseModel):
    """
    A link between a platform user and an external identity provider.

    Examples:
    - provider="github", external_id="583231"
    - provider="saml:idp.example.com", external_id="jdoe@example.com"

    `(provider, external_id)` is globally unique.
    """

    provider: str = Field(..., min_length=1)
    external_id: str = Field(..., min_length=1)
    user_id: str
    data: Optional[dict[str, Any]] = None  # provider-specific account data
    linked_at: datetime
    updated_at: Optional[datetime] = None
