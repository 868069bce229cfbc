"""
Organization membership and invitation schemas.

Covers: memberships, invitation states and the invitation state machine.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .common import Role


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InvitationState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    REVOKED = "revoked"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Invitation transitions
# ---------------------------------------------------------------------------

# Valid state transitions; every non-pending state is terminal
INVITATION_TRANSITIONS: dict[InvitationState, list[InvitationState]] = {
    InvitationState.PENDING: [
        InvitationState.ACCEPTED,
        InvitationState.DECLINED,
        InvitationState.REVOKED,
        InvitationState.EXPIRED,
    ],
    InvitationState.ACCEPTED: [],
    InvitationState.DECLINED: [],
    InvitationState.REVOKED: [],
    InvitationState.EXPIRED: [],
}


def can_transition(current: InvitationState, target: InvitationState) -> bool:
    return target in INVITATION_TRANSITIONS[current]


def normalize_recipient(recipient: str) -> str:
    """E-mail recipients compare case-insensitively; user ids are opaque."""
    recipient = recipient.strip()
    if "@" in recipient:
        return recipient.lower()
    return recipient


def is_email_recipient(recipient: str) -> bool:
    return "@" in recipient


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class OrgMembership(BaseModel):
    org_id: str
    user_id: str
    role: Role = Role.MEMBER
    created_at: datetime
    updated_at: datetime


class OrgInvitation(BaseModel):
    id: str
    org_id: str
    inviter_user_id: str
    recipient: str  # user id or lower-cased e-mail address
    role: Role = Role.MEMBER
    state: InvitationState = InvitationState.PENDING
    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    responded_by_user_id: Optional[str] = None
    notified_at: Optional[datetime] = None

    def is_past_expiry(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def is_terminal(self) -> bool:
        return not INVITATION_TRANSITIONS[self.state]
