from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"


# Ordered list for role comparisons (lowest first)
ROLE_ORDER: list[Role] = [
    Role.MEMBER,
    Role.ADMIN,
    Role.OWNER,
]


def role_rank(role: Role | str) -> int:
    """Position of a role in ROLE_ORDER; higher outranks lower."""
    return ROLE_ORDER.index(Role(role))


def role_at_least(role: Role | str, min_role: Role | str) -> bool:
    return role_rank(role) >= role_rank(min_role)
