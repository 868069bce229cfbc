"""Tests for access token issuance, validation and revocation."""

from datetime import timedelta

import pytest

from trust_registry.errors import (
    AUTHENTICATION_ERRORS,
    INVALID_TOKEN_MESSAGE,
    ExpiredError,
    InvalidScopeError,
    NotFoundError,
    RevokedError,
    UnauthenticatedError,
)
from trust_registry.tokens import hash_token


@pytest.fixture
def tokens(registry):
    return registry.access_tokens


async def test_issue_and_validate_round_trip(tokens):
    meta, plaintext = await tokens.issue("u1", {"read", "write"})
    assert plaintext.startswith("tr_at_")

    identity = await tokens.validate(plaintext)
    assert identity.user_id == "u1"
    assert identity.scopes == frozenset({"read", "write"})
    assert identity.token_id == meta.id


async def test_ttl_scenario_59_and_61_minutes(tokens, clock):
    _, plaintext = await tokens.issue("u1", {"read"}, ttl=timedelta(hours=1))

    clock.advance(timedelta(minutes=59))
    identity = await tokens.validate(plaintext)
    assert (identity.user_id, identity.scopes) == ("u1", frozenset({"read"}))

    clock.advance(timedelta(minutes=2))
    with pytest.raises(ExpiredError):
        await tokens.validate(plaintext)


async def test_revoke_invalidates_for_good(tokens):
    meta, plaintext = await tokens.issue("u1", {"read"})
    await tokens.validate(plaintext)

    await tokens.revoke(meta.id)
    for _ in range(3):
        with pytest.raises(RevokedError):
            await tokens.validate(plaintext)


async def test_revoke_is_idempotent(tokens, clock):
    meta, _ = await tokens.issue("u1", {"read"})
    first = await tokens.revoke(meta.id)
    clock.advance(timedelta(minutes=5))
    second = await tokens.revoke(meta.id)
    assert first.revoked_at == second.revoked_at
    assert (await tokens.get(meta.id)).revoked_at == first.revoked_at


async def test_revoke_unknown_token(tokens):
    with pytest.raises(NotFoundError):
        await tokens.revoke("does-not-exist")


async def test_unknown_and_malformed_tokens(tokens):
    with pytest.raises(UnauthenticatedError):
        await tokens.validate("tr_at_" + "00" * 32)
    with pytest.raises(UnauthenticatedError):
        await tokens.validate("not-a-token")


async def test_failures_share_public_message(tokens, clock):
    revoked_meta, revoked = await tokens.issue("u1", {"read"})
    await tokens.revoke(revoked_meta.id)
    _, expiring = await tokens.issue("u1", {"read"}, ttl=timedelta(minutes=1))
    clock.advance(timedelta(minutes=2))

    messages = set()
    for presented in (revoked, expiring, "tr_at_deadbeef"):
        with pytest.raises(AUTHENTICATION_ERRORS) as excinfo:
            await tokens.validate(presented)
        messages.add(excinfo.value.public_message)
    assert messages == {INVALID_TOKEN_MESSAGE}


async def test_scopes_must_be_permitted(tokens):
    with pytest.raises(InvalidScopeError):
        await tokens.issue("u1", {"read", "site-admin:sudo"})
    with pytest.raises(InvalidScopeError):
        await tokens.issue("u1", set())
    with pytest.raises(InvalidScopeError):
        await tokens.issue("u1", {"write"}, permitted_scopes={"read"})


async def test_required_scope(tokens):
    _, plaintext = await tokens.issue("u1", {"read"})
    await tokens.validate(plaintext, required_scope="read")
    with pytest.raises(InvalidScopeError):
        await tokens.validate(plaintext, required_scope="write")


async def test_list_never_exposes_secret(tokens, clock):
    first, p1 = await tokens.issue("u1", {"read"}, note="ci")
    clock.advance(timedelta(seconds=1))
    second, p2 = await tokens.issue("u1", {"write"})
    await tokens.issue("u2", {"read"})
    await tokens.revoke(first.id)

    listed = await tokens.list("u1")
    assert [t.id for t in listed] == [second.id, first.id]
    assert listed[1].revoked_at is not None
    assert listed[1].note == "ci"
    for token in listed:
        dumped = token.model_dump()
        assert "secret_hash" not in dumped
        assert hash_token(p1) not in str(dumped)
        assert p2 not in str(dumped)


async def test_only_digest_is_stored(registry):
    meta, plaintext = await registry.access_tokens.issue("u1", {"read"})
    records = await registry.gateway.scan("access_token")
    assert records
    for record in records:
        assert plaintext not in str(record.value)
    stored = await registry.gateway.get(f"access_token:{meta.id}")
    assert stored.value["secret_hash"] == hash_token(plaintext)


async def test_last_used_is_throttled(tokens, clock):
    meta, plaintext = await tokens.issue("u1", {"read"})
    assert (await tokens.get(meta.id)).last_used_at is None

    await tokens.validate(plaintext)
    first_use = (await tokens.get(meta.id)).last_used_at
    assert first_use == clock.now()

    clock.advance(timedelta(seconds=10))
    await tokens.validate(plaintext)
    assert (await tokens.get(meta.id)).last_used_at == first_use

    clock.advance(timedelta(minutes=2))
    await tokens.validate(plaintext)
    assert (await tokens.get(meta.id)).last_used_at == clock.now()


async def test_default_ttl_from_settings(registry, settings, clock):
    settings.token_default_ttl_seconds = 60
    meta, plaintext = await registry.access_tokens.issue("u1", {"read"})
    assert meta.expires_at == clock.now() + timedelta(seconds=60)
