"""Tests for external account linking."""

import asyncio

import pytest

from trust_registry.errors import ConflictError, NotFoundError


@pytest.fixture
def accounts(registry):
    return registry.external_accounts


async def test_link_and_lookup(accounts):
    account = await accounts.link("github", "583231", "u1", data={"login": "octocat"})
    assert account.user_id == "u1"
    assert await accounts.lookup("github", "583231") == "u1"


async def test_relink_same_user_is_noop(accounts):
    first = await accounts.link("github", "583231", "u1")
    again = await accounts.link("github", "583231", "u1")
    assert again.linked_at == first.linked_at
    assert len(await accounts.list("u1")) == 1


async def test_link_to_other_user_conflicts(accounts):
    await accounts.link("github", "583231", "u1")
    with pytest.raises(ConflictError):
        await accounts.link("github", "583231", "u2")
    assert await accounts.lookup("github", "583231") == "u1"


async def test_same_external_id_on_other_provider(accounts):
    await accounts.link("github", "42", "u1")
    await accounts.link("gitlab", "42", "u2")
    assert await accounts.lookup("gitlab", "42") == "u2"


async def test_concurrent_links_single_winner(accounts):
    users = [f"u{i}" for i in range(8)]
    results = await asyncio.gather(
        *(accounts.link("saml:idp.example.com", "jdoe", u) for u in users),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))
    assert await accounts.lookup("saml:idp.example.com", "jdoe") == winners[0].user_id


async def test_concurrent_relinks_same_user_all_succeed(accounts):
    results = await asyncio.gather(*(accounts.link("github", "7", "u1") for _ in range(5)))
    assert {r.user_id for r in results} == {"u1"}


async def test_unlink_is_idempotent(accounts):
    await accounts.link("github", "583231", "u1")
    await accounts.unlink("github", "583231")
    await accounts.unlink("github", "583231")
    with pytest.raises(NotFoundError):
        await accounts.lookup("github", "583231")
    assert await accounts.list("u1") == []


async def test_unlink_frees_the_slot(accounts):
    await accounts.link("github", "583231", "u1")
    await accounts.unlink("github", "583231")
    await accounts.link("github", "583231", "u2")
    assert await accounts.lookup("github", "583231") == "u2"


async def test_list_and_update_data(accounts, clock):
    await accounts.link("github", "1", "u1")
    await accounts.link("google", "abc", "u1")
    await accounts.link("github", "2", "u2")
    assert {a.provider for a in await accounts.list("u1")} == {"github", "google"}

    updated = await accounts.update_data("github", "1", {"login": "new"})
    assert updated.data == {"login": "new"}
    assert (await accounts.get("github", "1")).updated_at == clock.now()

    with pytest.raises(NotFoundError):
        await accounts.update_data("github", "missing", {})
