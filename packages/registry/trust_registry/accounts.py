"""
External account store: links third-party identities to platform users.

A ``(provider, external_id)`` pair maps to at most one user. Linking claims
the pair with an insert-if-absent compare-and-set, so when several callers
race for the same pair exactly one insert lands and the others re-read it.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from trust_shared.schemas.accounts import ExternalAccount

from .clock import Clock
from .config import Settings
from .errors import ConflictError, NotFoundError
from .gateway import (
    ABSENT,
    CompareAndSet,
    Delete,
    PersistenceGateway,
    Put,
    key_prefix,
    make_key,
)

log = structlog.get_logger()


def _account_key(provider: str, external_id: str) -> str:
    return make_key("external_account", provider, external_id)


def _user_index_key(user_id: str, provider: str, external_id: str) -> str:
    return make_key("user_external_account", user_id, provider, external_id)


class ExternalAccountStore:
    def __init__(self, gateway: PersistenceGateway, settings: Settings, clock: Clock):
        self._gateway = gateway
        self._settings = settings
        self._clock = clock

    async def link(
        self,
        provider: str,
        external_id: str,
        user_id: str,
        data: Optional[dict[str, Any]] = None,
    ) -> ExternalAccount:
        """Link an external identity to ``user_id``.

        Re-linking to the same user is a no-op; linking to another user
        raises ConflictError.
        """
        key = _account_key(provider, external_id)
        for _ in range(self._settings.cas_max_attempts):
            stored = await self._gateway.get(key)
            if stored is not None:
                account = ExternalAccount.model_validate(stored.value)
                if account.user_id != user_id:
                    log.warning(
                        "external_account.link_conflict",
                        provider=provider,
                        user_id=user_id,
                        linked_user_id=account.user_id,
                    )
                    raise ConflictError(
                        f"{provider} account is already linked to another user"
                    )
                return account

            account = ExternalAccount(
                provider=provider,
                external_id=external_id,
                user_id=user_id,
                data=data,
                linked_at=self._clock.now(),
            )
            committed = await self._gateway.transaction([
                CompareAndSet(key, ABSENT, account.model_dump(mode="json")),
                Put(
                    _user_index_key(user_id, provider, external_id),
                    {"provider": provider, "external_id": external_id},
                ),
            ])
            if committed:
                log.info("external_account.linked", provider=provider, user_id=user_id)
                return account
            # Lost the race for the slot; the next read decides the outcome

        raise ConflictError(f"{provider} account is being linked concurrently")

    async def unlink(self, provider: str, external_id: str) -> None:
        """Remove a link. Unlinking an unknown account is a no-op."""
        key = _account_key(provider, external_id)
        for _ in range(self._settings.cas_max_attempts):
            stored = await self._gateway.get(key)
            if stored is None:
                return
            account = ExternalAccount.model_validate(stored.value)
            committed = await self._gateway.transaction([
                Delete(key, stored.version),
                Delete(_user_index_key(account.user_id, provider, external_id)),
            ])
            if committed:
                log.info(
                    "external_account.unlinked", provider=provider, user_id=account.user_id
                )
                return

        raise ConflictError(f"{provider} account is being modified concurrently")

    async def lookup(self, provider: str, external_id: str) -> str:
        """User id linked to the external identity; NotFoundError if none."""
        account = await self.get(provider, external_id)
        if account is None:
            raise NotFoundError(f"no user linked to {provider} account")
        return account.user_id

    async def get(self, provider: str, external_id: str) -> ExternalAccount | None:
        stored = await self._gateway.get(_account_key(provider, external_id))
        if stored is None:
            return None
        return ExternalAccount.model_validate(stored.value)

    async def list(self, user_id: str) -> list[ExternalAccount]:
        accounts = []
        for pointer in await self._gateway.scan(key_prefix("user_external_account", user_id)):
            account = await self.get(pointer.value["provider"], pointer.value["external_id"])
            if account is not None and account.user_id == user_id:
                accounts.append(account)
        return accounts

    async def update_data(
        self, provider: str, external_id: str, data: dict[str, Any]
    ) -> ExternalAccount:
        """Replace the provider-specific data stored with a link."""
        key = _account_key(provider, external_id)
        for _ in range(self._settings.cas_max_attempts):
            stored = await self._gateway.get(key)
            if stored is None:
                raise NotFoundError(f"no user linked to {provider} account")
            account = ExternalAccount.model_validate(stored.value)
            account.data = data
            account.updated_at = self._clock.now()
            if await self._gateway.compare_and_set(
                key, stored.version, account.model_dump(mode="json")
            ):
                return account

        raise ConflictError(f"{provider} account is being modified concurrently")
