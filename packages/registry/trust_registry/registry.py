"""
Identity registry, the composition root for the trust stores.

Request-handling code receives an IdentityRegistry instance explicitly; there
are no module-level store singletons, so every test and every process builds
its own isolated registry.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import structlog

from .accounts import ExternalAccountStore
from .cert_cache import CertCache, CertificateFetcher
from .clock import Clock, SecretGenerator, SystemClock, SystemSecretGenerator
from .config import Settings
from .fetcher import TLSCertificateFetcher
from .gateway import MemoryGateway, PersistenceGateway
from .invitations import OrgInvitationStore
from .logs import configure_logging
from .memberships import OrgMembershipStore
from .providers import GlobalDepsProvider, NoOpGlobalDeps, NoOpPkgs, PkgsProvider
from .tokens import AccessTokenStore

log = structlog.get_logger()


def create_gateway(settings: Settings) -> PersistenceGateway:
    """Build the gateway backend named by ``settings.gateway_backend``."""
    if settings.gateway_backend == "sqlite":
        from .sqlite_gateway import SqliteGateway

        return SqliteGateway(settings.sqlite_path)
    if settings.gateway_backend == "redis":
        from .redis_gateway import RedisGateway

        return RedisGateway(settings.redis_url, key_prefix=settings.redis_key_prefix)
    return MemoryGateway()


class IdentityRegistry:
    """Store handles for the identity and trust layer."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        secrets: Optional[SecretGenerator] = None,
        fetcher: Optional[CertificateFetcher] = None,
        global_deps: Optional[GlobalDepsProvider] = None,
        pkgs: Optional[PkgsProvider] = None,
    ):
        self.settings = settings or Settings()
        self.gateway = gateway
        self.clock = clock or SystemClock()

        self.access_tokens = AccessTokenStore(
            gateway, self.settings, self.clock, secrets or SystemSecretGenerator()
        )
        self.external_accounts = ExternalAccountStore(gateway, self.settings, self.clock)
        self.org_members = OrgMembershipStore(gateway, self.settings, self.clock)
        self.org_invitations = OrgInvitationStore(
            gateway, self.org_members, self.settings, self.clock
        )
        self.cert_cache = CertCache(
            fetcher or TLSCertificateFetcher(),
            self.clock,
            renewal_margin=timedelta(days=self.settings.cert_renewal_margin_days),
            max_entries=self.settings.cert_cache_max_entries,
            fetch_timeout=self.settings.cert_fetch_timeout_seconds,
        )
        self.global_deps: GlobalDepsProvider = global_deps or NoOpGlobalDeps()
        self.pkgs: PkgsProvider = pkgs or NoOpPkgs()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "IdentityRegistry":
        """Registry over the gateway backend the settings select.

        Also configures structlog from the logging settings.
        """
        settings = settings or Settings()
        configure_logging(settings.log_level, settings.log_format)
        return cls(create_gateway(settings), settings=settings, **kwargs)

    async def open(self) -> None:
        await self.gateway.open()
        log.info("identity_registry.opened", backend=type(self.gateway).__name__)

    async def close(self) -> None:
        await self.gateway.close()
        log.info("identity_registry.closed")

    async def __aenter__(self) -> "IdentityRegistry":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
