"""
Dependency-index and package-index capabilities.

The registry only ever talks to these protocols. The no-op variants are the
defaults until a real index backend is plugged in.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()


class DependencyReference(BaseModel):
    repo_id: str
    language: str
    dep_data: dict[str, Any] = Field(default_factory=dict)


class PackageInfo(BaseModel):
    repo_id: str
    language: str
    pkg: dict[str, Any] = Field(default_factory=dict)


class GlobalDepsProvider(Protocol):
    async def update_index_for_language(
        self, language: str, repo_id: str, deps: list[dict[str, Any]]
    ) -> None: ...

    async def dependencies(
        self, language: str, dep_data: dict[str, Any], *, repo_id: Optional[str] = None, limit: int = 100
    ) -> list[DependencyReference]: ...


class PkgsProvider(Protocol):
    async def update_index_for_language(
        self, language: str, repo_id: str, pkgs: list[dict[str, Any]]
    ) -> None: ...

    async def list_packages(
        self, language: str, pkg_query: dict[str, Any], *, limit: int = 100
    ) -> list[PackageInfo]: ...


class NoOpGlobalDeps:
    """Accepts index updates and discards them; queries find nothing."""

    async def update_index_for_language(
        self, language: str, repo_id: str, deps: list[dict[str, Any]]
    ) -> None:
        log.debug("global_deps.noop_update", language=language, repo_id=repo_id, count=len(deps))

    async def dependencies(
        self, language: str, dep_data: dict[str, Any], *, repo_id: Optional[str] = None, limit: int = 100
    ) -> list[DependencyReference]:
        return []


class NoOpPkgs:
    """Accepts index updates and discards them; queries find nothing."""

    async def update_index_for_language(
        self, language: str, repo_id: str, pkgs: list[dict[str, Any]]
    ) -> None:
        log.debug("pkgs.noop_update", language=language, repo_id=repo_id, count=len(pkgs))

    async def list_packages(
        self, language: str, pkg_query: dict[str, Any], *, limit: int = 100
    ) -> list[PackageInfo]:
        return []
