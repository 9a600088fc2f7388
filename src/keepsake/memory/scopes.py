"""Scope resolution: which tiers a query sees, and in what order.

Precedence is fixed: user > project > local > enterprise. The resolver never
merges record content; it hands back an ordered scope list that search walks
first to last, keeping the first occurrence of each id.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from keepsake.config import ScopeConfig
from keepsake.errors import InvalidScope
from keepsake.memory.records import Scope

logger = logging.getLogger(__name__)

PRECEDENCE: tuple[Scope, ...] = (Scope.USER, Scope.PROJECT, Scope.LOCAL, Scope.ENTERPRISE)
_RANK = {scope: rank for rank, scope in enumerate(PRECEDENCE)}

ScopeQuery = Scope | str | Iterable[Scope | str] | None


def parse_scope(value: Scope | str) -> Scope:
    """Coerce a scope name, raising InvalidScope for anything outside the four tiers."""
    if isinstance(value, Scope):
        return value
    if isinstance(value, str):
        try:
            return Scope(value.strip().lower())
        except ValueError:
            pass
    allowed = ", ".join(s.value for s in PRECEDENCE)
    raise InvalidScope(f"Unknown scope: {value!r} (expected one of: {allowed})")


def precedence(scope: Scope) -> int:
    """Lower rank wins."""
    return _RANK[scope]


def find_project_root(cwd: Path) -> Path | None:
    """Walk up from cwd, return the nearest directory containing .git."""
    p = cwd.resolve()
    while True:
        if (p / ".git").exists():
            return p
        if p == p.parent:
            return None
        p = p.parent


class ScopeResolver:
    """Maps scopes to storage roots and resolves query scopes to ordered lists."""

    def __init__(self, config: ScopeConfig, cwd: Path | None = None) -> None:
        self.config = config
        self.cwd = (cwd or Path.cwd()).resolve()
        self.git_root = find_project_root(self.cwd)

    @property
    def project_base(self) -> Path:
        return self.git_root or self.cwd

    def enterprise_available(self) -> bool:
        path = self.config.enterprise_path
        return bool(self.config.enterprise_enabled and path and path.is_dir())

    def available(self) -> list[Scope]:
        """Scopes this context can see, in precedence order."""
        scopes = [Scope.USER, Scope.PROJECT, Scope.LOCAL]
        if self.enterprise_available():
            scopes.append(Scope.ENTERPRISE)
        return scopes

    def root(self, scope: Scope | str) -> Path:
        scope = parse_scope(scope)
        if scope is Scope.USER:
            return self.config.user_dir
        if scope is Scope.PROJECT:
            return self.project_base / ".claude" / "memory"
        if scope is Scope.LOCAL:
            return self.project_base / ".claude" / "memory" / "local"
        self._check_enterprise()
        return self.config.enterprise_path

    def _check_enterprise(self) -> None:
        if not self.config.enterprise_enabled:
            raise InvalidScope(
                "Enterprise scope is disabled. Enable it with "
                "[scopes] enterprise_enabled = true in keepsake.toml"
            )
        if not self.config.enterprise_path:
            raise InvalidScope(
                "Enterprise scope is enabled but no path is configured. "
                "Set KEEPSAKE_ENTERPRISE_PATH or [scopes] enterprise_path"
            )
        if not self.config.enterprise_path.is_dir():
            raise InvalidScope(f"Enterprise path is inaccessible: {self.config.enterprise_path}")

    def resolve(self, query_scope: ScopeQuery = None) -> list[Scope]:
        """Ordered, de-duplicated list of scopes to query.

        None means every available scope. A name or Scope means just that one;
        an iterable means those scopes. Unknown names raise InvalidScope.
        """
        if query_scope is None:
            return self.available()
        if isinstance(query_scope, (Scope, str)):
            requested = [parse_scope(query_scope)]
        else:
            requested = [parse_scope(s) for s in query_scope]
            if not requested:
                raise InvalidScope("Empty scope list")
        if Scope.ENTERPRISE in requested:
            self._check_enterprise()
        return sorted(set(requested), key=precedence)

    def default_scope(self) -> Scope:
        """Configured default, else project inside a git checkout, else user."""
        if self.config.default:
            try:
                return parse_scope(self.config.default)
            except InvalidScope:
                logger.warning("Ignoring invalid default scope %r", self.config.default)
        return Scope.PROJECT if self.git_root else Scope.USER
