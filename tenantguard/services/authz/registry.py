from __future__ import annotations

import asyncio
from functools import lru_cache
import logging
import time
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import get_settings
from tenantguard.persistence.repos import authz as authz_repo
from tenantguard.services.authz.definitions import Policy


logger = logging.getLogger(__name__)

PolicyKey = tuple[str, str]


class PolicyRegistry:
    """In-memory policy snapshot keyed by (resource_type, action).

    Readers only ever dereference ``self._snapshot`` once per lookup, and
    writers build a complete replacement mapping before swapping it in, so a
    concurrent reader sees either the old or the new policy set, never a mix.
    A key with no entry is deny-all.
    """

    def __init__(
        self,
        *,
        refresh_interval_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._snapshot: Mapping[PolicyKey, Policy] = MappingProxyType({})
        self._refresh_interval_s = refresh_interval_s
        self._clock = clock
        self._loaded_at: float | None = None
        self._refresh_lock = asyncio.Lock()

    def get(self, resource_type: str, action: str) -> Policy | None:
        return self._snapshot.get((resource_type, action))

    def snapshot(self) -> Mapping[PolicyKey, Policy]:
        return self._snapshot

    def resource_policies(self, resource_type: str) -> dict[str, Policy]:
        snapshot = self._snapshot
        return {action: policy for (rtype, action), policy in snapshot.items() if rtype == resource_type}

    def upsert(self, resource_type: str, action: str, policy: Policy) -> None:
        if (policy.resource_type, policy.action) != (resource_type, action):
            raise ValueError("Policy key does not match its resource type/action")
        self.replace_resource(resource_type, [policy])

    def replace_resource(self, resource_type: str, policies: Iterable[Policy]) -> None:
        # Swap all changed actions of one resource type in a single reference assignment.
        updated = dict(self._snapshot)
        for policy in policies:
            if policy.resource_type != resource_type:
                raise ValueError("Policy belongs to a different resource type")
            updated[(policy.resource_type, policy.action)] = policy
        self._snapshot = MappingProxyType(updated)

    def load(self, policies: Iterable[Policy]) -> None:
        # Never step back to an older version than one already installed in-process.
        current = self._snapshot
        loaded: dict[PolicyKey, Policy] = {}
        for policy in policies:
            key = (policy.resource_type, policy.action)
            existing = current.get(key)
            loaded[key] = existing if existing and existing.version > policy.version else policy
        for key, existing in current.items():
            loaded.setdefault(key, existing)
        self._snapshot = MappingProxyType(loaded)
        self._loaded_at = self._clock()

    def invalidate(self) -> None:
        # Force the next ensure_fresh() to hit durable storage.
        self._loaded_at = None

    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        interval = self._refresh_interval_s
        if interval is None:
            interval = get_settings().policy_refresh_interval_s
        return self._clock() - self._loaded_at >= interval

    async def refresh(self, session: AsyncSession) -> None:
        rows = await authz_repo.list_active_policies(session)
        self.load(Policy.from_row(row) for row in rows)
        logger.debug("policy_registry_refreshed policies=%s", len(rows))

    async def ensure_fresh(self, session: AsyncSession) -> None:
        if not self.is_stale():
            return
        async with self._refresh_lock:
            # Another task may have refreshed while this one waited.
            if self.is_stale():
                await self.refresh(session)


@lru_cache
def get_policy_registry() -> PolicyRegistry:
    return PolicyRegistry()
