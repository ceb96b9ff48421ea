from __future__ import annotations

import threading

import pytest

from tenantguard.services.authz.definitions import Policy, PolicyDefinition
from tenantguard.services.authz.registry import PolicyRegistry


ACTIONS = ("list", "read", "create", "update", "delete")


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _policy(action: str, version: int, roles: tuple[str, ...] = ("manager",)) -> Policy:
    definition = PolicyDefinition(resource_type="workorders", action=action, allowed_roles=roles)
    return Policy.from_definition(definition, version=version)


def test_absent_entry_is_none() -> None:
    registry = PolicyRegistry()
    assert registry.get("workorders", "read") is None


def test_upsert_validates_key() -> None:
    registry = PolicyRegistry()
    with pytest.raises(ValueError):
        registry.upsert("customers", "read", _policy("read", 1))
    registry.upsert("workorders", "read", _policy("read", 1))
    assert registry.get("workorders", "read").version == 1


def test_replace_resource_keeps_other_actions() -> None:
    registry = PolicyRegistry()
    registry.replace_resource("workorders", [_policy("read", 1), _policy("list", 1)])
    registry.replace_resource("workorders", [_policy("read", 2)])
    assert registry.get("workorders", "read").version == 2
    assert registry.get("workorders", "list").version == 1


def test_snapshot_is_read_only() -> None:
    registry = PolicyRegistry()
    registry.upsert("workorders", "read", _policy("read", 1))
    with pytest.raises(TypeError):
        registry.snapshot()[("workorders", "read")] = _policy("read", 9)  # type: ignore[index]


def test_load_never_steps_back_a_version() -> None:
    registry = PolicyRegistry()
    registry.replace_resource("workorders", [_policy("read", 3)])
    registry.load([_policy("read", 2), _policy("list", 1)])
    assert registry.get("workorders", "read").version == 3
    assert registry.get("workorders", "list").version == 1


def test_staleness_follows_interval_and_invalidate() -> None:
    clock = FakeClock()
    registry = PolicyRegistry(refresh_interval_s=10, clock=clock)
    assert registry.is_stale()
    registry.load([])
    assert not registry.is_stale()
    clock.now += 11
    assert registry.is_stale()
    registry.load([])
    registry.invalidate()
    assert registry.is_stale()


def test_concurrent_readers_never_observe_a_partial_swap() -> None:
    registry = PolicyRegistry()
    registry.replace_resource("workorders", [_policy(action, 1) for action in ACTIONS])
    stop = threading.Event()
    mixed: list[set[int]] = []

    def reader() -> None:
        while not stop.is_set():
            versions = {policy.version for policy in registry.resource_policies("workorders").values()}
            if len(versions) != 1:
                mixed.append(versions)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    try:
        for version in range(2, 400):
            registry.replace_resource("workorders", [_policy(action, version) for action in ACTIONS])
    finally:
        stop.set()
        for thread in threads:
            thread.join()
    assert mixed == []
    assert registry.get("workorders", "delete").version == 399
