from __future__ import annotations

from collections import defaultdict
import threading


_counters: dict[str, int] = defaultdict(int)
_lock = threading.Lock()


def increment_counter(name: str, value: int = 1) -> None:
    # Alertable counters such as audit_write_failures.
    with _lock:
        _counters[name] += value


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def reset_counters() -> None:
    # Tests only.
    with _lock:
        _counters.clear()
