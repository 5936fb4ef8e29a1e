"""Process-local reception and transmission counters.

Native primitives, the socket wrapper and the API all increment named counters
here (``frames_received``, ``receive_timeouts``, ``listener_errors`` ...).
The counters are plain integers kept in a ``Counter``; nothing is exported
outside the process except through ``/api/metrics``.
"""
from __future__ import annotations

import threading
from collections import Counter
from typing import Dict

# native reads run in executor threads, so increments are locked
_lock = threading.Lock()
_counters: Counter = Counter()


def inc(name: str, n: int = 1) -> None:
    with _lock:
        _counters[name] += n


def get(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def get_all() -> Dict[str, int]:
    with _lock:
        return dict(_counters)


def reset_all() -> None:
    with _lock:
        _counters.clear()
