"""Process-wide runtime reliability counters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, fields


@dataclass(frozen=True)
class CounterSnapshot:
    """Point-in-time view of the runtime reliability counters."""

    claim_conflicts: int = 0
    finalize_failures: int = 0
    stream_push_errors: int = 0
    recovery_runs: int = 0
    recovery_requeued: int = 0
    recovery_errors: int = 0


_FIELDS = tuple(f.name for f in fields(CounterSnapshot))
_lock = threading.Lock()
_counts = dict.fromkeys(_FIELDS, 0)


def _add(name: str, n: int) -> None:
    with _lock:
        _counts[name] += n


def inc_claim_conflicts() -> None:
    _add("claim_conflicts", 1)


def inc_finalize_failures() -> None:
    _add("finalize_failures", 1)


def inc_stream_push_errors() -> None:
    _add("stream_push_errors", 1)


def inc_recovery_runs() -> None:
    _add("recovery_runs", 1)


def add_recovery_requeued(n: int) -> None:
    """Add n requeued runs; non-positive values are ignored."""
    if n > 0:
        _add("recovery_requeued", n)


def add_recovery_errors(n: int) -> None:
    """Add n recovery errors; non-positive values are ignored."""
    if n > 0:
        _add("recovery_errors", n)


def snapshot_counters() -> CounterSnapshot:
    """Return a consistent snapshot of all counters."""
    with _lock:
        return CounterSnapshot(**_counts)


def reset_counters() -> None:
    """Set every counter back to zero."""
    with _lock:
        for name in _FIELDS:
            _counts[name] = 0