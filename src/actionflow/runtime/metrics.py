"""
Process-local counters and gauges.

Series are keyed by name plus optional labels, e.g.

    inc_counter("actions_processed_total", kind="stake")

counter(name, **labels) sums every series of that name whose labels include
the given ones, so counter("actions_processed_total") is the total across
kinds.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Tuple

Labels = Tuple[Tuple[str, str], ...]
SeriesKey = Tuple[str, Labels]

_lock = threading.Lock()
_counters: Dict[SeriesKey, int] = {}
_gauges: Dict[SeriesKey, int] = {}
_started_ms = int(time.time() * 1000)


def _series_key(name: str, labels: Dict[str, Any]) -> Optional[SeriesKey]:
    n = str(name or "").strip()
    if not n:
        return None
    return n, tuple(sorted((str(k), str(v)) for k, v in labels.items() if v is not None))


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _render(key: SeriesKey) -> str:
    name, labels = key
    if not labels:
        return name
    body = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{{{body}}}"


def inc_counter(name: str, value: int = 1, **labels: Any) -> None:
    key = _series_key(name, labels)
    if key is None:
        return
    v = _as_int(value, 1)
    with _lock:
        _counters[key] = _counters.get(key, 0) + v


def set_gauge(name: str, value: int, **labels: Any) -> None:
    key = _series_key(name, labels)
    if key is None:
        return
    v = _as_int(value, 0)
    with _lock:
        _gauges[key] = v


def counter(name: str, **labels: Any) -> int:
    key = _series_key(name, labels)
    if key is None:
        return 0
    want = set(key[1])
    with _lock:
        return sum(v for (n, ls), v in _counters.items() if n == key[0] and want.issubset(ls))


def snapshot() -> dict:
    now = int(time.time() * 1000)
    with _lock:
        return {
            "ts_ms": now,
            "started_ms": _started_ms,
            "uptime_ms": now - _started_ms,
            "counters": {_render(k): v for k, v in _counters.items()},
            "gauges": {_render(k): v for k, v in _gauges.items()},
        }


def reset() -> None:
    """Clear counters and gauges (tests only)."""
    with _lock:
        _counters.clear()
        _gauges.clear()


def format_prometheus(prefix: str = "actionflow_") -> str:
    """Prometheus exposition text: one TYPE line per metric, then its series."""
    pre = str(prefix or "").strip() or "actionflow_"
    with _lock:
        tables = (("counter", dict(_counters)), ("gauge", dict(_gauges)))
    lines: List[str] = [f"{pre}uptime_ms {int(time.time() * 1000) - _started_ms}"]

    for kind, values in tables:
        last_name = None
        for key in sorted(values):
            if key[0] != last_name:
                lines.append(f"# TYPE {pre}{key[0]} {kind}")
                last_name = key[0]
            lines.append(f"{pre}{_render(key)} {values[key]}")

    return "\n".join(lines) + "\n"
