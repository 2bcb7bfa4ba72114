# tictify/timings.py
from __future__ import annotations
import os
import statistics
import time
from collections import deque
from typing import Deque, Dict

# samples kept per kind; older ones fall off so long runs stay bounded
MAX_SAMPLES = int(os.environ.get("TICTIFY_TIMINGS_MAX", "10000"))

# ------------ hot path: append only ------------
# one deque per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, Deque[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = deque(maxlen=MAX_SAMPLES)
        _TIMINGS[kind] = lst
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("api.payment_status"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only on demand ------------

def _pct(values, p: float) -> float:
    if not values:
        return 0.0
    x = sorted(values)
    k = int(max(0, min(len(x) - 1, round(p / 100 * (len(x) - 1)))))
    return x[k]


def summary() -> Dict[str, Dict[str, float]]:
    out = {}
    for kind, vals in _TIMINGS.items():
        out[kind] = {
            "n": len(vals),
            "mean": statistics.mean(vals) if vals else 0.0,
            "std": statistics.stdev(vals) if len(vals) > 1 else 0.0,
            "p50": _pct(vals, 50),
            "p99": _pct(vals, 99),
        }
    return out


def print_summary() -> None:
    s = summary()
    if not s:
        return
    print("\n=== Timings ===")
    for kind in sorted(s):
        t = s[kind]
        print(
            f"{kind:<28} n={int(t['n']):<6} mean {t['mean']*1000:8.2f}ms   "
            f"p50 {t['p50']*1000:8.2f}ms   p99 {t['p99']*1000:8.2f}ms"
        )


def reset() -> None:
    _TIMINGS.clear()
