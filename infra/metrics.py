from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional


def _percentile(vals: List[float], pct: float) -> Optional[float]:
    if not vals:
        return None
    v = sorted(vals)
    if len(v) == 1:
        return float(v[0])
    k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
    return float(v[k])


class Metrics:
    """Process-local counters and latency samples.

    Counters are plain ints, reason counters group a counter by a label
    (plugin id, failure reason, endpoint host) and histograms keep the most
    recent samples only.
    """

    def __init__(self, max_samples: int = 2000) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._reason_counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._max_samples = max(1, int(max_samples))

    def reset(self) -> None:
        self._counters.clear()
        self._reason_counters.clear()
        self._histograms.clear()

    def inc(self, name: str, n: int = 1) -> None:
        if name:
            self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if group and reason:
            self._reason_counters[str(group)][str(reason)] += int(n)

    def observe(self, name: str, value: float) -> None:
        if not name:
            return
        try:
            v = float(value)
        except (TypeError, ValueError):
            return
        if v != v:  # NaN
            return
        bucket = self._histograms[str(name)]
        bucket.append(v)
        overflow = len(bucket) - self._max_samples
        if overflow > 0:
            del bucket[:overflow]

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Observe the wall time of the block in milliseconds under `name`."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - t0) * 1000.0)

    def counter(self, name: str) -> int:
        return int(self._counters.get(str(name), 0))

    def reasons(self, group: str) -> Dict[str, int]:
        return dict(self._reason_counters.get(str(group), {}))

    def snapshot(self) -> Dict[str, Any]:
        histograms: Dict[str, Any] = {}
        for name, vals in self._histograms.items():
            histograms[name] = {
                "count": len(vals),
                "p50": _percentile(vals, 50.0),
                "p95": _percentile(vals, 95.0),
                "max": max(vals) if vals else None,
            }
        return {
            "counters": dict(self._counters),
            "reason_counters": {g: dict(c) for g, c in self._reason_counters.items()},
            "histograms": histograms,
        }


METRICS = Metrics()
