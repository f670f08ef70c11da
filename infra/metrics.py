from __future__ import annotations

from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional


def percentile(vals: List[float], pct: float) -> Optional[float]:
    if not vals:
        return None
    v = sorted(vals)
    if len(v) == 1:
        return float(v[0])
    k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
    return float(v[k])


class Metrics:
    """Process-local counters and latency samples.

    Counters are flat (``rpc_requests_total``) or grouped by a reason label
    (``probe_fail_by_reason`` -> ``{"timeout": 3}``). Histograms keep the last
    ``max_samples`` observations only.
    """

    def __init__(self, max_samples: int = 2000) -> None:
        self._max_samples = max(1, int(max_samples))
        self._counters: Dict[str, int] = defaultdict(int)
        self._reasons: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._samples: Dict[str, Deque[float]] = {}

    def reset(self) -> None:
        self._counters.clear()
        self._reasons.clear()
        self._samples.clear()

    def inc(self, name: str, n: int = 1) -> None:
        if name:
            self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if group and reason:
            self._reasons[str(group)][str(reason)] += int(n)

    def observe(self, name: str, value: float) -> None:
        if not name:
            return
        try:
            v = float(value)
        except (TypeError, ValueError):
            return
        if v != v:  # NaN
            return
        bucket = self._samples.get(name)
        if bucket is None:
            bucket = deque(maxlen=self._max_samples)
            self._samples[name] = bucket
        bucket.append(v)

    def counter(self, name: str) -> int:
        return int(self._counters.get(name, 0))

    def snapshot(self) -> Dict[str, Any]:
        histograms: Dict[str, Any] = {}
        for name, bucket in self._samples.items():
            vals = list(bucket)
            histograms[name] = {
                "count": len(vals),
                "p50": percentile(vals, 50.0),
                "p95": percentile(vals, 95.0),
            }
        return {
            "counters": dict(self._counters),
            "reason_counters": {group: dict(counts) for group, counts in self._reasons.items()},
            "histograms": histograms,
        }


METRICS = Metrics()
