"""
Non-behavioral protocol metrics.

Privacy boundary:
- No contact identifiers
- No coordinates, geohashes or salts
- Protocol health only (what was created, what was rejected and why)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class Metrics:
    """
    Counters and gauges for commitment and proof traffic.

    Rejections are counted per reason under ``<name>:<reason>`` so a spike
    of stale proofs can be told apart from a spike of bad signatures.
    """

    counters: Dict[str, int] = field(default_factory=dict)
    gauges: Dict[str, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc(self, name: str, by: int = 1) -> None:
        with self._lock:
            self.counters[name] = self.counters.get(name, 0) + by

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self.gauges[name] = float(value)

    def outcome(self, kind: str, ok: bool, reason: str = "") -> bool:
        """
        Count a verification outcome and pass the result through.

        Example:
            >>> m = Metrics()
            >>> m.outcome("proofs", False, "stale")
            False
            >>> m.counters["proofs_rejected_total:stale"]
            1
        """
        if ok:
            self.inc(f"{kind}_verified_total")
        else:
            self.inc(f"{kind}_rejected_total")
            if reason:
                self.inc(f"{kind}_rejected_total:{reason}")
        return ok

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
            }
