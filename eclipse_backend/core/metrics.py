"""
In-process counters with Prometheus text exposition.

Counters live for the life of the process (reset only by tests). Label
values for paths are collapsed so Stripe ids never become series.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class Counter:
    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, description: str = ""):
        self.name = name
        self.description = description
        self.label_names = tuple(label_names or ())
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name} has no labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError("Counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())

    def export(self) -> List[str]:
        lines = []
        if self.description:
            lines.append(f"# HELP {self.name} {self.description}")
        lines.append(f"# TYPE {self.name} counter")
        with self._lock:
            series = sorted(self._values.items())
        for values, count in series:
            if self.label_names:
                rendered = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, values))
                lines.append(f"{self.name}{{{rendered}}} {count}")
            else:
                lines.append(f"{self.name} {count}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class MetricsRegistry:
    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, description: str = "") -> Counter:
        """Get or register a counter; registering twice returns the same one."""
        with self._lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, label_names, description)
            return self.counters[name]

    def export_prometheus(self) -> str:
        with self._lock:
            counters = list(self.counters.values())
        lines: List[str] = []
        for counter in counters:
            lines.extend(counter.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        with self._lock:
            counters = list(self.counters.values())
        for counter in counters:
            counter.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total",
    ["method", "path", "status"],
    description="HTTP requests by route and status.",
)
billing_webhooks_total = METRICS.counter(
    "billing_webhooks_total",
    ["event_type", "outcome"],
    description="Stripe webhook deliveries by event type and reconciliation outcome.",
)
billing_customers_created_total = METRICS.counter(
    "billing_customers_created_total",
    description="Stripe customers provisioned by this service.",
)


# Stripe object ids (cus_..., evt_...), uuids and long hex tokens
_ID_SEGMENT_RE = re.compile(r"^(?:[0-9a-fA-F-]{8,}|(?:cus|sub|evt|in|cs|bps|pi)_[A-Za-z0-9]+)$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to :id."""
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(
        ":id" if s.isdigit() or _ID_SEGMENT_RE.match(s) else s for s in segments
    )
