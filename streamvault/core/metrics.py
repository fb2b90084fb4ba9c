"""
In-process metrics exported in Prometheus text format at /metrics.

Counters and gauges are keyed by a fixed tuple of label names declared at
registration; missing labels export as empty strings. Values live in this
process only and reset on restart.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class _Series:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = ""):
        self.name = name
        self.label_names: Tuple[str, ...] = tuple(label_names or ())
        self.help_text = help_text
        self._samples: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelKey:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._samples.get(self._key(labels), 0.0)

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()

    def _sample_line(self, key: LabelKey, value: float) -> str:
        if not self.label_names:
            return f"{self.name} {value}"
        pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
        return f"{self.name}{{{pairs}}} {value}"

    def render(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            samples = sorted(self._samples.items())
        lines.extend(self._sample_line(key, value) for key, value in samples)
        return lines


class Counter(_Series):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + float(amount)


class Gauge(_Series):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._samples[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._series: Dict[str, _Series] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name, label_names, help_text):
        with self._lock:
            existing = self._series.get(name)
            if existing is None:
                existing = self._series[name] = cls(name, label_names, help_text)
            elif not isinstance(existing, cls):
                raise ValueError(f"metric {name} already registered as a {existing.kind}")
            return existing

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Counter:
        return self._register(Counter, name, label_names, help_text)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Gauge:
        return self._register(Gauge, name, label_names, help_text)

    def export_prometheus(self) -> str:
        with self._lock:
            series = list(self._series.values())
        lines: List[str] = []
        for metric in series:
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            series = list(self._series.values())
        for metric in series:
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", ["method", "path", "status"], "HTTP requests by route and status"
)
saga_outcomes_total = METRICS.counter(
    "saga_outcomes_total", ["phase", "outcome"], "Signup saga intent/finalize outcomes"
)
webhook_events_total = METRICS.counter(
    "webhook_events_total", ["kind", "status"], "Provider webhook deliveries by event kind and result"
)
entitlement_denials_total = METRICS.counter(
    "entitlement_denials_total", ["reason"], "Device and download requests refused by entitlement checks"
)
webhook_replay_backlog = METRICS.gauge(
    "webhook_replay_backlog", help_text="Recorded webhook events not yet applied"
)


# uuids, numeric ids and provider ids (sub_..., cus_...)
_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,}|[a-z]{2,4}_[A-Za-z0-9]+)$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to :id to bound label cardinality."""
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in segments)
