"""In-process metrics registry, exported in Prometheus text format at /metrics."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


def _format_labels(label_names: List[str], values: Tuple[str, ...]) -> str:
    if not label_names:
        return ""
    parts = [f'{name}="{_escape(val)}"' for name, val in zip(label_names, values)]
    return "{" + ",".join(parts) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _add(self, labels: Optional[Dict[str, str]], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def export(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            for label_values, value in sorted(self._values.items()):
                lines.append(f"{self.name}{_format_labels(self.label_names, label_values)} {value}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters only go up")
        self._add(labels, amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        self._add(labels, amount)

    def dec(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        self._add(labels, -amount)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls, name: str, label_names, help_text: str):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = cls(name, label_names, help_text)
                self._metrics[name] = metric
            elif not isinstance(metric, cls):
                raise ValueError(f"Metric {name} already registered as {metric.kind}")
            return metric

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Counter:
        return self._get_or_create(Counter, name, label_names, help_text)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Gauge:
        return self._get_or_create(Gauge, name, label_names, help_text)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].export())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for metric in self._metrics.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", ["method", "path", "status"], "HTTP requests by route and status"
)
webhook_events_total = METRICS.counter(
    "webhook_events_total", ["event", "outcome"], "Provider webhook events by outcome"
)
subscription_transitions_total = METRICS.counter(
    "subscription_transitions_total", ["from_status", "to_status", "source"], "Applied lifecycle transitions"
)
jobs_processed_total = METRICS.counter(
    "jobs_processed_total", ["job_type", "outcome"], "Background jobs by type and outcome"
)
content_locked_total = METRICS.counter("content_locked_total", ["reason"], "Content items locked")
content_unlocked_total = METRICS.counter("content_unlocked_total", help_text="Content items unlocked")
cron_transitions_total = METRICS.counter(
    "cron_transitions_total", ["sweep"], "Rows changed by reconciliation sweeps"
)
reminders_sent_total = METRICS.counter("reminders_sent_total", ["days"], "Expiry reminders sent")

jobs_pending = METRICS.gauge("jobs_pending", help_text="Pending jobs seen at the last poll")


_ID_RE = re.compile(r"^([0-9a-fA-F-]{8,}|(sub|plan|pay|order|cust)_[A-Za-z0-9]+)$")


def normalize_path(path: str) -> str:
    """Reduce cardinality by replacing id-like segments with :id."""
    parts = []
    for segment in path.split("/"):
        if not segment:
            continue
        if segment.isdigit() or _ID_RE.match(segment):
            parts.append(":id")
        else:
            parts.append(segment)
    return "/" + "/".join(parts)
