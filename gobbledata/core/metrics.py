"""
In-process counters, exported in Prometheus text format at GET /metrics.

Only the degradations the core swallows are counted here; everything else
surfaces as an error response and is visible in request logs.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class Counter:
    def __init__(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names or ())
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name} has no labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def export(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        with self._lock:
            samples = sorted(self._values.items())
        for label_values, value in samples:
            label_text = ""
            if self.label_names:
                pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, label_values))
                label_text = "{" + pairs + "}"
            lines.append(f"{self.name}{label_text} {value}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


ga4_discovery_degraded_total = Counter(
    "ga4_discovery_degraded_total",
    "Property discovery failures treated as zero properties during OAuth callback.",
    ["reason"],
)
billing_mirror_write_failures_total = Counter(
    "billing_mirror_write_failures_total",
    "Local subscription mirror writes that failed after a successful Stripe read.",
    ["source"],
)
ga4_connections_deactivated_total = Counter(
    "ga4_connections_deactivated_total",
    "GA4 connections marked inactive, by cause.",
    ["reason"],
)

ALL_COUNTERS = (
    ga4_discovery_degraded_total,
    billing_mirror_write_failures_total,
    ga4_connections_deactivated_total,
)


def render_metrics() -> str:
    lines: List[str] = []
    for counter in ALL_COUNTERS:
        lines.extend(counter.export())
    return "\n".join(lines) + "\n"


def reset_metrics() -> None:
    for counter in ALL_COUNTERS:
        counter.reset()
