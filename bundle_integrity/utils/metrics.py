"""
Process-local metrics rendered in the Prometheus text format on /metrics.

Counters and histograms are keyed by (name, sorted labels). Names this service
emits carry a HELP line; ad-hoc names render with TYPE only.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, Iterable, List, Optional, Tuple

Labels = Tuple[Tuple[str, str], ...]

HELP: Dict[str, str] = {
    "http_requests_total": "HTTP requests by route template, method and status.",
    "http_request_duration_seconds": "HTTP request latency by route template and method.",
    "records_ingested_total": "Records written by bundle ingestion.",
    "record_answers_repaired_total": "Multiple-choice answers rewritten by confirmed repairs.",
    "repair_apply_total": "Repair apply attempts by result (ok, failed, stale).",
    "repair_apply_seconds": "Wall time of a repair apply including revalidation.",
}


def _labels(labels: Optional[Dict[str, str]]) -> Labels:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items() if v is not None))


def _fmt(labels: Labels, extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = list(labels) + ([extra] if extra else [])
    if not pairs:
        return ""
    body = ",".join(
        '{}="{}"'.format(k, v.replace("\\", "\\\\").replace('"', '\\"')) for k, v in pairs
    )
    return "{" + body + "}"


class _Histogram:
    __slots__ = ("bounds", "hits", "total", "count")

    def __init__(self, bounds: List[float]) -> None:
        self.bounds = bounds
        self.hits = [0] * len(bounds)
        self.total = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        self.total += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.hits[i] += 1


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[Labels, float]] = {}
        self._histograms: Dict[str, Dict[Labels, _Histogram]] = {}

    def inc(self, name: str, labels: Labels, value: float) -> None:
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[labels] = series.get(labels, 0.0) + value

    def observe(self, name: str, labels: Labels, value: float, bounds: List[float]) -> None:
        with self._lock:
            series = self._histograms.setdefault(name, {})
            hist = series.get(labels)
            # A caller changing its buckets starts the series over.
            if hist is None or hist.bounds != bounds:
                hist = series[labels] = _Histogram(bounds)
            hist.observe(value)

    def render(self) -> str:
        lines: List[str] = []
        with self._lock:
            for name in sorted(self._counters):
                self._header(lines, name, "counter")
                for labels, value in sorted(self._counters[name].items()):
                    lines.append(f"{name}{_fmt(labels)} {value:g}")
            for name in sorted(self._histograms):
                self._header(lines, name, "histogram")
                for labels, hist in sorted(self._histograms[name].items()):
                    # `hits` are already cumulative: each counts value <= bound.
                    for bound, hits in zip(hist.bounds, hist.hits):
                        lines.append(f"{name}_bucket{_fmt(labels, ('le', str(bound)))} {hits}")
                    lines.append(f"{name}_bucket{_fmt(labels, ('le', '+Inf'))} {hist.count}")
                    lines.append(f"{name}_count{_fmt(labels)} {hist.count}")
                    lines.append(f"{name}_sum{_fmt(labels)} {hist.total:.6f}")
        return "\n".join(lines) + "\n"

    @staticmethod
    def _header(lines: List[str], name: str, kind: str) -> None:
        if name in HELP:
            lines.append(f"# HELP {name} {HELP[name]}")
        lines.append(f"# TYPE {name} {kind}")


REGISTRY = MetricsRegistry()


def inc_counter(
    name: str, *, labels: Optional[Dict[str, str]] = None, value: float = 1.0
) -> None:
    REGISTRY.inc(str(name), _labels(labels), float(value))


def observe_histogram(
    name: str,
    *,
    value: float,
    buckets: Iterable[float],
    labels: Optional[Dict[str, str]] = None,
) -> None:
    bounds = sorted({float(b) for b in buckets})
    REGISTRY.observe(str(name), _labels(labels), float(value), bounds)


def render_prometheus() -> str:
    return REGISTRY.render()


class Timer:
    def __init__(self) -> None:
        self._start = time.monotonic()

    def elapsed_seconds(self) -> float:
        return max(0.0, time.monotonic() - self._start)
