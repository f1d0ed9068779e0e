"""Prometheus metrics for the edge gateway.

Counters and histograms live in-process and are rendered in the Prometheus
text format on ``/metrics``.  All state is guarded by one lock.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field

LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

# Sorted (label, value) pairs identify one series.
LabelKey = tuple[tuple[str, str], ...]


@dataclass
class _HistogramSeries:
    total: float = 0.0
    count: int = 0
    bucket_counts: list[int] = field(default_factory=lambda: [0] * len(LATENCY_BUCKETS))

    def observe(self, value: float) -> None:
        self.total += value
        self.count += 1
        for index, bound in enumerate(LATENCY_BUCKETS):
            if value <= bound:
                self.bucket_counts[index] += 1


_lock = threading.Lock()
_counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histograms: dict[str, dict[LabelKey, _HistogramSeries]] = defaultdict(
    lambda: defaultdict(_HistogramSeries)
)


def _label_key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted(labels.items()))


def inc_counter(name: str, labels: dict[str, str], value: float = 1.0) -> None:
    with _lock:
        _counters[name][_label_key(labels)] += value


def observe_histogram(name: str, labels: dict[str, str], value: float) -> None:
    with _lock:
        _histograms[name][_label_key(labels)].observe(value)


def counter_value(name: str, labels: dict[str, str]) -> float:
    with _lock:
        return _counters.get(name, {}).get(_label_key(labels), 0.0)


def reset_metrics() -> None:
    with _lock:
        _counters.clear()
        _histograms.clear()


def _format_labels(label_pairs: LabelKey, **extra: str) -> str:
    pairs = sorted((*label_pairs, *extra.items()))
    if not pairs:
        return ""
    return "{" + ",".join(f'{key}="{value}"' for key, value in pairs) + "}"


def _render_histogram(name: str, label_pairs: LabelKey, series: _HistogramSeries) -> list[str]:
    lines: list[str] = []
    cumulative = 0
    for bound, bucket_count in zip(LATENCY_BUCKETS, series.bucket_counts):
        cumulative += bucket_count
        lines.append(f"{name}_bucket{_format_labels(label_pairs, le=str(bound))} {cumulative}")
    lines.append(f"{name}_bucket{_format_labels(label_pairs, le='+Inf')} {series.count}")
    lines.append(f"{name}_sum{_format_labels(label_pairs)} {series.total}")
    lines.append(f"{name}_count{_format_labels(label_pairs)} {series.count}")
    return lines


def render_metrics() -> str:
    lines: list[str] = []
    with _lock:
        for name, series_map in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            lines.extend(
                f"{name}{_format_labels(label_pairs)} {value}"
                for label_pairs, value in sorted(series_map.items())
            )
        for name, histogram_map in sorted(_histograms.items()):
            lines.append(f"# TYPE {name} histogram")
            for label_pairs, series in sorted(histogram_map.items()):
                lines.extend(_render_histogram(name, label_pairs, series))

    lines.append("")
    return "\n".join(lines)


def record_request(
    capability: str,
    status_code: int,
    latency_s: float,
    backend_latency_s: float | None = None,
    tokens_in: int = 0,
    tokens_out: int = 0,
) -> None:
    """Record all metrics for one request outcome."""
    inc_counter(
        "gateway_requests_total",
        {"capability": capability, "status": str(status_code)},
    )
    observe_histogram("gateway_request_duration_seconds", {"capability": capability}, latency_s)

    if backend_latency_s is not None:
        observe_histogram(
            "gateway_backend_latency_seconds", {"capability": capability}, backend_latency_s
        )
    if status_code == 429:
        inc_counter("gateway_rate_limited_total", {"capability": capability})
    if tokens_in > 0:
        inc_counter("gateway_tokens_total", {"direction": "input"}, float(tokens_in))
    if tokens_out > 0:
        inc_counter("gateway_tokens_total", {"direction": "output"}, float(tokens_out))
