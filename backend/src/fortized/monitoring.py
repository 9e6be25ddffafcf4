"""In-process metrics exported in the Prometheus text format."""

from __future__ import annotations

from threading import Lock
from typing import Sequence


def _render_number(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _render_labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    parts = []
    for name, value in zip(names, values, strict=True):
        escaped = value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')
        parts.append(f'{name}="{escaped}"')
    return "{" + ",".join(parts) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: Sequence[str] = ()) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def labels(self, *values: object) -> "_Bound":
        if len(values) != len(self.label_names):
            raise ValueError(
                f"Metric '{self.name}' takes {len(self.label_names)} label values, got {len(values)}"
            )
        return _Bound(self, tuple(str(value) for value in values))

    def value(self, *values: object) -> float:
        with self._lock:
            return self._samples.get(tuple(str(value) for value in values), 0.0)

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()

    def _add(self, key: tuple[str, ...], amount: float) -> None:
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def _set(self, key: tuple[str, ...], value: float) -> None:
        with self._lock:
            self._samples[key] = float(value)

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            samples = sorted(self._samples.items())
        if not samples:
            lines.append(f"{self.name} 0")
        for key, value in samples:
            lines.append(f"{self.name}{_render_labels(self.label_names, key)} {_render_number(value)}")
        return lines


class Counter(_Metric):
    kind = "counter"

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)


class Gauge(_Metric):
    kind = "gauge"

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)

    def dec(self, amount: float = 1.0) -> None:
        self.labels().dec(amount)

    def set(self, value: float) -> None:
        self.labels().set(value)


class _Bound:
    """A metric with its label values filled in: ``metric.labels("a").inc()``."""

    def __init__(self, metric: _Metric, key: tuple[str, ...]) -> None:
        self._metric = metric
        self._key = key

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Use dec() to lower a gauge")
        self._metric._add(self._key, amount)

    def dec(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, Gauge):
            raise AttributeError("Only gauges can be decremented")
        self._metric._add(self._key, -amount)

    def set(self, value: float) -> None:
        if not isinstance(self._metric, Gauge):
            raise AttributeError("Only gauges can be set")
        self._metric._set(self._key, value)


class MetricsRegistry:
    """Collects metrics and renders them for scraping."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = Lock()

    def _register(self, metric: _Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> Counter:
        metric = Counter(name, description, label_names)
        self._register(metric)
        return metric

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> Gauge:
        metric = Gauge(name, description, label_names)
        self._register(metric)
        return metric

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


registry = MetricsRegistry()

realtime_events_total = registry.counter(
    "fortized_realtime_events_total",
    "Realtime events delivered to session callbacks.",
    label_names=("kind", "via"),
)

sync_sessions = registry.gauge(
    "fortized_sync_sessions",
    "Number of active session subscriptions in this process.",
)

sync_poll_cycles_total = registry.counter(
    "fortized_sync_poll_cycles_total",
    "Completed polling passes of the realtime safety net.",
    label_names=("scope",),
)

relay_publish_errors_total = registry.counter(
    "fortized_relay_publish_errors_total",
    "Failures while relaying store mutations to other nodes.",
    label_names=("backend", "reason"),
)

relay_restarts_total = registry.counter(
    "fortized_relay_restarts_total",
    "Reconnects of the mutation relay transport.",
    label_names=("backend", "reason"),
)

store_conflicts_total = registry.counter(
    "fortized_store_conflicts_total",
    "Compare-and-swap conflicts retried by store transactions.",
    label_names=("backend",),
)
