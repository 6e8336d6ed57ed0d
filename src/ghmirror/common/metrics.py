"""In-process metrics rendered in the Prometheus text format."""

from __future__ import annotations

from typing import Callable, Dict, Sequence


LabelValues = tuple[str, ...]


def _series(name: str, label_names: Sequence[str], values: LabelValues) -> str:
    if not label_names:
        return name
    pairs = ",".join(f'{label}="{value}"' for label, value in zip(label_names, values))
    return f"{name}{{{pairs}}}"


class Counter:
    """Monotonic counter, optionally split by a fixed set of labels."""

    kind = "counter"

    def __init__(self, name: str, description: str = "", labels: Sequence[str] = ()) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(labels)
        self._values: Dict[LabelValues, float] = {} if self.label_names else {(): 0.0}

    def _key(self, labels: Dict[str, str]) -> LabelValues:
        if set(labels) != set(self.label_names):
            raise ValueError(f"{self.name} expects labels {self.label_names}, got {tuple(labels)}")
        return tuple(str(labels[label]) for label in self.label_names)

    @property
    def value(self) -> float:
        return sum(self._values.values())

    def get(self, **labels: str) -> float:
        return self._values.get(self._key(labels), 0.0)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = self._key(labels)
        self._values[key] = self._values.get(key, 0.0) + amount

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        for key, value in sorted(self._values.items()):
            lines.append(f"{_series(self.name, self.label_names, key)} {value}")
        return "\n".join(lines) + "\n"


class Gauge:
    """Point-in-time value, either set directly or read from a supplier at render time."""

    kind = "gauge"

    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    def render(self) -> str:
        value = self._supplier() if self._supplier else self._value
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} {self.kind}\n{self.name} {value}\n"


class Histogram:
    kind = "histogram"

    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = [0] * len(self._buckets)
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bucket in enumerate(self._buckets):
            if value <= bucket:
                self._counts[index] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        lines.extend(
            f'{self.name}_bucket{{le="{bucket}"}} {count}' for bucket, count in zip(self._buckets, self._counts)
        )
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        # Re-registering a name replaces the previous metric, so app factories can run repeatedly.
        self._metrics[metric.name] = metric
        return metric

    def get(self, name: str):
        return self._metrics.get(name)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
