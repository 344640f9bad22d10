"""Metric instruments, collected metric data and the exporter adapter."""

from __future__ import annotations

import enum
import inspect
import math
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

Number = Union[int, float]

CUMULATIVE = "cumulative"


class ValueType(enum.Enum):
    """Whether a metric accumulates over time or is a point-in-time reading."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class SimpleMetric:
    """One flattened metric reading, ready to be pushed to a backend."""

    name: str
    value: Number
    value_type: ValueType
    attributes: dict[str, str]
    time: float


class SimpleMetricExporter(ABC):
    """A backend that receives flattened metric readings."""

    @abstractmethod
    async def push(self, metrics: list[SimpleMetric]) -> None:
        """Deliver the given metrics; raise on failure."""


class ExporterError(Exception):
    """Raised when exporting metrics fails or the exporter is shut down."""

    def __init__(self, message: str, *, already_shutdown: bool = False) -> None:
        super().__init__(message)
        self.already_shutdown = already_shutdown


def _attribute_key(attributes: Mapping[str, Any] | None) -> tuple[tuple[str, Any], ...]:
    if not attributes:
        return ()
    return tuple(sorted(attributes.items()))


@dataclass
class Counter:
    """A summing instrument; monotonic counters reject negative increments."""

    name: str
    description: str = ""
    monotonic: bool = True
    enabled: bool = True
    totals: dict[tuple[tuple[str, Any], ...], Number] = field(default_factory=dict)

    def add(self, value: Number, attributes: Mapping[str, Any] | None = None) -> None:
        """Add ``value`` to the total kept for ``attributes``."""
        if self.monotonic and value < 0:
            raise ValueError(f"counter {self.name!r} cannot be decreased by {value}")
        if not self.enabled:
            return
        key = _attribute_key(attributes)
        self.totals[key] = self.totals.get(key, 0) + value

    def data_points(self) -> list[DataPoint]:
        return [DataPoint(value, dict(key)) for key, value in self.totals.items()]


@dataclass
class _GaugeInstrument:
    name: str
    description: str = ""
    enabled: bool = True
    values: dict[tuple[tuple[str, Any], ...], Number] = field(default_factory=dict)

    def record(self, value: Number, attributes: Mapping[str, Any] | None = None) -> None:
        if not self.enabled:
            return
        self.values[_attribute_key(attributes)] = value


@dataclass(frozen=True)
class AttributedCounter:
    """A counter bound to a fixed set of attributes."""

    inner: Counter
    attributes: Mapping[str, str]

    def add(self, value: Number) -> None:
        """Add ``value`` under the bound attributes."""
        self.inner.add(value, self.attributes)


def with_attributes(counter: Counter, attributes: Mapping[str, str]) -> AttributedCounter:
    """Bind ``attributes`` to ``counter``."""
    return AttributedCounter(counter, attributes)


@dataclass
class DataPoint:
    """One value of a metric, recorded under a set of attributes."""

    value: Number
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class Sum:
    """Data of a summing metric."""

    data_points: list[DataPoint]
    time: float


@dataclass
class Gauge:
    """Data of a gauge metric."""

    data_points: list[DataPoint]
    time: float


@dataclass
class Metric:
    """A named metric with its collected data."""

    name: str
    data: Any


@dataclass
class ScopeMetrics:
    """Metrics produced by one instrumentation scope."""

    metrics: list[Metric]
    scope: str = ""


@dataclass
class ResourceMetrics:
    """All metrics collected from a resource in one round."""

    scope_metrics: list[ScopeMetrics]


def _attribute_to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _checked_value(value: Any) -> Number:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Failed to convert num {value!r} to json")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Failed to convert num {value} to json")
    return value


ExporterLike = Union[
    SimpleMetricExporter,
    Callable[[list[SimpleMetric]], Union[None, Awaitable[None]]],
]


class MetricExporterAdapter:
    """Feeds collected metric data to a simple exporter or a plain callable."""

    def __init__(self, inner: ExporterLike) -> None:
        self.inner = inner
        self._is_shutdown = False

    def convert_to_simple_metrics(self, metrics: ResourceMetrics) -> list[SimpleMetric]:
        """Flatten each metric to its last data point."""
        out: list[SimpleMetric] = []
        for scope_metrics in metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                data = metric.data
                if isinstance(data, Sum):
                    value_type = ValueType.COUNTER
                elif isinstance(data, Gauge):
                    value_type = ValueType.GAUGE
                else:
                    raise ValueError("Unsupported data type")
                if not data.data_points:
                    continue
                point = data.data_points[-1]
                out.append(
                    SimpleMetric(
                        name=metric.name,
                        value=_checked_value(point.value),
                        value_type=value_type,
                        attributes={
                            str(key): _attribute_to_string(value)
                            for key, value in point.attributes.items()
                        },
                        time=data.time,
                    )
                )
        return out

    async def _push(self, metrics: Iterable[SimpleMetric]) -> None:
        push = getattr(self.inner, "push", None)
        target = push if callable(push) else self.inner
        result = target(list(metrics))
        if inspect.isawaitable(result):
            await result

    async def export(self, metrics: ResourceMetrics) -> None:
        """Convert and push ``metrics``; raise ExporterError on any failure."""
        if self._is_shutdown:
            raise ExporterError("exporter is already shut down", already_shutdown=True)
        try:
            simple_metrics = self.convert_to_simple_metrics(metrics)
            await self._push(simple_metrics)
        except ExporterError:
            raise
        except Exception as exc:
            raise ExporterError(str(exc)) from exc

    def force_flush(self) -> None:
        """The adapter buffers nothing; an inner exporter's own flush is invoked if present."""
        flush = getattr(self.inner, "force_flush", None)
        if callable(flush):
            flush()

    def shutdown(self) -> None:
        """Refuse all later exports."""
        self._is_shutdown = True

    def temporality(self) -> str:
        """Readings are always cumulative."""
        return CUMULATIVE


@dataclass
class Meter:
    """Creates instruments; a disabled meter creates instruments that discard data."""

    name: str
    enabled: bool = True

    def counter(self, name: str, description: str = "") -> Counter:
        return Counter(name, description, monotonic=True, enabled=self.enabled)

    def up_down_counter(self, name: str, description: str = "") -> Counter:
        return Counter(name, description, monotonic=False, enabled=self.enabled)

    def gauge(self, name: str, description: str = "") -> _GaugeInstrument:
        return _GaugeInstrument(name, description, enabled=self.enabled)


class NoopMeterProvider:
    """Hands out meters whose instruments record nothing."""

    def meter(self, name: str) -> Meter:
        return Meter(name, enabled=False)