"""Metric exporters: an Open-Falcon push exporter and a logging exporter."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from tngate.metrics import ExporterError, Number, SimpleMetric, SimpleMetricExporter, ValueType

logger = logging.getLogger(__name__)

APP_USER_AGENT = "tngate/2.2.3"
MAX_PUSH_RETRY = 5
DEFAULT_STEP = 60


class FalconCounterType(enum.Enum):
    """Counter type as understood by Falcon."""

    COUNTER = "COUNTER"
    GAUGE = "GAUGE"

    @staticmethod
    def from_value_type(value_type: ValueType) -> FalconCounterType:
        """Map a generic value type to its Falcon counterpart."""
        if value_type is ValueType.COUNTER:
            return FalconCounterType.COUNTER
        if value_type is ValueType.GAUGE:
            return FalconCounterType.GAUGE
        raise ValueError(f"unknown value type: {value_type!r}")


def format_tags(tags: Mapping[str, str]) -> str:
    """Render tags as comma-separated ``key=value`` pairs, in order."""
    return ",".join(f"{key}={value}" for key, value in tags.items())


def parse_tags(text: str) -> dict[str, str]:
    """Parse comma-separated ``key=value`` pairs, rejecting malformed input."""
    tags: dict[str, str] = {}
    for pair in text.split(","):
        parts = pair.split("=", 1)
        if len(parts) != 2:
            raise ValueError(f'Invalid tag format: "{pair}" (must be key=value)')
        key, value = parts[0].strip(), parts[1].strip()
        if not key:
            raise ValueError("Key cannot be empty")
        if key in tags:
            raise ValueError(f"Duplicate key: {key}")
        tags[key] = value
    return tags


def _require(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"missing field `{key}`") from None


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = _require(data, key)
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _require_uint(data: Mapping[str, Any], key: str) -> int:
    value = _require(data, key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"field `{key}` must be a non-negative integer")
    return value


@dataclass
class FalconMetric:
    """One metric item in the body of a Falcon push request."""

    endpoint: str
    metric: str
    value: Number
    step: int
    counter_type: FalconCounterType
    tags: dict[str, str]
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form Falcon expects."""
        return {
            "endpoint": self.endpoint,
            "metric": self.metric,
            "value": self.value,
            "step": self.step,
            "counterType": self.counter_type.value,
            "tags": format_tags(self.tags),
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> FalconMetric:
        """Build a metric from its JSON form."""
        value = _require(data, "value")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("field `value` must be a number")
        tags = _require_str(data, "tags")
        try:
            counter_type = FalconCounterType(_require(data, "counterType"))
        except ValueError as exc:
            raise ValueError(f"invalid counterType: {exc}") from None
        return FalconMetric(
            endpoint=_require_str(data, "endpoint"),
            metric=_require_str(data, "metric"),
            value=value,
            step=_require_uint(data, "step"),
            counter_type=counter_type,
            tags=parse_tags(tags),
            timestamp=_require_uint(data, "timestamp"),
        )


@dataclass
class FalconConfig:
    """Where and how to push metrics to Falcon."""

    server_url: str
    endpoint: str
    tags: dict[str, str] = field(default_factory=dict)
    step: int = DEFAULT_STEP

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> FalconConfig:
        """Build a config from its JSON form, filling in defaults."""
        tags = data.get("tags", {})
        if not isinstance(tags, Mapping):
            raise ValueError("field `tags` must be a mapping")
        config = FalconConfig(
            server_url=_require_str(data, "server_url"),
            endpoint=_require_str(data, "endpoint"),
            tags={str(key): str(value) for key, value in tags.items()},
        )
        if "step" in data:
            config.step = _require_uint(data, "step")
        return config


class FalconExporter(SimpleMetricExporter):
    """Pushes metrics to a Falcon agent over HTTP, retrying on failure."""

    def __init__(self, config: FalconConfig) -> None:
        self.config = config
        self.retry_delay = 1.0

    def construct_metric(self, metric: SimpleMetric) -> FalconMetric:
        """Turn a metric reading into a Falcon item, merging configured tags."""
        if metric.time < 0:
            raise ValueError("System time is before unix epoch")
        tags = dict(self.config.tags)
        tags.update(metric.attributes)
        return FalconMetric(
            endpoint=self.config.endpoint,
            metric=metric.name,
            value=metric.value,
            step=self.config.step,
            counter_type=FalconCounterType.from_value_type(metric.value_type),
            tags=tags,
            timestamp=int(metric.time),
        )

    async def _post_once(self, client: httpx.AsyncClient, body: list[dict[str, Any]]) -> None:
        response = await client.post(f"{self.config.server_url}/v1/push", json=body)
        if response.is_error:
            raise ExporterError(
                f"HTTP status {response.status_code}; Got response: {response.text}"
            )

    async def push(self, metrics: list[SimpleMetric]) -> None:
        """Send ``metrics`` in one request, trying up to five times."""
        body = [self.construct_metric(metric).to_dict() for metric in metrics]
        logger.debug("Pushing metrics to falcon: %s", json.dumps(body))

        last_error: Exception | None = None
        async with httpx.AsyncClient(
            trust_env=False, headers={"User-Agent": APP_USER_AGENT}
        ) as client:
            for attempt in range(MAX_PUSH_RETRY):
                try:
                    await self._post_once(client, body)
                    return
                except (httpx.HTTPError, ExporterError) as exc:
                    last_error = exc
                    if attempt + 1 < MAX_PUSH_RETRY:
                        await asyncio.sleep(self.retry_delay)
        raise ExporterError(
            f"Failed after {MAX_PUSH_RETRY} attemptions: {last_error}"
        ) from last_error


class StdoutExporter(SimpleMetricExporter):
    """Writes every batch of metrics to the log."""

    async def push(self, metrics: list[SimpleMetric]) -> None:
        logger.info("current metrics: %r", metrics)