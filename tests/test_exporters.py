import asyncio
import json
import logging
import time

import pytest

from tngate.exporters import (
    FalconConfig,
    FalconCounterType,
    FalconExporter,
    FalconMetric,
    StdoutExporter,
    format_tags,
    parse_tags,
)
from tngate.metrics import ExporterError, SimpleMetric, ValueType


def test_deserialize():
    json_value = {
        "endpoint": "c3-op-mon-falcon01.bj",
        "metric": "qps",
        "timestamp": 1551264402,
        "step": 60,
        "value": 1,
        "counterType": "GAUGE",
        "tags": "idc=lg,loc=beijing,pdl=falcon",
    }
    metric_value = FalconMetric(
        endpoint="c3-op-mon-falcon01.bj",
        metric="qps",
        value=1,
        step=60,
        counter_type=FalconCounterType.GAUGE,
        tags={"idc": "lg", "loc": "beijing", "pdl": "falcon"},
        timestamp=1551264402,
    )
    assert metric_value.to_dict() == json_value
    assert FalconMetric.from_dict(json_value) == metric_value


def _exporter():
    return FalconExporter(
        FalconConfig(
            server_url="http://127.0.0.1:1988",
            endpoint="master-node",
            tags={"namespace": "ns1", "app": "tng"},
            step=60,
        )
    )


@pytest.mark.parametrize(
    "name,value,value_type,attributes,expected_type,expected_tags",
    [
        ("live", 1, ValueType.GAUGE, {}, "GAUGE", "namespace=ns1,app=tng"),
        (
            "rx_bytes_total",
            256,
            ValueType.COUNTER,
            {"ingress_id": "10"},
            "COUNTER",
            "namespace=ns1,app=tng,ingress_id=10",
        ),
        (
            "cx_active",
            20,
            ValueType.GAUGE,
            {"ingress_id": "5"},
            "GAUGE",
            "namespace=ns1,app=tng,ingress_id=5",
        ),
    ],
)
def test_construct_metric_body(name, value, value_type, attributes, expected_type, expected_tags):
    timestamp = 1741678004
    metric = _exporter().construct_metric(
        SimpleMetric(name, value, value_type, attributes, time.time())
    )
    assert metric.timestamp > 0
    metric.timestamp = timestamp
    assert metric.to_dict() == {
        "endpoint": "master-node",
        "metric": name,
        "timestamp": timestamp,
        "step": 60,
        "value": value,
        "counterType": expected_type,
        "tags": expected_tags,
    }


def test_construct_metric_attributes_override_config_tags():
    metric = _exporter().construct_metric(
        SimpleMetric("m", 3, ValueType.COUNTER, {"app": "other"}, 100.9)
    )
    assert metric.tags == {"namespace": "ns1", "app": "other"}
    assert metric.timestamp == 100


def test_construct_metric_before_epoch():
    with pytest.raises(ValueError, match="before unix epoch"):
        _exporter().construct_metric(SimpleMetric("m", 1, ValueType.GAUGE, {}, -5.0))


def test_counter_type_from_value_type():
    assert FalconCounterType.from_value_type(ValueType.COUNTER) is FalconCounterType.COUNTER
    assert FalconCounterType.from_value_type(ValueType.GAUGE) is FalconCounterType.GAUGE


def test_tags_round_trip_keeps_order():
    tags = {"z": "1", "a": "2", "m": "3"}
    text = format_tags(tags)
    assert text == "z=1,a=2,m=3"
    assert list(parse_tags(text).items()) == list(tags.items())


def test_parse_tags_trims_and_keeps_equals_in_value():
    assert parse_tags(" a = b=c , d=") == {"a": "b=c", "d": ""}


@pytest.mark.parametrize(
    "text,message",
    [
        ("novalue", "Invalid tag format"),
        ("", "Invalid tag format"),
        ("=v", "Key cannot be empty"),
        ("a=1,a=2", "Duplicate key: a"),
    ],
)
def test_parse_tags_errors(text, message):
    with pytest.raises(ValueError, match=message):
        parse_tags(text)


def test_from_dict_rejects_bad_counter_type():
    data = {
        "endpoint": "e",
        "metric": "m",
        "timestamp": 1,
        "step": 1,
        "value": 1,
        "counterType": "HISTOGRAM",
        "tags": "a=b",
    }
    with pytest.raises(ValueError):
        FalconMetric.from_dict(data)


def test_config_defaults():
    config = FalconConfig.from_dict({"server_url": "http://localhost:1", "endpoint": "node"})
    assert config.step == 60
    assert config.tags == {}


def test_config_requires_endpoint():
    with pytest.raises(ValueError, match="endpoint"):
        FalconConfig.from_dict({"server_url": "http://localhost:1"})


async def _start_fake_falcon(status):
    received = []

    async def handle(reader, writer):
        head = await reader.readuntil(b"\r\n\r\n")
        lines = head.decode().split("\r\n")
        headers = {}
        for line in lines[1:]:
            if line:
                key, value = line.split(":", 1)
                headers[key.strip().lower()] = value.strip()
        body = await reader.readexactly(int(headers.get("content-length", "0")))
        received.append((lines[0], headers, json.loads(body)))
        reply = b"bad things" if status >= 400 else b""
        writer.write(
            f"HTTP/1.1 {status} X\r\nContent-Length: {len(reply)}\r\n"
            "Connection: close\r\n\r\n".encode()
            + reply
        )
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port, received


@pytest.mark.asyncio
async def test_push_sends_metrics():
    server, port, received = await _start_fake_falcon(200)
    try:
        exporter = FalconExporter(
            FalconConfig.from_dict(
                {
                    "server_url": f"http://127.0.0.1:{port}",
                    "endpoint": "master-node",
                    "tags": {"namespace": "ns1", "app": "tng-client"},
                    "step": 1,
                }
            )
        )
        await exporter.push([SimpleMetric("live", 1, ValueType.GAUGE, {}, 1000.0)])
    finally:
        server.close()
        await server.wait_closed()

    assert len(received) == 1
    request_line, headers, body = received[0]
    assert request_line.startswith("POST /v1/push ")
    assert headers["user-agent"] == "tngate/2.2.3"
    metrics = [FalconMetric.from_dict(item) for item in body]
    assert metrics == [
        FalconMetric(
            endpoint="master-node",
            metric="live",
            value=1,
            step=1,
            counter_type=FalconCounterType.GAUGE,
            tags={"namespace": "ns1", "app": "tng-client"},
            timestamp=1000,
        )
    ]


@pytest.mark.asyncio
async def test_push_retries_then_fails():
    server, port, received = await _start_fake_falcon(500)
    try:
        exporter = FalconExporter(FalconConfig(f"http://127.0.0.1:{port}", "node"))
        exporter.retry_delay = 0
        with pytest.raises(ExporterError, match="Failed after 5 attemptions") as info:
            await exporter.push([SimpleMetric("m", 2, ValueType.COUNTER, {}, 1.0)])
    finally:
        server.close()
        await server.wait_closed()
    assert len(received) == 5
    assert "bad things" in str(info.value)


@pytest.mark.asyncio
async def test_stdout_exporter_logs(caplog):
    metric = SimpleMetric("live", 1, ValueType.GAUGE, {}, 1.0)
    with caplog.at_level(logging.INFO, logger="tngate.exporters"):
        await StdoutExporter().push([metric])
    assert any("current metrics" in message and "live" in message for message in caplog.messages)