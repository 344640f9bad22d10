# tngate

An asyncio toolkit for the parts of a trusted network gateway that sit around
the secure tunnel itself: metrics and their export, supervised background
tasks, stream wrappers, access-log records, egress helpers and a runtime that
runs a set of services.

## Modules

- **`tngate.metrics`**
  - Instruments: `Counter` (monotonic or up/down) and `AttributedCounter`,
    which `with_attributes` creates by binding fixed attributes to a counter.
  - `Meter` creates counters, up/down counters and gauges.
    `NoopMeterProvider` hands out meters whose instruments record nothing.
  - Collected data is described by `ResourceMetrics`, `ScopeMetrics`,
    `Metric`, `Sum`, `Gauge` and `DataPoint`.
  - `MetricExporterAdapter` flattens collected data to `SimpleMetric`
    records, using the last data point of each metric. It hands them to a
    `SimpleMetricExporter` or to a plain callable, sync or async. Any failure
    is raised as `ExporterError`. After `shutdown()`, every export is refused.
- **`tngate.exporters`**
  - `FalconExporter` pushes metrics as JSON to `<server_url>/v1/push`. It
    merges the tags of its `FalconConfig` with each metric's attributes.
    `push` makes up to five attempts, one second apart, and then raises
    `ExporterError`.
  - `FalconMetric.to_dict` / `from_dict`, `format_tags` / `parse_tags` and
    `FalconConfig.from_dict` handle the wire form. `step` defaults to 60.
  - `StdoutExporter` writes each batch of metrics to the log.
- **`tngate.supervise`**
  - `ShutdownGuard` spawns tasks that are cancelled as soon as `cancel()` is
    called. `wait()` waits for all of them.
  - `TngState` records readiness.
  - `RegisteredService` is the abstract base of every service.
- **`tngate.streams`**
  - `CountingStream` counts bytes written (tx) and read (rx) on any object that
    has an `add` method.
  - `FirstByteReadTimeoutStream` raises `TimeoutError` if its first read does
    not complete within the given number of seconds.
- **`tngate.access`**
  - `AccessLog.ingress` / `AccessLog.egress` build connection records, and
    `str()` renders a record as one line.
  - `AttestationResult.from_claims` wraps peer claims in `PrettyPrintClaims`.
    Its repr shows text values as text and other values as hex.
- **`tngate.egress`**
  - `DirectlyForwardTrafficDetector` matches request paths against regexes
    that let traffic bypass the tunnel.
  - `send_http1_response_to_non_tng_client` answers a plain HTTP/1 client with
    a 418 notice in a supervised task.
  - `NetfilterEgressRules.gen_script` returns the iptables invoke and revoke
    scripts as strings. It requires `iptables` on `PATH` and never runs them.
- **`tngate.runtime`**
  - `TngRuntime` starts all services and resolves `ready` once each service has
    reported ready.
  - It shuts everything down when one service fails, when the cancel event is
    set, or on SIGINT/SIGTERM.

## Installation

```
pip install tngate
```

## Example: Falcon metrics

```python
from tngate.exporters import FalconConfig, FalconExporter
from tngate.metrics import SimpleMetric, ValueType

config = FalconConfig.from_dict({
    "server_url": "http://127.0.0.1:1988",
    "endpoint": "master-node",
    "tags": {"namespace": "ns1", "app": "tng"},
})
exporter = FalconExporter(config)

metric = SimpleMetric(
    name="rx_bytes_total",
    value=256,
    value_type=ValueType.COUNTER,
    attributes={"ingress_id": "10"},
    time=1741678004.0,
)
print(exporter.construct_metric(metric).to_dict())
# {'endpoint': 'master-node', 'metric': 'rx_bytes_total', 'value': 256, 'step': 60,
#  'counterType': 'COUNTER', 'tags': 'namespace=ns1,app=tng,ingress_id=10',
#  'timestamp': 1741678004}
```

`await exporter.push([metric])` sends the same body to the server.

## Example: running services

```python
import asyncio

from tngate.runtime import TngRuntime
from tngate.supervise import RegisteredService


class Echo(RegisteredService):
    async def serve(self, shutdown_guard, ready):
        server = await asyncio.start_server(self.handle, "127.0.0.1", 0)
        await ready.put(None)
        async with server:
            await server.serve_forever()

    async def handle(self, reader, writer):
        writer.write(await reader.read(1024))
        await writer.drain()
        writer.close()


async def main():
    cancel = asyncio.Event()
    ready = asyncio.get_running_loop().create_future()
    task = asyncio.create_task(TngRuntime([(Echo(), "echo")]).serve_with_cancel(cancel, ready))
    await ready
    cancel.set()
    await task

asyncio.run(main())
```

## What this package does not do

- There are no ingress or egress proxy services. Nothing provides TLS,
  remote attestation or certificate verification.
- Nothing loads a gateway configuration file.
- There is no command-line program. Services are written by subclassing
  `RegisteredService` and are run with `TngRuntime`.
- The iptables scripts are only generated, never applied.

## Running the tests

```
pip install -e ".[test]"
pytest
```