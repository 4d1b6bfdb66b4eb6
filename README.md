# egresskit

`egresskit` is the control plane of a media egress service. It decides
whether a node has enough CPU to take another recording or streaming job,
launches and supervises one handler process per job, interprets messages
from a media pipeline, and collects metrics from every handler into one
Prometheus-style view.

## Modules

| Module | Purpose |
| --- | --- |
| `egresskit.types` | Request, source, egress, MIME, profile and output types, `StartEgressRequest`, and codec/container compatibility tables. |
| `egresskit.metrics` | An in-process metrics registry (`CounterVec`, `HistogramVec`, `GaugeVec`, `GaugeFunc`, `Registry`) and the per-handler `HandlerMonitor`. |
| `egresskit.monitor` | CPU accounting and admission control (`Monitor`, `CPUCostConfig`, `PsutilCPUStats`). |
| `egresskit.gstwatch` | Handling of pipeline bus messages and log lines (`PipelineWatcher`, `parse_debug_info`, `format_gst_log`). |
| `egresskit.promtext` | Parsing of the metrics text exposition format and labelling of handler metrics. |
| `egresskit.service` | The service: `Service`, `Process`, `IOClient`, `ServiceConfig`, and the optional HTTP endpoints. |

## Choosing an output container

The compatibility helpers accept codec sets either as sets or as mappings
of codec to flag (only entries whose flag is true count):

```python
from egresskit.types import (
    MimeType,
    OutputType,
    get_map_intersection,
    get_output_type_compatible_with_codecs,
)

chosen = get_output_type_compatible_with_codecs(
    [OutputType.OGG, OutputType.MP4],
    {MimeType.AAC: True},
    {MimeType.H264: True},
)
# chosen is OutputType.MP4

common = get_map_intersection(
    {MimeType.H264: True, MimeType.VP8: True},
    {MimeType.H264: True, MimeType.AAC: True},
)
# common == {MimeType.H264}
```

Passing `None` for a codec set skips that check. When no candidate fits,
`OutputType.UNKNOWN_FILE` is returned.

## Admission control

`Monitor` is built from a `CPUCostConfig` (CPUs expected per request kind
and the maximum utilisation) and a source of CPU statistics; without one,
`Monitor.start` creates a `PsutilCPUStats` sampler that measures the child
process trees of the current process once a second.

- `check_cpu_config` raises `InsufficientCPUError` when the machine has
  fewer CPUs than the cheapest request kind needs.
- `can_accept_request` answers whether a request fits. With no running
  requests all CPUs are available; otherwise capacity is capped by the
  utilisation limit, minus what pending and running egresses hold.
- `accept_request` reserves capacity (raising `ResourceExhaustedError` when
  it does not fit); the reservation is held for 30 seconds by default.
- `update_pid` attaches a pending egress to its handler's process id.
- `egress_ended` releases a request and returns its average and peak CPU
  (`(0.0, 0.0)` if it never got a process); `egress_aborted` releases it
  without statistics.

While the node stays over the kill threshold for ten consecutive samples
and more than one egress is running, the monitor calls the kill callback
for the egress furthest over its allowance.

## Pipeline messages

`PipelineWatcher.handle_message` takes a `GstMessage` and returns `False`
when watching should stop (end of stream, or a fatal error passed to the
`on_error` callback). Recoverable errors are handled in place: a failed
RTMP output is reset or removed, a stopped app source is reported to the
source, and a muxer failure after EOS is ignored. Segment and image events
are forwarded to the configured sinks.

Debug strings are split with `parse_debug_info`:

```python
from egresskit.gstwatch import parse_debug_info

info = parse_debug_info(
    "gstrtmp2sink.c(123): send (): "
    "/GstPipeline:pipeline/GstBin:bin/GstRtmp2Sink:sink_0:\nconnection refused"
)
# info.element == "GstRtmp2Sink", info.name == "sink_0",
# info.message == "connection refused"
```

Fatal problems raise `GstPipelineError`; an element event for a missing
segment sink or an unknown image sink raises `SinkNotFoundError`.
`format_gst_log` turns a GStreamer log line into a message and caller, or
`None` for known noise.

## Metrics

Handlers report their metrics as text. `deserialize_metrics` parses it and
adds an `egress_id` label to every sample that lacks one; text that cannot
be parsed is logged and yields an empty list:

```python
from egresskit.promtext import deserialize_metrics

families = deserialize_metrics(
    "EG_example",
    '# TYPE uploads counter\nuploads{type="file"} 3\n',
)
```

`parse_metrics_text` raises `MetricsParseError` on invalid input.
`Registry.gather` returns the families that have values, sorted by name,
and `Registry.render` writes them in text exposition format.
`Service.gather` combines the registry, the final metrics of handlers that
have shut down (each returned once) and the live metrics of every running
`Process`.

## Running the service

A `Service` is built from a `ServiceConfig` and a client for the IO
service (for instance an `IOClient` wrapping one). Constructing it starts
the monitor and, when `prometheus_port` is set, an HTTP server exposing
`Service.gather`.

- `register` attaches the RPC server; `run` registers the cluster's start
  topic and blocks until `stop` is called.
- `start_egress` reserves CPU, validates the request, reports it through
  the IO client and launches a handler with
  `egress run-handler --config ... --request ...`, waiting up to ten
  seconds for `handler_ready`.
- `start_egress_affinity` returns -1 when the node cannot take the
  request, 0.5 when it is idle and 1 otherwise.
- `status` returns JSON bytes with the CPU load and each active request;
  `list_active_egress` returns the active egress ids.
- `stop(kill=True)` also sends SIGINT to every handler; `close` waits for
  all requests to end, then shuts the RPC and HTTP servers down.

`start_templates_server` serves a directory on `localhost` at
`template_port`; `start_debug_handlers` serves `/gst_pipeline/<egress_id>`
and `/pprof/<egress_id>/<profile>` at `debug_handler_port`. Each returns
`None` when its port is zero.

## What the package does not do

- It contains no media pipeline and no handler program: the `egress`
  executable that `Service` launches must be supplied separately.
- Request validation defaults to building a basic egress info record; real
  validation is passed in as the `validate` argument of `Service`.
- The RPC server, the IO service client and the handler IPC client are
  interfaces the caller provides; no message bus or transport is included.
- Profiling the service itself through `/pprof/<profile>` answers 501.
- No uploads to cloud storage are performed.