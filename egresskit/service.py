"""The egress service: admits requests, launches handler processes and serves their state."""

from __future__ import annotations

import dataclasses
import functools
import json
import logging
import math
import os
import secrets
import signal
import string
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, SimpleHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol
from urllib.parse import parse_qs, urlsplit

from egresskit.metrics import MetricFamily, Registry
from egresskit.monitor import CPUCostConfig, CPUStats, Monitor
from egresskit.promtext import deserialize_metrics
from egresskit.types import RequestType, StartEgressRequest

logger = logging.getLogger(__name__)

VERSION = "1.8.2"

HANDLER_READY_TIMEOUT = 10.0
HANDLER_ID_PREFIX = "EGH_"
INTERNAL_ERROR = "internal error"
CPU_EXHAUSTED_ERROR = "CPU exhausted"

STATUS_STARTING = "EGRESS_STARTING"
STATUS_COMPLETE = "EGRESS_COMPLETE"
STATUS_FAILED = "EGRESS_FAILED"

GST_PIPELINE_DOT_FILE_APP = "gst_pipeline"
PPROF_APP = "pprof"

_GUID_ALPHABET = string.ascii_letters + string.digits

EgressInfo = dict[str, Any]


class EgressNotFoundError(LookupError):
    """No active handler exists for the egress."""

    def __init__(self, egress_id: str = "") -> None:
        message = "egress not found" if not egress_id else f"egress not found: {egress_id}"
        super().__init__(message)
        self.egress_id = egress_id


@dataclass
class ServiceConfig:
    """Settings of one egress node."""

    node_id: str
    cluster_id: str
    cpu_cost: CPUCostConfig
    prometheus_port: int = 0
    template_port: int = 0
    debug_handler_port: int = 0
    base_config: dict[str, Any] = field(default_factory=dict)


class HandlerIPCClient(Protocol):
    def get_metrics(self) -> str: ...

    def get_pipeline_dot(self) -> str: ...

    def get_pprof(self, profile_name: str, timeout: int, debug: int) -> bytes: ...


class _RPCServer(Protocol):
    def register_start_egress_topic(self, cluster_id: str) -> None: ...

    def deregister_start_egress_topic(self, cluster_id: str) -> None: ...

    def register_list_active_egress_topic(self, topic: str) -> None: ...

    def shutdown(self) -> None: ...


class _ChildProcess(Protocol):
    pid: int

    def wait(self) -> int: ...

    def kill(self) -> None: ...

    def send_signal(self, sig: int) -> None: ...


def _new_guid(prefix: str) -> str:
    return prefix + "".join(secrets.choice(_GUID_ALPHABET) for _ in range(12))


def _default_egress_info(conf: ServiceConfig, req: StartEgressRequest) -> EgressInfo:
    return {
        "egress_id": req.egress_id,
        "room_name": req.request.get("room_name", ""),
        "request_type": str(req.request_type),
        "request": req.request,
        "status": STATUS_STARTING,
        "error": "",
        "updated_at": time.time_ns(),
    }


def _request_json(req: StartEgressRequest) -> str:
    return json.dumps(dataclasses.asdict(req), default=str)


class Process:
    """A launched handler process and the channel used to talk to it."""

    def __init__(
        self,
        handler_id: str,
        req: StartEgressRequest,
        info: EgressInfo,
        cmd: list[str],
        ipc_client: HandlerIPCClient | None = None,
        cwd: str = "/",
    ) -> None:
        self.handler_id = handler_id
        self.req = req
        self.info = info
        self.cmd = cmd
        self.cwd = cwd
        self.ipc_client = ipc_client
        self.proc: _ChildProcess | None = None
        self.ready = threading.Event()
        self.closed = threading.Event()

    def gather(self) -> list[MetricFamily]:
        """Metrics reported by the handler, labelled with its egress id; empty on failure."""
        if self.ipc_client is None:
            logger.warning("no ipc channel to handler (egress_id %s)", self.req.egress_id)
            return []
        try:
            text = self.ipc_client.get_metrics()
        except Exception as exc:
            logger.warning(
                "failed to obtain metrics from handler: %s (egress_id %s)", exc, self.req.egress_id
            )
            return []
        return deserialize_metrics(self.info.get("egress_id", self.req.egress_id), text)

    def kill(self) -> None:
        """Ask the handler to stop by sending it SIGINT, unless it has already ended."""
        if self.closed.is_set() or self.proc is None:
            return
        try:
            self.proc.send_signal(signal.SIGINT)
        except OSError as exc:
            logger.error("failed to kill process: %s (egressID %s)", exc, self.req.egress_id)


class IOClient:
    """Reports egress state to the IO service, logging what it sends and what fails."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def create_egress(self, info: EgressInfo) -> None:
        try:
            self._client.create_egress(info)
        except Exception as exc:
            logger.error("failed to create egress: %s", exc)
            raise

    def update_egress(self, info: EgressInfo) -> None:
        try:
            self._client.update_egress(info)
        except Exception as exc:
            logger.error("failed to update egress: %s", exc)
            raise

        egress_id = info.get("egress_id")
        request_type = info.get("request_type")
        status = info.get("status")
        if status == STATUS_FAILED:
            logger.warning(
                "egress failed: %s (egressID %s, requestType %s)",
                info.get("error"), egress_id, request_type,
            )
        elif status == STATUS_COMPLETE:
            logger.info("egress completed (egressID %s, requestType %s)", egress_id, request_type)
        else:
            logger.info(
                "egress updated (egressID %s, requestType %s, status %s)",
                egress_id, request_type, status,
            )

    def update_metrics(self, request: dict[str, Any]) -> None:
        try:
            self._client.update_metrics(request)
        except Exception as exc:
            logger.error("failed to update metrics: %s", exc)
            raise


def _merge_families(families: Iterable[MetricFamily]) -> list[MetricFamily]:
    merged: dict[str, MetricFamily] = {}
    for family in families:
        target = merged.get(family.name)
        if target is None:
            target = MetricFamily(family.name)
            target.help = family.help
            target.type = family.type
            merged[family.name] = target
        target.samples.extend(family.samples)
    return list(merged.values())


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(float(value))


def _render_families(families: Iterable[MetricFamily]) -> str:
    lines: list[str] = []
    for family in families:
        if family.help:
            help_text = family.help.replace("\\", "\\\\").replace("\n", "\\n")
            lines.append(f"# HELP {family.name} {help_text}")
        lines.append(f"# TYPE {family.name} {family.type or 'untyped'}")
        for sample in family.samples:
            if sample.labels:
                labels = ",".join(
                    f'{key}="{_escape_label(str(val))}"' for key, val in sample.labels.items()
                )
                lines.append(f"{sample.name}{{{labels}}} {_format_value(sample.value)}")
            else:
                lines.append(f"{sample.name} {_format_value(sample.value)}")
    return "\n".join(lines) + "\n" if lines else ""


def _error_code(exc: BaseException) -> int:
    if isinstance(exc, EgressNotFoundError):
        return 404
    return 500


def _int_param(query: dict[str, list[str]], name: str) -> int:
    try:
        return int(query.get(name, [""])[0])
    except ValueError:
        return 0


class Service:
    """Accepts egress requests for a node and supervises the handler processes."""

    def __init__(
        self,
        conf: ServiceConfig,
        io_client: Any,
        *,
        monitor: Monitor | None = None,
        cpu_stats: CPUStats | None = None,
        registry: Registry | None = None,
        ipc_client_factory: Callable[[str], HandlerIPCClient] | None = None,
        popen: Callable[..., _ChildProcess] = subprocess.Popen,
        validate: Callable[[ServiceConfig, StartEgressRequest], EgressInfo] = _default_egress_info,
        ready_timeout: float = HANDLER_READY_TIMEOUT,
        close_poll_interval: float = 1.0,
    ) -> None:
        self.conf = conf
        self.io_client = io_client
        self.monitor = monitor if monitor is not None else Monitor(conf.cpu_cost, cpu_stats, registry)
        self.registry = self.monitor.registry
        self._ipc_client_factory = ipc_client_factory
        self._popen = popen
        self._validate = validate
        self._ready_timeout = ready_timeout
        self._close_poll_interval = close_poll_interval

        self._rpc_server: _RPCServer | None = None
        self._lock = threading.RLock()
        self._handlers: dict[str, Process] = {}
        self._pending_metrics: list[MetricFamily] = []
        self._shutdown = threading.Event()
        self._stop_lock = threading.Lock()
        self._http_servers: list[ThreadingHTTPServer] = []

        self.tmp_dir = os.path.join(tempfile.gettempdir(), conf.node_id)
        os.makedirs(self.tmp_dir, mode=0o755, exist_ok=True)

        self.monitor.start(
            conf.node_id,
            conf.cluster_id,
            self._prom_is_idle,
            self._prom_can_accept_request,
            self._prom_is_disabled,
            self._kill_process,
        )

        if conf.prometheus_port > 0:
            self._serve(("", conf.prometheus_port), self._prom_handler_class())

    # lifecycle

    def register(self, rpc_server: _RPCServer) -> None:
        self._rpc_server = rpc_server

    def register_list_egress(self, topic: str) -> None:
        self._require_rpc().register_list_active_egress_topic(topic)

    def _require_rpc(self) -> _RPCServer:
        if self._rpc_server is None:
            raise RuntimeError("service has no rpc server registered")
        return self._rpc_server

    def run(self) -> None:
        """Accept start requests for the cluster until the service is stopped."""
        logger.debug("starting service, version %s", VERSION)
        shutdown = self._shutdown
        self._require_rpc().register_start_egress_topic(self.conf.cluster_id)
        logger.info("service ready")
        shutdown.wait()
        logger.info("shutting down")

    def reset(self) -> None:
        if not self._shutdown.is_set():
            self.stop(False)
        self._shutdown = threading.Event()

    def status(self) -> bytes:
        """JSON object of the CPU load and the request of every active egress."""
        info: dict[str, Any] = {"CpuLoad": self.monitor.get_cpu_load()}
        with self._lock:
            for handler in self._handlers.values():
                info[handler.req.egress_id] = handler.req.request
        return json.dumps(info).encode()

    def stop(self, kill: bool) -> None:
        """Stop taking requests; with kill, also interrupt every handler."""
        with self._stop_lock:
            if not self._shutdown.is_set():
                if self._rpc_server is not None:
                    self._rpc_server.deregister_start_egress_topic(self.conf.cluster_id)
                self._shutdown.set()
        if kill:
            self.kill_all()

    def kill_all(self) -> None:
        with self._lock:
            handlers = list(self._handlers.values())
        for handler in handlers:
            handler.kill()

    def _kill_process(self, egress_id: str, max_usage: float) -> None:
        with self._lock:
            handler = self._handlers.get(egress_id)
        if handler is None:
            return
        logger.error("killing egress %s: %s (usage %s)", egress_id, CPU_EXHAUSTED_ERROR, max_usage)
        now = time.time_ns()
        handler.info["status"] = STATUS_FAILED
        handler.info["error"] = CPU_EXHAUSTED_ERROR
        handler.info["updated_at"] = now
        handler.info["ended_at"] = now
        handler.kill()

    def close(self) -> None:
        """Wait for all requests to finish, then shut the rpc server and HTTP servers down."""
        while self.monitor.request_count > 0:
            time.sleep(self._close_poll_interval)
        logger.info("closing server")
        if self._rpc_server is not None:
            self._rpc_server.shutdown()
        for server in self._http_servers:
            server.shutdown()
            server.server_close()
        self._http_servers.clear()

    # rpc

    def start_egress(self, req: StartEgressRequest) -> EgressInfo:
        """Admit, validate and launch a request; return its egress info."""
        self.monitor.accept_request(req)
        logger.info("request received (egressID %s)", req.egress_id)
        try:
            info = self._validate(self.conf, req)
            self.io_client.create_egress(info)
            logger.info(
                "request validated (egressID %s, requestType %s, room %s)",
                req.egress_id, req.request_type, info.get("room_name", ""),
            )
            self._launch_handler(req, info)
        except Exception:
            self.monitor.egress_aborted(req)
            raise
        return info

    def start_egress_affinity(self, req: StartEgressRequest) -> float:
        if not self.monitor.can_accept_request(req):
            return -1.0
        if self.monitor.request_count == 0:
            # an idle node defers to one already running track requests
            return 0.5
        return 1.0

    def _launch_handler(self, req: StartEgressRequest, info: EgressInfo) -> None:
        handler_id = _new_guid(HANDLER_ID_PREFIX)
        tmp_dir = os.path.join(tempfile.gettempdir(), handler_id)
        handler_conf = {**self.conf.base_config, "handler_id": handler_id, "tmp_dir": tmp_dir}
        cmd = [
            "egress",
            "run-handler",
            "--config", json.dumps(handler_conf, default=str),
            "--request", _request_json(req),
        ]

        self.monitor.egress_started(req)

        ipc_client = self._ipc_client_factory(tmp_dir) if self._ipc_client_factory else None
        process = Process(handler_id, req, info, cmd, ipc_client)
        self.add_handler(req.egress_id, process)

    def add_handler(self, egress_id: str, process: Process) -> None:
        """Start the process and wait for it to report ready, killing it if it does not."""
        with self._lock:
            self._handlers[egress_id] = process

        try:
            proc = self._popen(process.cmd, cwd=process.cwd)
        except OSError as exc:
            logger.error("could not launch process: %s", exc)
            with self._lock:
                self._handlers.pop(egress_id, None)
            raise
        process.proc = proc

        if process.ready.wait(self._ready_timeout):
            self.monitor.update_pid(egress_id, proc.pid)
            threading.Thread(
                target=self._wait_for_exit, args=(process,), name=f"handler-{egress_id}", daemon=True
            ).start()
        else:
            proc.kill()
            self._process_ended(process, EgressNotFoundError(egress_id))

    def _wait_for_exit(self, process: Process) -> None:
        assert process.proc is not None
        returncode = process.proc.wait()
        error = None if returncode == 0 else ChildProcessError(f"exit status {returncode}")
        self._process_ended(process, error)

    def _process_ended(self, process: Process, error: BaseException | None) -> None:
        info = process.info
        if error is not None:
            now = time.time_ns()
            info["updated_at"] = now
            info["ended_at"] = now
            info["status"] = STATUS_FAILED
            if not info.get("error"):
                info["error"] = INTERNAL_ERROR
            try:
                self.io_client.update_egress(info)
            except Exception:
                pass
            if info["error"] == INTERNAL_ERROR:
                self.stop(False)

        avg_cpu, max_cpu = self.monitor.egress_ended(process.req)
        if max_cpu > 0:
            try:
                self.io_client.update_metrics(
                    {"info": info, "avg_cpu_usage": avg_cpu, "max_cpu_usage": max_cpu}
                )
            except Exception:
                pass

        process.closed.set()
        with self._lock:
            self._handlers.pop(process.req.egress_id, None)

    def list_active_egress(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    # ipc

    def handler_ready(self, egress_id: str) -> None:
        with self._lock:
            process = self._handlers.get(egress_id)
        if process is None:
            raise EgressNotFoundError(egress_id)
        process.ready.set()

    def handler_shutting_down(self, egress_id: str, metrics: str) -> None:
        """Keep the final metrics of a handler for the next scrape."""
        families = deserialize_metrics(egress_id, metrics)
        with self._lock:
            self._pending_metrics.extend(families)

    # metrics

    def gather(self) -> list[MetricFamily]:
        """Node metrics, metrics of ended handlers (once) and those of running handlers."""
        families = list(self.registry.gather())
        with self._lock:
            pending, self._pending_metrics = self._pending_metrics, []
            handlers = list(self._handlers.values())
        families.extend(pending)
        for handler in handlers:
            families.extend(handler.gather())
        return _merge_families(families)

    def _prom_is_idle(self) -> float:
        return 1.0 if not self._shutdown.is_set() and self.monitor.request_count == 0 else 0.0

    def _prom_can_accept_request(self) -> float:
        if self._shutdown.is_set():
            return 0.0
        probe = StartEgressRequest(egress_id="", request_type=RequestType.ROOM_COMPOSITE)
        return 1.0 if self.monitor.can_accept_request(probe) else 0.0

    def _prom_is_disabled(self) -> float:
        return 1.0 if self._shutdown.is_set() else 0.0

    def _prom_handler_class(self) -> type[BaseHTTPRequestHandler]:
        service = self

        class _PromHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                body = _render_families(service.gather()).encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug(format, *args)

        return _PromHandler

    # debug and templates

    def _ipc_client(self, egress_id: str) -> HandlerIPCClient:
        with self._lock:
            process = self._handlers.get(egress_id)
        if process is None or process.ipc_client is None:
            raise EgressNotFoundError(egress_id)
        return process.ipc_client

    def get_gst_pipeline_dot_file(self, egress_id: str) -> str:
        return self._ipc_client(egress_id).get_pipeline_dot()

    def _serve(
        self, address: tuple[str, int], handler: Callable[..., BaseHTTPRequestHandler]
    ) -> ThreadingHTTPServer:
        server = ThreadingHTTPServer(address, handler)
        threading.Thread(target=server.serve_forever, name="http", daemon=True).start()
        self._http_servers.append(server)
        return server

    def start_templates_server(self, directory: str | os.PathLike[str]) -> ThreadingHTTPServer | None:
        """Serve a directory on localhost at the template port; None if disabled."""
        if self.conf.template_port == 0:
            logger.debug("templates server disabled")
            return None
        handler = functools.partial(SimpleHTTPRequestHandler, directory=os.fspath(directory))
        logger.debug("starting template server on address localhost:%d", self.conf.template_port)
        return self._serve(("localhost", self.conf.template_port), handler)

    def start_debug_handlers(self) -> ThreadingHTTPServer | None:
        """Serve pipeline dot files and handler profiles; None if disabled."""
        if self.conf.debug_handler_port == 0:
            logger.debug("debug handler disabled")
            return None
        service = self

        class _DebugHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                url = urlsplit(self.path)
                status, content_type, body = service._debug_response(
                    url.path, parse_qs(url.query)
                )
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug(format, *args)

        logger.debug("starting debug handler on address :%d", self.conf.debug_handler_port)
        return self._serve(("", self.conf.debug_handler_port), _DebugHandler)

    def _debug_response(self, path: str, query: dict[str, list[str]]) -> tuple[int, str, bytes]:
        text = "text/plain; charset=utf-8"
        parts = path.split("/")
        app = parts[1] if len(parts) > 1 else ""

        if app == GST_PIPELINE_DOT_FILE_APP:
            if len(parts) < 3:
                return 404, text, b"malformed url"
            try:
                dot = self.get_gst_pipeline_dot_file(parts[2])
            except Exception as exc:
                return _error_code(exc), text, str(exc).encode()
            return 200, text, dot.encode()

        if app == PPROF_APP:
            timeout = _int_param(query, "timeout")
            debug = _int_param(query, "debug")
            if len(parts) == 3:
                return 501, text, b"service profiling not available"
            if len(parts) == 4:
                try:
                    client = self._ipc_client(parts[2])
                except EgressNotFoundError:
                    return 404, text, b"handler not found"
                try:
                    data = client.get_pprof(parts[3], timeout, debug)
                except Exception as exc:
                    return _error_code(exc), text, str(exc).encode()
                return 200, "application/octet-stream", data
            return 404, text, b"malformed url"

        return 404, text, b"404 page not found"