#!/usr/bin/env python3
"""
Tracing for the latency probe:
1) Build a TracerProvider exporting to an OTLP collector (gRPC) when one is reachable
2) Hand out the tracer through a Telemetry object that is shut down (flushed) on exit
3) Optionally fetch the run's trace back from the Jaeger HTTP API and print
   the duration of each probe phase
"""

import logging
import os
import socket
from typing import Optional
from urllib.parse import urlparse

import requests
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

PROBE_SERVICE_NAME = "k8s-latency-probe"
PROBE_VERSION = "0.0.1"
DEFAULT_OTEL_COLLECTOR = (os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
                          or os.getenv("OTEL_COLLECTOR_ENDPOINT")
                          or "localhost:4317")
PHASES = ("prober.create-pod", "prober.update-pod", "prober.wait-for-pod", "prober.cleanup")

log = logging.getLogger("latency-probe")


def sanitize_endpoint(endpoint: str) -> str:
    endpoint = (endpoint or "").strip()
    if endpoint.endswith("/v1/traces"):
        endpoint = endpoint[:-len("/v1/traces")]
    endpoint = endpoint.rstrip("/")
    return urlparse(endpoint).netloc if endpoint.startswith(("http://", "https://")) else endpoint


def try_connect(host: str, port: int, timeout: float = 2.0) -> bool:
    try:
        ip = socket.gethostbyname(host)
        with socket.create_connection((ip, port), timeout=timeout):
            return True
    except OSError:
        return False


def reachable_endpoint(endpoint: str) -> Optional[str]:
    ep = sanitize_endpoint(endpoint)
    if ":" not in ep:
        log.warning("OTLP endpoint %r has no port; spans will not be exported", endpoint)
        return None
    host, port = ep.rsplit(":", 1)
    try:
        ok = try_connect(host, int(port))
    except ValueError:
        ok = False
    if not ok:
        log.warning("Cannot reach OTLP collector at %s; spans will not be exported", ep)
        return None
    log.info("Using OTLP collector %s", ep)
    return ep


class Telemetry:
    """
    Owns the tracer provider for one run. The provider is not installed globally;
    callers take `tracer` from here. Export and shutdown problems are logged and
    never raised.
    """

    def __init__(self, endpoint: Optional[str] = None, processor: Optional[SpanProcessor] = None,
                 service_name: str = PROBE_SERVICE_NAME):
        resource = Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: PROBE_VERSION})
        self.provider = TracerProvider(resource=resource)
        if processor is None and endpoint:
            try:
                processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
            except Exception as e:
                log.warning("Failed to create OTLP exporter for %s: %s", endpoint, e)
        if processor is not None:
            self.provider.add_span_processor(processor)
        self.tracer = self.provider.get_tracer(service_name, PROBE_VERSION)
        self._closed = False

    @classmethod
    def from_endpoint(cls, endpoint: Optional[str]) -> "Telemetry":
        return cls(endpoint=reachable_endpoint(endpoint) if endpoint else None)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
        return False

    def shutdown(self):
        if self._closed:
            return
        self._closed = True
        try:
            self.provider.shutdown()
        except Exception as e:
            log.warning("Failed to shutdown tracer provider: %s", e)


# ─── Jaeger read-back ─────────────────────────────────────────
def fetch_trace(query: str, trace_id: str, timeout: float = 10.0) -> Optional[dict]:
    base = query if query.startswith(("http://", "https://")) else f"http://{query}"
    url = f"{base.rstrip('/')}/api/traces/{trace_id}"
    try:
        r = requests.get(url, timeout=timeout)
        r.raise_for_status()
        data = r.json().get("data", [])
    except (requests.RequestException, ValueError) as e:
        log.warning("Error querying Jaeger (%s): %s", url, e)
        return None
    if not data:
        log.warning("Trace %s not found in Jaeger", trace_id)
        return None
    return data[0]


def extract_stage(spans, name):
    for s in spans:
        if s.get("operationName") == name:
            return s.get("duration", 0) / 1e3  # μs to ms
    return None


def print_phase_report(trace_data: dict):
    spans = trace_data.get("spans", [])
    print(f"Trace ID: {trace_data.get('traceID', '<unknown>')}, spans found: {len(spans)}\n")
    for phase in PHASES:
        dur = extract_stage(spans, phase)
        if dur is None:
            print(f"{phase:<22} NOT FOUND")
        else:
            print(f"{phase:<22} {dur:8.3f} ms")
