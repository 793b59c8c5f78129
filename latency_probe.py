#!/usr/bin/env python3
"""
Kubernetes control-plane latency probe
--------------------------------------
Creates a short-lived pod, polls the API server until the pod is listable by a
per-run label selector, prints how long that took and deletes the pod again.
Meant to be run as a CronJob (see deploy/probe.yaml); one invocation = one
measurement.

Exit codes:
  0  measurement taken, or timed out and the pod was cleaned up
  1  pod could not be created, or could not be deleted
  2  configuration error (namespace, cluster credentials)

Usage:
  python latency_probe.py --namespace default --timeout 60 \
    --otlp-endpoint otel-collector.observability:4317
"""

import argparse
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from opentelemetry import trace

from latency_probe_core import (CLEANUP_GRACE, POLL_INTERVAL, ConfigError, CreateError,
                                LifecycleCoordinator, ProbeContext, ProbeOutcome)
from latency_probe_k8s_api import PodGateway, current_namespace, setup_k8s
from latency_probe_tracing import DEFAULT_OTEL_COLLECTOR, Telemetry, fetch_trace, print_phase_report

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

log = logging.getLogger("latency-probe")


def setup_logging(level: str):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(message)s")


def parse_args(argv=None):
    ap = argparse.ArgumentParser("k8s-latency-probe",
                                 description="Measure how long a new pod takes to become listable.")
    ap.add_argument("--namespace", default=None,
                    help="Namespace to probe (default: $K8S_NAMESPACE_NAME, then the service-account namespace)")
    ap.add_argument("--timeout", type=float, default=float(os.getenv("PROBE_TIMEOUT", "300")),
                    help="Deadline for the whole run, in seconds (default: 300)")
    ap.add_argument("--poll-interval-ms", type=float,
                    default=float(os.getenv("POLL_INTERVAL_MS", str(int(POLL_INTERVAL * 1000)))),
                    help="Delay between list queries (default: 100)")
    ap.add_argument("--cleanup-grace", type=float,
                    default=float(os.getenv("CLEANUP_GRACE_SECS", str(CLEANUP_GRACE))),
                    help="Seconds allowed for deleting the pod after the run ends (default: 10)")
    ap.add_argument("--image", default=os.getenv("PROBE_IMAGE", "busybox"), help="Probe pod image")
    ap.add_argument("--otlp-endpoint", default=DEFAULT_OTEL_COLLECTOR, help="OTLP gRPC collector host:port")
    ap.add_argument("--no-tracing", action="store_true", help="Do not export spans")
    ap.add_argument("--jaeger-query", default=os.getenv("JAEGER_QUERY_URL"),
                    help="Jaeger query host:port; if set, print per-phase durations of this run")
    ap.add_argument("--jaeger-wait", type=float, default=5.0,
                    help="Seconds to wait for the trace to be ingested before querying Jaeger")
    ap.add_argument("--history-file", default=os.getenv("PROBE_HISTORY_FILE"),
                    help="Append one JSON line per run to this file")
    ap.add_argument("--log-level", default=os.getenv("LOGLEVEL", "INFO"))
    return ap.parse_args(argv)


def _serialize_record(outcome: ProbeOutcome) -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "instance": outcome.instance,
        "namespace": outcome.namespace,
        "pod_name": outcome.pod_name,
        "outcome": outcome.status,
        "reason": outcome.reason,
        "latency_ms": None if outcome.latency_ms is None else round(outcome.latency_ms, 3),
        "deleted": outcome.deleted,
        "errors": outcome.errors(),
    }


def _write_line(path: str, obj: dict):
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError as e:
        log.warning("Failed writing %s: %s", path, e)


def exit_code_for(outcome: ProbeOutcome) -> int:
    return EXIT_FAILED if outcome.cleanup_error is not None else EXIT_OK


def run_probe(ctx: ProbeContext, namespace: str, gateway, telemetry: Telemetry, args) -> ProbeOutcome:
    coordinator = LifecycleCoordinator(
        gateway,
        tracer=telemetry.tracer,
        poll_interval=args.poll_interval_ms / 1000.0,
        cleanup_grace=args.cleanup_grace,
        image=args.image,
    )
    with telemetry.tracer.start_as_current_span("prober.main") as span:
        span.set_attribute("k8s.namespace.name", namespace)
        outcome = coordinator.run(ctx, namespace)
        outcome.trace_id = format(span.get_span_context().trace_id, "032x")
        span.set_attribute("instance", outcome.instance)
        span.set_attribute("probe.outcome", outcome.status)
        if outcome.latency_ms is not None:
            span.set_attribute("probe.latency_ms", outcome.latency_ms)
        if outcome.poll_error is not None or outcome.cleanup_error is not None:
            span.set_status(trace.Status(trace.StatusCode.ERROR, "; ".join(outcome.errors().values())))
    return outcome


def main(argv=None, gateway=None, telemetry: Optional[Telemetry] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        namespace = current_namespace(args.namespace)
        if gateway is None:
            gateway = PodGateway(setup_k8s())
    except ConfigError as e:
        log.error("Configuration error: %s", e)
        return EXIT_CONFIG

    if telemetry is None:
        telemetry = Telemetry() if args.no_tracing else Telemetry.from_endpoint(args.otlp_endpoint)

    with telemetry, ProbeContext(args.timeout) as ctx:
        ctx.handle_signals()
        log.info("Probing namespace %s (timeout %.0fs)", namespace, args.timeout)
        try:
            outcome = run_probe(ctx, namespace, gateway, telemetry, args)
        except CreateError as e:
            log.error("Failed to create probe pod: %s", e)
            return EXIT_FAILED

        if args.history_file:
            _write_line(args.history_file, _serialize_record(outcome))
        log.info("Run %s finished: %s", outcome.instance, outcome.status)
        code = exit_code_for(outcome)

    if args.jaeger_query and outcome.trace_id:
        time.sleep(args.jaeger_wait)
        trace_data = fetch_trace(args.jaeger_query, outcome.trace_id)
        if trace_data:
            print_phase_report(trace_data)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
