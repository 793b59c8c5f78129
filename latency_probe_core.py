#!/usr/bin/env python3
"""
Control-plane latency probe: coordination core
-----------------------------------------------
One run = one measurement:
    1) create pod probe-<instance> (label app=probe)
    2) start a poller listing pods with selector probe-instance=<instance>
    3) concurrently patch the probe-instance label onto the pod (own thread)
    4) race "pod visible" against the run deadline / SIGTERM / SIGINT
    5) delete the pod exactly once, whichever side won

Latency is measured from the moment the create request is issued to the moment
the poller first sees the pod through the label selector. It therefore includes
the create round-trip, the label patch and the list/read-path propagation.
"""

import logging
import secrets
import signal
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from kubernetes import client
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode


# ────────────  Constants  ────────────
POLL_INTERVAL = 0.1          # seconds between list queries
CLEANUP_GRACE = 10.0         # seconds allowed for the delete once the run context is done
INSTANCE_BYTES = 8
APP_LABEL = ("app", "probe")
INSTANCE_LABEL = "probe-instance"

DEADLINE_EXCEEDED = "context deadline exceeded"
RUN_FINISHED = "probe finished"

log = logging.getLogger("latency-probe")


# ────────────  Errors  ────────────
class ProbeError(Exception):
    """Base class for every error the probe reports."""


class ConfigError(ProbeError):
    pass


class ContextCancelled(ProbeError):
    def __init__(self, op: str, reason: Optional[str]):
        self.op = op
        self.reason = reason
        super().__init__(f"{op}: context done ({reason})")


class ProbeAPIError(ProbeError):
    """A remote call failed. Carries enough context to act on from logs alone."""

    def __init__(self, op: str, namespace: str, name: Optional[str], cause: BaseException):
        self.op = op
        self.namespace = namespace
        self.name = name
        self.cause = cause
        target = f"{namespace}/{name}" if name else namespace
        super().__init__(f"{op} {target}: {cause}")


class CreateError(ProbeAPIError):
    pass


# ────────────  Deadline & cancellation  ────────────
class ProbeContext:
    """
    Shared cancellation for one run.

    Cancellation is one-way: the first cancel() wins and records the reason,
    later calls are no-ops. Children derived with child() share the deadline
    and are cancelled together with their parent, but can also be cancelled
    on their own without affecting the parent.
    """

    def __init__(self, timeout: Optional[float] = None, parent: "Optional[ProbeContext]" = None,
                 clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._callbacks: List[Callable[["ProbeContext"], None]] = []
        self._children: List["ProbeContext"] = []
        self._timer: Optional[threading.Timer] = None
        self._saved_handlers: Dict[int, object] = {}
        self.reason: Optional[str] = None
        self.cause: Optional[BaseException] = None
        if parent is not None:
            self.deadline = parent.deadline
        elif timeout is not None:
            self.deadline = clock() + timeout
        else:
            self.deadline = None

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.close()
        return False

    def start(self) -> "ProbeContext":
        if self.deadline is not None and self._timer is None:
            self._timer = threading.Timer(self.remaining(), self.cancel, kwargs={"reason": DEADLINE_EXCEEDED})
            self._timer.daemon = True
            self._timer.start()
        return self

    def close(self):
        if self._timer is not None:
            self._timer.cancel()
        for signum, handler in self._saved_handlers.items():
            signal.signal(signum, handler)
        self._saved_handlers.clear()

    def handle_signals(self, signums=(signal.SIGTERM, signal.SIGINT)) -> "ProbeContext":
        """Turn the given signals into cancellation. Main thread only."""
        def _on_signal(signum, _frame):
            # Handlers run on the main thread, which may be holding _lock.
            threading.Thread(target=self.cancel,
                             kwargs={"reason": f"received {signal.Signals(signum).name}"},
                             daemon=True).start()
        for signum in signums:
            self._saved_handlers[signum] = signal.signal(signum, _on_signal)
        return self

    def child(self) -> "ProbeContext":
        c = ProbeContext(parent=self, clock=self._clock)
        with self._lock:
            if not self._done.is_set():
                self._children.append(c)
                return c
        c.cancel(self.reason, self.cause)
        return c

    def cancel(self, reason: Optional[str] = "cancelled", cause: Optional[BaseException] = None) -> bool:
        with self._lock:
            if self._done.is_set():
                return False
            self.reason, self.cause = reason, cause
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []
            children, self._children = self._children, []
        for c in children:
            c.cancel(reason, cause)
        for cb in callbacks:
            cb(self)
        return True

    def add_done_callback(self, fn: Callable[["ProbeContext"], None]):
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(fn)
                return
        fn(self)

    def done(self) -> bool:
        if not self._done.is_set() and self.deadline is not None and self._clock() >= self.deadline:
            self.cancel(reason=DEADLINE_EXCEEDED)
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to timeout; True if the context is done."""
        return self._done.wait(timeout)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def check(self, op: str):
        if self.done():
            raise ContextCancelled(op, self.reason)


class OneShot:
    """Single-resolution future: only the first resolve() is kept."""

    def __init__(self):
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._value = None

    def resolve(self, value) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    @property
    def resolved(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None):
        self._event.wait(timeout)
        return self._value


# ────────────  Data  ────────────
@dataclass
class Visible:
    at: float


@dataclass
class Cancelled:
    reason: Optional[str]
    cause: Optional[BaseException] = None


@dataclass
class ProbeOutcome:
    instance: str
    namespace: str
    pod_name: str
    status: str = "timeout"                  # "success" | "timeout"
    latency: Optional[float] = None          # seconds, only on success
    reason: Optional[str] = None
    update_error: Optional[BaseException] = None
    poll_error: Optional[BaseException] = None
    cleanup_error: Optional[ProbeError] = None
    deleted: bool = False
    trace_id: Optional[str] = None
    timestamps: Dict[str, float] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def latency_ms(self) -> Optional[float]:
        return None if self.latency is None else self.latency * 1e3

    def errors(self) -> Dict[str, str]:
        return {k: str(v) for k, v in (("update", self.update_error),
                                       ("poll", self.poll_error),
                                       ("cleanup", self.cleanup_error)) if v is not None}


def new_instance() -> str:
    return secrets.token_hex(INSTANCE_BYTES)


def pod_name_for(instance: str) -> str:
    return f"probe-{instance}"


def instance_selector(instance: str) -> str:
    return f"{INSTANCE_LABEL}={instance}"


def build_probe_pod(name: str, labels: Dict[str, str], image: str = "busybox") -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, labels=dict(labels)),
        spec=client.V1PodSpec(containers=[
            client.V1Container(
                name="probe",
                image=image,
                args=["sh", "-c", "while true; do echo hello; sleep 10;done"],
            ),
        ]),
    )


def _mark_error(span, exc: BaseException):
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)))


# ────────────  Visibility poller  ────────────
def poll_for_visibility(gateway, ctx: ProbeContext, namespace: str, instance: str,
                        on_visible: Callable[[float], None], tracer,
                        interval: float = POLL_INTERVAL,
                        clock: Callable[[], float] = time.monotonic,
                        parent_context=None) -> int:
    """
    List pods matching probe-instance=<instance> every `interval` seconds until
    one shows up or `ctx` is done. Calls on_visible(timestamp) at most once.

    A list error cancels `ctx` with the error as cause; the caller sees that as
    the cancellation branch of its wait. Returns the number of queries issued.
    """
    selector = instance_selector(instance)
    attempts = 0
    with tracer.start_as_current_span("prober.wait-for-pod", context=parent_context) as span:
        span.set_attribute("instance", instance)
        next_tick = clock()
        while not ctx.done():
            attempts += 1
            try:
                pods = gateway.list(ctx, namespace, selector)
            except ContextCancelled:
                break
            except ProbeAPIError as exc:
                log.error("Poller stopped: %s", exc)
                _mark_error(span, exc)
                ctx.cancel(reason="list failed", cause=exc)
                break
            except Exception as exc:
                log.exception("Poller failed on %s", selector)
                _mark_error(span, exc)
                ctx.cancel(reason="poller failed", cause=exc)
                break
            if pods:
                seen = clock()
                if ctx.done():
                    break
                span.add_event("Pod found")
                span.set_attribute("probe.poll_attempts", attempts)
                on_visible(seen)
                return attempts
            next_tick += interval
            if ctx.wait(max(0.0, next_tick - clock())):
                break
        if ctx.cause is None:
            span.set_status(Status(StatusCode.ERROR, ctx.reason or DEADLINE_EXCEEDED))
        span.set_attribute("probe.poll_attempts", attempts)
    return attempts


# ────────────  Lifecycle coordinator  ────────────
class LifecycleCoordinator:
    def __init__(self, gateway, tracer=None, poll_interval: float = POLL_INTERVAL,
                 cleanup_grace: float = CLEANUP_GRACE, image: str = "busybox",
                 clock: Callable[[], float] = time.monotonic):
        self.gateway = gateway
        self.tracer = tracer or trace.NoOpTracer()
        self.poll_interval = poll_interval
        self.cleanup_grace = cleanup_grace
        self.image = image
        self.clock = clock

    def run(self, ctx: ProbeContext, namespace: str) -> ProbeOutcome:
        """
        Create the probe pod, wait for it to become visible, delete it.

        Raises CreateError if the pod could not be created; every later failure
        is reported on the returned ProbeOutcome instead.
        """
        if not namespace:
            raise ConfigError("namespace must not be empty")

        instance = new_instance()
        outcome = ProbeOutcome(instance=instance, namespace=namespace, pod_name=pod_name_for(instance))

        started = self._create(ctx, outcome)
        print(f"Created pod {outcome.pod_name}")

        race = OneShot()
        poll_ctx = ctx.child()
        poll_ctx.add_done_callback(lambda c: race.resolve(Cancelled(c.reason, c.cause)))
        poller = threading.Thread(
            target=poll_for_visibility,
            args=(self.gateway, poll_ctx, namespace, instance,
                  lambda at: race.resolve(Visible(at)), self.tracer),
            kwargs={"interval": self.poll_interval, "clock": self.clock,
                    "parent_context": otel_context.get_current()},
            name=f"probe-poller-{instance}",
            daemon=True,
        )
        poller.start()

        update_result: Dict[str, BaseException] = {}
        updater = threading.Thread(
            target=self._update,
            args=(ctx, outcome, update_result, otel_context.get_current()),
            name=f"probe-updater-{instance}",
            daemon=True,
        )
        updater.start()

        while not race.resolved:
            race.wait(self.poll_interval)
        winner = race.wait()
        poll_ctx.cancel(reason=RUN_FINISHED)
        poller.join(self.poll_interval * 2)
        if poller.is_alive():
            log.warning("Poller for %s still waiting on a list call; its result will be ignored", instance)
        updater.join(self.poll_interval * 2)
        if updater.is_alive():
            log.warning("Label update for %s still in flight; its result will be ignored", outcome.pod_name)
        else:
            outcome.update_error = update_result.get("error")

        if isinstance(winner, Visible):
            outcome.status = "success"
            outcome.latency = max(0.0, winner.at - started)
            outcome.timestamps["visible"] = winner.at
            print(f"Pod {outcome.pod_name} visible after {outcome.latency_ms:.2f} ms")
        else:
            outcome.status = "timeout"
            outcome.reason = winner.reason
            if winner.cause is not None:
                outcome.poll_error = winner.cause
            print("Context done, cleaning up and exiting...")
            if outcome.update_error is not None:
                log.error("Pod %s never became visible; label update had failed: %s",
                          outcome.pod_name, outcome.update_error)

        self._cleanup(outcome)
        return outcome

    def _create(self, ctx: ProbeContext, outcome: ProbeOutcome) -> float:
        labels = {APP_LABEL[0]: APP_LABEL[1]}
        pod = build_probe_pod(outcome.pod_name, labels, self.image)
        with self.tracer.start_as_current_span("prober.create-pod") as span:
            span.set_attribute("instance", outcome.instance)
            span.set_attribute("k8s.namespace.name", outcome.namespace)
            started = self.clock()
            outcome.timestamps["create_issued"] = started
            try:
                self.gateway.create(ctx, outcome.namespace, pod)
            except ProbeError as exc:
                if isinstance(exc, ProbeAPIError):
                    raise CreateError(exc.op, exc.namespace, exc.name, exc.cause) from exc
                raise CreateError("create", outcome.namespace, outcome.pod_name, exc) from exc
            outcome.timestamps["created"] = self.clock()
        return started

    def _update(self, ctx: ProbeContext, outcome: ProbeOutcome, result: Dict[str, BaseException],
                parent_context=None):
        body = {"metadata": {"labels": {INSTANCE_LABEL: outcome.instance}}}
        with self.tracer.start_as_current_span("prober.update-pod", context=parent_context) as span:
            span.set_attribute("k8s.pod.name", outcome.pod_name)
            try:
                self.gateway.patch(ctx, outcome.namespace, outcome.pod_name, body)
            except ContextCancelled as exc:
                log.debug("Label update skipped: %s", exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
            except Exception as exc:
                log.warning("Label update failed, still waiting for the poller: %s", exc)
                _mark_error(span, exc)
                result["error"] = exc

    def _cleanup(self, outcome: ProbeOutcome):
        # The run context may already be cancelled; the delete gets its own budget.
        with self.tracer.start_as_current_span("prober.cleanup") as span, \
                ProbeContext(self.cleanup_grace, clock=self.clock) as cleanup_ctx:
            span.set_attribute("k8s.pod.name", outcome.pod_name)
            try:
                self.gateway.delete(cleanup_ctx, outcome.namespace, outcome.pod_name)
            except ProbeError as exc:
                log.error("Cleanup failed: %s", exc)
                _mark_error(span, exc)
                outcome.cleanup_error = exc
                return
            outcome.deleted = True
        print(f"Deleted pod {outcome.pod_name}")
