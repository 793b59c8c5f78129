import threading

import pytest
from kubernetes import client
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from latency_probe_core import ProbeAPIError


class FakeGateway:
    """
    In-memory stand-in for PodGateway. Understands equality label selectors
    (key=value). Records every call as (op, name).
    """

    def __init__(self, always_visible=False, never_visible=False, create_error=None,
                 list_error=None, patch_error=None, delete_error=None, patch_delay=0.0):
        self.always_visible = always_visible
        self.never_visible = never_visible
        self.create_error = create_error
        self.list_error = list_error
        self.patch_error = patch_error
        self.delete_error = delete_error
        self.patch_delay = patch_delay
        self.pods = {}
        self.calls = []
        self._lock = threading.Lock()

    def add_pod(self, name, labels):
        self.pods[name] = dict(labels)

    def count(self, op):
        with self._lock:
            return sum(1 for c in self.calls if c[0] == op)

    def names(self, op):
        with self._lock:
            return [c[1] for c in self.calls if c[0] == op]

    def _record(self, op, name):
        with self._lock:
            self.calls.append((op, name))

    def create(self, ctx, namespace, pod):
        ctx.check("create pod")
        name = pod.metadata.name
        self._record("create", name)
        if self.create_error is not None:
            raise ProbeAPIError("create pod", namespace, name, self.create_error)
        self.pods[name] = dict(pod.metadata.labels or {})
        return pod

    def list(self, ctx, namespace, label_selector):
        ctx.check("list pods")
        self._record("list", label_selector)
        if self.list_error is not None:
            raise ProbeAPIError("list pods", namespace, None, self.list_error)
        if self.never_visible:
            return []
        key, value = label_selector.split("=", 1)
        if self.always_visible:
            instance_pods = [n for n in self.pods if n == f"probe-{value}"]
            return [_pod(n, self.pods[n]) for n in instance_pods]
        return [_pod(n, labels) for n, labels in list(self.pods.items()) if labels.get(key) == value]

    def patch(self, ctx, namespace, name, body):
        ctx.check("patch pod")
        self._record("patch", name)
        if self.patch_delay:
            ctx.wait(self.patch_delay)
        if self.patch_error is not None:
            raise ProbeAPIError("patch pod", namespace, name, self.patch_error)
        self.pods[name].update(body["metadata"]["labels"])
        return _pod(name, self.pods[name])

    def delete(self, ctx, namespace, name):
        ctx.check("delete pod")
        self._record("delete", name)
        if self.delete_error is not None:
            raise ProbeAPIError("delete pod", namespace, name, self.delete_error)
        return self.pods.pop(name, None) is not None


def _pod(name, labels):
    return client.V1Pod(metadata=client.V1ObjectMeta(name=name, labels=dict(labels)))


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer(span_exporter):
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    yield provider.get_tracer("test")
    provider.shutdown()
