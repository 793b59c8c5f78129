#!/usr/bin/env python3
"""
Kubernetes side of the latency probe:
  • client setup (in-cluster config, kubeconfig fallback)
  • namespace resolution (override → service-account file)
  • PodGateway: create / list / patch / delete bound to the run's ProbeContext
"""

import logging
import os
from typing import Optional

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from urllib3.exceptions import HTTPError

from latency_probe_core import ConfigError, ProbeAPIError, ProbeContext

# ─── Configuration ────────────────────────────────────────────
NAMESPACE_ENV  = "K8S_NAMESPACE_NAME"
NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

log = logging.getLogger("latency-probe")


# ─── Kubernetes client init ───────────────────────────────────
def setup_k8s() -> client.CoreV1Api:
    try:
        k8s_config.load_incluster_config()
        log.info("Loaded in-cluster config")
    except ConfigException:
        try:
            k8s_config.load_kube_config()
        except (ConfigException, OSError) as exc:
            raise ConfigError(f"no in-cluster config and no usable kubeconfig: {exc}") from exc
        log.info("Loaded kubeconfig")
    return client.CoreV1Api()


def current_namespace(override: Optional[str] = None, path: Optional[str] = None) -> str:
    """Namespace from the explicit override, the env var, then the mounted file."""
    path = path or NAMESPACE_FILE
    ns = (override or os.getenv(NAMESPACE_ENV) or "").strip()
    if ns:
        return ns
    try:
        with open(path, "r", encoding="utf-8") as f:
            ns = f.read().strip()
    except OSError as exc:
        raise ConfigError(f"failed to read namespace: {exc}") from exc
    if not ns:
        raise ConfigError(f"namespace file {path} is empty")
    return ns


# ─── Gateway ──────────────────────────────────────────────────
class PodGateway:
    """
    Thin wrapper over CoreV1Api. Every call first checks the context, so nothing
    is sent once it is done, and is bounded by the time the context has left.
    """

    def __init__(self, api: client.CoreV1Api):
        self.api = api

    def _call(self, ctx: ProbeContext, op: str, namespace: str, name: Optional[str], fn, *args, **kwargs):
        ctx.check(op)
        try:
            return fn(*args, _request_timeout=ctx.remaining(), **kwargs)
        except (ApiException, HTTPError, OSError) as exc:
            raise ProbeAPIError(op, namespace, name, exc) from exc

    def create(self, ctx: ProbeContext, namespace: str, pod: client.V1Pod) -> client.V1Pod:
        return self._call(ctx, "create pod", namespace, pod.metadata.name,
                          self.api.create_namespaced_pod, namespace, pod)

    def list(self, ctx: ProbeContext, namespace: str, label_selector: str) -> list:
        resp = self._call(ctx, "list pods", namespace, None,
                          self.api.list_namespaced_pod, namespace, label_selector=label_selector)
        return resp.items or []

    def patch(self, ctx: ProbeContext, namespace: str, name: str, body: dict) -> client.V1Pod:
        return self._call(ctx, "patch pod", namespace, name,
                          self.api.patch_namespaced_pod, name, namespace, body)

    def delete(self, ctx: ProbeContext, namespace: str, name: str) -> bool:
        """Delete the pod; False if it was already gone."""
        try:
            self._call(ctx, "delete pod", namespace, name,
                       self.api.delete_namespaced_pod, name, namespace)
        except ProbeAPIError as exc:
            if isinstance(exc.cause, ApiException) and exc.cause.status == 404:
                log.info("Pod %s/%s already gone", namespace, name)
                return False
            raise
        return True
