# k8s.py
"""Thin wrappers over the kubernetes client.

Everything returned from here is a plain camelCase dict (or a Workload
wrapping one), the same shape the admission webhook receives.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.client import ApiException

import declaration as decl
from workloads.kinds import Workload, workload_class

FINALIZER = "cloudsql.cloud.google.com/AuthProxyWorkload-finalizer"

_serializer: Optional[client.ApiClient] = None


def to_dict(obj) -> dict:
    """Convert a kubernetes model to its API (camelCase) dict form."""
    global _serializer
    if isinstance(obj, dict):
        return obj
    if _serializer is None:
        _serializer = client.ApiClient()
    return _serializer.sanitize_for_serialization(obj)


def is_not_found(err: Exception) -> bool:
    return isinstance(err, ApiException) and err.status == 404


# ─────────────────────────────────────────────
# AuthProxyWorkload API wrapper
# ─────────────────────────────────────────────
class ProxyWorkloadClient:
    def __init__(self, api=None):
        self.api = api or client.CustomObjectsApi()

    def list(self, namespace: str = "") -> List[dict]:
        if namespace:
            res = self.api.list_namespaced_custom_object(
                group=decl.GROUP,
                version=decl.VERSION,
                namespace=namespace,
                plural=decl.PLURAL,
            )
        else:
            res = self.api.list_cluster_custom_object(
                group=decl.GROUP,
                version=decl.VERSION,
                plural=decl.PLURAL,
            )
        return res.get("items", []) or []

    def get(self, namespace: str, name: str) -> dict:
        return self.api.get_namespaced_custom_object(
            group=decl.GROUP,
            version=decl.VERSION,
            namespace=namespace,
            plural=decl.PLURAL,
            name=name,
        )

    def patch(self, namespace: str, name: str, body: dict) -> dict:
        return self.api.patch_namespaced_custom_object(
            group=decl.GROUP,
            version=decl.VERSION,
            namespace=namespace,
            plural=decl.PLURAL,
            name=name,
            body=body,
        )

    def patch_status(self, namespace: str, name: str, status: dict) -> dict:
        return self.api.patch_namespaced_custom_object_status(
            group=decl.GROUP,
            version=decl.VERSION,
            namespace=namespace,
            plural=decl.PLURAL,
            name=name,
            body={"status": status},
        )


def _patch_finalizers(proxies: ProxyWorkloadClient, d: dict, fins: List[str]) -> dict:
    meta = (d.get("metadata", {}) or {})
    # resourceVersion turns the merge patch into a compare-and-swap
    patch = {"metadata": {"finalizers": fins, "resourceVersion": meta.get("resourceVersion")}}
    return proxies.patch(decl.decl_namespace(d), decl.decl_name(d), patch)


def ensure_finalizer(proxies: ProxyWorkloadClient, d: dict) -> bool:
    """Add our finalizer; returns True when a patch was sent."""
    fins = decl.finalizers(d)
    if FINALIZER in fins:
        return False
    fins.append(FINALIZER)
    _patch_finalizers(proxies, d, fins)
    return True


def remove_finalizer(proxies: ProxyWorkloadClient, d: dict) -> bool:
    fins = decl.finalizers(d)
    if FINALIZER not in fins:
        return False
    fins = [f for f in fins if f != FINALIZER]
    _patch_finalizers(proxies, d, fins)
    return True


# ─────────────────────────────────────────────
# Workload API wrapper
# ─────────────────────────────────────────────
class WorkloadClient:
    """Reads, lists and patches any supported workload kind."""

    def __init__(self, core=None, apps=None, batch=None):
        self.apis = {
            "core": core or client.CoreV1Api(),
            "apps": apps or client.AppsV1Api(),
            "batch": batch or client.BatchV1Api(),
        }

    def _method(self, cls, verb: str):
        return getattr(self.apis[cls.api], f"{verb}_namespaced_{cls.plural}")

    def get(self, kind: str, namespace: str, name: str) -> Workload:
        cls = workload_class(kind)
        obj = self._method(cls, "read")(name, namespace)
        return cls(to_dict(obj))

    def list(self, kind: str, namespace: str, label_selector: str = "") -> List[Workload]:
        cls = workload_class(kind)
        kwargs: Dict[str, str] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        res = self._method(cls, "list")(namespace, **kwargs)
        return [cls(to_dict(item)) for item in (res.items or [])]

    def patch_template_annotations(self, wl: Workload, annotations: Dict[str, str]) -> None:
        body: dict = {"metadata": {"annotations": dict(annotations)}}
        for key in reversed(wl.template_path):
            body = {key: body}
        self._method(type(wl), "patch")(wl.name, wl.namespace, body)

    def delete_pod(self, namespace: str, name: str) -> None:
        self.apis["core"].delete_namespaced_pod(name, namespace)
