# workloads/kinds.py
"""One class per workload kind that can carry an injected proxy.

Every variant exposes the pod spec, the pod-template annotations and its
identity. Kinds whose pod template can be changed in place additionally
derive from MutableWorkload; Job and CronJob templates are immutable and
only receive a proxy when their pods are admitted.

The API call names used to read, list and patch each kind live on the class
so kind resolution happens in exactly one place (workload_for_kind).
"""
from __future__ import annotations

import copy
from typing import Dict, List, Optional, Tuple, Type

WorkloadId = Tuple[str, str, str]  # (kind, namespace, name)


class UnknownKindError(ValueError):
    pass


def _dig(obj: dict, *path: str) -> dict:
    cur = obj or {}
    for p in path:
        cur = (cur or {}).get(p, {}) or {}
    return cur


def _dig_create(obj: dict, *path: str) -> dict:
    cur = obj
    for p in path:
        if not isinstance(cur.get(p), dict):
            cur[p] = {}
        cur = cur[p]
    return cur


class Workload:
    kind = ""
    api_version = ""
    api = ""
    plural = ""
    # path from the object root to the PodTemplateSpec
    template_path: Tuple[str, ...] = ()

    def __init__(self, obj: Optional[dict] = None):
        self.obj = obj if obj is not None else {}
        self.obj.setdefault("kind", self.kind)
        self.obj.setdefault("apiVersion", self.api_version)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.namespace}/{self.name}>"

    @property
    def name(self) -> str:
        return _dig(self.obj, "metadata").get("name", "") or ""

    @property
    def namespace(self) -> str:
        return _dig(self.obj, "metadata").get("namespace", "") or ""

    @property
    def labels(self) -> Dict[str, str]:
        return _dig(self.obj, "metadata").get("labels", {}) or {}

    @property
    def owner_references(self) -> List[dict]:
        return _dig(self.obj, "metadata").get("ownerReferences", []) or []

    def identity(self) -> WorkloadId:
        return (self.kind, self.namespace, self.name)

    def _template(self) -> dict:
        return _dig(self.obj, *self.template_path)

    def pod_spec(self) -> dict:
        return copy.deepcopy(_dig(self._template(), "spec"))

    def template_annotations(self) -> Dict[str, str]:
        return dict(_dig(self._template(), "metadata").get("annotations", {}) or {})


class MutableWorkload(Workload):
    """A workload whose pod template may be rewritten by the operator."""

    def set_pod_spec(self, spec: dict) -> None:
        _dig_create(self.obj, *self.template_path)["spec"] = spec

    def set_template_annotations(self, annotations: Dict[str, str]) -> None:
        meta = _dig_create(self.obj, *self.template_path, "metadata")
        meta["annotations"] = dict(annotations)


class PodWorkload(MutableWorkload):
    kind = "Pod"
    api_version = "v1"
    api = "core"
    plural = "pod"


class DeploymentWorkload(MutableWorkload):
    kind = "Deployment"
    api_version = "apps/v1"
    api = "apps"
    plural = "deployment"
    template_path = ("spec", "template")


class StatefulSetWorkload(MutableWorkload):
    kind = "StatefulSet"
    api_version = "apps/v1"
    api = "apps"
    plural = "stateful_set"
    template_path = ("spec", "template")


class DaemonSetWorkload(MutableWorkload):
    kind = "DaemonSet"
    api_version = "apps/v1"
    api = "apps"
    plural = "daemon_set"
    template_path = ("spec", "template")


class ReplicaSetWorkload(MutableWorkload):
    kind = "ReplicaSet"
    api_version = "apps/v1"
    api = "apps"
    plural = "replica_set"
    template_path = ("spec", "template")


class JobWorkload(Workload):
    kind = "Job"
    api_version = "batch/v1"
    api = "batch"
    plural = "job"
    template_path = ("spec", "template")


class CronJobWorkload(Workload):
    kind = "CronJob"
    api_version = "batch/v1"
    api = "batch"
    plural = "cron_job"
    template_path = ("spec", "jobTemplate", "spec", "template")


WORKLOAD_KINDS: Dict[str, Type[Workload]] = {
    cls.kind: cls
    for cls in (
        DeploymentWorkload,
        PodWorkload,
        StatefulSetWorkload,
        ReplicaSetWorkload,
        DaemonSetWorkload,
        JobWorkload,
        CronJobWorkload,
    )
}

SUPPORTED_KINDS = tuple(WORKLOAD_KINDS)


def parse_kind(kind: str) -> str:
    """Strip the version/group qualifiers: "Deployment.v1.apps" -> "Deployment"."""
    return (kind or "").split(".", 1)[0]


def workload_class(kind: str) -> Type[Workload]:
    cls = WORKLOAD_KINDS.get(parse_kind(kind))
    if cls is None:
        raise UnknownKindError(f"unknown kind {kind}")
    return cls


def workload_for_kind(kind: str, obj: Optional[dict] = None) -> Workload:
    return workload_class(kind)(obj)


def workload_for_object(obj: dict) -> Workload:
    return workload_for_kind((obj or {}).get("kind", ""), obj)


def is_mutable(wl: Workload) -> bool:
    return isinstance(wl, MutableWorkload)
