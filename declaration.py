# declaration.py
"""Accessors over AuthProxyWorkload objects.

Declarations are handled as the camelCase dicts returned by the API server.
Every helper tolerates missing or null sections.
"""
from __future__ import annotations

from typing import List, Optional, Tuple

import names

GROUP = "cloudsql.cloud.google.com"
VERSION = "v1"
KIND = "AuthProxyWorkload"
PLURAL = "authproxyworkloads"

CONDITION_UP_TO_DATE = "UpToDate"
CONDITION_WORKLOAD_UP_TO_DATE = "WorkloadUpToDate"

REASON_STARTED_RECONCILE = "StartedReconcile"
REASON_FINISHED_RECONCILE = "FinishedReconcile"
REASON_WORKLOAD_NEEDS_UPDATE = "WorkloadNeedsUpdate"
REASON_NO_WORKLOADS_FOUND = "NoWorkloadsFound"
REASON_UP_TO_DATE = "UpToDate"

STRATEGY_WORKLOAD = "Workload"
STRATEGY_NONE = "None"

ERROR_CODE_PORT_CONFLICT = "PortConflict"
ERROR_CODE_ENV_CONFLICT = "EnvVarConflict"

DeclarationId = Tuple[str, str]  # (namespace, name)


def _meta(d: dict) -> dict:
    return (d or {}).get("metadata", {}) or {}


def _spec(d: dict) -> dict:
    return (d or {}).get("spec", {}) or {}


def decl_namespace(d: dict) -> str:
    return _meta(d).get("namespace", "") or ""


def decl_name(d: dict) -> str:
    return _meta(d).get("name", "") or ""


def decl_id(d: dict) -> DeclarationId:
    return (decl_namespace(d), decl_name(d))


def decl_key(d: dict) -> str:
    return f"{decl_namespace(d)}/{decl_name(d)}"


def generation(d: dict) -> int:
    return int(_meta(d).get("generation") or 0)


def deletion_timestamp(d: dict) -> Optional[str]:
    return _meta(d).get("deletionTimestamp")


def finalizers(d: dict) -> List[str]:
    return list(_meta(d).get("finalizers") or [])


def workload_selector(d: dict) -> dict:
    return _spec(d).get("workloadSelector", {}) or {}


def instances(d: dict) -> List[dict]:
    return [i or {} for i in (_spec(d).get("instances") or [])]


def container_spec(d: dict) -> Optional[dict]:
    return _spec(d).get("authProxyContainer")


def rollout_strategy(d: dict) -> str:
    return (container_spec(d) or {}).get("rolloutStrategy") or ""


def is_rollout_strategy_none(d: dict) -> bool:
    return rollout_strategy(d) == STRATEGY_NONE


def image_override(d: dict) -> str:
    return (container_spec(d) or {}).get("image") or ""


def pod_annotation(d: dict, default_image: str) -> Tuple[str, str]:
    """Return the (key, value) rollout annotation for this declaration.

    The value carries the generation and, unless the declaration pins its own
    image, the operator's default image so an operator upgrade also rolls.
    """
    img = "" if image_override(d) else default_image
    return (
        names.annotation_key(decl_name(d)),
        names.annotation_value(generation(d), img, deletion_timestamp(d)),
    )


def sidecar_name(d: dict) -> str:
    return names.container_name(decl_namespace(d), decl_name(d))


def conditions(d: dict) -> List[dict]:
    return list(((d or {}).get("status", {}) or {}).get("conditions") or [])


def find_condition(conds: List[dict], ctype: str) -> Optional[dict]:
    for c in conds or []:
        if c.get("type") == ctype:
            return c
    return None
