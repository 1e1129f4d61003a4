# workloads/matching.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import declaration as decl
from workloads.kinds import Workload, parse_kind

SELECTOR_OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


def selector_is_empty(selector: Optional[dict]) -> bool:
    selector = selector or {}
    return not (selector.get("matchLabels") or selector.get("matchExpressions"))


def selector_matches_labels(selector: Optional[dict], labels: Dict[str, str]) -> bool:
    """K8s label selector evaluation (matchLabels + set-based expressions).

    An empty selector matches everything.
    """
    selector = selector or {}
    labels = labels or {}
    match_labels = selector.get("matchLabels", {}) or {}
    for k, v in match_labels.items():
        if labels.get(k) != v:
            return False

    for expr in selector.get("matchExpressions", []) or []:
        key = expr.get("key")
        op = expr.get("operator")
        vals = expr.get("values", []) or []
        if op == "In":
            if key not in labels or labels[key] not in vals:
                return False
        elif op == "NotIn":
            if labels.get(key) in vals:
                return False
        elif op == "Exists":
            if key not in labels:
                return False
        elif op == "DoesNotExist":
            if key in labels:
                return False
        else:
            # Unknown operator -> treat as non-match
            return False

    return True


def selector_to_string(selector: Optional[dict]) -> str:
    """Render a LabelSelector in the string form accepted by list calls."""
    selector = selector or {}
    parts: List[str] = []
    for k, v in sorted((selector.get("matchLabels", {}) or {}).items()):
        parts.append(f"{k}={v}")
    for expr in selector.get("matchExpressions", []) or []:
        key = expr.get("key")
        op = expr.get("operator")
        vals = ",".join(expr.get("values", []) or [])
        if op == "In":
            parts.append(f"{key} in ({vals})")
        elif op == "NotIn":
            parts.append(f"{key} notin ({vals})")
        elif op == "Exists":
            parts.append(f"{key}")
        elif op == "DoesNotExist":
            parts.append(f"!{key}")
    return ",".join(parts)


def workload_matches(wl: Workload, workload_selector: dict, namespace: str) -> bool:
    """True when the workload is selected by a declaration's workloadSelector.

    Kind and name are compared only when the selector sets them, the
    namespace only when one is given. Pure: no API calls, no mutation.
    """
    workload_selector = workload_selector or {}
    kind = workload_selector.get("kind")
    if kind and wl.kind != parse_kind(kind):
        return False
    name = workload_selector.get("name")
    if name and wl.name != name:
        return False
    if namespace and wl.namespace != namespace:
        return False
    return selector_matches_labels(workload_selector.get("selector"), wl.labels)


def filter_matching(declarations: Iterable[dict], wl: Workload) -> List[dict]:
    out: List[dict] = []
    for d in declarations:
        if not workload_matches(wl, decl.workload_selector(d), decl.decl_namespace(d)):
            continue
        # pending deletion: its proxy must not be (re)injected
        if decl.deletion_timestamp(d):
            continue
        out.append(d)
    return out


def find_matching_declarations(
    declarations: Iterable[dict], wl: Workload, owners: Iterable[Workload] = ()
) -> List[dict]:
    """Declarations selecting the workload directly or through any of its owners.

    Duplicates (a declaration matching both a pod and its owner) collapse to
    one entry; the result is ordered by namespace/name.
    """
    declarations = list(declarations)
    found: Dict[str, dict] = {}
    for candidate in [wl, *owners]:
        for d in filter_matching(declarations, candidate):
            found[decl.decl_key(d)] = d
    return [found[k] for k in sorted(found)]
