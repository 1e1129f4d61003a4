# gate.py
"""Admission-time defaulting and validation of AuthProxyWorkload objects.

The gate refuses declarations the engine could not apply unambiguously:
selectors that are both or neither name and labels, instances that ask for a
TCP listener and a unix socket at once, unknown kinds, and updates that would
silently retarget or change the rollout behaviour of an existing declaration.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import List, Optional

import declaration as decl
from workloads.kinds import SUPPORTED_KINDS, parse_kind
from workloads.matching import SELECTOR_OPERATORS

_DNS1035_LABEL = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")
_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ADMIN_APIS = ("Debug", "QuitQuitQuit")
STRATEGIES = (decl.STRATEGY_WORKLOAD, decl.STRATEGY_NONE)


@dataclass
class GateResult:
    ok: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def default_declaration(d: dict) -> dict:
    """Return a copy with rolloutStrategy defaulted to Workload."""
    d = copy.deepcopy(d)
    cs = (d.get("spec", {}) or {}).get("authProxyContainer")
    if isinstance(cs, dict) and not cs.get("rolloutStrategy"):
        cs["rolloutStrategy"] = decl.STRATEGY_WORKLOAD
    return d


def _valid_port(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool) and 1 <= v <= 65535


def _check_selector(ws: dict, errors: List[str]) -> None:
    kind = ws.get("kind") or ""
    if not kind:
        errors.append("spec.workloadSelector.kind: Required value")
    elif parse_kind(kind) not in SUPPORTED_KINDS:
        errors.append(
            f"spec.workloadSelector.kind: Unsupported value {kind!r}: supported values: {', '.join(SUPPORTED_KINDS)}"
        )

    name = ws.get("name") or ""
    selector = ws.get("selector")
    if name and selector:
        errors.append("spec.workloadSelector: Invalid value: selector and name are mutually exclusive")
    elif not name and not selector:
        errors.append("spec.workloadSelector: Invalid value: one of name or selector is required")

    for i, expr in enumerate((selector or {}).get("matchExpressions", []) or []):
        path = f"spec.workloadSelector.selector.matchExpressions[{i}]"
        op = expr.get("operator")
        vals = expr.get("values") or []
        if not expr.get("key"):
            errors.append(f"{path}.key: Required value")
        if op not in SELECTOR_OPERATORS:
            errors.append(f"{path}.operator: Unsupported value {op!r}")
        elif op in ("In", "NotIn") and not vals:
            errors.append(f"{path}.values: Required value: must be specified when operator is {op}")
        elif op in ("Exists", "DoesNotExist") and vals:
            errors.append(f"{path}.values: Forbidden: may not be specified when operator is {op}")


def _check_instances(instances: list, errors: List[str]) -> None:
    if not instances:
        errors.append("spec.instances: Required value: at least one instance is required")
        return
    for i, inst in enumerate(instances):
        inst = inst or {}
        path = f"spec.instances[{i}]"
        if not inst.get("connectionString"):
            errors.append(f"{path}.connectionString: Required value")

        for key in ("portEnvName", "hostEnvName", "unixSocketPathEnvName"):
            v = inst.get(key)
            if v and not _ENV_NAME.match(v):
                errors.append(f"{path}.{key}: Invalid value {v!r}: must be a valid environment variable name")

        if inst.get("port") is not None and not _valid_port(inst.get("port")):
            errors.append(f"{path}.port: Invalid value {inst.get('port')!r}: must be between 1 and 65535")

        socket_path = inst.get("unixSocketPath")
        tcp = inst.get("port") is not None or bool(inst.get("portEnvName")) or bool(inst.get("hostEnvName"))
        if socket_path:
            if not socket_path.startswith("/"):
                errors.append(f"{path}.unixSocketPath: Invalid value {socket_path!r}: must be an absolute path")
            if tcp:
                errors.append(
                    f"{path}.unixSocketPath: Invalid value: port, portEnvName and hostEnvName cannot be set with unixSocketPath"
                )
        else:
            if inst.get("unixSocketPathEnvName"):
                errors.append(f"{path}.unixSocketPathEnvName: Invalid value: requires unixSocketPath")
            if not tcp:
                errors.append(f"{path}: Invalid value: one of port, portEnvName or unixSocketPath is required")


def _check_container(cs: Optional[dict], errors: List[str]) -> None:
    if not cs:
        return
    strategy = cs.get("rolloutStrategy")
    if strategy and strategy not in STRATEGIES:
        errors.append(f"spec.authProxyContainer.rolloutStrategy: Unsupported value {strategy!r}")

    http_port = (cs.get("telemetry") or {}).get("httpPort")
    if http_port is not None and not _valid_port(http_port):
        errors.append(f"spec.authProxyContainer.telemetry.httpPort: Invalid value {http_port!r}")

    admin = cs.get("adminServer")
    if admin is not None:
        if not _valid_port(admin.get("port")):
            errors.append(f"spec.authProxyContainer.adminServer.port: Invalid value {admin.get('port')!r}")
        apis = admin.get("enableAPIs") or []
        if not apis:
            errors.append("spec.authProxyContainer.adminServer.enableAPIs: Required value")
        for api in apis:
            if api not in ADMIN_APIS:
                errors.append(
                    f"spec.authProxyContainer.adminServer.enableAPIs: Unsupported value {api!r}: "
                    f"supported values: {', '.join(ADMIN_APIS)}"
                )


def validate_declaration(d: dict) -> GateResult:
    errors: List[str] = []
    warnings: List[str] = []

    name = decl.decl_name(d)
    if not _DNS1035_LABEL.match(name or "") or len(name) > 63:
        errors.append(f"metadata.name: Invalid value {name!r}: must be a DNS-1035 label")

    _check_selector(decl.workload_selector(d), errors)
    _check_instances(decl.instances(d), errors)
    _check_container(decl.container_spec(d), errors)

    cs = decl.container_spec(d) or {}
    if cs.get("container"):
        warnings.append("spec.authProxyContainer.container overrides every other proxy container setting")

    return GateResult(ok=not errors, errors=errors, warnings=warnings)


def _effective_strategy(d: dict) -> str:
    return decl.rollout_strategy(d) or decl.STRATEGY_WORKLOAD


def validate_update(new: dict, old: dict) -> GateResult:
    res = validate_declaration(new)
    new_ws = decl.workload_selector(new)
    old_ws = decl.workload_selector(old)

    for key in ("kind", "name", "selector"):
        if (new_ws.get(key) or None) != (old_ws.get(key) or None):
            res.errors.append(f"spec.workloadSelector.{key}: Invalid value: field is immutable")

    if _effective_strategy(new) != _effective_strategy(old):
        res.errors.append(
            f"spec.authProxyContainer.rolloutStrategy: Invalid value {_effective_strategy(new)!r}: "
            f"field is immutable, was {_effective_strategy(old)!r}"
        )

    res.ok = not res.errors
    return res
