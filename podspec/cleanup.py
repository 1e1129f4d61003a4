# podspec/cleanup.py
"""Undo a previous configure pass so it can be recomputed from scratch.

Sidecars, socket volumes and mounts are recognised by their csql- prefix.
Env vars written into the workload's own containers cannot be recognised by
name, so each configure pass records, per container, which names it wrote
and what was there before (the env entry, or nothing). Stripping restores
those entries; the record is rewritten on every pass.
"""
from __future__ import annotations

import json
from typing import Dict, Optional

import names

MANAGED_ENV_ANNOTATION = f"{names.ANNOTATION_PREFIX}/managed-env"

# {container: {env name: {"owner": "ns/name", "original": env entry or None}}}
EnvRecord = Dict[str, Dict[str, dict]]


def is_managed_name(name: str) -> bool:
    return (name or "").startswith(names.CONTAINER_PREFIX)


def load_env_record(annotations: Dict[str, str]) -> EnvRecord:
    raw = (annotations or {}).get(MANAGED_ENV_ANNOTATION)
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        print(f"[podspec] ignoring unreadable {MANAGED_ENV_ANNOTATION} annotation")
        return {}
    return data if isinstance(data, dict) else {}


def dump_env_record(record: EnvRecord) -> str:
    return json.dumps(record, sort_keys=True, separators=(",", ":"))


def _restore_env(container: dict, recorded: Dict[str, dict]) -> None:
    env = list(container.get("env") or [])
    for env_name, entry in recorded.items():
        original: Optional[dict] = (entry or {}).get("original")
        idx = next((i for i, e in enumerate(env) if e.get("name") == env_name), None)
        if idx is None:
            if original is not None:
                env.append(original)
            continue
        if original is None:
            env.pop(idx)
        else:
            env[idx] = original
    if env:
        container["env"] = env
    else:
        container.pop("env", None)


def strip_managed(spec: dict, annotations: Dict[str, str]) -> None:
    """Remove everything a previous configure pass added, in place."""
    record = load_env_record(annotations)

    containers = [c for c in (spec.get("containers") or []) if not is_managed_name(c.get("name", ""))]
    for c in containers:
        recorded = record.get(c.get("name", ""))
        if recorded:
            _restore_env(c, recorded)
        mounts = [m for m in (c.get("volumeMounts") or []) if not is_managed_name(m.get("name", ""))]
        if mounts:
            c["volumeMounts"] = mounts
        else:
            c.pop("volumeMounts", None)
    spec["containers"] = containers

    if "volumes" in spec:
        volumes = [v for v in (spec.get("volumes") or []) if not is_managed_name(v.get("name", ""))]
        if volumes:
            spec["volumes"] = volumes
        else:
            spec.pop("volumes")

    annotations.pop(MANAGED_ENV_ANNOTATION, None)
