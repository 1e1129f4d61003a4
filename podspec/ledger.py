# podspec/ledger.py
"""Working state accumulated while one pod spec is being configured.

A Ledger lives for exactly one configure call. It is seeded from the pod as
it stands and filled in declaration order; nothing in it is persisted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import declaration as decl

DEFAULT_FIRST_PORT = 5000

# Owner of ports/env the operator did not create (the user's own containers).
PRE_EXISTING: Tuple[str, str] = ("", "")

# Scope of env vars destined for the workload's own containers.
WORKLOAD_SCOPE = ""


@dataclass(frozen=True)
class InstanceRef:
    declaration: Tuple[str, str] = PRE_EXISTING
    connection_string: str = ""

    def owner(self) -> str:
        return "/".join(self.declaration) if self.declaration != PRE_EXISTING else ""


@dataclass
class ManagedPort:
    port: int
    ref: InstanceRef


@dataclass
class ManagedEnvVar:
    name: str
    value: str
    ref: InstanceRef
    # sidecar container name, or WORKLOAD_SCOPE
    container: str = WORKLOAD_SCOPE

    def as_env(self) -> dict:
        return {"name": self.name, "value": self.value}


@dataclass
class ManagedVolume:
    ref: InstanceRef
    volume: dict
    mount: dict


@dataclass
class ConfigErrorDetail:
    error_code: str
    description: str
    proxy_namespace: str
    proxy_name: str
    workload_kind: str
    workload_namespace: str
    workload_name: str

    def __str__(self) -> str:
        return (
            f"error {self.error_code} {self.description} while applying AuthProxyWorkload "
            f"{self.proxy_namespace}/{self.proxy_name} to workload "
            f"{self.workload_kind} {self.workload_namespace}/{self.workload_name}"
        )


class ConfigError(Exception):
    """One or more declarations cannot be applied to a workload."""

    def __init__(self, workload_kind: str, workload_namespace: str, workload_name: str):
        super().__init__()
        self.workload_kind = workload_kind
        self.workload_namespace = workload_namespace
        self.workload_name = workload_name
        self.details: List[ConfigErrorDetail] = []

    def add(self, error_code: str, description: str, d: dict) -> None:
        self.details.append(
            ConfigErrorDetail(
                error_code=error_code,
                description=description,
                proxy_namespace=decl.decl_namespace(d),
                proxy_name=decl.decl_name(d),
                workload_kind=self.workload_kind,
                workload_namespace=self.workload_namespace,
                workload_name=self.workload_name,
            )
        )

    def __str__(self) -> str:
        return (
            f"found {len(self.details)} configuration errors on workload "
            f"{self.workload_kind} {self.workload_namespace}/{self.workload_name}: "
            f"[{'; '.join(str(d) for d in self.details)}]"
        )


def _ref(d: dict, connection_string: str = "") -> InstanceRef:
    return InstanceRef(decl.decl_id(d), connection_string)


def env_conflict(old: ManagedEnvVar, new: ManagedEnvVar) -> bool:
    """Same name, overlapping container scope, different value."""
    if old.name != new.name:
        return False
    if old.container != new.container and old.container and new.container:
        return False
    return old.value != new.value


@dataclass
class Ledger:
    error: ConfigError
    next_db_port: int = DEFAULT_FIRST_PORT
    ports: List[ManagedPort] = field(default_factory=list)
    env: List[ManagedEnvVar] = field(default_factory=list)
    volumes: List[ManagedVolume] = field(default_factory=list)
    sidecars: List[str] = field(default_factory=list)

    # ── ports ────────────────────────────────
    def port_in_use(self, port: int) -> bool:
        return any(mp.port == port for mp in self.ports)

    def _add_port(self, port: int, ref: InstanceRef) -> None:
        if not self.port_in_use(port):
            self.ports.append(ManagedPort(port, ref))

    def add_workload_port(self, port: int) -> None:
        self._add_port(port, InstanceRef())

    def use_port(self, explicit: Optional[int], default: int, d: dict, what: str) -> int:
        """Claim a proxy-level port (health, admin): explicit, else first free from default."""
        if explicit is not None:
            port = int(explicit)
            if self.port_in_use(port):
                self.error.add(
                    decl.ERROR_CODE_PORT_CONFLICT,
                    f"proxy {what} port {port} is already in use",
                    d,
                )
        else:
            port = default
            while self.port_in_use(port):
                port += 1
        self._add_port(port, _ref(d))
        return port

    def use_instance_port(self, d: dict, inst: dict) -> int:
        conn = inst.get("connectionString", "")
        ref = _ref(d, conn)
        explicit = inst.get("port")

        for mp in self.ports:
            if mp.ref == ref:
                if explicit is not None and mp.port != int(explicit):
                    if self.port_in_use(int(explicit)):
                        self.error.add(
                            decl.ERROR_CODE_PORT_CONFLICT,
                            f"proxy port {explicit} for instance {conn} is already in use",
                            d,
                        )
                    mp.port = int(explicit)
                return mp.port

        if explicit is not None:
            port = int(explicit)
        else:
            while self.port_in_use(self.next_db_port):
                self.next_db_port += 1
            port = self.next_db_port

        if self.port_in_use(port):
            self.error.add(
                decl.ERROR_CODE_PORT_CONFLICT,
                f"proxy port {port} for instance {conn} is already in use",
                d,
            )
        self.ports.append(ManagedPort(port, ref))
        return port

    # ── env ──────────────────────────────────
    def add_env(self, d: dict, name: str, value: str, container: str = WORKLOAD_SCOPE,
                connection_string: str = "") -> None:
        ref = _ref(d, connection_string)
        new = ManagedEnvVar(name=name, value=value, ref=ref, container=container)
        for old in self.env:
            if env_conflict(old, new):
                self.error.add(
                    decl.ERROR_CODE_ENV_CONFLICT,
                    f"environment variable named {name} is set more than once",
                    d,
                )
                return
            if old.name == new.name and old.container == new.container:
                # same value already requested by someone else
                return
        self.env.append(new)

    def env_for(self, container_name: str, is_sidecar: bool) -> List[ManagedEnvVar]:
        if is_sidecar:
            return [e for e in self.env if e.container == container_name]
        return [e for e in self.env if e.container == WORKLOAD_SCOPE]

    # ── volumes ──────────────────────────────
    def add_volume(self, d: dict, connection_string: str, volume: dict, mount: dict) -> None:
        ref = _ref(d, connection_string)
        mv = ManagedVolume(ref=ref, volume=volume, mount=mount)
        for i, existing in enumerate(self.volumes):
            if existing.ref == ref:
                self.volumes[i] = mv
                return
            if existing.mount.get("mountPath") == mount.get("mountPath"):
                # one volume per socket directory is enough
                return
        self.volumes.append(mv)

    def has_errors(self) -> bool:
        return bool(self.error.details)
