# podspec/engine.py
"""Pod Config Engine: compute the proxy sidecars for a pod spec.

configure_workload() is a pure function of (pod spec, annotations, matching
declarations): it strips whatever a previous pass injected, rebuilds the
ledger from the declarations and the user's own containers, and writes the
result back. Running it twice with the same input gives the same output.
"""
from __future__ import annotations

import copy
import posixpath
from typing import Dict, List, Optional

import declaration as decl
import names
from podspec import cleanup
from podspec.ledger import ConfigError, Ledger
from workloads.kinds import MutableWorkload, Workload

DEFAULT_HEALTH_CHECK_PORT = 9801
DEFAULT_ADMIN_PORT = 9802
DEFAULT_RESOURCES = {"requests": {"cpu": "1.0", "memory": "2Gi"}}
PROBE_PERIOD_SECONDS = 30

ENV_PREFIX = "CSQL_PROXY_"

SECURITY_CONTEXT = {
    "runAsNonRoot": True,
    "readOnlyRootFilesystem": True,
    "allowPrivilegeEscalation": False,
}


def _bool(v: bool) -> str:
    return "true" if v else "false"


def _merge_by_name(items: List[dict], new: dict) -> None:
    for i, existing in enumerate(items):
        if existing.get("name") == new.get("name"):
            items[i] = new
            return
    items.append(new)


class Updater:
    """Holds the operator-wide settings the engine needs."""

    def __init__(self, user_agent: str, default_image: str):
        self.user_agent = user_agent
        self.default_image = default_image

    def pod_annotation(self, d: dict):
        return decl.pod_annotation(d, self.default_image)

    # ─────────────────────────────────────────
    # configure
    # ─────────────────────────────────────────
    def configure_workload(self, wl: MutableWorkload, declarations: List[dict]) -> None:
        """Apply the sidecars of every declaration to the workload in place.

        Raises ConfigError, leaving the workload untouched, when ports or env
        vars collide.
        """
        declarations = sorted(declarations, key=decl.decl_key)
        spec = wl.pod_spec()
        annotations = wl.template_annotations()
        cleanup.strip_managed(spec, annotations)

        ledger = Ledger(error=ConfigError(wl.kind, wl.namespace, wl.name))
        for c in spec.get("containers") or []:
            for p in c.get("ports") or []:
                if p.get("containerPort") is not None:
                    ledger.add_workload_port(int(p["containerPort"]))

        sidecars: List[dict] = []
        for d in declarations:
            if not decl.instances(d):
                continue
            sidecar = self._build_sidecar(ledger, d)
            sidecars.append(sidecar)
            ledger.sidecars.append(sidecar["name"])
            k, v = self.pod_annotation(d)
            annotations[k] = v

        containers = list(spec.get("containers") or []) + sidecars
        record: cleanup.EnvRecord = {}
        for c in containers:
            is_sidecar = c.get("name") in ledger.sidecars
            changed = self._apply_env(c, ledger, is_sidecar)
            if changed:
                record[c["name"]] = changed
            self._apply_mounts(c, ledger)
        spec["containers"] = containers
        self._apply_volumes(spec, ledger)

        if ledger.has_errors():
            raise ledger.error

        if record:
            annotations[cleanup.MANAGED_ENV_ANNOTATION] = cleanup.dump_env_record(record)
        wl.set_pod_spec(spec)
        wl.set_template_annotations(annotations)

    def _build_sidecar(self, ledger: Ledger, d: dict) -> dict:
        name = decl.sidecar_name(d)
        cs = decl.container_spec(d) or {}

        # full override: only the name is ours
        if cs.get("container"):
            c = copy.deepcopy(cs["container"])
            c["name"] = name
            return c

        c: dict = {"name": name, "imagePullPolicy": "IfNotPresent"}

        def proxy_env(key: str, value: str) -> None:
            ledger.add_env(d, ENV_PREFIX + key, value, container=name)

        # health checks
        telemetry = cs.get("telemetry") or {}
        health_port = ledger.use_port(telemetry.get("httpPort"), DEFAULT_HEALTH_CHECK_PORT, d, "health check")
        for probe, path in (("startupProbe", "/startup"), ("readinessProbe", "/readiness"), ("livenessProbe", "/liveness")):
            c[probe] = {"httpGet": {"path": path, "port": health_port}, "periodSeconds": PROBE_PERIOD_SECONDS}
        c["ports"] = [{"containerPort": health_port, "protocol": "TCP"}]
        proxy_env("HTTP_PORT", str(health_port))
        proxy_env("HTTP_ADDRESS", "0.0.0.0")
        proxy_env("HEALTH_CHECK", "true")

        self._apply_telemetry(telemetry, proxy_env)

        # admin server, always on for the preStop drain
        admin = cs.get("adminServer") or {}
        admin_port = ledger.use_port(admin.get("port"), DEFAULT_ADMIN_PORT, d, "admin")
        proxy_env("ADMIN_PORT", str(admin_port))
        proxy_env("QUITQUITQUIT", "true")
        if "Debug" in (admin.get("enableAPIs") or []):
            proxy_env("DEBUG", "true")
        c["lifecycle"] = {
            "preStop": {"httpGet": {"host": "localhost", "path": "/quitquitquit", "port": admin_port}}
        }

        proxy_env("USER_AGENT", self.user_agent)
        proxy_env("STRUCTURED_LOGS", "true")

        # container spec
        c["image"] = cs.get("image") or self.default_image
        c["resources"] = copy.deepcopy(cs.get("resources") or DEFAULT_RESOURCES)
        c["securityContext"] = dict(SECURITY_CONTEXT)
        if cs.get("sqlAdminAPIEndpoint"):
            proxy_env("SQLADMIN_API_ENDPOINT", cs["sqlAdminAPIEndpoint"])
        if cs.get("maxConnections"):
            proxy_env("MAX_CONNECTIONS", str(cs["maxConnections"]))
        if cs.get("maxSigtermDelay"):
            proxy_env("MAX_SIGTERM_DELAY", f"{cs['maxSigtermDelay']}s")
        if cs.get("quiet"):
            proxy_env("QUIET", "true")
        if cs.get("refreshStrategy") == "lazy":
            proxy_env("LAZY_REFRESH", "true")

        chain = (cs.get("authentication") or {}).get("impersonationChain") or []
        if chain:
            proxy_env("IMPERSONATE_SERVICE_ACCOUNT", ",".join(chain))

        c["args"] = [self._instance_arg(ledger, d, inst) for inst in decl.instances(d)]
        return c

    @staticmethod
    def _apply_telemetry(tel: dict, proxy_env) -> None:
        if tel.get("telemetrySampleRate") is not None:
            proxy_env("TELEMETRY_SAMPLE_RATE", str(tel["telemetrySampleRate"]))
        if tel.get("disableTraces"):
            proxy_env("DISABLE_TRACES", "true")
        if tel.get("disableMetrics"):
            proxy_env("DISABLE_METRICS", "true")
        if tel.get("prometheusNamespace") is not None or tel.get("prometheus"):
            proxy_env("PROMETHEUS", "true")
        if tel.get("prometheusNamespace") is not None:
            proxy_env("PROMETHEUS_NAMESPACE", tel["prometheusNamespace"])
        if tel.get("telemetryProject") is not None:
            proxy_env("TELEMETRY_PROJECT", tel["telemetryProject"])
        if tel.get("telemetryPrefix") is not None:
            proxy_env("TELEMETRY_PREFIX", tel["telemetryPrefix"])
        if tel.get("quotaProject") is not None:
            proxy_env("QUOTA_PROJECT", tel["quotaProject"])

    def _instance_arg(self, ledger: Ledger, d: dict, inst: dict) -> str:
        conn = inst.get("connectionString", "")
        params: Dict[str, str] = {}

        socket_path = inst.get("unixSocketPath")
        if not socket_path:
            port = ledger.use_instance_port(d, inst)
            params["port"] = str(port)
            if inst.get("hostEnvName"):
                ledger.add_env(d, inst["hostEnvName"], "127.0.0.1", connection_string=conn)
            if inst.get("portEnvName"):
                ledger.add_env(d, inst["portEnvName"], str(port), connection_string=conn)
        else:
            params["unix-socket-path"] = socket_path
            vol_name = names.volume_name(decl.decl_name(d), conn, "unix")
            ledger.add_volume(
                d,
                conn,
                volume={"name": vol_name, "emptyDir": {}},
                mount={"name": vol_name, "mountPath": posixpath.dirname(socket_path), "readOnly": False},
            )
            if inst.get("unixSocketPathEnvName"):
                ledger.add_env(d, inst["unixSocketPathEnvName"], socket_path, connection_string=conn)

        if inst.get("autoIAMAuthN") is not None:
            params["auto-iam-authn"] = _bool(inst["autoIAMAuthN"])
        if inst.get("privateIP") is not None:
            params["private-ip"] = _bool(inst["privateIP"])

        if not params:
            return conn
        return conn + "?" + "&".join(f"{k}={v}" for k, v in sorted(params.items()))

    # ─────────────────────────────────────────
    # merge helpers
    # ─────────────────────────────────────────
    @staticmethod
    def _apply_env(c: dict, ledger: Ledger, is_sidecar: bool) -> Dict[str, dict]:
        """Merge managed env vars into c; returns what was replaced, by name."""
        managed = ledger.env_for(c.get("name", ""), is_sidecar)
        if not managed:
            return {}
        env = list(c.get("env") or [])
        changed: Dict[str, dict] = {}
        for mv in managed:
            original: Optional[dict] = next((e for e in env if e.get("name") == mv.name), None)
            if not is_sidecar and mv.name not in changed:
                changed[mv.name] = {"owner": mv.ref.owner(), "original": original}
            _merge_by_name(env, mv.as_env())
        c["env"] = env
        return changed

    @staticmethod
    def _apply_mounts(c: dict, ledger: Ledger) -> None:
        if not ledger.volumes:
            return
        mounts = list(c.get("volumeMounts") or [])
        for mv in ledger.volumes:
            _merge_by_name(mounts, dict(mv.mount))
        c["volumeMounts"] = mounts

    @staticmethod
    def _apply_volumes(spec: dict, ledger: Ledger) -> None:
        if not ledger.volumes:
            return
        volumes = list(spec.get("volumes") or [])
        for mv in ledger.volumes:
            _merge_by_name(volumes, dict(mv.volume))
        spec["volumes"] = volumes

    # ─────────────────────────────────────────
    # self-heal check
    # ─────────────────────────────────────────
    def check_workload_containers(self, wl: Workload, declarations: List[dict]) -> None:
        """Raise ConfigError when expected sidecars are missing from a failing pod."""
        present = {c.get("name") for c in wl.pod_spec().get("containers") or []}
        missing = [d for d in declarations if decl.instances(d) and decl.sidecar_name(d) not in present]
        if not missing:
            return

        failing = _failing_containers(wl.obj)
        if not failing:
            return

        err = ConfigError(wl.kind, wl.namespace, wl.name)
        for d in missing:
            err.add(
                "MissingProxyContainer",
                f"pod is missing container {decl.sidecar_name(d)} and containers {', '.join(failing)} are failing",
                d,
            )
        raise err


def _failing_containers(pod: dict) -> List[str]:
    status = (pod or {}).get("status", {}) or {}
    out: List[str] = []
    for cs in status.get("containerStatuses") or []:
        state = cs.get("state") or {}
        terminated = state.get("terminated") or {}
        waiting = state.get("waiting") or {}
        if terminated.get("reason") == "Error" or waiting.get("reason") == "CrashLoopBackOff":
            out.append(cs.get("name", ""))
    return out
