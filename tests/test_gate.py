from __future__ import annotations

from fakes import _decl
from gate import default_declaration, validate_declaration, validate_update


def test_gate_passes_for_minimum_happy_path() -> None:
    res = validate_declaration(_decl("web-proxy", workload_name="web"))
    assert res.ok is True
    assert res.errors == []


def test_gate_requires_exactly_one_of_name_or_selector() -> None:
    both = _decl("web-proxy", workload_name="web", selector={"matchLabels": {"app": "web"}})
    neither = _decl("web-proxy")

    res = validate_declaration(both)
    assert res.ok is False
    assert any("mutually exclusive" in e for e in res.errors)

    res = validate_declaration(neither)
    assert res.ok is False
    assert any("one of name or selector is required" in e for e in res.errors)


def test_gate_rejects_unknown_kind_and_bad_operator() -> None:
    d = _decl(
        "web-proxy",
        kind="Service",
        selector={"matchExpressions": [{"key": "app", "operator": "Like", "values": ["w"]}]},
    )
    res = validate_declaration(d)
    assert any(e.startswith("spec.workloadSelector.kind: Unsupported value 'Service'") for e in res.errors)
    assert any("operator: Unsupported value 'Like'" in e for e in res.errors)


def test_gate_accepts_version_qualified_kind() -> None:
    assert validate_declaration(_decl("web-proxy", kind="Deployment.v1.apps", workload_name="web")).ok


def test_gate_rejects_port_together_with_unix_socket() -> None:
    d = _decl(
        "web-proxy",
        workload_name="web",
        instances=[{"connectionString": "proj:region:db", "port": 5000, "unixSocketPath": "/csql/db"}],
    )
    res = validate_declaration(d)
    assert res.ok is False
    assert any("cannot be set with unixSocketPath" in e for e in res.errors)


def test_gate_requires_some_way_to_reach_the_instance() -> None:
    d = _decl("web-proxy", workload_name="web", instances=[{"connectionString": "proj:region:db"}])
    res = validate_declaration(d)
    assert res.ok is False
    assert any("one of port, portEnvName or unixSocketPath is required" in e for e in res.errors)


def test_gate_rejects_relative_socket_and_bad_env_name() -> None:
    d = _decl(
        "web-proxy",
        workload_name="web",
        instances=[{"connectionString": "proj:region:db", "unixSocketPath": "csql/db", "unixSocketPathEnvName": "1BAD"}],
    )
    res = validate_declaration(d)
    assert any("must be an absolute path" in e for e in res.errors)
    assert any("unixSocketPathEnvName: Invalid value '1BAD'" in e for e in res.errors)


def test_gate_rejects_invalid_name_and_empty_instances() -> None:
    res = validate_declaration(_decl("Web_Proxy", workload_name="web", instances=[]))
    assert any(e.startswith("metadata.name") for e in res.errors)
    assert any(e.startswith("spec.instances: Required value") for e in res.errors)


def test_gate_checks_admin_server() -> None:
    d = _decl("web-proxy", workload_name="web", container={"adminServer": {"port": 0, "enableAPIs": ["Shell"]}})
    res = validate_declaration(d)
    assert any("adminServer.port" in e for e in res.errors)
    assert any("Unsupported value 'Shell'" in e for e in res.errors)


def test_gate_warns_on_full_container_override() -> None:
    d = _decl("web-proxy", workload_name="web", container={"container": {"image": "mine:1"}})
    res = validate_declaration(d)
    assert res.ok is True
    assert len(res.warnings) == 1


def test_defaulting_sets_rollout_strategy_without_mutating_input() -> None:
    d = _decl("web-proxy", workload_name="web", container={"image": "proxy:3"})
    out = default_declaration(d)
    assert out["spec"]["authProxyContainer"]["rolloutStrategy"] == "Workload"
    assert "rolloutStrategy" not in d["spec"]["authProxyContainer"]

    bare = default_declaration(_decl("web-proxy", workload_name="web"))
    assert "authProxyContainer" not in bare["spec"]


def test_update_may_not_retarget_the_selector() -> None:
    old = _decl("web-proxy", workload_name="web")
    new = _decl("web-proxy", workload_name="api")
    res = validate_update(new, old)
    assert res.ok is False
    assert res.errors == ["spec.workloadSelector.name: Invalid value: field is immutable"]


def test_update_may_not_change_effective_rollout_strategy() -> None:
    old = _decl("web-proxy", workload_name="web")
    explicit_default = _decl("web-proxy", workload_name="web", container={"rolloutStrategy": "Workload"})
    none = _decl("web-proxy", workload_name="web", container={"rolloutStrategy": "None"})

    assert validate_update(explicit_default, old).ok is True
    res = validate_update(none, old)
    assert res.ok is False
    assert any("rolloutStrategy" in e for e in res.errors)


def test_update_of_instances_is_allowed() -> None:
    old = _decl("web-proxy", workload_name="web")
    new = _decl(
        "web-proxy",
        workload_name="web",
        generation=2,
        instances=[{"connectionString": "proj:region:db2", "portEnvName": "DB_PORT"}],
    )
    assert validate_update(new, old).ok is True
