from __future__ import annotations

import pytest
from kubernetes.client import ApiException

from fakes import FakeWorkloads, _decl, _deployment, _pod
from workloads.kinds import (
    CronJobWorkload,
    DeploymentWorkload,
    JobWorkload,
    PodWorkload,
    UnknownKindError,
    is_mutable,
    workload_for_kind,
)
from workloads.matching import (
    find_matching_declarations,
    selector_matches_labels,
    selector_to_string,
    workload_matches,
)
from workloads.owners import list_owners


def test_kind_factory_accepts_version_qualified_kinds() -> None:
    assert isinstance(workload_for_kind("Deployment.v1.apps"), DeploymentWorkload)
    assert isinstance(workload_for_kind("Pod"), PodWorkload)


def test_kind_factory_rejects_unknown_kind() -> None:
    with pytest.raises(UnknownKindError, match="unknown kind"):
        workload_for_kind("Service")


def test_job_and_cronjob_templates_are_immutable() -> None:
    cron = CronJobWorkload(
        {
            "metadata": {"name": "nightly", "namespace": "default"},
            "spec": {"jobTemplate": {"spec": {"template": {"spec": {"containers": [{"name": "job"}]}}}}},
        }
    )
    assert cron.pod_spec()["containers"][0]["name"] == "job"
    assert not is_mutable(cron)
    assert not is_mutable(JobWorkload({}))
    assert not hasattr(cron, "set_pod_spec")
    assert is_mutable(DeploymentWorkload({}))


def test_set_template_annotations_creates_missing_sections() -> None:
    wl = DeploymentWorkload({"metadata": {"name": "web", "namespace": "default"}})
    wl.set_template_annotations({"a": "b"})
    assert wl.obj["spec"]["template"]["metadata"]["annotations"] == {"a": "b"}
    assert wl.template_annotations() == {"a": "b"}


def test_selector_match_labels_and_expressions() -> None:
    labels = {"app": "web", "tier": "frontend"}
    assert selector_matches_labels({}, labels)
    assert selector_matches_labels({"matchLabels": {"app": "web"}}, labels)
    assert not selector_matches_labels({"matchLabels": {"app": "db"}}, labels)
    assert selector_matches_labels(
        {"matchExpressions": [{"key": "tier", "operator": "In", "values": ["frontend", "edge"]}]}, labels
    )
    assert not selector_matches_labels(
        {"matchExpressions": [{"key": "tier", "operator": "NotIn", "values": ["frontend"]}]}, labels
    )
    assert selector_matches_labels({"matchExpressions": [{"key": "canary", "operator": "DoesNotExist"}]}, labels)
    assert not selector_matches_labels({"matchExpressions": [{"key": "app", "operator": "Bogus"}]}, labels)


def test_selector_to_string() -> None:
    sel = {
        "matchLabels": {"app": "web"},
        "matchExpressions": [
            {"key": "tier", "operator": "In", "values": ["a", "b"]},
            {"key": "canary", "operator": "DoesNotExist"},
        ],
    }
    assert selector_to_string(sel) == "app=web,tier in (a,b),!canary"


def test_workload_matches_by_name_kind_and_namespace() -> None:
    wl = DeploymentWorkload(_deployment("web"))
    assert workload_matches(wl, {"kind": "Deployment", "name": "web"}, "default")
    assert not workload_matches(wl, {"kind": "StatefulSet", "name": "web"}, "default")
    assert not workload_matches(wl, {"kind": "Deployment", "name": "api"}, "default")
    assert not workload_matches(wl, {"kind": "Deployment", "name": "web"}, "other")


def test_workload_matches_by_label_selector() -> None:
    wl = DeploymentWorkload(_deployment("web", labels={"app": "web"}))
    assert workload_matches(wl, {"kind": "Deployment", "selector": {"matchLabels": {"app": "web"}}}, "default")
    assert not workload_matches(wl, {"kind": "Deployment", "selector": {"matchLabels": {"app": "x"}}}, "default")


def test_find_matching_declarations_via_owner_dedupes_and_skips_deleting() -> None:
    pod = PodWorkload(_pod(labels={"app": "web"}))
    owner = DeploymentWorkload(_deployment("web", labels={"app": "web"}))
    by_pod = _decl("by-pod", kind="Pod", selector={"matchLabels": {"app": "web"}})
    by_owner = _decl("by-owner", kind="Deployment", workload_name="web")
    by_both = _decl("by-both", kind="", selector={"matchLabels": {"app": "web"}})
    deleting = _decl("deleting", kind="Deployment", workload_name="web", deletion_timestamp="2024-01-01T00:00:00Z")
    elsewhere = _decl("elsewhere", namespace="other", kind="Deployment", workload_name="web")

    got = find_matching_declarations([by_pod, by_owner, by_both, deleting, elsewhere], pod, [owner])
    assert [d["metadata"]["name"] for d in got] == ["by-both", "by-owner", "by-pod"]


def test_list_owners_walks_replicaset_to_deployment() -> None:
    rs = {
        "kind": "ReplicaSet",
        "metadata": {"name": "web-abc", "namespace": "default", "ownerReferences": [{"kind": "Deployment", "name": "web"}]},
    }
    workloads = FakeWorkloads([rs, _deployment("web")])
    pod = PodWorkload(_pod(owners=[("ReplicaSet", "web-abc"), ("Node", "n1")]))

    owners = list_owners(workloads, pod)

    assert [o.identity() for o in owners] == [
        ("ReplicaSet", "default", "web-abc"),
        ("Deployment", "default", "web"),
    ]


def test_list_owners_skips_missing_owner_and_raises_on_other_errors() -> None:
    workloads = FakeWorkloads()
    pod = PodWorkload(_pod(owners=[("ReplicaSet", "gone")]))
    assert list_owners(workloads, pod) == []

    workloads.get_errors[("ReplicaSet", "default", "gone")] = ApiException(status=403, reason="Forbidden")
    with pytest.raises(ApiException):
        list_owners(workloads, pod)
