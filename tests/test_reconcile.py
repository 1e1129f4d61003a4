from __future__ import annotations

import threading

from kubernetes.client import ApiException

from fakes import FakeProxies, FakeWorkloads, _decl, _deployment
from k8s import FINALIZER
from names import annotation_key
from podspec.engine import Updater
from reconcile import (
    ERROR_BACKOFF_SECONDS,
    SHORT_REQUEUE_SECONDS,
    RecentlyDeletedCache,
    Reconciler,
    Result,
    replace_condition,
    run_reconcile_worker,
)
from workqueue import WorkQueue

NOW = "2024-01-01T00:00:00Z"
DELETED_AT = "2024-01-15T08:30:00Z"
KEY = annotation_key("web-proxy")


def _reconciler(proxies: FakeProxies, workloads: FakeWorkloads) -> Reconciler:
    return Reconciler(proxies, workloads, Updater("test-agent", "proxy:2"), requeue_delay=30.0, now=lambda: NOW)


def _ready(**kw) -> dict:
    kw.setdefault("workload_name", "web")
    return _decl("web-proxy", finalizers=[FINALIZER], **kw)


def _status(proxies: FakeProxies) -> dict:
    return proxies.items[("default", "web-proxy")]["status"]


def test_missing_finalizer_is_added_first() -> None:
    proxies = FakeProxies([_decl("web-proxy", workload_name="web")])
    workloads = FakeWorkloads([_deployment("web")])

    res = _reconciler(proxies, workloads).reconcile("default", "web-proxy")

    assert res == Result(requeue=True, after=0.0)
    assert proxies.patches == [
        ("default", "web-proxy", {"metadata": {"finalizers": [FINALIZER], "resourceVersion": "1"}})
    ]
    assert workloads.annotation_patches == []
    assert proxies.status_patches == []


def test_list_error_requeues_after_delay() -> None:
    proxies = FakeProxies([_ready()])
    workloads = FakeWorkloads()
    workloads.get_errors[("Deployment", "default", "web")] = ApiException(status=500, reason="boom")

    res = _reconciler(proxies, workloads).reconcile("default", "web-proxy")

    assert res.requeue is True
    assert res.after == 30.0
    assert isinstance(res.error, ApiException)
    assert proxies.status_patches == []


def test_no_matching_workloads_is_up_to_date() -> None:
    proxies = FakeProxies([_ready()])

    res = _reconciler(proxies, FakeWorkloads()).reconcile("default", "web-proxy")

    assert res == Result()
    cond = _status(proxies)["conditions"][0]
    assert cond["type"] == "UpToDate"
    assert cond["status"] == "True"
    assert cond["reason"] == "NoWorkloadsFound"
    assert cond["observedGeneration"] == 1
    assert cond["lastTransitionTime"] == NOW
    assert _status(proxies)["WorkloadStatus"] == []


def test_stale_workload_is_annotated_then_reported_up_to_date() -> None:
    proxies = FakeProxies([_ready()])
    workloads = FakeWorkloads([_deployment("web")])
    r = _reconciler(proxies, workloads)

    res = r.reconcile("default", "web-proxy")

    assert res == Result(requeue=True, after=SHORT_REQUEUE_SECONDS)
    assert workloads.annotation_patches == [("Deployment", "web", {KEY: "1,proxy:2"})]
    status = _status(proxies)
    assert status["conditions"][0]["status"] == "False"
    assert status["conditions"][0]["reason"] == "StartedReconcile"
    assert status["conditions"][0]["message"] == "Reconciled 1 matching workloads. 1 workloads need updates"
    ws = status["WorkloadStatus"][0]
    assert (ws["kind"], ws["version"], ws["namespace"], ws["name"]) == ("Deployment", "apps/v1", "default", "web")
    assert ws["conditions"][0]["reason"] == "WorkloadNeedsUpdate"

    res = r.reconcile("default", "web-proxy")

    assert res == Result()
    assert len(workloads.annotation_patches) == 1
    status = _status(proxies)
    assert status["conditions"][0]["reason"] == "FinishedReconcile"
    assert status["conditions"][0]["message"] == "Reconciled 1 matching workloads complete"
    assert status["WorkloadStatus"][0]["conditions"][0]["status"] == "True"


def test_new_generation_rolls_the_workload_again() -> None:
    proxies = FakeProxies([_ready(generation=2)])
    workloads = FakeWorkloads([_deployment("web", annotations={KEY: "1,proxy:2"})])

    _reconciler(proxies, workloads).reconcile("default", "web-proxy")

    assert workloads.annotation_patches == [("Deployment", "web", {KEY: "2,proxy:2"})]


def test_label_selector_only_touches_matching_workloads() -> None:
    proxies = FakeProxies([_ready(workload_name="", selector={"matchLabels": {"app": "web"}})])
    workloads = FakeWorkloads([
        _deployment("web", labels={"app": "web"}),
        _deployment("other", labels={"app": "other"}),
    ])

    _reconciler(proxies, workloads).reconcile("default", "web-proxy")

    assert [(k, n) for (k, n, _) in workloads.annotation_patches] == [("Deployment", "web")]
    assert [s["name"] for s in _status(proxies)["WorkloadStatus"]] == ["web"]


def test_annotation_error_backs_off() -> None:
    proxies = FakeProxies([_ready(workload_name="", selector={"matchLabels": {"app": "web"}})])
    workloads = FakeWorkloads([_deployment("web", labels={"app": "web"})])
    workloads.get_errors[("Deployment", "default", "web")] = ApiException(status=409, reason="Conflict")

    res = _reconciler(proxies, workloads).reconcile("default", "web-proxy")

    assert res.requeue is True
    assert res.after == ERROR_BACKOFF_SECONDS
    assert isinstance(res.error, ApiException)


def test_repeated_workload_patch_failures_keep_backing_off() -> None:
    proxies = FakeProxies([_ready()])
    workloads = FakeWorkloads([_deployment("web")])
    workloads.patch_error = ApiException(status=403, reason="Forbidden")
    r = _reconciler(proxies, workloads)

    for _ in range(3):
        res = r.reconcile("default", "web-proxy")
        assert res.requeue is True
        assert res.after == ERROR_BACKOFF_SECONDS
        assert isinstance(res.error, ApiException)
    assert workloads.annotation_patches == []


def test_finalizer_error_backs_off() -> None:
    proxies = FakeProxies([_decl("web-proxy", workload_name="web")])
    proxies.patch_error = ApiException(status=409, reason="Conflict")

    res = _reconciler(proxies, FakeWorkloads()).reconcile("default", "web-proxy")

    assert res.requeue is True
    assert res.after == ERROR_BACKOFF_SECONDS
    assert isinstance(res.error, ApiException)


def test_status_patch_error_backs_off() -> None:
    proxies = FakeProxies([_ready()])
    proxies.status_error = ApiException(status=500, reason="boom")

    res = _reconciler(proxies, FakeWorkloads()).reconcile("default", "web-proxy")

    assert res.requeue is True
    assert res.after == ERROR_BACKOFF_SECONDS
    assert isinstance(res.error, ApiException)


def test_rollout_strategy_none_never_patches_workloads() -> None:
    proxies = FakeProxies([_ready(container={"rolloutStrategy": "None"})])
    workloads = FakeWorkloads([_deployment("web")])

    res = _reconciler(proxies, workloads).reconcile("default", "web-proxy")

    assert res == Result()
    assert workloads.annotation_patches == []
    assert _status(proxies)["conditions"][0]["reason"] == "FinishedReconcile"


def test_immutable_workloads_are_never_patched() -> None:
    job = {"kind": "Job", "apiVersion": "batch/v1", "metadata": {"name": "migrate", "namespace": "default"}}
    proxies = FakeProxies([_ready(kind="Job", workload_name="migrate")])
    workloads = FakeWorkloads([job])

    res = _reconciler(proxies, workloads).reconcile("default", "web-proxy")

    assert res == Result()
    assert workloads.annotation_patches == []
    assert _status(proxies)["WorkloadStatus"][0]["kind"] == "Job"


def test_deletion_marks_workloads_and_releases_finalizer() -> None:
    proxies = FakeProxies([_ready(deletion_timestamp=DELETED_AT)])
    workloads = FakeWorkloads([_deployment("web", annotations={KEY: "1,proxy:2"})])
    r = _reconciler(proxies, workloads)

    res = r.reconcile("default", "web-proxy")

    assert res == Result()
    assert workloads.annotation_patches == [("Deployment", "web", {KEY: f"1-deleted-{DELETED_AT},proxy:2"})]
    assert proxies.patches[-1][2]["metadata"]["finalizers"] == []
    assert ("default", "web-proxy") not in proxies.items

    # the follow-up event for the vanished object is not an error
    assert r.reconcile("default", "web-proxy") == Result()


def test_missing_declaration_is_terminal() -> None:
    res = _reconciler(FakeProxies(), FakeWorkloads()).reconcile("default", "gone")
    assert res == Result()


def test_get_error_requeues_after_delay() -> None:
    proxies = FakeProxies()
    proxies.get_error = ApiException(status=500, reason="boom")

    res = _reconciler(proxies, FakeWorkloads()).reconcile("default", "web-proxy")

    assert res.requeue is True
    assert res.after == 30.0
    assert isinstance(res.error, ApiException)


def test_fetch_errors_for_a_just_deleted_declaration_are_ignored() -> None:
    t = [0.0]
    proxies = FakeProxies([_ready(deletion_timestamp=DELETED_AT)])
    r = Reconciler(
        proxies,
        FakeWorkloads(),
        Updater("test-agent", "proxy:2"),
        requeue_delay=30.0,
        recently_deleted=RecentlyDeletedCache(ttl=10.0, clock=lambda: t[0]),
        now=lambda: NOW,
    )
    assert r.reconcile("default", "web-proxy") == Result()

    proxies.get_error = ApiException(status=500, reason="boom")
    t[0] = 5.0
    assert r.reconcile("default", "web-proxy") == Result()

    t[0] = 11.0
    res = r.reconcile("default", "web-proxy")
    assert res.requeue is True
    assert res.after == 30.0


def test_recently_deleted_cache_expires() -> None:
    t = [100.0]
    cache = RecentlyDeletedCache(ttl=10.0, clock=lambda: t[0])
    cache.set(("default", "a"), True)
    assert cache.get(("default", "a")) is True
    assert cache.get(("default", "b")) is False

    t[0] = 111.0
    assert cache.get(("default", "a")) is False

    cache.set(("default", "b"), True)
    cache.set(("default", "b"), False)
    assert cache.get(("default", "b")) is False


def test_replace_condition_keeps_transition_time_when_status_unchanged() -> None:
    old = [
        {"type": "UpToDate", "status": "True", "reason": "A", "lastTransitionTime": "t0"},
        {"type": "Other", "status": "True"},
    ]

    same = replace_condition(old, {"type": "UpToDate", "status": "True", "reason": "B"}, "t1")
    assert same[0] == {"type": "UpToDate", "status": "True", "reason": "B", "lastTransitionTime": "t0"}
    assert same[1] == old[1]

    flipped = replace_condition(old, {"type": "UpToDate", "status": "False", "reason": "C"}, "t1")
    assert flipped[0]["lastTransitionTime"] == "t1"

    added = replace_condition([], {"type": "UpToDate", "status": "True"}, "t2")
    assert added == [{"type": "UpToDate", "status": "True", "lastTransitionTime": "t2"}]


def test_plan_reports_state_without_writing() -> None:
    workloads = FakeWorkloads([_deployment("web")])
    r = _reconciler(FakeProxies(), workloads)

    assert r.plan(_decl("web-proxy", workload_name="web"))["state"] == "needs-finalizer"

    plan = r.plan(_ready())
    assert plan["state"] == "needs-update"
    assert plan["workloads"] == ["Deployment/web"]
    assert plan["update"] == ["Deployment/web"]

    assert r.plan(_ready(workload_name="missing"))["state"] == "no-workloads"
    assert r.plan(_ready(container={"rolloutStrategy": "None"}))["state"] == "up-to-date"
    assert r.plan(_ready(deletion_timestamp=DELETED_AT))["state"] == "delete"
    assert workloads.annotation_patches == []


def test_worker_requeues_according_to_result() -> None:
    stop = threading.Event()
    seen = []

    class _Once:
        requeue_delay = 30.0

        def reconcile(self, namespace: str, name: str) -> Result:
            seen.append((namespace, name))
            stop.set()
            return Result(requeue=True, after=0.0)

    queue = WorkQueue()
    queue.add(("default", "web-proxy"))

    run_reconcile_worker(queue, _Once(), stop)

    assert seen == [("default", "web-proxy")]
    assert len(queue) == 1


def test_worker_delays_requeue_after_an_error() -> None:
    stop = threading.Event()
    t = [0.0]

    class _Failing:
        requeue_delay = 30.0

        def reconcile(self, namespace: str, name: str) -> Result:
            stop.set()
            return Result(requeue=True, after=ERROR_BACKOFF_SECONDS, error=ApiException(status=500))

    queue = WorkQueue(clock=lambda: t[0])
    queue.add(("default", "web-proxy"))

    run_reconcile_worker(queue, _Failing(), stop)

    assert len(queue) == 0
    t[0] = ERROR_BACKOFF_SECONDS
    assert queue.get(timeout=0) == ("default", "web-proxy")
