# reconcile.py
"""AuthProxyWorkload reconciler.

One pass over one declaration is a small state machine:

  | state | finalizer | list err | workloads | out of date | outcome                         |
  |-------|-----------|----------|-----------|-------------|---------------------------------|
  | 1.1   | absent    | *        | *         | *           | add finalizer, requeue now      |
  | 1.2   | present   | error    | *         | *           | requeue after delay             |
  | 2.1   | present   | nil      | 0         | *           | UpToDate=True NoWorkloadsFound  |
  | 3.1   | present   | nil      | > 0       | > 0, err    | requeue after error backoff     |
  | 3.2   | present   | nil      | > 0       | > 0         | UpToDate=False StartedReconcile |
  | 3.3   | present   | nil      | > 0       | 0           | UpToDate=True FinishedReconcile |

Out-of-date workloads are nudged by patching the rollout annotation on their
pod template; the owning controller then replaces the pods and the admission
webhook injects the current configuration into the new ones.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from kubernetes import watch
from kubernetes.client import ApiException

import declaration as decl
from k8s import FINALIZER, ProxyWorkloadClient, WorkloadClient, ensure_finalizer, is_not_found, remove_finalizer
from podspec.engine import Updater
from workloads.kinds import Workload, is_mutable, parse_kind
from workloads.matching import selector_to_string, workload_matches
from workqueue import ShutDown, WorkQueue

SHORT_REQUEUE_SECONDS = 1.0
# fixed retry delay after a failed patch or finalizer call
ERROR_BACKOFF_SECONDS = 5.0

Key = Tuple[str, str]  # (namespace, name)


@dataclass
class Result:
    requeue: bool = False
    after: float = 0.0
    error: Optional[Exception] = None


class ReconcilePlan(dict):
    """A small, json-serializable planning object."""


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ─────────────────────────────────────────────
# Recently deleted cache
# ─────────────────────────────────────────────
class ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0

    def acquire_read(self) -> None:
        with self._cond:
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        self._cond.acquire()
        while self._readers > 0:
            self._cond.wait()

    def release_write(self) -> None:
        self._cond.release()


class RecentlyDeletedCache:
    """Remembers declarations whose deletion was just processed.

    A Get that fails right after we removed the finalizer is expected, not an
    error worth retrying.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._lock = ReadWriteLock()
        self._values: Dict[Key, Tuple[bool, float]] = {}

    def set(self, key: Key, deleted: bool) -> None:
        self._lock.acquire_write()
        try:
            if deleted:
                self._values[key] = (True, self._clock())
            else:
                self._values.pop(key, None)
            now = self._clock()
            for k in [k for k, (_, at) in self._values.items() if now - at > self._ttl]:
                del self._values[k]
        finally:
            self._lock.release_write()

    def get(self, key: Key) -> bool:
        self._lock.acquire_read()
        try:
            deleted, at = self._values.get(key, (False, 0.0))
            return deleted and self._clock() - at <= self._ttl
        finally:
            self._lock.release_read()


# ─────────────────────────────────────────────
# Conditions / status helpers
# ─────────────────────────────────────────────
def replace_condition(conds: List[dict], new: dict, now: str) -> List[dict]:
    """Replace the condition of the same type; keep lastTransitionTime if status is unchanged."""
    out: List[dict] = []
    replaced = False
    for c in conds or []:
        if c.get("type") != new["type"]:
            out.append(c)
            continue
        merged = dict(new)
        if c.get("status") == new.get("status") and c.get("lastTransitionTime"):
            merged["lastTransitionTime"] = c["lastTransitionTime"]
        else:
            merged["lastTransitionTime"] = now
        out.append(merged)
        replaced = True
    if not replaced:
        merged = dict(new)
        merged["lastTransitionTime"] = now
        out.append(merged)
    return out


def _status_key(s: dict) -> Tuple[str, str, str, str]:
    return (s.get("kind", ""), s.get("version", ""), s.get("namespace", ""), s.get("name", ""))


def replace_workload_status(statuses: List[dict], updated: dict) -> List[dict]:
    out = [s for s in statuses or [] if _status_key(s) != _status_key(updated)]
    out.append(updated)
    return out


# ─────────────────────────────────────────────
# Reconciler
# ─────────────────────────────────────────────
class Reconciler:
    def __init__(
        self,
        proxies: ProxyWorkloadClient,
        workloads: WorkloadClient,
        updater: Updater,
        requeue_delay: float = 30.0,
        recently_deleted: Optional[RecentlyDeletedCache] = None,
        now: Callable[[], str] = utc_now,
    ):
        self.proxies = proxies
        self.workloads = workloads
        self.updater = updater
        self.requeue_delay = requeue_delay
        self.recently_deleted = recently_deleted or RecentlyDeletedCache(ttl=300.0)
        self.now = now

    def _requeue_with_delay(self, err: Optional[Exception] = None) -> Result:
        return Result(requeue=True, after=self.requeue_delay, error=err)

    @staticmethod
    def _requeue_now() -> Result:
        return Result(requeue=True, after=0.0)

    @staticmethod
    def _requeue_after_error(err: Exception) -> Result:
        return Result(requeue=True, after=ERROR_BACKOFF_SECONDS, error=err)

    def reconcile(self, namespace: str, name: str) -> Result:
        key = (namespace, name)
        print(f"[reconcile] start {namespace}/{name}")
        try:
            d = self.proxies.get(namespace, name)
        except ApiException as e:
            if self.recently_deleted.get(key):
                return Result()
            if is_not_found(e):
                print(f"[reconcile] {namespace}/{name} not found; nothing to do")
                return Result()
            # probably the API not having caught up yet
            print(f"[reconcile] unable to fetch {namespace}/{name}: {e.status} {e.reason}")
            return self._requeue_with_delay(e)

        if decl.deletion_timestamp(d):
            print(f"[reconcile] delete {namespace}/{name} gen={decl.generation(d)}")
            self.recently_deleted.set(key, True)
            return self.do_delete(d)

        print(f"[reconcile] add/update {namespace}/{name} gen={decl.generation(d)}")
        self.recently_deleted.set(key, False)
        return self.do_create_update(d)

    # ── deletion ─────────────────────────────
    def do_delete(self, d: dict) -> Result:
        """Mark matching workloads for proxy removal, then release the finalizer."""
        try:
            matching = self.list_workloads(d)
            self.update_workload_annotations(d, matching)
        except ApiException as e:
            print(f"[reconcile] delete of {decl.decl_key(d)} could not update workloads: {e.status} {e.reason}")
            return self._requeue_after_error(e)

        try:
            remove_finalizer(self.proxies, d)
        except ApiException as e:
            print(f"[reconcile] unable to remove finalizer from {decl.decl_key(d)}: {e.status} {e.reason}")
            return self._requeue_after_error(e)
        return Result()

    # ── create / update ──────────────────────
    def do_create_update(self, d: dict) -> Result:
        if FINALIZER not in decl.finalizers(d):
            # 1.1
            try:
                ensure_finalizer(self.proxies, d)
            except ApiException as e:
                print(f"[reconcile] error adding finalizer to {decl.decl_key(d)}; will requeue: {e.reason}")
                return self._requeue_after_error(e)
            print(f"[reconcile] added finalizer to {decl.decl_key(d)}; requeue")
            return self._requeue_now()

        try:
            matching = self.list_workloads(d)
        except (ApiException, ValueError) as e:
            # 1.2
            print(f"[reconcile] unable to list workloads for {decl.decl_key(d)}: {e}")
            return self._requeue_with_delay(e)

        statuses = self.workload_statuses(d, matching)

        if not matching:
            # 2.1
            return self.reconcile_result(
                d, statuses, decl.REASON_NO_WORKLOADS_FOUND, "No workload updates needed", True
            )

        try:
            out_of_date = self.update_workload_annotations(d, matching)
        except ApiException as e:
            # 3.1
            print(
                f"[reconcile] reconciled {len(matching)} matching workloads; error updating "
                f"workload annotations for {decl.decl_key(d)}: {e.status} {e.reason}"
            )
            return self._requeue_after_error(e)

        if out_of_date > 0:
            # 3.2
            msg = f"Reconciled {len(matching)} matching workloads. {out_of_date} workloads need updates"
            return self.reconcile_result(d, statuses, decl.REASON_STARTED_RECONCILE, msg, False)

        # 3.3
        msg = f"Reconciled {len(matching)} matching workloads complete"
        return self.reconcile_result(d, statuses, decl.REASON_FINISHED_RECONCILE, msg, True)

    def reconcile_result(self, d: dict, statuses: List[dict], reason: str, message: str, up_to_date: bool) -> Result:
        now = self.now()
        conds = replace_condition(
            decl.conditions(d),
            {
                "type": decl.CONDITION_UP_TO_DATE,
                "status": "True" if up_to_date else "False",
                "observedGeneration": decl.generation(d),
                "reason": reason,
                "message": message,
            },
            now,
        )
        result = Result() if up_to_date else Result(requeue=True, after=SHORT_REQUEUE_SECONDS)
        try:
            self.proxies.patch_status(
                decl.decl_namespace(d),
                decl.decl_name(d),
                {"conditions": conds, "WorkloadStatus": statuses},
            )
        except ApiException as e:
            print(f"[reconcile] unable to patch status of {decl.decl_key(d)}: {e.status} {e.reason}")
            result.requeue = True
            result.after = max(result.after, ERROR_BACKOFF_SECONDS)
            result.error = e
        print(f"[reconcile] {decl.decl_key(d)} {reason}: {message}")
        return result

    # ── workloads ────────────────────────────
    def list_workloads(self, d: dict) -> List[Workload]:
        ws = decl.workload_selector(d)
        ns = decl.decl_namespace(d)
        kind = parse_kind(ws.get("kind", ""))
        if ws.get("name"):
            try:
                found = [self.workloads.get(kind, ns, ws["name"])]
            except ApiException as e:
                if e.status == 404:
                    return []
                raise
        else:
            found = self.workloads.list(kind, ns, selector_to_string(ws.get("selector")))
        # list calls already filter; this also drops anything a label
        # selector string could not express
        return [wl for wl in found if workload_matches(wl, ws, ns)]

    def needs_annotation_update(self, wl: Workload, d: dict) -> bool:
        if not is_mutable(wl):
            return False
        if decl.is_rollout_strategy_none(d):
            return False
        k, v = self.updater.pod_annotation(d)
        return wl.template_annotations().get(k) != v

    def workload_statuses(self, d: dict, matching: List[Workload]) -> List[dict]:
        prev = ((d.get("status", {}) or {}).get("WorkloadStatus")) or []
        statuses: List[dict] = []
        now = self.now()
        for wl in matching:
            entry = {
                "kind": wl.kind,
                "version": wl.obj.get("apiVersion", wl.api_version),
                "namespace": wl.namespace,
                "name": wl.name,
            }
            old = next((s for s in prev if _status_key(s) == _status_key(entry)), {})
            if self.needs_annotation_update(wl, d):
                cond = {
                    "type": decl.CONDITION_WORKLOAD_UP_TO_DATE,
                    "status": "False",
                    "observedGeneration": decl.generation(d),
                    "reason": decl.REASON_WORKLOAD_NEEDS_UPDATE,
                    "message": "Workload pod template needs the current proxy configuration",
                }
            else:
                cond = {
                    "type": decl.CONDITION_WORKLOAD_UP_TO_DATE,
                    "status": "True",
                    "observedGeneration": decl.generation(d),
                    "reason": decl.REASON_UP_TO_DATE,
                    "message": "No update needed for this workload",
                }
            entry["conditions"] = replace_condition(old.get("conditions") or [], cond, now)
            statuses = replace_workload_status(statuses, entry)
        return statuses

    def update_workload_annotations(self, d: dict, matching: List[Workload]) -> int:
        """Patch the rollout annotation on every stale workload; returns how many were stale."""
        out_of_date = 0
        k, v = self.updater.pod_annotation(d)
        for wl in matching:
            if not self.needs_annotation_update(wl, d):
                continue
            out_of_date += 1
            # re-read so a concurrent writer's template change is not lost
            try:
                fresh = self.workloads.get(wl.kind, wl.namespace, wl.name)
            except ApiException as e:
                if e.status == 404:
                    continue
                raise
            if not self.needs_annotation_update(fresh, d):
                continue
            self.workloads.patch_template_annotations(fresh, {k: v})
            print(f"[reconcile] annotated {wl.kind} {wl.namespace}/{wl.name} {k}={v}")
        return out_of_date

    # ── dry run ──────────────────────────────
    def plan(self, d: dict) -> ReconcilePlan:
        """Compute the state this declaration is in without writing anything."""
        if decl.deletion_timestamp(d):
            state = "delete"
        elif FINALIZER not in decl.finalizers(d):
            state = "needs-finalizer"
        else:
            state = ""
        try:
            matching = self.list_workloads(d)
        except (ApiException, ValueError) as e:
            return ReconcilePlan(declaration=decl.decl_key(d), state="list-error", error=str(e),
                                 workloads=[], update=[])
        stale = sorted(f"{wl.kind}/{wl.name}" for wl in matching if self.needs_annotation_update(wl, d))
        if not state:
            if not matching:
                state = "no-workloads"
            elif stale:
                state = "needs-update"
            else:
                state = "up-to-date"
        return ReconcilePlan(
            declaration=decl.decl_key(d),
            state=state,
            workloads=sorted(f"{wl.kind}/{wl.name}" for wl in matching),
            update=stale,
        )


def print_plan(plan: ReconcilePlan) -> None:
    workloads = plan.get("workloads", []) or []
    update = plan.get("update", []) or []
    print(f"[plan] {plan.get('declaration')} state={plan.get('state')} workloads={len(workloads)} update={len(update)}")
    if plan.get("error"):
        print(f"[plan] error: {plan['error']}")
    for name in update:
        print(f"  - {name}")


# ─────────────────────────────────────────────
# Loops
# ─────────────────────────────────────────────
def run_reconcile_worker(queue: WorkQueue, reconciler: Reconciler, stop_event: threading.Event) -> None:
    while not stop_event.is_set():
        try:
            key = queue.get(timeout=1.0)
        except TimeoutError:
            continue
        except ShutDown:
            break
        try:
            result = reconciler.reconcile(*key)
        except Exception as e:
            print(f"[reconcile] error reconciling {key[0]}/{key[1]}: {e}")
            result = Result(requeue=True, after=reconciler.requeue_delay, error=e)
        finally:
            queue.done(key)
        if result.requeue:
            queue.add_after(key, result.after)
    print("[reconcile] worker stopped")


def run_declaration_watch(
    api, queue: WorkQueue, namespace: str, stop_event: threading.Event, resync_seconds: int = 300
) -> None:
    """Feed (namespace, name) keys for every AuthProxyWorkload event into the queue.

    The stream is restarted every resync_seconds; the initial list of each
    restart re-queues every declaration, which also picks up workloads
    created since the last pass.
    """
    print("[reconcile] starting declaration watch")
    while not stop_event.is_set():
        w = watch.Watch()
        try:
            if namespace:
                stream = w.stream(
                    api.list_namespaced_custom_object,
                    group=decl.GROUP,
                    version=decl.VERSION,
                    namespace=namespace,
                    plural=decl.PLURAL,
                    timeout_seconds=resync_seconds,
                )
            else:
                stream = w.stream(
                    api.list_cluster_custom_object,
                    group=decl.GROUP,
                    version=decl.VERSION,
                    plural=decl.PLURAL,
                    timeout_seconds=resync_seconds,
                )
            for event in stream:
                if stop_event.is_set():
                    w.stop()
                    break
                obj = event.get("object") or {}
                queue.add((decl.decl_namespace(obj), decl.decl_name(obj)))
        except Exception as e:
            print(f"[reconcile] watch error: {e}")
            time.sleep(2)
    print("[reconcile] declaration watch stopped")
