# selfheal.py
"""Delete failing pods that were admitted without their proxy sidecar.

A pod can miss the webhook (webhook down, pod created before the
AuthProxyWorkload existed). If such a pod is also crash-looping it is
deleted so its controller recreates it through the webhook. Healthy pods
are never touched.
"""
from __future__ import annotations

import threading
import time

from kubernetes import watch
from kubernetes.client import ApiException

from k8s import to_dict
from podspec.engine import Updater
from podspec.ledger import ConfigError
from webhook import AdmissionError, find_matching_proxies
from workloads.kinds import PodWorkload


def handle_pod_changed(pod: dict, proxies, workloads, updater: Updater) -> bool:
    """Returns True when the pod was deleted."""
    wl = PodWorkload(pod)
    if ((pod or {}).get("metadata", {}) or {}).get("deletionTimestamp"):
        return False

    try:
        matches = find_matching_proxies(proxies, workloads, wl)
    except AdmissionError as e:
        print(f"[selfheal] unable to find proxies for pod {wl.namespace}/{wl.name}: {e}")
        return False
    if not matches:
        return False

    try:
        updater.check_workload_containers(wl, matches)
        return False
    except ConfigError as e:
        print(f"[selfheal] pod {wl.namespace}/{wl.name} configured incorrectly, deleting: {e}")

    try:
        workloads.delete_pod(wl.namespace, wl.name)
    except ApiException as e:
        if e.status != 404:
            print(f"[selfheal] unable to delete pod {wl.namespace}/{wl.name}: {e.status} {e.reason}")
            return False
    return True


def run_selfheal_loop(core_api, proxies, workloads, updater: Updater, namespace: str,
                      stop_event: threading.Event) -> None:
    print("[selfheal] starting pod watch")
    while not stop_event.is_set():
        w = watch.Watch()
        try:
            if namespace:
                stream = w.stream(core_api.list_namespaced_pod, namespace=namespace, timeout_seconds=300)
            else:
                stream = w.stream(core_api.list_pod_for_all_namespaces, timeout_seconds=300)
            for event in stream:
                if stop_event.is_set():
                    w.stop()
                    break
                if event.get("type") not in ("ADDED", "MODIFIED"):
                    continue
                handle_pod_changed(to_dict(event["object"]), proxies, workloads, updater)
        except Exception as e:
            print(f"[selfheal] watch error: {e}")
            time.sleep(2)
    print("[selfheal] pod watch stopped")
