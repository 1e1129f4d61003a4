# app.py
from __future__ import annotations

import os
import threading
import time

from kubernetes import client, config
from werkzeug.serving import make_server

import settings
from k8s import ProxyWorkloadClient, WorkloadClient
from podspec.engine import Updater
from reconcile import RecentlyDeletedCache, Reconciler, run_declaration_watch, run_reconcile_worker
from selfheal import run_selfheal_loop
from webhook import create_app
from workqueue import WorkQueue


# ─────────────────────────────────────────────
# Webhook server
# ─────────────────────────────────────────────
def build_webhook_server(app):
    ssl_context = None
    if os.path.exists(settings.TLS_CERT_FILE) and os.path.exists(settings.TLS_KEY_FILE):
        ssl_context = (settings.TLS_CERT_FILE, settings.TLS_KEY_FILE)
    else:
        print(f"[controller] no TLS certificate at {settings.TLS_CERT_FILE}; serving plain HTTP")
    return make_server("0.0.0.0", settings.WEBHOOK_PORT, app, threaded=True, ssl_context=ssl_context)


# ─────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────
def main() -> None:
    try:
        config.load_incluster_config()
        print("[controller] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        print("[controller] using kubeconfig (local)")

    custom = client.CustomObjectsApi()
    core = client.CoreV1Api()
    proxies = ProxyWorkloadClient(custom)
    workloads = WorkloadClient(core=core)
    updater = Updater(user_agent=settings.USER_AGENT, default_image=settings.DEFAULT_PROXY_IMAGE)
    reconciler = Reconciler(
        proxies,
        workloads,
        updater,
        requeue_delay=settings.REQUEUE_DELAY_SECONDS,
        recently_deleted=RecentlyDeletedCache(ttl=settings.RECENTLY_DELETED_TTL_SECONDS),
    )

    stop_event = threading.Event()
    queue = WorkQueue()
    threads = [
        threading.Thread(
            target=run_declaration_watch,
            args=(custom, queue, settings.WATCH_NAMESPACE, stop_event),
            daemon=True,
        )
    ]
    for _ in range(max(settings.RECONCILE_WORKERS, 1)):
        threads.append(
            threading.Thread(target=run_reconcile_worker, args=(queue, reconciler, stop_event), daemon=True)
        )
    if settings.ENABLE_SELF_HEAL:
        threads.append(
            threading.Thread(
                target=run_selfheal_loop,
                args=(core, proxies, workloads, updater, settings.WATCH_NAMESPACE, stop_event),
                daemon=True,
            )
        )

    server = build_webhook_server(create_app(proxies, workloads, updater))
    threads.append(threading.Thread(target=server.serve_forever, daemon=True))

    for t in threads:
        t.start()
    print(f"[controller] webhook listening on :{settings.WEBHOOK_PORT}")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("[controller] shutting down")
        stop_event.set()
        queue.shutdown()
        server.shutdown()
        for t in threads:
            t.join(timeout=5)


if __name__ == "__main__":
    main()
