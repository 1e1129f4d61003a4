#!/usr/bin/env python3
"""Plan-only runner: prints what the reconciler would do for every AuthProxyWorkload.

Usage:
  WATCH_NAMESPACE=default python3 tools/plan.py

Notes:
- Loads cluster credentials the same way app.py does.
- Read-only: no finalizers, annotations or status are written.
"""

from __future__ import annotations

import sys
from pathlib import Path

from kubernetes import config

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import settings  # noqa: E402
from k8s import ProxyWorkloadClient, WorkloadClient  # noqa: E402
from podspec.engine import Updater  # noqa: E402
from reconcile import Reconciler, print_plan  # noqa: E402


def main() -> None:
    try:
        config.load_incluster_config()
        print("[plan] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        print("[plan] using kubeconfig (local)")

    proxies = ProxyWorkloadClient()
    reconciler = Reconciler(
        proxies,
        WorkloadClient(),
        Updater(settings.USER_AGENT, settings.DEFAULT_PROXY_IMAGE),
    )
    for d in proxies.list(settings.WATCH_NAMESPACE):
        print_plan(reconciler.plan(d))


if __name__ == "__main__":
    main()
