# settings.py
from __future__ import annotations

import os

# ─────────────────────────────────────────────
# Controller
# ─────────────────────────────────────────────
# Empty means every namespace.
WATCH_NAMESPACE = os.environ.get("WATCH_NAMESPACE", "")
REQUEUE_DELAY_SECONDS = float(os.environ.get("REQUEUE_DELAY_SECONDS", "30"))
RECONCILE_WORKERS = int(os.environ.get("RECONCILE_WORKERS", "1"))
RECENTLY_DELETED_TTL_SECONDS = float(os.environ.get("RECENTLY_DELETED_TTL_SECONDS", "300"))
ENABLE_SELF_HEAL = os.environ.get("ENABLE_SELF_HEAL", "1") == "1"

# ─────────────────────────────────────────────
# Proxy defaults
# ─────────────────────────────────────────────
DEFAULT_PROXY_IMAGE = os.environ.get(
    "DEFAULT_PROXY_IMAGE", "gcr.io/cloud-sql-connectors/cloud-sql-proxy:2.1.1"
)
USER_AGENT = os.environ.get("USER_AGENT", "authproxy-operator/0.1.0")

# ─────────────────────────────────────────────
# Webhook server
# ─────────────────────────────────────────────
WEBHOOK_PORT = int(os.environ.get("WEBHOOK_PORT", "9443"))
TLS_CERT_FILE = os.environ.get("TLS_CERT_FILE", "/tmp/k8s-webhook-server/serving-certs/tls.crt")
TLS_KEY_FILE = os.environ.get("TLS_KEY_FILE", "/tmp/k8s-webhook-server/serving-certs/tls.key")
