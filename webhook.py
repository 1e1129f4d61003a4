# webhook.py
"""Admission webhooks.

/mutate-pod                   inject proxy sidecars into new pods
/mutate-authproxyworkload     default AuthProxyWorkload fields
/validate-authproxyworkload   reject malformed AuthProxyWorkloads and bad updates

All endpoints speak AdmissionReview admission.k8s.io/v1. Mutations are
returned as base64 RFC 6902 JSON patches.
"""
from __future__ import annotations

import base64
import copy
import json
from typing import Any, Dict, List, Optional

import jsonpatch
from flask import Flask, jsonify, request
from kubernetes.client import ApiException

import gate
from podspec.engine import Updater
from podspec.ledger import ConfigError
from workloads.kinds import PodWorkload, Workload
from workloads.matching import find_matching_declarations
from workloads.owners import list_owners

# Static envelope fields needed in AdmissionReview responses
BLANK_ADMISSIONREVIEW = {"apiVersion": "admission.k8s.io/v1", "kind": "AdmissionReview"}


class AdmissionError(Exception):
    def __init__(self, message: str, code: int = 500):
        super().__init__(message)
        self.code = code


def _patch_response(uid: Optional[str], original: dict, mutated: dict) -> Dict[str, Any]:
    ops = jsonpatch.make_patch(original, mutated).patch
    response: Dict[str, Any] = {"uid": uid, "allowed": True}
    if ops:
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(json.dumps(ops).encode("utf-8")).decode("utf-8")
    return response


def _denied(uid: Optional[str], code: int, message: str, reason: str = "") -> Dict[str, Any]:
    status: Dict[str, Any] = {"code": code, "message": message}
    if reason:
        status["reason"] = reason
    return {"uid": uid, "allowed": False, "status": status}


def find_matching_proxies(proxies, workloads, wl: Workload) -> List[dict]:
    """AuthProxyWorkloads in the workload's namespace selecting it or any owner.

    Only the workload's own namespace is searched: a declaration must never
    inject a proxy into another namespace's pods.
    """
    try:
        declarations = proxies.list(wl.namespace)
    except ApiException as e:
        raise AdmissionError(f"unable to list AuthProxyWorkloads, {e.status} {e.reason}") from e

    try:
        owners = list_owners(workloads, wl)
    except ApiException as e:
        raise AdmissionError(
            f"there is an AuthProxyWorkloadConfiguration error reconciling this workload {e.status} {e.reason}"
        ) from e

    return find_matching_declarations(declarations, wl, owners)


def mutate_pod(pod: dict, proxies, workloads, updater: Updater) -> Optional[dict]:
    """Return the pod with proxies injected, or None when nothing applies."""
    wl = PodWorkload(copy.deepcopy(pod))
    matches = find_matching_proxies(proxies, workloads, wl)
    if not matches:
        return None
    try:
        updater.configure_workload(wl, matches)
    except ConfigError as e:
        print(f"[webhook] unable to configure pod {wl.namespace}/{wl.name}: {e}")
        raise AdmissionError(
            f"there is an AuthProxyWorkloadConfiguration error reconciling this workload {e}"
        ) from e
    return wl.obj


def create_app(proxies, workloads, updater: Updater) -> Flask:
    app = Flask(__name__)

    def _review():
        body = request.get_json(force=True, silent=True)
        if not isinstance(body, dict):
            return None, None
        req = body.get("request") or {}
        return req, req.get("uid")

    @app.route("/mutate-pod", methods=["POST"])
    def mutate_pod_endpoint():
        req, uid = _review()
        if req is None:
            return jsonify({"error": "invalid AdmissionReview payload"}), 400

        pod = req.get("object") or {}
        meta = pod.setdefault("metadata", {})
        if not meta.get("namespace"):
            # pods created by controllers arrive without a namespace
            meta["namespace"] = req.get("namespace", "")
        name = meta.get("name") or meta.get("generateName") or ""
        print(f"[webhook] mutate pod op={req.get('operation')} {meta.get('namespace')}/{name}")

        try:
            mutated = mutate_pod(pod, proxies, workloads, updater)
        except AdmissionError as e:
            return jsonify({**BLANK_ADMISSIONREVIEW, "response": _denied(uid, e.code, str(e))})

        if mutated is None:
            print(f"[webhook] no changes {meta.get('namespace')}/{name}")
            return jsonify({**BLANK_ADMISSIONREVIEW, "response": {"uid": uid, "allowed": True}})

        print(f"[webhook] updated pod {meta.get('namespace')}/{name}")
        return jsonify({**BLANK_ADMISSIONREVIEW, "response": _patch_response(uid, pod, mutated)})

    @app.route("/mutate-authproxyworkload", methods=["POST"])
    def mutate_declaration_endpoint():
        req, uid = _review()
        if req is None:
            return jsonify({"error": "invalid AdmissionReview payload"}), 400
        obj = req.get("object") or {}
        defaulted = gate.default_declaration(obj)
        return jsonify({**BLANK_ADMISSIONREVIEW, "response": _patch_response(uid, obj, defaulted)})

    @app.route("/validate-authproxyworkload", methods=["POST"])
    def validate_declaration_endpoint():
        req, uid = _review()
        if req is None:
            return jsonify({"error": "invalid AdmissionReview payload"}), 400

        op = (req.get("operation") or "").upper()
        if op == "DELETE":
            return jsonify({**BLANK_ADMISSIONREVIEW, "response": {"uid": uid, "allowed": True}})

        obj = req.get("object") or {}
        if op == "UPDATE":
            res = gate.validate_update(obj, req.get("oldObject") or {})
        else:
            res = gate.validate_declaration(obj)

        meta = obj.get("metadata", {}) or {}
        if not res.ok:
            print(f"[webhook] rejected AuthProxyWorkload {meta.get('namespace')}/{meta.get('name')}: {res.errors}")
            response = _denied(uid, 403, "; ".join(res.errors), reason="Invalid")
        else:
            response = {"uid": uid, "allowed": True}
        if res.warnings:
            response["warnings"] = res.warnings
        return jsonify({**BLANK_ADMISSIONREVIEW, "response": response})

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return "ok", 200

    return app
