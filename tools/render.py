#!/usr/bin/env python3
"""tools/render.py

Render the pod the admission webhook would produce, as YAML.

Why this exists:
- Sidecar ports, env vars and volumes are computed at admission time.
- Sometimes you want to see the result before applying a declaration.

Usage examples:
  python3 tools/render.py authproxyworkload.yaml pod.yaml > /tmp/pod.yaml

  # Several declarations in one multi-document file:
  python3 tools/render.py docs/proxies.yaml pod.yaml | head

Notes:
- This does NOT talk to a cluster; owners are not resolved, so declarations
  must select the pod itself.
- The declaration and pod must carry metadata.namespace.
"""

from __future__ import annotations

import os
import sys

import yaml

# Allow executing from tools/ without installing as a package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import settings  # noqa: E402
from podspec.engine import Updater  # noqa: E402
from podspec.ledger import ConfigError  # noqa: E402
from workloads.kinds import PodWorkload  # noqa: E402
from workloads.matching import find_matching_declarations  # noqa: E402


def render(declarations: list[dict], pod: dict) -> dict:
    wl = PodWorkload(pod)
    matches = find_matching_declarations(declarations, wl)
    if matches:
        Updater(settings.USER_AGENT, settings.DEFAULT_PROXY_IMAGE).configure_workload(wl, matches)
    return wl.obj


def main(argv: list[str]) -> int:
    if len(argv) != 3:
        sys.stderr.write("usage: render.py <authproxyworkloads.yaml> <pod.yaml>\n")
        return 2

    with open(argv[1]) as f:
        declarations = [d for d in yaml.safe_load_all(f) if d]
    with open(argv[2]) as f:
        pod = yaml.safe_load(f)

    try:
        out = render(declarations, pod)
    except ConfigError as e:
        sys.stderr.write(f"{e}\n")
        return 1

    try:
        yaml.safe_dump(out, sys.stdout, sort_keys=False)
    except BrokenPipeError:
        # Common when piping to `head`; exit cleanly
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
