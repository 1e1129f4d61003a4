# names.py
"""Deterministic names for everything the operator injects.

Live pods and workload templates carry these names. Changing how any of them
is computed orphans existing sidecars, so the algorithm here is frozen.
"""
from __future__ import annotations

MAX_NAME_LEN = 63

CONTAINER_PREFIX = "csql-"
ANNOTATION_PREFIX = "cloudsql.cloud.google.com"

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


def fnv1a_32(data: bytes) -> int:
    h = _FNV32_OFFSET
    for b in data:
        h ^= b
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def safe_prefixed_name(prefix: str, name: str) -> str:
    """Return prefix+name, shortened with a hash suffix when over 63 chars.

    The shortened form keeps the head and the tail of the name so that two
    long names differing only at either end stay readable and distinct.
    """
    if len(name) + len(prefix) > MAX_NAME_LEN:
        hash_suffix = "-%x" % fnv1a_32(name.encode())
        truncate_len = (MAX_NAME_LEN - len(hash_suffix) - len(prefix)) // 2
        head = name[:truncate_len]
        tail = name[len(name) - truncate_len:]
        return (prefix + head + tail + hash_suffix).lower()
    return (prefix + name).lower()


def container_name(namespace: str, name: str) -> str:
    return safe_prefixed_name(CONTAINER_PREFIX, f"{namespace}-{name}")


def volume_name(name: str, connection_string: str, mount_type: str) -> str:
    conn = connection_string.lower().replace(":", "-")
    return safe_prefixed_name(CONTAINER_PREFIX, f"{name}-{mount_type}-{conn}")


def annotation_key(name: str) -> str:
    return f"{ANNOTATION_PREFIX}/{name}"


def annotation_value(generation: int, image: str, deletion_timestamp: str | None = None) -> str:
    if deletion_timestamp:
        return f"{generation}-deleted-{deletion_timestamp},{image}"
    return f"{generation},{image}"
