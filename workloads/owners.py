# workloads/owners.py
from __future__ import annotations

from typing import List, Optional, Set

from kubernetes.client import ApiException

from workloads.kinds import UnknownKindError, Workload, WorkloadId, workload_class

# Pod -> ReplicaSet -> Deployment is the deepest chain the platform builds
# itself; anything much deeper is a broken graph.
MAX_OWNER_DEPTH = 8


def list_owners(workloads, wl: Workload, depth: int = 0, seen: Optional[Set[WorkloadId]] = None) -> List[Workload]:
    """Walk ownerReferences upwards and return every resolvable owner.

    Owners of kinds we do not manage are skipped, owners that no longer exist
    are skipped, any other API error propagates. Visited owners are not
    fetched twice so a malformed cycle still terminates.
    """
    seen = seen if seen is not None else {wl.identity()}
    owners: List[Workload] = []
    if depth >= MAX_OWNER_DEPTH:
        print(f"[owners] ownership chain deeper than {MAX_OWNER_DEPTH} at {wl.kind} {wl.namespace}/{wl.name}; stopping")
        return owners

    for ref in wl.owner_references:
        kind = ref.get("kind", "")
        name = ref.get("name", "")
        try:
            cls = workload_class(kind)
        except UnknownKindError:
            continue

        ident = (cls.kind, wl.namespace, name)
        if ident in seen:
            continue
        seen.add(ident)

        try:
            owner = workloads.get(cls.kind, wl.namespace, name)
        except ApiException as e:
            if e.status == 404:
                continue
            print(f"[owners] could not get owner {kind} {wl.namespace}/{name}: {e.reason}")
            raise

        owners.append(owner)
        owners.extend(list_owners(workloads, owner, depth + 1, seen))
    return owners
