"""Decide whether a pod belongs to a target workload.

Owner references form a chain (Deployment <- ReplicaSet <- Pod). The chain is
resolved through a flat mapping keyed by owner UID rather than an object
graph; pods owned by a known operator's custom resource are matched by the
operator's labels instead.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from models import WorkloadRef

STANDARD_OWNER_KINDS = frozenset({"ReplicaSet", "StatefulSet", "DaemonSet", "Job", "Node"})

# Labels checked, in order, when deriving a display name for a pod
WORKLOAD_NAME_LABELS = (
    "app.kubernetes.io/name",
    "app.kubernetes.io/instance",
    "app",
    "cnpg.io/cluster",
)

# Owner chains deeper than this are treated as unresolvable
_MAX_CHAIN_DEPTH = 8


@dataclass
class OwnerRecord:
    """An intermediate owner (ReplicaSet, Job) and the controller that owns it."""
    kind: str
    name: str
    owner_kind: Optional[str] = None
    owner_name: Optional[str] = None
    owner_uid: Optional[str] = None


def operator_workload_name(labels: Dict[str, str]) -> Optional[Tuple[str, str]]:
    """Return (operator, workload name) for pods managed by a recognised operator.

    Only CloudNativePG, Strimzi and RabbitMQ are recognised; other operators
    return None rather than a guess.
    """
    labels = labels or {}
    if labels.get("cnpg.io/cluster"):
        return "CNPG", labels["cnpg.io/cluster"]
    if labels.get("strimzi.io/cluster"):
        return "Strimzi", labels["strimzi.io/cluster"]
    if "rabbitmq.com/cluster-operator" in labels and labels.get("app.kubernetes.io/name"):
        return "RabbitMQ", labels["app.kubernetes.io/name"]
    return None


def workload_name_for_pod(pod_name: str, labels: Dict[str, str]) -> str:
    """Best-effort workload name for display purposes."""
    labels = labels or {}
    for key in WORKLOAD_NAME_LABELS:
        if labels.get(key):
            return labels[key]
    parts = pod_name.split("-")
    if len(parts) > 2:
        return "-".join(parts[:-2])
    return pod_name


def owners_from_objects(objects: Any) -> Dict[str, OwnerRecord]:
    """Build the UID -> OwnerRecord map from ReplicaSet/Job dicts (camelCase API form)."""
    owners: Dict[str, OwnerRecord] = {}
    for obj in objects or []:
        meta = obj.get("metadata") or {}
        uid = meta.get("uid")
        if not uid:
            continue
        record = OwnerRecord(kind=obj.get("kind") or "", name=meta.get("name") or "")
        controller = _controller_ref(meta.get("ownerReferences") or [])
        if controller:
            record.owner_kind = controller.get("kind")
            record.owner_name = controller.get("name")
            record.owner_uid = controller.get("uid")
        owners[uid] = record
    return owners


def _controller_ref(refs: Any) -> Optional[Dict[str, Any]]:
    if not refs:
        return None
    for ref in refs:
        if ref.get("controller"):
            return ref
    return refs[0]


def _strip_template_hash(replicaset_name: str) -> str:
    # "api-7d9f8c6b5" -> "api"
    if "-" in replicaset_name:
        return replicaset_name.rsplit("-", 1)[0]
    return replicaset_name


def resolve_top_owner(ref: Dict[str, Any], owners: Dict[str, OwnerRecord]) -> Tuple[str, str]:
    """Follow the owner chain from `ref` to its topmost known controller."""
    kind, name, uid = ref.get("kind") or "", ref.get("name") or "", ref.get("uid")
    for _ in range(_MAX_CHAIN_DEPTH):
        record = owners.get(uid) if uid else None
        if record is None:
            if kind == "ReplicaSet":
                # ReplicaSet not listed yet; Deployments name theirs NAME-HASH
                return "Deployment", _strip_template_hash(name)
            return kind, name
        if not record.owner_kind:
            return kind, name
        kind, name, uid = record.owner_kind, record.owner_name or "", record.owner_uid
    return kind, name


def pod_belongs_to(pod: Dict[str, Any], target: WorkloadRef, owners: Dict[str, OwnerRecord]) -> bool:
    meta = pod.get("metadata") or {}
    pod_name = meta.get("name") or ""
    if meta.get("namespace") and meta["namespace"] != target.namespace:
        return False

    if target.kind == "Pod":
        return pod_name == target.name

    refs = meta.get("ownerReferences") or []
    if not refs:
        return pod_name == target.name

    first = _controller_ref(refs)
    if first.get("kind") in STANDARD_OWNER_KINDS:
        kind, name = resolve_top_owner(first, owners)
        return kind == target.kind and name == target.name

    operator = operator_workload_name(meta.get("labels") or {})
    if operator is None:
        return False
    return operator[1] == target.name
