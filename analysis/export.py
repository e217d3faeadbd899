"""
Export renderers - patch, manifest, diff and json views of a recommendation
Nothing here touches the cluster; manifest and diff take the live object as input.
"""
import copy
import difflib
import json
from typing import Any, Dict, List, Optional

import yaml

from errors import InsufficientError, InvalidInputError
from metrics.workloads import API_VERSIONS, pod_spec_of, resources_block
from models import AlignmentRecommendation, format_time
from normalize.durations import format_duration

FORMATS = ("patch", "manifest", "diff", "json")

_VOLATILE_METADATA = ("resourceVersion", "generation", "managedFields", "uid",
                      "creationTimestamp", "selfLink")
_LAST_APPLIED = "kubectl.kubernetes.io/last-applied-configuration"


def _dump(doc: Any) -> str:
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def evidence_comments(rec: AlignmentRecommendation) -> str:
    w = rec.workload
    lines = [
        "# kubenow alignment patch",
        f"# Generated: {format_time(rec.generated_at)}",
        f"# Workload: {w.namespace}/{w.kind.lower()}/{w.name}",
        f"# Confidence: {rec.confidence.value}  Safety: {rec.safety.value}",
    ]
    if rec.evidence is not None:
        lines.append(f"# Latch: {format_duration(rec.evidence.duration)} ({rec.evidence.sample_count} samples)")
    if rec.hpa is not None:
        lines.append(f'# WARNING: HPA "{rec.hpa.name}" targets this workload')
    lines.append("#")
    lines.append("# Apply with: kubectl apply --server-side -f <file>")
    return "\n".join(lines) + "\n"


def _require_containers(rec: AlignmentRecommendation) -> None:
    if not rec.containers:
        detail = rec.warnings[-1] if rec.warnings else "no containers recommended"
        raise InsufficientError(f"nothing to export for {rec.workload}: {detail}")


def patch_document(rec: AlignmentRecommendation) -> Dict[str, Any]:
    w = rec.workload
    return {
        "apiVersion": API_VERSIONS.get(w.kind, "apps/v1"),
        "kind": w.kind,
        "metadata": {"name": w.name, "namespace": w.namespace},
        "spec": {"template": {"spec": {"containers": [
            {"name": c.name, "resources": resources_block(c.recommended)} for c in rec.containers
        ]}}},
    }


def export_patch(rec: AlignmentRecommendation) -> str:
    _require_containers(rec)
    return evidence_comments(rec) + _dump(patch_document(rec))


def strip_volatile_fields(obj: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(obj)
    meta = out.get("metadata") or {}
    for key in _VOLATILE_METADATA:
        meta.pop(key, None)
    annotations = meta.get("annotations")
    if annotations:
        annotations.pop(_LAST_APPLIED, None)
        if not annotations:
            meta.pop("annotations")
    out.pop("status", None)
    return out


def recommended_manifest(rec: AlignmentRecommendation, current_obj: Dict[str, Any]) -> Dict[str, Any]:
    """The live object with volatile fields removed and recommended resources set."""
    obj = strip_volatile_fields(current_obj)
    containers = pod_spec_of(obj).get("containers")
    if not containers:
        raise InvalidInputError(f"{rec.workload} has no pod template containers")
    by_name = {c.name: c for c in rec.containers}
    for container in containers:
        alignment = by_name.get(container.get("name"))
        if alignment is not None:
            container["resources"] = resources_block(alignment.recommended)
    return obj


def export_manifest(rec: AlignmentRecommendation, current_obj: Optional[Dict[str, Any]]) -> str:
    _require_containers(rec)
    if not current_obj:
        raise InvalidInputError("manifest format requires the current workload object")
    return evidence_comments(rec) + _dump(recommended_manifest(rec, current_obj))


def export_diff(rec: AlignmentRecommendation, current_obj: Optional[Dict[str, Any]] = None) -> str:
    """Unified diff between the current and recommended manifests.

    Without the live object the diff covers only the container resources.
    """
    _require_containers(rec)
    if current_obj:
        before = _dump(strip_volatile_fields(current_obj))
        after = _dump(recommended_manifest(rec, current_obj))
    else:
        before = _dump(_resources_view(rec, current=True))
        after = _dump(_resources_view(rec, current=False))

    name = f"{rec.workload.kind}/{rec.workload.name}"
    header = "".join(f"# {w}\n" for w in rec.warnings)
    body = "".join(difflib.unified_diff(
        before.splitlines(keepends=True), after.splitlines(keepends=True),
        fromfile=f"{name} (current)", tofile=f"{name} (recommended)",
    ))
    return header + body


def _resources_view(rec: AlignmentRecommendation, current: bool) -> Dict[str, List[Dict[str, Any]]]:
    return {"containers": [
        {"name": c.name, "resources": resources_block(c.current if current else c.recommended)}
        for c in rec.containers
    ]}


def export_json(rec: AlignmentRecommendation) -> str:
    return json.dumps(rec.to_dict(), indent=2) + "\n"


def render(rec: AlignmentRecommendation, fmt: str, current_obj: Optional[Dict[str, Any]] = None) -> str:
    if fmt == "patch":
        return export_patch(rec)
    if fmt == "manifest":
        return export_manifest(rec, current_obj)
    if fmt == "diff":
        return export_diff(rec, current_obj)
    if fmt == "json":
        return export_json(rec)
    raise InvalidInputError(f"unsupported export format {fmt!r} (supported: {', '.join(FORMATS)})")
