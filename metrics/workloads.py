"""Read workload objects and patch their pod-template resources."""
import logging
from typing import Any, Dict, List, Optional

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from config import FIELD_MANAGER
from errors import ConflictError, FatalError, InvalidInputError, PolicyError, TransientError
from metrics.kube_client import map_api_exception
from models import ContainerResources, WorkloadRef
from normalize.quantity import format_cpu, format_memory, parse_cpu, parse_memory

logger = logging.getLogger(__name__)

API_VERSIONS = {
    "Deployment": "apps/v1",
    "StatefulSet": "apps/v1",
    "DaemonSet": "apps/v1",
    "Pod": "v1",
}

_SNAKE_KIND = {
    "Deployment": "deployment",
    "StatefulSet": "stateful_set",
    "DaemonSet": "daemon_set",
}


def pod_spec_of(obj: Dict[str, Any]) -> Dict[str, Any]:
    """The pod spec of a workload dict: spec.template.spec, or spec for a Pod."""
    spec = obj.get("spec") or {}
    if obj.get("kind") == "Pod":
        return spec
    return (spec.get("template") or {}).get("spec") or {}


def container_resources(obj: Dict[str, Any]) -> List[ContainerResources]:
    """Current requests/limits per container, in cores and bytes."""
    out: List[ContainerResources] = []
    for c in pod_spec_of(obj).get("containers") or []:
        res = c.get("resources") or {}
        requests = res.get("requests") or {}
        limits = res.get("limits") or {}
        out.append(ContainerResources(
            name=c.get("name") or "",
            cpu_request=parse_cpu(requests.get("cpu")),
            cpu_limit=parse_cpu(limits.get("cpu")),
            memory_request=parse_memory(requests.get("memory")),
            memory_limit=parse_memory(limits.get("memory")),
        ))
    return out


def resources_block(res: ContainerResources) -> Dict[str, Dict[str, str]]:
    """Kubernetes `resources` stanza for the non-zero fields of `res`."""
    requests: Dict[str, str] = {}
    limits: Dict[str, str] = {}
    if res.cpu_request:
        requests["cpu"] = format_cpu(res.cpu_request)
    if res.memory_request:
        requests["memory"] = format_memory(res.memory_request)
    if res.cpu_limit:
        limits["cpu"] = format_cpu(res.cpu_limit)
    if res.memory_limit:
        limits["memory"] = format_memory(res.memory_limit)
    block: Dict[str, Dict[str, str]] = {}
    if requests:
        block["requests"] = requests
    if limits:
        block["limits"] = limits
    return block


def build_resources_patch(recommended: List[ContainerResources],
                          resource_version: Optional[str] = None) -> Dict[str, Any]:
    """Strategic-merge patch touching only spec.template.spec.containers[*].resources."""
    body: Dict[str, Any] = {
        "spec": {"template": {"spec": {"containers": [
            {"name": r.name, "resources": resources_block(r)} for r in recommended
        ]}}}
    }
    if resource_version:
        body["metadata"] = {"resourceVersion": resource_version}
    return body


class WorkloadClient:
    def __init__(self, api_client: Optional[client.ApiClient] = None,
                 core_api=None, apps_api=None, field_manager: str = FIELD_MANAGER):
        self.api_client = api_client or client.ApiClient()
        self.core = core_api or client.CoreV1Api(self.api_client)
        self.apps = apps_api or client.AppsV1Api(self.api_client)
        self.field_manager = field_manager

    def get(self, ref: WorkloadRef) -> Dict[str, Any]:
        """The live object as a camelCase dict. A missing workload is InvalidInput."""
        try:
            if ref.kind == "Pod":
                obj = self.core.read_namespaced_pod(ref.name, ref.namespace)
            else:
                reader = getattr(self.apps, f"read_namespaced_{_SNAKE_KIND[ref.kind]}")
                obj = reader(ref.name, ref.namespace)
        except ApiException as e:
            if e.status == 404:
                raise InvalidInputError(f"{ref} not found in namespace {ref.namespace}")
            raise map_api_exception(e, f"reading {ref}")
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientError(f"reading {ref} failed: {e}")
        data = self.api_client.sanitize_for_serialization(obj) or {}
        data.setdefault("apiVersion", API_VERSIONS[ref.kind])
        data.setdefault("kind", ref.kind)
        return data

    def patch_resources(self, ref: WorkloadRef, recommended: List[ContainerResources],
                        resource_version: Optional[str]) -> Dict[str, Any]:
        """Patch container resources guarded by resourceVersion.

        Raises ConflictError when the object changed since `resource_version`.
        """
        if ref.kind == "Pod":
            raise PolicyError("pod resources are immutable; target the owning controller")
        body = build_resources_patch(recommended, resource_version)
        patcher = getattr(self.apps, f"patch_namespaced_{_SNAKE_KIND[ref.kind]}")
        try:
            obj = patcher(ref.name, ref.namespace, body, field_manager=self.field_manager)
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(f"{ref} was modified concurrently (resourceVersion {resource_version})")
            if e.status == 404:
                raise FatalError(f"{ref} no longer exists")
            raise map_api_exception(e, f"patching {ref}")
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientError(f"patching {ref} failed: {e}")
        logger.info(f"Patched resources of {ref.namespace}/{ref}")
        return self.api_client.sanitize_for_serialization(obj) or {}
