"""Cluster-facing adapter for the sampler.

Reads instantaneous pod usage from the metrics.k8s.io API and streams pod
status transitions and cluster events. Kubernetes client errors are mapped
onto the pipeline's error kinds here so callers never see ApiException.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import urllib3
from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from config import WATCH_WINDOW_SECONDS
from errors import InvalidInputError, TransientError, UnavailableError
from metrics.kube_client import map_api_exception
from metrics.workload_identity import OwnerRecord, owners_from_objects
from metrics.workloads import WorkloadClient
from models import WorkloadRef
from normalize.quantity import parse_cpu, parse_memory

logger = logging.getLogger(__name__)

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"


@dataclass
class ContainerUsage:
    name: str
    cpu_cores: float
    mem_bytes: float


@dataclass
class PodMetric:
    pod_name: str
    labels: Dict[str, str] = field(default_factory=dict)
    containers: List[ContainerUsage] = field(default_factory=list)

    @property
    def cpu_cores(self) -> float:
        return sum(c.cpu_cores for c in self.containers)

    @property
    def mem_bytes(self) -> float:
        return sum(c.mem_bytes for c in self.containers)


@dataclass
class PodEvent:
    """A pod watch notification (ADDED/MODIFIED/DELETED) or a cluster Event (EVENT)."""
    type: str
    object: Dict[str, Any]


class _Cursor:
    def __init__(self, resource_version: Optional[str]):
        self.resource_version = resource_version


def format_selector(selector: Dict[str, Any]) -> str:
    """Render a LabelSelector (matchLabels + matchExpressions) as a selector string."""
    parts: List[str] = []
    for key, value in sorted((selector.get("matchLabels") or {}).items()):
        parts.append(f"{key}={value}")
    for expr in selector.get("matchExpressions") or []:
        key = expr.get("key")
        op = expr.get("operator")
        values = ",".join(expr.get("values") or [])
        if op == "In":
            parts.append(f"{key} in ({values})")
        elif op == "NotIn":
            parts.append(f"{key} notin ({values})")
        elif op == "Exists":
            parts.append(key)
        elif op == "DoesNotExist":
            parts.append(f"!{key}")
    return ",".join(parts)


class KubeMetricsSource:
    """Metrics API reads and pod/event watches for one cluster."""

    def __init__(self, api_client: Optional[client.ApiClient] = None,
                 core_api=None, apps_api=None, custom_api=None, batch_api=None,
                 watch_window: int = WATCH_WINDOW_SECONDS,
                 watch_factory: Callable[[], Any] = watch.Watch):
        self.api_client = api_client or client.ApiClient()
        self.core = core_api or client.CoreV1Api(self.api_client)
        self.apps = apps_api or client.AppsV1Api(self.api_client)
        self.custom = custom_api or client.CustomObjectsApi(self.api_client)
        self.batch = batch_api or client.BatchV1Api(self.api_client)
        self.watch_window = watch_window
        self._watch_factory = watch_factory

    def _to_dict(self, obj: Any) -> Any:
        return self.api_client.sanitize_for_serialization(obj)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def list_pod_metrics(self, namespace: str, label_selector: str,
                         timeout: Optional[float] = None) -> List[PodMetric]:
        """Current usage per pod/container. Raises Unavailable, Transient or Fatal."""
        try:
            resp = self.custom.list_namespaced_custom_object(
                METRICS_GROUP, METRICS_VERSION, namespace, "pods",
                label_selector=label_selector or "",
                _request_timeout=timeout,
            )
        except ApiException as e:
            raise map_api_exception(e, "metrics API", not_found=UnavailableError)
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientError(f"metrics API request failed: {e}")

        metrics: List[PodMetric] = []
        for item in (resp or {}).get("items", []):
            meta = item.get("metadata") or {}
            containers = []
            for c in item.get("containers") or []:
                usage = c.get("usage") or {}
                containers.append(ContainerUsage(
                    name=c.get("name") or "",
                    cpu_cores=parse_cpu(usage.get("cpu")),
                    mem_bytes=parse_memory(usage.get("memory")),
                ))
            metrics.append(PodMetric(
                pod_name=meta.get("name") or "",
                labels=meta.get("labels") or {},
                containers=containers,
            ))
        return metrics

    # ------------------------------------------------------------------
    # Pods and owners
    # ------------------------------------------------------------------
    def list_pods(self, namespace: str, label_selector: str,
                  timeout: Optional[float] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Pods matching the selector plus the list resourceVersion to watch from."""
        try:
            resp = self.core.list_namespaced_pod(
                namespace, label_selector=label_selector or "", _request_timeout=timeout)
        except ApiException as e:
            raise map_api_exception(e, f"pods in {namespace}")
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientError(f"listing pods failed: {e}")
        data = self._to_dict(resp) or {}
        return data.get("items") or [], (data.get("metadata") or {}).get("resourceVersion")

    def list_owners(self, namespace: str, timeout: Optional[float] = None) -> Dict[str, OwnerRecord]:
        """UID map of ReplicaSets and Jobs in the namespace for owner-chain resolution."""
        items: List[Dict[str, Any]] = []
        for kind, lister in (("ReplicaSet", self.apps.list_namespaced_replica_set),
                             ("Job", self.batch.list_namespaced_job)):
            try:
                resp = lister(namespace, _request_timeout=timeout)
            except ApiException as e:
                raise map_api_exception(e, f"{kind.lower()}s in {namespace}")
            except (urllib3.exceptions.HTTPError, OSError) as e:
                raise TransientError(f"listing {kind.lower()}s failed: {e}")
            for item in (self._to_dict(resp) or {}).get("items") or []:
                item["kind"] = kind
                items.append(item)
        return owners_from_objects(items)

    def _events_resource_version(self, namespace: str) -> Optional[str]:
        try:
            resp = self.core.list_namespaced_event(namespace, limit=1)
        except ApiException as e:
            raise map_api_exception(e, f"events in {namespace}")
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientError(f"listing events failed: {e}")
        return ((self._to_dict(resp) or {}).get("metadata") or {}).get("resourceVersion")

    def _pods_resource_version(self, namespace: str, label_selector: str) -> Optional[str]:
        return self.list_pods(namespace, label_selector)[1]

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------
    def watch_pod_state(self, namespace: str, label_selector: str,
                        stop_event: threading.Event,
                        pods_resource_version: Optional[str] = None,
                        events_resource_version: Optional[str] = None) -> Iterator[PodEvent]:
        """Yield pod transitions and cluster events until `stop_event` is set.

        Pods and events are watched in alternating short windows so the
        stop flag is observed within about one window. Each stream resumes
        from its last resourceVersion; an expired version restarts from now.
        """
        pods = _Cursor(pods_resource_version)
        events = _Cursor(events_resource_version or self._events_resource_version(namespace))

        while not stop_event.is_set():
            for etype, obj in self._watch_window(
                    self.core.list_namespaced_pod, namespace, pods, stop_event,
                    lambda: self._pods_resource_version(namespace, label_selector),
                    label_selector=label_selector or ""):
                yield PodEvent(type=etype, object=obj)
            if stop_event.is_set():
                break
            for _etype, obj in self._watch_window(
                    self.core.list_namespaced_event, namespace, events, stop_event,
                    lambda: self._events_resource_version(namespace),
                    field_selector="involvedObject.kind=Pod"):
                yield PodEvent(type="EVENT", object=obj)

    def _watch_window(self, list_func, namespace: str, cursor: _Cursor,
                      stop_event: threading.Event, relist: Callable[[], Optional[str]],
                      **kwargs) -> Iterator[Tuple[str, Dict[str, Any]]]:
        w = self._watch_factory()
        try:
            stream_kwargs = dict(kwargs, timeout_seconds=self.watch_window)
            if cursor.resource_version:
                stream_kwargs["resource_version"] = cursor.resource_version
            for event in w.stream(list_func, namespace, **stream_kwargs):
                etype = event.get("type")
                raw = event.get("raw_object") or self._to_dict(event.get("object")) or {}
                if etype == "ERROR":
                    if raw.get("code") == 410:
                        logger.debug("watch resourceVersion expired; restarting from now")
                        cursor.resource_version = relist()
                        return
                    raise TransientError(f"watch error: {raw.get('message') or raw}")
                rv = (raw.get("metadata") or {}).get("resourceVersion")
                if rv:
                    cursor.resource_version = rv
                yield etype, raw
                if stop_event.is_set():
                    return
        except ApiException as e:
            if e.status == 410:
                cursor.resource_version = relist()
                return
            raise map_api_exception(e, f"watch in {namespace}")
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientError(f"watch stream dropped: {e}")
        finally:
            w.stop()

    # ------------------------------------------------------------------
    # Selector resolution
    # ------------------------------------------------------------------
    def resolve_selector(self, ref: WorkloadRef) -> str:
        """Label selector for the workload's pods; for a Pod, its own labels."""
        obj = WorkloadClient(self.api_client, core_api=self.core, apps_api=self.apps).get(ref)
        if ref.kind == "Pod":
            labels = (obj.get("metadata") or {}).get("labels") or {}
            return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        selector = (obj.get("spec") or {}).get("selector") or {}
        rendered = format_selector(selector)
        if not rendered:
            raise InvalidInputError(f"{ref} has an empty pod selector")
        return rendered
