"""
HPA analysis - find the autoscaler that targets a workload
A recommendation for an autoscaled workload is blocked unless acknowledged
"""
import logging
from typing import Optional

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from errors import TransientError
from metrics.kube_client import map_api_exception
from models import HPAInfo, WorkloadRef

logger = logging.getLogger(__name__)


def find_hpa(autoscaling_api, ref: WorkloadRef) -> Optional[HPAInfo]:
    """Return the autoscaling/v2 HPA whose scaleTargetRef is `ref`, if any."""
    if ref.kind == "Pod":
        return None
    api = autoscaling_api or client.AutoscalingV2Api()
    try:
        resp = api.list_namespaced_horizontal_pod_autoscaler(ref.namespace)
    except ApiException as e:
        raise map_api_exception(e, f"horizontal pod autoscalers in {ref.namespace}")
    except (urllib3.exceptions.HTTPError, OSError) as e:
        raise TransientError(f"listing horizontal pod autoscalers failed: {e}")

    for item in resp.items or []:
        if _targets(item, ref):
            info = HPAInfo(
                name=item.metadata.name,
                min_replicas=int(item.spec.min_replicas or 1),
                max_replicas=int(item.spec.max_replicas or 0),
            )
            logger.info(f"HPA {info.name} targets {ref.namespace}/{ref}")
            return info
    return None


def _targets(item, ref: WorkloadRef) -> bool:
    target = item.spec.scale_target_ref
    return target is not None and target.kind == ref.kind and target.name == ref.name
