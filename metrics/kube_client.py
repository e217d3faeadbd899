"""Kubernetes API client construction and error classification."""
import logging
from typing import Callable, Optional

from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from config import KUBE_CONTEXT
from errors import FatalError, LatchError, TransientError, UnavailableError

logger = logging.getLogger(__name__)


def connect(context: Optional[str] = KUBE_CONTEXT) -> client.ApiClient:
    """Build an ApiClient from in-cluster config, falling back to kubeconfig."""
    if context is None:
        try:
            kube_config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
            return client.ApiClient()
        except kube_config.ConfigException:
            pass
    try:
        api_client = kube_config.new_client_from_config(context=context)
        logger.info(f"Loaded kubeconfig (context={context or 'current'})")
        return api_client
    except (kube_config.ConfigException, OSError) as e:
        raise FatalError(f"no Kubernetes configuration available: {e}")


def map_api_exception(e: ApiException, what: str,
                      not_found: Callable[[str], LatchError] = FatalError) -> LatchError:
    """Classify an ApiException: auth -> Fatal, throttling/5xx -> Transient."""
    status = e.status or 0
    if status in (401, 403):
        return FatalError(f"{what}: access denied ({status} {e.reason})")
    if status == 404:
        return not_found(f"{what}: not found")
    if status == 503 and not_found is UnavailableError:
        return UnavailableError(f"{what}: service unavailable")
    if status in (0, 408, 429) or status >= 500:
        return TransientError(f"{what}: {status} {e.reason}")
    return FatalError(f"{what}: {status} {e.reason}")
