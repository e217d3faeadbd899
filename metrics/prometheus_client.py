"""Optional Prometheus lookups used as extra evidence for a latch.

The latch itself never depends on Prometheus; when PROMETHEUS_URL is empty
every helper here returns None.
"""
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from config import PROMETHEUS_TIMEOUT_SECONDS, PROMETHEUS_URL

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF_SECONDS = 0.5


class PrometheusError(Exception):
    pass


class PrometheusConnectionError(PrometheusError):
    """Prometheus could not be reached"""
    pass


class PrometheusQueryError(PrometheusError):
    """Prometheus answered but rejected or failed the query"""
    pass


def _now() -> float:
    return time.time()


def query_instant(promql: str, ts: Optional[float] = None,
                  base_url: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Query Prometheus `/api/v1/query` and return `data.result`.
    Connection errors are retried with linear backoff before giving up.
    """
    url = f"{(base_url or PROMETHEUS_URL).rstrip('/')}/api/v1/query"
    params = {"query": promql}
    if ts is not None:
        params["time"] = str(ts)

    last_error: Optional[Exception] = None
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            r = requests.get(url, params=params, timeout=PROMETHEUS_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            last_error = e
            logger.debug(f"Prometheus request failed (attempt {attempt}/{MAX_RETRIES}): {e}")
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)
            continue
        if r.status_code != 200:
            raise PrometheusQueryError(f"prometheus returned status {r.status_code}: {r.text}")
        try:
            data = r.json()
        except ValueError as e:
            raise PrometheusQueryError(f"prometheus returned a non-JSON body: {e}")
        if not isinstance(data, dict):
            raise PrometheusQueryError(f"unexpected prometheus response: {data!r}")
        if data.get("status") != "success":
            raise PrometheusQueryError(f"prometheus error: {data.get('error') or data}")
        return data.get("data", {}).get("result", [])
    raise PrometheusConnectionError(f"request failed after {MAX_RETRIES} attempts: {last_error}")


def extract_scalar(result: List[Dict[str, Any]]) -> Optional[float]:
    """Value of the first vector sample, or None for an empty result."""
    if not result:
        return None
    value = result[0].get("value") or []
    if len(value) < 2:
        return None
    try:
        return float(value[1])
    except (TypeError, ValueError):
        return None


def throttle_query(namespace: str, pod_names: List[str], window_seconds: int) -> str:
    # Pod names are DNS-1123 labels, so they need no regex escaping
    pods = "|".join(sorted(pod_names))
    return (
        f'sum(increase(container_cpu_cfs_throttled_seconds_total{{namespace="{namespace}",'
        f'pod=~"{pods}",container!="",container!="POD"}}[{window_seconds}s])) '
        f'/ {window_seconds} * 100'
    )


def query_cpu_throttle_percent(namespace: str, pod_names: List[str], window_seconds: float,
                               end_ts: Optional[float] = None) -> Optional[float]:
    """Throttled CPU time as a percent of the latch window, or None without Prometheus."""
    if not PROMETHEUS_URL or not pod_names:
        return None
    window = max(int(window_seconds), 1)
    result = query_instant(throttle_query(namespace, pod_names, window),
                           ts=end_ts if end_ts is not None else _now())
    return extract_scalar(result)
