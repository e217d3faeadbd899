"""Orchestrator: latch -> aggregate -> persist, and load -> recommend -> export/apply.

The CLI and the UI call these pipelines; nothing here prints to stdout.
"""
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from kubernetes import client

from analysis.aggregator import build_latch_result
from analysis.export import render
from analysis.hpa_analysis import find_hpa
from analysis.recommend import recommend
from applier.applier import ApplyResult, Applier
from config import KUBE_CONTEXT, LATCH_MAX_AGE
from errors import LatchError
from metrics import prometheus_client as prom
from metrics.kube_client import connect
from metrics.kube_source import KubeMetricsSource
from metrics.prometheus_client import PrometheusError
from metrics.sampler import ProgressCallback, Sampler
from metrics.workloads import WorkloadClient, container_resources
from models import AlignmentRecommendation, HPAInfo, LatchResult, LatchState, WorkloadRef
from normalize.durations import parse_duration
from persistence import latch_lock, load, save
from policy.gate import ModeResolution, load_policy, resolve_mode

logger = logging.getLogger(__name__)


@dataclass
class ClusterClients:
    api_client: client.ApiClient
    source: KubeMetricsSource
    workloads: WorkloadClient
    autoscaling: Any


def connect_clients(context: Optional[str] = KUBE_CONTEXT) -> ClusterClients:
    api_client = connect(context)
    return ClusterClients(
        api_client=api_client,
        source=KubeMetricsSource(api_client),
        workloads=WorkloadClient(api_client),
        autoscaling=client.AutoscalingV2Api(api_client),
    )


def _log_state(ref: WorkloadRef, state: LatchState) -> None:
    logger.info(f"[{ref.namespace}/{ref}] {state.value}")


# =============================================================================
# Latch pipeline
# =============================================================================
def run_latch(ref: WorkloadRef, interval: float, duration: float, clients: ClusterClients,
              cancel: threading.Event, progress: Optional[ProgressCallback] = None,
              on_start: Optional[Callable[[Sampler], None]] = None,
              base_dir: Optional[str] = None) -> LatchResult:
    """Sample one workload for `duration` seconds and persist the result.

    A canceled or failed latch is still aggregated and persisted; its
    result is marked invalid when it does not hold enough samples.
    """
    with latch_lock(ref, base_dir):
        sampler = Sampler(clients.source, ref, interval=interval, duration=duration, progress=progress)
        _log_state(ref, LatchState.CREATED)
        if on_start is not None:
            on_start(sampler)
        outcome = sampler.start(cancel)
        _log_state(ref, sampler.state)

        result = build_latch_result(ref, sampler.data, outcome, interval_seconds=interval,
                                    planned_seconds=duration)
        _log_state(ref, LatchState.AGGREGATED)
        save(result, base_dir)
        _log_state(ref, LatchState.PERSISTED)
    return result


# =============================================================================
# Analysis pipeline
# =============================================================================
@dataclass
class Analysis:
    latch: LatchResult
    recommendation: AlignmentRecommendation
    resolution: ModeResolution
    current_obj: Dict[str, Any]
    hpa: Optional[HPAInfo] = None


def check_hpa(ref: WorkloadRef, clients: ClusterClients) -> Optional[HPAInfo]:
    """HPA targeting the workload, checked before a latch starts. Lookup failures are logged."""
    try:
        return find_hpa(clients.autoscaling, ref)
    except LatchError as e:
        logger.warning(f"HPA lookup failed for {ref.namespace}/{ref}: {e}")
        return None


def throttle_evidence(latch: LatchResult) -> Optional[float]:
    """CPU throttling over the latch window from Prometheus, when configured."""
    try:
        return prom.query_cpu_throttle_percent(
            latch.workload.namespace, latch.data.pods,
            latch.duration.total_seconds(), end_ts=latch.timestamp.timestamp())
    except PrometheusError as e:
        logger.warning(f"Throttling evidence unavailable: {e}")
        return None


def analyze(ref: WorkloadRef, clients: ClusterClients, policy_path: Optional[str] = None,
            acknowledge_hpa: bool = False, base_dir: Optional[str] = None) -> Analysis:
    """Load the persisted latch and compute a bounded recommendation. No mutation."""
    resolution = resolve_mode(load_policy(policy_path), ref)
    logger.info(f"Policy: {resolution.status} -> mode {resolution.mode.value}")

    max_age = resolution.policy.max_latch_age if resolution.policy else parse_duration(LATCH_MAX_AGE)
    latch = load(ref, max_age=max_age, base_dir=base_dir)

    current_obj = clients.workloads.get(ref)
    hpa = find_hpa(clients.autoscaling, ref)
    rec = recommend(latch, container_resources(current_obj), bounds=resolution.bounds, hpa=hpa,
                    acknowledge_hpa=acknowledge_hpa, throttle_percent=throttle_evidence(latch))
    _log_state(ref, LatchState.RECOMMENDED)
    return Analysis(latch=latch, recommendation=rec, resolution=resolution,
                    current_obj=current_obj, hpa=hpa)


def export(analysis: Analysis, fmt: str) -> str:
    output = render(analysis.recommendation, fmt, analysis.current_obj)
    _log_state(analysis.latch.workload, LatchState.EXPORTED)
    return output


def apply(analysis: Analysis, clients: ClusterClients, acknowledge_hpa: bool = False) -> ApplyResult:
    applier = Applier(clients.workloads, analysis.resolution)
    result = applier.apply(analysis.recommendation, analysis.latch, acknowledge_hpa=acknowledge_hpa)
    _log_state(analysis.latch.workload, LatchState.APPLIED if result.applied else LatchState.REFUSED)
    return result


# =============================================================================
# Signals
# =============================================================================
def install_sigint(cancel: threading.Event):
    """Route Ctrl-C to the cancel token; a second Ctrl-C interrupts normally."""
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        if cancel.is_set():
            signal.signal(signal.SIGINT, previous)
            raise KeyboardInterrupt
        logger.warning("Interrupt received; finishing the current tick and saving a partial latch")
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    return previous
