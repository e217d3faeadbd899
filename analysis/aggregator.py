"""
Aggregation - turn a frozen SpikeData into a workload fingerprint
Percentiles, spike ratios and the latch validity decision
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from config import LATCH_MAX_GAP_RATIO, LATCH_MIN_SAMPLES
from metrics.sampler import FAILED, LatchOutcome
from models import LatchResult, Percentiles, SpikeData, WorkloadRef
from normalize import math as m
from normalize.durations import to_millis

logger = logging.getLogger(__name__)

# A valid latch must hold at least this share of its expected samples
MIN_SAMPLE_SHARE = 0.95


@dataclass
class SpikeSignals:
    max_to_p99: float
    p99_to_p95: float
    ultra_spike: bool


def percentiles(samples: List[float], min_samples: int = LATCH_MIN_SAMPLES) -> Optional[Percentiles]:
    """Percentiles of a sample sequence, or None below `min_samples`."""
    if len(samples) < max(min_samples, 1):
        return None
    return Percentiles(
        p50=m.p50(samples),
        p95=m.p95(samples),
        p99=m.p99(samples),
        max=float(max(samples)),
        avg=m.avg(samples),
    )


def aggregate(data: SpikeData, min_samples: int = LATCH_MIN_SAMPLES) -> Dict[str, Optional[Percentiles]]:
    return {
        "cpu": percentiles(data.cpu_samples, min_samples),
        "mem": percentiles(data.mem_samples, min_samples),
    }


def spike_signals(p: Optional[Percentiles]) -> Optional[SpikeSignals]:
    """Derived burst ratios; not persisted."""
    if p is None:
        return None
    max_to_p99 = m.ratio(p.max, p.p99)
    p99_to_p95 = m.ratio(p.p99, p.p95)
    return SpikeSignals(
        max_to_p99=max_to_p99,
        p99_to_p95=p99_to_p95,
        ultra_spike=m.is_ultra_spike(max_to_p99, p99_to_p95),
    )


def expected_samples(duration: timedelta, interval: timedelta) -> int:
    interval_ms = int(round(interval.total_seconds() * 1000))
    if interval_ms <= 0:
        return 0
    return int(round(duration.total_seconds() * 1000)) // interval_ms


def minimum_sample_count(duration: timedelta, interval: timedelta) -> int:
    """floor(0.95 * duration / interval)"""
    interval_ms = int(round(interval.total_seconds() * 1000))
    if interval_ms <= 0:
        return 0
    duration_ms = int(round(duration.total_seconds() * 1000))
    return int(MIN_SAMPLE_SHARE * duration_ms / interval_ms + 1e-9)


def validity(sample_count: int, gaps: int, expected: int, floor_count: int,
             min_samples: int = LATCH_MIN_SAMPLES,
             max_gap_ratio: float = LATCH_MAX_GAP_RATIO) -> Optional[str]:
    """None when the counts make a valid latch, else the reason it is not."""
    if sample_count < min_samples:
        return f"insufficient samples: {sample_count} < {min_samples}"
    if expected > 0 and gaps / expected >= max_gap_ratio:
        return f"gap ratio {gaps / expected:.3f} exceeds {max_gap_ratio:g} ({gaps} gaps of {expected} expected)"
    if sample_count < floor_count:
        return f"sample count {sample_count} below 95% of expected {expected}"
    return None


def build_latch_result(workload: WorkloadRef, data: SpikeData, outcome: LatchOutcome,
                       interval_seconds: float, planned_seconds: float,
                       completed_at: Optional[datetime] = None,
                       min_samples: int = LATCH_MIN_SAMPLES,
                       max_gap_ratio: float = LATCH_MAX_GAP_RATIO) -> LatchResult:
    """Freeze a finished latch into its persistable result."""
    duration = to_millis(timedelta(seconds=outcome.elapsed))
    interval = to_millis(timedelta(seconds=interval_seconds))
    planned = to_millis(timedelta(seconds=planned_seconds)) if not outcome.completed else timedelta(0)
    agg = aggregate(data, min_samples)
    expected = expected_samples(duration, interval)

    if outcome.status == FAILED:
        reason: Optional[str] = f"latch failed: {outcome.reason}"
    else:
        reason = validity(data.sample_count, data.gaps, expected,
                          minimum_sample_count(duration, interval), min_samples, max_gap_ratio)
    if reason:
        logger.warning(f"latch for {workload.namespace}/{workload} is invalid: {reason}")

    return LatchResult(
        workload=workload,
        timestamp=completed_at or (outcome.started_at + duration),
        duration=duration,
        planned_duration=planned,
        interval=interval,
        sample_count=data.sample_count,
        gaps=data.gaps,
        cpu=agg["cpu"],
        memory=agg["mem"],
        data=data,
        valid=reason is None,
        reason=reason or "",
    )
