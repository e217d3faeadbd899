"""
Recommendation engine - deterministic right-sizing from a latch fingerprint
Safety rating, confidence, per-container alignment and policy bounds
"""
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from analysis.aggregator import spike_signals
from config import HIGH_CONFIDENCE_MIN_SAMPLES, LATCH_MAX_GAP_RATIO
from models import (
    AlignmentRecommendation,
    Bounds,
    Confidence,
    ContainerAlignment,
    ContainerResources,
    Evidence,
    HPAInfo,
    LatchResult,
    Safety,
)
from normalize.quantity import CPU_UNIT, MEMORY_UNIT, format_cpu, format_memory, round_toward, round_up

logger = logging.getLogger(__name__)

# Safety thresholds
UNSAFE_RESTARTS = 10
RISKY_RESTARTS = 3
REQUEST_PRESSURE = 0.9
THROTTLE_CAUTION_PERCENT = 10.0

MARGINS = {
    Safety.SAFE: 1.0,
    Safety.CAUTION: 1.3,
    Safety.RISKY: 1.5,
}
ULTRA_SPIKE_CPU_MARGIN = 1.5
ULTRA_SPIKE_MEM_MARGIN = 2.0
LIMIT_HEADROOM = 1.2

_FIELD_LABELS = {
    "cpu_request": "cpuRequest",
    "cpu_limit": "cpuLimit",
    "memory_request": "memoryRequest",
    "memory_limit": "memoryLimit",
}


def hpa_warning(hpa: HPAInfo) -> str:
    return (f'HPA "{hpa.name}" detected (min={hpa.min_replicas}, max={hpa.max_replicas}): '
            f'apply blocked unless acknowledged')


def recommend(latch: LatchResult, containers: List[ContainerResources],
              bounds: Optional[Bounds] = None, hpa: Optional[HPAInfo] = None,
              acknowledge_hpa: bool = False,
              throttle_percent: Optional[float] = None) -> AlignmentRecommendation:
    """Recommendation for one workload. Never raises.

    Malformed input yields an UNSAFE recommendation whose warnings say why.
    """
    try:
        return _recommend(latch, containers, bounds, hpa, acknowledge_hpa, throttle_percent)
    except Exception as e:
        logger.error(f"Recommendation failed on malformed input: {e}", exc_info=True)
        return AlignmentRecommendation(
            workload=latch.workload,
            safety=Safety.UNSAFE,
            confidence=Confidence.LOW,
            warnings=[f"malformed latch input: {e}",
                      "safety rating UNSAFE: no recommendation produced"],
            hpa=hpa,
        )


def _recommend(latch, containers, bounds, hpa, acknowledge_hpa, throttle_percent):
    data = latch.data
    cpu_spike = spike_signals(latch.cpu)
    mem_spike = spike_signals(latch.memory)
    ultra_spike = bool((cpu_spike and cpu_spike.ultra_spike) or (mem_spike and mem_spike.ultra_spike))

    safety, warnings = classify_safety(latch, containers, throttle_percent)
    confidence = classify_confidence(latch, safety)

    evidence = Evidence(
        duration=latch.duration,
        sample_count=latch.sample_count,
        percentiles_cpu=latch.cpu,
        percentiles_mem=latch.memory,
        oom_kills=data.oom_kills,
        restarts=data.restarts,
        evictions=data.evictions,
        gaps=latch.gaps,
        throttle_percent=throttle_percent,
    )
    rec = AlignmentRecommendation(
        workload=latch.workload,
        safety=safety,
        confidence=confidence,
        warnings=warnings,
        evidence=evidence,
        hpa=hpa,
    )

    if safety == Safety.UNSAFE:
        rec.warnings.append("safety rating UNSAFE: no recommendation produced")
        logger.info(f"{latch.workload.namespace}/{latch.workload}: UNSAFE, no recommendation")
        return rec

    cpu_margin = MARGINS[safety]
    mem_margin = MARGINS[safety]
    if ultra_spike:
        cpu_margin = max(cpu_margin, ULTRA_SPIKE_CPU_MARGIN)
        mem_margin = max(mem_margin, ULTRA_SPIKE_MEM_MARGIN)

    if not containers:
        rec.warnings.append("workload has no containers to align")
    elif len(containers) > 1:
        rec.warnings.append(
            f"pod has {len(containers)} containers: pod-level usage split by current request share")
        if min(c.cpu_request for c in containers) <= 0 or min(c.memory_request for c in containers) <= 0:
            rec.warnings.append("some containers have no request set: usage split equally for that resource")

    cpu_shares = _shares([c.cpu_request for c in containers])
    mem_shares = _shares([c.memory_request for c in containers])

    for i, current in enumerate(containers):
        target = ContainerResources(
            name=current.name,
            cpu_request=_target_request(latch.cpu.p95 * cpu_margin * cpu_shares[i], CPU_UNIT),
            memory_request=_target_request(latch.memory.p95 * mem_margin * mem_shares[i], MEMORY_UNIT),
        )
        target.cpu_limit = max(round_up(latch.cpu.max * LIMIT_HEADROOM * cpu_shares[i], CPU_UNIT),
                               target.cpu_request)
        target.memory_limit = max(round_up(latch.memory.max * LIMIT_HEADROOM * mem_shares[i], MEMORY_UNIT),
                                  target.memory_request)

        alignment = ContainerAlignment(name=current.name, current=current, recommended=target)
        if bounds is not None:
            rec.warnings.extend(apply_bounds(alignment, bounds))
        alignment.delta = deltas(current, alignment.recommended)
        rec.containers.append(alignment)

    if hpa is not None:
        rec.warnings.append(hpa_warning(hpa))
        if not acknowledge_hpa:
            rec.containers = []

    logger.info(f"{latch.workload.namespace}/{latch.workload}: safety={safety.value}, "
                f"confidence={confidence.value}, containers={len(rec.containers)}")
    return rec


def classify_safety(latch: LatchResult, containers: List[ContainerResources],
                    throttle_percent: Optional[float] = None) -> Tuple[Safety, List[str]]:
    """First matching rule wins; warnings name every rule that fired."""
    data = latch.data
    warnings: List[str] = []
    if data.oom_kills:
        warnings.append(f"observed {data.oom_kills} OOMKill(s) during latch")
    if data.restarts:
        warnings.append(f"observed {data.restarts} container restart(s) during latch")
    if data.evictions:
        warnings.append(f"observed {data.evictions} pod eviction(s) during latch")
    if data.crash_loop_backoffs:
        warnings.append(f"observed {data.crash_loop_backoffs} CrashLoopBackOff(s) during latch")

    if data.oom_kills >= 1 or data.restarts >= UNSAFE_RESTARTS or data.crash_loop_backoffs >= 1:
        return Safety.UNSAFE, warnings

    if not latch.valid:
        warnings.append(f"latch invalid: {latch.reason or 'unknown reason'}")
        return Safety.UNSAFE, warnings
    if latch.cpu is None or latch.memory is None:
        missing = "CPU" if latch.cpu is None else "memory"
        warnings.append(f"no {missing} percentiles: fewer samples than required")
        return Safety.UNSAFE, warnings

    safety = Safety.SAFE
    risky = data.evictions >= 1 or data.restarts >= RISKY_RESTARTS

    for label, p in (("CPU", latch.cpu), ("memory", latch.memory)):
        spike = spike_signals(p)
        if spike.ultra_spike:
            risky = True
            warnings.append(f"ultra-spike detected on {label}: max/p99={spike.max_to_p99:.2f}, "
                            f"p99/p95={spike.p99_to_p95:.2f}")

    pod_cpu = sum(c.cpu_request for c in containers)
    pod_mem = sum(c.memory_request for c in containers)
    if pod_cpu > 0 and latch.cpu.p99 / pod_cpu > REQUEST_PRESSURE:
        risky = True
        warnings.append(f"CPU p99 {format_cpu(latch.cpu.p99)} is {latch.cpu.p99 / pod_cpu * 100:.0f}% "
                        f"of the pod request {format_cpu(pod_cpu)}")
    if pod_mem > 0 and latch.memory.p99 / pod_mem > REQUEST_PRESSURE:
        risky = True
        warnings.append(f"memory p99 {format_memory(latch.memory.p99)} is "
                        f"{latch.memory.p99 / pod_mem * 100:.0f}% of the pod request {format_memory(pod_mem)}")

    throttled = throttle_percent is not None and throttle_percent > THROTTLE_CAUTION_PERCENT
    if throttled:
        warnings.append(f"CPU throttled {throttle_percent:.1f}% of the latch window")

    if risky:
        safety = Safety.RISKY
    elif data.restarts >= 1 or throttled:
        safety = Safety.CAUTION
    return safety, warnings


def classify_confidence(latch: LatchResult, safety: Safety) -> Confidence:
    if safety == Safety.UNSAFE or not latch.valid or latch.cpu is None or latch.memory is None:
        return Confidence.LOW
    if latch.sample_count >= HIGH_CONFIDENCE_MIN_SAMPLES and latch.gap_ratio < LATCH_MAX_GAP_RATIO:
        return Confidence.HIGH
    return Confidence.MEDIUM


def apply_bounds(alignment: ContainerAlignment, bounds: Bounds) -> List[str]:
    """Clamp `alignment.recommended` into the policy envelope around `alignment.current`.

    Returns one warning per adjustment; clamped fields land in `capped_fields`.
    """
    warnings: List[str] = []
    current = alignment.current
    rec = replace(alignment.recommended)
    name = alignment.name

    for fld, unit, pct in (
        ("cpu_request", CPU_UNIT, bounds.max_request_delta_pct),
        ("memory_request", MEMORY_UNIT, bounds.max_request_delta_pct),
        ("cpu_limit", CPU_UNIT, bounds.max_limit_delta_pct),
        ("memory_limit", MEMORY_UNIT, bounds.max_limit_delta_pct),
    ):
        cur = getattr(current, fld)
        value = getattr(rec, fld)
        label = _FIELD_LABELS[fld]
        if cur <= 0:
            setattr(rec, fld, 0.0)
            warnings.append(f"container {name}: {label} has no current value; left unset under policy bounds")
            continue

        lo, hi = _envelope(cur, pct, unit)
        clamped = min(max(value, lo), hi)
        if fld.endswith("_limit") and not bounds.allow_limit_decrease and clamped < cur:
            clamped = cur
            warnings.append(f"container {name}: {label} decrease not allowed; kept at {_fmt(fld, cur)}")
            _mark_capped(alignment, label)
        elif clamped != value:
            warnings.append(f"container {name}: {label} clamped from {_fmt(fld, value)} to "
                            f"{_fmt(fld, clamped)} (max delta {pct:g}%)")
            _mark_capped(alignment, label)
        setattr(rec, fld, clamped)

    for req_fld, lim_fld, unit, pct in (
        ("cpu_request", "cpu_limit", CPU_UNIT, bounds.max_limit_delta_pct),
        ("memory_request", "memory_limit", MEMORY_UNIT, bounds.max_limit_delta_pct),
    ):
        request = getattr(rec, req_fld)
        limit = getattr(rec, lim_fld)
        if limit <= 0 or limit >= request:
            continue
        _, hi = _envelope(getattr(current, lim_fld), pct, unit)
        limit = min(request, hi)
        setattr(rec, lim_fld, limit)
        if limit < request:
            setattr(rec, req_fld, limit)
            _mark_capped(alignment, _FIELD_LABELS[req_fld])
            warnings.append(f"container {name}: {_FIELD_LABELS[req_fld]} lowered to {_fmt(lim_fld, limit)} "
                            f"to keep limit >= request")
        else:
            warnings.append(f"container {name}: {_FIELD_LABELS[lim_fld]} raised to {_fmt(lim_fld, limit)} "
                            f"to keep limit >= request")

    alignment.recommended = rec
    return warnings


def deltas(current: ContainerResources, recommended: ContainerResources) -> Dict[str, float]:
    """Percent change per field; a field with no current value counts as +100%."""
    out: Dict[str, float] = {}
    for fld, label in _FIELD_LABELS.items():
        cur = getattr(current, fld)
        rec = getattr(recommended, fld)
        if cur <= 0:
            out[label] = 100.0 if rec > 0 else 0.0
        else:
            out[label] = round((rec - cur) / cur * 100, 1)
    return out


def _envelope(current: float, pct: float, unit: float) -> Tuple[float, float]:
    """Whole-unit [lo, hi] around `current` for a max delta percent; 0 disables."""
    if pct <= 0:
        return 0.0, float("inf")
    lo = round_toward(current * (1 - pct / 100), current, unit)
    hi = round_toward(current * (1 + pct / 100), current, unit)
    return lo, hi


def _shares(requests: List[float]) -> List[float]:
    if not requests:
        return []
    total = sum(requests)
    if total <= 0 or min(requests) <= 0:
        return [1.0 / len(requests)] * len(requests)
    return [r / total for r in requests]


def _target_request(value: float, unit: float) -> float:
    return max(round_up(value, unit), unit)


def _mark_capped(alignment: ContainerAlignment, label: str) -> None:
    if label not in alignment.capped_fields:
        alignment.capped_fields.append(label)


def _fmt(fld: str, value: float) -> str:
    if fld.startswith("cpu"):
        return format_cpu(value)
    return format_memory(value)
