"""Value types for the latch pipeline and their JSON shapes.

The persisted latch file and the JSON export use camelCase keys; the
`to_dict`/`from_dict` pairs here are the only place those shapes are
spelled out.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import InvalidInputError
from normalize.durations import format_duration, parse_duration


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enumerations
# =============================================================================
class Safety(str, Enum):
    SAFE = "SAFE"
    CAUTION = "CAUTION"
    RISKY = "RISKY"
    UNSAFE = "UNSAFE"

    @property
    def rank(self) -> int:
        """UNSAFE < RISKY < CAUTION < SAFE"""
        return _SAFETY_RANK[self]


_SAFETY_RANK = {Safety.UNSAFE: 0, Safety.RISKY: 1, Safety.CAUTION: 2, Safety.SAFE: 3}


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Mode(str, Enum):
    OBSERVE_ONLY = "ObserveOnly"
    EXPORT_ONLY = "ExportOnly"
    APPLY_READY = "ApplyReady"


class LatchState(str, Enum):
    CREATED = "CREATED"
    SAMPLING = "SAMPLING"
    STOPPED = "STOPPED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"
    AGGREGATED = "AGGREGATED"
    PERSISTED = "PERSISTED"
    RECOMMENDED = "RECOMMENDED"
    EXPORTED = "EXPORTED"
    APPLIED = "APPLIED"
    REFUSED = "REFUSED"


class SignalKind(str, Enum):
    OOM_KILL = "OOMKill"
    RESTART = "Restart"
    TERMINATION = "Termination"
    EVICTION = "Eviction"
    CRASH_LOOP = "CrashLoopBackOff"
    CRITICAL_EVENT = "CriticalEvent"


# =============================================================================
# Workload identity
# =============================================================================
WORKLOAD_KINDS = ("Deployment", "StatefulSet", "DaemonSet", "Pod")

_KIND_ALIASES = {
    "deploy": "Deployment",
    "deployment": "Deployment",
    "deployments": "Deployment",
    "sts": "StatefulSet",
    "statefulset": "StatefulSet",
    "statefulsets": "StatefulSet",
    "ds": "DaemonSet",
    "daemonset": "DaemonSet",
    "daemonsets": "DaemonSet",
    "po": "Pod",
    "pod": "Pod",
    "pods": "Pod",
}


@dataclass(frozen=True)
class WorkloadRef:
    kind: str
    namespace: str
    name: str

    @classmethod
    def parse(cls, text: str, namespace: str = "default") -> "WorkloadRef":
        """Parse "kind/name", e.g. "deploy/api" or "StatefulSet/db"."""
        if not text or text.count("/") != 1:
            raise InvalidInputError(f"invalid workload reference {text!r}: expected kind/name")
        kind_text, name = text.split("/", 1)
        kind = _KIND_ALIASES.get(kind_text.strip().lower())
        if kind is None:
            raise InvalidInputError(
                f"unsupported workload kind {kind_text!r}: use one of {', '.join(WORKLOAD_KINDS)}"
            )
        name = name.strip()
        if not name:
            raise InvalidInputError(f"invalid workload reference {text!r}: empty name")
        if not namespace:
            raise InvalidInputError("namespace must not be empty")
        return cls(kind=kind, namespace=namespace, name=name)

    @property
    def key(self) -> str:
        return f"{self.kind.lower()}-{self.namespace}-{self.name}"

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "namespace": self.namespace, "name": self.name}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WorkloadRef":
        if d["kind"] not in WORKLOAD_KINDS:
            raise ValueError(f"unknown workload kind {d['kind']!r}")
        return cls(kind=d["kind"], namespace=d["namespace"], name=d["name"])


# =============================================================================
# Samples and failure signals
# =============================================================================
@dataclass
class Sample:
    t: float
    cpu_cores: float
    mem_bytes: float


@dataclass
class FailureSignal:
    kind: SignalKind
    count: int = 1
    reason: str = ""
    exit_code: Optional[int] = None
    time: Optional[datetime] = None
    message: str = ""


@dataclass
class SpikeData:
    """Per-workload accumulator. Mutated only under the sampler's lock."""
    cpu_samples: List[float] = field(default_factory=list)
    mem_samples: List[float] = field(default_factory=list)
    sample_times: List[float] = field(default_factory=list)
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    sample_count: int = 0
    gaps: int = 0
    oom_kills: int = 0
    restarts: int = 0
    evictions: int = 0
    crash_loop_backoffs: int = 0
    termination_reasons: Dict[str, int] = field(default_factory=dict)
    exit_codes: Dict[int, int] = field(default_factory=dict)
    last_termination_time: Optional[datetime] = None
    critical_events: List[str] = field(default_factory=list)
    pods: List[str] = field(default_factory=list)

    def add_sample(self, sample: Sample, max_samples: int) -> Sample:
        """Append a sample, nudging its timestamp forward if the clock did not advance."""
        if self.sample_times and sample.t <= self.sample_times[-1]:
            sample = Sample(t=self.sample_times[-1] + 1e-6, cpu_cores=sample.cpu_cores,
                            mem_bytes=sample.mem_bytes)
        if len(self.cpu_samples) >= max_samples:
            raise OverflowError(f"sample buffer full ({max_samples})")
        self.cpu_samples.append(sample.cpu_cores)
        self.mem_samples.append(sample.mem_bytes)
        self.sample_times.append(sample.t)
        seen = datetime.fromtimestamp(sample.t, tz=timezone.utc)
        if self.first_seen is None:
            self.first_seen = seen
        self.last_seen = seen
        self.sample_count += 1
        return sample

    def add_pod(self, pod_name: str) -> None:
        if pod_name not in self.pods:
            self.pods.append(pod_name)

    def apply_signal(self, signal: FailureSignal, max_events: int) -> None:
        if signal.kind == SignalKind.OOM_KILL:
            self.oom_kills += signal.count
        elif signal.kind == SignalKind.RESTART:
            self.restarts += signal.count
        elif signal.kind == SignalKind.EVICTION:
            self.evictions += signal.count
        elif signal.kind == SignalKind.CRASH_LOOP:
            self.crash_loop_backoffs += signal.count
        elif signal.kind == SignalKind.TERMINATION:
            reason = signal.reason or "Unknown"
            self.termination_reasons[reason] = self.termination_reasons.get(reason, 0) + 1
            if signal.exit_code is not None:
                self.exit_codes[signal.exit_code] = self.exit_codes.get(signal.exit_code, 0) + 1
            if signal.time is not None and (
                self.last_termination_time is None or signal.time > self.last_termination_time
            ):
                self.last_termination_time = signal.time
        if signal.message:
            self.critical_events.append(signal.message)
            if len(self.critical_events) > max_events:
                del self.critical_events[:len(self.critical_events) - max_events]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpuSamples": list(self.cpu_samples),
            "memSamples": list(self.mem_samples),
            "sampleTimes": list(self.sample_times),
            "firstSeen": format_time(self.first_seen),
            "lastSeen": format_time(self.last_seen),
            "sampleCount": self.sample_count,
            "gaps": self.gaps,
            "oomKills": self.oom_kills,
            "restarts": self.restarts,
            "evictions": self.evictions,
            "crashLoopBackOffs": self.crash_loop_backoffs,
            "terminationReasons": dict(self.termination_reasons),
            "exitCodes": {str(k): v for k, v in self.exit_codes.items()},
            "lastTerminationTime": format_time(self.last_termination_time),
            "criticalEvents": list(self.critical_events),
            "pods": list(self.pods),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SpikeData":
        return cls(
            cpu_samples=[float(v) for v in d.get("cpuSamples") or []],
            mem_samples=[float(v) for v in d.get("memSamples") or []],
            sample_times=[float(v) for v in d.get("sampleTimes") or []],
            first_seen=parse_time(d.get("firstSeen")),
            last_seen=parse_time(d.get("lastSeen")),
            sample_count=int(d.get("sampleCount", len(d.get("cpuSamples") or []))),
            gaps=int(d.get("gaps", 0)),
            oom_kills=int(d.get("oomKills", 0)),
            restarts=int(d.get("restarts", 0)),
            evictions=int(d.get("evictions", 0)),
            crash_loop_backoffs=int(d.get("crashLoopBackOffs", 0)),
            termination_reasons={str(k): int(v) for k, v in (d.get("terminationReasons") or {}).items()},
            exit_codes={int(k): int(v) for k, v in (d.get("exitCodes") or {}).items()},
            last_termination_time=parse_time(d.get("lastTerminationTime")),
            critical_events=[str(e) for e in d.get("criticalEvents") or []],
            pods=[str(p) for p in d.get("pods") or []],
        )


# =============================================================================
# Latch result
# =============================================================================
@dataclass
class Percentiles:
    p50: float
    p95: float
    p99: float
    max: float
    avg: float

    def to_dict(self) -> Dict[str, float]:
        return {"avg": self.avg, "p50": self.p50, "p95": self.p95, "p99": self.p99, "max": self.max}

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["Percentiles"]:
        if d is None:
            return None
        return cls(p50=float(d["p50"]), p95=float(d["p95"]), p99=float(d["p99"]),
                   max=float(d["max"]), avg=float(d["avg"]))


@dataclass
class LatchResult:
    workload: WorkloadRef
    timestamp: datetime
    duration: timedelta
    planned_duration: timedelta
    interval: timedelta
    sample_count: int
    gaps: int
    cpu: Optional[Percentiles]
    memory: Optional[Percentiles]
    data: SpikeData
    valid: bool
    reason: str = ""

    @property
    def expected_samples(self) -> int:
        if self.interval.total_seconds() <= 0:
            return 0
        # Millisecond integers avoid 300/5 landing a hair under 60
        return int(round(self.duration.total_seconds() * 1000)) // int(round(self.interval.total_seconds() * 1000))

    @property
    def gap_ratio(self) -> float:
        expected = self.expected_samples
        if expected <= 0:
            return 1.0 if self.gaps else 0.0
        return self.gaps / expected

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workload": self.workload.to_dict(),
            "timestamp": format_time(self.timestamp),
            "duration": format_duration(self.duration),
            "plannedDuration": format_duration(self.planned_duration),
            "interval": format_duration(self.interval),
            "sampleCount": self.sample_count,
            "gaps": self.gaps,
            "cpu": self.cpu.to_dict() if self.cpu else None,
            "memory": self.memory.to_dict() if self.memory else None,
            "data": self.data.to_dict(),
            "valid": self.valid,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LatchResult":
        timestamp = parse_time(d["timestamp"])
        if timestamp is None:
            raise ValueError("missing timestamp")
        return cls(
            workload=WorkloadRef.from_dict(d["workload"]),
            timestamp=timestamp,
            duration=parse_duration(d["duration"]),
            planned_duration=parse_duration(d.get("plannedDuration") or "0"),
            interval=parse_duration(d["interval"]),
            sample_count=int(d["sampleCount"]),
            gaps=int(d["gaps"]),
            cpu=Percentiles.from_dict(d.get("cpu")),
            memory=Percentiles.from_dict(d.get("memory")),
            data=SpikeData.from_dict(d["data"]),
            valid=bool(d["valid"]),
            reason=str(d.get("reason") or ""),
        )


# =============================================================================
# Container resources and recommendations
# =============================================================================
@dataclass
class ContainerResources:
    """Requests/limits in cores and bytes; unset is 0."""
    name: str
    cpu_request: float = 0.0
    cpu_limit: float = 0.0
    memory_request: float = 0.0
    memory_limit: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "cpuRequest": self.cpu_request,
            "cpuLimit": self.cpu_limit,
            "memoryRequest": self.memory_request,
            "memoryLimit": self.memory_limit,
        }


RESOURCE_FIELDS = ("cpu_request", "cpu_limit", "memory_request", "memory_limit")


@dataclass
class ContainerAlignment:
    name: str
    current: ContainerResources
    recommended: ContainerResources
    delta: Dict[str, float] = field(default_factory=dict)
    capped_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "current": self.current.to_dict(),
            "recommended": self.recommended.to_dict(),
            "delta": dict(self.delta),
            "cappedFields": list(self.capped_fields),
        }


@dataclass
class HPAInfo:
    name: str
    min_replicas: int
    max_replicas: int

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "minReplicas": self.min_replicas, "maxReplicas": self.max_replicas}


@dataclass
class Evidence:
    duration: timedelta
    sample_count: int
    percentiles_cpu: Optional[Percentiles]
    percentiles_mem: Optional[Percentiles]
    oom_kills: int
    restarts: int
    evictions: int
    gaps: int = 0
    throttle_percent: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": format_duration(self.duration),
            "sampleCount": self.sample_count,
            "gaps": self.gaps,
            "percentilesCPU": self.percentiles_cpu.to_dict() if self.percentiles_cpu else None,
            "percentilesMem": self.percentiles_mem.to_dict() if self.percentiles_mem else None,
            "oomKills": self.oom_kills,
            "restarts": self.restarts,
            "evictions": self.evictions,
            "throttlePercent": self.throttle_percent,
        }


@dataclass
class Bounds:
    """Policy envelope applied to recommendations; a 0 percent disables that bound."""
    max_request_delta_pct: float = 0.0
    max_limit_delta_pct: float = 0.0
    allow_limit_decrease: bool = False


@dataclass
class AlignmentRecommendation:
    workload: WorkloadRef
    safety: Safety
    confidence: Confidence
    containers: List[ContainerAlignment] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    evidence: Optional[Evidence] = None
    hpa: Optional[HPAInfo] = None
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workload": self.workload.to_dict(),
            "generatedAt": format_time(self.generated_at),
            "safety": self.safety.value,
            "confidence": self.confidence.value,
            "containers": [c.to_dict() for c in self.containers],
            "warnings": list(self.warnings),
            "evidence": self.evidence.to_dict() if self.evidence else None,
            "hpa": self.hpa.to_dict() if self.hpa else None,
        }
