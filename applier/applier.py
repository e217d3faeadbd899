"""Policy-gated apply of a recommendation to the live workload.

Gates run in a fixed order and the first failure refuses the apply. Every
apply and every refusal is written to the audit log when one is configured.
A "pending" record is appended before the workload is patched, so an audit
log that cannot be written refuses the apply before any mutation.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import urllib3

from analysis.recommend import apply_bounds, deltas
from applier.audit_log import AuditLog, build_record
from applier.identity import Identity, resolve_identity
from applier.ratelimit import RateLimitConfig, RateLimiter
from errors import ConflictError, LatchError
from metrics.workloads import WorkloadClient, container_resources
from models import (
    AlignmentRecommendation,
    ContainerAlignment,
    ContainerResources,
    LatchResult,
    Mode,
    Safety,
    WorkloadRef,
    utcnow,
)
from normalize.durations import format_duration
from normalize.quantity import format_cpu, format_memory
from policy.gate import ModeResolution

logger = logging.getLogger(__name__)

APPLIED = "applied"
REFUSED = "refused"
FAILED = "failed"
PENDING = "pending"

CONCURRENT_MODIFICATION = "concurrent-modification"


@dataclass
class ApplyResult:
    outcome: str
    reason: str = ""
    recommendation: Optional[AlignmentRecommendation] = None
    drift: List[Dict[str, str]] = field(default_factory=list)
    attempts: int = 0
    audit_file: str = ""

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED


class _Refused(Exception):
    pass


def compare_resources(recommended: List[ContainerResources],
                      admitted: List[ContainerResources]) -> List[Dict[str, str]]:
    """Fields whose admitted value differs from what was requested."""
    by_name = {c.name: c for c in admitted}
    drift = []
    for rec in recommended:
        adm = by_name.get(rec.name)
        if adm is None:
            drift.append({"container": rec.name, "field": "*", "requested": "present", "admitted": "missing"})
            continue
        for fld, fmt in (("cpu_request", format_cpu), ("cpu_limit", format_cpu),
                         ("memory_request", format_memory), ("memory_limit", format_memory)):
            want = getattr(rec, fld)
            if not want:
                continue
            got = getattr(adm, fld)
            if fmt(want) != fmt(got):
                drift.append({"container": rec.name, "field": fld,
                              "requested": fmt(want), "admitted": fmt(got)})
    return drift


class Applier:
    def __init__(self, workloads: WorkloadClient, resolution: ModeResolution,
                 audit: Optional[AuditLog] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 identity_resolver: Optional[Callable[[], Identity]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.workloads = workloads
        self.resolution = resolution
        self.policy = resolution.policy
        self.clock = clock

        if audit is None and self.policy is not None and self.policy.audit.path:
            audit = AuditLog(self.policy.audit.path, self.policy.audit.retention_days)
        self.audit = audit

        if rate_limiter is None and self.policy is not None and self.policy.audit.path:
            rate_limiter = RateLimiter(RateLimitConfig(
                audit_path=self.policy.audit.path,
                max_global=self.policy.rate_limits.max_applies_per_hour,
                max_per_workload=self.policy.rate_limits.max_applies_per_workload,
                window=self.policy.rate_window,
            ))
        self.rate_limiter = rate_limiter
        self._identity_resolver = identity_resolver or self._default_identity

    def _default_identity(self) -> Identity:
        ident = self.policy.identity if self.policy is not None else None
        return resolve_identity(
            self.workloads.api_client,
            record_os_user=ident.record_os_user if ident else True,
            record_git_identity=ident.record_git_identity if ident else False,
        )

    # ------------------------------------------------------------------
    def apply(self, rec: AlignmentRecommendation, latch: Optional[LatchResult],
              acknowledge_hpa: bool = False) -> ApplyResult:
        ref = rec.workload
        now = self.clock()
        identity = Identity()

        audit_ok = False
        audit_error = ""
        if self.audit is not None:
            try:
                self.audit.prepare(now)
                audit_ok = True
            except OSError as e:
                logger.error(f"Audit log {self.audit.path} unusable: {e}")
                audit_error = f"audit log unavailable: {e}"
        else:
            audit_error = "audit log not configured"

        result: Optional[ApplyResult] = None
        reservation = ""
        try:
            try:
                identity = self._resolve_identity()
                self._check_gates(rec, latch, acknowledge_hpa, identity, now)
                if not audit_ok:
                    raise _Refused(audit_error)
                reservation = self._reserve(ref, identity, now)
                self._write_intent(rec, identity, now)
                result = self._commit(rec)
            except _Refused as e:
                result = ApplyResult(outcome=REFUSED, reason=str(e), recommendation=rec)
            except LatchError as e:
                result = ApplyResult(outcome=FAILED, reason=str(e), recommendation=rec)
        finally:
            if reservation and (result is None or not result.applied):
                self._release(ref, reservation)

        if result.applied:
            logger.info(f"Applied recommendation to {ref.namespace}/{ref}")
        else:
            logger.warning(f"Apply to {ref.namespace}/{ref} {result.outcome}: {result.reason}")

        if audit_ok:
            record = build_record(result.outcome, result.reason, result.recommendation or rec, ref,
                                  identity, self.resolution.digest, drift=result.drift, now=now)
            try:
                result.audit_file = self.audit.write(record, now)
            except OSError as e:
                logger.error(f"Failed to write audit outcome for {ref.namespace}/{ref}: {e}")
        return result

    def _resolve_identity(self) -> Identity:
        try:
            return self._identity_resolver()
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise _Refused(f"identity could not be resolved: {e}")

    def _reserve(self, ref: WorkloadRef, identity: Identity, now: datetime) -> str:
        """Take a rate-limit slot; returns its token ("" without a limiter)."""
        if self.rate_limiter is None:
            return ""
        try:
            verdict = self.rate_limiter.reserve(ref, identity.kube_user or identity.os_user, now)
        except OSError as e:
            raise _Refused(f"rate-limit state unavailable: {e}")
        if not verdict.allowed:
            raise _Refused(verdict.reason)
        return verdict.token

    def _release(self, ref: WorkloadRef, token: str) -> None:
        try:
            self.rate_limiter.release(ref, token)
        except OSError as e:
            logger.error(f"Failed to release rate-limit slot for {ref.namespace}/{ref}: {e}")

    def _write_intent(self, rec: AlignmentRecommendation, identity: Identity, now: datetime) -> None:
        """Record the pending apply; nothing is patched unless this lands on disk."""
        record = build_record(PENDING, "", rec, rec.workload, identity, self.resolution.digest, now=now)
        try:
            self.audit.write(record, now)
        except OSError as e:
            logger.error(f"Failed to write audit record for {rec.workload.namespace}/{rec.workload}: {e}")
            raise _Refused(f"audit write failed: {e}")

    # ------------------------------------------------------------------
    def _check_gates(self, rec: AlignmentRecommendation, latch: Optional[LatchResult],
                     acknowledge_hpa: bool, identity: Identity, now: datetime) -> None:
        ref = rec.workload
        policy = self.policy

        if self.resolution.mode != Mode.APPLY_READY:
            raise _Refused(f"mode {self.resolution.mode.value}: {self.resolution.status}")

        if ref.kind == "Pod":
            raise _Refused("pod resources are immutable; target the owning controller")

        if latch is None:
            if policy.apply.require_latch:
                raise _Refused("no latch data (required by policy)")
        else:
            if not latch.valid:
                raise _Refused(f"latch invalid: {latch.reason}")
            age = latch.age(now)
            if age > policy.max_latch_age:
                raise _Refused(f"latch is stale: age {format_duration(age)} exceeds "
                               f"max_latch_age {format_duration(policy.max_latch_age)}")
            if latch.duration < policy.min_latch_duration:
                raise _Refused(f"latch duration {format_duration(latch.duration)} below policy minimum "
                               f"{format_duration(policy.min_latch_duration)}")

        if rec.safety == Safety.UNSAFE:
            raise _Refused("safety rating UNSAFE: nothing to apply")
        minimum = policy.min_safety
        if minimum is not None and rec.safety.rank < minimum.rank:
            raise _Refused(f"safety rating {rec.safety.value} below policy minimum {minimum.value}")

        if rec.hpa is not None and not acknowledge_hpa:
            raise _Refused(f'HPA "{rec.hpa.name}" detected: pass --acknowledge-hpa to proceed')

        if not rec.containers:
            raise _Refused("recommendation has no containers to apply")

        if policy.identity.require_kube_context and not identity.kube_context:
            raise _Refused("no kube context known (identity.require_kube_context)")

    def _rebound(self, rec: AlignmentRecommendation,
                 live: List[ContainerResources]) -> Tuple[List[ContainerAlignment], List[str]]:
        """Re-run clamping of the recommended values against the live spec."""
        by_name = {c.name: c for c in live}
        bounds = self.resolution.bounds or self.policy.bounds()
        aligned: List[ContainerAlignment] = []
        warnings: List[str] = []
        for c in rec.containers:
            current = by_name.get(c.name)
            if current is None:
                raise _Refused(f"container {c.name} not found in live spec")
            alignment = ContainerAlignment(name=c.name, current=current, recommended=c.recommended)
            warnings.extend(apply_bounds(alignment, bounds))
            alignment.delta = deltas(current, alignment.recommended)
            aligned.append(alignment)
        return aligned, warnings

    def _commit(self, rec: AlignmentRecommendation) -> ApplyResult:
        ref = rec.workload
        attempts = 0
        while True:
            attempts += 1
            live = self.workloads.get(ref)
            resource_version = (live.get("metadata") or {}).get("resourceVersion")
            aligned, warnings = self._rebound(rec, container_resources(live))
            committed = AlignmentRecommendation(
                workload=rec.workload, safety=rec.safety, confidence=rec.confidence,
                containers=aligned, warnings=list(rec.warnings) + warnings,
                evidence=rec.evidence, hpa=rec.hpa, generated_at=rec.generated_at,
            )
            recommended = [c.recommended for c in aligned]
            try:
                self.workloads.patch_resources(ref, recommended, resource_version)
                break
            except ConflictError as e:
                if attempts >= 2:
                    return ApplyResult(outcome=REFUSED, reason=CONCURRENT_MODIFICATION,
                                       recommendation=committed, attempts=attempts)
                logger.warning(f"{e}; refetching and retrying once")

        try:
            admitted = container_resources(self.workloads.get(ref))
        except LatchError as e:
            logger.warning(f"Read-back of {ref.namespace}/{ref} failed after apply: {e}")
            return ApplyResult(outcome=APPLIED, reason=f"read-back failed: {e}",
                               recommendation=committed, attempts=attempts)
        drift = compare_resources(recommended, admitted)
        for d in drift:
            logger.warning(f"{ref.namespace}/{ref} container {d['container']} {d['field']}: "
                           f"requested {d['requested']}, admitted {d['admitted']}")
        return ApplyResult(outcome=APPLIED, recommendation=committed, drift=drift, attempts=attempts)
