"""Append-only audit trail: one JSON line per apply or refusal, one file per UTC day."""
import json
import logging
import os
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from models import AlignmentRecommendation, format_time, utcnow
from normalize.quantity import format_cpu, format_memory
from policy.gate import check_audit_path

logger = logging.getLogger(__name__)

_DAY_FILE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.log$")


def _container_records(rec: Optional[AlignmentRecommendation]) -> List[Dict[str, Any]]:
    if rec is None:
        return []
    out = []
    for c in rec.containers:
        out.append({
            "name": c.name,
            "current": _resources(c.current),
            "recommended": _resources(c.recommended),
            "delta": dict(c.delta),
        })
    return out


def _resources(res) -> Dict[str, str]:
    return {
        "cpuRequest": format_cpu(res.cpu_request),
        "cpuLimit": format_cpu(res.cpu_limit),
        "memoryRequest": format_memory(res.memory_request),
        "memoryLimit": format_memory(res.memory_limit),
    }


class AuditLog:
    def __init__(self, path: str, retention_days: int = 0):
        self.path = path
        self.retention_days = retention_days

    def file_for(self, when: datetime) -> str:
        return os.path.join(self.path, f"{when.strftime('%Y-%m-%d')}.log")

    def prepare(self, now: Optional[datetime] = None) -> None:
        """Check writability and prune expired day files. Raises OSError when unusable."""
        check_audit_path(self.path)
        if self.retention_days > 0:
            self.prune(now or utcnow())

    def prune(self, now: datetime) -> List[str]:
        cutoff = (now - timedelta(days=self.retention_days)).date()
        removed = []
        for name in sorted(os.listdir(self.path)):
            m = _DAY_FILE.match(name)
            if not m:
                continue
            try:
                day = datetime.strptime(m.group(1), "%Y-%m-%d").date()
            except ValueError:
                continue
            if day < cutoff:
                os.remove(os.path.join(self.path, name))
                removed.append(name)
        if removed:
            logger.info(f"Pruned {len(removed)} audit file(s) older than {self.retention_days} days")
        return removed

    def write(self, record: Dict[str, Any], now: Optional[datetime] = None) -> str:
        """Append one record; flushed and fsynced before returning."""
        now = now or utcnow()
        path = self.file_for(now)
        line = json.dumps(record, sort_keys=True)
        with open(path, 'a', encoding='utf-8') as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        return path

    def read(self, when: datetime) -> List[Dict[str, Any]]:
        path = self.file_for(when)
        if not os.path.exists(path):
            return []
        with open(path, 'r', encoding='utf-8') as f:
            return [json.loads(line) for line in f if line.strip()]


def build_record(outcome: str, reason: str, rec: Optional[AlignmentRecommendation],
                 workload, identity, policy_digest: str,
                 drift: Optional[List[Dict[str, str]]] = None,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "timestamp": format_time(now or utcnow()),
        "workload": workload.to_dict(),
        "identity": identity.to_dict() if identity is not None else None,
        "outcome": outcome,
        "reason": reason,
        "policyDigest": policy_digest,
        "containers": _container_records(rec),
    }
    if rec is not None:
        record["safety"] = rec.safety.value
        record["confidence"] = rec.confidence.value
    if drift:
        record["drift"] = drift
    return record
