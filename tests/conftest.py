"""
Test fixtures and configuration for pytest
"""
import copy
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.aggregator import build_latch_result
from errors import ConflictError
from metrics.sampler import STOPPED, LatchOutcome
from metrics.workloads import resources_block
from models import Sample, SpikeData, WorkloadRef

NOW = datetime(2026, 1, 10, 12, 0, 0, tzinfo=timezone.utc)
MIB = 1024 ** 2


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def api_ref():
    return WorkloadRef(kind="Deployment", namespace="default", name="api")


@pytest.fixture
def make_latch(api_ref):
    """Factory building a LatchResult through the real aggregator."""
    def _make(cpu=None, mem=None, count=60, interval=5.0, ref=None,
              oom_kills=0, restarts=0, evictions=0, crash_loops=0, gaps=0,
              completed_at=None):
        cpu = cpu if cpu is not None else [0.1] * count
        mem = mem if mem is not None else [100 * MIB] * len(cpu)
        elapsed = (len(cpu) + gaps) * interval
        started_at = (completed_at or NOW - timedelta(hours=1)) - timedelta(seconds=elapsed)

        data = SpikeData()
        t0 = started_at.timestamp()
        for i, (c, m) in enumerate(zip(cpu, mem)):
            data.add_sample(Sample(t=t0 + i * interval, cpu_cores=c, mem_bytes=m), max_samples=100000)
        data.add_pod("api-7d4b9c-x2x9z")
        data.gaps = gaps
        data.oom_kills = oom_kills
        data.restarts = restarts
        data.evictions = evictions
        data.crash_loop_backoffs = crash_loops

        outcome = LatchOutcome(status=STOPPED, reason="", started_at=started_at, elapsed=elapsed)
        return build_latch_result(ref or api_ref, data, outcome, interval_seconds=interval,
                                  planned_seconds=elapsed)
    return _make


def deployment(name="api", namespace="default", containers=None, resource_version="100"):
    """A Deployment dict as returned by WorkloadClient.get."""
    if containers is None:
        containers = [{"name": "app", "resources": {
            "requests": {"cpu": "500m", "memory": "256Mi"},
            "limits": {"cpu": "1", "memory": "512Mi"},
        }}]
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "3f1c2a7e-0000-4000-8000-000000000001",
            "resourceVersion": resource_version,
            "generation": 4,
            "creationTimestamp": "2026-01-01T00:00:00Z",
            "managedFields": [{"manager": "kubectl"}],
            "labels": {"app": name},
        },
        "spec": {
            "replicas": 2,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": containers},
            },
        },
        "status": {"replicas": 2, "readyReplicas": 2},
    }


@pytest.fixture
def deployment_obj():
    return deployment()


class FakeWorkloads:
    """In-memory stand-in for WorkloadClient."""

    def __init__(self, obj, conflicts=0, admit=None):
        self.obj = obj
        self.conflicts = conflicts
        self.admit = admit
        self.patches = []
        self.api_client = None

    def get(self, ref):
        return copy.deepcopy(self.obj)

    def patch_resources(self, ref, recommended, resource_version):
        self.patches.append((list(recommended), resource_version))
        if self.conflicts > 0:
            self.conflicts -= 1
            rv = int(self.obj["metadata"]["resourceVersion"]) + 1
            self.obj["metadata"]["resourceVersion"] = str(rv)
            raise ConflictError(f"{ref} was modified concurrently (resourceVersion {resource_version})")
        by_name = {r.name: r for r in recommended}
        for c in self.obj["spec"]["template"]["spec"]["containers"]:
            if c["name"] in by_name:
                c["resources"] = resources_block(by_name[c["name"]])
                if self.admit:
                    self.admit(c)
        rv = int(self.obj["metadata"]["resourceVersion"]) + 1
        self.obj["metadata"]["resourceVersion"] = str(rv)
        return copy.deepcopy(self.obj)


@pytest.fixture
def fake_workloads(deployment_obj):
    return FakeWorkloads(deployment_obj)


def _merge(base, extra):
    for key, value in (extra or {}).items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


@pytest.fixture
def policy_file(tmp_path):
    """Factory writing an apply-enabled policy; `extra` is deep-merged over it."""
    def _write(extra=None, name="policy.yaml"):
        doc = {
            "apiVersion": "kubenow/v1alpha1",
            "kind": "Policy",
            "global": {"enabled": True},
            "audit": {"backend": "filesystem", "path": str(tmp_path / "audit"), "retention_days": 30},
            "apply": {
                "enabled": True,
                "max_request_delta_percent": 50,
                "max_limit_delta_percent": 50,
                "allow_limit_decrease": True,
                "min_latch_duration": "1m",
                "max_latch_age": "7d",
            },
            "namespaces": {"deny": ["kube-system"]},
            "rate_limits": {"max_applies_per_hour": 10, "max_applies_per_workload": 5, "rate_window": "1h"},
        }
        _merge(doc, extra)
        path = tmp_path / name
        path.write_text(yaml.safe_dump(doc, sort_keys=False))
        return str(path)
    return _write
