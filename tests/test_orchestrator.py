import signal
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests
from kubernetes.client.rest import ApiException

import orchestrator
import persistence
from applier.identity import Identity
from conftest import MIB, NOW, FakeWorkloads, deployment
from errors import ConflictError, NotFoundError
from metrics.prometheus_client import PrometheusConnectionError, query_cpu_throttle_percent as real_throttle_query
from metrics.sampler import STOPPED, LatchOutcome
from models import HPAInfo, LatchState, Mode, Safety, Sample, SpikeData, WorkloadRef, utcnow

API = WorkloadRef("Deployment", "default", "api")


class StubSampler:
    """Stands in for Sampler: 20 steady samples, completes at once."""

    def __init__(self, source, workload, interval, duration, progress=None):
        self.workload = workload
        self.state = LatchState.CREATED
        self.data = SpikeData()
        for i in range(20):
            self.data.add_sample(Sample(t=NOW.timestamp() + i * interval, cpu_cores=0.2, mem_bytes=64 * MIB),
                                 max_samples=1000)
        self.data.add_pod("api-7d4b9c-x2x9z")

    def start(self, cancel):
        self.state = LatchState.STOPPED
        return LatchOutcome(STOPPED, "", NOW, 100.0)


def _clients(workloads=None, hpas=()):
    autoscaling = MagicMock()
    autoscaling.list_namespaced_horizontal_pod_autoscaler.return_value.items = list(hpas)
    return orchestrator.ClusterClients(api_client=None, source=MagicMock(),
                                       workloads=workloads or FakeWorkloads(deployment()),
                                       autoscaling=autoscaling)


@pytest.fixture(autouse=True)
def no_prometheus(monkeypatch):
    monkeypatch.setattr(orchestrator.prom, 'query_cpu_throttle_percent', lambda *a, **k: None)


def test_run_latch_persists_result(monkeypatch, tmp_path):
    monkeypatch.setattr(orchestrator, 'Sampler', StubSampler)
    started = []

    result = orchestrator.run_latch(API, 5.0, 100.0, _clients(), threading.Event(),
                                    on_start=started.append, base_dir=str(tmp_path))

    assert len(started) == 1
    assert result.valid
    assert result.sample_count == 20
    assert result.planned_duration == timedelta(0)
    loaded = persistence.load(API, base_dir=str(tmp_path))
    assert loaded.data.pods == ["api-7d4b9c-x2x9z"]


def test_run_latch_refuses_concurrent_latch(monkeypatch, tmp_path):
    monkeypatch.setattr(orchestrator, 'Sampler', StubSampler)
    with persistence.latch_lock(API, str(tmp_path)):
        with pytest.raises(ConflictError):
            orchestrator.run_latch(API, 5.0, 100.0, _clients(), threading.Event(), base_dir=str(tmp_path))


def test_analyze_without_policy(make_latch, tmp_path):
    persistence.save(make_latch(completed_at=utcnow() - timedelta(minutes=5)), str(tmp_path))

    analysis = orchestrator.analyze(API, _clients(), policy_path=str(tmp_path / "none.yaml"),
                                    base_dir=str(tmp_path))

    assert analysis.resolution.mode == Mode.OBSERVE_ONLY
    assert analysis.recommendation.safety == Safety.SAFE
    assert analysis.recommendation.containers[0].recommended.cpu_request == pytest.approx(0.1)
    assert analysis.hpa is None


def test_analyze_applies_policy_bounds(make_latch, policy_file, tmp_path):
    persistence.save(make_latch(completed_at=utcnow() - timedelta(minutes=5)), str(tmp_path))
    analysis = orchestrator.analyze(API, _clients(), policy_path=policy_file(), base_dir=str(tmp_path))
    assert analysis.resolution.mode == Mode.APPLY_READY
    assert analysis.recommendation.containers[0].recommended.cpu_request == pytest.approx(0.25)


def test_analyze_stale_latch_is_unsafe(make_latch, tmp_path):
    persistence.save(make_latch(completed_at=utcnow() - timedelta(days=30)), str(tmp_path))
    analysis = orchestrator.analyze(API, _clients(), policy_path=str(tmp_path / "none.yaml"),
                                    base_dir=str(tmp_path))
    assert analysis.recommendation.safety == Safety.UNSAFE
    assert any("latch is stale" in w for w in analysis.recommendation.warnings)


def test_analyze_without_latch(tmp_path):
    with pytest.raises(NotFoundError):
        orchestrator.analyze(API, _clients(), policy_path=str(tmp_path / "none.yaml"), base_dir=str(tmp_path))


def test_export_renders_format(make_latch, tmp_path):
    persistence.save(make_latch(completed_at=utcnow() - timedelta(minutes=5)), str(tmp_path))
    analysis = orchestrator.analyze(API, _clients(), policy_path=str(tmp_path / "none.yaml"),
                                    base_dir=str(tmp_path))
    assert '"safety": "SAFE"' in orchestrator.export(analysis, "json")
    assert "kind: Deployment" in orchestrator.export(analysis, "patch")


def test_apply_end_to_end(monkeypatch, make_latch, policy_file, tmp_path):
    monkeypatch.setattr('applier.applier.resolve_identity', lambda *a, **k: Identity(kube_context="test"))
    persistence.save(make_latch(completed_at=utcnow() - timedelta(minutes=5)), str(tmp_path))
    clients = _clients()

    analysis = orchestrator.analyze(API, clients, policy_path=policy_file(), base_dir=str(tmp_path))
    result = orchestrator.apply(analysis, clients)

    assert result.applied
    assert len(clients.workloads.patches) == 1


def test_check_hpa_logs_failures():
    clients = _clients()
    clients.autoscaling.list_namespaced_horizontal_pod_autoscaler.side_effect = ApiException(status=403)
    assert orchestrator.check_hpa(API, clients) is None


def test_check_hpa_found():
    hpa = MagicMock()
    hpa.metadata.name = "api-hpa"
    hpa.spec.min_replicas = 2
    hpa.spec.max_replicas = 6
    hpa.spec.scale_target_ref.kind = "Deployment"
    hpa.spec.scale_target_ref.name = "api"
    assert orchestrator.check_hpa(API, _clients(hpas=[hpa])) == HPAInfo("api-hpa", 2, 6)


def test_throttle_evidence_tolerates_prometheus_errors(monkeypatch, make_latch):
    def boom(*a, **k):
        raise PrometheusConnectionError("request failed after 3 attempts")
    monkeypatch.setattr(orchestrator.prom, 'query_cpu_throttle_percent', boom)
    assert orchestrator.throttle_evidence(make_latch()) is None


def test_throttle_evidence_tolerates_non_json_reply(monkeypatch, make_latch):
    page = requests.Response()
    page.status_code = 200
    page._content = b'<html><body>Sign in</body></html>'
    monkeypatch.setattr(orchestrator.prom, 'query_cpu_throttle_percent', real_throttle_query)
    monkeypatch.setattr(orchestrator.prom, 'PROMETHEUS_URL', "http://prometheus:9090")
    monkeypatch.setattr(orchestrator.prom.requests, 'get', lambda *a, **k: page)

    assert orchestrator.throttle_evidence(make_latch()) is None


def test_sigint_cancels_then_interrupts():
    cancel = threading.Event()
    previous = orchestrator.install_sigint(cancel)
    try:
        handler = signal.getsignal(signal.SIGINT)
        handler(signal.SIGINT, None)
        assert cancel.is_set()
        with pytest.raises(KeyboardInterrupt):
            handler(signal.SIGINT, None)
        assert signal.getsignal(signal.SIGINT) is previous
    finally:
        signal.signal(signal.SIGINT, previous)
