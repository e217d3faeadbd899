"""
Tests for the latch sampler

Time is simulated: the cancel token's wait() advances a fake monotonic
clock, so a five minute latch runs in milliseconds.
"""
import threading
import time
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import FatalError, InvalidInputError, TransientError, UnavailableError
from metrics.kube_source import ContainerUsage, PodEvent, PodMetric
from metrics.sampler import CANCELED, FAILED, STOPPED, Sampler
from metrics.workload_identity import OwnerRecord
from models import LatchState, WorkloadRef

MIB = 1024 ** 2
API = WorkloadRef("Deployment", "default", "api")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeCancel:
    """Cancel token whose wait() advances the fake clock instead of sleeping."""

    def __init__(self, clock, cancel_at=None):
        self.clock = clock
        self.cancel_at = cancel_at
        self._set = False

    def is_set(self):
        if self.cancel_at is not None and self.clock.now >= self.cancel_at:
            self._set = True
        return self._set

    def set(self):
        self._set = True

    def wait(self, timeout):
        self.clock.now += timeout
        return self.is_set()


def _pod(name, restarts=0, last_terminated=None):
    cs = {"name": "app", "restartCount": restarts, "state": {"running": {}}, "lastState": {}}
    if last_terminated:
        cs["lastState"]["terminated"] = last_terminated
    return {
        "metadata": {
            "name": name, "namespace": "default", "uid": f"uid-{name}",
            "ownerReferences": [{"kind": "ReplicaSet", "name": "api-7d9f", "uid": "rs-1", "controller": True}],
        },
        "status": {"containerStatuses": [cs]},
    }


def _usage(name, cpu, mem):
    return PodMetric(pod_name=name, containers=[ContainerUsage("app", cpu, mem)])


class FakeSource:
    """Scripted KubeMetricsSource."""

    def __init__(self, metrics=None, pods=None, events=None, wait_for_events_on_call=None):
        self.metrics = metrics or (lambda call: [_usage("api-7d9f-a", 0.1, 100 * MIB)])
        self.pods = pods if pods is not None else [_pod("api-7d9f-a")]
        self.events = events or []
        self.wait_for_events_on_call = wait_for_events_on_call
        self.delivered = threading.Event()
        self.calls = 0

    def resolve_selector(self, ref):
        return "app=api"

    def list_owners(self, namespace):
        return {"rs-1": OwnerRecord("ReplicaSet", "api-7d9f", "Deployment", "api", "d-1")}

    def list_pods(self, namespace, selector):
        return self.pods, "100"

    def list_pod_metrics(self, namespace, selector, timeout=None):
        call = self.calls
        self.calls += 1
        if self.wait_for_events_on_call is not None and call == self.wait_for_events_on_call:
            assert self.delivered.wait(5)
        return self.metrics(call)

    def watch_pod_state(self, namespace, selector, stop_event, pods_resource_version=None):
        for event in self.events:
            yield event
        self.delivered.set()
        stop_event.wait()


class FlakyStream(FakeSource):
    """Watch that raises `error` on its first `failures` calls, then streams normally."""

    def __init__(self, failures, error=TransientError, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.error = error
        self.watch_calls = []

    def watch_pod_state(self, namespace, selector, stop_event, pods_resource_version=None):
        self.watch_calls.append(pods_resource_version)
        if len(self.watch_calls) <= self.failures:
            raise self.error("pods watch: access denied" if self.error is FatalError
                             else "pods watch: connection reset by peer")
        yield from super().watch_pod_state(namespace, selector, stop_event, pods_resource_version)


class RecordingStop(threading.Event):
    """Stream stop flag that records reconnect backoffs instead of sleeping through them."""

    def __init__(self):
        super().__init__()
        self.backoffs = []

    def wait(self, timeout=None):
        if timeout is None:
            return super().wait()
        self.backoffs.append(timeout)
        return self.is_set()


def _consumer_thread():
    return next(t for t in threading.enumerate() if t.name == "latch-events")


def _run(source, interval=5.0, duration=300.0, cancel_at=None, progress=None, stream_stop=None, **kwargs):
    clock = FakeClock()
    sampler = Sampler(source, API, interval=interval, duration=duration, progress=progress,
                      drain_seconds=0.2, clock=clock, wall_clock=lambda: 1_767_000_000 + clock.now, **kwargs)
    if stream_stop is not None:
        sampler._stop_stream = stream_stop
    outcome = sampler.start(FakeCancel(clock, cancel_at))
    return sampler, outcome


class TestSampling:
    """Tests for the tick loop"""

    def test_short_healthy_latch(self):
        sampler, outcome = _run(FakeSource())
        assert outcome.status == STOPPED
        assert outcome.completed
        assert outcome.elapsed == pytest.approx(300.0)
        assert sampler.state == LatchState.STOPPED
        assert sampler.data.sample_count == 60
        assert sampler.data.gaps == 0
        assert sampler.data.pods == ["api-7d9f-a"]

    def test_sample_times_strictly_increase(self):
        sampler, _ = _run(FakeSource(), duration=60.0)
        times = sampler.data.sample_times
        assert all(b > a for a, b in zip(times, times[1:]))

    def test_busiest_member_per_resource(self):
        def metrics(call):
            return [
                _usage("api-7d9f-a", 0.3, 100 * MIB),
                _usage("api-7d9f-b", 0.1, 400 * MIB),
                _usage("other-1", 5.0, 4000 * MIB),
            ]
        source = FakeSource(metrics=metrics, pods=[_pod("api-7d9f-a"), _pod("api-7d9f-b")])
        sampler, _ = _run(source, duration=20.0)
        assert set(sampler.data.cpu_samples) == {0.3}
        assert set(sampler.data.mem_samples) == {400 * MIB}

    def test_transient_errors_become_gaps(self):
        def metrics(call):
            if call in (3, 4):
                raise TransientError("metrics API: 500 Internal Server Error")
            return [_usage("api-7d9f-a", 0.1, 100 * MIB)]
        sampler, outcome = _run(FakeSource(metrics=metrics), duration=50.0)
        assert outcome.status == STOPPED
        assert sampler.data.sample_count == 8
        assert sampler.data.gaps == 2

    def test_no_member_usage_is_a_gap(self):
        source = FakeSource(metrics=lambda call: [_usage("other-1", 1.0, MIB)])
        sampler, _ = _run(source, duration=20.0)
        assert sampler.data.sample_count == 0
        assert sampler.data.gaps == 4

    def test_fatal_error_fails_latch(self):
        def metrics(call):
            if call == 5:
                raise FatalError("metrics API: access denied (403 Forbidden)")
            return [_usage("api-7d9f-a", 0.1, 100 * MIB)]
        sampler, outcome = _run(FakeSource(metrics=metrics))
        assert outcome.status == FAILED
        assert "access denied" in outcome.reason
        assert sampler.state == LatchState.FAILED
        assert sampler.data.sample_count == 4

    def test_cancel_returns_partial(self):
        sampler, outcome = _run(FakeSource(), cancel_at=50.0)
        assert outcome.status == CANCELED
        assert outcome.reason == "canceled by operator"
        assert sampler.state == LatchState.CANCELED
        assert sampler.data.sample_count == 10

    def test_missing_metrics_service_raises_before_sampling(self):
        def metrics(call):
            raise UnavailableError("metrics API: not found")
        with pytest.raises(UnavailableError):
            _run(FakeSource(metrics=metrics))


class TestSignals:
    """Tests for failure signals during a latch"""

    def test_oomkill_mid_latch(self):
        oom = {"reason": "OOMKilled", "exitCode": 137, "containerID": "containerd://1",
               "finishedAt": "2026-01-10T11:02:00Z"}
        events = [PodEvent("MODIFIED", _pod("api-7d9f-a", restarts=1, last_terminated=oom))]
        # call 25 is the tick at t=120s
        source = FakeSource(events=events, wait_for_events_on_call=25)
        sampler, outcome = _run(source)
        assert outcome.status == STOPPED
        assert sampler.data.oom_kills == 1
        assert sampler.data.restarts == 1
        assert sampler.data.exit_codes == {137: 1}
        assert any("OOMKilled" in e for e in sampler.data.critical_events)

    def test_events_for_other_pods_ignored(self):
        stranger = _pod("worker-1", restarts=3)
        stranger["metadata"]["ownerReferences"] = [{"kind": "ReplicaSet", "name": "worker-5c6d",
                                                    "uid": "rs-2", "controller": True}]
        source = FakeSource(events=[PodEvent("MODIFIED", stranger)], wait_for_events_on_call=2)
        sampler, _ = _run(source, duration=20.0)
        assert sampler.data.restarts == 0


class TestEventStream:
    """Tests for the event consumer's reconnect and shutdown paths"""

    def test_reconnect_backoff_doubles_to_cap(self):
        source = FlakyStream(failures=7, wait_for_events_on_call=2)
        stop = RecordingStop()
        sampler, outcome = _run(source, duration=20.0, stream_stop=stop,
                                backoff_initial=1.0, backoff_max=30.0)

        assert outcome.status == STOPPED
        assert stop.backoffs == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
        # the initial list's resourceVersion is only used for the first watch
        assert source.watch_calls == ["100"] + [None] * 7
        assert sampler.data.sample_count == 4

    def test_fatal_stream_error_fails_latch(self):
        def metrics(call):
            if call == 2:
                _consumer_thread().join(5)
            return [_usage("api-7d9f-a", 0.1, 100 * MIB)]
        source = FlakyStream(failures=1, error=FatalError, metrics=metrics)

        sampler, outcome = _run(source, duration=60.0)

        assert outcome.status == FAILED
        assert outcome.reason == "event stream: pods watch: access denied"
        assert sampler.state == LatchState.FAILED
        assert source.watch_calls == ["100"]
        assert sampler.data.sample_count <= 2

    def test_consumer_stops_within_drain_window_on_cancel(self):
        consumers = []

        def metrics(call):
            if call == 1:
                consumers.append(_consumer_thread())
            return [_usage("api-7d9f-a", 0.1, 100 * MIB)]
        # a 30s reconnect wait is pending when the latch is canceled
        source = FlakyStream(failures=10 ** 6, metrics=metrics)

        began = time.monotonic()
        _, outcome = _run(source, cancel_at=50.0, backoff_initial=30.0)

        assert outcome.status == CANCELED
        assert not consumers[0].is_alive()
        assert time.monotonic() - began < 5.0


class TestProgress:
    """Tests for the progress dispatcher"""

    def test_progress_receives_scalar_snapshots(self):
        received = []
        sampler, _ = _run(FakeSource(), duration=30.0, progress=received.append)
        assert received
        snap = received[-1]
        assert snap["expectedSamples"] == 6
        for value in snap.values():
            assert not isinstance(value, (list, dict))

    def test_slow_callback_does_not_stall_ticks(self):
        def slow(snapshot):
            time.sleep(0.05)
        sampler, outcome = _run(FakeSource(), duration=100.0, progress=slow)
        assert outcome.status == STOPPED
        assert sampler.data.sample_count == 20

    def test_failing_callback_is_contained(self):
        def broken(snapshot):
            raise RuntimeError("render failed")
        _, outcome = _run(FakeSource(), duration=20.0, progress=broken)
        assert outcome.status == STOPPED


class TestLifecycle:
    """Tests for construction and lifecycle rules"""

    def test_interval_floor(self):
        with pytest.raises(InvalidInputError):
            Sampler(FakeSource(), API, interval=0.5, duration=60)

    def test_duration_shorter_than_interval(self):
        with pytest.raises(InvalidInputError):
            Sampler(FakeSource(), API, interval=10, duration=5)

    def test_buffer_bound(self):
        with pytest.raises(InvalidInputError):
            Sampler(FakeSource(), API, interval=1, duration=1000, max_samples=100)

    def test_runs_once(self):
        sampler, _ = _run(FakeSource(), duration=10.0)
        with pytest.raises(RuntimeError):
            sampler.start(FakeCancel(FakeClock()))

    def test_data_unavailable_while_running(self):
        sampler = Sampler(FakeSource(), API, interval=5, duration=10)
        with pytest.raises(RuntimeError):
            sampler.data
        assert sampler.snapshot()["state"] == "CREATED"
