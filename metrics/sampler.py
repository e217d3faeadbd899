"""Latch sampler: fixed-interval usage sampling fused with failure signals.

Threads:
- the caller's thread runs the tick loop (one metrics call per tick)
- an event consumer translates pod/event watch notifications into signals
- a progress dispatcher delivers snapshots to the optional callback

SpikeData is touched only under `self._lock`, and nothing under the lock
does I/O. The pod membership set is replaced wholesale (never mutated) so
readers take a reference under the lock and iterate it outside.
"""
import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Optional

from config import (
    LATCH_DURATION_SECONDS,
    LATCH_INTERVAL_SECONDS,
    LATCH_MAX_SAMPLES,
    LATCH_MIN_INTERVAL_SECONDS,
    MAX_CRITICAL_EVENTS,
    METRICS_CALL_DEADLINE_SECONDS,
    WATCH_BACKOFF_INITIAL_SECONDS,
    WATCH_BACKOFF_MAX_SECONDS,
)
from errors import FatalError, InvalidInputError, LatchError, TransientError, UnavailableError
from metrics.kube_source import PodEvent
from metrics.signals import SignalTracker
from metrics.workload_identity import OwnerRecord, pod_belongs_to
from models import LatchState, Sample, SpikeData, WorkloadRef

logger = logging.getLogger(__name__)

STOPPED = "stopped"
CANCELED = "canceled"
FAILED = "failed"

# Upper bound on a single cancellable sleep slice
_SLEEP_SLICE_SECONDS = 0.25
_STOP = object()

ProgressCallback = Callable[[Dict[str, Any]], None]


@dataclass
class LatchOutcome:
    status: str
    reason: str
    started_at: datetime
    elapsed: float

    @property
    def completed(self) -> bool:
        return self.status == STOPPED


class Sampler:
    """Drive one latch against one workload.

    Args:
        source: a KubeMetricsSource (or anything with the same methods)
        workload: target WorkloadRef
        interval: seconds between ticks (floor 1s)
        duration: planned latch length in seconds
        progress: optional callback receiving `snapshot()` dicts
        label_selector: pod selector; resolved from the workload when omitted
    """

    def __init__(self, source, workload: WorkloadRef,
                 interval: float = LATCH_INTERVAL_SECONDS,
                 duration: float = LATCH_DURATION_SECONDS,
                 progress: Optional[ProgressCallback] = None,
                 label_selector: Optional[str] = None,
                 call_deadline: float = METRICS_CALL_DEADLINE_SECONDS,
                 max_samples: int = LATCH_MAX_SAMPLES,
                 max_critical_events: int = MAX_CRITICAL_EVENTS,
                 backoff_initial: float = WATCH_BACKOFF_INITIAL_SECONDS,
                 backoff_max: float = WATCH_BACKOFF_MAX_SECONDS,
                 drain_seconds: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time):
        if interval < LATCH_MIN_INTERVAL_SECONDS:
            raise InvalidInputError(
                f"interval must be at least {LATCH_MIN_INTERVAL_SECONDS:g}s, got {interval:g}s")
        if duration < interval:
            raise InvalidInputError(f"duration ({duration:g}s) must be at least one interval ({interval:g}s)")
        expected = int(round(duration * 1000)) // int(round(interval * 1000))
        if expected > max_samples:
            raise InvalidInputError(
                f"duration/interval yields {expected} samples; the buffer holds at most {max_samples}")

        self.source = source
        self.workload = workload
        self.interval = float(interval)
        self.duration = float(duration)
        self.progress = progress
        self.label_selector = label_selector
        self.call_deadline = min(self.interval, call_deadline)
        self.max_samples = max_samples
        self.max_critical_events = max_critical_events
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.drain_seconds = drain_seconds
        self._clock = clock
        self._wall_clock = wall_clock

        self._lock = threading.Lock()
        self._data = SpikeData()
        self._members: FrozenSet[str] = frozenset()
        self._state = LatchState.CREATED
        self._fatal: Optional[str] = None
        self._stop_stream = threading.Event()
        self._progress_queue: "queue.Queue[Any]" = queue.Queue(maxsize=1)
        self._dropped_progress = 0
        self._started_mono: Optional[float] = None
        self._owners: Dict[str, OwnerRecord] = {}
        self._tracker = SignalTracker()
        self._finished = False

    @property
    def expected_samples(self) -> int:
        return int(round(self.duration * 1000)) // int(round(self.interval * 1000))

    @property
    def state(self) -> LatchState:
        with self._lock:
            return self._state

    @property
    def data(self) -> SpikeData:
        """The accumulator; only safe to read once `start` has returned."""
        if not self._finished:
            raise RuntimeError("latch still running; use snapshot()")
        return self._data

    def snapshot(self) -> Dict[str, Any]:
        """Scalar view of the running latch: counters and sequence lengths only."""
        with self._lock:
            d = self._data
            snap = {
                "state": self._state.value,
                "sampleCount": d.sample_count,
                "gaps": d.gaps,
                "oomKills": d.oom_kills,
                "restarts": d.restarts,
                "evictions": d.evictions,
                "crashLoopBackOffs": d.crash_loop_backoffs,
                "cpuSamples": len(d.cpu_samples),
                "memSamples": len(d.mem_samples),
                "criticalEvents": len(d.critical_events),
                "terminations": sum(d.termination_reasons.values()),
                "pods": len(self._members),
                "lastCpuCores": d.cpu_samples[-1] if d.cpu_samples else None,
                "lastMemBytes": d.mem_samples[-1] if d.mem_samples else None,
            }
        snap["expectedSamples"] = self.expected_samples
        snap["elapsedSeconds"] = (
            self._clock() - self._started_mono if self._started_mono is not None else 0.0
        )
        snap["durationSeconds"] = self.duration
        return snap

    def _set_state(self, state: LatchState) -> None:
        with self._lock:
            self._state = state
        logger.debug(f"latch {self.workload.namespace}/{self.workload} -> {state.value}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, cancel: threading.Event) -> LatchOutcome:
        """Run the latch; blocks until done, canceled or failed.

        Raises UnavailableError/FatalError only for failures before sampling
        begins (metrics service missing, no access). Once sampling runs,
        failures end the latch with status "failed".
        """
        if self._state != LatchState.CREATED:
            raise RuntimeError("a Sampler runs exactly once")
        started_at = datetime.fromtimestamp(self._wall_clock(), tz=timezone.utc)

        selector = self.label_selector
        if selector is None:
            selector = self.source.resolve_selector(self.workload)
            self.label_selector = selector
        pods_rv = self._prime(selector)

        self._started_mono = self._clock()
        self._set_state(LatchState.SAMPLING)
        logger.info(
            f"Latch started for {self.workload.namespace}/{self.workload} "
            f"(interval={self.interval:g}s, duration={self.duration:g}s, selector={selector!r})"
        )

        consumer = threading.Thread(target=self._consume_events, args=(selector, pods_rv),
                                    name="latch-events", daemon=True)
        dispatcher = threading.Thread(target=self._dispatch_progress,
                                      name="latch-progress", daemon=True)
        consumer.start()
        dispatcher.start()
        try:
            status = self._tick_loop(cancel, selector)
        finally:
            self._stop_stream.set()
            consumer.join(self.drain_seconds + 1.0)
            if consumer.is_alive():
                logger.warning("event consumer did not stop within the drain window")
            self._stop_dispatcher(dispatcher)

        elapsed = self._clock() - self._started_mono
        reason = ""
        if status == FAILED:
            reason = self._fatal or "latch failed"
            self._set_state(LatchState.FAILED)
        elif status == CANCELED:
            reason = "canceled by operator"
            self._set_state(LatchState.CANCELED)
        else:
            self._set_state(LatchState.STOPPED)
        self._finished = True
        if self._dropped_progress:
            logger.debug(f"dropped {self._dropped_progress} progress update(s)")
        logger.info(
            f"Latch {status} for {self.workload.namespace}/{self.workload}: "
            f"{self._data.sample_count} samples, {self._data.gaps} gaps in {elapsed:.1f}s"
        )
        return LatchOutcome(status=status, reason=reason, started_at=started_at, elapsed=elapsed)

    def _prime(self, selector: str) -> Optional[str]:
        """Check the metrics service, record restart baselines and initial membership."""
        try:
            self.source.list_pod_metrics(self.workload.namespace, selector, timeout=self.call_deadline)
        except TransientError as e:
            logger.warning(f"metrics preflight failed transiently: {e}")

        if self.workload.kind == "Deployment":
            self._owners = self.source.list_owners(self.workload.namespace)
        pods, resource_version = self.source.list_pods(self.workload.namespace, selector)
        members = set()
        for pod in pods:
            if not pod_belongs_to(pod, self.workload, self._owners):
                continue
            members.add((pod.get("metadata") or {}).get("name") or "")
            self._tracker.record_baseline(pod)
        self._members = frozenset(members)
        if not members:
            logger.warning(f"no pods currently match {self.workload}; ticks will record gaps until one appears")
        return resource_version

    # ------------------------------------------------------------------
    # Tick loop
    # ------------------------------------------------------------------
    def _sleep_until(self, target: float, cancel: threading.Event) -> bool:
        """Sleep until `target` on the monotonic clock. Returns True if canceled."""
        while True:
            if cancel.is_set():
                return True
            if self._fatal is not None:
                return False
            remaining = target - self._clock()
            if remaining <= 0:
                return False
            if cancel.wait(min(remaining, _SLEEP_SLICE_SECONDS)):
                return True

    def _tick_loop(self, cancel: threading.Event, selector: str) -> str:
        start = self._started_mono
        expected = self.expected_samples
        k = 0
        while k < expected:
            target = start + k * self.interval
            if self._sleep_until(target, cancel):
                return CANCELED
            if self._fatal is not None:
                return FAILED

            # Slots that ended while the previous tick overran are gaps
            late = int((self._clock() - target) // self.interval)
            if late > 0:
                skipped = min(late, expected - k)
                with self._lock:
                    self._data.gaps += skipped
                k += skipped
                if k >= expected:
                    break

            self._tick(selector)
            if self._fatal is not None:
                return FAILED
            k += 1

        if self._sleep_until(start + self.duration, cancel):
            return CANCELED
        if self._fatal is not None:
            return FAILED
        return STOPPED

    def _tick(self, selector: str) -> None:
        try:
            metrics = self.source.list_pod_metrics(
                self.workload.namespace, selector, timeout=self.call_deadline)
        except (TransientError, UnavailableError) as e:
            logger.debug(f"tick gap: {e}")
            with self._lock:
                self._data.gaps += 1
            self._offer_progress()
            return
        except LatchError as e:
            self._fatal = str(e)
            logger.error(f"metrics source failed: {e}")
            return

        with self._lock:
            members = self._members
        usage = [m for m in metrics if m.pod_name in members]

        with self._lock:
            if not usage:
                self._data.gaps += 1
            else:
                sample = Sample(
                    t=self._wall_clock(),
                    cpu_cores=max(m.cpu_cores for m in usage),
                    mem_bytes=max(m.mem_bytes for m in usage),
                )
                self._data.add_sample(sample, self.max_samples)
                for m in usage:
                    self._data.add_pod(m.pod_name)
        self._offer_progress()

    # ------------------------------------------------------------------
    # Event consumer
    # ------------------------------------------------------------------
    def _consume_events(self, selector: str, pods_rv: Optional[str]) -> None:
        backoff = self.backoff_initial
        while not self._stop_stream.is_set():
            try:
                for event in self.source.watch_pod_state(
                        self.workload.namespace, selector, self._stop_stream,
                        pods_resource_version=pods_rv):
                    self._handle_event(event)
                    backoff = self.backoff_initial
                return
            except FatalError as e:
                self._fatal = f"event stream: {e}"
                logger.error(self._fatal)
                return
            except LatchError as e:
                logger.warning(f"event stream dropped ({e}); reconnecting in {backoff:g}s")
                pods_rv = None
                if self._stop_stream.wait(backoff):
                    return
                backoff = min(backoff * 2, self.backoff_max)
            except Exception as e:
                logger.exception("event consumer crashed")
                self._fatal = f"event stream: {e}"
                return

    def _handle_event(self, event: PodEvent) -> None:
        obj = event.object or {}
        with self._lock:
            members = self._members

        if event.type == "EVENT":
            signals = self._tracker.from_event(obj, members)
        else:
            if not pod_belongs_to(obj, self.workload, self._owners):
                return
            name = (obj.get("metadata") or {}).get("name") or ""
            signals = self._tracker.from_pod(obj)
            if event.type == "DELETED":
                self._tracker.forget_pod(obj)
                new_members = members - {name}
            else:
                new_members = members | {name}
            if new_members != members:
                with self._lock:
                    self._members = frozenset(new_members)

        if not signals:
            return
        with self._lock:
            for signal in signals:
                self._data.apply_signal(signal, self.max_critical_events)
        for signal in signals:
            if signal.message:
                logger.info(f"[{self.workload.namespace}/{self.workload}] {signal.message}")

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------
    def _offer_progress(self) -> None:
        if self.progress is None:
            return
        snap = self.snapshot()
        try:
            self._progress_queue.put_nowait(snap)
        except queue.Full:
            self._dropped_progress += 1

    def _dispatch_progress(self) -> None:
        while True:
            item = self._progress_queue.get()
            if item is _STOP:
                return
            try:
                self.progress(item)
            except Exception:
                logger.exception("progress callback failed")

    def _stop_dispatcher(self, dispatcher: threading.Thread) -> None:
        try:
            self._progress_queue.put(_STOP, timeout=self.drain_seconds + 1.0)
        except queue.Full:
            logger.warning("progress callback is blocked; abandoning dispatcher")
            return
        dispatcher.join(self.drain_seconds + 1.0)
