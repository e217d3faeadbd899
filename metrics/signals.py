"""Translate pod status transitions and cluster events into failure signals.

A SignalTracker belongs to a single consumer thread. It keeps the
de-duplication state (restart baselines, seen terminations, seen events)
so that a dropped and re-established watch can redeliver objects without
double counting.
"""
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from models import FailureSignal, SignalKind, parse_time

logger = logging.getLogger(__name__)

CRITICAL_EVENT_REASONS = frozenset({"OOMKilling", "FailedScheduling", "FailedMount", "BackOff"})
EVENT_MESSAGE_LIMIT = 100

_IMAGE_PULL_REASONS = frozenset({"ImagePullBackOff", "ErrImagePull"})
_CREATE_REASONS = frozenset({"CreateContainerConfigError", "CreateContainerError"})

EXIT_CODE_MEANINGS = {
    0: "success",
    1: "application error",
    2: "misuse of shell builtin",
    126: "command not executable",
    127: "command not found",
    130: "SIGINT (interrupted)",
    134: "SIGABRT (abort)",
    137: "SIGKILL (OOM or forced kill)",
    139: "SIGSEGV (segmentation fault)",
    143: "SIGTERM (graceful termination)",
}


def describe_exit_code(code: int) -> str:
    if code in EXIT_CODE_MEANINGS:
        return EXIT_CODE_MEANINGS[code]
    if 128 < code < 160:
        return f"killed by signal {code - 128}"
    return "unknown"


def _truncate(message: str, limit: int = EVENT_MESSAGE_LIMIT) -> str:
    message = " ".join((message or "").split())
    if len(message) > limit:
        return message[:limit - 3] + "..."
    return message


class SignalTracker:
    """Stateful translator from pod/event objects to FailureSignals."""

    def __init__(self):
        self._restart_seen: Dict[Tuple[str, str], int] = {}
        self._terminations_seen: Set[Tuple[str, str]] = set()
        self._waiting_reason: Dict[Tuple[str, str], Optional[str]] = {}
        self._evicted: Set[str] = set()
        self._events_seen: Set[str] = set()

    def record_baseline(self, pod: Dict[str, Any]) -> None:
        """Remember the state of a pod present at latch start without emitting signals."""
        uid = _pod_uid(pod)
        status = pod.get("status") or {}
        for cs in _container_statuses(status):
            key = (uid, cs.get("name") or "")
            self._restart_seen[key] = int(cs.get("restartCount") or 0)
            for term in _terminations(cs):
                self._terminations_seen.add(_termination_key(cs, term))
            self._waiting_reason[key] = ((cs.get("state") or {}).get("waiting") or {}).get("reason")
        if status.get("reason") == "Evicted":
            self._evicted.add(uid)

    def forget_pod(self, pod: Dict[str, Any]) -> None:
        uid = _pod_uid(pod)
        for key in [k for k in self._restart_seen if k[0] == uid]:
            del self._restart_seen[key]
            self._waiting_reason.pop(key, None)

    def from_pod(self, pod: Dict[str, Any]) -> List[FailureSignal]:
        uid = _pod_uid(pod)
        meta = pod.get("metadata") or {}
        pod_name = meta.get("name") or ""
        status = pod.get("status") or {}
        signals: List[FailureSignal] = []

        for cs in _container_statuses(status):
            container = cs.get("name") or ""
            key = (uid, container)

            count = int(cs.get("restartCount") or 0)
            previous = self._restart_seen.get(key, 0)
            if count > previous:
                signals.append(FailureSignal(kind=SignalKind.RESTART, count=count - previous))
            # A lower count means the pod was recreated under the same UID key; re-base.
            self._restart_seen[key] = count

            for term in _terminations(cs):
                tkey = _termination_key(cs, term)
                if tkey in self._terminations_seen:
                    continue
                self._terminations_seen.add(tkey)
                signals.extend(self._termination_signals(container, term))

            waiting = ((cs.get("state") or {}).get("waiting") or {}).get("reason")
            if waiting != self._waiting_reason.get(key):
                signals.extend(_waiting_signals(container, waiting))
            self._waiting_reason[key] = waiting

        if status.get("reason") == "Evicted" and uid not in self._evicted:
            self._evicted.add(uid)
            detail = _truncate(status.get("message") or "")
            message = f"Evicted: pod {pod_name}"
            if detail:
                message += f" ({detail})"
            signals.append(FailureSignal(kind=SignalKind.EVICTION, message=message))

        return signals

    def from_event(self, event: Dict[str, Any], member_pods: Set[str]) -> List[FailureSignal]:
        """Critical cluster events about member pods, once per event UID."""
        reason = event.get("reason") or ""
        if reason not in CRITICAL_EVENT_REASONS:
            return []
        involved = event.get("involvedObject") or {}
        if involved.get("kind") != "Pod" or involved.get("name") not in member_pods:
            return []
        meta = event.get("metadata") or {}
        event_id = meta.get("uid") or f"{meta.get('name')}/{event.get('count')}"
        if event_id in self._events_seen:
            return []
        self._events_seen.add(event_id)
        when = parse_time(event.get("lastTimestamp") or event.get("eventTime"))
        message = f"{reason}: {_truncate(event.get('message') or '')}"
        return [FailureSignal(kind=SignalKind.CRITICAL_EVENT, time=when, message=message)]

    def _termination_signals(self, container: str, term: Dict[str, Any]) -> List[FailureSignal]:
        reason = term.get("reason") or "Unknown"
        exit_code = term.get("exitCode")
        exit_code = int(exit_code) if exit_code is not None else None
        finished = parse_time(term.get("finishedAt"))
        signals = [FailureSignal(kind=SignalKind.TERMINATION, reason=reason,
                                 exit_code=exit_code, time=finished)]
        if reason == "OOMKilled":
            logger.warning(f"OOMKill observed for container {container}")
            signals.append(FailureSignal(
                kind=SignalKind.OOM_KILL,
                time=finished,
                message=f"OOMKilled: container {container} (exit code {exit_code if exit_code is not None else 137})",
            ))
        return signals


def _waiting_signals(container: str, reason: Optional[str]) -> List[FailureSignal]:
    if reason == "CrashLoopBackOff":
        return [FailureSignal(kind=SignalKind.CRASH_LOOP,
                              message=f"CrashLoopBackOff: container {container}")]
    if reason in _IMAGE_PULL_REASONS or reason in _CREATE_REASONS:
        return [FailureSignal(kind=SignalKind.CRITICAL_EVENT,
                              message=f"{reason}: container {container}")]
    return []


def _pod_uid(pod: Dict[str, Any]) -> str:
    meta = pod.get("metadata") or {}
    return meta.get("uid") or meta.get("name") or ""


def _container_statuses(status: Dict[str, Any]) -> List[Dict[str, Any]]:
    return list(status.get("initContainerStatuses") or []) + list(status.get("containerStatuses") or [])


def _terminations(cs: Dict[str, Any]) -> List[Dict[str, Any]]:
    found = []
    for state in (cs.get("lastState") or {}, cs.get("state") or {}):
        term = state.get("terminated")
        if term:
            found.append(term)
    return found


def _termination_key(cs: Dict[str, Any], term: Dict[str, Any]) -> Tuple[str, str]:
    container_id = term.get("containerID") or cs.get("containerID") or cs.get("name") or ""
    return container_id, str(term.get("finishedAt") or "")
