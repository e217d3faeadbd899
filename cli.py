#!/usr/bin/env python3
"""
kubenow command line

Results go to stdout; progress, logs and errors go to stderr so output can
be piped. Exit codes: 0 ok, 2 invalid input, 3 runtime error.
"""
import argparse
import logging
import signal
import sys
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

import orchestrator
import ui
from analysis.export import FORMATS
from analysis.recommend import hpa_warning
from config import (
    LATCH_DURATION_SECONDS,
    LATCH_INTERVAL_SECONDS,
    UI_ENABLED,
    ConfigValidationError,
    setup_logging,
    validate_config,
)
from errors import EXIT_INVALID_INPUT, EXIT_OK, EXIT_RUNTIME, LatchError, PolicyError
from models import AlignmentRecommendation, LatchResult, WorkloadRef, format_time
from normalize.durations import format_duration, parse_duration
from normalize.quantity import format_cpu, format_memory
from persistence import latch_file_path, load
from policy.gate import ABSENT, check_audit_path, load_policy, resolve_mode, validate_policy

logger = logging.getLogger(__name__)


def _seconds(text: str) -> float:
    """argparse type for Go-style durations ("90s", "15m", "1h30m")."""
    try:
        return parse_duration(text).total_seconds()
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _age(text: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _ref(args: argparse.Namespace) -> WorkloadRef:
    return WorkloadRef.parse(args.workload, args.namespace)


def _emit(text: str, output: Optional[str] = None) -> None:
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            f.write(text)
        print(f"wrote {output}", file=sys.stderr)
    else:
        sys.stdout.write(text)
        sys.stdout.flush()


# =============================================================================
# Rendering
# =============================================================================
def format_latch(result: LatchResult) -> str:
    lines = [
        f"Workload:   {result.workload.namespace}/{result.workload}",
        f"Timestamp:  {format_time(result.timestamp)}",
        f"Duration:   {format_duration(result.duration)} (planned {format_duration(result.planned_duration)})",
        f"Interval:   {format_duration(result.interval)}",
        f"Samples:    {result.sample_count} ({result.gaps} gaps)",
        f"Valid:      {'yes' if result.valid else 'no'}" + (f" ({result.reason})" if result.reason else ""),
    ]
    if result.cpu is not None:
        c = result.cpu
        lines.append(f"CPU:        p50={format_cpu(c.p50)} p95={format_cpu(c.p95)} "
                     f"p99={format_cpu(c.p99)} max={format_cpu(c.max)}")
    if result.memory is not None:
        m = result.memory
        lines.append(f"Memory:     p50={format_memory(m.p50)} p95={format_memory(m.p95)} "
                     f"p99={format_memory(m.p99)} max={format_memory(m.max)}")
    d = result.data
    lines.append(f"Signals:    {d.oom_kills} OOMKill, {d.restarts} restart, "
                 f"{d.evictions} eviction, {d.crash_loop_backoffs} CrashLoopBackOff")
    if d.pods:
        lines.append(f"Pods:       {', '.join(d.pods)}")
    return "\n".join(lines) + "\n"


def format_recommendation(rec: AlignmentRecommendation, mode_line: str = "") -> str:
    lines = [
        f"Workload:   {rec.workload.namespace}/{rec.workload}",
        f"Safety:     {rec.safety.value}",
        f"Confidence: {rec.confidence.value}",
    ]
    if mode_line:
        lines.append(f"Policy:     {mode_line}")
    for c in rec.containers:
        lines.append("")
        lines.append(f"Container {c.name}:")
        rows = (
            ("cpu request", format_cpu(c.current.cpu_request), format_cpu(c.recommended.cpu_request), "cpuRequest"),
            ("cpu limit", format_cpu(c.current.cpu_limit), format_cpu(c.recommended.cpu_limit), "cpuLimit"),
            ("memory request", format_memory(c.current.memory_request),
             format_memory(c.recommended.memory_request), "memoryRequest"),
            ("memory limit", format_memory(c.current.memory_limit),
             format_memory(c.recommended.memory_limit), "memoryLimit"),
        )
        for label, cur, new, key in rows:
            delta = c.delta.get(key)
            delta_text = f" ({delta:+.1f}%)" if delta is not None else ""
            lines.append(f"  {label:<15} {cur:>8} -> {new:<8}{delta_text}")
        if c.capped_fields:
            lines.append(f"  capped: {', '.join(c.capped_fields)}")
    if rec.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {w}" for w in rec.warnings)
    return "\n".join(lines) + "\n"


def _progress_printer(prefix: str):
    def _print(snapshot: Dict[str, Any]) -> None:
        print(
            f"[{prefix}] {snapshot['sampleCount']}/{snapshot['expectedSamples']} samples, "
            f"{snapshot['gaps']} gaps, {snapshot['elapsedSeconds']:.0f}s/{snapshot['durationSeconds']:.0f}s, "
            f"{snapshot['pods']} pods, {snapshot['oomKills']} OOMKills, {snapshot['restarts']} restarts",
            file=sys.stderr, flush=True,
        )
    return _print


# =============================================================================
# Commands
# =============================================================================
def _run_latch(args: argparse.Namespace, headless: bool) -> int:
    ref = _ref(args)
    clients = orchestrator.connect_clients()
    cancel = threading.Event()

    if not headless:
        hpa = orchestrator.check_hpa(ref, clients)
        if hpa is not None:
            print(f"warning: {hpa_warning(hpa)}", file=sys.stderr)
            if not args.acknowledge_hpa:
                print("warning: apply will be blocked unless --acknowledge-hpa is passed", file=sys.stderr)

    server = None
    on_start = None
    if not headless and UI_ENABLED and not args.no_ui:
        server = ui.serve_in_background()
        if server is not None:
            print(f"Live view: {server.url}", file=sys.stderr)

            def on_start(sampler):
                ui.register_sampler(sampler, f"{ref.namespace}/{ref}")

    previous = orchestrator.install_sigint(cancel)
    try:
        result = orchestrator.run_latch(
            ref, args.interval, args.duration, clients, cancel,
            progress=_progress_printer("collect" if headless else "latch"),
            on_start=on_start,
        )
    finally:
        ui.register_sampler(None)
        if server is not None:
            server.stop()
        signal.signal(signal.SIGINT, previous)

    _emit(format_latch(result))
    print(f"saved {latch_file_path(ref)}", file=sys.stderr)
    if not result.valid:
        print(f"warning: latch is not valid for recommendations: {result.reason}", file=sys.stderr)
    return EXIT_OK


def cmd_latch(args: argparse.Namespace) -> int:
    return _run_latch(args, headless=False)


def cmd_collect(args: argparse.Namespace) -> int:
    return _run_latch(args, headless=True)


def cmd_analyze(args: argparse.Namespace) -> int:
    clients = orchestrator.connect_clients()
    analysis = orchestrator.analyze(_ref(args), clients, policy_path=args.policy,
                                    acknowledge_hpa=args.acknowledge_hpa)
    res = analysis.resolution
    _emit(format_recommendation(analysis.recommendation, f"{res.mode.value} ({res.status})"))
    return EXIT_OK


def cmd_export(args: argparse.Namespace) -> int:
    clients = orchestrator.connect_clients()
    analysis = orchestrator.analyze(_ref(args), clients, policy_path=args.policy,
                                    acknowledge_hpa=args.acknowledge_hpa)
    _emit(orchestrator.export(analysis, args.format), args.output)
    return EXIT_OK


def cmd_apply(args: argparse.Namespace) -> int:
    clients = orchestrator.connect_clients()
    analysis = orchestrator.analyze(_ref(args), clients, policy_path=args.policy,
                                    acknowledge_hpa=args.acknowledge_hpa)
    result = orchestrator.apply(analysis, clients, acknowledge_hpa=args.acknowledge_hpa)
    if result.recommendation is not None:
        _emit(format_recommendation(result.recommendation))
    if result.audit_file:
        print(f"audit: {result.audit_file}", file=sys.stderr)
    for d in result.drift:
        print(f"drift: container {d['container']} {d['field']} requested {d['requested']}, "
              f"admitted {d['admitted']}", file=sys.stderr)
    if result.applied:
        print(f"applied to {analysis.latch.workload.namespace}/{analysis.latch.workload}"
              + (f" ({result.reason})" if result.reason else ""), file=sys.stderr)
        return EXIT_OK
    print(PolicyError(f"apply {result.outcome}: {result.reason}").user_message(), file=sys.stderr)
    return EXIT_RUNTIME


def cmd_status(args: argparse.Namespace) -> int:
    ref = _ref(args)
    _emit(format_latch(load(ref, max_age=args.max_age)))
    return EXIT_OK


def cmd_validate_policy(args: argparse.Namespace) -> int:
    loaded = load_policy(args.policy)
    if loaded.status == ABSENT:
        print(f"no policy at {loaded.path} (ObserveOnly)")
        return EXIT_OK
    if loaded.policy is None:
        print(f"error [InvalidInput]: {loaded.path}: {loaded.message}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    result = validate_policy(loaded.policy)
    problems: List[str] = [str(e) for e in result.errors]
    if args.check_paths and loaded.policy.audit.path:
        try:
            check_audit_path(loaded.policy.audit.path)
        except OSError as e:
            problems.append(f"audit.path: not writable: {e}")

    if problems:
        for p in problems:
            print(f"  - {p}", file=sys.stderr)
        print(f"error [InvalidInput]: {loaded.path}: validation failed ({len(problems)} errors)", file=sys.stderr)
        return EXIT_INVALID_INPUT

    sample = WorkloadRef(kind="Deployment", namespace=args.namespace, name="-")
    mode = resolve_mode(loaded, sample, result)
    print(f"policy {loaded.path} is valid (sha256 {loaded.digest[:12]})")
    print(f"mode for namespace {args.namespace}: {mode.mode.value} ({mode.status})")
    return EXIT_OK


# =============================================================================
# Parser
# =============================================================================
def _workload_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("workload", help="Workload as kind/name, e.g. deploy/api or sts/db")
    p.add_argument("-n", "--namespace", default="default", help="Namespace (default: default)")


def _latch_args(p: argparse.ArgumentParser) -> None:
    _workload_args(p)
    p.add_argument("--duration", type=_seconds, default=LATCH_DURATION_SECONDS,
                   help="Latch length, e.g. 15m or 1h (default from LATCH_DURATION_SECONDS)")
    p.add_argument("--interval", type=_seconds, default=LATCH_INTERVAL_SECONDS,
                   help="Sampling interval, at least 1s (default from LATCH_INTERVAL_SECONDS)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kubenow", description="Latch-based workload right-sizing")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    sub = parser.add_subparsers(dest="command", required=True)

    latch = sub.add_parser("latch", help="Sample a workload and serve the live view")
    _latch_args(latch)
    latch.add_argument("--acknowledge-hpa", action="store_true", help="Acknowledge an HPA on the workload")
    latch.add_argument("--no-ui", action="store_true", help="Do not start the live view")
    latch.set_defaults(func=cmd_latch)

    collect = sub.add_parser("collect", help="Sample a workload headless; progress on stderr")
    _latch_args(collect)
    collect.set_defaults(func=cmd_collect)

    for name, func, help_text in (
        ("analyze", cmd_analyze, "Recommend resources from the persisted latch (no mutation)"),
        ("apply", cmd_apply, "Apply the recommendation under the admin policy"),
    ):
        p = sub.add_parser(name, help=help_text)
        _workload_args(p)
        p.add_argument("--policy", default=None, help="Policy file (default: $KUBENOW_POLICY or /etc/kubenow/policy.yaml)")
        p.add_argument("--acknowledge-hpa", action="store_true", help="Proceed although an HPA targets the workload")
        p.set_defaults(func=func)

    export = sub.add_parser("export", help="Render the recommendation as patch, manifest, diff or json")
    _workload_args(export)
    export.add_argument("--format", choices=FORMATS, default="patch", help="Output format (default: patch)")
    export.add_argument("-o", "--output", default=None, help="Write to FILE instead of stdout")
    export.add_argument("--policy", default=None, help="Policy file used for bounds")
    export.add_argument("--acknowledge-hpa", action="store_true", help="Proceed although an HPA targets the workload")
    export.set_defaults(func=cmd_export)

    status = sub.add_parser("status", help="Print the persisted latch metadata")
    _workload_args(status)
    status.add_argument("--max-age", type=_age, default=None, help="Mark the latch stale beyond this age, e.g. 7d")
    status.set_defaults(func=cmd_status)

    validate = sub.add_parser("validate-policy", help="Validate the admin policy file")
    validate.add_argument("--policy", default=None, help="Policy file to validate")
    validate.add_argument("--check-paths", action="store_true", help="Also check the audit path is writable")
    validate.add_argument("-n", "--namespace", default="default", help="Namespace to resolve the mode for")
    validate.set_defaults(func=cmd_validate_policy)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return EXIT_INVALID_INPUT if e.code else EXIT_OK

    setup_logging(args.log_level)
    try:
        validate_config()
    except ConfigValidationError as e:
        print(f"error [InvalidInput]: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    try:
        return args.func(args)
    except LatchError as e:
        print(e.user_message(), file=sys.stderr)
        return e.exit_code
    except OSError as e:
        print(f"error [Runtime]: {e}", file=sys.stderr)
        return EXIT_RUNTIME
    except KeyboardInterrupt:
        print("error [Runtime]: interrupted", file=sys.stderr)
        return EXIT_RUNTIME


if __name__ == '__main__':
    raise SystemExit(main())
