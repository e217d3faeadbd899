import os
import logging
import sys
from typing import Optional, List
from urllib.parse import urlparse

from normalize.durations import parse_duration


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


def setup_logging(level: Optional[str] = None):
    """Configure application-wide logging.

    Diagnostics go to stderr; stdout is reserved for command results so
    output can be piped.
    """
    level_name = (level or LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        logging.warning(f"Invalid {name}={v!r}, using default {default}")
        return default


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        logging.warning(f"Invalid {name}={v!r}, using default {default}")
        return default


# =============================================================================
# Latch Configuration
# =============================================================================
# Directory holding one persisted latch file per workload
LATCH_DIR: str = os.path.expanduser(os.getenv("LATCH_DIR", "~/.kubenow/latch"))

LATCH_INTERVAL_SECONDS: float = _env_float("LATCH_INTERVAL_SECONDS", 5.0)
LATCH_MIN_INTERVAL_SECONDS: float = 1.0
LATCH_DURATION_SECONDS: float = _env_float("LATCH_DURATION_SECONDS", 900.0)
LATCH_MIN_SAMPLES: int = _env_int("LATCH_MIN_SAMPLES", 10)
LATCH_MAX_GAP_RATIO: float = _env_float("LATCH_MAX_GAP_RATIO", 0.05)
# Staleness bound applied when loading a latch outside of a policy (Go-style duration)
LATCH_MAX_AGE: str = os.getenv("LATCH_MAX_AGE", "7d")
# 24h at 5s intervals
LATCH_MAX_SAMPLES: int = _env_int("LATCH_MAX_SAMPLES", 17280)
MAX_CRITICAL_EVENTS: int = _env_int("MAX_CRITICAL_EVENTS", 50)

# Confidence thresholds
HIGH_CONFIDENCE_MIN_SAMPLES: int = _env_int("HIGH_CONFIDENCE_MIN_SAMPLES", 180)

# =============================================================================
# Cluster access
# =============================================================================
KUBE_CONTEXT: Optional[str] = os.getenv("KUBE_CONTEXT") or None
METRICS_CALL_DEADLINE_SECONDS: float = _env_float("METRICS_CALL_DEADLINE_SECONDS", 2.0)
WATCH_WINDOW_SECONDS: int = _env_int("WATCH_WINDOW_SECONDS", 1)
WATCH_BACKOFF_INITIAL_SECONDS: float = _env_float("WATCH_BACKOFF_INITIAL_SECONDS", 1.0)
WATCH_BACKOFF_MAX_SECONDS: float = _env_float("WATCH_BACKOFF_MAX_SECONDS", 30.0)
FIELD_MANAGER: str = os.getenv("FIELD_MANAGER", "kubenow")

# =============================================================================
# Policy
# =============================================================================
KUBENOW_POLICY_ENV: str = "KUBENOW_POLICY"
DEFAULT_POLICY_PATH: str = os.getenv("DEFAULT_POLICY_PATH", "/etc/kubenow/policy.yaml")

# =============================================================================
# Prometheus (optional throttling evidence)
# =============================================================================
# Empty disables the throttling query entirely
PROMETHEUS_URL: str = os.getenv("PROMETHEUS_URL", "")
PROMETHEUS_TIMEOUT_SECONDS: int = _env_int("PROMETHEUS_TIMEOUT_SECONDS", 30)

# =============================================================================
# Live latch UI
# =============================================================================
UI_ENABLED: bool = _env_bool("UI_ENABLED", True)
UI_HOST: str = os.getenv("UI_HOST", "127.0.0.1")
UI_PORT: int = _env_int("UI_PORT", 8080)


__all__ = [
    "LOG_LEVEL",
    "LOG_FORMAT",
    "setup_logging",
    "validate_config",
    "ConfigValidationError",
    "LATCH_DIR",
    "LATCH_INTERVAL_SECONDS",
    "LATCH_MIN_INTERVAL_SECONDS",
    "LATCH_DURATION_SECONDS",
    "LATCH_MIN_SAMPLES",
    "LATCH_MAX_GAP_RATIO",
    "LATCH_MAX_AGE",
    "LATCH_MAX_SAMPLES",
    "MAX_CRITICAL_EVENTS",
    "HIGH_CONFIDENCE_MIN_SAMPLES",
    "KUBE_CONTEXT",
    "METRICS_CALL_DEADLINE_SECONDS",
    "WATCH_WINDOW_SECONDS",
    "WATCH_BACKOFF_INITIAL_SECONDS",
    "WATCH_BACKOFF_MAX_SECONDS",
    "FIELD_MANAGER",
    "KUBENOW_POLICY_ENV",
    "DEFAULT_POLICY_PATH",
    "PROMETHEUS_URL",
    "PROMETHEUS_TIMEOUT_SECONDS",
    "UI_ENABLED",
    "UI_HOST",
    "UI_PORT",
]


# =============================================================================
# Configuration Validation
# =============================================================================
class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _validate_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except ValueError as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def _validate_ratio(name: str, value: float) -> None:
    if not (0 < value < 1):
        raise ConfigValidationError(f"{name} must be between 0 and 1, got {value}")


def validate_config() -> None:
    """Validate all configuration values on startup

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors: List[str] = []

    checks = [
        ("LATCH_DURATION_SECONDS", LATCH_DURATION_SECONDS),
        ("LATCH_MIN_SAMPLES", LATCH_MIN_SAMPLES),
        ("LATCH_MAX_SAMPLES", LATCH_MAX_SAMPLES),
        ("MAX_CRITICAL_EVENTS", MAX_CRITICAL_EVENTS),
        ("METRICS_CALL_DEADLINE_SECONDS", METRICS_CALL_DEADLINE_SECONDS),
        ("WATCH_WINDOW_SECONDS", WATCH_WINDOW_SECONDS),
        ("WATCH_BACKOFF_INITIAL_SECONDS", WATCH_BACKOFF_INITIAL_SECONDS),
        ("WATCH_BACKOFF_MAX_SECONDS", WATCH_BACKOFF_MAX_SECONDS),
        ("PROMETHEUS_TIMEOUT_SECONDS", PROMETHEUS_TIMEOUT_SECONDS),
        ("UI_PORT", UI_PORT),
    ]
    for name, value in checks:
        try:
            _validate_positive(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    if LATCH_INTERVAL_SECONDS < LATCH_MIN_INTERVAL_SECONDS:
        errors.append(
            f"LATCH_INTERVAL_SECONDS must be at least {LATCH_MIN_INTERVAL_SECONDS}, "
            f"got {LATCH_INTERVAL_SECONDS}"
        )

    try:
        _validate_ratio("LATCH_MAX_GAP_RATIO", LATCH_MAX_GAP_RATIO)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        parse_duration(LATCH_MAX_AGE)
    except ValueError as e:
        errors.append(f"LATCH_MAX_AGE is not a valid duration: {e}")

    if WATCH_BACKOFF_MAX_SECONDS < WATCH_BACKOFF_INITIAL_SECONDS:
        errors.append("WATCH_BACKOFF_MAX_SECONDS must not be below WATCH_BACKOFF_INITIAL_SECONDS")

    if PROMETHEUS_URL:
        try:
            _validate_url("PROMETHEUS_URL", PROMETHEUS_URL)
        except ConfigValidationError as e:
            errors.append(str(e))

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )
