"""
Admin policy - load, validate and resolve the operating mode for a workload

kubenow reads the policy file and never writes it. A missing or broken
policy only ever removes the ability to apply; observe and export keep
working.
"""
import hashlib
import logging
import os
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import yaml

from config import DEFAULT_POLICY_PATH, KUBENOW_POLICY_ENV
from models import Bounds, Mode, Safety, WorkloadRef
from normalize.durations import parse_duration

logger = logging.getLogger(__name__)

CURRENT_API_VERSION = "kubenow/v1alpha1"
CURRENT_KIND = "Policy"
SUPPORTED_AUDIT_BACKENDS = ("filesystem",)
VALID_MIN_SAFETY = ("SAFE", "CAUTION", "")

DEFAULT_MIN_LATCH_DURATION = timedelta(hours=1)
DEFAULT_MAX_LATCH_AGE = timedelta(days=7)
DEFAULT_RATE_WINDOW = timedelta(hours=24)

ABSENT = "absent"
INVALID = "invalid"
LOADED = "loaded"

_WRITE_TEST_NAME = ".kubenow-write-test"


# =============================================================================
# Policy schema
# =============================================================================
@dataclass
class GlobalConfig:
    enabled: bool = False


@dataclass
class AuditConfig:
    backend: str = ""
    path: str = ""
    retention_days: int = 0


@dataclass
class ApplyConfig:
    enabled: bool = False
    require_latch: bool = False
    max_request_delta_percent: int = 0
    max_limit_delta_percent: int = 0
    allow_limit_decrease: bool = False
    min_latch_duration: str = ""
    max_latch_age: str = ""
    min_safety_rating: str = ""


@dataclass
class NamespacesConfig:
    deny: List[str] = field(default_factory=list)
    allow: List[str] = field(default_factory=list)


@dataclass
class IdentityConfig:
    require_kube_context: bool = False
    record_os_user: bool = False
    record_git_identity: bool = False


@dataclass
class RateLimitsConfig:
    max_applies_per_hour: int = 0
    max_applies_per_workload: int = 0
    rate_window: str = ""


@dataclass
class Policy:
    apiVersion: str = ""
    kind: str = ""
    global_: GlobalConfig = field(default_factory=GlobalConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    apply: ApplyConfig = field(default_factory=ApplyConfig)
    namespaces: NamespacesConfig = field(default_factory=NamespacesConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    rate_limits: RateLimitsConfig = field(default_factory=RateLimitsConfig)

    def is_namespace_denied(self, namespace: str) -> bool:
        if namespace in self.namespaces.deny:
            return True
        return bool(self.namespaces.allow) and namespace not in self.namespaces.allow

    @property
    def min_latch_duration(self) -> timedelta:
        return _duration_or(self.apply.min_latch_duration, DEFAULT_MIN_LATCH_DURATION)

    @property
    def max_latch_age(self) -> timedelta:
        return _duration_or(self.apply.max_latch_age, DEFAULT_MAX_LATCH_AGE)

    @property
    def rate_window(self) -> timedelta:
        return _duration_or(self.rate_limits.rate_window, DEFAULT_RATE_WINDOW)

    @property
    def min_safety(self) -> Optional[Safety]:
        if not self.apply.min_safety_rating:
            return None
        return Safety(self.apply.min_safety_rating)

    def bounds(self) -> Bounds:
        return Bounds(
            max_request_delta_pct=float(self.apply.max_request_delta_percent),
            max_limit_delta_pct=float(self.apply.max_limit_delta_percent),
            allow_limit_decrease=self.apply.allow_limit_decrease,
        )


def _duration_or(value: str, default: timedelta) -> timedelta:
    if not value:
        return default
    try:
        return parse_duration(value)
    except ValueError:
        return default


# =============================================================================
# Results
# =============================================================================
@dataclass
class PolicyLoadResult:
    status: str
    path: str
    policy: Optional[Policy] = None
    message: str = ""
    digest: str = ""


@dataclass
class ValidationError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[ValidationError] = field(default_factory=list)

    def add(self, fld: str, message: str) -> None:
        self.valid = False
        self.errors.append(ValidationError(fld, message))


@dataclass
class ModeResolution:
    mode: Mode
    status: str
    bounds: Optional[Bounds] = None
    policy: Optional[Policy] = None
    path: str = ""
    digest: str = ""


# =============================================================================
# Loading
# =============================================================================
def resolve_policy_path(override: Optional[str] = None) -> str:
    path = override or os.environ.get(KUBENOW_POLICY_ENV) or DEFAULT_POLICY_PATH
    return os.path.normpath(path)


class _StrictError(ValueError):
    pass


def _yaml_key(name: str) -> str:
    return "global" if name == "global_" else name


def _build(cls, data: Any, where: str):
    """Instantiate dataclass `cls` from a YAML mapping, rejecting unknown keys and wrong types."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise _StrictError(f"{where or 'policy'}: expected a mapping")
    known = {_yaml_key(f.name): f for f in fields(cls)}
    for key in data:
        if key not in known:
            raise _StrictError(f"unknown field {_join(where, str(key))!r}")
    kwargs: Dict[str, Any] = {}
    for key, f in known.items():
        if key not in data:
            continue
        value = data[key]
        path = _join(where, key)
        default = f.default_factory() if f.default_factory is not MISSING else f.default
        kwargs[f.name] = _coerce(default, value, path)
    return cls(**kwargs)


def _coerce(default: Any, value: Any, path: str) -> Any:
    if is_dataclass(default):
        return _build(type(default), value, path)
    if value is None:
        return default
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise _StrictError(f"{path}: expected true or false, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise _StrictError(f"{path}: expected an integer, got {value!r}")
        return value
    if isinstance(default, str):
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise _StrictError(f"{path}: expected a string, got {value!r}")
        return str(value)
    if isinstance(default, list):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise _StrictError(f"{path}: expected a list of strings")
        return list(value)
    return value


def _join(where: str, key: str) -> str:
    return f"{where}.{key}" if where else key


def load_policy(override: Optional[str] = None) -> PolicyLoadResult:
    """Load the admin policy. A missing file is ABSENT, never an error."""
    path = resolve_policy_path(override)
    try:
        with open(path, 'rb') as f:
            raw = f.read()
    except FileNotFoundError:
        return PolicyLoadResult(status=ABSENT, path=path)
    except OSError as e:
        return PolicyLoadResult(status=INVALID, path=path, message=f"failed to read policy file: {e}")

    digest = hashlib.sha256(raw).hexdigest()
    try:
        data = yaml.safe_load(raw)
        policy = _build(Policy, data, "")
    except yaml.YAMLError as e:
        return PolicyLoadResult(status=INVALID, path=path, digest=digest, message=f"invalid YAML: {e}")
    except _StrictError as e:
        return PolicyLoadResult(status=INVALID, path=path, digest=digest, message=f"invalid YAML: {e}")

    logger.debug(f"Loaded policy from {path} (sha256 {digest[:12]})")
    return PolicyLoadResult(status=LOADED, path=path, policy=policy, digest=digest)


# =============================================================================
# Validation
# =============================================================================
def validate_policy(policy: Optional[Policy]) -> ValidationResult:
    """Collect every schema problem in a loaded policy."""
    result = ValidationResult()
    if policy is None:
        result.add("policy", "policy is missing")
        return result

    if policy.apiVersion != CURRENT_API_VERSION:
        result.add("apiVersion", f"expected {CURRENT_API_VERSION!r}, got {policy.apiVersion!r}")
    if policy.kind != CURRENT_KIND:
        result.add("kind", f"expected {CURRENT_KIND!r}, got {policy.kind!r}")

    audit = policy.audit
    if audit.backend and audit.backend not in SUPPORTED_AUDIT_BACKENDS:
        result.add("audit.backend", f"unsupported backend {audit.backend!r} (supported: filesystem)")
    if policy.apply.enabled:
        if not audit.path:
            result.add("audit.path", "required when apply.enabled is true")
        if not audit.backend:
            result.add("audit.backend", "required when apply.enabled is true")
    if audit.retention_days < 0:
        result.add("audit.retention_days", "must be >= 0")

    apply = policy.apply
    if not 0 <= apply.max_request_delta_percent <= 100:
        result.add("apply.max_request_delta_percent", "must be 0-100")
    if not 0 <= apply.max_limit_delta_percent <= 100:
        result.add("apply.max_limit_delta_percent", "must be 0-100")
    for name, value in (("apply.min_latch_duration", apply.min_latch_duration),
                        ("apply.max_latch_age", apply.max_latch_age),
                        ("rate_limits.rate_window", policy.rate_limits.rate_window)):
        if value:
            try:
                parse_duration(value)
            except ValueError as e:
                result.add(name, f"invalid duration: {e}")
    if apply.min_safety_rating not in VALID_MIN_SAFETY:
        result.add("apply.min_safety_rating", f"must be SAFE or CAUTION, got {apply.min_safety_rating!r}")

    if policy.rate_limits.max_applies_per_hour < 0:
        result.add("rate_limits.max_applies_per_hour", "must be >= 0")
    if policy.rate_limits.max_applies_per_workload < 0:
        result.add("rate_limits.max_applies_per_workload", "must be >= 0")
    return result


def check_audit_path(path: str) -> None:
    """Make sure the audit directory exists and is writable. Raises OSError otherwise."""
    if not path:
        raise OSError("audit path is not configured")
    os.makedirs(path, exist_ok=True)
    if not os.path.isdir(path):
        raise OSError(f"audit path is not a directory: {path}")
    marker = os.path.join(path, _WRITE_TEST_NAME)
    with open(marker, 'w') as f:
        f.write("ok")
    os.remove(marker)


# =============================================================================
# Mode resolution
# =============================================================================
def resolve_mode(load_result: PolicyLoadResult, workload: WorkloadRef,
                 validation: Optional[ValidationResult] = None) -> ModeResolution:
    """Operating mode for `workload` under the loaded policy."""
    path = load_result.path
    if load_result.status == ABSENT:
        return ModeResolution(Mode.OBSERVE_ONLY, f"none ({path})", path=path)
    if load_result.status == INVALID:
        return ModeResolution(Mode.OBSERVE_ONLY, f"invalid: {load_result.message}",
                              path=path, digest=load_result.digest)

    policy = load_result.policy
    validation = validation or validate_policy(policy)
    if not validation.valid:
        for err in validation.errors:
            logger.warning(f"policy {path}: {err}")
        return ModeResolution(Mode.OBSERVE_ONLY, f"validation failed ({len(validation.errors)} errors)",
                              path=path, digest=load_result.digest)

    bounds = policy.bounds()
    common = dict(bounds=bounds, policy=policy, path=path, digest=load_result.digest)
    if not policy.global_.enabled:
        return ModeResolution(Mode.OBSERVE_ONLY, "disabled (global.enabled=false)",
                              policy=policy, path=path, digest=load_result.digest)
    if policy.is_namespace_denied(workload.namespace):
        return ModeResolution(Mode.EXPORT_ONLY, f'namespace denied: "{workload.namespace}"', **common)
    if not policy.apply.enabled:
        return ModeResolution(Mode.EXPORT_ONLY, "suggest+export (apply.enabled=false)", **common)
    return ModeResolution(Mode.APPLY_READY, f"loaded from {path}", **common)
