"""Error kinds shared across the latch pipeline.

Every error carries a `kind` tag (shown to the operator as
``error [Kind]: message``) and the process exit code it maps to.
"""

EXIT_OK = 0
EXIT_INVALID_INPUT = 2
EXIT_RUNTIME = 3


class LatchError(Exception):
    """Base exception for latch pipeline errors"""
    kind = "Runtime"
    exit_code = EXIT_RUNTIME

    def user_message(self) -> str:
        return f"error [{self.kind}]: {self}"


class InvalidInputError(LatchError):
    """Bad CLI arguments, workload references or policy syntax"""
    kind = "InvalidInput"
    exit_code = EXIT_INVALID_INPUT


class UnavailableError(LatchError):
    """The cluster metrics service is not installed or not serving"""
    kind = "Unavailable"


class TransientError(LatchError):
    """Network failure or timeout; the caller may retry"""
    kind = "Transient"


class FatalError(LatchError):
    """Authentication failure or a target that no longer exists"""
    kind = "Fatal"


class PolicyError(LatchError):
    """Denied by policy, rate-limited or a failed apply gate"""
    kind = "Policy"


class ConflictError(LatchError):
    """Concurrent modification or a latch already running"""
    kind = "Conflict"


class CorruptError(LatchError):
    """A persisted file exists but cannot be read"""
    kind = "Corrupt"


class InsufficientError(LatchError):
    """Not enough samples to act on"""
    kind = "Insufficient"


class NotFoundError(LatchError):
    """No persisted latch for the workload"""
    kind = "NotFound"
    exit_code = EXIT_INVALID_INPUT
