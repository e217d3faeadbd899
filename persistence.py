"""
Latch persistence - one JSON file per workload under LATCH_DIR
Writes are atomic (temp file + fsync + os.replace); a held lock file keeps
two latches off the same workload.
"""
import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from config import LATCH_DIR
from errors import ConflictError, CorruptError, NotFoundError
from models import LatchResult, WorkloadRef, utcnow
from normalize.durations import format_duration

logger = logging.getLogger(__name__)


def latch_file_path(ref: WorkloadRef, base_dir: Optional[str] = None) -> str:
    return os.path.join(base_dir or LATCH_DIR, f"{ref.key}.json")


def _atomic_write(path: str, data: str) -> None:
    dirp = os.path.dirname(path) or '.'
    os.makedirs(dirp, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=os.path.basename(path) + '.', suffix='.tmp', dir=dirp)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def save(result: LatchResult, base_dir: Optional[str] = None) -> str:
    """Persist a latch result, replacing any earlier one for the workload."""
    path = latch_file_path(result.workload, base_dir)
    _atomic_write(path, json.dumps(result.to_dict(), indent=2))
    logger.info(f"Saved latch for {result.workload.namespace}/{result.workload} to {path}")
    return path


def load(ref: WorkloadRef, max_age: Optional[timedelta] = None,
         base_dir: Optional[str] = None, now: Optional[datetime] = None) -> LatchResult:
    """Load the persisted latch for `ref`.

    Raises NotFoundError when none exists and CorruptError when the file
    cannot be parsed. A result older than `max_age` is returned marked
    invalid with the staleness as its reason.
    """
    path = latch_file_path(ref, base_dir)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = f.read()
    except FileNotFoundError:
        raise NotFoundError(f"no latch data for {ref} in namespace {ref.namespace}; run `kubenow latch` first")
    except OSError as e:
        raise CorruptError(f"cannot read {path}: {e}")

    try:
        result = LatchResult.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise CorruptError(f"latch file {path} is unreadable: {e}")
    if result.workload != ref:
        raise CorruptError(f"latch file {path} holds {result.workload.namespace}/{result.workload}, not {ref}")

    if max_age is not None:
        age = result.age(now)
        if age > max_age:
            result.valid = False
            result.reason = f"latch is stale: age {format_duration(age)} exceeds {format_duration(max_age)}"
            logger.warning(f"{ref.namespace}/{ref}: {result.reason}")
    return result


@contextmanager
def latch_lock(ref: WorkloadRef, base_dir: Optional[str] = None) -> Iterator[str]:
    """Exclusive, non-blocking lock on `{latch path}.lock` for the life of a latch."""
    path = latch_file_path(ref, base_dir) + ".lock"
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    with open(path, 'a+') as f:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise ConflictError(f"latch already running for {ref} in namespace {ref.namespace}")
        try:
            f.seek(0)
            f.truncate()
            f.write(f"{os.getpid()} {utcnow().isoformat()}\n")
            f.flush()
            yield path
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
