"""
Tests for latch persistence
"""
import json
import os
from datetime import timedelta
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import ConflictError, CorruptError, NotFoundError
from models import WorkloadRef
from persistence import latch_file_path, latch_lock, load, save
from conftest import NOW


def test_file_path_uses_workload_key(tmp_path, api_ref):
    path = latch_file_path(api_ref, str(tmp_path))
    assert path == os.path.join(str(tmp_path), "deployment-default-api.json")


class TestSaveLoad:
    """Tests for saving and loading latch results"""

    def test_round_trip(self, tmp_path, api_ref, make_latch):
        latch = make_latch(cpu=[0.1] * 50 + [0.4] * 10, oom_kills=0, restarts=1)
        path = save(latch, str(tmp_path))
        assert Path(path).exists()

        loaded = load(api_ref, base_dir=str(tmp_path), now=NOW)
        assert loaded.workload == api_ref
        assert loaded.valid
        assert loaded.sample_count == 60
        assert loaded.duration == latch.duration
        assert loaded.cpu.p99 == pytest.approx(latch.cpu.p99)
        assert loaded.data.cpu_samples == latch.data.cpu_samples
        assert loaded.data.restarts == 1
        assert loaded.timestamp == latch.timestamp

    def test_save_replaces_previous(self, tmp_path, api_ref, make_latch):
        save(make_latch(count=20), str(tmp_path))
        save(make_latch(count=40), str(tmp_path))
        assert load(api_ref, base_dir=str(tmp_path)).sample_count == 40
        leftovers = [p for p in os.listdir(tmp_path) if p.endswith(".tmp")]
        assert leftovers == []

    def test_missing_is_not_found(self, tmp_path, api_ref):
        with pytest.raises(NotFoundError) as exc:
            load(api_ref, base_dir=str(tmp_path))
        assert "run `kubenow latch` first" in str(exc.value)
        assert exc.value.exit_code == 2

    def test_corrupt_file(self, tmp_path, api_ref):
        Path(latch_file_path(api_ref, str(tmp_path))).write_text("{not json")
        with pytest.raises(CorruptError):
            load(api_ref, base_dir=str(tmp_path))

    def test_wrong_workload_in_file(self, tmp_path, api_ref, make_latch):
        other = WorkloadRef("Deployment", "default", "worker")
        data = make_latch(ref=other).to_dict()
        Path(latch_file_path(api_ref, str(tmp_path))).write_text(json.dumps(data))
        with pytest.raises(CorruptError):
            load(api_ref, base_dir=str(tmp_path))

    def test_stale_result_marked_invalid(self, tmp_path, api_ref, make_latch):
        save(make_latch(), str(tmp_path))
        loaded = load(api_ref, max_age=timedelta(days=7), base_dir=str(tmp_path), now=NOW + timedelta(days=8))
        assert not loaded.valid
        assert loaded.reason.startswith("latch is stale")

    def test_fresh_result_stays_valid(self, tmp_path, api_ref, make_latch):
        save(make_latch(), str(tmp_path))
        loaded = load(api_ref, max_age=timedelta(days=7), base_dir=str(tmp_path), now=NOW)
        assert loaded.valid


class TestLatchLock:
    """Tests for the per-workload latch lock"""

    def test_second_latch_conflicts(self, tmp_path, api_ref):
        with latch_lock(api_ref, str(tmp_path)):
            with pytest.raises(ConflictError):
                with latch_lock(api_ref, str(tmp_path)):
                    pass

    def test_lock_released(self, tmp_path, api_ref):
        with latch_lock(api_ref, str(tmp_path)):
            pass
        with latch_lock(api_ref, str(tmp_path)) as path:
            assert path.endswith(".json.lock")

    def test_other_workloads_independent(self, tmp_path, api_ref):
        other = WorkloadRef("StatefulSet", "default", "db")
        with latch_lock(api_ref, str(tmp_path)):
            with latch_lock(other, str(tmp_path)):
                pass
