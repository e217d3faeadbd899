"""
Tests for recommendation exports
"""
import json
import pytest
import yaml

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.export import (
    FORMATS,
    export_diff,
    export_manifest,
    export_patch,
    render,
    strip_volatile_fields,
)
from analysis.recommend import recommend
from errors import InsufficientError, InvalidInputError
from metrics.workloads import container_resources
from models import HPAInfo


@pytest.fixture
def rec(make_latch, deployment_obj):
    return recommend(make_latch(), container_resources(deployment_obj))


def _body(text):
    return yaml.safe_load("\n".join(l for l in text.splitlines() if not l.startswith("#")))


class TestPatch:
    """Tests for the server-side-apply patch"""

    def test_minimal_patch(self, rec):
        text = export_patch(rec)
        assert text.startswith("# kubenow alignment patch\n")
        assert "# Workload: default/deployment/api" in text
        assert "# Confidence: MEDIUM  Safety: SAFE" in text
        assert "# Latch: 5m (60 samples)" in text
        doc = _body(text)
        assert doc["apiVersion"] == "apps/v1"
        assert doc["metadata"] == {"name": "api", "namespace": "default"}
        container = doc["spec"]["template"]["spec"]["containers"][0]
        assert container == {"name": "app", "resources": {
            "requests": {"cpu": "100m", "memory": "100Mi"},
            "limits": {"cpu": "120m", "memory": "120Mi"},
        }}

    def test_hpa_warning_comment(self, make_latch, deployment_obj):
        rec = recommend(make_latch(), container_resources(deployment_obj),
                        hpa=HPAInfo("api-hpa", 2, 10), acknowledge_hpa=True)
        assert '# WARNING: HPA "api-hpa" targets this workload' in export_patch(rec)

    def test_unsafe_has_nothing_to_export(self, make_latch, deployment_obj):
        rec = recommend(make_latch(oom_kills=1), container_resources(deployment_obj))
        with pytest.raises(InsufficientError) as exc:
            export_patch(rec)
        assert "safety rating UNSAFE" in str(exc.value)


class TestManifest:
    """Tests for the full recommended manifest"""

    def test_volatile_fields_removed(self, rec, deployment_obj):
        doc = _body(export_manifest(rec, deployment_obj))
        assert "status" not in doc
        for key in ("resourceVersion", "generation", "managedFields", "uid", "creationTimestamp"):
            assert key not in doc["metadata"]
        assert doc["metadata"]["labels"] == {"app": "api"}
        assert doc["spec"]["replicas"] == 2
        resources = doc["spec"]["template"]["spec"]["containers"][0]["resources"]
        assert resources["requests"]["cpu"] == "100m"

    def test_live_object_untouched(self, rec, deployment_obj):
        export_manifest(rec, deployment_obj)
        assert deployment_obj["metadata"]["resourceVersion"] == "100"
        assert deployment_obj["spec"]["template"]["spec"]["containers"][0]["resources"]["requests"]["cpu"] == "500m"

    def test_requires_live_object(self, rec):
        with pytest.raises(InvalidInputError):
            export_manifest(rec, None)

    def test_last_applied_annotation_dropped(self, deployment_obj):
        deployment_obj["metadata"]["annotations"] = {
            "kubectl.kubernetes.io/last-applied-configuration": "{}",
        }
        assert "annotations" not in strip_volatile_fields(deployment_obj)["metadata"]


class TestDiff:
    """Tests for the unified diff"""

    def test_diff_against_live(self, rec, deployment_obj):
        text = export_diff(rec, deployment_obj)
        assert "--- Deployment/api (current)" in text
        assert "+++ Deployment/api (recommended)" in text
        assert "-            cpu: 500m" in text
        assert "+            cpu: 100m" in text

    def test_diff_without_live_object(self, rec):
        text = export_diff(rec)
        assert "-      cpu: 500m" in text
        assert "+      cpu: 100m" in text


def test_json_always_renders(make_latch, deployment_obj):
    rec = recommend(make_latch(oom_kills=1), container_resources(deployment_obj))
    doc = json.loads(render(rec, "json"))
    assert doc["safety"] == "UNSAFE"
    assert doc["containers"] == []


def test_unknown_format(rec):
    assert "yaml" not in FORMATS
    with pytest.raises(InvalidInputError):
        render(rec, "yaml")
