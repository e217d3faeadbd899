"""
Tests for workload reads and resource patches
"""
from unittest.mock import MagicMock, patch
import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import deployment
from errors import ConflictError, FatalError, InvalidInputError, PolicyError, TransientError
from metrics.kube_client import connect
from metrics.workloads import (
    WorkloadClient,
    build_resources_patch,
    container_resources,
    pod_spec_of,
    resources_block,
)
from models import ContainerResources, WorkloadRef

MIB = 1024 ** 2
API = WorkloadRef("Deployment", "default", "api")
DB = WorkloadRef("StatefulSet", "data", "db")


@pytest.fixture
def apps():
    return MagicMock()


@pytest.fixture
def workloads(apps):
    return WorkloadClient(client.ApiClient(), core_api=MagicMock(), apps_api=apps, field_manager="kubenow")


class TestResources:
    """Tests for reading and rendering container resources"""

    def test_container_resources(self):
        res = container_resources(deployment())[0]
        assert res.name == "app"
        assert res.cpu_request == 0.5
        assert res.cpu_limit == 1.0
        assert res.memory_request == 256 * MIB
        assert res.memory_limit == 512 * MIB

    def test_missing_resources_are_zero(self):
        res = container_resources(deployment(containers=[{"name": "app"}]))[0]
        assert (res.cpu_request, res.cpu_limit, res.memory_request, res.memory_limit) == (0, 0, 0, 0)

    def test_pod_spec_of_pod(self):
        pod = {"kind": "Pod", "spec": {"containers": [{"name": "app"}]}}
        assert pod_spec_of(pod)["containers"][0]["name"] == "app"

    def test_resources_block_skips_unset(self):
        block = resources_block(ContainerResources("app", cpu_request=0.25, memory_request=128 * MIB))
        assert block == {"requests": {"cpu": "250m", "memory": "128Mi"}}

    def test_build_patch(self):
        body = build_resources_patch([ContainerResources("app", 0.25, 0.5, 128 * MIB, 1024 * MIB)], "42")
        assert body["metadata"] == {"resourceVersion": "42"}
        container = body["spec"]["template"]["spec"]["containers"][0]
        assert container == {"name": "app", "resources": {
            "requests": {"cpu": "250m", "memory": "128Mi"},
            "limits": {"cpu": "500m", "memory": "1Gi"},
        }}


class TestWorkloadClient:
    """Tests for WorkloadClient"""

    def test_get_statefulset(self, workloads, apps):
        apps.read_namespaced_stateful_set.return_value = client.V1StatefulSet(
            metadata=client.V1ObjectMeta(name="db", namespace="data", resource_version="7"),
            spec=client.V1StatefulSetSpec(
                selector=client.V1LabelSelector(match_labels={"app": "db"}),
                service_name="db",
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels={"app": "db"}),
                    spec=client.V1PodSpec(containers=[client.V1Container(
                        name="postgres",
                        resources=client.V1ResourceRequirements(requests={"cpu": "500m", "memory": "1Gi"}),
                    )]),
                ),
            ))
        obj = workloads.get(DB)
        apps.read_namespaced_stateful_set.assert_called_once_with("db", "data")
        assert obj["kind"] == "StatefulSet"
        assert obj["apiVersion"] == "apps/v1"
        assert obj["metadata"]["resourceVersion"] == "7"
        res = container_resources(obj)[0]
        assert (res.name, res.cpu_request, res.memory_request) == ("postgres", 0.5, 1024 * MIB)

    def test_get_missing_workload(self, workloads, apps):
        apps.read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(InvalidInputError):
            workloads.get(API)

    def test_get_timeout_is_transient(self, workloads, apps):
        apps.read_namespaced_deployment.side_effect = TimeoutError("timed out")
        with pytest.raises(TransientError):
            workloads.get(API)

    def test_patch_uses_field_manager(self, workloads, apps):
        apps.patch_namespaced_deployment.return_value = {"metadata": {"name": "api"}}
        workloads.patch_resources(API, [ContainerResources("app", 0.25)], "100")
        args, kwargs = apps.patch_namespaced_deployment.call_args
        assert args[:2] == ("api", "default")
        assert args[2]["metadata"]["resourceVersion"] == "100"
        assert kwargs["field_manager"] == "kubenow"

    def test_patch_conflict(self, workloads, apps):
        apps.patch_namespaced_deployment.side_effect = ApiException(status=409, reason="Conflict")
        with pytest.raises(ConflictError):
            workloads.patch_resources(API, [ContainerResources("app", 0.25)], "100")

    def test_patch_deleted_workload(self, workloads, apps):
        apps.patch_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(FatalError):
            workloads.patch_resources(API, [ContainerResources("app", 0.25)], "100")

    def test_patch_pod_refused(self, workloads, apps):
        with pytest.raises(PolicyError):
            workloads.patch_resources(WorkloadRef("Pod", "default", "api-1"), [], "1")
        apps.assert_not_called()


class TestConnect:
    """Tests for client construction"""

    def test_in_cluster_first(self):
        with patch('metrics.kube_client.kube_config.load_incluster_config') as incluster, \
             patch('metrics.kube_client.kube_config.new_client_from_config') as kubeconfig:
            connect(None)
        incluster.assert_called_once()
        kubeconfig.assert_not_called()

    def test_kubeconfig_fallback(self):
        with patch('metrics.kube_client.kube_config.load_incluster_config',
                   side_effect=ConfigException("not in cluster")), \
             patch('metrics.kube_client.kube_config.new_client_from_config') as kubeconfig:
            connect(None)
        kubeconfig.assert_called_once_with(context=None)

    def test_named_context_skips_in_cluster(self):
        with patch('metrics.kube_client.kube_config.load_incluster_config') as incluster, \
             patch('metrics.kube_client.kube_config.new_client_from_config') as kubeconfig:
            connect("prod")
        incluster.assert_not_called()
        kubeconfig.assert_called_once_with(context="prod")

    def test_no_config_is_fatal(self):
        with patch('metrics.kube_client.kube_config.load_incluster_config',
                   side_effect=ConfigException("not in cluster")), \
             patch('metrics.kube_client.kube_config.new_client_from_config',
                   side_effect=ConfigException("Invalid kube-config file. No configuration found.")):
            with pytest.raises(FatalError):
                connect(None)
