"""
Tests for pod-to-workload membership
"""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from metrics.workload_identity import (
    operator_workload_name,
    owners_from_objects,
    pod_belongs_to,
    resolve_top_owner,
    workload_name_for_pod,
)
from models import WorkloadRef

API = WorkloadRef("Deployment", "default", "api")


def _pod(name, owner=None, labels=None, namespace="default"):
    meta = {"name": name, "namespace": namespace, "labels": labels or {}}
    if owner:
        meta["ownerReferences"] = [dict(owner, controller=True)]
    return {"metadata": meta}


def _replicaset(name, uid, deployment):
    return {"kind": "ReplicaSet", "metadata": {
        "name": name, "uid": uid,
        "ownerReferences": [{"kind": "Deployment", "name": deployment, "uid": "dep-uid", "controller": True}],
    }}


class TestOwnerChain:
    """Tests for Deployment <- ReplicaSet <- Pod resolution"""

    def test_pod_of_deployment(self):
        owners = owners_from_objects([_replicaset("api-7d9f8c6b5", "rs-uid", "api")])
        pod = _pod("api-7d9f8c6b5-x2x9z", {"kind": "ReplicaSet", "name": "api-7d9f8c6b5", "uid": "rs-uid"})
        assert pod_belongs_to(pod, API, owners)

    def test_pod_of_other_deployment(self):
        owners = owners_from_objects([_replicaset("api-worker-5c6d", "rs-uid", "api-worker")])
        pod = _pod("api-worker-5c6d-abcde", {"kind": "ReplicaSet", "name": "api-worker-5c6d", "uid": "rs-uid"})
        assert not pod_belongs_to(pod, API, owners)

    def test_unlisted_replicaset_falls_back_to_name(self):
        ref = {"kind": "ReplicaSet", "name": "api-7d9f8c6b5", "uid": "unknown"}
        assert resolve_top_owner(ref, {}) == ("Deployment", "api")

    def test_statefulset_pod(self):
        sts = WorkloadRef("StatefulSet", "default", "db")
        pod = _pod("db-0", {"kind": "StatefulSet", "name": "db", "uid": "sts-uid"})
        assert pod_belongs_to(pod, sts, {})
        assert not pod_belongs_to(pod, API, {})

    def test_job_chain_resolves_to_top(self):
        objects = [{"kind": "Job", "metadata": {
            "name": "nightly-28000", "uid": "job-uid",
            "ownerReferences": [{"kind": "CronJob", "name": "nightly", "uid": "cj-uid"}]}}]
        owners = owners_from_objects(objects)
        ref = {"kind": "Job", "name": "nightly-28000", "uid": "job-uid"}
        assert resolve_top_owner(ref, owners) == ("CronJob", "nightly")

    def test_namespace_mismatch(self):
        pod = _pod("api-0", {"kind": "StatefulSet", "name": "api", "uid": "x"}, namespace="other")
        assert not pod_belongs_to(pod, WorkloadRef("StatefulSet", "default", "api"), {})


class TestBarePodsAndOperators:
    """Tests for pods without standard controllers"""

    def test_bare_pod_by_name(self):
        assert pod_belongs_to(_pod("debug"), WorkloadRef("Pod", "default", "debug"), {})
        assert not pod_belongs_to(_pod("debug"), API, {})

    def test_cnpg_pod_matched_by_label(self):
        pod = _pod("pg-1", {"kind": "Cluster", "name": "pg", "uid": "c"}, labels={"cnpg.io/cluster": "pg"})
        assert pod_belongs_to(pod, WorkloadRef("StatefulSet", "default", "pg"), {})

    def test_unknown_operator_not_guessed(self):
        pod = _pod("thing-0", {"kind": "Widget", "name": "thing", "uid": "w"}, labels={"app": "thing"})
        assert not pod_belongs_to(pod, WorkloadRef("StatefulSet", "default", "thing"), {})

    def test_operator_names(self):
        assert operator_workload_name({"strimzi.io/cluster": "kafka"}) == ("Strimzi", "kafka")
        assert operator_workload_name({"rabbitmq.com/cluster-operator": "",
                                       "app.kubernetes.io/name": "rmq"}) == ("RabbitMQ", "rmq")
        assert operator_workload_name({"app": "x"}) is None


def test_workload_name_for_pod():
    assert workload_name_for_pod("api-7d9f8c6b5-x2x9z", {}) == "api"
    assert workload_name_for_pod("anything", {"app.kubernetes.io/name": "web"}) == "web"
