"""Shared fixtures: an in-memory cluster standing in for the Kubernetes API."""

import copy
import threading
from collections import Counter

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from pvc_migrate.engine import MigrationEngine
from pvc_migrate.exceptions import DataMoveError
from pvc_migrate.kube import KubernetesHelper
from pvc_migrate.ledger import StatusLedger
from pvc_migrate.poller import BindPoller
from pvc_migrate.scaler import WorkloadScaler

NODE = "node-1"


def make_pv(name, node, namespace=None, claim=None):
    claim_ref = client.V1ObjectReference(namespace=namespace, name=claim) if claim else None
    return client.V1PersistentVolume(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1PersistentVolumeSpec(
            claim_ref=claim_ref,
            node_affinity=client.V1VolumeNodeAffinity(
                required=client.V1NodeSelector(node_selector_terms=[
                    client.V1NodeSelectorTerm(match_expressions=[
                        client.V1NodeSelectorRequirement(
                            key="kubernetes.io/hostname", operator="In", values=[node],
                        )
                    ])
                ])
            ),
        ),
    )


def make_claim(namespace, name, phase="Bound", size="1Gi", storage_class="local-path"):
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            resources=client.V1VolumeResourceRequirements(requests={"storage": size}),
            storage_class_name=storage_class,
        ),
        status=client.V1PersistentVolumeClaimStatus(phase=phase),
    )


def make_sts(namespace, name, replicas):
    return client.V1StatefulSet(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        spec=client.V1StatefulSetSpec(
            replicas=replicas,
            service_name=name,
            selector=client.V1LabelSelector(match_labels={"app": name}),
            template=client.V1PodTemplateSpec(),
        ),
    )


def api_error(status, reason="error"):
    return ApiException(status=status, reason=reason)


class FakeKube(KubernetesHelper):
    """In-memory cluster.

    Scaling a namespace up recreates the claims deleted from it, the way a
    StatefulSet's volumeClaimTemplates would, with phase ``recreate_phase``.
    Failures are injected per ``namespace/name`` key as lists of exceptions
    consumed one per call.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.pvs = []
        self.claims = {}
        self.stateful_sets = {}
        self.deleted = set()
        self.recreate_phase = "Bound"
        self.list_pv_error = None
        self.read_claim_errors = {}
        self.create_errors = {}
        self.delete_errors = {}
        self.read_sts_errors = {}
        self.replace_errors = {}
        self.list_sts_errors = {}
        self.on_delete = None
        self.claim_reads = Counter()
        self.sts_reads = Counter()
        self.replace_calls = []

    # setup helpers

    def add_claim(self, namespace, name, node=NODE, phase="Bound"):
        self.claims[f"{namespace}/{name}"] = make_claim(namespace, name, phase=phase)
        self.pvs.append(make_pv(f"pv-{namespace}-{name}", node, namespace, name))

    def add_sts(self, namespace, name, replicas):
        self.stateful_sets[f"{namespace}/{name}"] = make_sts(namespace, name, replicas)

    def replicas(self, namespace, name):
        return self.stateful_sets[f"{namespace}/{name}"].spec.replicas

    @staticmethod
    def _pop(errors, key):
        pending = errors.get(key)
        if pending:
            raise pending.pop(0)

    # KubernetesHelper API

    def list_persistent_volumes(self):
        if self.list_pv_error:
            raise self.list_pv_error
        return list(self.pvs)

    def read_claim(self, namespace, name):
        key = f"{namespace}/{name}"
        with self._lock:
            self.claim_reads[key] += 1
            self._pop(self.read_claim_errors, key)
            if key not in self.claims:
                raise api_error(404, "Not Found")
            return copy.deepcopy(self.claims[key])

    def create_claim(self, namespace, body):
        key = f"{namespace}/{body.metadata.name}"
        with self._lock:
            self._pop(self.create_errors, key)
            if key in self.claims:
                raise api_error(409, "AlreadyExists")
            body.status = client.V1PersistentVolumeClaimStatus(phase="Pending")
            self.claims[key] = body
            return body

    def delete_claim(self, namespace, name):
        key = f"{namespace}/{name}"
        with self._lock:
            self._pop(self.delete_errors, key)
            if key not in self.claims:
                raise api_error(404, "Not Found")
            del self.claims[key]
            self.deleted.add(key)
        if self.on_delete:
            self.on_delete(namespace, name)

    def list_claims_by_label(self, label_selector):
        label, value = label_selector.split("=", 1)
        with self._lock:
            return [
                copy.deepcopy(c) for c in self.claims.values()
                if (c.metadata.labels or {}).get(label) == value
            ]

    def list_stateful_sets(self, namespace):
        with self._lock:
            self._pop(self.list_sts_errors, namespace)
            return [
                copy.deepcopy(sts) for key, sts in sorted(self.stateful_sets.items())
                if key.startswith(f"{namespace}/")
            ]

    def read_stateful_set(self, namespace, name):
        key = f"{namespace}/{name}"
        with self._lock:
            self.sts_reads[key] += 1
            self._pop(self.read_sts_errors, key)
            if key not in self.stateful_sets:
                raise api_error(404, "Not Found")
            return copy.deepcopy(self.stateful_sets[key])

    def replace_stateful_set(self, namespace, name, body):
        key = f"{namespace}/{name}"
        with self._lock:
            self.replace_calls.append((key, body.spec.replicas))
            self._pop(self.replace_errors, key)
            self.stateful_sets[key] = body
            if body.spec.replicas and body.spec.replicas > 0:
                for deleted in sorted(self.deleted):
                    if deleted.startswith(f"{namespace}/") and deleted not in self.claims:
                        ns, claim_name = deleted.split("/", 1)
                        self.claims[deleted] = make_claim(ns, claim_name, phase=self.recreate_phase)
            return body


class FakeMover:
    """Records copies; ``fail`` holds ``(namespace, source)`` pairs that fail."""

    def __init__(self):
        self._lock = threading.Lock()
        self.calls = []
        self.fail = set()
        self.on_copy = None

    def copy(self, namespace, source, destination):
        with self._lock:
            self.calls.append((namespace, source, destination))
        if self.on_copy:
            self.on_copy(namespace, source, destination)
        if (namespace, source) in self.fail:
            raise DataMoveError(f"copy of {namespace}/{source} failed", output="rsync: error 23")


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def mover():
    return FakeMover()


@pytest.fixture
def cancel_event():
    return threading.Event()


@pytest.fixture
def make_engine(kube, mover, cancel_event):
    """Build an engine wired to the fakes with every delay set to zero."""
    def build(**kwargs):
        kwargs.setdefault("ledger", StatusLedger())
        kwargs.setdefault("scaler", WorkloadScaler(kube, delay=0, cancel_event=cancel_event))
        kwargs.setdefault("poller", BindPoller(kube, interval=0, cancel_event=cancel_event))
        kwargs.setdefault("settle_seconds", 0)
        return MigrationEngine(NODE, kube=kube, mover=mover, cancel_event=cancel_event, **kwargs)
    return build
