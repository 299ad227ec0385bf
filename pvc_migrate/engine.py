"""
Claim migration workflow

Moves every claim bound to a draining node through these stages:
1. Provision a backup claim next to the original
2. Copy the data into the backup
3. Pause the StatefulSets of the namespace
4. Delete the original claim
5. Resume the StatefulSets so the claim is recreated elsewhere
6. Wait for the recreated claim to bind
7. Copy the data back from the backup

Claims of a stage run concurrently and the whole set is joined before the
next stage starts. A failing claim stops at the failing stage; the others
carry on. Every StatefulSet scaled down during the run is scaled back to its
original replica count on the way out, whatever happened.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from typing import Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from .config import (
    BACKUP_NODE_LABEL,
    BACKUP_SUFFIX,
    BIND_SETTLE_SECONDS,
    MAX_WORKERS,
    RESUME_REPLICAS,
    TENANT_NAMESPACE_PREFIX,
)
from .exceptions import MigrationCancelled, SetupError, StageError
from .kube import KubernetesHelper, is_already_exists
from .ledger import StatusLedger
from .models import MigrationItem, Stage
from .mover import DataMover
from .poller import BindPoller
from .scaler import WorkloadScaler, WorkloadScaleRecord


def skip_reason(claim: client.V1PersistentVolumeClaim) -> Optional[str]:
    """Return why a claim is not migrated, or None if it is a candidate"""
    namespace = claim.metadata.namespace or ""
    name = claim.metadata.name
    if not namespace.startswith(TENANT_NAMESPACE_PREFIX):
        return f"namespace is not prefixed with {TENANT_NAMESPACE_PREFIX}"
    if name.endswith(BACKUP_SUFFIX):
        return "claim is a backup copy"
    phase = claim.status.phase if claim.status else None
    if phase != "Bound":
        return f"claim is {phase}, not Bound"
    return None


def backup_claim_for(item: MigrationItem, node_name: str) -> client.V1PersistentVolumeClaim:
    spec = item.claim.spec
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=item.backup_name,
            namespace=item.namespace,
            labels={BACKUP_NODE_LABEL: node_name},
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=spec.access_modes,
            resources=spec.resources,
            storage_class_name=spec.storage_class_name,
        ),
    )


class MigrationEngine:
    """Main orchestrator for evacuating the claims of a node"""

    def __init__(self, node_name: str, kube: Optional[KubernetesHelper] = None,
                 ledger: Optional[StatusLedger] = None,
                 cancel_event: Optional[threading.Event] = None,
                 max_workers: int = MAX_WORKERS,
                 scaler: Optional[WorkloadScaler] = None,
                 poller: Optional[BindPoller] = None,
                 mover: Optional[DataMover] = None,
                 settle_seconds: float = BIND_SETTLE_SECONDS):
        self.node_name = node_name
        self.kube = kube or KubernetesHelper()
        self.ledger = ledger or StatusLedger()
        self.cancel_event = cancel_event or threading.Event()
        self.max_workers = max(1, max_workers)
        self.scaler = scaler or WorkloadScaler(self.kube, cancel_event=self.cancel_event)
        # rollback must still run after cancellation, so it never watches the event
        self.restore_scaler = WorkloadScaler(self.kube, attempts=self.scaler.attempts,
                                             delay=self.scaler.delay)
        self.poller = poller or BindPoller(self.kube, cancel_event=self.cancel_event)
        self.mover = mover or DataMover(cancel_event=self.cancel_event)
        self.settle_seconds = settle_seconds
        self.scale_record = WorkloadScaleRecord()
        self.items: List[MigrationItem] = []

    def cancel(self):
        if not self.cancel_event.is_set():
            logger.warning("Cancellation requested, finishing in-flight work and rolling back")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def discover(self) -> List[MigrationItem]:
        """Find the claims bound to the node that should be migrated"""
        logger.info(f"Discovering claims on node {self.node_name}...")
        try:
            claims = self.kube.claims_on_node(self.node_name)
        except ApiException as e:
            raise SetupError(f"Failed to enumerate claims on node {self.node_name}: {e.reason}") from e
        except HTTPError as e:
            raise SetupError(f"Failed to reach the Kubernetes API: {e}") from e

        items = []
        for key in sorted(claims):
            claim = claims[key]
            reason = skip_reason(claim)
            if reason:
                logger.info(f"Skipping claim {key}: {reason}")
                continue
            item = MigrationItem(namespace=claim.metadata.namespace, name=claim.metadata.name, claim=claim)
            items.append(item)
            self.ledger.record(item.key, item.label)

        logger.info(f"Found {len(items)} claims to migrate on node {self.node_name}")
        self.items = items
        return items

    def run(self) -> List[MigrationItem]:
        if not self.items:
            self.discover()
        if not self.items:
            logger.info("No claims to migrate")
            return self.items

        with ExitStack() as stack:
            # runs last: anything left mid-way is marked failed
            stack.callback(self._close_unfinished)

            self._run_stage(Stage.BACKUP_PROVISIONED, self._provision_backup)
            self._run_stage(Stage.DATA_COPIED_TO_BACKUP, self._copy_to_backup)
            try:
                self._run_stage(Stage.WORKLOADS_PAUSED, self._pause_workloads)
            finally:
                stack.callback(self.rollback, self.scale_record.snapshot())
            self._run_stage(Stage.ORIGINAL_VOLUME_RELEASED, self._release_original)
            self._run_stage(Stage.WORKLOADS_RESUMED, self._resume_workloads)
            self._settle()
            self._run_stage(Stage.REPLACEMENT_VOLUME_BOUND, self._wait_replacement_bound)
            self._run_stage(Stage.DATA_RESTORED, self._restore_data)

        return self.items

    def _run_stage(self, stage: Stage, step: Callable[[MigrationItem], None]):
        eligible = [item for item in self.items if item.is_ready_for(stage)]
        if not eligible:
            logger.info(f"[{stage.value}] no claims ready, skipping")
            return

        if self.cancelled:
            for item in eligible:
                self._fail(item, stage, "run cancelled")
            return

        logger.info(f"[{stage.value}] processing {len(eligible)} claims")
        with ThreadPoolExecutor(max_workers=min(len(eligible), self.max_workers)) as executor:
            futures = {executor.submit(self._run_step, item, stage, step): item for item in eligible}
            for future in as_completed(futures):
                future.result()

        failed = sum(1 for item in eligible if item.failed)
        logger.info(f"[{stage.value}] done: {len(eligible) - failed} succeeded, {failed} failed")

    def _run_step(self, item: MigrationItem, stage: Stage, step: Callable[[MigrationItem], None]):
        try:
            if self.cancelled:
                raise MigrationCancelled("run cancelled")
            step(item)
        except StageError as e:
            self._fail(item, stage, str(e))
        except ApiException as e:
            self._fail(item, stage, f"API error {e.status}: {e.reason}")
        except Exception as e:
            logger.exception(f"Unexpected error for {item.key} at {stage.value}")
            self._fail(item, stage, str(e))
        else:
            item.advance(stage)
            self.ledger.record(item.key, item.label)
            logger.info(f"{item.key}: {stage.value}")

    def _fail(self, item: MigrationItem, stage: Stage, reason: str):
        item.fail(stage)
        self.ledger.record(item.key, item.label)
        logger.error(f"{item.key}: {item.label} ({reason})")

    def _settle(self):
        if self.settle_seconds <= 0:
            return
        if not any(item.is_ready_for(Stage.REPLACEMENT_VOLUME_BOUND) for item in self.items):
            return
        logger.info(f"Waiting {self.settle_seconds:g}s for StatefulSets to recreate their claims")
        self.cancel_event.wait(self.settle_seconds)

    def _close_unfinished(self):
        for item in self.items:
            if item.terminal:
                continue
            self._fail(item, item.stage.next, "run ended before this stage")

    def rollback(self, originals: Dict[str, int]):
        """Scale every StatefulSet paused in this run back to its original replicas"""
        if not originals:
            logger.info("No StatefulSets were scaled down, nothing to restore")
            return
        logger.info(f"Restoring {len(originals)} StatefulSets to their original replicas")
        try:
            failures = self.scale_record.restore_all(self.restore_scaler, originals)
        except Exception:
            logger.exception("Rollback of StatefulSet replicas aborted")
            return
        if failures:
            logger.error(f"{failures} StatefulSets could not be restored, fix them manually")
        else:
            logger.info("All StatefulSets restored")

    # Stage steps

    def _provision_backup(self, item: MigrationItem):
        logger.info(f"Creating backup claim {item.namespace}/{item.backup_name}")
        try:
            self.kube.create_claim(item.namespace, backup_claim_for(item, self.node_name))
        except ApiException as e:
            if not is_already_exists(e):
                raise
            logger.info(f"Backup claim {item.namespace}/{item.backup_name} already exists")

    def _copy_to_backup(self, item: MigrationItem):
        logger.info(f"Copying {item.key} to backup claim {item.backup_name}")
        self.mover.copy(item.namespace, item.name, item.backup_name)

    def _pause_workloads(self, item: MigrationItem):
        logger.info(f"Scaling down StatefulSets in {item.namespace} for {item.key}")
        if not self.scaler.scale_namespace(item.namespace, 0, record=self.scale_record):
            raise StageError(f"failed to scale down StatefulSets in {item.namespace}")

    def _release_original(self, item: MigrationItem):
        logger.info(f"Deleting original claim {item.key}")
        self.kube.delete_claim(item.namespace, item.name)

    def _resume_workloads(self, item: MigrationItem):
        logger.info(f"Scaling up StatefulSets in {item.namespace} to {RESUME_REPLICAS}")
        if not self.scaler.scale_namespace(item.namespace, RESUME_REPLICAS):
            raise StageError(f"failed to scale up StatefulSets in {item.namespace}")

    def _wait_replacement_bound(self, item: MigrationItem):
        logger.info(f"Waiting for recreated claim {item.key} to be bound")
        if not self.poller.wait_for_bound(item.namespace, item.name):
            raise StageError(f"recreated claim {item.key} is not bound")

    def _restore_data(self, item: MigrationItem):
        logger.info(f"Copying backup claim {item.backup_name} back to {item.key}")
        self.mover.copy(item.namespace, item.backup_name, item.name)
