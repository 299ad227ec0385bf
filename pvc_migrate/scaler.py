"""StatefulSet replica adjustment with retries, and the bookkeeping needed to undo it."""

import threading
from typing import Dict, Optional

from kubernetes.client.rest import ApiException
from loguru import logger
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)
from urllib3.exceptions import HTTPError

from .config import SCALE_ATTEMPTS, SCALE_RETRY_DELAY
from .kube import KubernetesHelper, is_transient


def workload_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class WorkloadScaleRecord:
    """Original replica counts of every workload scaled down during a run.

    A workload's count is captured once; later captures for the same workload
    are ignored so that a second pause never overwrites the real original.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._originals: Dict[str, int] = {}

    def capture_once(self, namespace: str, name: str, replicas: Optional[int]) -> bool:
        key = workload_key(namespace, name)
        with self._lock:
            if key in self._originals:
                return False
            self._originals[key] = replicas if replicas is not None else 1
            return True

    def get(self, namespace: str, name: str) -> Optional[int]:
        with self._lock:
            return self._originals.get(workload_key(namespace, name))

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._originals)

    def __len__(self):
        with self._lock:
            return len(self._originals)

    def restore_all(self, scaler: "WorkloadScaler", originals: Optional[Dict[str, int]] = None) -> int:
        """Scale each recorded workload back to its original replica count.

        ``originals`` defaults to the current snapshot. Failures are logged and
        skipped. Returns the number of failures.
        """
        if originals is None:
            originals = self.snapshot()
        failures = 0
        for key, replicas in sorted(originals.items()):
            namespace, name = key.split("/", 1)
            logger.info(f"Restoring StatefulSet {key} to {replicas} replicas")
            try:
                restored = scaler.scale(namespace, name, replicas)
            except Exception:
                logger.exception(f"Unexpected error restoring StatefulSet {key}")
                restored = False
            if not restored:
                logger.error(f"Failed to restore StatefulSet {key} to {replicas} replicas")
                failures += 1
        return failures


class WorkloadScaler:
    """Sets ``spec.replicas`` on StatefulSets.

    Every attempt re-reads the StatefulSet before mutating it, so a conflicting
    update is retried against the current resourceVersion.
    """

    def __init__(self, kube: KubernetesHelper, attempts: int = SCALE_ATTEMPTS,
                 delay: float = SCALE_RETRY_DELAY, cancel_event: Optional[threading.Event] = None):
        self.kube = kube
        self.attempts = attempts
        self.delay = delay
        self.cancel_event = cancel_event

    def _retrying(self) -> Retrying:
        stop = stop_after_attempt(self.attempts)
        sleep_kwargs = {}
        if self.cancel_event is not None:
            stop = stop | stop_when_event_set(self.cancel_event)
            # wake up early when the run is cancelled
            sleep_kwargs["sleep"] = self.cancel_event.wait
        return Retrying(
            stop=stop,
            wait=wait_fixed(self.delay),
            retry=retry_if_exception(is_transient),
            **sleep_kwargs,
        )

    def _apply(self, namespace: str, name: str, replicas: int):
        sts = self.kube.read_stateful_set(namespace, name)
        sts.spec.replicas = replicas
        self.kube.replace_stateful_set(namespace, name, sts)

    def scale(self, namespace: str, name: str, replicas: int) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.warning(f"Cancelled before scaling StatefulSet {namespace}/{name}")
            return False
        try:
            for attempt in self._retrying():
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying scale of StatefulSet {namespace}/{name} "
                            f"(attempt {attempt.retry_state.attempt_number}/{self.attempts})"
                        )
                    self._apply(namespace, name, replicas)
        except RetryError as e:
            logger.error(f"Failed to scale StatefulSet {namespace}/{name} to {replicas}: "
                         f"{e.last_attempt.exception()}")
            return False
        except ApiException as e:
            logger.error(f"Failed to scale StatefulSet {namespace}/{name} to {replicas}: {e.reason}")
            return False
        except HTTPError as e:
            logger.error(f"Failed to scale StatefulSet {namespace}/{name} to {replicas}: {e}")
            return False

        logger.info(f"Scaled StatefulSet {namespace}/{name} to {replicas}")
        return True

    def scale_namespace(self, namespace: str, replicas: int,
                        record: Optional[WorkloadScaleRecord] = None) -> bool:
        """Scale every StatefulSet in ``namespace``, stopping at the first failure.

        When ``record`` is given the current replica count of each StatefulSet is
        captured into it before it is scaled.
        """
        try:
            stateful_sets = self.kube.list_stateful_sets(namespace)
        except ApiException as e:
            logger.error(f"Failed to list StatefulSets in {namespace}: {e.reason}")
            return False
        except HTTPError as e:
            logger.error(f"Failed to list StatefulSets in {namespace}: {e}")
            return False

        for sts in stateful_sets:
            name = sts.metadata.name
            if record is not None and record.capture_once(namespace, name, sts.spec.replicas):
                logger.debug(f"Recorded {namespace}/{name} original replicas: {sts.spec.replicas}")
            if not self.scale(namespace, name, replicas):
                return False
        return True

