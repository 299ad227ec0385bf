import threading
from typing import Optional

from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from .config import BIND_MAX_ERRORS, BIND_MAX_PENDING, BIND_POLL_INTERVAL
from .kube import KubernetesHelper, is_not_found


class BindPoller:
    """Waits for a recreated claim to reach the ``Bound`` phase.

    Read errors and pending observations are counted separately in the same
    loop; reaching either cap gives up. With the default caps a claim is read
    at most ``10 + 30 - 1`` times. A claim that does not exist yet counts as
    pending, the StatefulSet controller may not have recreated it.
    """

    def __init__(self, kube: KubernetesHelper, interval: float = BIND_POLL_INTERVAL,
                 max_errors: int = BIND_MAX_ERRORS, max_pending: int = BIND_MAX_PENDING,
                 cancel_event: Optional[threading.Event] = None):
        self.kube = kube
        self.interval = interval
        self.max_errors = max_errors
        self.max_pending = max_pending
        self.cancel_event = cancel_event or threading.Event()

    def _read_phase(self, namespace: str, name: str) -> str:
        try:
            claim = self.kube.read_claim(namespace, name)
        except ApiException as e:
            if is_not_found(e):
                return "NotFound"
            raise
        return (claim.status.phase if claim.status else None) or "Unknown"

    def wait_for_bound(self, namespace: str, name: str) -> bool:
        errors = 0
        pending = 0
        while not self.cancel_event.is_set():
            try:
                phase = self._read_phase(namespace, name)
            except (ApiException, HTTPError) as e:
                errors += 1
                logger.warning(f"Failed to read claim {namespace}/{name} "
                               f"({errors}/{self.max_errors}): {getattr(e, 'reason', None) or e}")
                if errors >= self.max_errors:
                    logger.error(f"Giving up on claim {namespace}/{name} after {errors} read errors")
                    return False
            else:
                if phase == "Bound":
                    logger.info(f"Claim {namespace}/{name} is bound")
                    return True
                pending += 1
                logger.debug(f"Claim {namespace}/{name} is {phase} ({pending}/{self.max_pending})")
                if pending >= self.max_pending:
                    logger.error(f"Claim {namespace}/{name} still {phase} after {pending} checks")
                    return False

            self.cancel_event.wait(self.interval)

        logger.warning(f"Cancelled while waiting for claim {namespace}/{name} to bind")
        return False
