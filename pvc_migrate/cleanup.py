from typing import Tuple

from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from .config import BACKUP_NODE_LABEL
from .exceptions import SetupError
from .kube import KubernetesHelper, is_not_found


def cleanup_backups(kube: KubernetesHelper, node_name: str, dry_run: bool = False) -> Tuple[int, int]:
    """Delete the backup claims a migration of ``node_name`` left behind.

    Backups are found by the node label put on them at creation. Returns
    ``(deleted, failed)``.
    """
    selector = f"{BACKUP_NODE_LABEL}={node_name}"
    try:
        claims = kube.list_claims_by_label(selector)
    except ApiException as e:
        raise SetupError(f"Failed to list backup claims labelled {selector}: {e.reason}") from e
    except HTTPError as e:
        raise SetupError(f"Failed to reach the Kubernetes API: {e}") from e
    if not claims:
        logger.info(f"No backup claims labelled {selector}")
        return 0, 0

    logger.info(f"Found {len(claims)} backup claims labelled {selector}")
    deleted = failed = 0
    for claim in claims:
        namespace, name = claim.metadata.namespace, claim.metadata.name
        if dry_run:
            logger.info(f"[DRY-RUN] Would delete backup claim {namespace}/{name}")
            continue
        try:
            kube.delete_claim(namespace, name)
        except ApiException as e:
            if is_not_found(e):
                logger.info(f"Backup claim {namespace}/{name} already gone")
                continue
            logger.error(f"Failed to delete backup claim {namespace}/{name}: {e.reason}")
            failed += 1
            continue
        except HTTPError as e:
            logger.error(f"Failed to delete backup claim {namespace}/{name}: {e}")
            failed += 1
            continue
        logger.info(f"Deleted backup claim {namespace}/{name}")
        deleted += 1
    return deleted, failed
