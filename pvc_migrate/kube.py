from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from urllib3.exceptions import HTTPError

from .config import HOSTNAME_LABEL
from .exceptions import SetupError


def pv_on_node(pv: client.V1PersistentVolume, node_name: str) -> bool:
    """Check whether a volume's required node affinity pins it to ``node_name``"""
    affinity = pv.spec.node_affinity if pv.spec else None
    if not affinity or not affinity.required:
        return False

    for term in affinity.required.node_selector_terms or []:
        for requirement in term.match_expressions or []:
            if (requirement.key == HOSTNAME_LABEL and requirement.operator == "In"
                    and node_name in (requirement.values or [])):
                return True
    return False


def is_already_exists(e: ApiException) -> bool:
    return e.status == 409


def is_not_found(e: ApiException) -> bool:
    return e.status == 404


def is_transient(e: BaseException) -> bool:
    """API errors other than 404 and dropped connections are worth retrying"""
    if isinstance(e, ApiException):
        return not is_not_found(e)
    return isinstance(e, HTTPError)


class KubernetesHelper:
    """Helper class for the Kubernetes operations a migration needs"""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        if api_client is None:
            api_client = self._load_api_client()
        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)

    @staticmethod
    def _load_api_client() -> client.ApiClient:
        try:
            config.load_incluster_config()
            logger.debug("Using in-cluster configuration")
        except ConfigException:
            try:
                config.load_kube_config()
                logger.debug("Using kubeconfig")
            except (ConfigException, FileNotFoundError) as e:
                raise SetupError(f"Failed to load Kubernetes configuration: {e}") from e
        return client.ApiClient()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=4, max=10),
           retry=retry_if_exception_type((ApiException, HTTPError)), reraise=True)
    def list_persistent_volumes(self) -> List[client.V1PersistentVolume]:
        return self.core_v1.list_persistent_volume().items

    def read_claim(self, namespace: str, name: str) -> client.V1PersistentVolumeClaim:
        return self.core_v1.read_namespaced_persistent_volume_claim(name, namespace)

    def create_claim(self, namespace: str, body: client.V1PersistentVolumeClaim) -> client.V1PersistentVolumeClaim:
        return self.core_v1.create_namespaced_persistent_volume_claim(namespace, body)

    def delete_claim(self, namespace: str, name: str):
        self.core_v1.delete_namespaced_persistent_volume_claim(name, namespace)

    def list_claims_by_label(self, label_selector: str) -> List[client.V1PersistentVolumeClaim]:
        return self.core_v1.list_persistent_volume_claim_for_all_namespaces(
            label_selector=label_selector
        ).items

    def list_stateful_sets(self, namespace: str) -> List[client.V1StatefulSet]:
        return self.apps_v1.list_namespaced_stateful_set(namespace).items

    def read_stateful_set(self, namespace: str, name: str) -> client.V1StatefulSet:
        return self.apps_v1.read_namespaced_stateful_set(name, namespace)

    def replace_stateful_set(self, namespace: str, name: str, body: client.V1StatefulSet) -> client.V1StatefulSet:
        # replace carries resourceVersion, a stale read fails with 409
        return self.apps_v1.replace_namespaced_stateful_set(name, namespace, body)

    def claims_on_node(self, node_name: str) -> Dict[str, client.V1PersistentVolumeClaim]:
        """Map ``namespace/name`` to the claims bound to volumes pinned on the node"""
        claims = {}
        for pv in self.list_persistent_volumes():
            if not pv_on_node(pv, node_name):
                continue
            ref = pv.spec.claim_ref
            if ref is None:
                logger.debug(f"Volume {pv.metadata.name} on {node_name} has no claim, skipping")
                continue
            try:
                claim = self.read_claim(ref.namespace, ref.name)
            except ApiException as e:
                if not is_not_found(e):
                    raise
                # Released volume still referencing a deleted claim
                logger.warning(f"Volume {pv.metadata.name} on {node_name} references missing claim "
                               f"{ref.namespace}/{ref.name}, skipping")
                continue
            claims[f"{ref.namespace}/{ref.name}"] = claim
        return claims
