"""
Thin adapter over the Kubernetes API client.

Objects cross this boundary as plain manifest dictionaries so the deployer
and the health evaluator never deal with generated model classes. A missing
object reads as ``None``; every other API error propagates unmodified.
"""
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..UTILS.logging import get_logger

log = get_logger(__name__)

# kind -> (API group attribute, method suffix)
_KINDS: Dict[str, Tuple[str, str]] = {
    "Deployment": ("apps", "deployment"),
    "StatefulSet": ("apps", "stateful_set"),
    "Job": ("batch", "job"),
    "Service": ("core", "service"),
    "PersistentVolumeClaim": ("core", "persistent_volume_claim"),
    "ConfigMap": ("core", "config_map"),
    "Pod": ("core", "pod"),
    "Ingress": ("networking", "ingress"),
}


class ClusterClient:
    """
    Create, read, replace, delete and list namespaced objects by kind.
    Safe to share between threads; it holds no per-call state.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        """
        Initializes the cluster client.

        :param api_client: Configured API client. Defaults to the globally loaded configuration.
        """
        self.api_client = api_client or client.ApiClient()
        self.apps = client.AppsV1Api(self.api_client)
        self.batch = client.BatchV1Api(self.api_client)
        self.core = client.CoreV1Api(self.api_client)
        self.networking = client.NetworkingV1Api(self.api_client)

    @classmethod
    def from_config(cls, kubeconfig: Optional[str] = None, context: Optional[str] = None) -> "ClusterClient":
        """
        Loads a kubeconfig file, falling back to the in-cluster service account.

        :param kubeconfig: Path to a kubeconfig file. Defaults to the standard locations.
        :param context: Kubeconfig context to use.
        :return: A cluster client bound to the loaded configuration.
        """
        try:
            config.load_kube_config(config_file=kubeconfig, context=context)
        except config.ConfigException:
            if kubeconfig or context:
                raise
            log.debug("no kubeconfig found, using in-cluster configuration")
            config.load_incluster_config()
        return cls(client.ApiClient())

    def _method(self, verb: str, kind: str):
        try:
            group, suffix = _KINDS[kind]
        except KeyError:
            raise ValueError(f"Unsupported kind: {kind}")
        return getattr(getattr(self, group), f"{verb}_namespaced_{suffix}")

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """
        Reads an object.

        :return: The object, or None if it does not exist.
        """
        try:
            obj = self._method("read", kind)(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return self._to_dict(obj)

    def create(self, kind: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        obj = self._method("create", kind)(namespace=namespace, body=body)
        return self._to_dict(obj)

    def replace(self, kind: str, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        obj = self._method("replace", kind)(name=name, namespace=namespace, body=body)
        return self._to_dict(obj)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """
        Deletes an object and, in the background, everything it owns.
        Deleting an object that does not exist is not an error.
        """
        try:
            self._method("delete", kind)(
                name=name, namespace=namespace, propagation_policy="Background"
            )
        except ApiException as e:
            if e.status != 404:
                raise

    def list(self, kind: str, namespace: str, labels: Dict[str, str]) -> List[Dict[str, Any]]:
        """
        Lists objects carrying every label in ``labels``.
        """
        selector = ",".join(f"{k}={v}" for k, v in labels.items())
        result = self._method("list", kind)(namespace=namespace, label_selector=selector)
        return [self._to_dict(item) for item in result.items]
