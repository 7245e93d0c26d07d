# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Idempotent create-or-update of stack objects against the cluster.

Several stacks may share one namespace. An existing object labelled with
another stack's name is never touched: the apply is skipped and reported
as successful.
"""
import copy
import threading
from typing import Any, Dict, Optional

from ..CONVERTERS.resource_kind import ResourceKind
from ..CONVERTERS.to_kubernetes import (
    PROGRESSING_STATUS,
    translate_config_map,
    translate_ingress,
    translate_persistent_volume_claim,
    translate_service,
    translate_workload,
)
from ..errors import DeployCancelledError
from ..MODELS.labels import REVISION_ANNOTATION, STACK_NAME_LABEL
from ..MODELS.stack import Stack
from ..UTILS.logging import get_logger
from .cluster_client import ClusterClient

log = get_logger(__name__)

WORKLOAD_KINDS = (ResourceKind.DEPLOYMENT, ResourceKind.STATEFUL_SET, ResourceKind.JOB)


def get_owner(obj: Dict[str, Any]) -> Optional[str]:
    """Stack name an existing object is labelled with, if any."""
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return labels.get(STACK_NAME_LABEL)


class ResourceDeployer:
    """
    Applies the objects of one stack.
    """
    def __init__(self, client: ClusterClient, stack: Stack, update_strategy: str = "",
                 cancel_event: Optional[threading.Event] = None):
        """
        Initializes the deployer.

        :param client: Cluster client.
        :param stack: The stack being deployed.
        :param update_strategy: Process-wide update strategy override.
        :param cancel_event: Set to stop issuing applies.
        """
        self.client = client
        self.stack = stack
        self.update_strategy = update_strategy
        self.cancel_event = cancel_event

    def check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise DeployCancelledError()

    def is_foreign(self, obj: Dict[str, Any]) -> bool:
        owner = get_owner(obj)
        return bool(owner) and owner != self.stack.name

    def apply(self, kind: str, body: Dict[str, Any], cancellable: bool = True) -> bool:
        """
        Creates the object, or updates it if this stack owns it.

        :param kind: Object kind.
        :param body: Desired manifest.
        :param cancellable: Whether a pending cancellation stops this apply.
        :return: False if the object belongs to another stack and was left alone.
        :raises DeployCancelledError: If cancellation was requested.
        """
        if cancellable:
            self.check_cancelled()
        namespace = self.stack.namespace
        name = body["metadata"]["name"]

        existing = self.client.get(kind, namespace, name)
        if existing is None:
            log.debug("creating object", kind=kind, name=name)
            self.client.create(kind, namespace, body)
            log.info("deployed", kind=kind, name=name)
            return True

        if self.is_foreign(existing):
            log.debug("skipping object owned by another stack", kind=kind, name=name, owner=get_owner(existing))
            return False

        if kind == ResourceKind.JOB.value:
            # Job templates are immutable
            log.debug("recreating job", name=name)
            self.client.delete(kind, namespace, name)
            self.client.create(kind, namespace, body)
        else:
            log.debug("updating object", kind=kind, name=name)
            self.client.replace(kind, namespace, name, self._merge(kind, existing, body))
        log.info("deployed", kind=kind, name=name)
        return True

    def _merge(self, kind: str, existing: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Builds the update of an owned object. Labels set by others are kept and
        the computed ones, including ownership, are laid over them.
        """
        old_meta = existing.get("metadata") or {}
        old_spec = existing.get("spec") or {}
        result = copy.deepcopy(body)
        meta = result["metadata"]

        labels = dict(old_meta.get("labels") or {})
        labels.update(meta.get("labels") or {})
        meta["labels"] = labels
        if old_meta.get("resourceVersion"):
            meta["resourceVersion"] = old_meta["resourceVersion"]

        if kind == "PersistentVolumeClaim":
            # Claim specs are immutable once bound
            result["spec"] = copy.deepcopy(old_spec)
        elif kind == "Service":
            for field in ("clusterIP", "clusterIPs"):
                if field in old_spec:
                    result["spec"][field] = old_spec[field]

        template = result.get("spec", {}).get("template")
        if template is not None:
            old_annotations = ((old_spec.get("template") or {}).get("metadata") or {}).get("annotations") or {}
            revision = int(old_annotations.get(REVISION_ANNOTATION, "0")) + 1
            annotations = template.setdefault("metadata", {}).setdefault("annotations", {})
            annotations[REVISION_ANNOTATION] = str(revision)
        return result

    def remove(self, kind: str, name: str) -> bool:
        """
        Deletes an object owned by this stack.

        :return: False if the object is absent or belongs to another stack.
        """
        existing = self.client.get(kind, self.stack.namespace, name)
        if existing is None:
            return False
        if get_owner(existing) != self.stack.name:
            log.debug("not deleting object owned by another stack", kind=kind, name=name)
            return False
        self.client.delete(kind, self.stack.namespace, name)
        log.info("deleted", kind=kind, name=name)
        return True

    def remove_other_workloads(self, svc_name: str, kind: ResourceKind):
        """
        Deletes workloads of the service under a kind other than ``kind``,
        left behind when its restart policy or volumes changed.
        """
        for other in WORKLOAD_KINDS:
            if other == kind:
                continue
            self.check_cancelled()
            self.remove(other.value, svc_name)

    def deploy_volume(self, volume_name: str) -> bool:
        return self.apply("PersistentVolumeClaim", translate_persistent_volume_claim(volume_name, self.stack))

    def deploy_service(self, svc_name: str) -> bool:
        """
        Deploys the workload of a service and, if it exposes ports, its network
        service. A network service left from a deploy that still had ports is removed.

        :param svc_name: Name of the service.
        :return: False if the workload belongs to another stack.
        """
        kind, manifest = translate_workload(svc_name, self.stack, self.update_strategy)
        self.remove_other_workloads(svc_name, kind)
        deployed = self.apply(kind.value, manifest)
        if self.stack.services[svc_name].ports:
            self.deploy_k8s_service(svc_name)
        else:
            self.check_cancelled()
            self.remove("Service", svc_name)
        return deployed

    def deploy_k8s_service(self, svc_name: str) -> bool:
        """Deploys the cluster-internal network service of a stack service."""
        return self.apply("Service", translate_service(svc_name, self.stack))

    def deploy_endpoint(self, endpoint_name: str) -> bool:
        return self.apply("Ingress", translate_ingress(endpoint_name, self.stack))

    def save_config_map(self, status: str = PROGRESSING_STATUS) -> bool:
        """Persists the stack record with the given deploy status."""
        return self.apply("ConfigMap", translate_config_map(self.stack, status), cancellable=False)
