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
Translation of stack services, volumes and endpoints into Kubernetes manifests.

Every function here is pure: it reads the stack and returns plain manifest
dictionaries, ready to be sent through the Kubernetes API client.
"""
import base64
import re
from typing import Any, Dict, List, Optional, Tuple

from kubernetes.utils import parse_quantity

from ..MODELS.labels import (
    DEPLOYED_BY_LABEL,
    STACK_LABEL,
    STACK_NAME_LABEL,
    STACK_SERVICE_NAME_LABEL,
    STACK_VOLUME_NAME_LABEL,
    volume_marker_label,
)
from ..MODELS.stack import Service, Stack, StackVolume
from .resource_kind import ResourceKind, get_resource_kind
from .update_strategy import get_deployment_strategy, get_stateful_set_strategy

# Claim name of per-replica volumes (volumes without a local path)
DEFAULT_CLAIM_NAME = "pvc"
DEFAULT_VOLUME_SIZE = "1Gi"

PERMISSIONS_IMAGE = "busybox"
HOSTNAME_TOPOLOGY_KEY = "kubernetes.io/hostname"

# Stack record fields read by other tooling
NAME_FIELD = "name"
YAML_FIELD = "yaml"
COMPOSE_FIELD = "compose"
STATUS_FIELD = "status"

PROGRESSING_STATUS = "progressing"
DEPLOYED_STATUS = "deployed"
ERROR_STATUS = "error"

Manifest = Dict[str, Any]


def translate_labels(svc_name: str, stack: Stack) -> Dict[str, str]:
    """
    Labels of every object managed for a service.

    :param svc_name: Name of the service.
    :param stack: The stack.
    :return: Ownership, identity and deployed-by labels, one co-location
        marker per named volume, then the user labels on top.
    """
    svc = stack.services[svc_name]
    labels = {
        STACK_NAME_LABEL: stack.name,
        STACK_SERVICE_NAME_LABEL: svc_name,
        DEPLOYED_BY_LABEL: stack.name,
    }
    for volume in svc.volumes:
        if volume.local_path:
            labels[volume_marker_label(volume.local_path)] = "true"
    labels.update(svc.labels)
    return labels


def translate_label_selector(svc_name: str, stack: Stack) -> Dict[str, str]:
    """Labels identifying the pods of a service."""
    return {
        STACK_NAME_LABEL: stack.name,
        STACK_SERVICE_NAME_LABEL: svc_name,
    }


def translate_volume_labels(volume_name: str, stack: Stack) -> Dict[str, str]:
    """Labels of the persistent claim backing a stack volume."""
    labels = {
        STACK_NAME_LABEL: stack.name,
        STACK_VOLUME_NAME_LABEL: volume_name,
        DEPLOYED_BY_LABEL: stack.name,
    }
    labels.update(stack.volumes[volume_name].labels)
    return labels


def translate_annotations(svc: Service) -> Dict[str, str]:
    return dict(svc.annotations)


def get_volume_claim_name(volume: StackVolume) -> str:
    """
    Identity of a volume mount: its local path, or the per-replica claim name.
    """
    return volume.local_path or DEFAULT_CLAIM_NAME


def _volume_sub_path(volume: StackVolume, index: int) -> str:
    return volume.local_path or f"data-{index}"


def translate_environment(svc: Service) -> List[Dict[str, str]]:
    return [{"name": e.name, "value": e.value} for e in svc.environment if e.name]


def translate_container_ports(svc: Service) -> List[Dict[str, Any]]:
    """Container ports, sorted by container port."""
    ports = sorted(svc.ports, key=lambda p: p.container_port)
    return [{"containerPort": p.container_port} for p in ports]


def translate_service_ports(svc: Service) -> List[Dict[str, Any]]:
    """
    Ports of the network service, unique by port number.

    A published port that differs from its container port adds a second
    entry targeting the container port.
    """
    result: List[Dict[str, Any]] = []
    added = set()

    def add(port: int, target: int, protocol: str):
        result.append({
            "name": f"p-{port}-{target}-{protocol.lower()}",
            "port": port,
            "targetPort": target,
            "protocol": protocol,
        })
        added.add(port)

    for p in svc.ports:
        if p.container_port not in added:
            add(p.container_port, p.container_port, p.protocol)
        if p.host_port and p.host_port != p.container_port and p.host_port not in added:
            add(p.host_port, p.container_port, p.protocol)
    return result


def _is_positive(quantity: str) -> bool:
    return bool(quantity) and parse_quantity(quantity) > 0


def translate_resources(svc: Service) -> Dict[str, Dict[str, str]]:
    """
    Resource requirements. Unset or zero quantities are left out entirely so
    they never cap a container at zero.
    """
    result: Dict[str, Dict[str, str]] = {}
    if svc.resources is None:
        return result

    for section, values in (("limits", svc.resources.limits), ("requests", svc.resources.requests)):
        entries = {}
        if _is_positive(values.cpu):
            entries["cpu"] = values.cpu
        if _is_positive(values.memory):
            entries["memory"] = values.memory
        if entries:
            result[section] = entries
    return result


def translate_probe(svc: Service) -> Optional[Dict[str, Any]]:
    """
    Readiness probe built from the service health check, if any.
    """
    hc = svc.healthcheck
    if hc is None:
        return None

    if hc.test:
        probe: Dict[str, Any] = {"exec": {"command": list(hc.test)}}
    elif hc.http is not None:
        probe = {"httpGet": {"path": hc.http.path, "port": hc.http.port}}
    else:
        return None

    probe.update({
        "timeoutSeconds": int(hc.timeout),
        "periodSeconds": int(hc.interval),
        "failureThreshold": int(hc.retries),
        "initialDelaySeconds": int(hc.start_period),
    })
    return probe


def translate_security_context(svc: Service) -> Optional[Dict[str, Any]]:
    """
    Security context, only when the service asks for capabilities or a user.
    """
    if not svc.cap_add and not svc.cap_drop and svc.user is None:
        return None

    capabilities: Dict[str, List[str]] = {}
    if svc.cap_add:
        capabilities["add"] = list(svc.cap_add)
    if svc.cap_drop:
        capabilities["drop"] = list(svc.cap_drop)

    result: Dict[str, Any] = {"capabilities": capabilities}
    if svc.user is not None:
        if svc.user.run_as_user is not None:
            result["runAsUser"] = svc.user.run_as_user
        if svc.user.run_as_group is not None:
            result["runAsGroup"] = svc.user.run_as_group
    return result


def translate_volume_mounts(svc: Service) -> List[Dict[str, str]]:
    return [
        {
            "name": get_volume_claim_name(v),
            "mountPath": v.remote_path,
            "subPath": _volume_sub_path(v, i),
        }
        for i, v in enumerate(svc.volumes)
    ]


def translate_volumes(svc: Service, kind: ResourceKind) -> List[Dict[str, Any]]:
    """
    Pod volumes. Named volumes reference their stack claim; per-replica
    storage comes from the claim template of a StatefulSet and is an
    ``emptyDir`` for other kinds.
    """
    volumes: List[Dict[str, Any]] = []
    seen = set()
    for v in svc.volumes:
        name = get_volume_claim_name(v)
        if name in seen:
            continue
        seen.add(name)
        if v.local_path:
            volumes.append({"name": name, "persistentVolumeClaim": {"claimName": v.local_path}})
        elif kind != ResourceKind.STATEFUL_SET:
            volumes.append({"name": name, "emptyDir": {}})
    return volumes


def translate_volume_claim_templates(svc_name: str, stack: Stack) -> List[Manifest]:
    """
    Claim templates for per-replica storage, only if the service has a
    volume without a local path.
    """
    svc = stack.services[svc_name]
    if all(v.local_path for v in svc.volumes):
        return []

    storage = svc.resources.requests.storage if svc.resources else None
    spec: Dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": (storage.size if storage and storage.size else DEFAULT_VOLUME_SIZE)}},
    }
    if storage and storage.storage_class:
        spec["storageClassName"] = storage.storage_class

    return [{
        "metadata": {
            "name": DEFAULT_CLAIM_NAME,
            "labels": translate_labels(svc_name, stack),
            "annotations": translate_annotations(svc),
        },
        "spec": spec,
    }]


def get_permissions_init_container(svc_name: str, svc: Service) -> Manifest:
    """
    Init container that opens up permissions of every mounted volume.

    Named volumes are mounted under ``/volumes`` and per-replica storage at
    ``/data``; each chmod clause is added once.
    """
    mounts: List[Dict[str, str]] = []
    clauses: List[str] = []
    mounted = set()
    for volume in svc.volumes:
        name = get_volume_claim_name(volume)
        if name in mounted:
            continue
        mounted.add(name)
        if name != DEFAULT_CLAIM_NAME:
            mounts.append({"name": name, "mountPath": f"/volumes/{name}"})
            clause = "chmod 777 /volumes/*"
        else:
            mounts.append({"name": name, "mountPath": "/data"})
            clause = "chmod 777 /data"
        if clause not in clauses:
            clauses.append(clause)

    return {
        "name": f"init-{svc_name}",
        "image": PERMISSIONS_IMAGE,
        "command": ["sh", "-c", " && ".join(clauses)],
        "volumeMounts": mounts,
    }


def get_initialize_volume_content_container(svc_name: str, svc: Service) -> Optional[Manifest]:
    """
    Init container that seeds each volume with the image content found at
    its mount path. Missing content is reported and tolerated.
    """
    if not svc.volumes:
        return None

    mounts: List[Dict[str, str]] = []
    clauses: List[str] = []
    for idx, volume in enumerate(svc.volumes):
        claim_name = get_volume_claim_name(volume)
        mounts.append({
            "name": claim_name,
            "mountPath": f"/init-volume-{idx}",
            "subPath": _volume_sub_path(volume, idx),
        })
        info_cmd = f"echo initializing volume {claim_name} with content of the image {svc.image}..."
        copy_cmd = (
            f"cp -Rv {volume.remote_path}/. /init-volume-{idx} 2>&1 | "
            f"sed -E 's/cp: cannot stat (.*): No such file or directory/"
            f"the image '{svc.image}' does not have any content in \\1/g'"
        )
        clauses.append(f"{info_cmd} && ({copy_cmd} || true)")

    return {
        "name": f"init-volume-{svc_name}",
        "image": svc.image,
        "imagePullPolicy": "IfNotPresent",
        "command": ["sh", "-c", " && ".join(clauses)],
        "volumeMounts": mounts,
    }


def get_init_containers(svc_name: str, svc: Service) -> List[Manifest]:
    if not svc.volumes:
        return []
    containers = [get_permissions_init_container(svc_name, svc)]
    seed = get_initialize_volume_content_container(svc_name, svc)
    if seed is not None:
        containers.append(seed)
    return containers


def translate_affinity(svc: Service) -> Optional[Dict[str, Any]]:
    """
    Pod affinity that co-schedules the service with every pod already
    mounting one of its named volumes.
    """
    terms = []
    seen = set()
    for volume in svc.volumes:
        if not volume.local_path or volume.local_path in seen:
            continue
        seen.add(volume.local_path)
        terms.append({
            "topologyKey": HOSTNAME_TOPOLOGY_KEY,
            "labelSelector": {
                "matchExpressions": [
                    {"key": volume_marker_label(volume.local_path), "operator": "Exists"}
                ]
            },
        })
    if not terms:
        return None
    return {"podAffinity": {"requiredDuringSchedulingIgnoredDuringExecution": terms}}


def translate_container(svc_name: str, svc: Service) -> Manifest:
    container: Manifest = {
        "name": svc_name,
        "image": svc.image,
        "env": translate_environment(svc),
        "ports": translate_container_ports(svc),
        "resources": translate_resources(svc),
    }
    if svc.entrypoint:
        container["command"] = list(svc.entrypoint)
    if svc.command:
        container["args"] = list(svc.command)
    if svc.workdir:
        container["workingDir"] = svc.workdir
    if svc.volumes:
        container["volumeMounts"] = translate_volume_mounts(svc)

    security_context = translate_security_context(svc)
    if security_context is not None:
        container["securityContext"] = security_context
    probe = translate_probe(svc)
    if probe is not None:
        container["readinessProbe"] = probe
    return container


def translate_pod_template(svc_name: str, stack: Stack, kind: ResourceKind) -> Manifest:
    svc = stack.services[svc_name]
    pod_spec: Manifest = {
        "terminationGracePeriodSeconds": svc.stop_grace_period,
        "containers": [translate_container(svc_name, svc)],
    }
    if kind == ResourceKind.JOB:
        pod_spec["restartPolicy"] = svc.restart_policy.value

    init_containers = get_init_containers(svc_name, svc)
    if init_containers:
        pod_spec["initContainers"] = init_containers
    volumes = translate_volumes(svc, kind)
    if volumes:
        pod_spec["volumes"] = volumes
    affinity = translate_affinity(svc)
    if affinity is not None:
        pod_spec["affinity"] = affinity

    return {
        "metadata": {
            "labels": translate_labels(svc_name, stack),
            "annotations": translate_annotations(svc),
        },
        "spec": pod_spec,
    }


def _object_metadata(svc_name: str, stack: Stack) -> Manifest:
    return {
        "name": svc_name,
        "namespace": stack.namespace,
        "labels": translate_labels(svc_name, stack),
        "annotations": translate_annotations(stack.services[svc_name]),
    }


def translate_deployment(svc_name: str, stack: Stack, update_strategy: str = "") -> Manifest:
    svc = stack.services[svc_name]
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _object_metadata(svc_name, stack),
        "spec": {
            "replicas": svc.replicas,
            "selector": {"matchLabels": translate_label_selector(svc_name, stack)},
            "strategy": get_deployment_strategy(svc, update_strategy),
            "template": translate_pod_template(svc_name, stack, ResourceKind.DEPLOYMENT),
        },
    }


def translate_stateful_set(svc_name: str, stack: Stack, update_strategy: str = "") -> Manifest:
    svc = stack.services[svc_name]
    spec: Manifest = {
        "replicas": svc.replicas,
        "revisionHistoryLimit": 2,
        "selector": {"matchLabels": translate_label_selector(svc_name, stack)},
        "updateStrategy": get_stateful_set_strategy(svc, update_strategy),
        "serviceName": svc_name,
        "template": translate_pod_template(svc_name, stack, ResourceKind.STATEFUL_SET),
    }
    claim_templates = translate_volume_claim_templates(svc_name, stack)
    if claim_templates:
        spec["volumeClaimTemplates"] = claim_templates
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _object_metadata(svc_name, stack),
        "spec": spec,
    }


def translate_job(svc_name: str, stack: Stack) -> Manifest:
    svc = stack.services[svc_name]
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": _object_metadata(svc_name, stack),
        "spec": {
            "completions": svc.replicas,
            "parallelism": 1,
            "backoffLimit": svc.backoff_limit,
            "template": translate_pod_template(svc_name, stack, ResourceKind.JOB),
        },
    }


def translate_workload(svc_name: str, stack: Stack, update_strategy: str = "") -> Tuple[ResourceKind, Manifest]:
    """
    Translates a service into the workload of its resource kind.

    :param svc_name: Name of the service.
    :param stack: The stack.
    :param update_strategy: Process-wide update strategy override.
    :return: The resource kind and its manifest.
    """
    kind = get_resource_kind(stack.services[svc_name])
    if kind == ResourceKind.JOB:
        return kind, translate_job(svc_name, stack)
    if kind == ResourceKind.STATEFUL_SET:
        return kind, translate_stateful_set(svc_name, stack, update_strategy)
    return kind, translate_deployment(svc_name, stack, update_strategy)


def translate_service(svc_name: str, stack: Stack) -> Manifest:
    """Cluster-internal network service of a stack service."""
    svc = stack.services[svc_name]
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _object_metadata(svc_name, stack),
        "spec": {
            "selector": translate_label_selector(svc_name, stack),
            "type": "ClusterIP",
            "ports": translate_service_ports(svc),
        },
    }


def translate_persistent_volume_claim(volume_name: str, stack: Stack) -> Manifest:
    """Persistent claim of a named stack volume."""
    volume = stack.volumes[volume_name]
    spec: Manifest = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": volume.size or DEFAULT_VOLUME_SIZE}},
    }
    if volume.storage_class:
        spec["storageClassName"] = volume.storage_class
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": volume_name,
            "namespace": stack.namespace,
            "labels": translate_volume_labels(volume_name, stack),
            "annotations": dict(volume.annotations),
        },
        "spec": spec,
    }


def _default_service_port(svc_name: str, stack: Stack) -> int:
    svc = stack.services.get(svc_name)
    if svc is None or not svc.ports:
        return 80
    return min(p.container_port for p in svc.ports)


def translate_ingress(endpoint_name: str, stack: Stack) -> Manifest:
    """
    Ingress of a network endpoint, one path per rule. A rule without a port
    targets the lowest container port of its service.
    """
    endpoint = stack.endpoints[endpoint_name]
    paths = []
    for rule in endpoint.rules:
        port = rule.port or _default_service_port(rule.service, stack)
        paths.append({
            "path": rule.path,
            "pathType": "Prefix",
            "backend": {"service": {"name": rule.service, "port": {"number": port}}},
        })

    labels = {
        STACK_NAME_LABEL: stack.name,
        DEPLOYED_BY_LABEL: stack.name,
    }
    labels.update(endpoint.labels)
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {
            "name": endpoint_name,
            "namespace": stack.namespace,
            "labels": labels,
            "annotations": dict(endpoint.annotations),
        },
        "spec": {"rules": [{"http": {"paths": paths}}]},
    }


def get_stack_config_map_name(stack_name: str) -> str:
    """Name of the stack record: ``s2k-`` plus the stack name as a DNS label."""
    sanitized = re.sub(r"[^a-z0-9-]", "-", stack_name.lower()).strip("-")
    return f"s2k-{sanitized}"


def translate_config_map(stack: Stack, status: str = PROGRESSING_STATUS) -> Manifest:
    """
    Stack record used by redeploy and administration tooling. The ``name``,
    ``yaml`` and ``compose`` fields are a stable contract.
    """
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": get_stack_config_map_name(stack.name),
            "namespace": stack.namespace,
            "labels": {STACK_LABEL: "true"},
        },
        "data": {
            NAME_FIELD: stack.name,
            YAML_FIELD: base64.b64encode(stack.manifest).decode("ascii"),
            COMPOSE_FIELD: "true" if stack.is_compose else "false",
            STATUS_FIELD: status,
        },
    }
