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
Health evaluation of deployed services: readiness, dependency satisfaction
and the crash-restart budget of dependencies.

These are single blocking reads against the cluster, meant to be called
repeatedly by a polling loop. Nothing here sleeps or retries.
"""
from typing import Any, Dict, Optional

from ..CONVERTERS.resource_kind import ResourceKind, get_resource_kind
from ..CONVERTERS.to_kubernetes import translate_label_selector
from ..errors import RestartBudgetExceededError
from ..MODELS.stack import DependsOnCondition, Stack
from ..UTILS.logging import get_logger
from .cluster_client import ClusterClient

log = get_logger(__name__)


def _get_workload(stack: Stack, svc_name: str, client: ClusterClient):
    kind = get_resource_kind(stack.services[svc_name])
    return kind, client.get(kind.value, stack.namespace, svc_name)


def _status(obj: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not obj:
        return {}
    return obj.get("status") or {}


def is_running(stack: Stack, svc_name: str, client: ClusterClient) -> bool:
    """
    Whether a service is running.

    A Job is running while it has active pods; a Deployment or StatefulSet
    while it has ready replicas. A finished Job is not running.

    :param stack: The stack.
    :param svc_name: Name of the service.
    :param client: Cluster client.
    :return: True if running.
    """
    kind, obj = _get_workload(stack, svc_name, client)
    status = _status(obj)
    if kind == ResourceKind.JOB:
        return (status.get("active") or 0) > 0
    return (status.get("readyReplicas") or 0) > 0


def is_dependency_satisfied(stack: Stack, svc_name: str, client: ClusterClient) -> bool:
    """
    Whether a dependency needs no (re)deploy: it is running, or it is a Job
    that already completed successfully.
    """
    kind, obj = _get_workload(stack, svc_name, client)
    status = _status(obj)
    if kind == ResourceKind.JOB:
        return (status.get("active") or 0) > 0 or (status.get("succeeded") or 0) > 0
    return (status.get("readyReplicas") or 0) > 0


def get_max_restart_count(stack: Stack, svc_name: str, client: ClusterClient) -> Optional[int]:
    """
    Highest container restart count among the pods of a service.

    :return: The restart count, or None if no container has reported a status yet.
    """
    pods = client.list("Pod", stack.namespace, translate_label_selector(svc_name, stack))
    counts = [
        status.get("restartCount") or 0
        for pod in pods
        for status in (_status(pod).get("containerStatuses") or [])
    ]
    if not counts:
        return None
    return max(counts)


def check_restart_budget(stack: Stack, svc_name: str, client: ClusterClient) -> None:
    """
    Fails if a dependency that ``svc_name`` needs healthy has restarted at
    least as many times as its backoff limit.

    Services without healthy-condition dependencies are never inspected.

    :param stack: The stack.
    :param svc_name: Name of the dependent service.
    :param client: Cluster client.
    :raises RestartBudgetExceededError: If a dependency is crash-looping.
    """
    svc = stack.services[svc_name]
    for dep_name, spec in svc.depends_on.items():
        if spec.condition != DependsOnCondition.HEALTHY:
            continue
        restarts = get_max_restart_count(stack, dep_name, client)
        if restarts is None:
            continue
        limit = stack.services[dep_name].backoff_limit
        if restarts >= limit:
            log.debug("restart budget exceeded", service=dep_name, restarts=restarts, limit=limit)
            raise RestartBudgetExceededError(dep_name, restarts)


def has_healthy_dependencies(stack: Stack, svc_name: str) -> bool:
    return any(
        spec.condition == DependsOnCondition.HEALTHY
        for spec in stack.services[svc_name].depends_on.values()
    )
