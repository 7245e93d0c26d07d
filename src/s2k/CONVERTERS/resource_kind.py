"""
Selection of the workload kind that represents a service.
"""
from enum import Enum

from ..MODELS.stack import RestartPolicy, Service


class ResourceKind(str, Enum):
    """Workload kinds a service can be deployed as."""

    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    JOB = "Job"


def get_resource_kind(service: Service) -> ResourceKind:
    """
    Decides which workload kind represents ``service``.

    Depends only on the restart policy and on whether the service mounts a
    named volume, never on cluster state, so the deployer and the health
    evaluator always agree.

    :param service: The service definition.
    :return: The workload kind.
    """
    if service.restart_policy == RestartPolicy.NEVER:
        return ResourceKind.JOB
    if any(volume.local_path for volume in service.volumes):
        return ResourceKind.STATEFUL_SET
    return ResourceKind.DEPLOYMENT
