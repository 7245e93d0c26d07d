"""
Restricts the volumes and endpoints acted upon to those referenced by the
services of the current deploy.
"""
from typing import Dict, Iterable, List

from ..MODELS.stack import Endpoint, Stack


def volumes_in_scope(stack: Stack, services_to_deploy: Iterable[str]) -> List[str]:
    """
    Named volumes mounted by the services in scope.

    Local paths that are not declared volumes of the stack are left out.

    :param stack: The stack.
    :param services_to_deploy: Names of the services in scope.
    :return: Volume names, in first-use order.
    """
    result: List[str] = []
    for svc_name in services_to_deploy:
        for volume in stack.services[svc_name].volumes:
            name = volume.local_path
            if name and name in stack.volumes and name not in result:
                result.append(name)
    return result


def endpoints_in_scope(endpoints: Dict[str, Endpoint], services_to_deploy: Iterable[str]) -> List[str]:
    """
    Endpoints with at least one rule targeting a service in scope.

    :param endpoints: Endpoints of the stack.
    :param services_to_deploy: Names of the services in scope.
    :return: Endpoint names.
    """
    in_scope = set(services_to_deploy)
    return [
        name
        for name, endpoint in endpoints.items()
        if any(rule.service in in_scope for rule in endpoint.rules)
    ]
