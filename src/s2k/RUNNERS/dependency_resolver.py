"""
Dependency resolution for stack services: validation of requested names,
expansion of a partial deploy to its unsatisfied dependencies, and apply order.
"""
from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..errors import InvalidDependencyError, UndefinedServicesError, UndefinedVolumeError
from ..MANAGERS.cluster_client import ClusterClient
from ..MANAGERS.health_evaluator import is_dependency_satisfied
from ..MODELS.stack import Stack
from ..UTILS.logging import get_logger

log = get_logger(__name__)


def validate_defined_services(stack: Stack, names: Iterable[str]) -> None:
    """
    Checks that every requested service exists in the stack.

    :param stack: The stack.
    :param names: Requested service names.
    :raises UndefinedServicesError: Listing every undefined name.
    """
    undefined: List[str] = []
    for name in names:
        if name not in stack.services and name not in undefined:
            undefined.append(name)
    if undefined:
        raise UndefinedServicesError(undefined)


def validate_dependencies(stack: Stack) -> None:
    """
    Checks that every ``depends_on`` entry references a service of the stack.

    :raises InvalidDependencyError: Listing every service with unknown dependencies.
    """
    missing_by_service: Dict[str, List[str]] = {}
    for name, svc in stack.services.items():
        missing = [dep for dep in svc.depends_on if dep not in stack.services]
        if missing:
            missing_by_service[name] = missing
    if missing_by_service:
        raise InvalidDependencyError(missing_by_service)


def validate_volumes(stack: Stack, names: Iterable[str]) -> None:
    """
    Checks that the named volumes of the given services are declared in the stack.

    :raises UndefinedVolumeError: Listing every (service, volume) pair that is not declared.
    """
    undeclared: List[Tuple[str, str]] = []
    for name in names:
        for volume in stack.services[name].volumes:
            if volume.local_path and volume.local_path not in stack.volumes:
                undeclared.append((name, volume.local_path))
    if undeclared:
        raise UndefinedVolumeError(undeclared)


def add_dependent_services_if_not_present(stack: Stack, names: List[str], client: ClusterClient) -> List[str]:
    """
    Expands a deploy request with the dependencies that are not satisfied yet.

    Requested names keep their order; added dependencies are appended in
    discovery order and scanned in turn. Already present names are never
    duplicated, and cyclic ``depends_on`` graphs terminate.

    :param stack: The stack.
    :param names: Requested service names.
    :param client: Cluster client used to check dependency state.
    :return: The expanded list of service names.
    """
    result = list(names)
    present: Set[str] = set(result)
    visited: Set[str] = set()
    satisfied: Dict[str, bool] = {}
    worklist = deque(result)

    while worklist:
        name = worklist.popleft()
        if name in visited:
            continue
        visited.add(name)

        for dep in stack.services[name].depends_on:
            if dep in present:
                continue
            if dep not in satisfied:
                satisfied[dep] = is_dependency_satisfied(stack, dep, client)
            if satisfied[dep]:
                log.debug("dependency already satisfied", service=name, dependency=dep)
                continue
            log.debug("adding dependency to deploy", service=name, dependency=dep)
            result.append(dep)
            present.add(dep)
            worklist.append(dep)

    return result


class DependencyResolver:
    """
    Resolves the order in which services are applied.
    """
    def resolve_order(self, stack: Stack, names: Optional[Iterable[str]] = None) -> List[str]:
        """
        Orders services so that dependencies come before their dependents.

        Only dependencies within ``names`` are considered. A cycle is logged
        and broken at the edge that closes it.

        :param stack: The stack.
        :param names: Services to order. Defaults to every service of the stack.
        :return: Service names in apply order.
        """
        names = list(stack.services) if names is None else list(names)
        selected = set(names)
        ordered: List[str] = []
        visited: Set[str] = set()
        done: Set[str] = set()

        for root in names:
            if root in visited:
                continue
            visited.add(root)
            path = [(root, iter(stack.services[root].depends_on))]
            while path:
                node, deps = path[-1]
                for dep in deps:
                    if dep not in selected:
                        continue
                    if dep not in visited:
                        visited.add(dep)
                        path.append((dep, iter(stack.services[dep].depends_on)))
                        break
                    if dep not in done:
                        log.warning("circular dependency detected", service=node, dependency=dep)
                else:
                    path.pop()
                    done.add(node)
                    ordered.append(node)

        return ordered
