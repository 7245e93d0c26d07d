"""
Update strategy resolution for Deployments and StatefulSets.

Sources are evaluated in precedence order: the service annotation, then the
process-wide override, then the default of the workload kind. A value that is
not allowed for the kind is logged and the next source is tried.
"""
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Tuple

from ..errors import InvalidUpdateStrategyError
from ..MODELS.labels import UPDATE_STRATEGY_ANNOTATION
from ..MODELS.stack import Service
from ..UTILS.logging import get_logger

log = get_logger(__name__)

ROLLING = "rolling"
RECREATE = "recreate"
ON_DELETE = "on-delete"


@dataclass(frozen=True)
class StrategyPolicy:
    """Allowed values and default for one workload kind."""

    kind: str
    allowed: FrozenSet[str]
    default: str

    def validate(self, value: str) -> None:
        if value not in self.allowed:
            raise InvalidUpdateStrategyError(self.kind, value)


DEPLOYMENT_POLICY = StrategyPolicy(
    kind="deployment", allowed=frozenset({ROLLING, RECREATE}), default=RECREATE
)
STATEFUL_SET_POLICY = StrategyPolicy(
    kind="statefulset", allowed=frozenset({ROLLING, ON_DELETE}), default=ROLLING
)

# Strategy value -> Kubernetes strategy type
_DEPLOYMENT_TYPES = {ROLLING: "RollingUpdate", RECREATE: "Recreate"}
_STATEFUL_SET_TYPES = {ROLLING: "RollingUpdate", ON_DELETE: "OnDelete"}


def _lookup_sources(service: Service, override: str) -> List[Tuple[str, Callable[[], str]]]:
    return [
        ("annotation", lambda: service.annotations.get(UPDATE_STRATEGY_ANNOTATION, "")),
        ("override", lambda: override),
    ]


def resolve_update_strategy(service: Service, policy: StrategyPolicy, override: str = "") -> str:
    """
    Resolves the update strategy of a service.

    :param service: The service definition.
    :param policy: Allowed values and default for the workload kind.
    :param override: The process-wide override, empty when unset.
    :return: One of the values allowed by ``policy``.
    """
    for source, lookup in _lookup_sources(service, override):
        value = lookup()
        if not value:
            continue
        try:
            policy.validate(value)
        except InvalidUpdateStrategyError as e:
            log.debug("invalid update strategy", source=source, error=str(e))
            continue
        return value
    return policy.default


def get_deployment_strategy(service: Service, override: str = "") -> Dict[str, str]:
    """Returns the ``spec.strategy`` of a Deployment."""
    value = resolve_update_strategy(service, DEPLOYMENT_POLICY, override)
    return {"type": _DEPLOYMENT_TYPES[value]}


def get_stateful_set_strategy(service: Service, override: str = "") -> Dict[str, str]:
    """Returns the ``spec.updateStrategy`` of a StatefulSet."""
    value = resolve_update_strategy(service, STATEFUL_SET_POLICY, override)
    return {"type": _STATEFUL_SET_TYPES[value]}
