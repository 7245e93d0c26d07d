"""
Errors raised while validating, deploying and waiting on a stack.

Cluster API failures are not wrapped here: ``kubernetes.client.rest.ApiException``
reaches the caller unmodified.
"""
from typing import Dict, Iterable, List, Tuple


class StackError(Exception):
    """Base class for every error raised by s2k itself."""


class UndefinedServicesError(StackError):
    """One or more requested service names are not part of the stack."""

    def __init__(self, names: Iterable[str]):
        self.names: List[str] = list(names)
        super().__init__(f"Service(s) {', '.join(self.names)} not defined in the stack")


class InvalidDependencyError(StackError):
    """One or more services depend on services that the stack does not define."""

    def __init__(self, missing_by_service: Dict[str, List[str]]):
        self.missing_by_service: Dict[str, List[str]] = dict(missing_by_service)
        self.missing: List[str] = []
        for deps in self.missing_by_service.values():
            for dep in deps:
                if dep not in self.missing:
                    self.missing.append(dep)
        details = "; ".join(
            f"'{service}' -> {', '.join(deps)}" for service, deps in self.missing_by_service.items()
        )
        super().__init__(f"Services depend on undefined service(s): {details}")


class UndefinedVolumeError(StackError):
    """Services mount named volumes that are not declared at stack level."""

    def __init__(self, pairs: Iterable[Tuple[str, str]]):
        self.pairs: List[Tuple[str, str]] = list(pairs)
        self.volumes: List[str] = []
        for _, volume in self.pairs:
            if volume not in self.volumes:
                self.volumes.append(volume)
        details = ", ".join(f"'{volume}' (service '{service}')" for service, volume in self.pairs)
        super().__init__(f"Volume(s) used but not declared in the stack: {details}")


class RestartBudgetExceededError(StackError):
    """
    A dependency is crash-looping. This is user-actionable and must stop any
    waiting loop immediately.
    """

    def __init__(self, service: str, restarts: int):
        self.service = service
        self.restarts = restarts
        super().__init__(
            f"Service '{service}' has been restarted {restarts} times. Please check the logs and try again"
        )


class DeployCancelledError(StackError):
    """The deploy pass was interrupted before it finished issuing applies."""

    def __init__(self, message: str = "deploy cancelled"):
        super().__init__(message)


class WaitTimeoutError(StackError):
    """Services did not become ready before the wait timeout."""

    def __init__(self, services: Iterable[str], timeout: float):
        self.services: List[str] = list(services)
        self.timeout = timeout
        super().__init__(
            f"Services {', '.join(self.services)} not ready after {timeout:g} seconds"
        )


class InvalidUpdateStrategyError(StackError):
    """An update strategy value is not allowed for the workload kind."""

    def __init__(self, kind: str, value: str):
        self.kind = kind
        self.value = value
        super().__init__(f"invalid {kind} update strategy: '{value}'")
