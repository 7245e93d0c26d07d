"""
Waits for deployed services to become ready by polling the health evaluator.
"""
import threading
from typing import Iterable, List, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, stop_when_event_set, wait_fixed

from ..errors import DeployCancelledError, WaitTimeoutError
from ..MODELS.stack import Stack
from ..UTILS.logging import get_logger
from .cluster_client import ClusterClient
from .health_evaluator import check_restart_budget, is_dependency_satisfied

log = get_logger(__name__)


class StackWaiter:
    """
    Polls services until every one of them is running, or a completed job.
    """
    def __init__(self, stack: Stack, client: ClusterClient, interval: float = 2.0,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initializes the waiter.

        :param stack: The stack.
        :param client: Cluster client.
        :param interval: Seconds between polls.
        :param cancel_event: Set to stop waiting.
        """
        self.stack = stack
        self.client = client
        self.interval = interval
        self.cancel_event = cancel_event

    def pending(self, names: Iterable[str]) -> List[str]:
        """
        One poll. Restart budgets are checked first so a crash-looping
        dependency fails the wait right away.

        :return: Services that are not ready yet.
        :raises RestartBudgetExceededError: If a dependency is crash-looping.
        """
        names = list(names)
        for name in names:
            check_restart_budget(self.stack, name, self.client)
        not_ready = [n for n in names if not is_dependency_satisfied(self.stack, n, self.client)]
        if not_ready:
            log.debug("waiting for services", services=not_ready)
        return not_ready

    def wait(self, names: Iterable[str], timeout: float = 300.0):
        """
        Blocks until every service is ready.

        :param names: Services to wait for.
        :param timeout: Seconds before giving up.
        :raises WaitTimeoutError: If services are still not ready after ``timeout``.
        :raises DeployCancelledError: If cancellation was requested while waiting.
        """
        names = list(names)
        stop = stop_after_delay(timeout)
        if self.cancel_event is not None:
            stop = stop | stop_when_event_set(self.cancel_event)

        retryer = Retrying(
            wait=wait_fixed(self.interval),
            stop=stop,
            retry=retry_if_result(bool),
        )
        try:
            retryer(self.pending, names)
        except RetryError as e:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise DeployCancelledError("wait cancelled")
            raise WaitTimeoutError(e.last_attempt.result(), timeout)
        log.info("services ready", services=names)
