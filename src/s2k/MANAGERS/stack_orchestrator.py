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
Orchestration of one stack deploy pass, plus status and teardown.
"""
import threading
from typing import Dict, List, Optional

from ..CONVERTERS.resource_kind import get_resource_kind
from ..CONVERTERS.to_kubernetes import DEPLOYED_STATUS, ERROR_STATUS, PROGRESSING_STATUS, get_stack_config_map_name
from ..MODELS.deploy_config import DeployConfig, StackDeployOptions
from ..MODELS.stack import Stack
from ..RUNNERS.dependency_resolver import (
    DependencyResolver,
    add_dependent_services_if_not_present,
    validate_defined_services,
    validate_dependencies,
    validate_volumes,
)
from ..RUNNERS.scope_filters import endpoints_in_scope, volumes_in_scope
from ..UTILS.logging import get_logger
from .cluster_client import ClusterClient
from .health_evaluator import check_restart_budget, has_healthy_dependencies, is_running
from .resource_deployer import ResourceDeployer
from .stack_waiter import StackWaiter

log = get_logger(__name__)


class StackOrchestrator:
    """
    Deploys a stack onto the cluster, one pass per call.
    """
    def __init__(self, stack: Stack, client: ClusterClient, config: Optional[DeployConfig] = None):
        """
        Initializes the orchestrator.

        :param stack: The stack.
        :param client: Cluster client.
        :param config: Process-wide configuration.
        """
        self.config = config or DeployConfig()
        if not stack.namespace and self.config.namespace:
            stack = stack.model_copy(update={"namespace": self.config.namespace})
        self.stack = stack
        self.client = client
        self.resolver = DependencyResolver()

    def deploy(self, options: Optional[StackDeployOptions] = None,
               cancel_event: Optional[threading.Event] = None) -> List[str]:
        """
        Deploys the requested services, their unsatisfied dependencies and the
        volumes and endpoints they use.

        Validation happens before anything is written to the cluster. The stack
        record is marked ``progressing`` while applying, then ``deployed``, or
        ``error`` if the pass fails.

        :param options: Deploy options. Defaults to every service.
        :param cancel_event: Set to stop the pass before the next apply.
        :return: The deployed service names, in apply order.
        """
        options = options or StackDeployOptions()
        stack = self.stack
        deployer = ResourceDeployer(self.client, stack, self.config.update_strategy, cancel_event)

        validate_defined_services(stack, options.services_to_deploy)
        validate_dependencies(stack)

        if options.services_to_deploy:
            names = add_dependent_services_if_not_present(stack, options.services_to_deploy, self.client)
        else:
            names = list(stack.services)
        validate_volumes(stack, names)

        for name in names:
            if has_healthy_dependencies(stack, name):
                check_restart_budget(stack, name, self.client)

        deployer.check_cancelled()
        log.info("deploying stack", stack=stack.name, namespace=stack.namespace, services=names)
        deployer.save_config_map(PROGRESSING_STATUS)
        try:
            for volume_name in volumes_in_scope(stack, names):
                deployer.deploy_volume(volume_name)

            order = self.resolver.resolve_order(stack, names)
            for name in order:
                deployer.deploy_service(name)

            for endpoint_name in endpoints_in_scope(stack.endpoints, names):
                deployer.deploy_endpoint(endpoint_name)
        except Exception:
            deployer.save_config_map(ERROR_STATUS)
            raise

        if options.wait:
            waiter = StackWaiter(stack, self.client, self.config.wait_interval, cancel_event)
            try:
                waiter.wait(order, options.timeout)
            except Exception:
                deployer.save_config_map(ERROR_STATUS)
                raise

        deployer.save_config_map(DEPLOYED_STATUS)
        log.info("stack deployed", stack=stack.name)
        return order

    def ps(self) -> Dict[str, str]:
        """
        Returns the status of all services.

        :return: Service names and their statuses.
        """
        return {
            name: "running" if is_running(self.stack, name, self.client) else "not running"
            for name in self.stack.services
        }

    def destroy(self, remove_volumes: bool = False):
        """
        Deletes every object this stack owns, in reverse dependency order.

        :param remove_volumes: Also delete the persistent volume claims.
        """
        deployer = ResourceDeployer(self.client, self.stack)
        log.info("destroying stack", stack=self.stack.name, namespace=self.stack.namespace)

        for name in self.stack.endpoints:
            deployer.remove("Ingress", name)

        for name in reversed(self.resolver.resolve_order(self.stack)):
            deployer.remove(get_resource_kind(self.stack.services[name]).value, name)
            deployer.remove("Service", name)

        if remove_volumes:
            for name in self.stack.volumes:
                deployer.remove("PersistentVolumeClaim", name)

        self.client.delete("ConfigMap", self.stack.namespace, get_stack_config_map_name(self.stack.name))
