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
Models for a deployable stack: services, volumes and network endpoints.

The stack is read-only input for one deploy pass. It is built by the parser
(and possibly rewritten by an image build step) before orchestration starts.
"""
from typing import Annotated, List, Dict, Optional
from enum import Enum

from kubernetes.utils import parse_quantity
from pydantic import AfterValidator, BaseModel, Field


class RestartPolicy(str, Enum):
    """
    Restart policy of a service. ``Never`` marks a run-to-completion service.
    """
    ALWAYS = "Always"
    ON_FAILURE = "OnFailure"
    NEVER = "Never"


class DependsOnCondition(str, Enum):
    """
    State a dependency must reach before its dependent is satisfied.
    """
    STARTED = "service_started"
    HEALTHY = "service_healthy"
    COMPLETED = "service_completed_successfully"


class DependsOnConditionSpec(BaseModel):
    """
    Condition attached to a single ``depends_on`` entry.
    """
    condition: DependsOnCondition = DependsOnCondition.STARTED


class EnvVar(BaseModel):
    """
    One ordered environment entry.
    """
    name: str
    value: str = ""


class Port(BaseModel):
    """
    A container port, optionally published on a different service port.
    """
    container_port: int
    host_port: int = 0
    protocol: str = "TCP"


class StackVolume(BaseModel):
    """
    A volume mount of a service.

    A non-empty ``local_path`` references a named volume declared at stack
    level and shared across redeploys. An empty one is per-replica storage.
    """
    local_path: str = ""
    remote_path: str = ""


def _validate_quantity(value: str) -> str:
    if value:
        parse_quantity(value)
    return value


# A Kubernetes resource quantity; empty when unset.
Quantity = Annotated[str, AfterValidator(_validate_quantity)]


class StorageResource(BaseModel):
    """
    Storage request for per-replica volumes.
    """
    size: Quantity = ""
    storage_class: str = ""


class ResourceList(BaseModel):
    """
    CPU and memory quantities, in Kubernetes quantity notation ("500m", "1Gi").
    """
    cpu: Quantity = ""
    memory: Quantity = ""
    storage: StorageResource = Field(default_factory=StorageResource)


class ServiceResources(BaseModel):
    """
    Resource limits and requests of a service.
    """
    limits: ResourceList = Field(default_factory=ResourceList)
    requests: ResourceList = Field(default_factory=ResourceList)


class HTTPHealthcheck(BaseModel):
    """
    HTTP endpoint used when a health check has no test command.
    """
    path: str = "/"
    port: int = 0


class Healthcheck(BaseModel):
    """
    Health check of a service. Durations are in seconds.
    """
    test: List[str] = []
    http: Optional[HTTPHealthcheck] = None
    interval: float = 0.0
    timeout: float = 0.0
    retries: int = 0
    start_period: float = 0.0


class ServiceUser(BaseModel):
    """
    Numeric uid/gid the service container runs as.
    """
    run_as_user: Optional[int] = None
    run_as_group: Optional[int] = None


class Service(BaseModel):
    """
    One deployable workload definition within a stack.
    """
    image: str = ""

    # Execution
    entrypoint: List[str] = []
    command: List[str] = []
    workdir: str = ""
    environment: List[EnvVar] = []

    # Networking
    ports: List[Port] = []

    # Storage
    volumes: List[StackVolume] = []

    # Lifecycle
    restart_policy: RestartPolicy = RestartPolicy.ALWAYS
    replicas: int = 1
    backoff_limit: int = 3
    healthcheck: Optional[Healthcheck] = None
    depends_on: Dict[str, DependsOnConditionSpec] = {}
    stop_grace_period: int = 0

    # Resources
    resources: Optional[ServiceResources] = None

    # Security
    cap_add: List[str] = []
    cap_drop: List[str] = []
    user: Optional[ServiceUser] = None

    # Metadata
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}


class VolumeSpec(BaseModel):
    """
    A named volume declared at stack level, deployed as a persistent claim.
    """
    size: Quantity = ""
    storage_class: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}


class EndpointRule(BaseModel):
    """
    Routes a path prefix to a port of a service.
    """
    path: str = "/"
    service: str
    port: int = 0


class Endpoint(BaseModel):
    """
    A public network endpoint, made of rules that each target a service.
    """
    rules: List[EndpointRule] = []
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}


class Stack(BaseModel):
    """
    A complete stack. Equivalent to a parsed compose file plus its endpoints.
    """
    name: str
    namespace: str = ""
    services: Dict[str, Service] = {}
    volumes: Dict[str, VolumeSpec] = {}
    endpoints: Dict[str, Endpoint] = {}

    manifest: bytes = b""
    is_compose: bool = False
