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
Unit tests for the translation of stacks into Kubernetes manifests.
"""
import base64

import pytest
from pydantic import ValidationError

from s2k.CONVERTERS.resource_kind import ResourceKind
from s2k.CONVERTERS.to_kubernetes import (
    get_init_containers,
    get_stack_config_map_name,
    translate_affinity,
    translate_config_map,
    translate_container_ports,
    translate_ingress,
    translate_labels,
    translate_persistent_volume_claim,
    translate_probe,
    translate_resources,
    translate_security_context,
    translate_service,
    translate_service_ports,
    translate_volumes,
    translate_workload,
)
from s2k.MODELS.labels import DEPLOYED_BY_LABEL, STACK_NAME_LABEL, STACK_SERVICE_NAME_LABEL
from s2k.MODELS.stack import Service, Stack


def _svc(**kwargs):
    return Service.model_validate({"image": "nginx", **kwargs})


class TestLabels:
    """Tests for label translation."""

    def test_computed_labels(self, make_stack):
        """Test ownership, identity, deployed-by and marker labels."""
        stack = make_stack(
            services={"db": {"image": "postgres", "volumes": [{"local_path": "data", "remote_path": "/var/lib"}]}},
            volumes={"data": {}},
        )
        labels = translate_labels("db", stack)
        assert labels[STACK_NAME_LABEL] == "test"
        assert labels[STACK_SERVICE_NAME_LABEL] == "db"
        assert labels[DEPLOYED_BY_LABEL] == "test"
        assert labels["stack.s2k.dev/volume-data"] == "true"

    def test_user_labels_overlaid(self, make_stack):
        """Test that user labels are laid over the computed ones."""
        stack = make_stack(services={"web": {"image": "nginx", "labels": {"team": "a", STACK_SERVICE_NAME_LABEL: "x"}}})
        labels = translate_labels("web", stack)
        assert labels["team"] == "a"
        assert labels[STACK_SERVICE_NAME_LABEL] == "x"


class TestPorts:
    """Tests for port translation."""

    def test_container_ports_sorted(self):
        """Test that container ports are sorted ascending."""
        svc = _svc(ports=[{"container_port": 8080}, {"container_port": 80}, {"container_port": 443}])
        assert [p["containerPort"] for p in translate_container_ports(svc)] == [80, 443, 8080]

    def test_service_ports_deduplicated(self):
        """Test that service ports are unique and a differing host port adds an entry."""
        svc = _svc(ports=[
            {"container_port": 80, "host_port": 8080},
            {"container_port": 80},
            {"container_port": 53, "protocol": "UDP"},
        ])
        ports = translate_service_ports(svc)
        assert [p["port"] for p in ports] == [80, 8080, 53]
        assert ports[1] == {"name": "p-8080-80-tcp", "port": 8080, "targetPort": 80, "protocol": "TCP"}
        assert ports[2]["name"] == "p-53-53-udp"


class TestResources:
    """Tests for resource translation."""

    def test_zero_and_unset_are_omitted(self):
        """Test that only positive quantities are emitted."""
        svc = _svc(resources={"limits": {"cpu": "0", "memory": "1Gi"}, "requests": {"cpu": "250m"}})
        assert translate_resources(svc) == {"limits": {"memory": "1Gi"}, "requests": {"cpu": "250m"}}

    def test_no_resources(self):
        """Test that a service without resources yields an empty requirement."""
        assert translate_resources(_svc()) == {}

    def test_invalid_quantity_rejected(self):
        """Test that unparsable quantities fail model validation."""
        with pytest.raises(ValidationError):
            _svc(resources={"limits": {"memory": "lots"}})


class TestProbe:
    """Tests for health probe translation."""

    def test_exec_probe(self):
        """Test an exec probe with truncated timings."""
        svc = _svc(healthcheck={"test": ["pg_isready"], "interval": 10.9, "timeout": 2.5, "retries": 3, "start_period": 1.2})
        probe = translate_probe(svc)
        assert probe["exec"] == {"command": ["pg_isready"]}
        assert probe["periodSeconds"] == 10
        assert probe["timeoutSeconds"] == 2
        assert probe["failureThreshold"] == 3
        assert probe["initialDelaySeconds"] == 1

    def test_http_probe(self):
        """Test an HTTP probe when no test command is given."""
        svc = _svc(healthcheck={"http": {"path": "/health", "port": 8080}})
        probe = translate_probe(svc)
        assert probe["httpGet"] == {"path": "/health", "port": 8080}
        assert "exec" not in probe

    def test_no_probe(self):
        """Test that no probe is emitted without a health check."""
        assert translate_probe(_svc()) is None


class TestSecurityContext:
    """Tests for security context translation."""

    def test_absent_when_unset(self):
        """Test that nothing is emitted when the user asked for nothing."""
        assert translate_security_context(_svc()) is None

    def test_capabilities_and_user(self):
        """Test capabilities and numeric ids."""
        svc = _svc(cap_add=["NET_ADMIN"], cap_drop=["ALL"], user={"run_as_user": 1000, "run_as_group": 2000})
        assert translate_security_context(svc) == {
            "capabilities": {"add": ["NET_ADMIN"], "drop": ["ALL"]},
            "runAsUser": 1000,
            "runAsGroup": 2000,
        }


class TestVolumes:
    """Tests for volume, init container and affinity translation."""

    def test_init_containers(self):
        """Test permission and seeding init containers."""
        svc = _svc(volumes=[
            {"local_path": "a", "remote_path": "/a"},
            {"local_path": "b", "remote_path": "/b"},
            {"remote_path": "/c"},
        ])
        permissions, seed = get_init_containers("web", svc)
        assert permissions["name"] == "init-web"
        assert permissions["command"] == ["sh", "-c", "chmod 777 /volumes/* && chmod 777 /data"]
        assert seed["name"] == "init-volume-web"
        assert seed["image"] == "nginx"
        assert seed["command"][2].count("initializing volume") == 3
        assert [m["subPath"] for m in seed["volumeMounts"]] == ["a", "b", "data-2"]

    def test_no_init_containers_without_volumes(self):
        """Test that services without volumes have no init containers."""
        assert get_init_containers("web", _svc()) == []

    def test_affinity(self):
        """Test pod affinity on co-location markers of named volumes."""
        svc = _svc(volumes=[{"local_path": "a", "remote_path": "/a"}, {"remote_path": "/tmp"}])
        affinity = translate_affinity(svc)
        terms = affinity["podAffinity"]["requiredDuringSchedulingIgnoredDuringExecution"]
        assert len(terms) == 1
        assert terms[0]["labelSelector"]["matchExpressions"] == [
            {"key": "stack.s2k.dev/volume-a", "operator": "Exists"}
        ]
        assert translate_affinity(_svc()) is None

    def test_ephemeral_volume_per_kind(self):
        """Test that ephemeral storage is an emptyDir outside StatefulSets."""
        svc = _svc(volumes=[{"remote_path": "/cache"}])
        assert translate_volumes(svc, ResourceKind.DEPLOYMENT) == [{"name": "pvc", "emptyDir": {}}]
        assert translate_volumes(svc, ResourceKind.STATEFUL_SET) == []

    def test_persistent_volume_claim(self, make_stack):
        """Test claims of named volumes and their default size."""
        stack = make_stack(volumes={"data": {"storage_class": "fast"}})
        pvc = translate_persistent_volume_claim("data", stack)
        assert pvc["spec"]["resources"]["requests"]["storage"] == "1Gi"
        assert pvc["spec"]["storageClassName"] == "fast"
        assert pvc["metadata"]["labels"]["stack.s2k.dev/volume"] == "data"


class TestWorkloads:
    """Tests for workload translation."""

    def test_deployment(self, make_stack):
        """Test a stateless service."""
        stack = make_stack(services={"web": {"image": "nginx", "replicas": 2}})
        kind, manifest = translate_workload("web", stack)
        assert kind == ResourceKind.DEPLOYMENT
        assert manifest["spec"]["replicas"] == 2
        assert manifest["spec"]["strategy"] == {"type": "Recreate"}
        assert manifest["spec"]["selector"]["matchLabels"] == {
            STACK_NAME_LABEL: "test", STACK_SERVICE_NAME_LABEL: "web"
        }
        assert "restartPolicy" not in manifest["spec"]["template"]["spec"]

    def test_stateful_set(self, make_stack):
        """Test a service with named and per-replica volumes."""
        stack = make_stack(
            services={"db": {"image": "postgres", "volumes": [
                {"local_path": "data", "remote_path": "/var/lib"},
                {"remote_path": "/scratch"},
            ]}},
            volumes={"data": {}},
        )
        kind, manifest = translate_workload("db", stack, update_strategy="on-delete")
        assert kind == ResourceKind.STATEFUL_SET
        spec = manifest["spec"]
        assert spec["serviceName"] == "db"
        assert spec["updateStrategy"] == {"type": "OnDelete"}
        assert spec["volumeClaimTemplates"][0]["metadata"]["name"] == "pvc"
        assert spec["template"]["spec"]["affinity"] is not None

    def test_job(self, make_stack):
        """Test a run-to-completion service."""
        stack = make_stack(services={"migrate": {"image": "app", "restart_policy": "Never", "backoff_limit": 5}})
        kind, manifest = translate_workload("migrate", stack)
        assert kind == ResourceKind.JOB
        assert manifest["spec"]["backoffLimit"] == 5
        assert manifest["spec"]["template"]["spec"]["restartPolicy"] == "Never"


class TestNetworkAndRecord:
    """Tests for services, ingresses and the stack record."""

    def test_service(self, make_stack):
        """Test the cluster-internal network service."""
        stack = make_stack(services={"web": {"image": "nginx", "ports": [{"container_port": 80}]}})
        manifest = translate_service("web", stack)
        assert manifest["spec"]["type"] == "ClusterIP"
        assert manifest["metadata"]["labels"][STACK_NAME_LABEL] == "test"

    def test_ingress_default_port(self, make_stack):
        """Test that rules without a port target the lowest container port."""
        stack = make_stack(
            services={"api": {"image": "api", "ports": [{"container_port": 9090}, {"container_port": 8080}]}},
            endpoints={"public": {"rules": [{"path": "/api", "service": "api"}]}},
        )
        path = translate_ingress("public", stack)["spec"]["rules"][0]["http"]["paths"][0]
        assert path["pathType"] == "Prefix"
        assert path["backend"]["service"] == {"name": "api", "port": {"number": 8080}}

    def test_config_map(self):
        """Test the stack record fields."""
        stack = Stack(name="My_Stack", namespace="ns", manifest=b"services: {}\n", is_compose=True)
        cm = translate_config_map(stack)
        assert cm["metadata"]["name"] == "s2k-my-stack"
        assert cm["data"]["name"] == "My_Stack"
        assert base64.b64decode(cm["data"]["yaml"]) == b"services: {}\n"
        assert cm["data"]["compose"] == "true"
        assert cm["data"]["status"] == "progressing"

    def test_config_map_name(self):
        """Test stack record naming."""
        assert get_stack_config_map_name("demo") == "s2k-demo"
