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
Unit tests for the stack orchestrator.
"""
import threading

import pytest
from kubernetes.client.rest import ApiException

from s2k.errors import DeployCancelledError, RestartBudgetExceededError, UndefinedServicesError, WaitTimeoutError
from s2k.MANAGERS.stack_orchestrator import StackOrchestrator
from s2k.MODELS.deploy_config import DeployConfig, StackDeployOptions
from s2k.MODELS.labels import STACK_NAME_LABEL, STACK_SERVICE_NAME_LABEL
from s2k.MODELS.stack import Stack


@pytest.fixture
def stack(make_stack):
    return make_stack(
        services={
            "db": {
                "image": "postgres",
                "backoff_limit": 3,
                "volumes": [{"local_path": "data", "remote_path": "/var/lib/postgresql"}],
            },
            "api": {
                "image": "api",
                "ports": [{"container_port": 8080}],
                "depends_on": {"db": {"condition": "service_healthy"}},
            },
        },
        volumes={"data": {"size": "5Gi"}},
        endpoints={"public": {"rules": [{"path": "/", "service": "api"}]}},
    )


def _record(client):
    return client.objects[("ConfigMap", "test", "s2k-test")]["data"]


class TestDeploy:
    """Tests for StackOrchestrator.deploy."""

    def test_full_deploy(self, fake_client, stack):
        """Test that every object of the stack is created, dependencies first."""
        order = StackOrchestrator(stack, fake_client).deploy()
        assert order == ["db", "api"]
        for key in [
            ("PersistentVolumeClaim", "test", "data"),
            ("StatefulSet", "test", "db"),
            ("Deployment", "test", "api"),
            ("Service", "test", "api"),
            ("Ingress", "test", "public"),
        ]:
            assert key in fake_client.objects
        assert ("Service", "test", "db") not in fake_client.objects
        assert _record(fake_client)["status"] == "deployed"

    def test_apply_order(self, fake_client, stack):
        """Test that volumes come before workloads and endpoints last."""
        StackOrchestrator(stack, fake_client).deploy()
        kinds = [kind for verb, kind, _ in fake_client.actions if verb == "create"]
        assert kinds.index("PersistentVolumeClaim") < kinds.index("StatefulSet") < kinds.index("Deployment")
        assert kinds.index("Ingress") > kinds.index("Service")

    def test_validation_before_mutation(self, fake_client, stack):
        """Test that an undefined service fails before anything is written."""
        options = StackDeployOptions(services_to_deploy=["nginx", "db"])
        with pytest.raises(UndefinedServicesError):
            StackOrchestrator(stack, fake_client).deploy(options)
        assert fake_client.actions == []

    def test_partial_deploy_skips_satisfied_dependency(self, fake_client, stack):
        """Test that a running dependency and its volume are left alone."""
        fake_client.add("StatefulSet", "test", "db", labels={STACK_NAME_LABEL: "test"}, status={"readyReplicas": 1})
        options = StackDeployOptions(services_to_deploy=["api"])
        order = StackOrchestrator(stack, fake_client).deploy(options)
        assert order == ["api"]
        assert ("PersistentVolumeClaim", "test", "data") not in fake_client.objects
        assert ("replace", "StatefulSet", "db") not in fake_client.actions

    def test_partial_deploy_adds_missing_dependency(self, fake_client, stack):
        """Test that a dependency that is not running is deployed too."""
        options = StackDeployOptions(services_to_deploy=["api"])
        assert StackOrchestrator(stack, fake_client).deploy(options) == ["db", "api"]

    def test_restart_budget_aborts(self, fake_client, stack):
        """Test that a crash-looping dependency aborts the pass before any apply."""
        fake_client.add(
            "Pod", "test", "db-0",
            labels={STACK_NAME_LABEL: "test", STACK_SERVICE_NAME_LABEL: "db"},
            status={"containerStatuses": [{"restartCount": 5}]},
        )
        with pytest.raises(RestartBudgetExceededError):
            StackOrchestrator(stack, fake_client).deploy()
        assert fake_client.actions == []

    def test_cancelled(self, fake_client, stack):
        """Test that a cancelled pass issues no applies."""
        event = threading.Event()
        event.set()
        with pytest.raises(DeployCancelledError):
            StackOrchestrator(stack, fake_client).deploy(cancel_event=event)
        assert fake_client.actions == []

    def test_api_error_marks_record(self, fake_client_class, stack):
        """Test that cluster errors propagate and the record is marked as failed."""
        class FailingClient(fake_client_class):
            def create(self, kind, namespace, body):
                if kind == "Deployment":
                    raise ApiException(status=403, reason="Forbidden")
                return super().create(kind, namespace, body)

        client = FailingClient()
        with pytest.raises(ApiException) as exc:
            StackOrchestrator(stack, client).deploy()
        assert exc.value.status == 403
        assert _record(client)["status"] == "error"

    def test_wait_timeout(self, fake_client, stack):
        """Test that waiting on services that never get ready times out."""
        orchestrator = StackOrchestrator(stack, fake_client, DeployConfig(wait_interval=0))
        with pytest.raises(WaitTimeoutError) as exc:
            orchestrator.deploy(StackDeployOptions(wait=True, timeout=0))
        assert exc.value.services == ["db", "api"]
        assert _record(fake_client)["status"] == "error"

    def test_namespace_from_config(self, fake_client):
        """Test that the configured namespace applies to stacks without one."""
        stack = Stack.model_validate({"name": "demo", "services": {"web": {"image": "nginx"}}})
        StackOrchestrator(stack, fake_client, DeployConfig(namespace="dev")).deploy()
        assert ("Deployment", "dev", "web") in fake_client.objects


class TestPsAndDestroy:
    """Tests for status listing and teardown."""

    def test_ps(self, fake_client, stack):
        """Test per-service status."""
        fake_client.add("StatefulSet", "test", "db", status={"readyReplicas": 1})
        assert StackOrchestrator(stack, fake_client).ps() == {"db": "running", "api": "not running"}

    def test_destroy_keeps_volumes_and_foreign_objects(self, fake_client, stack):
        """Test that destroy removes owned objects only and keeps claims by default."""
        orchestrator = StackOrchestrator(stack, fake_client)
        orchestrator.deploy()
        fake_client.objects.pop(("Ingress", "test", "public"))
        fake_client.add("Ingress", "test", "public", labels={STACK_NAME_LABEL: "hola"})

        orchestrator.destroy()
        remaining = set(fake_client.objects)
        assert remaining == {("PersistentVolumeClaim", "test", "data"), ("Ingress", "test", "public")}

    def test_destroy_volumes(self, fake_client, stack):
        """Test that claims are removed on request."""
        orchestrator = StackOrchestrator(stack, fake_client)
        orchestrator.deploy()
        orchestrator.destroy(remove_volumes=True)
        assert fake_client.objects == {}
