"""
Shared fixtures: an in-memory stand-in for the cluster.
"""
import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest
from kubernetes.client.rest import ApiException

from s2k.MODELS.stack import Stack


class FakeClusterClient:
    """
    In-memory implementation of the ClusterClient interface.

    Objects are kept as manifest dicts keyed by (kind, namespace, name).
    Every mutating call is recorded in ``actions``.
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.actions: List[Tuple[str, str, str]] = []

    def add(self, kind: str, namespace: str, name: str, labels: Optional[Dict[str, str]] = None,
            spec: Optional[Dict[str, Any]] = None, status: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Seeds an object without recording an action."""
        obj = {
            "kind": kind,
            "metadata": {"name": name, "namespace": namespace, "labels": dict(labels or {})},
            "spec": copy.deepcopy(spec or {}),
            "status": copy.deepcopy(status or {}),
        }
        self.objects[(kind, namespace, name)] = obj
        return obj

    def get(self, kind, namespace, name):
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def create(self, kind, namespace, body):
        name = body["metadata"]["name"]
        if (kind, namespace, name) in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.actions.append(("create", kind, name))
        self.objects[(kind, namespace, name)] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def replace(self, kind, namespace, name, body):
        if (kind, namespace, name) not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        self.actions.append(("replace", kind, name))
        self.objects[(kind, namespace, name)] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def delete(self, kind, namespace, name):
        if self.objects.pop((kind, namespace, name), None) is not None:
            self.actions.append(("delete", kind, name))

    def list(self, kind, namespace, labels):
        result = []
        for (k, ns, _), obj in self.objects.items():
            if k != kind or ns != namespace:
                continue
            obj_labels = obj.get("metadata", {}).get("labels") or {}
            if all(obj_labels.get(key) == value for key, value in labels.items()):
                result.append(copy.deepcopy(obj))
        return result

    def labels_of(self, kind, namespace, name) -> Dict[str, str]:
        return self.objects[(kind, namespace, name)]["metadata"]["labels"]


@pytest.fixture
def fake_client():
    return FakeClusterClient()


@pytest.fixture
def make_stack():
    """Builds a stack in the ``test`` namespace from plain dicts."""
    def _make(services=None, volumes=None, endpoints=None, name="test"):
        return Stack.model_validate({
            "name": name,
            "namespace": "test",
            "services": services or {},
            "volumes": volumes or {},
            "endpoints": endpoints or {},
        })
    return _make


@pytest.fixture
def fake_client_class():
    """The fake client class, for tests that inject failures by subclassing it."""
    return FakeClusterClient
