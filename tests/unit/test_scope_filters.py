"""
Unit tests for volume and endpoint scoping.
"""
from s2k.MODELS.stack import Endpoint
from s2k.RUNNERS.scope_filters import endpoints_in_scope, volumes_in_scope


def _mounts(*names):
    return [{"local_path": n, "remote_path": f"/{n}"} for n in names]


class TestVolumesInScope:
    """Tests for volumes_in_scope."""

    def test_only_volumes_of_services_in_scope(self, make_stack):
        """Test that volumes of out-of-scope services are excluded."""
        stack = make_stack(
            services={
                "ab": {"image": "x", "volumes": _mounts("a", "b")},
                "b": {"image": "x", "volumes": _mounts("b")},
                "bc": {"image": "x", "volumes": _mounts("b", "c")},
            },
            volumes={"a": {}, "b": {}, "c": {}},
        )
        assert set(volumes_in_scope(stack, ["b", "bc"])) == {"b", "c"}

    def test_undeclared_and_ephemeral_excluded(self, make_stack):
        """Test that undeclared local paths and ephemeral volumes are skipped."""
        stack = make_stack(
            services={"svc": {"image": "x", "volumes": _mounts("a", "undeclared") + [{"remote_path": "/tmp"}]}},
            volumes={"a": {}},
        )
        assert volumes_in_scope(stack, ["svc"]) == ["a"]


class TestEndpointsInScope:
    """Tests for endpoints_in_scope."""

    def test_matching_rule_includes_endpoint(self):
        """Test that one matching rule is enough."""
        endpoints = {
            "both": Endpoint.model_validate({"rules": [{"service": "a"}, {"service": "b"}]}),
            "none": Endpoint.model_validate({"rules": [{"service": "c"}]}),
            "empty": Endpoint(),
        }
        assert endpoints_in_scope(endpoints, ["a"]) == ["both"]

    def test_empty_scope(self):
        """Test that nothing is in scope without services."""
        endpoints = {"both": Endpoint.model_validate({"rules": [{"service": "a"}]})}
        assert endpoints_in_scope(endpoints, []) == []
