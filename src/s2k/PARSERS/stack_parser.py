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
Parser for compose-style stack manifests.
"""
import os
import re
import shlex
from typing import Any, Dict, List, Optional

import yaml
from dotenv import dotenv_values

from ..MODELS.stack import (
    DependsOnCondition,
    DependsOnConditionSpec,
    Endpoint,
    EndpointRule,
    EnvVar,
    Healthcheck,
    HTTPHealthcheck,
    Port,
    ResourceList,
    RestartPolicy,
    Service,
    ServiceResources,
    ServiceUser,
    Stack,
    StackVolume,
    VolumeSpec,
)
from ..UTILS.logging import get_logger

log = get_logger(__name__)

COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")

# ${VAR}, ${VAR:-default}, ${VAR-default}, $VAR and the $$ escape
_VARIABLE_PATTERN = re.compile(r"\$(?:(\$)|\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?-)([^}]*))?\}|([A-Za-z_][A-Za-z0-9_]*))")
_DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|us|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}
_MEMORY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmgt])b?$", re.IGNORECASE)

_RESTART_POLICIES = {
    "no": RestartPolicy.NEVER,
    "false": RestartPolicy.NEVER,
    "none": RestartPolicy.NEVER,
    "never": RestartPolicy.NEVER,
    "always": RestartPolicy.ALWAYS,
    "any": RestartPolicy.ALWAYS,
    "unless-stopped": RestartPolicy.ALWAYS,
    "on-failure": RestartPolicy.ON_FAILURE,
}


def interpolate(content: str, context: Dict[str, str]) -> str:
    """
    Substitutes variables the way compose does. An unset variable without a
    default becomes an empty string and is reported.

    :param content: Raw manifest text.
    :param context: Variables available for substitution.
    :return: The interpolated text.
    """
    def replace(match):
        if match.group(1):
            return "$"
        name = match.group(2) or match.group(5)
        modifier = match.group(3)
        value = context.get(name)
        if modifier == ":-":
            return value if value else match.group(4)
        if modifier == "-":
            return value if value is not None else match.group(4)
        if value is None:
            log.warning("variable is not set, defaulting to a blank string", variable=name)
            return ""
        return value

    return _VARIABLE_PATTERN.sub(replace, content)


def parse_duration(value: Any) -> float:
    """
    Parses a compose duration ("1m30s", "500ms", or a number of seconds).

    :return: The duration in seconds.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PATTERN.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"Invalid duration: '{value}'")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


def _memory_quantity(value: Any) -> str:
    """Converts compose memory notation ("512m", "1gb") to a Kubernetes quantity."""
    if value is None:
        return ""
    text = str(value).strip()
    match = _MEMORY_PATTERN.match(text)
    if match:
        return f"{match.group(1)}{match.group(2).upper()}i"
    return text


class StackParser:
    """
    Parser for compose-style stack files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, base_dir: str = "."):
        """
        Initializes the parser.

        :param context: Variables for interpolation. Defaults to the process environment.
        :param base_dir: Directory that relative ``env_file`` paths are resolved against.
        """
        self.context = dict(os.environ) if context is None else context
        self.base_dir = base_dir

    def parse(self, path: str, name: Optional[str] = None) -> Stack:
        """
        Parses a stack file.

        :param path: Path to the stack file.
        :param name: Stack name. Defaults to the ``name`` field, then to the file's directory name.
        :return: The parsed stack.
        """
        with open(path, "rb") as f:
            manifest = f.read()
        directory = os.path.dirname(os.path.abspath(path))
        parser = StackParser(self.context, directory)
        is_compose = os.path.basename(path).lower() in COMPOSE_FILE_NAMES
        return parser.parse_from_bytes(
            manifest, name=name, is_compose=is_compose, default_name=os.path.basename(directory)
        )

    def parse_from_bytes(self, manifest: bytes, name: Optional[str] = None, is_compose: bool = True,
                         default_name: str = "") -> Stack:
        """
        Parses a stack from raw manifest bytes.

        :param manifest: Raw manifest, kept verbatim on the stack.
        :param name: Stack name, overriding the ``name`` field.
        :param is_compose: Whether the manifest is a compose file.
        :param default_name: Stack name used when neither is set.
        :return: The parsed stack.
        """
        content = interpolate(manifest.decode("utf-8"), self.context)
        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValueError("Stack manifest must be a mapping")

        stack_name = name or data.get("name") or default_name
        if not stack_name:
            raise ValueError("Stack name is not set")

        services = {
            svc_name: self._parse_service(svc_name, spec or {})
            for svc_name, spec in (data.get("services") or {}).items()
        }
        volumes = {
            vol_name: self._parse_volume(spec or {})
            for vol_name, spec in (data.get("volumes") or {}).items()
        }
        endpoints = {
            ep_name: self._parse_endpoint(spec)
            for ep_name, spec in (data.get("endpoints") or {}).items()
        }

        return Stack(
            name=stack_name,
            namespace=data.get("namespace", ""),
            services=services,
            volumes=volumes,
            endpoints=endpoints,
            manifest=manifest,
            is_compose=is_compose,
        )

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> Service:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A Service instance.
        """
        deploy = spec.get("deploy") or {}
        restart_spec = deploy.get("restart_policy") or {}

        restart = spec.get("restart", restart_spec.get("condition", "always"))
        try:
            restart_policy = _RESTART_POLICIES[str(restart).split(":")[0].lower()]
        except KeyError:
            raise ValueError(f"Service '{name}' has an invalid restart policy: '{restart}'")

        values: Dict[str, Any] = {
            "image": spec.get("image", ""),
            "entrypoint": self._to_args(spec.get("entrypoint")),
            "command": self._to_args(spec.get("command")),
            "workdir": spec.get("working_dir", ""),
            "environment": self._parse_environment(spec),
            "ports": [self._parse_port(p) for p in spec.get("ports") or []],
            "volumes": [self._parse_volume_mount(name, v) for v in spec.get("volumes") or []],
            "restart_policy": restart_policy,
            "replicas": deploy.get("replicas", spec.get("scale", 1)),
            "depends_on": self._parse_depends_on(spec.get("depends_on")),
            "stop_grace_period": int(parse_duration(spec.get("stop_grace_period"))),
            "cap_add": list(spec.get("cap_add") or []),
            "cap_drop": list(spec.get("cap_drop") or []),
            "labels": self._to_mapping(spec.get("labels")),
            "annotations": self._to_mapping(spec.get("annotations")),
        }
        if "max_attempts" in restart_spec:
            values["backoff_limit"] = restart_spec["max_attempts"]
        if deploy.get("resources"):
            values["resources"] = self._parse_resources(deploy["resources"])
        if spec.get("healthcheck"):
            values["healthcheck"] = self._parse_healthcheck(spec["healthcheck"])
        if spec.get("user") is not None:
            values["user"] = self._parse_user(name, spec["user"])
        return Service(**values)

    def _parse_environment(self, spec: Dict[str, Any]) -> List[EnvVar]:
        """
        Environment of a service: ``env_file`` entries first, then
        ``environment`` entries overriding them.
        """
        env: Dict[str, str] = {}
        for env_file in self._to_list(spec.get("env_file")):
            path = os.path.join(self.base_dir, env_file)
            for key, value in dotenv_values(path).items():
                env[key] = value or ""

        env_spec = spec.get("environment") or {}
        if isinstance(env_spec, list):
            for entry in env_spec:
                if "=" in entry:
                    key, value = entry.split("=", 1)
                    env[key] = value
                else:
                    env[entry] = self.context.get(entry, "")
        else:
            for key, value in env_spec.items():
                env[key] = self.context.get(key, "") if value is None else str(value)

        return [EnvVar(name=k, value=v) for k, v in env.items()]

    def _parse_port(self, p: Any) -> Port:
        if isinstance(p, dict):
            return Port(
                container_port=int(p["target"]),
                host_port=int(p.get("published") or 0),
                protocol=str(p.get("protocol", "tcp")).upper(),
            )
        text = str(p)
        protocol = "TCP"
        if "/" in text:
            text, proto = text.split("/", 1)
            protocol = proto.upper()
        parts = text.split(":")
        if len(parts) == 1:
            return Port(container_port=int(parts[0]), protocol=protocol)
        # The optional host IP prefix is irrelevant in a cluster
        return Port(container_port=int(parts[-1]), host_port=int(parts[-2]), protocol=protocol)

    def _parse_volume_mount(self, svc_name: str, v: Any) -> StackVolume:
        """
        Parses a volume mount. Named volumes keep their name as local path;
        anonymous volumes and bind mounts become per-replica storage.
        """
        if isinstance(v, dict):
            source = v.get("source", "") if v.get("type", "volume") == "volume" else ""
            return StackVolume(local_path=source or "", remote_path=v["target"])

        parts = str(v).split(":")
        if len(parts) == 1:
            return StackVolume(remote_path=parts[0])
        source, target = parts[0], parts[1]
        if source.startswith((".", "/", "~")):
            log.warning("bind mounts are not supported, using per-replica storage", service=svc_name, source=source)
            return StackVolume(remote_path=target)
        return StackVolume(local_path=source, remote_path=target)

    def _parse_depends_on(self, depends_on: Any) -> Dict[str, DependsOnConditionSpec]:
        if not depends_on:
            return {}
        if isinstance(depends_on, list):
            return {dep: DependsOnConditionSpec() for dep in depends_on}
        return {
            dep: DependsOnConditionSpec(
                condition=DependsOnCondition((cond or {}).get("condition", DependsOnCondition.STARTED.value))
            )
            for dep, cond in depends_on.items()
        }

    def _parse_resources(self, resources: Dict[str, Any]) -> ServiceResources:
        """
        Converts compose ``limits`` and ``reservations`` to limits and requests.
        """
        def to_list(section: Optional[Dict[str, Any]]) -> ResourceList:
            section = section or {}
            return ResourceList(
                cpu=str(section.get("cpus", "")),
                memory=_memory_quantity(section.get("memory")),
            )

        return ServiceResources(
            limits=to_list(resources.get("limits")),
            requests=to_list(resources.get("reservations")),
        )

    def _parse_healthcheck(self, hc: Dict[str, Any]) -> Optional[Healthcheck]:
        if hc.get("disable"):
            return None

        test = hc.get("test") or []
        if isinstance(test, str):
            test = ["sh", "-c", test]
        elif test and test[0] == "CMD":
            test = list(test[1:])
        elif test and test[0] == "CMD-SHELL":
            test = ["sh", "-c", " ".join(test[1:])]
        elif test and test[0] == "NONE":
            return None

        http = None
        if hc.get("http"):
            http = HTTPHealthcheck(**hc["http"])

        return Healthcheck(
            test=list(test),
            http=http,
            interval=parse_duration(hc.get("interval")),
            timeout=parse_duration(hc.get("timeout")),
            retries=int(hc.get("retries", 0)),
            start_period=parse_duration(hc.get("start_period")),
        )

    def _parse_user(self, svc_name: str, user: Any) -> ServiceUser:
        """Parses ``uid`` or ``uid:gid``. Only numeric ids can be enforced in a pod."""
        parts = str(user).split(":", 1)
        try:
            ids = [int(part) for part in parts]
        except ValueError:
            raise ValueError(f"Service '{svc_name}' user must be numeric (uid or uid:gid), got '{user}'")
        return ServiceUser(run_as_user=ids[0], run_as_group=ids[1] if len(ids) > 1 else None)

    def _parse_volume(self, spec: Dict[str, Any]) -> VolumeSpec:
        return VolumeSpec(
            size=str(spec.get("size", "")),
            storage_class=spec.get("class", spec.get("storage_class", "")),
            labels=self._to_mapping(spec.get("labels")),
            annotations=self._to_mapping(spec.get("annotations")),
        )

    def _parse_endpoint(self, spec: Any) -> Endpoint:
        """
        Parses an endpoint, given either as a list of rules or as a mapping
        with ``rules``, ``labels`` and ``annotations``.
        """
        if isinstance(spec, list):
            spec = {"rules": spec}
        return Endpoint(
            rules=[EndpointRule(**rule) for rule in spec.get("rules") or []],
            labels=self._to_mapping(spec.get("labels")),
            annotations=self._to_mapping(spec.get("annotations")),
        )

    def _to_args(self, val: Any) -> List[str]:
        """Shell-splits a string command; lists are taken as is."""
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return list(val)

    def _to_mapping(self, val: Any) -> Dict[str, str]:
        """Accepts both ``["k=v"]`` and ``{k: v}`` forms."""
        if not val:
            return {}
        if isinstance(val, list):
            return dict(entry.split("=", 1) if "=" in entry else (entry, "") for entry in val)
        return {str(k): "" if v is None else str(v) for k, v in val.items()}
