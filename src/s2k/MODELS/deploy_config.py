"""
Models for process-wide configuration and per-invocation deploy options.
"""
import os
from typing import List, Mapping, Optional
from pydantic import BaseModel

NAMESPACE_ENV_VAR = "S2K_NAMESPACE"
KUBECONFIG_ENV_VAR = "KUBECONFIG"
CONTEXT_ENV_VAR = "S2K_CONTEXT"
UPDATE_STRATEGY_ENV_VAR = "S2K_COMPOSE_UPDATE_STRATEGY"
WAIT_INTERVAL_ENV_VAR = "S2K_WAIT_INTERVAL"
LOG_LEVEL_ENV_VAR = "S2K_LOG_LEVEL"


class DeployConfig(BaseModel):
    """
    Process-wide settings, read once at startup and passed down explicitly.
    """
    namespace: str = ""
    kubeconfig: Optional[str] = None
    context: Optional[str] = None

    # Overrides the kind default update strategy of every workload
    update_strategy: str = ""

    wait_interval: float = 2.0
    log_level: str = "warning"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DeployConfig":
        """
        Builds the configuration from environment variables.

        :param environ: Mapping to read from. Defaults to ``os.environ``.
        :return: The configuration.
        """
        env = os.environ if environ is None else environ
        values = {
            "namespace": env.get(NAMESPACE_ENV_VAR, ""),
            "kubeconfig": env.get(KUBECONFIG_ENV_VAR) or None,
            "context": env.get(CONTEXT_ENV_VAR) or None,
            "update_strategy": env.get(UPDATE_STRATEGY_ENV_VAR, ""),
        }
        if env.get(WAIT_INTERVAL_ENV_VAR):
            values["wait_interval"] = env[WAIT_INTERVAL_ENV_VAR]
        if env.get(LOG_LEVEL_ENV_VAR):
            values["log_level"] = env[LOG_LEVEL_ENV_VAR]
        return cls(**values)


class StackDeployOptions(BaseModel):
    """
    Options of one stack deploy invocation.
    """
    services_to_deploy: List[str] = []  # empty means every service
    force_build: bool = False
    wait: bool = False
    timeout: float = 300.0
