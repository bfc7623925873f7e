"""
Agent registry - builds configured executors for each remote agent and tracks their health.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core import config
from util.logging import logger

from .executor import AgentExecutor
from .types import (
    DEFAULT_RETRY_POLICY,
    FILING_RETRY_POLICY,
    NAME_CHECK_RETRY_POLICY,
    ConnectionHealth,
    RetryPolicy,
)

AGENT_NAMES = ("name-check", "document-filler", "filing", "payment", "certificate")

_RETRY_POLICIES = {
    "name-check": NAME_CHECK_RETRY_POLICY,
    "filing": FILING_RETRY_POLICY,
}


def create_executor(agent_name: str, base_url: str = None, api_key: str = None, timeout: float = None,
                    retry_policy: RetryPolicy = None, headers: Dict[str, str] = None,
                    health_check_interval: float = None, **kwargs) -> AgentExecutor:
    """
    Create an executor for a named agent from configuration.

    Args:
        agent_name: One of AGENT_NAMES
        base_url, api_key, timeout, retry_policy, headers, health_check_interval:
            Overrides for the configured values

    Returns:
        AgentExecutor instance
    """
    if agent_name not in AGENT_NAMES:
        raise ValueError(f"Unknown agent '{agent_name}'. Expected one of: {', '.join(AGENT_NAMES)}")

    return AgentExecutor(
        agent_name=agent_name,
        base_url=base_url or config.get_agent_url(agent_name),
        api_key=api_key if api_key is not None else config.API_KEY,
        timeout=timeout or config.AGENT_TIMEOUT_SEC,
        retry_policy=retry_policy or _RETRY_POLICIES.get(agent_name, DEFAULT_RETRY_POLICY),
        headers=headers,
        health_check_interval=(
            health_check_interval if health_check_interval is not None else config.get_health_check_interval()
        ),
        **kwargs
    )


class AgentRegistry:
    """
    Registry holding one executor per agent.
    Executors are created lazily and released together by close().
    """

    def __init__(self, overrides: Dict[str, Dict[str, Any]] = None):
        self.overrides = overrides or {}
        self.executors: Dict[str, AgentExecutor] = {}

    def get(self, agent_name: str) -> AgentExecutor:
        if agent_name not in self.executors:
            self.executors[agent_name] = create_executor(agent_name, **self.overrides.get(agent_name, {}))
        return self.executors[agent_name]

    def create_all(self) -> Dict[str, AgentExecutor]:
        return {name: self.get(name) for name in AGENT_NAMES}

    def check_all_agents(self, agent_names: Optional[List[str]] = None) -> Dict[str, ConnectionHealth]:
        """Probe each agent once. Returns health keyed by agent name."""
        results = {}
        for name in agent_names or AGENT_NAMES:
            results[name] = self.get(name).check_health()

        online = sum(1 for h in results.values() if h.status.value == "online")
        logger.log_operation("agents.health_sweep", "success", {
            "checked": len(results),
            "online": online,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })
        return results

    def close(self) -> None:
        for executor in self.executors.values():
            executor.destroy()
        self.executors.clear()

    def __enter__(self) -> 'AgentRegistry':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
