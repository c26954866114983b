"""
Agent card (capability manifest) fetch.

Services publish a JSON card at ``{endpoint}/.well-known/agent-card.json``
(older deployments use ``/.well-known/agent.json``). The fetch is
best-effort: any network or decoding failure yields None.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from paytrail.core.logging import get_logger

logger = get_logger("discovery.manifest")

CARD_PATHS = (
    "/.well-known/agent-card.json",
    "/.well-known/agent.json",
)
DEFAULT_TIMEOUT = 5.0


@dataclass
class AgentCard:
    name: str = ""
    description: str = ""
    url: str = ""
    resources: list[dict[str, Any]] = field(default_factory=list)
    skills: list[dict[str, Any]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentCard:
        def entries(key: str) -> list[dict[str, Any]]:
            value = data.get(key)
            if not isinstance(value, list):
                return []
            return [e for e in value if isinstance(e, dict)]

        return cls(
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            url=str(data.get("url") or ""),
            resources=entries("resources"),
            skills=entries("skills"),
            raw=data,
        )

    def has_capability(self, capability: str) -> bool:
        """Case-insensitive substring match on resource/skill id, title and name."""
        needle = capability.lower()
        for entry in (*self.resources, *self.skills):
            for key in ("id", "title", "name"):
                value = entry.get(key)
                if isinstance(value, str) and needle in value.lower():
                    return True
        return False


async def fetch_agent_card(
    client: httpx.AsyncClient,
    base_url: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> AgentCard | None:
    """Try each well-known path in order; None if none yields a JSON object."""
    base = base_url.rstrip("/")
    for path in CARD_PATHS:
        url = f"{base}{path}"
        try:
            response = await client.get(
                url, headers={"Accept": "application/json"}, timeout=timeout
            )
            if response.status_code != 200:
                continue
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Agent card fetch failed for {url}: {e}")
            continue

        if isinstance(data, dict):
            return AgentCard.from_dict(data)

    return None
