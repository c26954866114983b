"""Service discovery, ranking and hiring."""

from paytrail.discovery.manifest import AgentCard, fetch_agent_card
from paytrail.discovery.service import Candidate, DiscoveryService, HireResult

__all__ = [
    "DiscoveryService",
    "Candidate",
    "HireResult",
    "AgentCard",
    "fetch_agent_card",
]
