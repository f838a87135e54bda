"""
shardctl.supervisor - Node process supervision adapters.

- NodeSupervisor: protocol consumed by the lifecycle controller
- ComposeSupervisor: docker compose implementation
- InMemorySupervisor: dry-run/test implementation
"""

from .base import (
    InMemorySupervisor,
    NodeHandle,
    NodeStatus,
    NodeSupervisor,
)
from .compose import ComposeSupervisor

__all__ = [
    "ComposeSupervisor",
    "InMemorySupervisor",
    "NodeHandle",
    "NodeStatus",
    "NodeSupervisor",
]
