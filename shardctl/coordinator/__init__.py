"""
shardctl.coordinator - Coordinator command surface adapters.

- CoordinatorClient: protocol consumed by the registration orchestrator
- CitusCoordinator: psycopg implementation against a Citus coordinator
- InMemoryCoordinator: dry-run/test implementation
"""

from .base import (
    NO_JOB,
    CoordinatorClient,
    CoordinatorNode,
    InMemoryCoordinator,
    RebalanceStatus,
)
from .citus import CitusCoordinator

__all__ = [
    "NO_JOB",
    "CitusCoordinator",
    "CoordinatorClient",
    "CoordinatorNode",
    "InMemoryCoordinator",
    "RebalanceStatus",
]
