"""
Coordinator command surface and an in-memory implementation.

The coordinator's live node list is the source of truth for registration.
Everything the control plane asks of the database engine goes through this
protocol:

    register_node(host, port)
    drain_node(host, port)              (starts moving shards off; non-blocking)
    remove_node(host, port, force)
    list_nodes() -> [CoordinatorNode]
    shard_count(host, port) -> int
    rebalance(strategy) -> job_id
    rebalance_status(job_id) -> pending | running | done | failed

Error classification at this boundary:
- RegistrationTransientError / TransientError: retry is safe
- RegistrationConflictError: host+port known under a different identity
- CoordinatorError: the engine refused for a non-retryable reason
"""

import threading
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from shardctl.errors import (
    CoordinatorError,
    RegistrationConflictError,
    RegistrationTransientError,
)


PRIMARY_ROLE = "primary"
COORDINATOR_ROLE = "coordinator"

# Returned by rebalance() when the engine had nothing to move
NO_JOB = "none"


class RebalanceStatus(str, Enum):
    """State of a coordinator rebalance job."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (RebalanceStatus.DONE, RebalanceStatus.FAILED)


@dataclass(frozen=True)
class CoordinatorNode:
    """
    One entry of the coordinator's live node list.

    Attributes:
        host: Node host as registered
        port: Node port as registered
        active: Whether the coordinator routes work to the node
        role: "primary", "secondary", "coordinator", ...
    """
    host: str
    port: int
    active: bool = True
    role: str = PRIMARY_ROLE

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_active_primary(self) -> bool:
        return self.active and self.role == PRIMARY_ROLE


@runtime_checkable
class CoordinatorClient(Protocol):
    """
    Protocol for the coordinator's command surface.

    Callers serialize access; implementations need not be thread-safe.
    """

    def register_node(self, host: str, port: int) -> None:
        """
        Make host:port an active primary worker. Registering an already
        active primary is a no-op.

        Raises:
            RegistrationTransientError: Coordinator momentarily unavailable
            RegistrationConflictError: host:port known with a different role
        """
        ...

    def drain_node(self, host: str, port: int) -> None:
        """Stop placing shards on host:port and start moving its shards away."""
        ...

    def remove_node(self, host: str, port: int, force: bool = False) -> None:
        """
        Deregister host:port.

        Without force the coordinator refuses while the node still holds
        shard placements.
        """
        ...

    def list_nodes(self) -> list[CoordinatorNode]:
        """The coordinator's live node list."""
        ...

    def shard_count(self, host: str, port: int) -> int:
        """Shard placements currently held by host:port."""
        ...

    def rebalance(self, strategy: str) -> str:
        """Start a rebalance job and return its id (NO_JOB if nothing to move)."""
        ...

    def rebalance_status(self, job_id: str) -> RebalanceStatus:
        """Status of a rebalance job."""
        ...


class InMemoryCoordinator:
    """
    In-memory CoordinatorClient for dry runs and tests.

    Knobs for exercising failure paths:
        transient_failures: identity -> register calls to fail with RegistrationTransientError
        stalled: identities whose drain never empties
        invisible: identities whose registration never shows up in list_nodes()
        rebalance_results: statuses returned by successive rebalance_status polls

    Every call is counted in `calls` (method name -> count).
    """

    def __init__(self, total_shards: int = 0):
        self._lock = threading.Lock()
        self._nodes: dict[tuple[str, int], CoordinatorNode] = {}
        self._shards: dict[tuple[str, int], int] = {}
        self._draining: set[tuple[str, int]] = set()
        self._jobs: dict[str, list[RebalanceStatus]] = {}
        self._unplaced = total_shards
        self.calls: Counter = Counter()
        self.transient_failures: dict[str, int] = {}
        self.stalled: set[str] = set()
        self.invisible: set[str] = set()
        self.rebalance_results: list[RebalanceStatus] = [RebalanceStatus.DONE]

    def seed(
        self,
        host: str,
        port: int,
        role: str = PRIMARY_ROLE,
        active: bool = True,
        shards: int = 0,
    ) -> None:
        """Put a node in the live list without counting a call."""
        with self._lock:
            self._nodes[(host, port)] = CoordinatorNode(host, port, active, role)
            self._shards[(host, port)] = shards

    @property
    def mutating_calls(self) -> int:
        return sum(self.calls[name] for name in ("register_node", "drain_node", "remove_node", "rebalance"))

    def register_node(self, host: str, port: int) -> None:
        key = (host, port)
        identity = f"{host}:{port}"
        with self._lock:
            self.calls["register_node"] += 1
            remaining = self.transient_failures.get(identity, 0)
            if remaining > 0:
                self.transient_failures[identity] = remaining - 1
                raise RegistrationTransientError(f"coordinator unavailable while registering {identity}")
            existing = self._nodes.get(key)
            if existing is not None and existing.role != PRIMARY_ROLE:
                raise RegistrationConflictError(host, port, f"registered as {existing.role}")
            self._nodes[key] = CoordinatorNode(host, port, True, PRIMARY_ROLE)
            self._shards.setdefault(key, 0)
            self._draining.discard(key)
            # First worker receives shards that had nowhere to go
            if self._unplaced:
                self._shards[key] += self._unplaced
                self._unplaced = 0

    def drain_node(self, host: str, port: int) -> None:
        key = (host, port)
        with self._lock:
            self.calls["drain_node"] += 1
            if key not in self._nodes:
                raise CoordinatorError(f"{host}:{port} is not registered")
            self._draining.add(key)
            if f"{host}:{port}" in self.stalled:
                return
            moving = self._shards.get(key, 0)
            targets = [
                k for k, n in self._nodes.items()
                if k != key and k not in self._draining and n.is_active_primary
            ]
            if moving and not targets:
                # Nowhere to go; behaves like a stalled drain
                return
            for i in range(moving):
                target = targets[i % len(targets)]
                self._shards[target] += 1
            self._shards[key] = 0

    def remove_node(self, host: str, port: int, force: bool = False) -> None:
        key = (host, port)
        with self._lock:
            self.calls["remove_node"] += 1
            if key not in self._nodes:
                raise CoordinatorError(f"{host}:{port} is not registered")
            if self._shards.get(key, 0) and not force:
                raise CoordinatorError(
                    f"{host}:{port} still holds {self._shards[key]} shard placement(s)"
                )
            del self._nodes[key]
            self._shards.pop(key, None)
            self._draining.discard(key)

    def list_nodes(self) -> list[CoordinatorNode]:
        with self._lock:
            self.calls["list_nodes"] += 1
            return [
                node for node in self._nodes.values()
                if node.identity not in self.invisible
            ]

    def shard_count(self, host: str, port: int) -> int:
        with self._lock:
            self.calls["shard_count"] += 1
            return self._shards.get((host, port), 0)

    def rebalance(self, strategy: str) -> str:
        with self._lock:
            self.calls["rebalance"] += 1
            workers = [k for k, n in self._nodes.items() if n.is_active_primary and k not in self._draining]
            if not workers:
                return NO_JOB
            total = sum(self._shards[k] for k in workers)
            for i, key in enumerate(sorted(workers)):
                self._shards[key] = total // len(workers) + (1 if i < total % len(workers) else 0)
            job_id = str(len(self._jobs) + 1)
            self._jobs[job_id] = list(self.rebalance_results)
            return job_id

    def rebalance_status(self, job_id: str) -> RebalanceStatus:
        with self._lock:
            self.calls["rebalance_status"] += 1
            if job_id == NO_JOB:
                return RebalanceStatus.DONE
            results = self._jobs.get(job_id)
            if results is None:
                raise CoordinatorError(f"Unknown rebalance job: {job_id}")
            if len(results) > 1:
                return results.pop(0)
            return results[0]

    def get(self, host: str, port: int) -> Optional[CoordinatorNode]:
        """Live node by identity, without counting a call."""
        with self._lock:
            return self._nodes.get((host, port))
