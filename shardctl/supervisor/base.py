"""
Node supervisor protocol and an in-memory implementation.

The supervisor is an external collaborator: it starts, stops and inspects
node processes/containers. shardctl only relies on this narrow contract:

    apply(GeneratedPlan)                 (before any start; renders deployment files)
    start(NodeDefinition) -> NodeHandle
    stop(NodeHandle)
    status(NodeHandle) -> running | stopped | unknown
    logs(NodeHandle) -> iterator of bytes
    list_nodes() -> list[NodeHandle]      (re-deriving state after a restart)

Failures are raised as SupervisorError.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Protocol, runtime_checkable

from shardctl.errors import SupervisorError
from shardctl.generator import GeneratedPlan
from shardctl.schemas import NodeDefinition, NodeRole


class NodeStatus(str, Enum):
    """Process status reported by the supervisor."""
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class NodeHandle:
    """
    Reference to a node the supervisor manages.

    Attributes:
        name: Node name (matches NodeDefinition.name)
        node_id: Supervisor-specific id (container id, pid, ...)
        role: coordinator or worker
        host: Host identity
        port: Listening port
        index: Worker index (None for the coordinator)
        fingerprint: NodeDefinition.fingerprint of the definition it was started from, if known
    """
    name: str
    node_id: str
    role: NodeRole
    host: str
    port: int
    index: Optional[int] = None
    fingerprint: Optional[str] = None

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"


@runtime_checkable
class NodeSupervisor(Protocol):
    """
    Protocol for node process supervision.

    This interface keeps the control plane free of container runtime details:
    1. Lifecycle logic has no docker/systemd imports
    2. The runtime can be swapped (docker compose, in-memory for dry runs)
    3. Testing is simplified via fake implementations
    """

    def apply(self, plan: GeneratedPlan) -> None:
        """Make every node of the plan startable (render deployment files). Raises SupervisorError."""
        ...

    def start(self, node: NodeDefinition) -> NodeHandle:
        """Start (or adopt an already running) node. Raises SupervisorError."""
        ...

    def stop(self, handle: NodeHandle) -> None:
        """Stop a node. Stopping a stopped node succeeds. Raises SupervisorError."""
        ...

    def status(self, handle: NodeHandle) -> NodeStatus:
        """Report process status."""
        ...

    def logs(self, handle: NodeHandle) -> Iterator[bytes]:
        """Stream the node's log output."""
        ...

    def list_nodes(self) -> list[NodeHandle]:
        """All nodes the supervisor currently knows about (running or not)."""
        ...


class InMemorySupervisor:
    """
    In-memory NodeSupervisor for dry runs and tests.

    Tracks started nodes without running anything. Sharing one instance
    between two controllers simulates a restart of the control plane.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._nodes: dict[str, tuple[NodeHandle, NodeStatus]] = {}
        self._logs: dict[str, list[bytes]] = {}
        self.applied: list[str] = []

    def apply(self, plan: GeneratedPlan) -> None:
        with self._lock:
            self.applied.append(plan.content_hash)

    def start(self, node: NodeDefinition) -> NodeHandle:
        handle = NodeHandle(
            name=node.name,
            node_id=f"mem-{node.name}",
            role=node.role,
            host=node.host,
            port=node.port,
            index=node.index,
            fingerprint=node.fingerprint,
        )
        with self._lock:
            self._nodes[node.name] = (handle, NodeStatus.RUNNING)
            self._logs.setdefault(node.name, []).append(f"started {node.identity}\n".encode())
        return handle

    def stop(self, handle: NodeHandle) -> None:
        with self._lock:
            if handle.name not in self._nodes:
                raise SupervisorError(f"Unknown node: {handle.name}")
            self._nodes[handle.name] = (self._nodes[handle.name][0], NodeStatus.STOPPED)
            self._logs.setdefault(handle.name, []).append(b"stopped\n")

    def status(self, handle: NodeHandle) -> NodeStatus:
        with self._lock:
            entry = self._nodes.get(handle.name)
        return entry[1] if entry else NodeStatus.UNKNOWN

    def logs(self, handle: NodeHandle) -> Iterator[bytes]:
        with self._lock:
            lines = list(self._logs.get(handle.name, []))
        yield from lines

    def list_nodes(self) -> list[NodeHandle]:
        with self._lock:
            return [handle for handle, _status in self._nodes.values()]
