"""
NodeDefinition schema - generator output, one per node.

NodeDefinitions are created fresh on every generation run and never mutated.
A topology change produces a new full set; the controller diffs old vs new.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from shardctl.utils import hash_canonical


class NodeRole(str, Enum):
    """Role of a node in the cluster."""
    COORDINATOR = "coordinator"
    WORKER = "worker"


COORDINATOR_NAME = NodeRole.COORDINATOR.value


def worker_name(index: int) -> str:
    """Deterministic worker name, also its compose service and default host."""
    return f"{NodeRole.WORKER.value}-{index}"


@dataclass(frozen=True)
class NodeDefinition:
    """
    Concrete definition of one node.

    Attributes:
        name: Deterministic name ("coordinator" or "worker-<index>")
        role: coordinator or worker
        host: Host identity the coordinator uses to reach this node
        port: Listening port
        image: Container image
        environment: Credentials and role-specific tuning keys
        index: Worker index (None for the coordinator)
        depends_on: Always empty; readiness ordering lives in the orchestrator
    """
    name: str
    role: NodeRole
    host: str
    port: int
    image: str
    environment: dict[str, str] = field(default_factory=dict)
    index: Optional[int] = None
    depends_on: tuple[str, ...] = ()

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_worker(self) -> bool:
        return self.role == NodeRole.WORKER

    @property
    def fingerprint(self) -> str:
        """Content hash of this definition, stored with the running node."""
        return hash_canonical(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (environment keys sorted)."""
        return {
            "name": self.name,
            "role": self.role.value,
            "host": self.host,
            "port": self.port,
            "image": self.image,
            "environment": {k: self.environment[k] for k in sorted(self.environment)},
            "index": self.index,
            "depends_on": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeDefinition":
        """Deserialize from dictionary."""
        return cls(
            name=data["name"],
            role=NodeRole(data["role"]),
            host=data["host"],
            port=int(data["port"]),
            image=data["image"],
            environment=dict(data.get("environment", {})),
            index=data.get("index"),
            depends_on=tuple(data.get("depends_on", ())),
        )
