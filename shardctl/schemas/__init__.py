"""
shardctl.schemas - Data structures for the control plane.

Topology -> NodeDefinition -> RegistrationRecord -> OperationReport

Lifecycle:
1. Topology: Declarative desired cluster (validated, never mutated)
2. NodeDefinition: Generator output, one per node, recreated on every run
3. RegistrationRecord: Per-worker registration state (a hint, reconciled against the coordinator)
4. OperationReport: Per-node outcome of a lifecycle operation
"""

from .topology import (
    ClusterOptions,
    CoordinatorSpec,
    Credentials,
    ResolvedWorker,
    Topology,
    WorkerSpec,
)
from .node import (
    COORDINATOR_NAME,
    NodeDefinition,
    NodeRole,
    worker_name,
)
from .registration import (
    RegistrationRecord,
    RegistrationState,
    TRANSITIONS,
)
from .report import (
    NodeResult,
    NodeState,
    OperationReport,
    Overall,
)

__all__ = [
    # Topology
    "ClusterOptions",
    "CoordinatorSpec",
    "Credentials",
    "ResolvedWorker",
    "Topology",
    "WorkerSpec",
    # Node
    "COORDINATOR_NAME",
    "NodeDefinition",
    "NodeRole",
    "worker_name",
    # Registration
    "RegistrationRecord",
    "RegistrationState",
    "TRANSITIONS",
    # Report
    "NodeResult",
    "NodeState",
    "OperationReport",
    "Overall",
]
