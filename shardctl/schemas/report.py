"""
Operation report - the only observable output of a lifecycle operation.

The overall status always distinguishes:
- converged: every node reached its target state
- partially_converged: some nodes failed (listed with reasons)
- failed: no node reached its target state
- rejected: validation failed before anything was touched
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from shardctl.utils import format_duration


class Overall(str, Enum):
    """Aggregate outcome of an operation."""
    CONVERGED = "converged"
    PARTIALLY_CONVERGED = "partially_converged"
    FAILED = "failed"
    REJECTED = "rejected"


class NodeState(str, Enum):
    """Target/achieved states for nodes that are not tracked by registration (the coordinator)."""
    READY = "ready"
    STOPPED = "stopped"
    FAILED = "failed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class NodeResult:
    """
    Outcome for one node.

    Attributes:
        name: Node name
        identity: host:port
        target_state: State the operation tried to reach
        achieved_state: State actually reached
        error: {"type", "message"} when the node failed
        warnings: Explicit warnings (e.g. forced removal without drain)
        attempts: Register attempts (workers only)
    """
    name: str
    identity: str
    target_state: str
    achieved_state: str
    error: Optional[dict[str, str]] = None
    warnings: tuple[str, ...] = ()
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.achieved_state == self.target_state

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "identity": self.identity,
            "target_state": self.target_state,
            "achieved_state": self.achieved_state,
        }
        if self.attempts:
            result["attempts"] = self.attempts
        if self.error is not None:
            result["error"] = self.error
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result


@dataclass(frozen=True)
class OperationReport:
    """
    Structured result of Converge / AddWorker / RemoveWorker / Resize / Rebalance.

    Attributes:
        operation: Operation name
        overall: Aggregate outcome
        per_node: One entry per node the operation concerned, in plan order
        elapsed: Wall time in seconds
        plan_hash: Content hash of the generated plan (None if rejected)
        operations: Mutating supervisor + coordinator calls issued
        warnings: Operation-level warnings
        problems: Validation problems (rejected reports only)
    """
    operation: str
    overall: Overall
    per_node: tuple[NodeResult, ...] = ()
    elapsed: float = 0.0
    plan_hash: Optional[str] = None
    operations: int = 0
    warnings: tuple[str, ...] = ()
    problems: tuple[str, ...] = field(default_factory=tuple)

    @property
    def failed_nodes(self) -> tuple[NodeResult, ...]:
        return tuple(r for r in self.per_node if not r.ok)

    @property
    def succeeded(self) -> bool:
        return self.overall == Overall.CONVERGED

    def get(self, name: str) -> Optional[NodeResult]:
        """Get the result for a node by name."""
        for result in self.per_node:
            if result.name == name:
                return result
        return None

    @staticmethod
    def summarize(results: tuple[NodeResult, ...]) -> Overall:
        """Derive the overall outcome from per-node results."""
        failing = [r for r in results if not r.ok]
        if not failing:
            return Overall.CONVERGED
        if len(failing) == len(results):
            return Overall.FAILED
        return Overall.PARTIALLY_CONVERGED

    @classmethod
    def rejected(cls, operation: str, problems: list[str], elapsed: float = 0.0) -> "OperationReport":
        """Report for an operation refused before any side effect."""
        return cls(
            operation=operation,
            overall=Overall.REJECTED,
            elapsed=elapsed,
            problems=tuple(problems),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "operation": self.operation,
            "overall": self.overall.value,
            "per_node": [r.to_dict() for r in self.per_node],
            "elapsed": round(self.elapsed, 3),
            "plan_hash": self.plan_hash,
            "operations": self.operations,
        }
        if self.warnings:
            result["warnings"] = list(self.warnings)
        if self.problems:
            result["problems"] = list(self.problems)
        return result

    def __str__(self) -> str:
        failed = len(self.failed_nodes)
        return (
            f"{self.operation}: {self.overall.value} "
            f"({len(self.per_node)} node(s), {failed} failed, {format_duration(self.elapsed)})"
        )
