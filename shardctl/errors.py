"""
Error classes for shardctl.

These error types enable retry classification at adapter boundaries:
- TransientError: Safe to retry (coordinator momentarily down, network blip)
- PermanentError: Do not retry (bad input, conflicting registration, stalled drain)

Adapters raise these errors to signal retry behavior. The registration
orchestrator retries TransientError with bounded backoff; everything else is
recorded against the node and surfaced in the operation report.

Error handling contract:
- Per-node failures are recorded, never raised out of Converge
- InvalidTopology is raised before any side effect and rejects the operation
- GeneratorError and IllegalTransition indicate logic defects, not runtime conditions
"""

from typing import Optional, Sequence


class ShardctlError(Exception):
    """Base exception for shardctl."""
    pass


class TransientError(ShardctlError):
    """
    Transient error - safe to retry.

    Examples:
    - Connection refused while the coordinator restarts
    - Statement timeout
    - Node registration not yet visible in the live node list
    """
    pass


class PermanentError(ShardctlError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid topology
    - Host+port registered under a different identity
    - Drain that never finished
    """
    pass


class ConfigError(ShardctlError):
    """Configuration validation error."""
    pass


class InvalidTopology(PermanentError):
    """
    Raised when a requested topology is not well-formed.

    Carries every problem found so the caller can fix the input in one pass.
    """

    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__("Invalid topology: " + "; ".join(self.problems))


class GeneratorError(ShardctlError):
    """Internal inconsistency while generating node definitions (logic defect)."""
    pass


class IllegalTransition(ShardctlError):
    """Raised when a registration record is moved along an edge the state machine does not have."""

    def __init__(self, identity: str, current: str, target: str):
        self.identity = identity
        self.current = current
        self.target = target
        super().__init__(f"{identity}: illegal transition {current} -> {target}")


class RegistrationTransientError(TransientError):
    """Coordinator momentarily unable to register a node. Retried with backoff."""
    pass


class RegistrationConflictError(PermanentError):
    """
    Host+port already known to the coordinator under a different identity.

    Never auto-resolved: guessing wrong risks data loss.
    """

    def __init__(self, host: str, port: int, detail: str = ""):
        self.host = host
        self.port = port
        message = f"{host}:{port} is already registered under a different identity"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class DrainStallError(PermanentError):
    """Drain did not complete before its timeout. Requires operator action."""

    def __init__(self, host: str, port: int, remaining_shards: Optional[int] = None):
        self.host = host
        self.port = port
        self.remaining_shards = remaining_shards
        message = f"Drain of {host}:{port} stalled"
        if remaining_shards is not None:
            message = f"{message} with {remaining_shards} shard placement(s) left"
        super().__init__(message)


class ProbeTimeout(TransientError):
    """
    Node did not become ready before the deadline.

    last_status preserves whether the node stayed unreachable or connected
    but never finished initializing.
    """

    def __init__(self, node: str, last_status: str, waited_s: float):
        self.node = node
        self.last_status = last_status
        self.waited_s = waited_s
        super().__init__(
            f"{node} not ready after {waited_s:.1f}s (last status: {last_status})"
        )


class SupervisorError(PermanentError):
    """Container supervisor failed to start/stop/inspect a node."""
    pass


class CoordinatorError(PermanentError):
    """Coordinator rejected a command for a non-retryable reason."""
    pass
