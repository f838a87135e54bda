"""
Registration schemas - per-worker registration state machine.

RegistrationRecord is a hint: the coordinator's live node list is the single
source of truth and is always queried before a record is trusted for a
"nothing to do" decision.

    Unregistered -> Registering -> Registered
    Registering  -> Registering                 (transient error, retry)
    Registering  -> Failed                      (attempts exhausted / non-retryable)
    Registered   -> DrainRequested -> Draining -> Removed
    Draining     -> Failed                      (drain stalled)
    Registered | DrainRequested | Failed -> Removed   (forced removal)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from shardctl.errors import IllegalTransition


class RegistrationState(str, Enum):
    """State of a worker's registration with the coordinator."""
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    DRAIN_REQUESTED = "drain_requested"
    DRAINING = "draining"
    REMOVED = "removed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RegistrationState.REGISTERED, RegistrationState.REMOVED, RegistrationState.FAILED)


S = RegistrationState

TRANSITIONS: dict[RegistrationState, frozenset[RegistrationState]] = {
    S.UNREGISTERED: frozenset({S.REGISTERING, S.REGISTERED}),
    S.REGISTERING: frozenset({S.REGISTERING, S.REGISTERED, S.FAILED}),
    S.REGISTERED: frozenset({S.DRAIN_REQUESTED, S.REMOVED}),
    S.DRAIN_REQUESTED: frozenset({S.DRAINING, S.FAILED, S.REMOVED}),
    S.DRAINING: frozenset({S.REMOVED, S.FAILED}),
    S.REMOVED: frozenset(),
    S.FAILED: frozenset({S.UNREGISTERED, S.REMOVED}),
}


@dataclass
class RegistrationRecord:
    """
    Orchestrator-maintained registration state for one worker.

    Attributes:
        host: Worker host identity
        port: Worker port
        name: Node name (worker-<index>)
        state: Current state
        last_error: {"type", "message"} of the last failure, if any
        attempts: Register commands issued (drives backoff)
        forced: True when the worker was removed without draining
    """
    host: str
    port: int
    name: str = ""
    state: RegistrationState = RegistrationState.UNREGISTERED
    last_error: Optional[dict[str, str]] = None
    attempts: int = 0
    forced: bool = False

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"

    def transition(self, target: RegistrationState, error: Optional[BaseException] = None) -> None:
        """
        Move to target along a state machine edge.

        Raises:
            IllegalTransition: If the edge does not exist
        """
        if target not in TRANSITIONS[self.state]:
            raise IllegalTransition(self.identity, self.state.value, target.value)
        self.state = target
        if error is not None:
            self.last_error = {"type": type(error).__name__, "message": str(error)}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "identity": self.identity,
            "name": self.name,
            "state": self.state.value,
            "attempts": self.attempts,
        }
        if self.last_error is not None:
            result["last_error"] = self.last_error
        if self.forced:
            result["forced"] = True
        return result
