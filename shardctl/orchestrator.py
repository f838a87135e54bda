"""
Registration orchestrator - per-worker registration state machine.

Registers new workers with the coordinator, drains and removes departing
ones, and reconciles its records against the coordinator's live node list.

Rules:
- The live node list is authoritative. Before registering, the orchestrator
  looks the worker up; an active primary short-circuits to Registered with no
  register call, a different role is a conflict.
- RegistrationTransientError is retried with bounded backoff up to
  max_attempts. A register ack only counts once the worker shows up in the
  live list (bounded by registration_timeout_s); otherwise the attempt failed.
- Every coordinator call goes through one lock, so concurrent workers never
  issue overlapping commands.
- Drain waits (bounded by drain_timeout_s) for the shard count to reach zero
  before removing. A stalled drain is DrainStallError, never a silent force.
- Cancellation leaves coordinator-side state as it is; the next run resumes.
"""

import logging
import threading
from typing import Any, Callable, Optional

from shardctl.coordinator import CoordinatorClient, CoordinatorNode
from shardctl.errors import (
    DrainStallError,
    PermanentError,
    RegistrationConflictError,
    RegistrationTransientError,
    ShardctlError,
    TransientError,
)
from shardctl.schemas import RegistrationRecord, RegistrationState
from shardctl.timing import BackoffPolicy, TimeSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_REGISTRATION_TIMEOUT_S = 60.0
DEFAULT_DRAIN_TIMEOUT_S = 3600.0


class Cancelled(ShardctlError):
    """The operation's deadline was cancelled; coordinator state is left as-is."""
    pass


class RegistrationOrchestrator:
    """
    Drives RegistrationRecords through the registration state machine.

    Usage:
        orchestrator = RegistrationOrchestrator(coordinator, TimeSource())
        record = orchestrator.register("worker-1", 9701, name="worker-1")
        record = orchestrator.deregister("worker-1", 9701)
    """

    def __init__(
        self,
        coordinator: CoordinatorClient,
        time_source: Optional[TimeSource] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        registration_timeout_s: float = DEFAULT_REGISTRATION_TIMEOUT_S,
        drain_timeout_s: float = DEFAULT_DRAIN_TIMEOUT_S,
        lock: Optional[threading.Lock] = None,
    ):
        """
        Args:
            coordinator: Coordinator command surface
            time_source: Clock/sleep/cancel used for every wait
            backoff: Delay policy for retries and polls
            max_attempts: Register attempts before a worker is Failed
            registration_timeout_s: Wait for a register ack to show up in the live list
            drain_timeout_s: Wait for a drained worker to reach zero shards
            lock: Lock serializing coordinator calls (shared with other callers)
        """
        self.coordinator = coordinator
        self._time = time_source or TimeSource()
        self.backoff = backoff or BackoffPolicy()
        self.max_attempts = max_attempts
        self.registration_timeout_s = registration_timeout_s
        self.drain_timeout_s = drain_timeout_s
        self._lock = lock or threading.Lock()
        self._records_lock = threading.Lock()
        self._records: dict[str, RegistrationRecord] = {}
        self.operations = 0

    # -------------------------------------------------------------------------
    # Coordinator access
    # -------------------------------------------------------------------------

    def call(self, fn: Callable[..., Any], *args: Any, mutating: bool = False, **kwargs: Any) -> Any:
        """Run one coordinator call under the coordinator lock."""
        with self._lock:
            if mutating:
                self.operations += 1
            return fn(*args, **kwargs)

    def live_node(self, host: str, port: int) -> Optional[CoordinatorNode]:
        """Look host:port up in the coordinator's live node list."""
        for node in self.call(self.coordinator.list_nodes):
            if node.host == host and node.port == port:
                return node
        return None

    def is_registered(self, host: str, port: int) -> bool:
        node = self.live_node(host, port)
        return node is not None and node.is_active_primary

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def record(self, host: str, port: int, name: str = "") -> RegistrationRecord:
        """Tracked record for host:port, created Unregistered if unknown."""
        identity = f"{host}:{port}"
        with self._records_lock:
            record = self._records.get(identity)
            if record is None:
                record = RegistrationRecord(host=host, port=port, name=name)
                self._records[identity] = record
            elif name and not record.name:
                record.name = name
            return record

    def records(self) -> list[RegistrationRecord]:
        """Snapshot of tracked records."""
        with self._records_lock:
            return list(self._records.values())

    def _forget(self, record: RegistrationRecord) -> None:
        with self._records_lock:
            self._records.pop(record.identity, None)

    def _reset(self, record: RegistrationRecord) -> RegistrationRecord:
        """Replace a record whose state the live list contradicts."""
        fresh = RegistrationRecord(host=record.host, port=record.port, name=record.name)
        with self._records_lock:
            self._records[record.identity] = fresh
        return fresh

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(
        self,
        host: str,
        port: int,
        name: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> RegistrationRecord:
        """
        Bring host:port to Registered (or Failed).

        Never raises for per-worker failures: the outcome is in the returned
        record's state and last_error.

        Args:
            host: Worker host identity
            port: Worker port
            name: Node name for reporting
            cancel: Cancellation signal (overrides the time source's)

        Returns:
            The worker's RegistrationRecord
        """
        record = self.record(host, port, name)

        if record.state == RegistrationState.FAILED:
            record.transition(RegistrationState.UNREGISTERED)
            record.attempts = 0

        try:
            live = self.live_node(host, port)
        except TransientError as e:
            logger.warning(f"Could not read live node list before registering {record.identity}: {e}")
            live = None
        except PermanentError as e:
            return self._fail(record, e)

        if live is not None:
            if live.is_active_primary:
                if record.state == RegistrationState.REGISTERED:
                    return record
                if record.state != RegistrationState.UNREGISTERED:
                    record = self._reset(record)
                logger.info(f"{record.identity} already registered; nothing to do")
                record.transition(RegistrationState.REGISTERED)
                return record
            if live.role != "primary":
                return self._fail(record, RegistrationConflictError(host, port, f"registered as {live.role}"))

        if record.state == RegistrationState.REGISTERED:
            logger.warning(f"{record.identity} recorded as registered but not active on the coordinator")
            record = self._reset(record)
        elif record.state != RegistrationState.UNREGISTERED:
            logger.warning(f"{record.identity} found in state {record.state.value}; starting over")
            record = self._reset(record)

        record.transition(RegistrationState.REGISTERING)
        delays = self.backoff.delays()

        while True:
            record.attempts += 1
            try:
                self.call(self.coordinator.register_node, host, port, mutating=True)
                self._confirm_registered(host, port, cancel)
            except Cancelled as e:
                record.last_error = {"type": type(e).__name__, "message": str(e)}
                return record
            except TransientError as e:
                if record.attempts >= self.max_attempts:
                    logger.error(f"Registering {record.identity} failed after {record.attempts} attempt(s): {e}")
                    record.transition(RegistrationState.FAILED, e)
                    return record
                logger.warning(f"Registering {record.identity} attempt {record.attempts} failed: {e}")
                record.transition(RegistrationState.REGISTERING, e)
                if not self._backoff(next(delays), cancel):
                    return record
                continue
            except PermanentError as e:
                logger.error(f"Registering {record.identity} failed: {e}")
                record.transition(RegistrationState.FAILED, e)
                return record

            record.transition(RegistrationState.REGISTERED)
            logger.info(f"{record.identity} registered after {record.attempts} attempt(s)")
            return record

    def _fail(self, record: RegistrationRecord, error: ShardctlError) -> RegistrationRecord:
        logger.error(f"Registering {record.identity} failed: {error}")
        if record.state == RegistrationState.UNREGISTERED:
            record.transition(RegistrationState.REGISTERING)
        elif record.state != RegistrationState.REGISTERING:
            record = self._reset(record)
            record.transition(RegistrationState.REGISTERING)
        record.transition(RegistrationState.FAILED, error)
        return record

    def _backoff(self, delay: float, cancel: Optional[threading.Event]) -> bool:
        """Sleep between attempts. Returns False if cancelled."""
        deadline = self._time.deadline(delay, cancel)
        deadline.sleep(delay)
        return not deadline.cancelled

    def _confirm_registered(self, host: str, port: int, cancel: Optional[threading.Event]) -> None:
        """
        Poll the live list until host:port shows up as an active primary.

        Raises:
            RegistrationTransientError: Not visible before registration_timeout_s
            Cancelled: If the deadline was cancelled
        """
        deadline = self._time.deadline(self.registration_timeout_s, cancel)
        delays = self.backoff.delays()
        while True:
            try:
                if self.is_registered(host, port):
                    return
            except TransientError as e:
                logger.debug(f"Live node list unavailable while confirming {host}:{port}: {e}")
            if not deadline.sleep(next(delays)):
                if deadline.cancelled:
                    raise Cancelled(f"registration of {host}:{port} cancelled")
                raise RegistrationTransientError(
                    f"{host}:{port} not visible in the coordinator node list after {deadline.elapsed():.1f}s"
                )

    # -------------------------------------------------------------------------
    # Drain and removal
    # -------------------------------------------------------------------------

    def deregister(
        self,
        host: str,
        port: int,
        name: str = "",
        force: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> RegistrationRecord:
        """
        Drain and remove host:port from the coordinator.

        With force, the drain is skipped and the coordinator removes the node
        even if it still holds shard placements; the record is flagged.

        Returns:
            The worker's RegistrationRecord (Removed records are no longer tracked)
        """
        record = self.record(host, port, name)

        try:
            live = self.live_node(host, port)
        except ShardctlError as e:
            logger.error(f"Could not read live node list before removing {record.identity}: {e}")
            record.last_error = {"type": type(e).__name__, "message": str(e)}
            return record

        if live is None:
            logger.info(f"{record.identity} not known to the coordinator; nothing to deregister")
            self._forget(record)
            return RegistrationRecord(
                host=host, port=port, name=record.name, state=RegistrationState.REMOVED,
                attempts=record.attempts,
            )

        if live.role != "primary":
            error = RegistrationConflictError(host, port, f"registered as {live.role}")
            logger.error(f"Refusing to remove {record.identity}: {error}")
            record.last_error = {"type": type(error).__name__, "message": str(error)}
            return record

        if record.state in (
            RegistrationState.REGISTERING,
            RegistrationState.DRAIN_REQUESTED,
            RegistrationState.DRAINING,
        ):
            record = self._reset(record)
        if record.state == RegistrationState.FAILED and not force:
            record.transition(RegistrationState.UNREGISTERED)
        if record.state == RegistrationState.UNREGISTERED:
            record.transition(RegistrationState.REGISTERED)

        if force:
            return self._force_remove(record)

        record.transition(RegistrationState.DRAIN_REQUESTED)
        try:
            self.call(self.coordinator.drain_node, host, port, mutating=True)
        except ShardctlError as e:
            logger.error(f"Drain of {record.identity} could not start: {e}")
            record.transition(RegistrationState.FAILED, e)
            return record
        record.transition(RegistrationState.DRAINING)

        try:
            self._wait_drained(host, port, cancel)
        except Cancelled as e:
            record.last_error = {"type": type(e).__name__, "message": str(e)}
            return record
        except DrainStallError as e:
            logger.error(str(e))
            record.transition(RegistrationState.FAILED, e)
            return record

        try:
            self.call(self.coordinator.remove_node, host, port, force=False, mutating=True)
        except ShardctlError as e:
            logger.error(f"Removing {record.identity} failed: {e}")
            record.transition(RegistrationState.FAILED, e)
            return record

        record.transition(RegistrationState.REMOVED)
        self._forget(record)
        logger.info(f"{record.identity} drained and removed")
        return record

    def _force_remove(self, record: RegistrationRecord) -> RegistrationRecord:
        try:
            self.call(self.coordinator.remove_node, record.host, record.port, force=True, mutating=True)
        except ShardctlError as e:
            logger.error(f"Forced removal of {record.identity} failed: {e}")
            record.last_error = {"type": type(e).__name__, "message": str(e)}
            return record
        record.transition(RegistrationState.REMOVED)
        record.forced = True
        self._forget(record)
        logger.warning(f"{record.identity} removed without draining")
        return record

    def _wait_drained(self, host: str, port: int, cancel: Optional[threading.Event]) -> None:
        """
        Poll the shard count until it reaches zero.

        Raises:
            DrainStallError: Shards remain at drain_timeout_s
            Cancelled: If the deadline was cancelled
        """
        deadline = self._time.deadline(self.drain_timeout_s, cancel)
        delays = self.backoff.delays()
        remaining: Optional[int] = None
        while True:
            try:
                remaining = self.call(self.coordinator.shard_count, host, port)
            except TransientError as e:
                logger.debug(f"Shard count for {host}:{port} unavailable: {e}")
            else:
                if remaining == 0:
                    return
                logger.debug(f"{host}:{port} still holds {remaining} shard placement(s)")
            if not deadline.sleep(next(delays)):
                if deadline.cancelled:
                    raise Cancelled(f"drain of {host}:{port} cancelled")
                raise DrainStallError(host, port, remaining)
