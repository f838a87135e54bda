"""
Health prober - decides when a started node can accept work.

probe_once() classifies a single check:
- ready: connects and answers (the coordinator also has the citus extension)
- not_ready: the server answers but reports starting up / recovery
- unreachable: connection refused, DNS failure, timeout

wait_ready() repeats probe_once() with bounded exponential backoff until the
node is ready, the deadline passes (ProbeTimeout) or the deadline is
cancelled (a cancelled outcome, not an error).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import psycopg
from psycopg import errors as pg_errors

from shardctl.errors import ProbeTimeout
from shardctl.schemas import NodeDefinition, NodeRole
from shardctl.timing import BackoffPolicy, Deadline

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_S = 5

# Server messages that mean "alive but not accepting work yet"
_NOT_READY_MARKERS = (
    "starting up",
    "in recovery",
    "recovery mode",
    "shutting down",
    "not yet accepting connections",
)


class ProbeStatus(str, Enum):
    """Result of a single readiness check."""
    READY = "ready"
    NOT_READY = "not_ready"
    UNREACHABLE = "unreachable"


ProbeCheck = Callable[[NodeDefinition, float], ProbeStatus]


@dataclass(frozen=True)
class ProbeOutcome:
    """
    Result of wait_ready().

    Attributes:
        node: Node name
        status: Last observed status
        attempts: Checks performed
        waited_s: Time spent waiting
        cancelled: True when the wait stopped because the deadline was cancelled
    """
    node: str
    status: ProbeStatus
    attempts: int
    waited_s: float
    cancelled: bool = False

    @property
    def ready(self) -> bool:
        return self.status == ProbeStatus.READY and not self.cancelled


def classify_operational_error(error: psycopg.OperationalError) -> ProbeStatus:
    """Map a failed connection attempt to not_ready or unreachable."""
    if isinstance(error, pg_errors.CannotConnectNow):
        return ProbeStatus.NOT_READY
    message = str(error).lower()
    if any(marker in message for marker in _NOT_READY_MARKERS):
        return ProbeStatus.NOT_READY
    return ProbeStatus.UNREACHABLE


def psycopg_check(node: NodeDefinition, timeout_s: float, connect_host: Optional[str] = None) -> ProbeStatus:
    """
    Default ProbeCheck: connect with the node's own credentials.

    Credentials come from the node's environment (PGUSER, PGPASSWORD,
    PGDATABASE), which the generator fills in from the topology.

    Args:
        node: Node to check
        timeout_s: Connect timeout
        connect_host: Host to dial instead of node.host (published ports)
    """
    env = node.environment
    try:
        with psycopg.connect(
            host=connect_host or node.host,
            port=node.port,
            user=env.get("PGUSER"),
            password=env.get("PGPASSWORD"),
            dbname=env.get("PGDATABASE"),
            connect_timeout=max(1, int(timeout_s)),
            autocommit=True,
        ) as conn:
            with conn.cursor() as cur:
                if node.role == NodeRole.COORDINATOR:
                    cur.execute("SELECT 1 FROM pg_extension WHERE extname = 'citus'")
                    if cur.fetchone() is None:
                        return ProbeStatus.NOT_READY
                else:
                    cur.execute("SELECT 1")
                    cur.fetchone()
    except psycopg.OperationalError as e:
        status = classify_operational_error(e)
        logger.debug(f"Probe {node.name} ({node.identity}): {status.value}: {e}")
        return status
    return ProbeStatus.READY


def make_psycopg_check(connect_host: Optional[str] = None) -> ProbeCheck:
    """psycopg_check bound to a connect host override."""
    if connect_host is None:
        return psycopg_check
    return lambda node, timeout_s: psycopg_check(node, timeout_s, connect_host)


class HealthProber:
    """
    Readiness polling with bounded exponential backoff.

    Usage:
        prober = HealthProber()
        outcome = prober.wait_ready(node, time_source.deadline(180.0))
    """

    def __init__(
        self,
        check: Optional[ProbeCheck] = None,
        backoff: Optional[BackoffPolicy] = None,
        connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
    ):
        """
        Args:
            check: Single readiness check (defaults to a psycopg connection)
            backoff: Delay policy between checks
            connect_timeout_s: Upper bound on a single check
        """
        self._check = check or psycopg_check
        self.backoff = backoff or BackoffPolicy()
        self.connect_timeout_s = connect_timeout_s

    def probe_once(self, node: NodeDefinition, timeout_s: Optional[float] = None) -> ProbeStatus:
        """Run one readiness check."""
        return self._check(node, timeout_s if timeout_s is not None else self.connect_timeout_s)

    def wait_ready(self, node: NodeDefinition, deadline: Deadline) -> ProbeOutcome:
        """
        Poll until the node is ready.

        Args:
            node: Node to probe
            deadline: Overall deadline and cancellation signal

        Returns:
            ProbeOutcome; ready, or cancelled

        Raises:
            ProbeTimeout: If the deadline passes first (carries the last status)
        """
        attempts = 0
        status = ProbeStatus.UNREACHABLE
        delays = self.backoff.delays()

        while True:
            if deadline.cancelled:
                logger.info(f"Probe of {node.name} cancelled after {attempts} attempt(s)")
                return ProbeOutcome(node.name, status, attempts, deadline.elapsed(), cancelled=True)

            attempts += 1
            status = self.probe_once(node, min(self.connect_timeout_s, max(deadline.remaining(), 1.0)))
            if status == ProbeStatus.READY:
                logger.info(f"{node.name} ready after {attempts} attempt(s)")
                return ProbeOutcome(node.name, status, attempts, deadline.elapsed())

            logger.debug(f"{node.name} {status.value} (attempt {attempts})")
            if not deadline.sleep(next(delays)):
                if deadline.cancelled:
                    continue
                raise ProbeTimeout(node.name, status.value, deadline.elapsed())
