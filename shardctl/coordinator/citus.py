"""
Citus coordinator client over psycopg.

One short-lived autocommit connection per command; the control plane issues
few commands and the registration orchestrator serializes them.

Engine calls:
- register: citus_add_node, then citus_activate_node if the node was disabled
- drain: citus_set_node_property(shouldhaveshards=false) + citus_rebalance_start(drain_only)
- remove: citus_remove_node (forced: citus_disable_node(force) first)
- list: pg_dist_node
- shard count: pg_dist_placement joined to pg_dist_node on groupid
- rebalance: citus_rebalance_start / pg_dist_background_job
"""

import logging
from typing import Any, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg.conninfo import make_conninfo

from shardctl.coordinator.base import NO_JOB, CoordinatorNode, RebalanceStatus
from shardctl.errors import (
    CoordinatorError,
    RegistrationConflictError,
    RegistrationTransientError,
    TransientError,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_S = 10

_JOB_STATES = {
    "scheduled": RebalanceStatus.PENDING,
    "running": RebalanceStatus.RUNNING,
    "cancelling": RebalanceStatus.RUNNING,
    "failing": RebalanceStatus.RUNNING,
    "finished": RebalanceStatus.DONE,
    "cancelled": RebalanceStatus.FAILED,
    "failed": RebalanceStatus.FAILED,
}

_LIST_NODES_SQL = """
SELECT nodename, nodeport, isactive,
       CASE WHEN groupid = 0 THEN 'coordinator' ELSE noderole::text END
FROM pg_dist_node
ORDER BY nodeid
"""

_SHARD_COUNT_SQL = """
SELECT count(*)
FROM pg_dist_placement p
JOIN pg_dist_node n ON p.groupid = n.groupid
WHERE n.nodename = %s AND n.nodeport = %s
"""


class CitusCoordinator:
    """
    CoordinatorClient for a Citus coordinator.

    Usage:
        coordinator = CitusCoordinator("coordinator", 5432, "postgres", password, "postgres")
        coordinator.register_node("worker-1", 9701)
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        connect_timeout_s: int = DEFAULT_CONNECT_TIMEOUT_S,
    ):
        self.host = host
        self.port = port
        self._conninfo = make_conninfo(
            host=host,
            port=port,
            user=user,
            password=password,
            dbname=database,
            connect_timeout=connect_timeout_s,
            application_name="shardctl",
        )

    def _execute(self, operation: str, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        """
        Run one statement and return its rows.

        Raises:
            RegistrationTransientError: Connection-level failure during register
            TransientError: Connection-level failure elsewhere
            CoordinatorError: Any other engine error
        """
        logger.debug(f"{operation}: {' '.join(sql.split())} {tuple(params)}")
        try:
            with psycopg.connect(self._conninfo, autocommit=True) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return cur.fetchall() if cur.description else []
        except (psycopg.OperationalError, TimeoutError) as e:
            if operation == "register":
                raise RegistrationTransientError(f"{operation} failed: {e}") from e
            raise TransientError(f"{operation} failed: {e}") from e
        except psycopg.Error as e:
            raise CoordinatorError(f"{operation} failed: {e}") from e

    def _nodes(self, operation: str) -> list[CoordinatorNode]:
        rows = self._execute(operation, _LIST_NODES_SQL)
        return [
            CoordinatorNode(host=row[0], port=int(row[1]), active=bool(row[2]), role=str(row[3]))
            for row in rows
        ]

    def _find(self, host: str, port: int, operation: str) -> Optional[CoordinatorNode]:
        for node in self._nodes(operation):
            if node.host == host and node.port == port:
                return node
        return None

    def register_node(self, host: str, port: int) -> None:
        existing = self._find(host, port, "register")
        if existing is not None and existing.role != "primary":
            raise RegistrationConflictError(host, port, f"registered as {existing.role}")
        try:
            self._execute("register", "SELECT citus_add_node(%s, %s)", (host, port))
        except CoordinatorError as e:
            if isinstance(e.__cause__, pg_errors.UniqueViolation):
                raise RegistrationConflictError(host, port, str(e.__cause__)) from e
            raise
        if existing is not None and not existing.active:
            self._execute("register", "SELECT citus_activate_node(%s, %s)", (host, port))
        logger.info(f"Registered {host}:{port} with coordinator {self.host}:{self.port}")

    def drain_node(self, host: str, port: int) -> None:
        self._execute(
            "drain",
            "SELECT citus_set_node_property(%s, %s, 'shouldhaveshards', false)",
            (host, port),
        )
        self._execute("drain", "SELECT citus_rebalance_start(drain_only := true)")
        logger.info(f"Drain started for {host}:{port}")

    def remove_node(self, host: str, port: int, force: bool = False) -> None:
        if force:
            self._execute(
                "remove",
                "SELECT citus_disable_node(%s, %s, force := true)",
                (host, port),
            )
        self._execute("remove", "SELECT citus_remove_node(%s, %s)", (host, port))
        logger.info(f"Removed {host}:{port}{' (forced)' if force else ''}")

    def list_nodes(self) -> list[CoordinatorNode]:
        return self._nodes("list")

    def shard_count(self, host: str, port: int) -> int:
        rows = self._execute("shard_count", _SHARD_COUNT_SQL, (host, port))
        return int(rows[0][0]) if rows else 0

    def rebalance(self, strategy: str) -> str:
        rows = self._execute(
            "rebalance",
            "SELECT citus_rebalance_start(rebalance_strategy := %s)",
            (strategy,),
        )
        job_id = rows[0][0] if rows else None
        if job_id is None:
            logger.info("Rebalance: nothing to move")
            return NO_JOB
        logger.info(f"Rebalance job {job_id} started (strategy={strategy})")
        return str(job_id)

    def rebalance_status(self, job_id: str) -> RebalanceStatus:
        if job_id == NO_JOB:
            return RebalanceStatus.DONE
        rows = self._execute(
            "rebalance_status",
            "SELECT state::text FROM pg_dist_background_job WHERE job_id = %s",
            (int(job_id),),
        )
        if not rows:
            raise CoordinatorError(f"Unknown rebalance job: {job_id}")
        state = rows[0][0]
        status = _JOB_STATES.get(state)
        if status is None:
            raise CoordinatorError(f"Unexpected rebalance job state: {state}")
        return status
