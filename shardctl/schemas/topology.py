"""
Topology schema - the declarative desired cluster.

A Topology is immutable. Changing the cluster means building a new Topology
(with_worker, without_worker, resized) and converging to it.

Port rule:
- coordinator listens on its declared port
- worker i listens on options.port_base + i unless it declares an explicit port
- a worker without a host is reached by its compose service name (worker-<i>),
  or by default_host when the topology names one
- ports of nodes addressed by service name are published on one docker host,
  so they must not collide with each other
"""

from dataclasses import dataclass, field, replace
from typing import Any, Optional

from shardctl.errors import InvalidTopology
from shardctl.schemas.node import COORDINATOR_NAME, worker_name


# Where compose publishes the ports of service-named nodes
PUBLISH_HOST = "localhost"
DEFAULT_COORDINATOR_PORT = 5432
DEFAULT_PORT_BASE = 9700
DEFAULT_REPLICATION_FACTOR = 2

MIN_PORT = 1
MAX_PORT = 65535

# Accepted camelCase spellings in topology files
_OPTION_ALIASES = {
    "shardCountHint": "shard_count_hint",
    "portBase": "port_base",
    "workerCount": "worker_count",
    "replicationFactor": "replication_factor",
}


def _published_host(host: str, service_name: str) -> str:
    """Host whose port space a node occupies once compose publishes it."""
    return PUBLISH_HOST if host == service_name else host


@dataclass(frozen=True)
class Credentials:
    """Credentials shared by every node of one topology."""
    user: str = ""
    password: str = field(default="", repr=False)
    database: str = ""

    def masked(self) -> dict[str, str]:
        """Credentials safe to log or print."""
        return {
            "user": self.user,
            "password": "****" if self.password else "",
            "database": self.database,
        }

    def to_dict(self) -> dict[str, str]:
        return {"user": self.user, "password": self.password, "database": self.database}


@dataclass(frozen=True)
class CoordinatorSpec:
    """
    The single coordinator of a cluster.

    Attributes:
        host: Host identity workers and clients use to reach the coordinator
        port: Listening port
        credential_ref: Name of the credential set the coordinator uses
    """
    host: str = "coordinator"
    port: int = DEFAULT_COORDINATOR_PORT
    credential_ref: str = "default"

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class WorkerSpec:
    """
    A worker in the desired topology.

    index is the worker's identity within one topology generation (1..N).
    host and port are optional; unset values are filled in by the topology's
    port rule (see Topology.resolve_worker).
    """
    index: int
    port: Optional[int] = None
    host: Optional[str] = None


@dataclass(frozen=True)
class ResolvedWorker:
    """A worker with its host and port fixed by the port rule."""
    index: int
    host: str
    port: int

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ClusterOptions:
    """
    Cluster-wide options.

    Attributes:
        shard_count_hint: Expected shard count; selects the rebalance strategy
        port_base: Worker i listens on port_base + i unless it has an explicit port
        worker_count: Requested worker count (expands to workers 1..N when no list is given)
        replication_factor: Passed through to the coordinator, not interpreted here
    """
    shard_count_hint: Optional[int] = None
    port_base: int = DEFAULT_PORT_BASE
    worker_count: Optional[int] = None
    replication_factor: int = DEFAULT_REPLICATION_FACTOR

    def to_dict(self) -> dict[str, Any]:
        return {
            "shardCountHint": self.shard_count_hint,
            "portBase": self.port_base,
            "workerCount": self.worker_count,
            "replicationFactor": self.replication_factor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClusterOptions":
        normalized = {_OPTION_ALIASES.get(k, k): v for k, v in data.items()}
        unknown = sorted(set(normalized) - {
            "shard_count_hint", "port_base", "worker_count", "replication_factor",
        })
        if unknown:
            raise InvalidTopology([f"unknown option(s): {unknown}"])
        return cls(**normalized)


@dataclass(frozen=True)
class Topology:
    """
    Desired end state of a cluster.

    Attributes:
        coordinator: The coordinator, or None for a worker-only topology
        workers: Ordered worker specs, indices 1..N
        credentials: Shared credentials
        options: Cluster options (ports, replication, shard hints)
        default_host: Host for workers that do not name one (None: their service name)
    """
    coordinator: Optional[CoordinatorSpec] = None
    workers: tuple[WorkerSpec, ...] = field(default_factory=tuple)
    credentials: Credentials = field(default_factory=Credentials)
    options: ClusterOptions = field(default_factory=ClusterOptions)
    default_host: Optional[str] = None

    def resolve_worker(self, spec: WorkerSpec) -> ResolvedWorker:
        """Apply the port rule to a worker spec."""
        host = spec.host or self.default_host or worker_name(spec.index)
        port = spec.port if spec.port is not None else self.options.port_base + spec.index
        return ResolvedWorker(index=spec.index, host=host, port=port)

    def resolved_workers(self) -> tuple[ResolvedWorker, ...]:
        """Workers in ascending index order with host and port filled in."""
        return tuple(self.resolve_worker(w) for w in sorted(self.workers, key=lambda w: w.index))

    def get_worker(self, index: int) -> Optional[WorkerSpec]:
        """Get a worker spec by index."""
        for worker in self.workers:
            if worker.index == index:
                return worker
        return None

    def validate(self) -> None:
        """
        Check the topology is well-formed. Pure, no I/O.

        Raises:
            InvalidTopology: listing every problem found
        """
        problems: list[str] = []

        count = self.options.worker_count
        if count is not None and count < 0:
            problems.append(f"worker count must be >= 0, got {count}")
        elif count is not None and count != len(self.workers):
            problems.append(
                f"worker count {count} does not match {len(self.workers)} declared worker(s)"
            )

        indices = sorted(w.index for w in self.workers)
        if indices != list(range(1, len(indices) + 1)):
            problems.append(f"worker indices must be contiguous 1..{len(indices)}, got {indices}")

        # (host, port) -> owner name
        claimed: dict[tuple[str, int], str] = {}

        def claim(host: str, port: int, owner: str) -> None:
            if not MIN_PORT <= port <= MAX_PORT:
                problems.append(f"{owner}: port {port} outside {MIN_PORT}..{MAX_PORT}")
                return
            key = (host, port)
            if key in claimed:
                problems.append(f"{owner} and {claimed[key]} both use {host}:{port}")
            else:
                claimed[key] = owner

        if self.coordinator is not None:
            claim(_published_host(self.coordinator.host, COORDINATOR_NAME), self.coordinator.port, "coordinator")
            for name in ("user", "password", "database"):
                if not getattr(self.credentials, name):
                    problems.append(f"credentials.{name} is required when a coordinator is present")

        for worker in self.resolved_workers():
            name = worker_name(worker.index)
            claim(_published_host(worker.host, name), worker.port, name)

        if self.options.replication_factor < 1:
            problems.append("replication factor must be >= 1")

        if problems:
            raise InvalidTopology(problems)

    def with_worker(self, spec: WorkerSpec) -> "Topology":
        """Return a topology with one more worker."""
        workers = tuple(sorted(self.workers + (spec,), key=lambda w: w.index))
        return self._with_workers(workers)

    def without_worker(self, index: int) -> "Topology":
        """Return a topology without the worker at index."""
        return self._with_workers(tuple(w for w in self.workers if w.index != index))

    def resized(self, count: int) -> "Topology":
        """
        Return a topology with workers 1..count.

        Existing worker specs keep their explicit host/port; new ones use the port rule.
        """
        if count < 0:
            raise InvalidTopology([f"worker count must be >= 0, got {count}"])
        existing = {w.index: w for w in self.workers}
        workers = tuple(existing.get(i, WorkerSpec(index=i)) for i in range(1, count + 1))
        return self._with_workers(workers)

    def _with_workers(self, workers: tuple[WorkerSpec, ...]) -> "Topology":
        options = self.options
        if options.worker_count is not None:
            options = replace(options, worker_count=len(workers))
        return replace(self, workers=workers, options=options)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        result: dict[str, Any] = {
            "credentials": self.credentials.to_dict(),
            "options": self.options.to_dict(),
            "workers": [
                {
                    "index": w.index,
                    **({"port": w.port} if w.port is not None else {}),
                    **({"host": w.host} if w.host is not None else {}),
                }
                for w in self.workers
            ],
        }
        if self.default_host is not None:
            result["default_host"] = self.default_host
        if self.coordinator is not None:
            result["coordinator"] = {
                "host": self.coordinator.host,
                "port": self.coordinator.port,
                "credential_ref": self.coordinator.credential_ref,
            }
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Topology":
        """
        Deserialize from dictionary.

        When no explicit `workers` list is given, options.workerCount expands to
        workers 1..N using the port rule. A negative count is rejected.
        """
        options = ClusterOptions.from_dict(data.get("options", {}) or {})

        coordinator = None
        coord_data = data.get("coordinator")
        if coord_data:
            coordinator = CoordinatorSpec(
                host=coord_data.get("host", "coordinator"),
                port=int(coord_data.get("port", DEFAULT_COORDINATOR_PORT)),
                credential_ref=coord_data.get("credential_ref", "default"),
            )

        if "workers" in data and data["workers"] is not None:
            workers = tuple(
                WorkerSpec(
                    index=int(w["index"]),
                    port=int(w["port"]) if w.get("port") is not None else None,
                    host=w.get("host"),
                )
                for w in data["workers"]
            )
        elif options.worker_count is not None and options.worker_count >= 0:
            workers = tuple(WorkerSpec(index=i) for i in range(1, options.worker_count + 1))
        else:
            workers = ()

        cred_data = data.get("credentials", {}) or {}
        credentials = Credentials(
            user=cred_data.get("user", ""),
            password=cred_data.get("password", ""),
            database=cred_data.get("database", ""),
        )

        return cls(
            coordinator=coordinator,
            workers=workers,
            credentials=credentials,
            options=options,
            default_host=data.get("default_host"),
        )
