"""
Generator - Convert a validated Topology into concrete NodeDefinitions.

The generator is a pure function: equal topologies produce byte-identical
plans (same NodeDefinitions in the same order, same content hash). The
content hash lets the controller skip a Converge whose topology did not
change; the diff between two plans tells it what to start and stop.

Plan contract (shardctl.plan/1):
{
  "plan_version": "shardctl.plan/1",
  "nodes": [ {NodeDefinition}, ... ],     // coordinator first, then workers by index
  "coordinator_init_sql": "..." | null
}
content_hash = "sha256:" + sha256(canonical JSON of the plan)

Static artifacts rendered from a plan (treated as data):
- docker-compose document, one service per node
- coordinator init SQL (extension, coordinator host, shard defaults)
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from shardctl.errors import GeneratorError
from shardctl.schemas import COORDINATOR_NAME, NodeDefinition, NodeRole, Topology, worker_name
from shardctl.utils import canonical_json, hash_canonical


PLAN_VERSION = "shardctl.plan/1"

DEFAULT_IMAGE = "citusdata/citus:12.1"

# Shard defaults applied on the coordinator when the topology gives no hint
DEFAULT_SHARD_COUNT = 64

INIT_SQL_FILENAME = "01_citus.sql"
INIT_SQL_DIR = Path("initdb") / "coordinator"

HEALTHCHECK_INTERVAL = "5s"
HEALTHCHECK_RETRIES = 12


@dataclass(frozen=True)
class GeneratedPlan:
    """
    Output of one generation run.

    Attributes:
        nodes: NodeDefinitions, coordinator first then workers by ascending index
        coordinator_init_sql: Init script for the coordinator (None for worker-only topologies)
        content_hash: sha256 of the canonical serialized plan
    """
    nodes: tuple[NodeDefinition, ...]
    coordinator_init_sql: Optional[str]
    content_hash: str

    @property
    def coordinator(self) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.role == NodeRole.COORDINATOR:
                return node
        return None

    @property
    def workers(self) -> tuple[NodeDefinition, ...]:
        return tuple(n for n in self.nodes if n.is_worker)

    def get(self, name: str) -> Optional[NodeDefinition]:
        """Get a node definition by name."""
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def to_dict(self) -> dict[str, Any]:
        return _plan_body(self.nodes, self.coordinator_init_sql)

    def serialize(self) -> bytes:
        """Canonical bytes of the plan (identical for equal topologies)."""
        return canonical_json(self.to_dict()).encode("utf-8")


@dataclass(frozen=True)
class PlanDiff:
    """
    Difference between the last-applied plan and a new one, by node name.

    A node whose definition changed appears in both removed (old definition)
    and added (new definition): in-place reconfiguration is a removal + re-add.
    """
    added: tuple[NodeDefinition, ...] = field(default_factory=tuple)
    removed: tuple[NodeDefinition, ...] = field(default_factory=tuple)
    unchanged: tuple[NodeDefinition, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed


def _plan_body(nodes: tuple[NodeDefinition, ...], init_sql: Optional[str]) -> dict[str, Any]:
    return {
        "plan_version": PLAN_VERSION,
        "nodes": [n.to_dict() for n in nodes],
        "coordinator_init_sql": init_sql,
    }


def _credential_env(topology: Topology, port: int) -> dict[str, str]:
    creds = topology.credentials
    env = {
        "POSTGRES_USER": creds.user,
        "POSTGRES_PASSWORD": creds.password,
        "POSTGRES_DB": creds.database,
        "PGUSER": creds.user,
        "PGPASSWORD": creds.password,
        "PGDATABASE": creds.database,
    }
    # Worker-only topologies may attach with credentials managed elsewhere
    env = {k: v for k, v in env.items() if v}
    env["PGPORT"] = str(port)
    return env


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def render_coordinator_init_sql(topology: Topology) -> Optional[str]:
    """
    Render the coordinator's first-boot SQL.

    Shard count and replication factor are passed through to the engine;
    nothing here interprets them.
    """
    coordinator = topology.coordinator
    if coordinator is None:
        return None
    shard_count = topology.options.shard_count_hint or DEFAULT_SHARD_COUNT
    lines = [
        "-- Generated by shardctl; runs inside the coordinator on first init",
        "CREATE EXTENSION IF NOT EXISTS citus;",
        f"SELECT citus_set_coordinator_host({_quote_literal(coordinator.host)}, {coordinator.port});",
        f"ALTER SYSTEM SET citus.shard_count = {int(shard_count)};",
        f"ALTER SYSTEM SET citus.shard_replication_factor = {int(topology.options.replication_factor)};",
        "SELECT pg_reload_conf();",
    ]
    return "\n".join(lines) + "\n"


def generate(topology: Topology, image: str = DEFAULT_IMAGE) -> GeneratedPlan:
    """
    Generate node definitions for a validated topology.

    Args:
        topology: Topology that already passed validate()
        image: Container image for every node

    Returns:
        GeneratedPlan with nodes and content hash

    Raises:
        GeneratorError: If the output is internally inconsistent (logic defect)
    """
    nodes: list[NodeDefinition] = []

    coordinator = topology.coordinator
    if coordinator is not None:
        env = _credential_env(topology, coordinator.port)
        env["SHARDCTL_ROLE"] = NodeRole.COORDINATOR.value
        env["CITUS_SHARD_REPLICATION_FACTOR"] = str(topology.options.replication_factor)
        if topology.options.shard_count_hint is not None:
            env["CITUS_SHARD_COUNT_HINT"] = str(topology.options.shard_count_hint)
        nodes.append(NodeDefinition(
            name=COORDINATOR_NAME,
            role=NodeRole.COORDINATOR,
            host=coordinator.host,
            port=coordinator.port,
            image=image,
            environment=env,
        ))

    for worker in topology.resolved_workers():
        env = _credential_env(topology, worker.port)
        env["SHARDCTL_ROLE"] = NodeRole.WORKER.value
        env["SHARDCTL_WORKER_INDEX"] = str(worker.index)
        nodes.append(NodeDefinition(
            name=worker_name(worker.index),
            role=NodeRole.WORKER,
            host=worker.host,
            port=worker.port,
            image=image,
            environment=env,
            index=worker.index,
        ))

    names = [n.name for n in nodes]
    if len(names) != len(set(names)):
        raise GeneratorError(f"Duplicate node names generated: {names}")
    identities = [n.identity for n in nodes]
    if len(identities) != len(set(identities)):
        raise GeneratorError(f"Duplicate node identities generated: {identities}")

    init_sql = render_coordinator_init_sql(topology)
    frozen = tuple(nodes)
    return GeneratedPlan(
        nodes=frozen,
        coordinator_init_sql=init_sql,
        content_hash=hash_canonical(_plan_body(frozen, init_sql)),
    )


def diff_plans(old: Optional[GeneratedPlan], new: GeneratedPlan) -> PlanDiff:
    """
    Diff two plans by node name.

    Args:
        old: Last-applied plan (None means nothing is known to be running)
        new: Freshly generated plan

    Returns:
        PlanDiff with added nodes in new-plan order and removed nodes in old-plan order
    """
    old_nodes = {n.name: n for n in old.nodes} if old is not None else {}
    new_names = {n.name for n in new.nodes}

    added: list[NodeDefinition] = []
    removed: list[NodeDefinition] = []
    unchanged: list[NodeDefinition] = []

    for node in new.nodes:
        previous = old_nodes.get(node.name)
        if previous is None:
            added.append(node)
        elif previous == node:
            unchanged.append(node)
        else:
            removed.append(previous)
            added.append(node)

    if old is not None:
        for node in old.nodes:
            if node.name not in new_names:
                removed.append(node)

    return PlanDiff(added=tuple(added), removed=tuple(removed), unchanged=tuple(unchanged))


def render_compose(plan: GeneratedPlan, init_sql_dir: Path = INIT_SQL_DIR) -> str:
    """
    Render a docker-compose document for a plan.

    Output is deterministic (sorted keys) so regenerating an unchanged
    topology rewrites identical bytes.
    """
    services: dict[str, Any] = {}
    for node in plan.nodes:
        service: dict[str, Any] = {
            "image": node.image,
            "hostname": node.host,
            "command": ["postgres", "-p", str(node.port)],
            "environment": {k: node.environment[k] for k in sorted(node.environment)},
            "ports": [f"{node.port}:{node.port}"],
            "labels": {
                "shardctl.role": node.role.value,
                "shardctl.name": node.name,
                "shardctl.host": node.host,
                "shardctl.port": str(node.port),
                "shardctl.fingerprint": node.fingerprint,
            },
            "healthcheck": {
                "test": ["CMD-SHELL", f"pg_isready -p {node.port}"],
                "interval": HEALTHCHECK_INTERVAL,
                "retries": HEALTHCHECK_RETRIES,
            },
        }
        if node.index is not None:
            service["labels"]["shardctl.index"] = str(node.index)
        if node.role == NodeRole.COORDINATOR and plan.coordinator_init_sql is not None:
            service["volumes"] = [f"./{init_sql_dir.as_posix()}:/docker-entrypoint-initdb.d:ro"]
        services[node.name] = service

    document = {"services": services}
    return yaml.safe_dump(document, sort_keys=True, default_flow_style=False)


def write_artifacts(plan: GeneratedPlan, compose_path: Path) -> list[Path]:
    """
    Write the compose file and coordinator init SQL next to it.

    Files whose content would not change are left untouched.

    Returns:
        Paths that were (re)written
    """
    written: list[Path] = []

    targets: list[tuple[Path, str]] = [(compose_path, render_compose(plan))]
    if plan.coordinator_init_sql is not None:
        sql_path = compose_path.parent / INIT_SQL_DIR / INIT_SQL_FILENAME
        targets.append((sql_path, plan.coordinator_init_sql))

    for path, content in targets:
        if path.exists() and path.read_text() == content:
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        written.append(path)

    return written
