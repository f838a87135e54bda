"""Tests for the node definition generator.

Tests cover:
- Determinism (byte-identical plans, identical hashes)
- Naming, ordering and the port rule
- Coordinator init SQL
- Plan diffs
- Compose rendering and artifact writing
"""

import yaml

from shardctl.generator import (
    DEFAULT_SHARD_COUNT,
    INIT_SQL_DIR,
    INIT_SQL_FILENAME,
    PLAN_VERSION,
    diff_plans,
    generate,
    render_compose,
    render_coordinator_init_sql,
    write_artifacts,
)
from shardctl.schemas import NodeRole, Topology, WorkerSpec


class TestGenerate:
    """Tests for generate()."""

    def test_deterministic(self, topology_factory):
        """Equal topologies produce byte-identical plans and hashes."""
        first = generate(topology_factory(workers=3, shard_count_hint=32))
        second = generate(topology_factory(workers=3, shard_count_hint=32))

        assert first.serialize() == second.serialize()
        assert first.content_hash == second.content_hash
        assert first.content_hash.startswith("sha256:")

    def test_worker_order_in_topology_does_not_matter(self, topology_factory):
        topology = topology_factory(workers=2)
        reversed_topology = Topology(
            coordinator=topology.coordinator,
            workers=tuple(reversed(topology.workers)),
            credentials=topology.credentials,
            options=topology.options,
        )

        assert generate(topology).content_hash == generate(reversed_topology).content_hash

    def test_any_change_changes_hash(self, topology_factory):
        assert generate(topology_factory(workers=2)).content_hash != generate(topology_factory(workers=3)).content_hash

    def test_coordinator_first_then_workers_by_index(self, topology_factory):
        plan = generate(topology_factory(workers=3))

        assert [n.name for n in plan.nodes] == ["coordinator", "worker-1", "worker-2", "worker-3"]
        assert plan.nodes[0].role == NodeRole.COORDINATOR
        assert [n.index for n in plan.workers] == [1, 2, 3]

    def test_ports_follow_port_rule(self, topology_factory):
        plan = generate(topology_factory(workers=2, port_base=9800))

        assert plan.coordinator.port == 5432
        assert [n.port for n in plan.workers] == [9801, 9802]

    def test_depends_on_always_empty(self, topology_factory):
        plan = generate(topology_factory(workers=2))

        assert all(n.depends_on == () for n in plan.nodes)

    def test_environment_carries_credentials_and_role(self, topology_factory):
        plan = generate(topology_factory(workers=1, replication_factor=2, shard_count_hint=48))

        coordinator_env = plan.coordinator.environment
        worker_env = plan.get("worker-1").environment
        assert coordinator_env["POSTGRES_PASSWORD"] == "secret"
        assert coordinator_env["CITUS_SHARD_REPLICATION_FACTOR"] == "2"
        assert coordinator_env["CITUS_SHARD_COUNT_HINT"] == "48"
        assert worker_env["SHARDCTL_ROLE"] == "worker"
        assert worker_env["SHARDCTL_WORKER_INDEX"] == "1"
        assert worker_env["PGPORT"] == "9701"

    def test_worker_only_topology(self, topology_factory):
        plan = generate(topology_factory(workers=2, coordinator=False))

        assert plan.coordinator is None
        assert plan.coordinator_init_sql is None
        assert [n.name for n in plan.nodes] == ["worker-1", "worker-2"]

    def test_image_is_applied_to_every_node(self, topology_factory):
        plan = generate(topology_factory(workers=2), image="citusdata/citus:13.0")

        assert {n.image for n in plan.nodes} == {"citusdata/citus:13.0"}

    def test_plan_body(self, topology_factory):
        body = generate(topology_factory(workers=1)).to_dict()

        assert body["plan_version"] == PLAN_VERSION
        assert len(body["nodes"]) == 2


class TestCoordinatorInitSql:
    """Tests for render_coordinator_init_sql()."""

    def test_defaults(self, topology_factory):
        sql = render_coordinator_init_sql(topology_factory(workers=0))

        assert "CREATE EXTENSION IF NOT EXISTS citus;" in sql
        assert "SELECT citus_set_coordinator_host('coordinator', 5432);" in sql
        assert f"ALTER SYSTEM SET citus.shard_count = {DEFAULT_SHARD_COUNT};" in sql
        assert "ALTER SYSTEM SET citus.shard_replication_factor = 2;" in sql

    def test_shard_count_hint_passed_through(self, topology_factory):
        sql = render_coordinator_init_sql(topology_factory(workers=0, shard_count_hint=128))

        assert "citus.shard_count = 128;" in sql

    def test_no_coordinator(self, topology_factory):
        assert render_coordinator_init_sql(topology_factory(coordinator=False)) is None


class TestDiffPlans:
    """Tests for diff_plans()."""

    def test_first_plan_adds_everything(self, topology_factory):
        plan = generate(topology_factory(workers=2))

        diff = diff_plans(None, plan)

        assert [n.name for n in diff.added] == ["coordinator", "worker-1", "worker-2"]
        assert diff.removed == ()

    def test_grow(self, topology_factory):
        old = generate(topology_factory(workers=2))
        new = generate(topology_factory(workers=3))

        diff = diff_plans(old, new)

        assert [n.name for n in diff.added] == ["worker-3"]
        assert diff.removed == ()
        assert [n.name for n in diff.unchanged] == ["coordinator", "worker-1", "worker-2"]

    def test_shrink(self, topology_factory):
        old = generate(topology_factory(workers=3))
        new = generate(topology_factory(workers=1))

        diff = diff_plans(old, new)

        assert diff.added == ()
        assert [n.name for n in diff.removed] == ["worker-2", "worker-3"]

    def test_changed_node_is_removed_and_added(self, topology_factory):
        topology = topology_factory(workers=2)
        moved = topology.without_worker(2).with_worker(WorkerSpec(2, port=9900))

        diff = diff_plans(generate(topology), generate(moved))

        assert [n.port for n in diff.removed] == [9702]
        assert [n.port for n in diff.added] == [9900]

    def test_identical_plans(self, topology_factory):
        plan = generate(topology_factory(workers=2))

        assert diff_plans(plan, generate(topology_factory(workers=2))).is_empty


class TestArtifacts:
    """Tests for compose rendering and artifact writing."""

    def test_render_compose_is_deterministic(self, topology_factory):
        plan = generate(topology_factory(workers=2))

        assert render_compose(plan) == render_compose(generate(topology_factory(workers=2)))

    def test_render_compose_services(self, topology_factory):
        plan = generate(topology_factory(workers=2))

        services = yaml.safe_load(render_compose(plan))["services"]

        assert sorted(services) == ["coordinator", "worker-1", "worker-2"]
        worker = services["worker-2"]
        assert worker["command"] == ["postgres", "-p", "9702"]
        assert worker["labels"]["shardctl.index"] == "2"
        assert worker["labels"]["shardctl.fingerprint"] == plan.get("worker-2").fingerprint
        assert "pg_isready -p 9702" in worker["healthcheck"]["test"][1]
        assert "volumes" not in worker
        assert services["coordinator"]["volumes"] == [
            "./initdb/coordinator:/docker-entrypoint-initdb.d:ro"
        ]

    def test_workers_reachable_by_service_name(self, topology_factory):
        """The coordinator registers workers under names resolvable on the compose network."""
        plan = generate(topology_factory(workers=2))

        services = yaml.safe_load(render_compose(plan))["services"]

        assert {name: s["hostname"] for name, s in services.items()} == {
            "coordinator": "coordinator",
            "worker-1": "worker-1",
            "worker-2": "worker-2",
        }
        assert [n.identity for n in plan.workers] == ["worker-1:9701", "worker-2:9702"]

    def test_write_artifacts_only_rewrites_changes(self, tmp_path, topology_factory):
        plan = generate(topology_factory(workers=1))
        compose_path = tmp_path / "docker-compose.yml"

        first = write_artifacts(plan, compose_path)
        second = write_artifacts(plan, compose_path)

        sql_path = tmp_path / INIT_SQL_DIR / INIT_SQL_FILENAME
        assert first == [compose_path, sql_path]
        assert second == []
        assert sql_path.read_text() == plan.coordinator_init_sql
