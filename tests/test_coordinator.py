"""Tests for coordinator adapters.

Tests cover:
- InMemoryCoordinator semantics the orchestrator relies on
- CitusCoordinator SQL and error classification (psycopg.connect faked)
"""

import psycopg
import pytest
from psycopg import errors as pg_errors

from shardctl.coordinator import (
    NO_JOB,
    CitusCoordinator,
    CoordinatorClient,
    InMemoryCoordinator,
    RebalanceStatus,
)
from shardctl.errors import (
    CoordinatorError,
    RegistrationConflictError,
    RegistrationTransientError,
    TransientError,
)


class FakeCursor:
    def __init__(self, db):
        self.db = db
        self.description = None
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=()):
        self.db.statements.append((" ".join(sql.split()), tuple(params)))
        for marker, response in reversed(list(self.db.responses.items())):
            if marker in sql:
                if isinstance(response, Exception):
                    raise response
                self._rows = list(response)
                self.description = [("column",)]
                return
        self._rows = [(None,)]
        self.description = [("column",)]

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, db):
        self.db = db

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def cursor(self):
        return FakeCursor(self.db)


class FakeDatabase:
    """Scripted stand-in for a Citus coordinator: SQL substring -> rows or exception.

    The most recently scripted matching substring wins.
    """

    def __init__(self):
        self.statements: list[tuple[str, tuple]] = []
        self.responses: dict[str, object] = {"pg_dist_node": []}
        self.connect_error = None
        self.conninfo = None

    def connect(self, conninfo, autocommit=False):
        self.conninfo = conninfo
        if self.connect_error is not None:
            raise self.connect_error
        return FakeConnection(self)

    def sql(self):
        return [s for s, _params in self.statements]


@pytest.fixture
def db(monkeypatch):
    fake = FakeDatabase()
    monkeypatch.setattr(psycopg, "connect", fake.connect)
    return fake


@pytest.fixture
def citus():
    return CitusCoordinator("coordinator", 5432, "postgres", "secret", "postgres")


class TestProtocol:
    """Both adapters satisfy CoordinatorClient."""

    def test_in_memory(self):
        assert isinstance(InMemoryCoordinator(), CoordinatorClient)

    def test_citus(self, citus):
        assert isinstance(citus, CoordinatorClient)


class TestInMemoryCoordinator:
    """Tests for InMemoryCoordinator."""

    def test_register_is_idempotent(self):
        coordinator = InMemoryCoordinator()

        coordinator.register_node("localhost", 9701)
        coordinator.register_node("localhost", 9701)

        assert [n.identity for n in coordinator.list_nodes()] == ["localhost:9701"]

    def test_unplaced_shards_go_to_first_worker(self):
        coordinator = InMemoryCoordinator(total_shards=8)

        coordinator.register_node("localhost", 9701)
        coordinator.register_node("localhost", 9702)

        assert coordinator.shard_count("localhost", 9701) == 8
        assert coordinator.shard_count("localhost", 9702) == 0

    def test_rebalance_evens_shards(self):
        coordinator = InMemoryCoordinator(total_shards=9)
        for port in (9701, 9702, 9703):
            coordinator.register_node("localhost", port)

        job_id = coordinator.rebalance("by_shard_count")

        assert job_id == "1"
        assert coordinator.rebalance_status(job_id) == RebalanceStatus.DONE
        assert [coordinator.shard_count("localhost", p) for p in (9701, 9702, 9703)] == [3, 3, 3]

    def test_rebalance_without_workers(self):
        coordinator = InMemoryCoordinator()

        assert coordinator.rebalance("by_shard_count") == NO_JOB
        assert coordinator.rebalance_status(NO_JOB) == RebalanceStatus.DONE

    def test_unknown_job(self):
        with pytest.raises(CoordinatorError):
            InMemoryCoordinator().rebalance_status("42")

    def test_remove_refuses_while_holding_shards(self):
        coordinator = InMemoryCoordinator()
        coordinator.seed("localhost", 9701, shards=3)

        with pytest.raises(CoordinatorError, match="3 shard placement"):
            coordinator.remove_node("localhost", 9701)

        coordinator.remove_node("localhost", 9701, force=True)
        assert coordinator.get("localhost", 9701) is None

    def test_drain_without_targets_keeps_shards(self):
        coordinator = InMemoryCoordinator()
        coordinator.seed("localhost", 9701, shards=3)

        coordinator.drain_node("localhost", 9701)

        assert coordinator.shard_count("localhost", 9701) == 3

    def test_seed_is_not_counted(self):
        coordinator = InMemoryCoordinator()
        coordinator.seed("localhost", 9701)

        assert sum(coordinator.calls.values()) == 0
        assert coordinator.mutating_calls == 0

    def test_scripted_transient_failures(self):
        coordinator = InMemoryCoordinator()
        coordinator.transient_failures["localhost:9701"] = 1

        with pytest.raises(RegistrationTransientError):
            coordinator.register_node("localhost", 9701)
        coordinator.register_node("localhost", 9701)

        assert coordinator.get("localhost", 9701).is_active_primary


class TestCitusCoordinator:
    """Tests for CitusCoordinator against a scripted connection."""

    def test_conninfo(self, citus, db):
        citus.list_nodes()

        assert "application_name=shardctl" in db.conninfo
        assert "port=5432" in db.conninfo

    def test_list_nodes(self, citus, db):
        db.responses["pg_dist_node"] = [
            ("coordinator", 5432, True, "coordinator"),
            ("worker-1", 9701, True, "primary"),
            ("worker-2", 9702, False, "primary"),
        ]

        nodes = citus.list_nodes()

        assert [n.identity for n in nodes] == ["coordinator:5432", "worker-1:9701", "worker-2:9702"]
        assert nodes[1].is_active_primary
        assert not nodes[2].is_active_primary

    def test_register_new_node(self, citus, db):
        citus.register_node("worker-1", 9701)

        assert ("SELECT citus_add_node(%s, %s)", ("worker-1", 9701)) in db.statements
        assert not any("citus_activate_node" in s for s in db.sql())

    def test_register_reactivates_disabled_node(self, citus, db):
        db.responses["pg_dist_node"] = [("worker-1", 9701, False, "primary")]

        citus.register_node("worker-1", 9701)

        assert any("citus_activate_node" in s for s in db.sql())

    def test_register_conflicting_role(self, citus, db):
        db.responses["pg_dist_node"] = [("worker-1", 9701, True, "secondary")]

        with pytest.raises(RegistrationConflictError):
            citus.register_node("worker-1", 9701)

        assert not any("citus_add_node" in s for s in db.sql())

    def test_register_unique_violation_is_conflict(self, citus, db):
        db.responses["citus_add_node"] = pg_errors.UniqueViolation("duplicate key value")

        with pytest.raises(RegistrationConflictError):
            citus.register_node("worker-1", 9701)

    def test_register_connection_failure_is_transient(self, citus, db):
        db.connect_error = psycopg.OperationalError("connection refused")

        with pytest.raises(RegistrationTransientError):
            citus.register_node("worker-1", 9701)

    def test_other_connection_failures_are_transient(self, citus, db):
        db.connect_error = psycopg.OperationalError("connection refused")

        with pytest.raises(TransientError) as exc_info:
            citus.shard_count("worker-1", 9701)

        assert not isinstance(exc_info.value, RegistrationTransientError)

    def test_engine_error_is_permanent(self, citus, db):
        db.responses["citus_remove_node"] = pg_errors.InsufficientPrivilege("permission denied for function citus_remove_node")

        with pytest.raises(CoordinatorError, match="remove failed"):
            citus.remove_node("worker-1", 9701)

    def test_drain(self, citus, db):
        citus.drain_node("worker-1", 9701)

        statements = db.sql()
        assert "shouldhaveshards" in statements[0]
        assert "drain_only := true" in statements[1]

    def test_forced_remove_disables_first(self, citus, db):
        citus.remove_node("worker-1", 9701, force=True)

        statements = db.sql()
        assert "citus_disable_node" in statements[0]
        assert "citus_remove_node" in statements[1]

    def test_shard_count(self, citus, db):
        db.responses["pg_dist_placement"] = [(7,)]

        assert citus.shard_count("worker-1", 9701) == 7

    def test_rebalance(self, citus, db):
        db.responses["citus_rebalance_start"] = [(12,)]

        assert citus.rebalance("by_disk_size") == "12"
        assert db.statements[-1][1] == ("by_disk_size",)

    def test_rebalance_nothing_to_move(self, citus, db):
        db.responses["citus_rebalance_start"] = [(None,)]

        assert citus.rebalance("by_shard_count") == NO_JOB

    @pytest.mark.parametrize("state, expected", [
        ("scheduled", RebalanceStatus.PENDING),
        ("running", RebalanceStatus.RUNNING),
        ("finished", RebalanceStatus.DONE),
        ("failed", RebalanceStatus.FAILED),
        ("cancelled", RebalanceStatus.FAILED),
    ])
    def test_rebalance_status(self, citus, db, state, expected):
        db.responses["pg_dist_background_job"] = [(state,)]

        assert citus.rebalance_status("12") == expected

    def test_rebalance_status_unknown_job(self, citus, db):
        db.responses["pg_dist_background_job"] = []

        with pytest.raises(CoordinatorError, match="Unknown rebalance job"):
            citus.rebalance_status("12")

    def test_no_job_needs_no_connection(self, citus, db):
        assert citus.rebalance_status(NO_JOB) == RebalanceStatus.DONE
        assert db.statements == []
