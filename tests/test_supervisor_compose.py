"""Tests for the docker compose supervisor (subprocess runner faked)."""

import io
import json
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from shardctl.controller import LifecycleController
from shardctl.errors import SupervisorError
from shardctl.generator import generate, write_artifacts
from shardctl.schemas import Overall, WorkerSpec
from shardctl.supervisor import (
    ComposeSupervisor,
    InMemorySupervisor,
    NodeHandle,
    NodeStatus,
    NodeSupervisor,
)
from shardctl.supervisor.compose import LOG_CHUNK_SIZE


def _subcommand(command):
    # docker compose -f FILE -p PROJECT <subcommand> ... | docker <subcommand> ...
    return command[6] if command[1] == "compose" else command[1]


class FakeRunner:
    """Records docker invocations and answers by subcommand."""

    def __init__(self):
        self.commands: list[list[str]] = []
        self.outputs: dict[str, str] = {}
        self.failures: dict[str, tuple[int, str]] = {}

    def __call__(self, command, capture_output=False, text=False, check=False):
        self.commands.append(command)
        subcommand = _subcommand(command)
        if subcommand in self.failures:
            code, stderr = self.failures[subcommand]
            return subprocess.CompletedProcess(command, code, stdout="", stderr=stderr)
        return subprocess.CompletedProcess(command, 0, stdout=self.outputs.get(subcommand, ""), stderr="")


class ComposeFileRunner(FakeRunner):
    """Answers like docker compose would for the services of the compose file on disk."""

    def __init__(self):
        super().__init__()
        self.running: dict[str, str] = {}
        self.started_specs: dict[str, dict] = {}

    @staticmethod
    def _services(command) -> dict:
        path = Path(command[3])
        if not path.exists():
            return {}
        return yaml.safe_load(path.read_text())["services"]

    def __call__(self, command, capture_output=False, text=False, check=False):
        self.commands.append(command)
        subcommand = _subcommand(command)
        services = self._services(command) if command[1] == "compose" else {}

        def done(stdout="", code=0, stderr=""):
            return subprocess.CompletedProcess(command, code, stdout=stdout, stderr=stderr)

        if subcommand == "up":
            name = command[-1]
            if name not in services:
                return done(code=1, stderr=f"no such service: {name}")
            self.running[name] = f"id-{name}"
            self.started_specs[name] = services[name]
            return done()
        if subcommand == "ps" and "-q" in command:
            return done(self.running.get(command[-1], "") + "\n")
        if subcommand == "ps":
            names = [command[-1]] if command[-1] in services else sorted(self.running)
            entries = [
                json.dumps({
                    "ID": self.running[name],
                    "Service": name,
                    "State": "running",
                    "Labels": self.started_specs[name]["labels"],
                })
                for name in names
                if name in self.running and name in services
            ]
            return done("\n".join(entries))
        if subcommand == "rm":
            self.running = {n: cid for n, cid in self.running.items() if cid != command[-1]}
        return done()


class FakePopen:
    """subprocess.Popen stand-in for streamed logs."""

    def __init__(self, output: bytes, returncode: int = 0):
        self.output = output
        self.returncode = returncode
        self.commands: list[list[str]] = []
        self.process = None

    def __call__(self, command, stdout=None, stderr=None):
        self.commands.append(command)
        self.process = SimpleNamespace(stdout=io.BytesIO(self.output), wait=lambda: self.returncode)
        return self.process


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def supervisor(runner):
    return ComposeSupervisor(Path("/srv/cluster/docker-compose.yml"), project="analytics", runner=runner)


@pytest.fixture
def plan(topology_factory):
    return generate(topology_factory(workers=2))


def _handle(node):
    return NodeHandle(node.name, f"id-{node.name}", node.role, node.host, node.port, node.index, node.fingerprint)


def _ps_entry(node, state="running"):
    labels = {
        "shardctl.role": node.role.value,
        "shardctl.name": node.name,
        "shardctl.host": node.host,
        "shardctl.port": str(node.port),
        "shardctl.fingerprint": node.fingerprint,
        "com.docker.compose.project": "analytics",
    }
    if node.index is not None:
        labels["shardctl.index"] = str(node.index)
    return {
        "ID": f"id-{node.name}",
        "Service": node.name,
        "State": state,
        "Labels": ",".join(f"{k}={v}" for k, v in sorted(labels.items())),
    }


class TestComposeSupervisor:
    """Tests for ComposeSupervisor."""

    def test_satisfies_protocol(self, supervisor):
        assert isinstance(supervisor, NodeSupervisor)
        assert isinstance(InMemorySupervisor(), NodeSupervisor)

    def test_start(self, supervisor, runner, plan):
        runner.outputs["ps"] = "abc123def456789\n"
        node = plan.get("worker-1")

        handle = supervisor.start(node)

        assert runner.commands[0] == [
            "docker", "compose", "-f", "/srv/cluster/docker-compose.yml", "-p", "analytics",
            "up", "-d", "--no-deps", "worker-1",
        ]
        assert handle.node_id == "abc123def456789"
        assert handle.fingerprint == node.fingerprint
        assert handle.identity == "worker-1:9701"

    def test_start_without_container(self, supervisor, runner, plan):
        with pytest.raises(SupervisorError, match="did not produce a container"):
            supervisor.start(plan.get("worker-1"))

    def test_failure_carries_stderr(self, supervisor, runner, plan):
        runner.failures["up"] = (1, "no such image: citusdata/citus:12.1")

        with pytest.raises(SupervisorError) as exc_info:
            supervisor.start(plan.get("worker-1"))

        assert "exit code 1" in str(exc_info.value)
        assert "no such image" in str(exc_info.value)

    def test_missing_docker_binary(self, plan):
        def missing(*args, **kwargs):
            raise FileNotFoundError("docker")

        supervisor = ComposeSupervisor(Path("docker-compose.yml"), runner=missing)

        with pytest.raises(SupervisorError, match="Could not run docker"):
            supervisor.start(plan.get("worker-1"))

    def test_stop_removes_container_by_id(self, supervisor, runner, plan):
        runner.outputs["ps"] = "abc\n"
        handle = supervisor.start(plan.get("worker-2"))

        supervisor.stop(handle)

        assert runner.commands[-1] == ["docker", "rm", "--force", "abc"]

    def test_stop_without_container_id_uses_service(self, supervisor, runner, plan):
        node = plan.get("worker-2")
        handle = NodeHandle(node.name, "", node.role, node.host, node.port, node.index)

        supervisor.stop(handle)

        assert runner.commands[-1][6:] == ["rm", "--stop", "--force", "worker-2"]

    def test_stop_failure(self, supervisor, runner, plan):
        runner.failures["rm"] = (1, "Error response from daemon: conflict")

        with pytest.raises(SupervisorError, match="docker rm worker-1 failed with exit code 1"):
            supervisor.stop(_handle(plan.get("worker-1")))

    def test_apply_writes_compose_file(self, tmp_path, runner, plan):
        compose_file = tmp_path / "deploy" / "docker-compose.yml"
        supervisor = ComposeSupervisor(compose_file, runner=runner)

        supervisor.apply(plan)

        services = yaml.safe_load(compose_file.read_text())["services"]
        assert sorted(services) == ["coordinator", "worker-1", "worker-2"]
        assert (tmp_path / "deploy" / "initdb" / "coordinator" / "01_citus.sql").exists()
        assert runner.commands == []

    def test_apply_unwritable_location(self, tmp_path, runner, plan):
        blocker = tmp_path / "deploy"
        blocker.write_text("not a directory")
        supervisor = ComposeSupervisor(blocker / "docker-compose.yml", runner=runner)

        with pytest.raises(SupervisorError, match="Could not write"):
            supervisor.apply(plan)

    def test_logs_streamed_in_chunks(self, runner, plan):
        output = b"x" * (LOG_CHUNK_SIZE + 10)
        popen = FakePopen(output)
        supervisor = ComposeSupervisor(Path("docker-compose.yml"), project="analytics", runner=runner, popen=popen)

        chunks = list(supervisor.logs(_handle(plan.get("worker-1"))))

        assert [len(c) for c in chunks] == [LOG_CHUNK_SIZE, 10]
        assert popen.commands[0][6:] == ["logs", "--no-color", "worker-1"]
        assert popen.process.stdout.closed

    def test_logs_failure(self, runner, plan):
        popen = FakePopen(b"no such service: worker-1\n", returncode=1)
        supervisor = ComposeSupervisor(Path("docker-compose.yml"), runner=runner, popen=popen)

        with pytest.raises(SupervisorError, match="logs failed with exit code 1"):
            list(supervisor.logs(_handle(plan.get("worker-1"))))

    def test_logs_missing_docker_binary(self, runner, plan):
        def missing(*args, **kwargs):
            raise FileNotFoundError("docker")

        supervisor = ComposeSupervisor(Path("docker-compose.yml"), runner=runner, popen=missing)

        with pytest.raises(SupervisorError, match="Could not run docker"):
            list(supervisor.logs(_handle(plan.get("worker-1"))))

    @pytest.mark.parametrize("state, expected", [
        ("running", NodeStatus.RUNNING),
        ("exited", NodeStatus.STOPPED),
        ("restarting", NodeStatus.UNKNOWN),
    ])
    def test_status(self, supervisor, runner, plan, state, expected):
        node = plan.get("worker-1")
        runner.outputs["ps"] = json.dumps(_ps_entry(node, state))

        assert supervisor.status(_handle(node)) == expected
        assert runner.commands[-1][6:] == ["ps", "--all", "--format", "json", "worker-1"]

    def test_status_of_absent_container(self, supervisor, runner, plan):
        assert supervisor.status(_handle(plan.get("worker-1"))) == NodeStatus.STOPPED

    def test_list_nodes_rebuilds_handles(self, supervisor, runner, plan):
        lines = [json.dumps(_ps_entry(n)) for n in plan.nodes]
        lines.append(json.dumps({"ID": "x", "Service": "pgadmin", "State": "running", "Labels": ""}))
        runner.outputs["ps"] = "\n".join(lines)

        handles = supervisor.list_nodes()

        assert [h.name for h in handles] == ["coordinator", "worker-1", "worker-2"]
        assert handles[0].index is None
        assert handles[2].index == 2
        assert handles[2].port == 9702
        assert [h.fingerprint for h in handles] == [n.fingerprint for n in plan.nodes]

    def test_list_nodes_json_array(self, supervisor, runner, plan):
        runner.outputs["ps"] = json.dumps([_ps_entry(n) for n in plan.nodes])

        assert len(supervisor.list_nodes()) == 3

    def test_list_nodes_unreadable_output(self, supervisor, runner):
        runner.outputs["ps"] = "{not json"

        with pytest.raises(SupervisorError, match="Unreadable"):
            supervisor.list_nodes()



class TestLifecycleThroughCompose:
    """Lifecycle operations where only services in the compose file can start."""

    @pytest.fixture
    def compose_runner(self):
        return ComposeFileRunner()

    @pytest.fixture
    def compose_file(self, tmp_path, topology_factory):
        path = tmp_path / "docker-compose.yml"
        write_artifacts(generate(topology_factory(workers=2)), path)
        return path

    @pytest.fixture
    def make_compose_controller(self, compose_file, compose_runner, coordinator, ready_prober, time_source, test_config):
        def _make(topology):
            return LifecycleController(
                ComposeSupervisor(compose_file, project="analytics", runner=compose_runner),
                coordinator,
                config=test_config,
                prober=ready_prober,
                time_source=time_source,
                topology=topology,
            )
        return _make

    def test_add_worker_missing_from_existing_file(
        self, make_compose_controller, compose_runner, compose_file, coordinator, topology_factory,
    ):
        controller = make_compose_controller(topology_factory(workers=2))

        report = controller.add_worker(WorkerSpec(index=3))

        assert report.overall == Overall.CONVERGED, report.to_dict()
        assert "worker-3" in yaml.safe_load(compose_file.read_text())["services"]
        assert compose_runner.running["worker-3"] == "id-worker-3"
        assert coordinator.get("worker-3", 9703).is_active_primary

    def test_resize_grow_then_shrink(
        self, make_compose_controller, compose_runner, compose_file, coordinator, topology_factory,
    ):
        controller = make_compose_controller(topology_factory(workers=2))
        assert controller.resize(4).overall == Overall.CONVERGED

        report = controller.resize(2)

        assert report.overall == Overall.CONVERGED, report.to_dict()
        assert sorted(yaml.safe_load(compose_file.read_text())["services"]) == ["coordinator", "worker-1", "worker-2"]
        assert sorted(compose_runner.running) == ["coordinator", "worker-1", "worker-2"]
        assert coordinator.get("worker-4", 9704) is None

    def test_changed_definition_started_from_new_spec(
        self, make_compose_controller, compose_runner, topology_factory,
    ):
        topology = topology_factory(workers=2)
        controller = make_compose_controller(topology)
        controller.converge(topology)
        moved = topology.without_worker(2).with_worker(WorkerSpec(index=2, port=9900))

        report = controller.converge(moved)

        assert report.overall == Overall.CONVERGED, report.to_dict()
        assert compose_runner.started_specs["worker-2"]["command"] == ["postgres", "-p", "9900"]

    def test_remove_worker_rewrites_file(
        self, make_compose_controller, compose_runner, compose_file, topology_factory,
    ):
        topology = topology_factory(workers=2)
        controller = make_compose_controller(topology)
        controller.converge(topology)

        report = controller.remove_worker(2)

        assert report.overall == Overall.CONVERGED, report.to_dict()
        assert "worker-2" not in yaml.safe_load(compose_file.read_text())["services"]
        assert "worker-2" not in compose_runner.running
