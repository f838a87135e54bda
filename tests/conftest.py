import threading
from collections import Counter

import pytest

from shardctl.config import ShardctlConfig
from shardctl.controller import LifecycleController
from shardctl.coordinator import InMemoryCoordinator
from shardctl.health import HealthProber, ProbeStatus
from shardctl.schemas import ClusterOptions, CoordinatorSpec, Credentials, Topology, WorkerSpec
from shardctl.supervisor import InMemorySupervisor
from shardctl.timing import TimeSource


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class CountingSupervisor(InMemorySupervisor):
    """InMemorySupervisor that counts start/stop calls."""

    def __init__(self):
        super().__init__()
        self.calls: Counter = Counter()
        self._calls_lock = threading.Lock()

    def start(self, node):
        with self._calls_lock:
            self.calls["start"] += 1
        return super().start(node)

    def stop(self, handle):
        with self._calls_lock:
            self.calls["stop"] += 1
        return super().stop(handle)


def make_topology(workers: int = 2, coordinator: bool = True, **options) -> Topology:
    """Coordinator (optional) + workers 1..N on their service names with the default port rule."""
    return Topology(
        coordinator=CoordinatorSpec() if coordinator else None,
        workers=tuple(WorkerSpec(index=i) for i in range(1, workers + 1)),
        credentials=Credentials(user="postgres", password="secret", database="postgres"),
        options=ClusterOptions(**options),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def time_source(clock):
    return TimeSource(clock=clock, sleep=clock.sleep)


@pytest.fixture
def supervisor():
    return CountingSupervisor()


@pytest.fixture
def coordinator():
    return InMemoryCoordinator()


@pytest.fixture
def ready_prober():
    return HealthProber(check=lambda node, timeout_s: ProbeStatus.READY)


@pytest.fixture
def test_config():
    return ShardctlConfig(log_format="structured")


@pytest.fixture
def make_controller(supervisor, coordinator, ready_prober, time_source, test_config):
    """Factory so tests can build a second controller over the same cluster (restart)."""

    def _make(**overrides) -> LifecycleController:
        kwargs = {
            "supervisor": supervisor,
            "coordinator": coordinator,
            "config": test_config,
            "prober": ready_prober,
            "time_source": time_source,
        }
        kwargs.update(overrides)
        return LifecycleController(**kwargs)

    return _make


@pytest.fixture
def controller(make_controller):
    return make_controller()


@pytest.fixture
def topology_factory():
    return make_topology
