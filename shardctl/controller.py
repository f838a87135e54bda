"""
Lifecycle controller - Converge, AddWorker, RemoveWorker, Resize, Rebalance.

Converge flow:
1. Validate the topology (invalid -> rejected report, nothing touched)
2. Generate the plan; an unchanged content hash means nothing to do
3. Hand the plan to the supervisor (renders the compose file) so new and
   changed nodes are startable
4. Diff against the last-applied plan, or against the supervisor's live node
   list after a restart
5. Additions: coordinator first (start + probe), then workers concurrently in
   ascending index order (start + probe + register)
6. Removals, only after every addition settled: drain, deregister, stop
7. Report per-node outcomes; last_applied moves only on a converged result

The controller never retries a failed node itself: the next Converge does.
Concurrent Converge calls against one cluster are the caller's
responsibility.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from shardctl.config import ShardctlConfig
from shardctl.coordinator import CoordinatorClient, CoordinatorNode, RebalanceStatus
from shardctl.errors import (
    CoordinatorError,
    InvalidTopology,
    ProbeTimeout,
    ShardctlError,
    SupervisorError,
)
from shardctl.generator import GeneratedPlan, diff_plans, generate, worker_name
from shardctl.health import HealthProber
from shardctl.orchestrator import RegistrationOrchestrator
from shardctl.schemas import (
    NodeDefinition,
    NodeResult,
    NodeRole,
    NodeState,
    OperationReport,
    Overall,
    RegistrationState,
    Topology,
    WorkerSpec,
)
from shardctl.supervisor import NodeHandle, NodeStatus, NodeSupervisor
from shardctl.timing import BackoffPolicy, TimeSource

logger = logging.getLogger(__name__)

DEFAULT_REBALANCE_STRATEGY = "by_shard_count"
LARGE_CLUSTER_STRATEGY = "by_disk_size"

# shard_count_hint at or above which rebalancing goes by disk size
LARGE_SHARD_COUNT_HINT = 512

REMOVED = RegistrationState.REMOVED.value
REGISTERED = RegistrationState.REGISTERED.value


def choose_rebalance_strategy(shard_count_hint: Optional[int]) -> str:
    """Pick a rebalance strategy from the topology's shard count hint."""
    if shard_count_hint is not None and shard_count_hint >= LARGE_SHARD_COUNT_HINT:
        return LARGE_CLUSTER_STRATEGY
    return DEFAULT_REBALANCE_STRATEGY


def _error(e: BaseException) -> dict[str, str]:
    return {"type": type(e).__name__, "message": str(e)}


@dataclass(frozen=True)
class _Departure:
    """A node leaving the cluster: its last known definition and handle."""
    name: str
    role: NodeRole
    host: str
    port: int
    handle: Optional[NodeHandle] = None

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class _Work:
    """What one Converge has to do."""
    start: tuple[NodeDefinition, ...]
    verify: tuple[NodeDefinition, ...]
    keep: tuple[NodeDefinition, ...]
    replace: dict[str, _Departure]
    depart: tuple[_Departure, ...]


class LifecycleController:
    """
    Composes generator, supervisor, prober and orchestrator into lifecycle operations.

    Usage:
        controller = LifecycleController(ComposeSupervisor(path), CitusCoordinator(...))
        report = controller.converge(topology)
        report = controller.add_worker(WorkerSpec(index=3))
    """

    def __init__(
        self,
        supervisor: NodeSupervisor,
        coordinator: CoordinatorClient,
        config: Optional[ShardctlConfig] = None,
        prober: Optional[HealthProber] = None,
        time_source: Optional[TimeSource] = None,
        topology: Optional[Topology] = None,
    ):
        """
        Args:
            supervisor: Node process supervisor
            coordinator: Coordinator command surface
            config: Timeouts, backoff, pool size, image
            prober: Readiness prober (defaults to a psycopg check)
            time_source: Clock/sleep/cancel for every wait
            topology: Desired topology already in effect (AddWorker/RemoveWorker
                      build on it without a prior Converge in this process)
        """
        self.config = config or ShardctlConfig()
        self.supervisor = supervisor
        self.coordinator = coordinator
        self._time = time_source or TimeSource()
        self.backoff = BackoffPolicy(self.config.backoff_initial_s, self.config.backoff_max_s)
        self.prober = prober or HealthProber(backoff=self.backoff)
        self.orchestrator = RegistrationOrchestrator(
            coordinator,
            time_source=self._time,
            backoff=self.backoff,
            max_attempts=self.config.max_register_attempts,
            registration_timeout_s=self.config.registration_timeout_s,
            drain_timeout_s=self.config.drain_timeout_s,
        )
        self.topology = topology
        self.last_applied: Optional[GeneratedPlan] = None
        self._handles: dict[str, NodeHandle] = {}
        self._handles_lock = threading.Lock()
        self._supervisor_ops = 0

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _operations(self) -> int:
        with self._handles_lock:
            return self._supervisor_ops + self.orchestrator.operations

    def _elapsed(self, started: float) -> float:
        return self._time.clock() - started

    def _start(self, node: NodeDefinition) -> NodeHandle:
        with self._handles_lock:
            self._supervisor_ops += 1
        handle = self.supervisor.start(node)
        with self._handles_lock:
            self._handles[node.name] = handle
        return handle

    def _stop(self, handle: NodeHandle) -> None:
        with self._handles_lock:
            self._supervisor_ops += 1
        self.supervisor.stop(handle)
        with self._handles_lock:
            if self._handles.get(handle.name) == handle:
                del self._handles[handle.name]

    def _handle_for(self, name: str) -> Optional[NodeHandle]:
        with self._handles_lock:
            return self._handles.get(name)

    def _pool_size(self, count: int) -> int:
        return max(1, self.config.max_parallel or count)

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def _live_handles(self) -> dict[str, NodeHandle]:
        """Running nodes according to the supervisor, by name."""
        live: dict[str, NodeHandle] = {}
        for handle in self.supervisor.list_nodes():
            if self.supervisor.status(handle) == NodeStatus.RUNNING:
                live[handle.name] = handle
        return live

    def _plan_work(self, plan: GeneratedPlan) -> _Work:
        """
        Decide what to start, verify, replace and remove.

        Nodes already running from an identical definition are adopted
        (verified, not restarted); this is how a restarted controller or a
        retry after a partial Converge picks up where the last one stopped.
        """
        live = self._live_handles()
        with self._handles_lock:
            self._handles.update(live)

        start: list[NodeDefinition] = []
        verify: list[NodeDefinition] = []
        keep: list[NodeDefinition] = []
        replace: dict[str, _Departure] = {}
        depart: list[_Departure] = []

        if self.last_applied is not None:
            diff = diff_plans(self.last_applied, plan)
            changed = {n.name for n in diff.removed} & {n.name for n in diff.added}
            for node in diff.removed:
                departure = _Departure(node.name, node.role, node.host, node.port, live.get(node.name))
                if node.name in changed:
                    replace[node.name] = departure
                else:
                    depart.append(departure)
            keep.extend(diff.unchanged)
            candidates = diff.added
        else:
            planned = {n.name for n in plan.nodes}
            for name, handle in sorted(live.items()):
                if name not in planned:
                    depart.append(_Departure(name, handle.role, handle.host, handle.port, handle))
            candidates = plan.nodes

        for node in candidates:
            handle = live.get(node.name)
            if handle is not None and handle.fingerprint == node.fingerprint and node.name not in replace:
                verify.append(node)
            elif handle is not None and node.name not in replace and handle.identity != node.identity:
                # Same name, different host/port: the old identity must be drained first
                replace[node.name] = _Departure(node.name, handle.role, handle.host, handle.port, handle)
                start.append(node)
            else:
                start.append(node)

        return _Work(
            start=tuple(start),
            verify=tuple(verify),
            keep=tuple(keep),
            replace=replace,
            depart=tuple(sorted(depart, key=lambda d: (d.role == NodeRole.COORDINATOR, d.name))),
        )

    # -------------------------------------------------------------------------
    # Per-node steps
    # -------------------------------------------------------------------------

    def _bring_up(
        self,
        node: NodeDefinition,
        restart: bool,
        cancel: Optional[threading.Event],
    ) -> Optional[NodeResult]:
        """
        Start (if restart) and probe a node.

        Returns:
            None when the node is ready, otherwise its failed NodeResult
        """
        target = REGISTERED if node.is_worker else NodeState.READY.value
        try:
            if restart:
                self._start(node)
            outcome = self.prober.wait_ready(node, self._time.deadline(self.config.probe_timeout_s, cancel))
        except (SupervisorError, ProbeTimeout) as e:
            logger.error(f"{node.name} did not come up: {e}")
            return NodeResult(node.name, node.identity, target, NodeState.FAILED.value, error=_error(e))
        if outcome.cancelled:
            return NodeResult(
                node.name, node.identity, target, NodeState.FAILED.value,
                error={"type": "Cancelled", "message": f"probe of {node.name} cancelled"},
            )
        return None

    def _converge_coordinator(
        self,
        node: NodeDefinition,
        restart: bool,
        cancel: Optional[threading.Event],
    ) -> NodeResult:
        failure = self._bring_up(node, restart, cancel)
        if failure is not None:
            return failure
        return NodeResult(node.name, node.identity, NodeState.READY.value, NodeState.READY.value)

    def _converge_worker(
        self,
        node: NodeDefinition,
        restart: bool,
        previous: Optional[_Departure],
        coordinator_ready: bool,
        cancel: Optional[threading.Event],
    ) -> NodeResult:
        """Replace (if needed), start, probe and register one worker."""
        if previous is not None and previous.identity != node.identity:
            record = self.orchestrator.deregister(previous.host, previous.port, previous.name, cancel=cancel)
            if record.state != RegistrationState.REMOVED:
                return NodeResult(
                    node.name, node.identity, REGISTERED, record.state.value,
                    error=record.last_error or {"type": "Incomplete", "message": "previous identity not removed"},
                )

        failure = self._bring_up(node, restart, cancel)
        if failure is not None:
            return failure

        if not coordinator_ready:
            error = CoordinatorError(f"coordinator not ready; {node.name} left unregistered")
            return NodeResult(
                node.name, node.identity, REGISTERED, RegistrationState.UNREGISTERED.value,
                error=_error(error),
            )

        record = self.orchestrator.register(node.host, node.port, node.name, cancel=cancel)
        error = None
        if record.state != RegistrationState.REGISTERED:
            error = record.last_error or {"type": "Incomplete", "message": f"registration stopped in {record.state.value}"}
        return NodeResult(
            node.name, node.identity, REGISTERED, record.state.value,
            error=error, attempts=record.attempts,
        )

    def _remove_worker(
        self,
        departure: _Departure,
        force: bool,
        cancel: Optional[threading.Event],
    ) -> NodeResult:
        """Drain (unless force), deregister, then stop one worker."""
        warnings: tuple[str, ...] = ()
        if force:
            warning = (
                f"{departure.name} ({departure.identity}) removed without draining; "
                "shard placements on it may be lost"
            )
            logger.warning(warning)
            warnings = (warning,)

        record = self.orchestrator.deregister(
            departure.host, departure.port, departure.name, force=force, cancel=cancel,
        )
        if record.state != RegistrationState.REMOVED:
            return NodeResult(
                departure.name, departure.identity, REMOVED, record.state.value,
                error=record.last_error or {"type": "Incomplete", "message": f"removal stopped in {record.state.value}"},
                warnings=warnings,
            )

        handle = departure.handle or self._handle_for(departure.name)
        if handle is not None:
            try:
                self._stop(handle)
            except SupervisorError as e:
                logger.error(f"{departure.name} deregistered but not stopped: {e}")
                return NodeResult(
                    departure.name, departure.identity, REMOVED, REMOVED,
                    error=_error(e), warnings=warnings,
                )
        return NodeResult(departure.name, departure.identity, REMOVED, REMOVED, warnings=warnings)

    def _remove_coordinator(self, departure: _Departure) -> NodeResult:
        handle = departure.handle or self._handle_for(departure.name)
        if handle is not None:
            try:
                self._stop(handle)
            except SupervisorError as e:
                return NodeResult(
                    departure.name, departure.identity, NodeState.STOPPED.value,
                    NodeState.FAILED.value, error=_error(e),
                )
        return NodeResult(
            departure.name, departure.identity, NodeState.STOPPED.value, NodeState.STOPPED.value,
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def converge(
        self,
        topology: Topology,
        cancel: Optional[threading.Event] = None,
        operation: str = "converge",
    ) -> OperationReport:
        """
        Bring the running cluster to the given topology.

        Args:
            topology: Desired end state
            cancel: Cancellation signal for every wait in this run
            operation: Name recorded in the report

        Returns:
            OperationReport (rejected if the topology is invalid)
        """
        started = self._time.clock()
        try:
            topology.validate()
        except InvalidTopology as e:
            logger.error(str(e))
            return OperationReport.rejected(operation, e.problems, self._elapsed(started))

        plan = generate(topology, self.config.image)
        self.topology = topology

        if self.last_applied is not None and self.last_applied.content_hash == plan.content_hash:
            logger.info(f"Plan {plan.content_hash[:19]} already applied; nothing to do")
            results = tuple(self._unchanged_result(n) for n in plan.nodes)
            return OperationReport(
                operation=operation,
                overall=Overall.CONVERGED,
                per_node=results,
                elapsed=self._elapsed(started),
                plan_hash=plan.content_hash,
                operations=0,
            )

        ops_before = self._operations()
        try:
            self.supervisor.apply(plan)
            work = self._plan_work(plan)
        except SupervisorError as e:
            logger.error(f"Could not prepare nodes for {plan.content_hash[:19]}: {e}")
            results = tuple(
                NodeResult(
                    n.name, n.identity,
                    REGISTERED if n.is_worker else NodeState.READY.value,
                    NodeState.FAILED.value, error=_error(e),
                )
                for n in plan.nodes
            )
            return self._report(operation, plan, results, started, ops_before)

        logger.info(
            f"Converging to {plan.content_hash[:19]}: start {len(work.start)}, "
            f"verify {len(work.verify)}, keep {len(work.keep)}, remove {len(work.depart)}"
        )

        results: dict[str, NodeResult] = {}
        restart = {n.name for n in work.start}
        to_bring_up = work.start + work.verify

        coordinator = plan.coordinator
        coordinator_ready = True
        if coordinator is not None:
            if coordinator.name in {n.name for n in to_bring_up}:
                results[coordinator.name] = self._converge_coordinator(
                    coordinator, coordinator.name in restart, cancel,
                )
                coordinator_ready = results[coordinator.name].ok

        workers = sorted((n for n in to_bring_up if n.is_worker), key=lambda n: n.index or 0)
        if workers:
            with ThreadPoolExecutor(max_workers=self._pool_size(len(workers))) as pool:
                futures = {
                    node.name: pool.submit(
                        self._converge_worker,
                        node,
                        node.name in restart,
                        work.replace.get(node.name),
                        coordinator_ready,
                        cancel,
                    )
                    for node in workers
                }
                for name, future in futures.items():
                    results[name] = future.result()

        for node in work.keep:
            results[node.name] = self._unchanged_result(node)

        warnings: list[str] = []
        added_workers = [n for n in work.start if n.is_worker and n.name not in work.replace]
        if (
            self.config.rebalance_after_add
            and added_workers
            and all(results[n.name].ok for n in added_workers)
        ):
            rebalance = self.rebalance(cancel=cancel)
            if rebalance.overall != Overall.CONVERGED:
                warnings.append(f"rebalance after adding workers ended {rebalance.overall.value}")

        for departure in work.depart:
            if departure.role == NodeRole.COORDINATOR:
                results[departure.name] = self._remove_coordinator(departure)
            else:
                results[departure.name] = self._remove_worker(departure, force=False, cancel=cancel)

        ordered = [results[n.name] for n in plan.nodes if n.name in results]
        ordered.extend(results[d.name] for d in work.depart if plan.get(d.name) is None)
        report = self._report(operation, plan, tuple(ordered), started, ops_before, tuple(warnings))
        if report.overall == Overall.CONVERGED:
            self.last_applied = plan
        logger.info(str(report))
        return report

    def _unchanged_result(self, node: NodeDefinition) -> NodeResult:
        if node.is_worker:
            return NodeResult(node.name, node.identity, REGISTERED, REGISTERED)
        return NodeResult(node.name, node.identity, NodeState.READY.value, NodeState.READY.value)

    def _report(
        self,
        operation: str,
        plan: Optional[GeneratedPlan],
        results: tuple[NodeResult, ...],
        started: float,
        ops_before: int,
        warnings: tuple[str, ...] = (),
    ) -> OperationReport:
        node_warnings = tuple(w for r in results for w in r.warnings)
        return OperationReport(
            operation=operation,
            overall=OperationReport.summarize(results),
            per_node=results,
            elapsed=self._elapsed(started),
            plan_hash=plan.content_hash if plan is not None else None,
            operations=self._operations() - ops_before,
            warnings=warnings + node_warnings,
        )

    def _require_topology(self, operation: str) -> Optional[OperationReport]:
        if self.topology is None:
            return OperationReport.rejected(operation, ["no topology in effect; converge first"])
        return None

    def add_worker(self, spec: WorkerSpec, cancel: Optional[threading.Event] = None) -> OperationReport:
        """Converge to the current topology plus one worker."""
        rejected = self._require_topology("add_worker")
        if rejected is not None:
            return rejected
        if self.topology.get_worker(spec.index) is not None:
            return OperationReport.rejected("add_worker", [f"worker {spec.index} already exists"])
        return self.converge(self.topology.with_worker(spec), cancel=cancel, operation="add_worker")

    def resize(self, count: int, cancel: Optional[threading.Event] = None) -> OperationReport:
        """Converge to the current topology with workers 1..count."""
        rejected = self._require_topology("resize")
        if rejected is not None:
            return rejected
        try:
            topology = self.topology.resized(count)
        except InvalidTopology as e:
            return OperationReport.rejected("resize", e.problems)
        return self.converge(topology, cancel=cancel, operation="resize")

    def remove_worker(
        self,
        index: int,
        force: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> OperationReport:
        """
        Remove one worker: drain, deregister, stop.

        Args:
            index: Worker index
            force: Skip the drain; the report always carries a data-loss warning
            cancel: Cancellation signal

        Returns:
            OperationReport concerning only the removed worker
        """
        operation = "remove_worker"
        started = self._time.clock()
        rejected = self._require_topology(operation)
        if rejected is not None:
            return rejected
        if self.topology.get_worker(index) is None:
            return OperationReport.rejected(operation, [f"worker {index} is not in the topology"])

        remaining = self.topology.without_worker(index)
        try:
            remaining.validate()
        except InvalidTopology as e:
            return OperationReport.rejected(operation, e.problems, self._elapsed(started))

        current = generate(self.topology, self.config.image)
        node = current.get(worker_name(index))
        departure = _Departure(node.name, node.role, node.host, node.port, self._handle_for(node.name))
        if departure.handle is None:
            try:
                departure = _Departure(
                    node.name, node.role, node.host, node.port,
                    next((h for h in self.supervisor.list_nodes() if h.name == node.name), None),
                )
            except SupervisorError as e:
                logger.warning(f"Could not look up {node.name} in the supervisor: {e}")

        ops_before = self._operations()
        result = self._remove_worker(departure, force=force, cancel=cancel)
        plan = generate(remaining, self.config.image)
        warnings: tuple[str, ...] = ()
        if result.ok:
            try:
                self.supervisor.apply(plan)
            except SupervisorError as e:
                logger.warning(f"{node.name} removed but deployment files not updated: {e}")
                warnings = (f"deployment files not updated: {e}",)
        report = self._report(operation, plan, (result,), started, ops_before, warnings)

        if report.overall == Overall.CONVERGED:
            was_applied = self.last_applied is not None and self.last_applied.content_hash == current.content_hash
            self.topology = remaining
            self.last_applied = plan if was_applied else None
        logger.info(str(report))
        return report

    def rebalance(
        self,
        strategy: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> OperationReport:
        """
        Start a coordinator rebalance and wait for it to finish.

        Args:
            strategy: Engine rebalance strategy (chosen from shard_count_hint when None)
            cancel: Cancellation signal

        Returns:
            OperationReport with one entry for the coordinator
        """
        operation = "rebalance"
        started = self._time.clock()
        if strategy is None:
            hint = self.topology.options.shard_count_hint if self.topology is not None else None
            strategy = choose_rebalance_strategy(hint)

        name, identity = "coordinator", "external"
        if self.topology is not None and self.topology.coordinator is not None:
            identity = self.topology.coordinator.identity

        ops_before = self._operations()
        target = RebalanceStatus.DONE.value
        try:
            job_id = self.orchestrator.call(self.coordinator.rebalance, strategy, mutating=True)
            logger.info(f"Rebalance job {job_id} started with strategy {strategy}")
            status = self._wait_rebalance(job_id, cancel)
        except ShardctlError as e:
            logger.error(f"Rebalance failed: {e}")
            result = NodeResult(name, identity, target, RebalanceStatus.FAILED.value, error=_error(e))
            return self._report(operation, None, (result,), started, ops_before)

        error = None
        if status != RebalanceStatus.DONE:
            error = {"type": "RebalanceIncomplete", "message": f"rebalance job {job_id} is {status.value}"}
        result = NodeResult(name, identity, target, status.value, error=error)
        report = self._report(operation, None, (result,), started, ops_before)
        logger.info(str(report))
        return report

    def _wait_rebalance(self, job_id: str, cancel: Optional[threading.Event]) -> RebalanceStatus:
        deadline = self._time.deadline(self.config.drain_timeout_s, cancel)
        delays = self.backoff.delays()
        while True:
            status = self.orchestrator.call(self.coordinator.rebalance_status, job_id)
            if status.finished:
                return status
            if not deadline.sleep(next(delays)):
                return status

    def status(self) -> OperationReport:
        """
        Live view merged from the supervisor and the coordinator. Read-only.

        Target states come from the topology in effect; without one, every
        observed node is reported as-is.
        """
        started = self._time.clock()
        warnings: list[str] = []

        try:
            handles = {h.name: h for h in self.supervisor.list_nodes()}
            statuses = {name: self.supervisor.status(h) for name, h in handles.items()}
        except SupervisorError as e:
            warnings.append(f"supervisor unavailable: {e}")
            handles, statuses = {}, {}

        live: dict[str, CoordinatorNode] = {}
        try:
            live = {n.identity: n for n in self.orchestrator.call(self.coordinator.list_nodes)}
        except ShardctlError as e:
            warnings.append(f"coordinator unavailable: {e}")

        plan = generate(self.topology, self.config.image) if self.topology is not None else None
        results: list[NodeResult] = []
        seen_identities: set[str] = set()

        def observed(name: str, role: NodeRole, identity: str) -> str:
            if name not in handles:
                return "missing"
            status = statuses[name]
            if status != NodeStatus.RUNNING:
                return status.value
            if role == NodeRole.COORDINATOR:
                return NodeState.READY.value
            node = live.get(identity)
            if node is not None and node.is_active_primary:
                return REGISTERED
            return RegistrationState.UNREGISTERED.value

        if plan is not None:
            for node in plan.nodes:
                seen_identities.add(node.identity)
                target = REGISTERED if node.is_worker else NodeState.READY.value
                results.append(NodeResult(
                    node.name, node.identity, target, observed(node.name, node.role, node.identity),
                ))

        for name, handle in sorted(handles.items()):
            if plan is not None and plan.get(name) is not None:
                continue
            seen_identities.add(handle.identity)
            state = observed(name, handle.role, handle.identity)
            target = "absent" if plan is not None else state
            results.append(NodeResult(name, handle.identity, target, state))

        for identity, node in sorted(live.items()):
            if identity in seen_identities or node.role == "coordinator":
                continue
            state = REGISTERED if node.is_active_primary else f"{node.role}/{'active' if node.active else 'inactive'}"
            target = "absent" if plan is not None else state
            results.append(NodeResult("", identity, target, state))

        per_node = tuple(results)
        return OperationReport(
            operation="status",
            overall=OperationReport.summarize(per_node),
            per_node=per_node,
            elapsed=self._elapsed(started),
            plan_hash=plan.content_hash if plan is not None else None,
            operations=0,
            warnings=tuple(warnings),
        )
