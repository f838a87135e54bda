"""
CLI interface for shardctl.

Provides commands to render a topology into deployable artifacts and to
converge, grow, shrink, rebalance and inspect a running cluster.

Exit codes: 0 converged, 1 partially converged or failed, 2 rejected
(invalid topology, nothing touched).
"""


import json
import sys

import click
from pathlib import Path
from typing import Optional

from rich.table import Table

from shardctl import __version__


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_REJECTED = 2

_STATE_STYLES = {
    "ready": "green",
    "registered": "green",
    "removed": "green",
    "stopped": "green",
    "done": "green",
    "failed": "red",
    "missing": "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="shardctl")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $SHARDCTL_HOME/config.yaml)",
)
@click.option(
    "--coordinator", "coordinator_endpoint",
    default=None,
    metavar="HOST:PORT",
    help="Coordinator to connect to (required for worker-only topologies)",
)
@click.option(
    "--connect-host",
    default=None,
    help="Host the control plane uses to reach node ports (e.g. localhost for published ports)",
)
@click.pass_context
def main(ctx, config_path: Optional[Path], coordinator_endpoint: Optional[str], connect_host: Optional[str]):
    """
    shardctl - Control plane for a sharded database cluster.

    Converge a declarative topology (one coordinator, N workers) into
    running, registered nodes.
    """
    from shardctl.config import load_config
    from shardctl.errors import ConfigError

    ctx.ensure_object(dict)
    ctx.obj["coordinator_endpoint"] = coordinator_endpoint
    ctx.obj["connect_host"] = connect_host
    try:
        ctx.obj["config"] = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        # init works without a config; every other command checks for it
        ctx.obj["config_error"] = str(e)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_config(ctx):
    """Return the loaded config or exit with a hint to run init."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'shardctl init' to create a configuration file.", err=True)
        raise SystemExit(EXIT_FAILED)

    from shardctl.utils import setup_logging

    config = ctx.obj["config"]
    setup_logging(
        log_file=Path(config.log_file).expanduser() if config.log_file else None,
        log_level=config.log_level,
        log_format=config.log_format,
    )
    return config


def _load_topology(config, topology_path: Optional[Path]):
    """Load the topology file, exiting with EXIT_REJECTED if it cannot be parsed."""
    from shardctl.errors import InvalidTopology
    from shardctl.topology_loader import load_topology

    path = topology_path or Path(config.topology_file).expanduser()
    try:
        return load_topology(path), path
    except FileNotFoundError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_FAILED)
    except InvalidTopology as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_REJECTED)


def _parse_endpoint(endpoint: str) -> tuple[str, int]:
    host, sep, port = endpoint.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise click.BadParameter(f"expected HOST:PORT, got {endpoint!r}", param_hint="--coordinator")
    return host, int(port)


def _build_controller(ctx, config, topology, dry_run: bool):
    """Wire a LifecycleController with real adapters, or in-memory ones for --dry-run."""
    from shardctl.controller import LifecycleController
    from shardctl.health import HealthProber, ProbeStatus, make_psycopg_check

    if dry_run:
        from shardctl.coordinator import InMemoryCoordinator
        from shardctl.supervisor import InMemorySupervisor

        return LifecycleController(
            InMemorySupervisor(),
            InMemoryCoordinator(),
            config=config,
            prober=HealthProber(check=lambda node, timeout_s: ProbeStatus.READY),
            topology=topology,
        )

    from shardctl.coordinator import CitusCoordinator
    from shardctl.supervisor import ComposeSupervisor
    from shardctl.timing import BackoffPolicy

    connect_host = ctx.obj.get("connect_host")
    if ctx.obj.get("coordinator_endpoint"):
        host, port = _parse_endpoint(ctx.obj["coordinator_endpoint"])
    elif topology.coordinator is not None:
        host, port = connect_host or topology.coordinator.host, topology.coordinator.port
    else:
        raise click.UsageError("Worker-only topologies need --coordinator HOST:PORT")

    credentials = topology.credentials
    coordinator = CitusCoordinator(
        host,
        port,
        user=credentials.user,
        password=credentials.password or config.database_password or "",
        database=credentials.database,
    )
    supervisor = ComposeSupervisor(Path(config.compose_file).expanduser(), project=config.compose_project)
    prober = HealthProber(
        check=make_psycopg_check(connect_host),
        backoff=BackoffPolicy(config.backoff_initial_s, config.backoff_max_s),
    )
    return LifecycleController(supervisor, coordinator, config=config, prober=prober, topology=topology)


def _print_report(report, as_json: bool) -> None:
    """Render an OperationReport as JSON or a rich table."""
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    from shardctl.schemas import Overall
    from shardctl.utils import console, format_duration, print_error, print_success, print_warning

    if report.overall == Overall.REJECTED:
        print_error(f"{report.operation} rejected; nothing was changed")
        for problem in report.problems:
            console.print(f"  - {problem}")
        return

    table = Table(title=f"{report.operation} ({format_duration(report.elapsed)}, {report.operations} operation(s))")
    table.add_column("Node")
    table.add_column("Identity")
    table.add_column("Target")
    table.add_column("Achieved")
    table.add_column("Detail", overflow="fold")
    for result in report.per_node:
        style = _STATE_STYLES.get(result.achieved_state, "yellow")
        if not result.ok:
            style = "red"
        detail = ""
        if result.error:
            detail = f"{result.error['type']}: {result.error['message']}"
        elif result.attempts > 1:
            detail = f"{result.attempts} attempts"
        table.add_row(
            result.name or "-",
            result.identity,
            result.target_state,
            f"[{style}]{result.achieved_state}[/{style}]",
            detail,
        )
    console.print(table)

    for warning in report.warnings:
        print_warning(warning)

    if report.overall == Overall.CONVERGED:
        print_success(f"{report.operation}: {report.overall.value}")
    else:
        print_error(f"{report.operation}: {report.overall.value} ({len(report.failed_nodes)} node(s) failed)")


def _exit_code(report) -> int:
    from shardctl.schemas import Overall

    if report.overall == Overall.CONVERGED:
        return EXIT_OK
    if report.overall == Overall.REJECTED:
        return EXIT_REJECTED
    return EXIT_FAILED


def _finish(report, as_json: bool) -> None:
    _print_report(report, as_json)
    raise SystemExit(_exit_code(report))


def _save_on_success(report, controller, path: Path, dry_run: bool, save: bool) -> None:
    """Persist the controller's topology after a converged change."""
    from shardctl.schemas import Overall
    from shardctl.topology_loader import save_topology

    if dry_run or not save or report.overall != Overall.CONVERGED:
        return
    save_topology(controller.topology, path)
    click.echo(f"Updated {path}", err=True)


topology_option = click.option(
    "--topology", "topology_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Topology file (default: topology_file from config)",
)
dry_run_option = click.option("--dry-run", is_flag=True, help="Use in-memory adapters; touch nothing")
json_option = click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config")
def init(force: bool):
    """Initialize shardctl configuration."""
    from shardctl.config import PASSWORD_ENV_VAR, ShardctlConfig, get_shardctl_home
    import yaml

    home = get_shardctl_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_FAILED)

    default_cfg = ShardctlConfig(env_file=str(home / ".env")).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text(f"# {PASSWORD_ENV_VAR}=...\n")

    click.echo(f"Initialized shardctl config at {cfg_path}")


@main.command("generate")
@topology_option
@click.option(
    "--output", "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Compose file to write (default: compose_file from config)",
)
@json_option
@click.pass_context
def generate_cmd(ctx, topology_path: Optional[Path], output_path: Optional[Path], as_json: bool):
    """Render the topology into a compose file and coordinator init SQL."""
    from shardctl.errors import InvalidTopology
    from shardctl.generator import generate, write_artifacts

    config = _get_config(ctx)
    topology, _path = _load_topology(config, topology_path)
    try:
        topology.validate()
    except InvalidTopology as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_REJECTED)

    plan = generate(topology, config.image)
    output = output_path or Path(config.compose_file).expanduser()
    written = write_artifacts(plan, output)

    if as_json:
        click.echo(json.dumps({
            "plan_hash": plan.content_hash,
            "nodes": [n.name for n in plan.nodes],
            "written": [str(p) for p in written],
        }, indent=2))
        return

    click.echo(f"Plan {plan.content_hash}")
    for node in plan.nodes:
        click.echo(f"  {node.name:<14} {node.identity}")
    if written:
        for path in written:
            click.echo(f"✓ Wrote {path}")
    else:
        click.echo("Artifacts already up to date")


@main.command("converge")
@topology_option
@dry_run_option
@json_option
@click.pass_context
def converge(ctx, topology_path: Optional[Path], dry_run: bool, as_json: bool):
    """Bring the cluster to the topology file's desired state."""
    config = _get_config(ctx)
    topology, _path = _load_topology(config, topology_path)
    controller = _build_controller(ctx, config, topology, dry_run)
    _finish(controller.converge(topology), as_json)


@main.command("add-worker")
@click.argument("index", type=int)
@click.option("--port", type=int, default=None, help="Explicit port (default: portBase + index)")
@click.option("--host", default=None, help="Explicit host (default: default_host, else the service name)")
@click.option("--save/--no-save", default=True, help="Write the grown topology back on success")
@topology_option
@dry_run_option
@json_option
@click.pass_context
def add_worker(ctx, index: int, port: Optional[int], host: Optional[str], save: bool,
               topology_path: Optional[Path], dry_run: bool, as_json: bool):
    """Add worker INDEX and register it with the coordinator."""
    from shardctl.schemas import WorkerSpec

    config = _get_config(ctx)
    topology, path = _load_topology(config, topology_path)
    controller = _build_controller(ctx, config, topology, dry_run)
    report = controller.add_worker(WorkerSpec(index=index, port=port, host=host))
    _save_on_success(report, controller, path, dry_run, save)
    _finish(report, as_json)


@main.command("remove-worker")
@click.argument("index", type=int)
@click.option("--force", is_flag=True, help="Skip the drain (shard placements on the worker may be lost)")
@click.option("--save/--no-save", default=True, help="Write the shrunk topology back on success")
@topology_option
@dry_run_option
@json_option
@click.pass_context
def remove_worker(ctx, index: int, force: bool, save: bool,
                  topology_path: Optional[Path], dry_run: bool, as_json: bool):
    """Drain, deregister and stop worker INDEX."""
    config = _get_config(ctx)
    topology, path = _load_topology(config, topology_path)
    controller = _build_controller(ctx, config, topology, dry_run)
    if force and not as_json:
        click.echo("⚠ --force skips the drain; data on the worker may be lost", err=True)
    report = controller.remove_worker(index, force=force)
    _save_on_success(report, controller, path, dry_run, save)
    _finish(report, as_json)


@main.command("resize")
@click.argument("count", type=int)
@click.option("--save/--no-save", default=True, help="Write the resized topology back on success")
@topology_option
@dry_run_option
@json_option
@click.pass_context
def resize(ctx, count: int, save: bool, topology_path: Optional[Path], dry_run: bool, as_json: bool):
    """Converge to exactly COUNT workers."""
    config = _get_config(ctx)
    topology, path = _load_topology(config, topology_path)
    controller = _build_controller(ctx, config, topology, dry_run)
    report = controller.resize(count)
    _save_on_success(report, controller, path, dry_run, save)
    _finish(report, as_json)


@main.command("rebalance")
@click.option("--strategy", default=None, help="Rebalance strategy (default: chosen from shardCountHint)")
@topology_option
@dry_run_option
@json_option
@click.pass_context
def rebalance(ctx, strategy: Optional[str], topology_path: Optional[Path], dry_run: bool, as_json: bool):
    """Start a coordinator rebalance and wait for it to finish."""
    config = _get_config(ctx)
    topology, _path = _load_topology(config, topology_path)
    controller = _build_controller(ctx, config, topology, dry_run)
    _finish(controller.rebalance(strategy), as_json)


@main.command("status")
@topology_option
@json_option
@click.pass_context
def status(ctx, topology_path: Optional[Path], as_json: bool):
    """Show supervisor and coordinator state against the topology."""
    config = _get_config(ctx)
    topology, _path = _load_topology(config, topology_path)
    controller = _build_controller(ctx, config, topology, dry_run=False)
    report = controller.status()
    _print_report(report, as_json)
    raise SystemExit(EXIT_OK if report.succeeded else EXIT_FAILED)


if __name__ == "__main__":
    sys.exit(main())
