"""
docker compose supervisor.

Drives `docker compose` against the compose file it renders in apply().
Every node is one compose service named after the node; labels rendered by
the generator (shardctl.role, shardctl.name, shardctl.index, shardctl.host,
shardctl.port, shardctl.fingerprint) let list_nodes() rebuild handles after a restart.

Nodes are stopped by container id: a node leaving the cluster is no longer a
service of the freshly applied compose file.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from shardctl.errors import SupervisorError
from shardctl.generator import GeneratedPlan, write_artifacts
from shardctl.schemas import NodeDefinition, NodeRole
from shardctl.supervisor.base import NodeHandle, NodeStatus

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]
Popen = Callable[..., subprocess.Popen]

LOG_CHUNK_SIZE = 4096

_STATE_MAP = {
    "running": NodeStatus.RUNNING,
    "exited": NodeStatus.STOPPED,
    "created": NodeStatus.STOPPED,
    "dead": NodeStatus.STOPPED,
}


def _parse_labels(raw: Any) -> dict[str, str]:
    """Compose reports labels either as a dict or as "k=v,k=v"."""
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    labels: dict[str, str] = {}
    for part in (raw or "").split(","):
        if "=" in part:
            key, value = part.split("=", 1)
            labels[key.strip()] = value.strip()
    return labels


def _parse_ps_output(stdout: str) -> list[dict[str, Any]]:
    """`ps --format json` prints a JSON array (older compose) or one object per line."""
    text = stdout.strip()
    if not text:
        return []
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


class ComposeSupervisor:
    """
    NodeSupervisor backed by `docker compose`.

    Usage:
        supervisor = ComposeSupervisor(Path("docker-compose.yml"), project="shardctl")
        handle = supervisor.start(node)
    """

    def __init__(
        self,
        compose_file: Path,
        project: str = "shardctl",
        docker_bin: str = "docker",
        runner: Optional[Runner] = None,
        popen: Optional[Popen] = None,
    ):
        """
        Args:
            compose_file: Compose document this supervisor renders and drives
            project: Compose project name
            docker_bin: docker executable
            runner: subprocess.run replacement (tests)
            popen: subprocess.Popen replacement for streamed logs (tests)
        """
        self.compose_file = Path(compose_file)
        self.project = project
        self._docker = docker_bin
        self._run = runner or subprocess.run
        self._popen = popen or subprocess.Popen

    def _base_command(self) -> list[str]:
        return [self._docker, "compose", "-f", str(self.compose_file), "-p", self.project]

    def _execute(self, command: list[str], what: str) -> str:
        logger.debug(f"Executing: {' '.join(command)}")
        try:
            result = self._run(command, capture_output=True, text=True, check=False)
        except OSError as e:
            raise SupervisorError(f"Could not run {self._docker}: {e}") from e

        if result.returncode != 0:
            error_msg = f"{what} failed with exit code {result.returncode}"
            if result.stderr:
                error_msg += f": {result.stderr[:500]}"
            raise SupervisorError(error_msg)
        return result.stdout

    def _compose(self, *args: str) -> str:
        return self._execute(self._base_command() + list(args), f"docker compose {args[0]}")

    def apply(self, plan: GeneratedPlan) -> None:
        try:
            written = write_artifacts(plan, self.compose_file)
        except OSError as e:
            raise SupervisorError(f"Could not write {self.compose_file}: {e}") from e
        for path in written:
            logger.info(f"Wrote {path} for plan {plan.content_hash[:19]}")

    def start(self, node: NodeDefinition) -> NodeHandle:
        self._compose("up", "-d", "--no-deps", node.name)
        container_id = self._compose("ps", "-q", node.name).strip()
        if not container_id:
            raise SupervisorError(f"{node.name} did not produce a container")
        logger.info(f"Started {node.name} ({node.identity}) as {container_id[:12]}")
        return NodeHandle(
            name=node.name,
            node_id=container_id,
            role=node.role,
            host=node.host,
            port=node.port,
            index=node.index,
            fingerprint=node.fingerprint,
        )

    def stop(self, handle: NodeHandle) -> None:
        if handle.node_id:
            self._execute([self._docker, "rm", "--force", handle.node_id], f"docker rm {handle.name}")
        else:
            self._compose("rm", "--stop", "--force", handle.name)
        logger.info(f"Stopped {handle.name}")

    def status(self, handle: NodeHandle) -> NodeStatus:
        try:
            entries = _parse_ps_output(self._compose("ps", "--all", "--format", "json", handle.name))
        except (SupervisorError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read status of {handle.name}: {e}")
            return NodeStatus.UNKNOWN
        if not entries:
            return NodeStatus.STOPPED
        state = str(entries[0].get("State", "")).lower()
        return _STATE_MAP.get(state, NodeStatus.UNKNOWN)

    def logs(self, handle: NodeHandle) -> Iterator[bytes]:
        command = self._base_command() + ["logs", "--no-color", handle.name]
        try:
            process = self._popen(command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        except OSError as e:
            raise SupervisorError(f"Could not run {self._docker}: {e}") from e
        stream = process.stdout
        try:
            for chunk in iter(lambda: stream.read(LOG_CHUNK_SIZE), b""):
                yield chunk
        finally:
            stream.close()
            returncode = process.wait()
        if returncode != 0:
            raise SupervisorError(f"docker compose logs failed with exit code {returncode}")

    def list_nodes(self) -> list[NodeHandle]:
        try:
            entries = _parse_ps_output(self._compose("ps", "--all", "--format", "json"))
        except json.JSONDecodeError as e:
            raise SupervisorError(f"Unreadable docker compose ps output: {e}") from e

        handles: list[NodeHandle] = []
        for entry in entries:
            labels = _parse_labels(entry.get("Labels"))
            name = labels.get("shardctl.name") or entry.get("Service")
            role = labels.get("shardctl.role")
            if not name or role not in (NodeRole.COORDINATOR.value, NodeRole.WORKER.value):
                continue
            index = labels.get("shardctl.index")
            handles.append(NodeHandle(
                name=name,
                node_id=str(entry.get("ID", "")),
                role=NodeRole(role),
                host=labels.get("shardctl.host", name),
                port=int(labels.get("shardctl.port", "0")),
                index=int(index) if index else None,
                fingerprint=labels.get("shardctl.fingerprint"),
            ))
        return handles
