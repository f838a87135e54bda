"""
Topology loader - read a declarative topology from YAML or JSON.

The file mirrors Topology.to_dict(); option names may be camelCase
(shardCountHint, portBase, workerCount, replicationFactor). A missing
credentials.password is filled from SHARDCTL_DB_PASSWORD so topology files
can be committed without secrets.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from shardctl.config import PASSWORD_ENV_VAR
from shardctl.errors import InvalidTopology
from shardctl.schemas import Topology

logger = logging.getLogger(__name__)


def _load_file(path: Path) -> Any:
    """Parse YAML or JSON based on the file extension."""
    text = path.read_text()
    if path.suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def load_topology(path: Path) -> Topology:
    """
    Load a topology file.

    Args:
        path: .yaml/.yml or .json file

    Returns:
        Topology (not yet validated; Converge validates)

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidTopology: If the file cannot be parsed into a topology
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Topology file not found: {path}")

    try:
        data = _load_file(path)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise InvalidTopology([f"{path}: {e}"]) from e

    if not isinstance(data, dict):
        raise InvalidTopology([f"{path}: expected a mapping at the top level"])

    credentials = dict(data.get("credentials") or {})
    if not credentials.get("password") and os.environ.get(PASSWORD_ENV_VAR):
        logger.debug(f"Using database password from {PASSWORD_ENV_VAR}")
        credentials["password"] = os.environ[PASSWORD_ENV_VAR]
        data = {**data, "credentials": credentials}

    try:
        return Topology.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidTopology([f"{path}: {e}"]) from e


def save_topology(topology: Topology, path: Path) -> None:
    """
    Write a topology back to disk, without its password.

    The format follows the file extension (JSON for .json, YAML otherwise).
    """
    path = Path(path)
    data = topology.to_dict()
    data["credentials"] = {**data["credentials"], "password": ""}
    if path.suffix == ".json":
        content = json.dumps(data, indent=2, sort_keys=True) + "\n"
    else:
        content = yaml.safe_dump(data, sort_keys=False)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
