"""
shardctl - Control plane for a sharded database cluster

Turns a declarative topology (one coordinator, N workers) into running
nodes, registers workers with the coordinator and drains them on removal.
"""

__version__ = "0.1.0"


__all__ = ["ShardctlConfig", "load_config", "get_shardctl_home"]

from .config import ShardctlConfig, load_config, get_shardctl_home
