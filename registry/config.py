"""
Exports ``RegistryConfig``, the per-node settings, and the well-known
coordination-service paths shared by every node of a cluster.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .identity import NodeIdentity

__all__ = [
    "RegistryConfig",
    "ID_BATCH_SIZE",
    "COUNTER_PATH",
    "MASTER_PATH",
    "MEMBERS_PATH",
]

ID_BATCH_SIZE: int = 20

# Persisted "next batch start", a decimal integer
COUNTER_PATH: str = "/schema_id_counter"
# Ephemeral key holding the encoded identity of the current master
MASTER_PATH: str = "/schema_registry_master"
# One ephemeral child per live node, named host:port
MEMBERS_PATH: str = "/schema_registry/ids"


@dataclass(frozen=True)
class RegistryConfig:
    """
    Settings of one schema registry node.

    :param host: Advertised host name.
    :param port: Advertised port (also the node RPC port).
    :param master_eligible: Whether this node may ever become master.
    :param id_batch_size: Number of ids reserved per counter write.
    :param coordination_timeout: Deadline in seconds for coordination calls.
    :param session_timeout: ZooKeeper session timeout in seconds. The node
        demotes itself once the server has been silent for two thirds of it.
    :param retry_delay: Seconds before coordination work that failed while
        handling an event is attempted again.
    :param store_path: Optional pickle file backing a local schema store.
    """

    host: str = "localhost"
    port: int = 8081
    master_eligible: bool = True
    id_batch_size: int = ID_BATCH_SIZE
    counter_path: str = COUNTER_PATH
    master_path: str = MASTER_PATH
    members_path: str = MEMBERS_PATH
    coordination_timeout: float = 5.0
    session_timeout: float = 6.0
    retry_delay: float = 0.5
    store_path: Path | None = None

    def __post_init__(self):
        if self.id_batch_size <= 0:
            raise ValueError(f"id_batch_size must be positive, got {self.id_batch_size}")

    @property
    def identity(self) -> NodeIdentity:
        return NodeIdentity(self.host, self.port, self.master_eligible)
