"""
Exports ``SchemaRegistryNode``, one schema registry process: it wires the
election engine, the id allocator and the write fencer around a coordination
client and the shared schema store.
"""

from __future__ import annotations

import threading
from typing import Callable

from rich.console import Console

from zk.client import ZkClient

from .allocator import IdBatchAllocator
from .config import RegistryConfig
from .election import MasterElector, Role
from .errors import NodeUnavailableError, NotMasterError
from .fencer import WriteFencer
from .identity import NodeIdentity
from .store import SchemaRecord, SchemaStore

__all__ = ["SchemaRegistryNode", "Forwarder"]

console = Console()

# (master, subject, schema) -> id assigned by the master
Forwarder = Callable[[NodeIdentity, str, str], int]


class SchemaRegistryNode:
    """
    Schema registry node.

    Note:
        Writes are fenced: only the master allocates ids and appends records.
        A follower forwards a registration to the master it observes, once;
        reads are served locally on every node.

    :param config: Node settings.
    :param zk: Coordination client, owned (started and closed) by the node.
    :param store: Shared schema store.
    :param forwarder: Sends a registration to another node; without one a
        follower rejects writes with ``NotMasterError``.
    """

    def __init__(
        self,
        config: RegistryConfig,
        zk: ZkClient,
        store: SchemaStore,
        forwarder: Forwarder | None = None,
    ):
        self.config: RegistryConfig = config
        self.zk: ZkClient = zk
        self.store: SchemaStore = store
        self.forwarder: Forwarder | None = forwarder
        self.tag: str = config.identity.address

        self.allocator = IdBatchAllocator(
            zk,
            store,
            is_master=lambda: self.elector.is_master(),
            batch_size=config.id_batch_size,
            counter_path=config.counter_path,
            name=self.tag,
        )
        self.elector = MasterElector(
            config,
            zk,
            on_acquire=self.allocator.on_become_master,
            on_release=self.allocator.invalidate,
        )
        self.fencer = WriteFencer(self.elector, self.allocator)
        self._write_lock = threading.Lock()

    # ----------------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------------
    def start(self) -> None:
        """
        Connect to the coordination service and join the election.

        :raises CounterCorruptedError: If this node won the election and the
            persisted counter is malformed; the node is shut down again.
        """
        self.zk.start()
        try:
            self.elector.start()
        except Exception:
            self.zk.close()
            raise
        console.log(f"[{self.tag}] Node started as {self.elector.role().value}")

    def stop(self) -> None:
        self.elector.stop()
        self.zk.close()
        console.log(f"[{self.tag}] Node stopped")

    # ----------------------------------------------------------------------
    # Election facade
    # ----------------------------------------------------------------------
    def is_master(self) -> bool:
        return self.elector.role() is Role.MASTER

    def master_identity(self) -> NodeIdentity | None:
        return self.elector.current_master()

    def my_identity(self) -> NodeIdentity:
        return self.elector.identity()

    def set_master(self, identity: NodeIdentity | None) -> None:
        self.elector.set_master(identity)

    def cluster_view(self) -> list[NodeIdentity]:
        return self.elector.cluster_view()

    # ----------------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------------
    def register(self, subject: str, schema: str, forwarded: bool = False) -> int:
        """
        Register ``schema`` under ``subject``.

        Note:
            Registering a schema the subject already holds returns its id. A
            schema already known under another subject keeps its id and becomes
            the subject's next version. Otherwise a fresh id is allocated; if
            the append then fails, that id is abandoned, never reused.

        :param subject: Subject name.
        :param schema: Schema text.
        :param forwarded: The request was already forwarded by another node.
        :return: Id of the schema.
        :raises NotMasterError: If no master can take the write.
        :raises LostMastershipError: If mastership was lost mid-write.
        """
        if not self.is_master():
            return self._forward(subject, schema, forwarded)

        with self._write_lock:
            self.fencer.check()
            existing = self.store.lookup(subject, schema)
            if existing is not None:
                return existing.id

            known = self.store.find_schema(schema)
            schema_id = known.id if known is not None else self.fencer.admit()
            version = self.store.latest_version(subject) + 1
            self.store.append(SchemaRecord(subject, version, schema_id, schema))
            console.log(f"[{self.tag}] Registered {subject} v{version} as id {schema_id}")
            return schema_id

    def _forward(self, subject: str, schema: str, forwarded: bool) -> int:
        master = self.elector.current_master()
        if forwarded or master is None or master == self.my_identity() or self.forwarder is None:
            raise NotMasterError(f"{self.tag} cannot accept writes (master: {master})", master=master)
        console.log(f"[{self.tag}] Forwarding registration for {subject} to {master.address}")
        try:
            return self.forwarder(master, subject, schema)
        except NodeUnavailableError as e:
            raise NotMasterError(f"master {master.address} unreachable: {e}", master=master) from e

    # ----------------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------------
    def get_by_id(self, schema_id: int) -> SchemaRecord:
        return self.store.get_by_id(schema_id)

    def get_version(self, subject: str, version: int = -1) -> SchemaRecord:
        return self.store.get_version(subject, version)

    def versions(self, subject: str) -> list[int]:
        return self.store.versions(subject)

    def status(self) -> dict:
        master = self.master_identity()
        return {
            "host": self.config.host,
            "port": self.config.port,
            "eligible": self.config.master_eligible,
            "role": self.elector.role().value,
            "state": self.elector.state.value,
            "master": master.address if master else None,
            "members": [m.address for m in self.cluster_view()],
        }
