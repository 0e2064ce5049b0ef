"""
Core server module providing ``NodeServicer``, ``NodeClient`` and the
``serve`` entry function.

This module forms the RPC surface of each registry node and is invoked by
the launcher ``python -m scripts.run_nodes``.
"""

from __future__ import annotations

import threading
from concurrent import futures

import grpc
from kazoo.client import KazooClient
from rich.console import Console

from zk.client import ZkClient

from .config import RegistryConfig
from .identity import NodeIdentity
from .node import SchemaRegistryNode
from .remote_store import RemoteStore
from .rpc import raise_for, record_from_message, record_to_message, registry_pb2, registry_pb2_grpc, rpc_errors
from .store import SchemaRecord, SchemaStore

__all__ = ["NodeServicer", "NodeClient", "NodeForwarder", "serve"]

console = Console()


def status_to_message(status: dict):
    return registry_pb2.NodeStatus(
        host=status["host"],
        port=status["port"],
        eligible=status["eligible"],
        role=status["role"],
        state=status["state"],
        master=status["master"] or "",
        members=status["members"],
    )


def status_from_message(message) -> dict:
    return {
        "host": message.host,
        "port": message.port,
        "eligible": message.eligible,
        "role": message.role,
        "state": message.state,
        "master": message.master or None,
        "members": list(message.members),
    }


class NodeServicer(registry_pb2_grpc.NodeServicer):
    """
    RPC handlers of one registry node.

    :param node: The node served.
    """

    def __init__(self, node: SchemaRegistryNode):
        self.node: SchemaRegistryNode = node

    @rpc_errors
    def Register(
            self,
            request,
            context: grpc.ServicerContext,
    ):
        """
        Handle a registration, forwarded or from a client.

        Note:
            Followers forward client requests to the master they observe; a
            request that was already forwarded is never forwarded again.

        :param request: Subject, schema text and the ``forwarded`` flag.
        :param context: RPC context.
        :return: The id assigned to the schema.
        """
        schema_id = self.node.register(request.subject, request.schema, forwarded=request.forwarded)
        return registry_pb2.SchemaId(id=schema_id)

    @rpc_errors
    def GetById(self, request, context):
        return record_to_message(self.node.get_by_id(request.id))

    @rpc_errors
    def GetVersion(self, request, context):
        return record_to_message(self.node.get_version(request.subject, request.version))

    @rpc_errors
    def Versions(self, request, context):
        return registry_pb2.VersionList(versions=self.node.versions(request.subject))

    @rpc_errors
    def Status(self, request, context):
        return status_to_message(self.node.status())

    @rpc_errors
    def SetMaster(
            self,
            request,
            context: grpc.ServicerContext,
    ):
        """
        Force the master seen by this node, or clear it.

        :param request: The master's address; unset to clear.
        :param context: RPC context.
        :return: The node's status after the change.
        """
        identity = None
        if request.HasField("master"):
            identity = NodeIdentity(request.master.host, request.master.port, request.master.eligible)
        self.node.set_master(identity)
        return status_to_message(self.node.status())


class NodeClient:
    """
    Client of a ``NodeServicer``.

    :param target: ``host:port`` of the node.
    :param timeout: Deadline in seconds per call.
    """

    def __init__(self, target: str, timeout: float = 5.0):
        self.target: str = target
        self.timeout: float = timeout
        self._channel = grpc.insecure_channel(target)
        self._stub = registry_pb2_grpc.NodeStub(self._channel)

    def close(self) -> None:
        self._channel.close()

    def _call(self, method, request):
        try:
            return method(request, timeout=self.timeout)
        except grpc.RpcError as e:
            raise_for(e, self.target)

    def register(self, subject: str, schema: str, forwarded: bool = False) -> int:
        request = registry_pb2.RegisterRequest(subject=subject, schema=schema, forwarded=forwarded)
        return self._call(self._stub.Register, request).id

    def get_by_id(self, schema_id: int) -> SchemaRecord:
        return record_from_message(self._call(self._stub.GetById, registry_pb2.SchemaId(id=schema_id)))

    def get_version(self, subject: str, version: int = -1) -> SchemaRecord:
        reply = self._call(self._stub.GetVersion, registry_pb2.SubjectVersion(subject=subject, version=version))
        return record_from_message(reply)

    def versions(self, subject: str) -> list[int]:
        return list(self._call(self._stub.Versions, registry_pb2.Subject(subject=subject)).versions)

    def status(self) -> dict:
        return status_from_message(self._call(self._stub.Status, registry_pb2.Empty()))

    def set_master(self, identity: NodeIdentity | None) -> dict:
        request = registry_pb2.SetMasterRequest()
        if identity is not None:
            request.master.CopyFrom(registry_pb2.NodeAddress(
                host=identity.host, port=identity.port, eligible=identity.master_eligible
            ))
        return status_from_message(self._call(self._stub.SetMaster, request))


class NodeForwarder:
    """
    ``Forwarder`` sending registrations to the master over gRPC, keeping one
    channel per master address.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout: float = timeout
        self._clients: dict[str, NodeClient] = {}
        self._lock = threading.Lock()

    def __call__(self, master: NodeIdentity, subject: str, schema: str) -> int:
        with self._lock:
            client = self._clients.get(master.address)
            if client is None:
                client = self._clients[master.address] = NodeClient(master.address, self.timeout)
        return client.register(subject, schema, forwarded=True)

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()


def serve(
    config: RegistryConfig,
    zk_hosts: str,
    store_target: str | None = None,
) -> None:
    """
    Launch a registry node and block until it is interrupted.

    Note:
        This function is invoked by ``scripts.run_nodes`` to start each node.
        The shared store lives in the backend process at ``store_target``;
        without one the node keeps a private store at ``config.store_path``.

    :param config: Node settings; ``config.port`` is the RPC port.
    :param zk_hosts: ZooKeeper connection string (``host:port[,host:port]``).
    :param store_target: ``host:port`` of the shared store, if any.
    :return: None
    """
    tag = config.identity.address
    zk = ZkClient(
        KazooClient(hosts=zk_hosts, timeout=config.session_timeout),
        name=tag,
        timeout=config.coordination_timeout,
    )
    if store_target is not None:
        store = RemoteStore(store_target, timeout=config.coordination_timeout)
    else:
        store = SchemaStore(config.store_path)
    forwarder = NodeForwarder(timeout=config.coordination_timeout)
    node = SchemaRegistryNode(config, zk, store, forwarder=forwarder)

    server = grpc.server(futures.ThreadPoolExecutor(max_workers=10))
    registry_pb2_grpc.add_NodeServicer_to_server(NodeServicer(node), server)
    server.add_insecure_port(f"[::]:{config.port}")
    server.start()
    console.log(f"[START] Node {tag} listening on port {config.port}")

    try:
        node.start()
        server.wait_for_termination()
    except KeyboardInterrupt:
        console.log(f"[{tag}] Interrupted, shutting down...")
    finally:
        node.stop()
        server.stop(grace=1)
        forwarder.close()
        if isinstance(store, RemoteStore):
            store.close()
