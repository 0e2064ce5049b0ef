"""gRPC round trips against servers bound to ephemeral localhost ports."""

from concurrent import futures

import grpc
import pytest

from registry.backend import start_backend
from registry.config import COUNTER_PATH, RegistryConfig
from registry.errors import (
    DuplicateIdError,
    IneligibleForMasterError,
    NodeUnavailableError,
    NotMasterError,
    SchemaNotFoundError,
)
from registry.identity import NodeIdentity
from registry.node import SchemaRegistryNode
from registry.node_server import NodeClient, NodeForwarder, NodeServicer
from registry.remote_store import RemoteStore
from registry.rpc import registry_pb2_grpc
from registry.store import SchemaRecord
from zk.client import ZkClient

from conftest import wait_until


@pytest.fixture
def backend(store):
    server, port = start_backend(0, store)
    yield f"localhost:{port}"
    server.stop(grace=None)


@pytest.fixture
def remote_store(backend):
    remote = RemoteStore(backend, timeout=2.0)
    yield remote
    remote.close()


@pytest.fixture
def serve_node(backend, zk_server):
    """Start registry nodes over gRPC, each with its own server on a free port."""
    started = []

    def factory(eligible: bool = True) -> NodeClient:
        server = grpc.server(futures.ThreadPoolExecutor(max_workers=4))
        port = server.add_insecure_port("localhost:0")
        config = RegistryConfig(host="localhost", port=port, master_eligible=eligible)
        forwarder = NodeForwarder(timeout=2.0)
        node = SchemaRegistryNode(
            config,
            ZkClient(zk_server.client(), name=f"node-{port}", timeout=1.0),
            RemoteStore(backend),
            forwarder=forwarder,
        )
        registry_pb2_grpc.add_NodeServicer_to_server(NodeServicer(node), server)
        server.start()
        node.start()
        client = NodeClient(f"localhost:{port}", timeout=2.0)
        started.append((server, node, forwarder, client))
        return client

    yield factory
    for server, node, forwarder, client in started:
        client.close()
        node.stop()
        server.stop(grace=None)
        forwarder.close()
        node.store.close()


def test_remote_store(remote_store, store):
    assert remote_store.max_id() == -1
    remote_store.append(SchemaRecord("s", 1, 7, "schema"))
    assert store.get_by_id(7).schema == "schema"
    assert remote_store.get_by_id(7) == SchemaRecord("s", 1, 7, "schema")
    assert remote_store.get_version("s") == SchemaRecord("s", 1, 7, "schema")
    assert remote_store.latest_version("s") == 1
    assert remote_store.versions("s") == [1]
    assert remote_store.lookup("s", "schema").id == 7
    assert remote_store.lookup("s", "other") is None
    assert remote_store.find_schema("schema").id == 7
    assert remote_store.find_schema("other") is None
    assert remote_store.max_id() == 7


def test_remote_store_errors(remote_store):
    remote_store.append(SchemaRecord("s", 1, 7, "schema"))
    with pytest.raises(SchemaNotFoundError):
        remote_store.get_by_id(8)
    with pytest.raises(SchemaNotFoundError):
        remote_store.get_version("missing", 1)
    with pytest.raises(DuplicateIdError):
        remote_store.append(SchemaRecord("t", 1, 7, "different schema"))


def test_unreachable_store():
    remote = RemoteStore("localhost:1", timeout=0.5)
    try:
        with pytest.raises(NodeUnavailableError):
            remote.max_id()
    finally:
        remote.close()


def test_nodes_over_grpc(serve_node, zk_server):
    master = serve_node()
    follower = serve_node()
    ineligible = serve_node(eligible=False)
    master_address = master.status()["master"]
    wait_until(lambda: follower.status()["master"] == master_address)
    wait_until(lambda: ineligible.status()["master"] == master_address)
    assert master.status()["role"] == "master"
    wait_until(lambda: len(master.status()["members"]) == 3)

    assert master.register("subject", "one") == 0
    assert follower.register("subject", "two") == 1
    assert ineligible.register("subject", "three") == 2
    assert ineligible.get_by_id(1).schema == "two"
    assert follower.get_version("subject").schema == "three"
    assert master.versions("subject") == [1, 2, 3]
    assert int(zk_server.value(COUNTER_PATH)) == 20

    with pytest.raises(SchemaNotFoundError):
        follower.get_by_id(99)

    host, _, port = ineligible.target.partition(":")
    with pytest.raises(IneligibleForMasterError):
        follower.set_master(NodeIdentity(host, int(port), False))

    status = master.set_master(None)
    assert status["role"] == "follower"
    assert status["master"] is None
    with pytest.raises(NotMasterError):
        master.register("subject", "four")


def test_unreachable_node():
    client = NodeClient("localhost:1", timeout=0.5)
    try:
        with pytest.raises(NodeUnavailableError):
            client.status()
    finally:
        client.close()
