"""Shared fixtures and helpers for schema registry tests."""

import time
from typing import Callable

import pytest

from registry.config import RegistryConfig
from registry.node import SchemaRegistryNode
from registry.store import SchemaStore
from zk.client import ZkClient

from zk_fake import FakeZooKeeper


def wait_until(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``condition`` until it holds; fail the test after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return
        time.sleep(interval)
    assert condition(), f"condition not met within {timeout}s"


@pytest.fixture
def zk_server():
    return FakeZooKeeper()


@pytest.fixture
def store():
    return SchemaStore()


@pytest.fixture
def make_client(zk_server):
    """Factory for started ``ZkClient`` instances on the fake ensemble, closed after the test."""
    clients = []

    def factory(name: str = "zk") -> ZkClient:
        client = ZkClient(zk_server.client(), name=name, timeout=1.0)
        client.start()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def make_node(zk_server, store):
    """
    Factory for registry nodes sharing one ZooKeeper ensemble and one store.

    Pass ``start=False`` to get an unstarted node.
    """
    nodes = []

    def factory(port: int, eligible: bool = True, batch_size: int = 20,
                start: bool = True, forwarder=None) -> SchemaRegistryNode:
        config = RegistryConfig(host="localhost", port=port, master_eligible=eligible,
                                id_batch_size=batch_size, retry_delay=0.05)
        zk = ZkClient(zk_server.client(), name=f"localhost:{port}", timeout=1.0)
        node = SchemaRegistryNode(config, zk, store, forwarder=forwarder)
        nodes.append(node)
        if start:
            node.start()
        return node

    yield factory
    for node in nodes:
        if not node.zk.closed:
            node.stop()
