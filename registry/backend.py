"""
Exports ``start_backend`` and ``serve_backend``: the gRPC server hosting the
schema store every node of a cluster shares.
"""

from __future__ import annotations

from concurrent import futures
from pathlib import Path

import grpc
from rich.console import Console

from .remote_store import StoreServicer
from .rpc import registry_pb2_grpc
from .store import SchemaStore

__all__ = ["start_backend", "serve_backend"]

console = Console()


def start_backend(
    port: int = 0,
    store: SchemaStore | None = None,
    max_workers: int = 16,
) -> tuple[grpc.Server, int]:
    """
    Start the store server.

    :param port: Listening port, ``0`` for any free port.
    :param store: Schema store; a fresh in-memory one when omitted.
    :param max_workers: gRPC worker threads.
    :return: The started server and the port it is bound to.
    """
    if store is None:
        store = SchemaStore()
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    registry_pb2_grpc.add_StoreServicer_to_server(StoreServicer(store), server)
    bound = server.add_insecure_port(f"[::]:{port}")
    server.start()
    console.log(f"[backend] Schema store listening on port {bound}")
    return server, bound


def serve_backend(port: int, store_path: str | Path | None = None) -> None:
    """
    Run the store server until interrupted.

    Note:
        This function is invoked by ``scripts.run_nodes`` in its own process.

    :param port: Listening port.
    :param store_path: Optional pickle file persisting the schema store.
    :return: None
    """
    server, _ = start_backend(port, SchemaStore(store_path))
    try:
        server.wait_for_termination()
    except KeyboardInterrupt:
        console.log("[backend] Interrupted, shutting down...")
    finally:
        server.stop(grace=1)
