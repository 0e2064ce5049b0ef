# scripts/run_nodes.py
import multiprocessing

import click

from registry.backend import serve_backend
from registry.config import ID_BATCH_SIZE, RegistryConfig
from registry.node_server import serve


@click.command()
@click.option("--count", default=3, help="Number of master-eligible nodes to launch")
@click.option("--ineligible", default=0, help="Number of additional master-ineligible nodes")
@click.option("--base-port", default=50050, help="Port of the first node")
@click.option("--zk-hosts", default="127.0.0.1:2181", help="ZooKeeper connection string")
@click.option("--backend-port", default=50049, help="Port of the shared schema store")
@click.option("--batch-size", default=ID_BATCH_SIZE, help="Schema ids reserved per counter write")
@click.option("--session-timeout", default=6.0, help="ZooKeeper session timeout in seconds")
@click.option("--store-path", default=None, type=click.Path(dir_okay=False), help="Pickle file for the schema store")
def run_nodes(count, ineligible, base_port, zk_hosts, backend_port, batch_size, session_timeout, store_path):
    """
    Example:
        python -m scripts.run_nodes --count 3 --ineligible 2 --zk-hosts 127.0.0.1:2181
    """
    backend_target = f"localhost:{backend_port}"
    backend = multiprocessing.Process(target=serve_backend, args=(backend_port, store_path))
    backend.start()
    print(f"[INIT] Started schema store on port {backend_port}")

    processes = [backend]
    for i in range(count + ineligible):
        config = RegistryConfig(
            host="localhost",
            port=base_port + i,
            master_eligible=i < count,
            id_batch_size=batch_size,
            session_timeout=session_timeout,
        )
        p = multiprocessing.Process(target=serve, args=(config, zk_hosts, backend_target))
        p.start()
        processes.append(p)
        print(f"[INIT] Started node {config.identity}")

    try:
        for p in processes:
            p.join()
    except KeyboardInterrupt:
        print("\nStopping all nodes...")
        for p in reversed(processes):
            if p.is_alive():
                p.terminate()
                p.join()
        print("All nodes stopped.")


if __name__ == "__main__":
    run_nodes()
