from typing import List, Optional

import click
from kazoo.client import KazooClient
from kazoo.exceptions import KazooException, NoNodeError
from kazoo.handlers.threading import KazooTimeoutError

from registry.config import COUNTER_PATH, MASTER_PATH, MEMBERS_PATH
from registry.errors import SchemaRegistryError
from registry.identity import NodeIdentity
from registry.node_server import NodeClient

COORDINATION_ERRORS = (KazooException, KazooTimeoutError)


class RegistryShell:
    """
    Interactive shell for operating a schema registry cluster.

    Note:
        Registry commands (``status``, ``register``, ``get``, ``versions``,
        ``master``) go to the node picked with ``connect``. Cluster commands
        (``nodes``, ``counter``) read ZooKeeper directly.

    Usage:
        Create an instance and call ``run()`` to start the shell loop.
    """

    def __init__(self, zk_hosts: str):
        self.zk_hosts = zk_hosts
        self.node: Optional[NodeClient] = None
        self.zk: Optional[KazooClient] = None
        self.prompt = "registry> "

    # ------------------------------------------------
    def run(self) -> None:
        """
        Start the interactive command shell.

        Note:
            This method enters a blocking REPL loop and does not return until
            the user quits.

        :return: None
        """
        print("Schema Registry Shell")
        print("Type 'help' for commands.")
        try:
            self._loop()
        finally:
            self.close()

    def _loop(self) -> None:
        while True:
            try:
                line = input(self.prompt).strip()
            except EOFError:
                print("\nBye.")
                return

            if not line:
                print("Not a valid command.")
                print("Type 'help' for commands.")
                continue

            parts = line.split()
            cmd = parts[0].lower()

            if cmd in ("exit", "quit"):
                print("Bye.")
                return

            elif cmd == "help":
                self.print_help()

            elif cmd == "nodes":
                self.list_nodes()

            elif cmd == "counter":
                self.counter(parts[1:])

            elif cmd == "connect":
                if len(parts) == 1:
                    master = self.get_master()
                    if master is None:
                        print("No master elected.")
                        continue
                    self.connect(master.host, str(master.port))
                elif len(parts) == 3:
                    self.connect(parts[1], parts[2])
                else:
                    print("Usage: connect [<host> <port>] or connect (auto)")

            elif cmd in ("status", "register", "get", "versions", "master"):
                if not self.node:
                    print("Not connected. Use 'connect' first.")
                    continue
                self.handle_request(cmd, parts)

            else:
                print(f"Unknown command: {cmd}")

    @staticmethod
    def print_help() -> None:
        print("""
Commands:
  nodes                          Show live nodes and the current master
  connect                        Auto-connect to the current master
  connect <host> <port>          Connect to a node
  status                         Show role and view of the connected node
  register <subject> <schema>    Register a schema (rest of the line)
  get <id>                       Fetch a schema by id
  get <subject> [<version>]      Fetch a subject version (latest by default)
  versions <subject>             List the versions of a subject
  master set <host> <port>       Force the master seen by the connected node
  master clear                   Clear the master seen by the connected node
  counter [<value>]              Read (or overwrite) the id counter [DEBUG ONLY]
  exit                           Quit shell
""")

    def close(self) -> None:
        if self.node:
            self.node.close()
            self.node = None
        self._drop_coordination()

    # ------------------------------------------------
    # ZooKeeper
    # ------------------------------------------------
    def _coordination(self) -> KazooClient:
        """
        Open the ZooKeeper session on first use.

        :return: A started client.
        """
        if self.zk is None:
            client = KazooClient(hosts=self.zk_hosts)
            try:
                client.start(timeout=5)
            except KazooTimeoutError:
                client.stop()
                client.close()
                raise
            self.zk = client
        return self.zk

    def get_master(self) -> Optional[NodeIdentity]:
        """
        Read the current master from ZooKeeper.

        :return: The master's identity, or ``None`` if there is none.
        """
        try:
            data, _ = self._coordination().get(MASTER_PATH)
            return NodeIdentity.decode(data.decode())
        except NoNodeError:
            return None
        except (*COORDINATION_ERRORS, ValueError) as e:
            print(f"❌ Cannot read master: {e}")
            self._drop_coordination()
            return None

    def list_nodes(self) -> None:
        """
        Display the live cluster members.

        Note:
            Members are the ephemeral keys under the membership path, so a
            node disappears from the list once its session ends.

        :return: None
        """
        try:
            members = sorted(self._coordination().get_children(MEMBERS_PATH))
        except NoNodeError:
            members = []
        except COORDINATION_ERRORS as e:
            print(f"❌ Cannot reach ZooKeeper: {e!r}")
            self._drop_coordination()
            return
        master = self.get_master()
        if not members:
            print("⚠️  No live nodes found.")
            return
        print("Current cluster nodes:")
        for address in members:
            is_master = master is not None and master.address == address
            tag = "⭐" if is_master else " "
            role = "master" if is_master else "member"
            print(f" {tag} {role:<8} {address}")

    def counter(self, args: List[str]) -> None:
        """
        Show the persisted id counter, or overwrite it with ``args[0]``.

        Note:
            Overwriting is meant for exercising the allocator: the master
            reconciles the counter against the store, so a lowered counter
            never leads to reused ids.

        :param args: Optional new value.
        :return: None
        """
        try:
            zk = self._coordination()
            if not args:
                data, stat = zk.get(COUNTER_PATH)
                print(f"[Counter] {data.decode()} (version {stat.version})")
                return
            value = str(int(args[0]))
            try:
                zk.set(COUNTER_PATH, value.encode())
            except NoNodeError:
                zk.create(COUNTER_PATH, value.encode())
            print(f"[Counter] set to {value}")
        except NoNodeError:
            print("[Counter] not initialised yet")
        except ValueError:
            print("Usage: counter [<integer>]")
        except COORDINATION_ERRORS as e:
            print(f"❌ ZooKeeper error: {e!r}")
            self._drop_coordination()

    def _drop_coordination(self) -> None:
        if self.zk:
            self.zk.stop()
            self.zk.close()
            self.zk = None

    # ------------------------------------------------
    # Registry node
    # ------------------------------------------------
    def connect(self, host: str, port: str) -> None:
        """
        Connect to a registry node.

        Note:
            The node is asked for its status to make sure it is reachable.
            If that fails, the client is cleared and an error is printed.

        :param host: Hostname or IP of the target node.
        :param port: Port number of the target node.
        :return: None
        """
        if self.node:
            self.node.close()
        self.node = NodeClient(f"{host}:{port}", timeout=2.0)
        try:
            status = self.node.status()
            print(f"✅ Connected to {host}:{port} ({status['role']})")
        except SchemaRegistryError as e:
            print(f"❌ Connection failed: {e}")
            self.node.close()
            self.node = None
            print("Please try 'connect' again once a node is available.")

    def handle_request(self, cmd: str, parts: List[str]) -> None:
        """
        Dispatch a request to the connected node.

        :param cmd: Command keyword.
        :param parts: Full command split into tokens.
        :return: None
        """
        try:
            if cmd == "status":
                self.print_status(self.node.status())
            elif cmd == "register" and len(parts) >= 3:
                schema = " ".join(parts[2:])
                schema_id = self.node.register(parts[1], schema)
                print(f"[Server] {parts[1]} registered with id {schema_id}")
            elif cmd == "get" and len(parts) == 2 and parts[1].isdigit():
                self.print_record(self.node.get_by_id(int(parts[1])))
            elif cmd == "get" and len(parts) in (2, 3):
                version = int(parts[2]) if len(parts) == 3 else -1
                self.print_record(self.node.get_version(parts[1], version))
            elif cmd == "versions" and len(parts) == 2:
                print(f"[Server] {parts[1]}: {self.node.versions(parts[1])}")
            elif cmd == "master" and parts[1:2] == ["clear"]:
                self.print_status(self.node.set_master(None))
            elif cmd == "master" and len(parts) == 4 and parts[1] == "set":
                self.print_status(self.node.set_master(NodeIdentity(parts[2], int(parts[3]))))
            else:
                print("Invalid command or missing value.")
        except ValueError:
            print("Invalid command or missing value.")
        except SchemaRegistryError as e:
            print(f"❌ {type(e).__name__}: {e}")

    @staticmethod
    def print_status(status: dict) -> None:
        print(f"[Server] {status['host']}:{status['port']} role={status['role']} "
              f"state={status['state']} eligible={status['eligible']}")
        print(f"[Master] {status.get('master') or '(none)'}")
        print(f"[Members] {', '.join(status.get('members', [])) or '(none)'}")

    @staticmethod
    def print_record(record) -> None:
        print(f"[Schema] id={record.id} subject={record.subject} version={record.version}")
        print(record.schema)


@click.command()
@click.option("--zk-hosts", default="127.0.0.1:2181", help="ZooKeeper connection string")
def main(zk_hosts: str) -> None:
    """
    Entry point for launching the command shell.

    :return: None
    """
    shell = RegistryShell(zk_hosts)
    shell.run()


if __name__ == "__main__":
    main()
