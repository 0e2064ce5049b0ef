"""
Exports ``MasterElector``, the per-node state machine that contends for the
master key on the coordination service, caches the observed master, and
tracks live cluster members.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from kazoo.exceptions import KazooException, NodeExistsError, NoNodeError
from rich.console import Console

from zk.client import EventType, WatchEvent, ZkClient
from zk.errors import CoordinationUnavailable

from .config import RegistryConfig
from .errors import IneligibleForMasterError, SchemaRegistryError
from .identity import NodeIdentity

__all__ = ["MasterElector", "Role", "ElectorState"]

console = Console()

MasterListener = Callable[[NodeIdentity | None, NodeIdentity | None], None]


class Role(str, Enum):
    MASTER = "master"
    FOLLOWER = "follower"


class ElectorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONTENDING = "contending"
    MASTER = "master"
    FOLLOWER = "follower"
    STOPPED = "stopped"


@dataclass(frozen=True)
class _Snapshot:
    state: ElectorState
    master: NodeIdentity | None


class MasterElector:
    """
    Master election engine of one node.

    Note:
        Coordination events arrive in order on the client's dispatcher thread.
        Every change of the cached master, whether caused by an event or by a
        forced override, runs under ``_lock`` and publishes a new immutable
        snapshot; ``role()`` and ``current_master()`` read that snapshot
        without locking.

    :param config: Node settings (identity and coordination paths).
    :param zk: Started coordination client.
    :param on_acquire: Called, under the election lock, before this node is
        published as master. Raising aborts the transition and the node
        resigns.
    :param on_release: Called after this node stopped being master.
    """

    ELECTION_ATTEMPTS = 5

    def __init__(
        self,
        config: RegistryConfig,
        zk: ZkClient,
        on_acquire: Callable[[], object] | None = None,
        on_release: Callable[[], None] | None = None,
    ):
        self.config: RegistryConfig = config
        self.zk: ZkClient = zk
        self.on_acquire = on_acquire
        self.on_release = on_release
        self.tag: str = config.identity.address

        self._identity: NodeIdentity = config.identity
        self._lock = threading.RLock()
        self._snapshot = _Snapshot(ElectorState.UNINITIALIZED, None)
        self._members: dict[str, NodeIdentity] = {}
        self._listeners: list[MasterListener] = []
        self._may_contend: bool = self._identity.master_eligible

    # ----------------------------------------------------------------------
    # Read side (lock free)
    # ----------------------------------------------------------------------
    def identity(self) -> NodeIdentity:
        return self._identity

    def role(self) -> Role:
        """
        Role of this node according to its local cache.

        :return: ``Role.MASTER`` or ``Role.FOLLOWER``.
        """
        return Role.MASTER if self._snapshot.state is ElectorState.MASTER else Role.FOLLOWER

    def is_master(self) -> bool:
        return self._snapshot.state is ElectorState.MASTER

    def current_master(self) -> NodeIdentity | None:
        """
        Master observed by this node.

        Note:
            May lag the coordination service by its notification latency.

        :return: The cached master identity, or ``None`` if unknown.
        """
        return self._snapshot.master

    @property
    def state(self) -> ElectorState:
        return self._snapshot.state

    def cluster_view(self) -> list[NodeIdentity]:
        """
        Live nodes as reported by membership keys.

        :return: Sorted identities.
        """
        return sorted(self._members.values())

    def add_listener(self, listener: MasterListener) -> None:
        """
        Register ``listener(previous, current)``, called after every change
        of the cached master.
        """
        self._listeners.append(listener)

    # ----------------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------------
    def start(self) -> None:
        """
        Join the cluster and run the first election.

        Note:
            Registers this node's membership key, then contends for the master
            key if eligible. An ineligible node only reads the key.

        :raises CounterCorruptedError: If this node won the election but the
            persisted id counter is malformed.
        :raises CoordinationUnavailable: If the coordination service is down.
        """
        with self._lock:
            if self._snapshot.state is not ElectorState.UNINITIALIZED:
                raise SchemaRegistryError(f"{self.tag} elector already started")
            self.zk.add_listener(self._on_event)
            self._publish(ElectorState.CONTENDING, None)
            self.zk.ensure_path(self.config.members_path)
            self.zk.watch_children(self.config.members_path)
            self.zk.watch_data(self.config.master_path)
            self._register_member()
            self._refresh_members()
            self._elect(raise_errors=True)

    def stop(self) -> None:
        """
        Leave the cluster.

        Note:
            A master deletes the master key itself so the remaining nodes
            re-elect immediately instead of waiting for session expiry.

        :return: None
        """
        with self._lock:
            previous = self._snapshot
            if previous.state is ElectorState.STOPPED:
                return
            self.zk.remove_listener(self._on_event)
            self._publish(ElectorState.STOPPED, None)
            if previous.state is ElectorState.MASTER:
                self._release()
                self._delete_own_master_key()
            try:
                self.zk.delete(self._member_path())
            except (NoNodeError, CoordinationUnavailable):
                pass  # gone with the session anyway
            console.log(f"[{self.tag}] Elector stopped")
            self._notify(previous.master, None)

    # ----------------------------------------------------------------------
    # Forced override
    # ----------------------------------------------------------------------
    def set_master(self, identity: NodeIdentity | None) -> None:
        """
        Force the cached master, bypassing the coordination service.

        Note:
            Used by operators and tests to simulate split-brain or failover.
            Forcing this node as master reserves a fresh id batch, exactly like
            winning an election.

        :param identity: Identity to assume as master, or ``None`` to clear.
        :raises IneligibleForMasterError: If ``identity`` is not eligible; the
            state is left unchanged.
        """
        if identity is not None and not identity.master_eligible:
            raise IneligibleForMasterError(f"Tried to set an ineligible node to master: {identity}")
        if identity == self._identity and not self._identity.master_eligible:
            raise IneligibleForMasterError(f"{self.tag} is not eligible to become master")
        with self._lock:
            if self._snapshot.state is ElectorState.STOPPED:
                raise SchemaRegistryError(f"{self.tag} elector is stopped")
            console.log(f"[{self.tag}] Forcing master to {identity}")
            self._apply_master(identity, raise_errors=True)

    # ----------------------------------------------------------------------
    # Event handling (dispatcher thread)
    # ----------------------------------------------------------------------
    def _on_event(self, event: WatchEvent) -> None:
        """
        Apply one coordination event (dispatcher thread).

        Note:
            If ZooKeeper fails while the event is handled, a full resync
            (re-register, refresh members, re-elect) is scheduled after
            ``config.retry_delay`` and repeated until it succeeds or the
            session is lost again.
        """
        with self._lock:
            if self._snapshot.state in (ElectorState.STOPPED, ElectorState.UNINITIALIZED):
                return
            try:
                self._handle(event)
            except KazooException as e:
                console.log(
                    f"[{self.tag}] Handling {event.type.value} failed, resyncing in "
                    f"{self.config.retry_delay}s: {e!r}"
                )
                self.zk.defer(WatchEvent(EventType.CONNECTED), self.config.retry_delay)

    def _handle(self, event: WatchEvent) -> None:
        if event.type in (EventType.SESSION_EXPIRED, EventType.CONNECTION_LOST):
            console.log(f"[{self.tag}] Coordination session lost, demoting to follower")
            self._apply_master(None)
        elif event.type == EventType.CONNECTED:
            self._may_contend = self._identity.master_eligible
            self._register_member()
            self._refresh_members()
            self._elect()
        elif event.type == EventType.CHILDREN:
            self._refresh_members()
        elif event.path == self.config.master_path:
            if event.type == EventType.DELETED:
                console.log(f"[{self.tag}] Master key released, re-electing")
                self._apply_master(None)
                self._elect()
            else:
                self._read_master()

    # ----------------------------------------------------------------------
    # Election
    # ----------------------------------------------------------------------
    def _elect(self, raise_errors: bool = False) -> None:
        """
        Contend for the master key (if eligible) or read its holder.

        Note:
            ZooKeeper lets exactly one create of the ephemeral key succeed;
            every loser falls back to reading the winner. A holder that
            vanishes between the create and the read sends an eligible node
            back to contending.

        :param raise_errors: Propagate a failed takeover instead of logging it
            (used at startup, where a corrupted counter is fatal).
        :raises CoordinationUnavailable: If ZooKeeper could not be reached, or
            the master key kept changing; the cached master is cleared first.
        """
        for _ in range(self.ELECTION_ATTEMPTS):
            if self._may_contend:
                try:
                    self.zk.create(self.config.master_path, self._identity.encode(), ephemeral=True)
                except NodeExistsError:
                    pass
                except CoordinationUnavailable as e:
                    console.log(f"[{self.tag}] Election failed: {e}")
                    self._apply_master(None)
                    raise
                else:
                    console.log(f"[{self.tag}] Won the master election")
                    self._apply_master(self._identity, raise_errors=raise_errors)
                    return
            try:
                data, _ = self.zk.get(self.config.master_path)
            except NoNodeError:
                if self._may_contend:
                    continue
                self._apply_master(None)
                return
            except CoordinationUnavailable:
                self._apply_master(None)
                raise
            self._apply_master(self._decode_master(data))
            return
        self._apply_master(None)
        raise CoordinationUnavailable(f"master key kept changing during {self.ELECTION_ATTEMPTS} attempts")

    def _read_master(self) -> None:
        try:
            data, _ = self.zk.get(self.config.master_path)
        except NoNodeError:
            self._elect()
            return
        except CoordinationUnavailable:
            self._apply_master(None)
            raise
        self._apply_master(self._decode_master(data))

    def _decode_master(self, data: str) -> NodeIdentity | None:
        try:
            master = NodeIdentity.decode(data)
        except ValueError as e:
            console.log(f"[{self.tag}] Ignoring malformed master key: {e}")
            return None
        if not master.master_eligible:
            console.log(f"[{self.tag}] Ignoring ineligible master {master}")
            return None
        return master

    def _apply_master(self, master: NodeIdentity | None, raise_errors: bool = False) -> None:
        """
        Single-writer update of the cached master (lock held).

        Note:
            Becoming master reserves an id batch through ``on_acquire`` before
            the new role is published. Losing mastership publishes the
            follower role first, so allocations in flight fail their role
            re-check, then releases the batch.

        :param master: New master identity, or ``None``.
        :param raise_errors: Re-raise a failed ``on_acquire``. Coordination
            failures are always re-raised so the caller can retry.
        :return: None
        """
        previous = self._snapshot
        if previous.state is ElectorState.STOPPED:
            return

        if master is not None and master == self._identity:
            if previous.state is ElectorState.MASTER:
                return
            try:
                if self.on_acquire is not None:
                    self.on_acquire()
            except (SchemaRegistryError, KazooException) as e:
                console.log(f"[{self.tag}] Could not take over as master: {e!r}")
                self._resign()
                self._publish(ElectorState.FOLLOWER, None)
                self._notify(previous.master, None)
                if raise_errors or isinstance(e, KazooException):
                    raise
                return
            self._publish(ElectorState.MASTER, self._identity)
            console.log(f"[{self.tag}] Became MASTER")
        else:
            if previous.state is ElectorState.FOLLOWER and previous.master == master:
                return
            self._publish(ElectorState.FOLLOWER, master)
            if previous.state is ElectorState.MASTER:
                console.log(f"[{self.tag}] Demoted to follower (master is {master})")
                self._release()
            else:
                console.log(f"[{self.tag}] Following master {master}")
        self._notify(previous.master, self._snapshot.master)

    def _resign(self) -> None:
        """
        Give up the master key after a failed takeover so another eligible
        node can win; stop contending until the next session.
        """
        self._may_contend = False
        self._delete_own_master_key()

    def _release(self) -> None:
        if self.on_release is not None:
            self.on_release()

    def _delete_own_master_key(self) -> None:
        try:
            data, version = self.zk.get(self.config.master_path)
            if self._decode_master(data) == self._identity:
                self.zk.delete(self.config.master_path, version=version)
                console.log(f"[{self.tag}] Released the master key")
        except KazooException as e:
            console.log(f"[{self.tag}] Master key not released: {e!r}")

    # ----------------------------------------------------------------------
    # Membership
    # ----------------------------------------------------------------------
    def _member_path(self) -> str:
        return f"{self.config.members_path}/{self._identity.address}"

    def _register_member(self) -> None:
        try:
            self.zk.create(self._member_path(), self._identity.encode(), ephemeral=True, makepath=True)
        except NodeExistsError:
            console.log(f"[{self.tag}] Membership key already present")

    def _refresh_members(self) -> None:
        members: dict[str, NodeIdentity] = {}
        for name in self.zk.children(self.config.members_path):
            try:
                data, _ = self.zk.get(f"{self.config.members_path}/{name}")
                members[name] = NodeIdentity.decode(data)
            except NoNodeError:
                continue
            except ValueError as e:
                console.log(f"[{self.tag}] Ignoring member {name}: {e}")
        self._members = members

    # ----------------------------------------------------------------------
    # Publication
    # ----------------------------------------------------------------------
    def _publish(self, state: ElectorState, master: NodeIdentity | None) -> None:
        self._snapshot = _Snapshot(state, master)

    def _notify(self, previous: NodeIdentity | None, current: NodeIdentity | None) -> None:
        if previous == current:
            return
        for listener in list(self._listeners):
            listener(previous, current)
