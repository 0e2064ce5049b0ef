"""
Exports ``IdBatchAllocator``, which hands out strictly increasing schema ids
from batches reserved on the coordination service, and
``reconcile_next_batch``, the pure rule choosing where a new batch starts.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Protocol

from kazoo.exceptions import BadVersionError, KazooException, NodeExistsError, NoNodeError
from rich.console import Console

from zk.client import ZkClient

from .errors import CounterCorruptedError, LostMastershipError, NodeUnavailableError

__all__ = ["IdBatchAllocator", "IdBatch", "reconcile_next_batch", "parse_counter"]

console = Console()


class MaxIdSource(Protocol):
    def max_id(self) -> int: ...


def reconcile_next_batch(
    counter: int | None,
    max_assigned: int,
    batch_size: int,
    floor: int = 0,
) -> int:
    """
    Choose the first id of the next batch.

    Note:
        The result is the smallest multiple of ``batch_size`` that is at
        least the persisted counter, strictly greater than the highest id in
        the store, and at least ``floor``. A counter reset to a lower value
        (even zero) therefore never leads to reuse, and a counter that is not
        batch-aligned is bumped to the next boundary.

    :param counter: Persisted counter value, or ``None`` if absent.
    :param max_assigned: Highest id durably stored (``-1`` when empty).
    :param batch_size: Ids per batch.
    :param floor: Lower bound from the batch being replaced (its end).
    :return: Batch-aligned start of the next batch.
    """
    candidate = max(counter or 0, max_assigned + 1, floor, 0)
    return -(-candidate // batch_size) * batch_size


def parse_counter(data: str) -> int:
    """
    Parse the persisted counter.

    :raises CounterCorruptedError: If ``data`` is not a decimal integer.
    """
    try:
        return int(data.strip())
    except (AttributeError, ValueError) as e:
        raise CounterCorruptedError(f"id counter holds {data!r}, not an integer") from e


@dataclass
class IdBatch:
    batch_start: int
    batch_size: int
    next_offset: int = 0

    @property
    def exhausted(self) -> bool:
        return self.next_offset >= self.batch_size

    @property
    def end(self) -> int:
        return self.batch_start + self.batch_size


class IdBatchAllocator:
    """
    Per-node id allocator, active only while the node is master.

    :param zk: Coordination client holding the counter.
    :param store: Source of the highest durably assigned id.
    :param is_master: Role check consulted on every allocation.
    :param batch_size: Ids reserved per counter write.
    :param counter_path: Key of the persisted counter.
    :param name: Tag used in log lines.
    :param max_attempts: Compare-and-set retries before giving up.
    """

    def __init__(
        self,
        zk: ZkClient,
        store: MaxIdSource,
        is_master: Callable[[], bool],
        batch_size: int,
        counter_path: str,
        name: str = "allocator",
        max_attempts: int = 10,
    ):
        self.zk = zk
        self.store = store
        self.is_master = is_master
        self.batch_size: int = batch_size
        self.counter_path: str = counter_path
        self.name: str = name
        self.max_attempts: int = max_attempts

        self._lock = threading.Lock()
        self._batch: IdBatch | None = None

    @property
    def batch(self) -> IdBatch | None:
        return self._batch

    # ----------------------------------------------------------------------
    # Mastership transitions
    # ----------------------------------------------------------------------
    def on_become_master(self) -> IdBatch:
        """
        Reserve a fresh batch after this node acquired mastership.

        Note:
            Called before the new role is published, so no allocation can
            observe the node as master without a batch.

        :return: The reserved batch.
        :raises CounterCorruptedError: If the counter cannot be parsed.
        :raises LostMastershipError: If the counter kept changing under us.
        :raises CoordinationUnavailable: If the coordination service is down.
        """
        with self._lock:
            self._batch = None
            self._batch = IdBatch(self._reserve(floor=0), self.batch_size)
            return self._batch

    def invalidate(self) -> None:
        """Discard the current batch; its unused ids are never handed out."""
        with self._lock:
            if self._batch is not None:
                console.log(
                    f"[{self.name}] Dropping id batch {self._batch.batch_start}"
                    f"..{self._batch.end - 1} at offset {self._batch.next_offset}"
                )
            self._batch = None

    # ----------------------------------------------------------------------
    # Allocation
    # ----------------------------------------------------------------------
    def next_id(self) -> int:
        """
        Hand out the next id.

        Note:
            Handing out the last id of a batch immediately reserves the next
            one, so the persisted counter always stays ahead of every id in
            use. If that reservation fails, it is retried on the next call.

        :return: A unique id, greater than every id handed out before.
        :raises LostMastershipError: If the node is not (or no longer) master,
            or no batch could be reserved.
        :raises CounterCorruptedError: If the batch is used up and the counter
            cannot be parsed.
        """
        with self._lock:
            if not self.is_master() or self._batch is None:
                raise LostMastershipError(f"{self.name} is not the master")

            batch = self._batch
            if batch.exhausted:
                try:
                    batch = self._roll_over(batch)
                except (KazooException, NodeUnavailableError) as e:
                    raise LostMastershipError(f"{self.name} could not reserve an id batch: {e}") from e

            schema_id = batch.batch_start + batch.next_offset
            batch.next_offset += 1

            if batch.exhausted:
                try:
                    self._roll_over(batch)
                except (KazooException, NodeUnavailableError, LostMastershipError,
                        CounterCorruptedError) as e:
                    console.log(f"[{self.name}] Could not reserve next id batch yet: {e!r}")

            if not self.is_master():
                self._batch = None
                raise LostMastershipError(f"{self.name} lost mastership during allocation")
            return schema_id

    def _roll_over(self, batch: IdBatch) -> IdBatch:
        start = self._reserve(floor=batch.end)
        self._batch = IdBatch(start, self.batch_size)
        return self._batch

    # ----------------------------------------------------------------------
    # Counter reservation
    # ----------------------------------------------------------------------
    def _reserve(self, floor: int) -> int:
        """
        Reserve ``[start, start + batch_size)`` on the persisted counter.

        Note:
            The counter is only written with create-if-absent or a
            compare-and-set on the version just read, so two nodes racing to
            reserve never both succeed with the same range.

        :param floor: Smallest acceptable batch start.
        :return: Start of the reserved batch.
        """
        for attempt in range(1, self.max_attempts + 1):
            max_assigned = self.store.max_id()
            try:
                data, version = self.zk.get(self.counter_path)
            except NoNodeError:
                start = reconcile_next_batch(None, max_assigned, self.batch_size, floor)
                try:
                    self.zk.create(self.counter_path, str(start + self.batch_size))
                except NodeExistsError:
                    continue
                self._log_reservation(start, None, max_assigned)
                return start

            counter = parse_counter(data)
            start = reconcile_next_batch(counter, max_assigned, self.batch_size, floor)
            if counter % self.batch_size != 0:
                console.log(
                    f"[{self.name}] Id counter {counter} is not a multiple of "
                    f"{self.batch_size}; bumping to the next batch"
                )
            try:
                self.zk.set(self.counter_path, str(start + self.batch_size), version=version)
            except (BadVersionError, NoNodeError):
                console.log(f"[{self.name}] Id counter changed concurrently (attempt {attempt})")
                continue
            self._log_reservation(start, counter, max_assigned)
            return start

        raise LostMastershipError(
            f"{self.name} could not reserve an id batch after {self.max_attempts} attempts"
        )

    def _log_reservation(self, start: int, counter: int | None, max_assigned: int) -> None:
        console.log(
            f"[{self.name}] Reserved ids {start}..{start + self.batch_size - 1} "
            f"(counter={counter}, store max={max_assigned})"
        )
