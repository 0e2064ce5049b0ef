"""
Exports ``WriteFencer``, the admission check standing between a write request
and the id allocator.
"""

from __future__ import annotations

from .allocator import IdBatchAllocator
from .election import MasterElector, Role
from .errors import NotMasterError

__all__ = ["WriteFencer"]


class WriteFencer:
    def __init__(self, elector: MasterElector, allocator: IdBatchAllocator):
        self.elector: MasterElector = elector
        self.allocator: IdBatchAllocator = allocator

    def check(self) -> None:
        """
        Reject the write unless this node is master.

        :raises NotMasterError: Carrying the master this node observes.
        """
        if self.elector.role() is not Role.MASTER:
            master = self.elector.current_master()
            raise NotMasterError(f"{self.elector.identity().address} is not the master", master=master)

    def admit(self) -> int:
        """
        Admit a write and allocate its id.

        Note:
            The allocator re-checks the role under its own lock; a demotion
            between the two checks surfaces as ``LostMastershipError`` and the
            caller must re-check rather than retry locally.

        :return: The id assigned to the write.
        :raises NotMasterError: If this node is a follower.
        :raises LostMastershipError: If mastership was lost during allocation.
        """
        self.check()
        return self.allocator.next_id()
