"""
Exports ``CoordinationUnavailable``, raised by ``ZkClient`` when ZooKeeper
cannot answer in time. Data-level failures (``NodeExistsError``,
``NoNodeError``, ``BadVersionError``) are kazoo's own exceptions.
"""

from __future__ import annotations

from kazoo.exceptions import KazooException

__all__ = ["CoordinationUnavailable"]


class CoordinationUnavailable(KazooException):
    """
    ZooKeeper could not be reached within the configured timeout, the
    connection dropped while a request was in flight, or the session expired.
    """
