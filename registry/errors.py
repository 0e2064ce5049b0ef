"""
Exports the schema registry exception hierarchy.

Every error except ``CounterCorruptedError`` is recoverable by a state
transition (forward, retry, or report to the client).
"""

from __future__ import annotations

from .identity import NodeIdentity

__all__ = [
    "SchemaRegistryError",
    "NotMasterError",
    "LostMastershipError",
    "IneligibleForMasterError",
    "SchemaNotFoundError",
    "CounterCorruptedError",
    "DuplicateIdError",
    "NodeUnavailableError",
]


class SchemaRegistryError(Exception):
    """Base class for registry failures."""


class NotMasterError(SchemaRegistryError):
    """
    A write reached a node that is not the master.

    :param message: Human readable reason.
    :param master: The master observed by the rejecting node, if any.
    """

    def __init__(self, message: str = "not the master", master: NodeIdentity | None = None):
        super().__init__(message)
        self.master: NodeIdentity | None = master


class LostMastershipError(SchemaRegistryError):
    """The node stopped being master while an operation was in flight."""


class IneligibleForMasterError(SchemaRegistryError):
    """An ineligible node was about to be made master."""


class SchemaNotFoundError(SchemaRegistryError):
    """No schema matches the requested id, subject or version."""


class CounterCorruptedError(SchemaRegistryError):
    """The persisted id counter does not hold a decimal integer."""


class DuplicateIdError(SchemaRegistryError):
    """The store already holds a different record under this id."""


class NodeUnavailableError(SchemaRegistryError):
    """Another registry node (or the shared store) could not be reached."""
