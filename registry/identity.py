"""
Exports ``NodeIdentity``, the immutable description of one schema registry
process, and its encoding on the coordination service.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

__all__ = ["NodeIdentity"]

IDENTITY_FORMAT_VERSION = 1


@dataclass(frozen=True, order=True)
class NodeIdentity:
    """
    Network address of a node plus its eligibility to become master.

    Note:
        Equality, hashing and ordering use ``host`` and ``port`` only: two
        descriptions of the same address are the same node.
    """

    host: str
    port: int
    master_eligible: bool = field(default=True, compare=False)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def encode(self) -> str:
        """
        Serialize for storage in the leader and membership keys.

        :return: JSON document.
        """
        return json.dumps({
            "host": self.host,
            "port": self.port,
            "master_eligibility": self.master_eligible,
            "version": IDENTITY_FORMAT_VERSION,
        }, sort_keys=True)

    @classmethod
    def decode(cls, data: str) -> NodeIdentity:
        """
        Parse an identity written by ``encode``.

        :param data: JSON document.
        :return: The decoded identity.
        :raises ValueError: If ``data`` is not a valid identity document.
        """
        try:
            payload = json.loads(data)
            eligible = payload["master_eligibility"]
            if not isinstance(eligible, bool):
                raise ValueError(f"master_eligibility must be a boolean, got {eligible!r}")
            return cls(str(payload["host"]), int(payload["port"]), eligible)
        except (TypeError, KeyError, json.JSONDecodeError) as e:
            raise ValueError(f"Malformed node identity {data!r}: {e}") from e

    def __str__(self) -> str:
        tag = "eligible" if self.master_eligible else "ineligible"
        return f"{self.address} ({tag})"
