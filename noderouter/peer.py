"""State kept for each connected peer."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Hashable


class NodeType(Enum):
    """The role a node plays in the network."""

    CLIENT = "client"
    PROVER = "prover"
    VALIDATOR = "validator"
    BEACON = "beacon"

    def is_beacon(self) -> bool:
        return self is NodeType.BEACON

    def is_validator(self) -> bool:
        return self is NodeType.VALIDATOR

    def is_prover(self) -> bool:
        return self is NodeType.PROVER

    def is_client(self) -> bool:
        return self is NodeType.CLIENT

    def __str__(self) -> str:
        return self.value


@dataclass
class Peer:
    """A connected peer.

    ``ip`` is the peer's listening address; ``first_seen`` and ``last_seen``
    are monotonic clock readings.
    """

    ip: Hashable
    address: str
    node_type: NodeType
    version: int
    first_seen: float = field(default_factory=time.monotonic)
    last_seen: float = field(default_factory=time.monotonic)

    def is_beacon(self) -> bool:
        return self.node_type.is_beacon()

    def is_validator(self) -> bool:
        return self.node_type.is_validator()

    def is_prover(self) -> bool:
        return self.node_type.is_prover()

    def is_client(self) -> bool:
        return self.node_type.is_client()

    def touch(self) -> None:
        """Record that a message was just received from this peer."""
        self.last_seen = time.monotonic()