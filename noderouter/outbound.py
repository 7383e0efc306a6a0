"""Sending messages to connected peers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Hashable, Iterable, Optional

from noderouter.cache import BlockRequest
from noderouter.router import Address, Router

logger = logging.getLogger(__name__)


class DisconnectReason(Enum):
    """Why a peer is being disconnected."""

    INVALID_CHALLENGE_RESPONSE = "InvalidChallengeResponse"
    OUTDATED_CLIENT_VERSION = "OutdatedClientVersion"
    PEER_REFRESH = "PeerRefresh"
    PROTOCOL_VIOLATION = "ProtocolViolation"
    TOO_MANY_PEERS = "TooManyPeers"

    def __str__(self) -> str:
        return self.value


class _Message:
    NAME: ClassVar[str] = ""

    @property
    def name(self) -> str:
        return self.NAME


@dataclass(frozen=True)
class Disconnect(_Message):
    """Tells the peer the connection is being closed, and why."""

    NAME: ClassVar[str] = "Disconnect"

    reason: DisconnectReason


@dataclass(frozen=True)
class PeerRequest(_Message):
    """Asks the peer for the addresses of its connected peers."""

    NAME: ClassVar[str] = "PeerRequest"


@dataclass(frozen=True)
class PuzzleRequest(_Message):
    """Asks the peer for the current coinbase puzzle."""

    NAME: ClassVar[str] = "PuzzleRequest"


@dataclass(frozen=True)
class BlockRequestMessage(_Message):
    """Asks the peer for a range of blocks."""

    NAME: ClassVar[str] = "BlockRequest"

    request: BlockRequest


@dataclass(frozen=True)
class UnconfirmedSolution(_Message):
    """Relays a prover solution that is not yet in a block."""

    NAME: ClassVar[str] = "UnconfirmedSolution"

    puzzle_commitment: Hashable
    solution: Any = None


@dataclass(frozen=True)
class UnconfirmedTransaction(_Message):
    """Relays a transaction that is not yet in a block."""

    NAME: ClassVar[str] = "UnconfirmedTransaction"

    transaction_id: Hashable
    transaction: Any = None


class Outbound:
    """Delivers messages to connected peers through a unicast function.

    ``unicast(peer_addr, message)`` queues the message on the connection to
    ``peer_addr`` and returns a delivery handle; it raises ``OSError`` if the
    message cannot be queued.
    """

    def __init__(self, router: Router, unicast: Callable[[Address, Any], Any]) -> None:
        self.router = router
        self._unicast = unicast

    def send(self, peer_ip: Address, message: Any) -> Optional[Any]:
        """Send the message to the peer; return the delivery handle, or None if not sent."""
        if not self.can_send(peer_ip, message):
            return None
        peer_addr = self.router.resolve_to_ambiguous(peer_ip)
        if peer_addr is None:
            logger.warning("Unable to resolve the listener IP address '%s'", peer_ip)
            return None
        if isinstance(message, BlockRequestMessage):
            self.router.cache.insert_outbound_block_request(peer_ip, message.request)
        if isinstance(message, PuzzleRequest):
            self.router.cache.increment_outbound_puzzle_requests(peer_ip)
        name = message.name
        logger.debug("Sending '%s' to '%s'", name, peer_ip)
        try:
            return self._unicast(peer_addr, message)
        except OSError as error:
            logger.warning("Failed to send '%s' to '%s': %s", name, peer_ip, error)
            logger.debug("Disconnecting from '%s' (unable to send)", peer_ip)
            self.router.disconnect(peer_ip)
            return None

    def can_send(self, peer_ip: Address, message: Any) -> bool:
        """Return whether the message may go to the peer; records relayed items as sent."""
        if not self.router.is_connected(peer_ip):
            logger.warning("Attempted to send to a non-connected peer %s", peer_ip)
            return False
        if isinstance(message, UnconfirmedSolution):
            previous = self.router.cache.insert_outbound_solution(
                peer_ip, message.puzzle_commitment
            )
            return previous is None
        if isinstance(message, UnconfirmedTransaction):
            previous = self.router.cache.insert_outbound_transaction(
                peer_ip, message.transaction_id
            )
            return previous is None
        return True

    def _send_to_all(self, peers: Iterable[Address], message: Any, excluded_peers: Iterable[Address]) -> None:
        excluded = set(excluded_peers)
        for peer_ip in peers:
            if peer_ip not in excluded:
                self.send(peer_ip, message)

    def propagate(self, message: Any, excluded_peers: Iterable[Address] = ()) -> None:
        """Send the message to every connected peer not excluded."""
        self._send_to_all(self.router.connected_peers(), message, excluded_peers)

    def propagate_to_beacons(self, message: Any, excluded_peers: Iterable[Address] = ()) -> None:
        """Send the message to every connected beacon not excluded."""
        self._send_to_all(self.router.connected_beacons(), message, excluded_peers)

    def propagate_to_validators(self, message: Any, excluded_peers: Iterable[Address] = ()) -> None:
        """Send the message to every connected validator not excluded."""
        self._send_to_all(self.router.connected_validators(), message, excluded_peers)