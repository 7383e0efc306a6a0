"""The peer router: who we are connected to, who we may connect to, and who is barred."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Hashable, Iterable, Optional, Sequence

from noderouter.cache import Cache
from noderouter.peer import NodeType, Peer
from noderouter.resolver import Resolver
from noderouter.syncing import Sync

logger = logging.getLogger(__name__)

Address = tuple[str, int]

DEV_BOOTSTRAP_PEER: Address = ("127.0.0.1", 4130)

DEFAULT_BOOTSTRAP_PEERS: tuple[Address, ...] = (
    ("24.199.74.2", 4133),
    ("167.172.14.86", 4133),
    ("159.203.146.71", 4133),
    ("188.166.201.188", 4133),
    ("161.35.247.23", 4133),
    ("144.126.245.162", 4133),
    ("138.68.126.82", 4133),
    ("170.64.252.58", 4133),
    ("159.89.211.64", 4133),
    ("143.244.211.239", 4133),
)


class ConnectionRefused(Exception):
    """Raised when a connection attempt breaks the router's rules."""


class Transport(ABC):
    """The network stack the router drives."""

    @property
    @abstractmethod
    def listening_addr(self) -> Optional[Address]:
        """The address this node listens on, or None if not listening."""

    @property
    @abstractmethod
    def max_connections(self) -> int:
        """The maximum number of simultaneous connections."""

    @abstractmethod
    def connect(self, addr: Address) -> None:
        """Open a connection to the address; raise OSError on failure."""

    @abstractmethod
    def disconnect(self, addr: Address) -> bool:
        """Close the connection to the address; return whether one was open."""


def _is_loopback_or_unspecified(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return ip.is_loopback or ip.is_unspecified


class Router:
    """Keeps track of connected, connecting, candidate and restricted peers."""

    MAXIMUM_CANDIDATE_PEERS = 10_000
    MAXIMUM_CONNECTION_FAILURES = 5
    RADIO_SILENCE_IN_SECS = 150

    def __init__(
        self,
        transport: Transport,
        node_type: NodeType,
        address: str,
        trusted_peers: Iterable[Address] = (),
        is_dev: bool = False,
        bootstrap: Optional[Sequence[Address]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._node_type = node_type
        self._address = address
        self._is_dev = is_dev
        self._bootstrap = list(DEFAULT_BOOTSTRAP_PEERS if bootstrap is None else bootstrap)
        self._clock = clock
        self._lock = threading.RLock()
        self.cache = Cache()
        self.resolver = Resolver()
        self.sync = Sync()
        self._trusted_peers: dict[Hashable, None] = dict.fromkeys(trusted_peers)
        self._connected_peers: dict[Hashable, Peer] = {}
        self._connecting_peers: set[Hashable] = set()
        self._candidate_peers: dict[Hashable, None] = {}
        self._restricted_peers: dict[Hashable, float] = {}

    # Identity.

    @property
    def node_type(self) -> NodeType:
        return self._node_type

    @property
    def address(self) -> str:
        return self._address

    @property
    def is_dev(self) -> bool:
        return self._is_dev

    @property
    def local_ip(self) -> Address:
        addr = self._transport.listening_addr
        if addr is None:
            raise RuntimeError("The TCP listener is not enabled")
        return addr

    def max_connected_peers(self) -> int:
        return self._transport.max_connections

    # Connecting and disconnecting.

    def connect(self, peer_ip: Address) -> bool:
        """Try to connect to the peer; return whether the connection was opened."""
        try:
            self.check_connection_attempt(peer_ip)
        except ConnectionRefused as refused:
            logger.warning("%s", refused)
            return False
        try:
            self._transport.connect(peer_ip)
        except OSError as error:
            self.finish_connecting(peer_ip)
            logger.warning("Unable to connect to '%s' - %s", peer_ip, error)
            return False
        self.remove_candidate_peer(peer_ip)
        return True

    def check_connection_attempt(self, peer_ip: Address) -> None:
        """Raise ConnectionRefused unless we may connect to the peer; mark it as connecting."""
        if self.is_local_ip(peer_ip):
            raise ConnectionRefused(
                f"Dropping connection attempt to '{peer_ip}' (attempted to self-connect)"
            )
        if self.number_of_connected_peers() >= self.max_connected_peers():
            raise ConnectionRefused(
                f"Dropping connection attempt to '{peer_ip}' (maximum peers reached)"
            )
        if self.is_connected(peer_ip):
            raise ConnectionRefused(
                f"Dropping connection attempt to '{peer_ip}' (already connected)"
            )
        if self.is_restricted(peer_ip):
            raise ConnectionRefused(f"Dropping connection attempt to '{peer_ip}' (restricted)")
        with self._lock:
            if peer_ip in self._connecting_peers:
                raise ConnectionRefused(
                    f"Dropping connection attempt to '{peer_ip}' "
                    "(already shaking hands as the initiator)"
                )
            self._connecting_peers.add(peer_ip)

    def disconnect(self, peer_ip: Address) -> bool:
        """Close the connection to the peer; return whether one was closed."""
        peer_addr = self.resolve_to_ambiguous(peer_ip)
        if peer_addr is None:
            return False
        return self._transport.disconnect(peer_addr)

    def is_local_ip(self, ip: Address) -> bool:
        local = self.local_ip
        if ip == local:
            return True
        host, port = ip
        return _is_loopback_or_unspecified(host) and port == local[1]

    # Address resolution.

    def resolve_to_listener(self, peer_addr: Address) -> Optional[Address]:
        return self.resolver.get_listener(peer_addr)

    def resolve_to_ambiguous(self, peer_ip: Address) -> Optional[Address]:
        return self.resolver.get_ambiguous(peer_ip)

    # Queries.

    def _connected_matching(self, peer_ip: Address, predicate: Callable[[Peer], bool]) -> bool:
        with self._lock:
            peer = self._connected_peers.get(peer_ip)
            return peer is not None and predicate(peer)

    def is_connected(self, ip: Address) -> bool:
        with self._lock:
            return ip in self._connected_peers

    def is_connected_beacon(self, peer_ip: Address) -> bool:
        return self._connected_matching(peer_ip, Peer.is_beacon)

    def is_connected_validator(self, peer_ip: Address) -> bool:
        return self._connected_matching(peer_ip, Peer.is_validator)

    def is_connected_prover(self, peer_ip: Address) -> bool:
        return self._connected_matching(peer_ip, Peer.is_prover)

    def is_connected_client(self, peer_ip: Address) -> bool:
        return self._connected_matching(peer_ip, Peer.is_client)

    def is_connecting(self, ip: Address) -> bool:
        with self._lock:
            return ip in self._connecting_peers

    def finish_connecting(self, ip: Address) -> None:
        """Forget that a handshake with the peer is in progress."""
        with self._lock:
            self._connecting_peers.discard(ip)

    def is_restricted(self, ip: Address) -> bool:
        with self._lock:
            since = self._restricted_peers.get(ip)
        if since is None:
            return False
        return int(self._clock() - since) < self.RADIO_SILENCE_IN_SECS

    def _count(self, predicate: Callable[[Peer], bool]) -> int:
        with self._lock:
            return sum(1 for peer in self._connected_peers.values() if predicate(peer))

    def _filter(self, predicate: Callable[[Peer], bool]) -> list[Address]:
        with self._lock:
            return [ip for ip, peer in self._connected_peers.items() if predicate(peer)]

    def number_of_connected_peers(self) -> int:
        with self._lock:
            return len(self._connected_peers)

    def number_of_connected_beacons(self) -> int:
        return self._count(Peer.is_beacon)

    def number_of_connected_validators(self) -> int:
        return self._count(Peer.is_validator)

    def number_of_connected_provers(self) -> int:
        return self._count(Peer.is_prover)

    def number_of_connected_clients(self) -> int:
        return self._count(Peer.is_client)

    def number_of_candidate_peers(self) -> int:
        with self._lock:
            return len(self._candidate_peers)

    def number_of_restricted_peers(self) -> int:
        with self._lock:
            return len(self._restricted_peers)

    def get_connected_peer(self, ip: Address) -> Optional[Peer]:
        with self._lock:
            return self._connected_peers.get(ip)

    def get_connected_peers(self) -> list[Peer]:
        with self._lock:
            return list(self._connected_peers.values())

    def connected_peers(self) -> list[Address]:
        with self._lock:
            return list(self._connected_peers)

    def connected_beacons(self) -> list[Address]:
        return self._filter(Peer.is_beacon)

    def connected_validators(self) -> list[Address]:
        return self._filter(Peer.is_validator)

    def connected_provers(self) -> list[Address]:
        return self._filter(Peer.is_prover)

    def connected_clients(self) -> list[Address]:
        return self._filter(Peer.is_client)

    def candidate_peers(self) -> list[Address]:
        with self._lock:
            return list(self._candidate_peers)

    def restricted_peers(self) -> list[Address]:
        with self._lock:
            return list(self._restricted_peers)

    def trusted_peers(self) -> list[Address]:
        return list(self._trusted_peers)

    def bootstrap_peers(self) -> list[Address]:
        if self._is_dev:
            return [] if self._node_type.is_beacon() else [DEV_BOOTSTRAP_PEER]
        return list(self._bootstrap)

    def connected_metrics(self) -> list[tuple[Address, NodeType]]:
        with self._lock:
            return [(ip, peer.node_type) for ip, peer in self._connected_peers.items()]

    # Updates.

    def insert_connected_peer(self, peer: Peer, peer_addr: Address) -> None:
        peer_ip = peer.ip
        self.resolver.insert_peer(peer_ip, peer_addr)
        with self._lock:
            self._connected_peers[peer_ip] = peer
            self._candidate_peers.pop(peer_ip, None)
            self._restricted_peers.pop(peer_ip, None)

    def insert_candidate_peers(self, peers: Iterable[Address]) -> None:
        """Add eligible peers as candidates, never exceeding the candidate limit."""
        with self._lock:
            room = max(self.MAXIMUM_CANDIDATE_PEERS - len(self._candidate_peers), 0)
            eligible = []
            for peer_ip in peers:
                if len(eligible) >= room:
                    break
                if (
                    self.is_local_ip(peer_ip)
                    or self.is_connected(peer_ip)
                    or self.is_restricted(peer_ip)
                ):
                    continue
                eligible.append(peer_ip)
            self._candidate_peers.update(dict.fromkeys(eligible))

    def insert_restricted_peer(self, peer_ip: Address) -> None:
        with self._lock:
            self._candidate_peers.pop(peer_ip, None)
            self._restricted_peers[peer_ip] = self._clock()

    def update_connected_peer(
        self, peer_ip: Address, node_type: NodeType, write_fn: Callable[[Peer], None]
    ) -> None:
        """Apply write_fn to the connected peer; raise ValueError if its node type changed."""
        with self._lock:
            peer = self._connected_peers.get(peer_ip)
            if peer is None:
                return
            if peer.node_type != node_type:
                raise ValueError(
                    f"Peer '{peer_ip}' has changed node types from {peer.node_type} to {node_type}"
                )
            write_fn(peer)

    def remove_connected_peer(self, peer_ip: Address) -> None:
        """Drop the connected peer and keep it as a candidate."""
        self.resolver.remove_peer(peer_ip)
        self.sync.remove_peer(peer_ip)
        with self._lock:
            self._connected_peers.pop(peer_ip, None)
            self._candidate_peers[peer_ip] = None

    def remove_candidate_peer(self, peer_ip: Address) -> None:
        with self._lock:
            self._candidate_peers.pop(peer_ip, None)