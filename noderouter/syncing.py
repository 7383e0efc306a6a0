"""The sync pool: canonical hashes, peer block locators and common ancestors."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Hashable, Iterator, Optional

from noderouter.sync_requests import (
    BLOCK_REQUEST_TIMEOUT_IN_SECS,
    Block,
    BlockRequests,
    SyncError,
    SyncRequest,
)

logger = logging.getLogger(__name__)

NUM_RECENTS = 100
CHECKPOINT_INTERVAL = 10_000

REDUNDANCY_FACTOR = 3
EXTRA_REDUNDANCY_FACTOR = REDUNDANCY_FACTOR * 2
NUM_SYNC_CANDIDATE_PEERS = REDUNDANCY_FACTOR * 5
MAX_BLOCK_REQUESTS = 50


@dataclass
class Locators:
    """A peer's view of its chain: recent block hashes and periodic checkpoints."""

    recents: dict[int, Hashable] = field(default_factory=dict)
    checkpoints: dict[int, Hashable] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.recents = dict(sorted(self.recents.items()))
        self.checkpoints = dict(sorted(self.checkpoints.items()))

    def __iter__(self) -> Iterator[tuple[int, Hashable]]:
        """Yield (height, hash) pairs: checkpoints first, then recents."""
        yield from self.checkpoints.items()
        yield from self.recents.items()

    def latest_locator_height(self) -> int:
        return max(self.recents, default=0)

    def get_hash(self, height: int) -> Optional[Hashable]:
        if height in self.recents:
            return self.recents[height]
        return self.checkpoints.get(height)

    def ensure_is_valid(self) -> None:
        """Raise SyncError unless the locators are well-formed."""
        if not self.recents:
            raise SyncError("There must be at least 1 recent block locator")
        if not self.checkpoints:
            raise SyncError("There must be at least 1 block checkpoint")
        if len(self.recents) > NUM_RECENTS:
            raise SyncError(f"There can be at most {NUM_RECENTS} recent block locators")

        latest = self.latest_locator_height()
        recent_heights = list(self.recents)
        expected_recents = list(range(latest - len(recent_heights) + 1, latest + 1))
        if recent_heights != expected_recents:
            raise SyncError("The recent block locators must be consecutive heights")
        if len(recent_heights) != min(NUM_RECENTS, latest + 1):
            raise SyncError("The number of recent block locators is incorrect")

        checkpoint_heights = list(self.checkpoints)
        expected_checkpoints = list(range(0, latest + 1, CHECKPOINT_INTERVAL))
        if checkpoint_heights != expected_checkpoints:
            raise SyncError(
                f"The block checkpoints must be every {CHECKPOINT_INTERVAL} blocks up to the latest height"
            )

        for height, checkpoint_hash in self.checkpoints.items():
            recent_hash = self.recents.get(height)
            if recent_hash is not None and recent_hash != checkpoint_hash:
                raise SyncError(f"Block locators disagree on the hash at height {height}")

    def is_consistent_with(self, other: Locators) -> bool:
        """True if both agree on the hash at every height they both hold."""
        for height, block_hash in self:
            other_hash = other.get_hash(height)
            if other_hash is not None and other_hash != block_hash:
                return False
        return True


class PeerPair:
    """An unordered pair of peer addresses."""

    __slots__ = ("a", "b")

    def __init__(self, a: Hashable, b: Hashable) -> None:
        self.a = a
        self.b = b

    def _key(self) -> frozenset:
        return frozenset((self.a, self.b))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PeerPair):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        return f"PeerPair({self.a!r}, {self.b!r})"


class Sync:
    """Tracks the canonical chain, what peers claim to hold and pending block requests."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        timeout_in_secs: int = BLOCK_REQUEST_TIMEOUT_IN_SECS,
    ) -> None:
        self._lock = threading.RLock()
        self._local_ip: Optional[Hashable] = None
        self._canon: dict[int, Hashable] = {}
        self._locators: dict[Hashable, Locators] = {}
        self._common_ancestors: dict[PeerPair, int] = {}
        self._requests = BlockRequests(clock, timeout_in_secs)

    @property
    def local_ip(self) -> Hashable:
        if self._local_ip is None:
            raise RuntimeError("The local IP had not been set")
        return self._local_ip

    def set_local_ip(self, local_ip: Hashable) -> None:
        with self._lock:
            if self._local_ip is not None:
                raise RuntimeError("The local IP was set more than once")
            self._local_ip = local_ip

    @property
    def peer_locators(self) -> dict[Hashable, Locators]:
        """A snapshot of every peer's block locators, in insertion order."""
        with self._lock:
            return dict(self._locators)

    @property
    def request_timeouts(self) -> dict[Hashable, int]:
        """The number of recorded request timeouts for each peer."""
        return self._requests.timeout_counts()

    def latest_canon_height(self) -> int:
        with self._lock:
            return max(self._canon, default=0)

    def get_canon_height(self, hash: Hashable) -> Optional[int]:
        with self._lock:
            return next(
                (height for height, value in sorted(self._canon.items()) if value == hash), None
            )

    def get_canon_hash(self, height: int) -> Optional[Hashable]:
        with self._lock:
            return self._canon.get(height)

    def get_peer_height(self, peer_ip: Hashable) -> Optional[int]:
        with self._lock:
            locators = self._locators.get(peer_ip)
            return locators.latest_locator_height() if locators is not None else None

    def get_peer_heights(self) -> dict[int, list]:
        """Map each peer height, ascending, to the peers at that height."""
        heights: dict[int, list] = {}
        with self._lock:
            for peer_ip, locators in self._locators.items():
                heights.setdefault(locators.latest_locator_height(), []).append(peer_ip)
        return dict(sorted(heights.items()))

    def get_peers_by_height(self) -> list[tuple[Hashable, int]]:
        """Return (peer, height) pairs sorted by height, highest first."""
        with self._lock:
            pairs = [(ip, loc.latest_locator_height()) for ip, loc in self._locators.items()]
        return sorted(pairs, key=lambda pair: pair[1], reverse=True)

    def get_common_ancestor(self, peer_a: Hashable, peer_b: Hashable) -> Optional[int]:
        with self._lock:
            return self._common_ancestors.get(PeerPair(peer_a, peer_b))

    def get_block_request(self, height: int) -> Optional[SyncRequest]:
        return self._requests.get(height)

    def get_block_request_timestamp(self, height: int) -> Optional[float]:
        return self._requests.get_timestamp(height)

    def insert_canon_locator(self, height: int, hash: Hashable) -> None:
        """Set the canonical hash at the height, overriding any previous one."""
        with self._lock:
            previous = self._canon.get(height)
            self._canon[height] = hash
        if previous is not None and previous != hash:
            logger.warning(
                "Sync pool overrode the canon block hash at block %s (from %s to %s)",
                height,
                previous,
                hash,
            )

    def insert_canon_locators(self, locators: Locators) -> None:
        locators.ensure_is_valid()
        with self._lock:
            for height, block_hash in locators:
                self.insert_canon_locator(height, block_hash)

    def check_block_request(self, height: int) -> None:
        """Raise SyncError if the height is canon or already requested."""
        with self._lock:
            if height in self._canon:
                raise SyncError(
                    f"Failed to add block request, as block {height} exists in the canon map"
                )
            self._requests.check(height)

    def insert_block_request(self, height: int, request: SyncRequest) -> None:
        with self._lock:
            self.check_block_request(height)
            self._requests.insert(height, request)

    def insert_block_response(self, peer_ip: Hashable, block: Block) -> None:
        self._requests.insert_response(peer_ip, block)

    def update_peer_locators(self, peer_ip: Hashable, locators: Locators) -> None:
        """Store a peer's locators and recompute its common ancestors.

        The locators are checked to be well-formed, not to be consistent with others.
        """
        with self._lock:
            if self._locators.get(peer_ip) == locators:
                return
            locators.ensure_is_valid()
            local_ip = self.local_ip
            self._locators[peer_ip] = locators

            ancestor = 0
            for height, block_hash in locators:
                canon_hash = self._canon.get(height)
                if canon_hash is None:
                    continue
                if canon_hash != block_hash:
                    break
                ancestor = height
            self._common_ancestors[PeerPair(local_ip, peer_ip)] = ancestor

            for other_ip, other_locators in self._locators.items():
                if other_ip == peer_ip:
                    continue
                ancestor = 0
                for height, block_hash in other_locators:
                    expected = locators.get_hash(height)
                    if expected is None:
                        continue
                    if expected != block_hash:
                        break
                    ancestor = height
                self._common_ancestors[PeerPair(peer_ip, other_ip)] = ancestor

    def remove_peer(self, peer_ip: Hashable) -> None:
        with self._lock:
            self._locators.pop(peer_ip, None)
        self._requests.remove_all_to_peer(peer_ip)
        self._requests.remove_peer_timeouts(peer_ip)

    def remove_block_request_to_peer(self, peer_ip: Hashable, height: int) -> None:
        self._requests.remove_to_peer(peer_ip, height)

    def remove_block_requests_to_peer(self, peer_ip: Hashable) -> None:
        self._requests.remove_all_to_peer(peer_ip)

    def remove_block_request(self, height: int) -> None:
        self._requests.remove(height)

    def remove_block_response(self, height: int) -> Optional[Block]:
        return self._requests.remove_response(height)

    def remove_timed_out_block_requests(self) -> int:
        return self._requests.remove_timed_out()