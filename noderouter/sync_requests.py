"""Bookkeeping for outstanding block requests and the responses they receive."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Hashable, Optional

BLOCK_REQUEST_TIMEOUT_IN_SECS = 15
MAX_BLOCK_REQUEST_TIMEOUTS = 5


class SyncError(Exception):
    """Raised when a block request or response violates the sync rules."""


@dataclass(frozen=True)
class Block:
    """The parts of a block that the sync pool inspects."""

    height: int
    hash: Hashable
    previous_hash: Hashable


@dataclass
class SyncRequest:
    """The expected block hash, expected previous hash and the peers asked for a block."""

    hash: Optional[Hashable] = None
    previous_hash: Optional[Hashable] = None
    sync_ips: set = field(default_factory=set)

    def copy(self) -> SyncRequest:
        return replace(self, sync_ips=set(self.sync_ips))

    @property
    def is_complete(self) -> bool:
        """True once every asked peer has answered."""
        return not self.sync_ips


class BlockRequests:
    """Tracks pending block requests, received blocks, request times and peer timeouts.

    An entry in the requests map is removed together with its response. A request
    whose peers have all answered stays until its response is taken out.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        timeout_in_secs: int = BLOCK_REQUEST_TIMEOUT_IN_SECS,
    ) -> None:
        self._clock = clock
        self._timeout_in_secs = timeout_in_secs
        self._lock = threading.RLock()
        self._requests: dict[int, SyncRequest] = {}
        self._responses: dict[int, Block] = {}
        self._timestamps: dict[int, float] = {}
        self._timeouts: dict[Hashable, list[float]] = {}

    def get(self, height: int) -> Optional[SyncRequest]:
        """Return a copy of the request for the height, if any."""
        with self._lock:
            request = self._requests.get(height)
            return request.copy() if request is not None else None

    def get_timestamp(self, height: int) -> Optional[float]:
        """Return when the block at the height was last requested, if it was."""
        with self._lock:
            return self._timestamps.get(height)

    def check(self, height: int) -> None:
        """Raise SyncError if the height is already requested, answered or timed."""
        with self._lock:
            if height in self._requests:
                raise SyncError(
                    f"Failed to add block request, as block {height} exists in the requests map"
                )
            if height in self._responses:
                raise SyncError(
                    f"Failed to add block request, as block {height} exists in the responses map"
                )
            if height in self._timestamps:
                raise SyncError(
                    f"Failed to add block request, as block {height} exists in the timestamps map"
                )

    def insert(self, height: int, request: SyncRequest) -> None:
        """Record a new request for the block at the height."""
        with self._lock:
            self.check(height)
            if not request.sync_ips:
                raise SyncError("Cannot insert a block request with no sync IPs")
            self._requests[height] = request.copy()
            self._timestamps[height] = self._clock()

    def insert_response(self, peer_ip: Hashable, block: Block) -> None:
        """Record a block received from a peer.

        On any failure every request to the peer is withdrawn and SyncError is raised.
        """
        height = block.height
        with self._lock:
            try:
                self._check_response(peer_ip, block)
            except SyncError:
                self.remove_all_to_peer(peer_ip)
                raise

            request = self._requests.get(height)
            if request is not None:
                request.sync_ips.discard(peer_ip)

            existing = self._responses.get(height)
            self._responses[height] = block
            if existing is not None and existing != block:
                del self._responses[height]
                self.remove_all_to_peer(peer_ip)
                raise SyncError(f"Candidate block {height} from '{peer_ip}' is malformed")

    def remove_to_peer(self, peer_ip: Hashable, height: int) -> None:
        """Withdraw the request at the height from one peer.

        The whole request goes once no peer is left and no response has arrived.
        """
        with self._lock:
            can_revoke = height not in self._responses
            request = self._requests.get(height)
            if request is not None:
                request.sync_ips.discard(peer_ip)
                can_revoke = can_revoke and request.is_complete
            if can_revoke:
                self._requests.pop(height, None)
                self._timestamps.pop(height, None)

    def remove_all_to_peer(self, peer_ip: Hashable) -> None:
        """Withdraw every request made to the peer."""
        with self._lock:
            for height, request in list(self._requests.items()):
                request.sync_ips.discard(peer_ip)
                if request.is_complete and height not in self._responses:
                    del self._requests[height]
                    self._timestamps.pop(height, None)

    def remove(self, height: int) -> None:
        """Forget everything about the height."""
        with self._lock:
            self._requests.pop(height, None)
            self._responses.pop(height, None)
            self._timestamps.pop(height, None)

    def remove_response(self, height: int) -> Optional[Block]:
        """Take out the received block, if every asked peer has answered."""
        with self._lock:
            request = self._requests.get(height)
            if request is None or not request.is_complete:
                return None
            del self._requests[height]
            return self._responses.pop(height, None)

    def remove_timed_out(self) -> int:
        """Drop unanswered requests older than the timeout; return how many were dropped.

        Every peer of a dropped request gets a timeout recorded against it.
        """
        with self._lock:
            now = self._clock()
            timeout_ips: dict[Hashable, None] = {}
            removed = 0
            for height, timestamp in list(self._timestamps.items()):
                is_time_passed = int(now - timestamp) > self._timeout_in_secs
                request = self._requests.get(height)
                is_incomplete = request is None or not request.is_complete
                if not (is_time_passed and is_incomplete):
                    continue
                request = self._requests.pop(height, None)
                if request is not None:
                    timeout_ips.update(dict.fromkeys(request.sync_ips))
                self._responses.pop(height, None)
                del self._timestamps[height]
                removed += 1
            for ip in timeout_ips:
                self._timeouts.setdefault(ip, []).append(now)
            return removed

    def timeout_counts(self) -> dict[Hashable, int]:
        """Return the number of recorded timeouts for each peer."""
        with self._lock:
            return {ip: len(stamps) for ip, stamps in self._timeouts.items()}

    def remove_peer_timeouts(self, peer_ip: Hashable) -> None:
        with self._lock:
            self._timeouts.pop(peer_ip, None)

    def _check_response(self, peer_ip: Hashable, block: Block) -> None:
        height = block.height
        request = self._requests.get(height)
        if request is None:
            raise SyncError(f"The sync pool did not request block {height}")
        if request.hash is not None and block.hash != request.hash:
            raise SyncError(
                f"The block hash for candidate block {height} from '{peer_ip}' is incorrect"
            )
        if request.previous_hash is not None and block.previous_hash != request.previous_hash:
            raise SyncError(
                f"The previous block hash in candidate block {height} from '{peer_ip}' is incorrect"
            )
        if peer_ip not in request.sync_ips:
            raise SyncError(f"The sync pool did not request block {height} from '{peer_ip}'")