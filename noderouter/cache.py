"""Rate and duplicate tracking for inbound and outbound peer traffic."""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Hashable, Optional

MAX_CACHE_SIZE = 1 << 17
_U16_MAX = 0xFFFF


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BlockRequest:
    """A request for blocks in the half-open range ``start_height..end_height``."""

    start_height: int
    end_height: int

    def __str__(self) -> str:
        return f"{self.start_height}..{self.end_height}"


class Cache:
    """Tracks recent traffic per peer to detect spam and duplicates."""

    def __init__(
        self,
        clock: Callable[[], datetime] = _utc_now,
        max_size: int = MAX_CACHE_SIZE,
    ) -> None:
        self._clock = clock
        self._max_size = max_size
        self._lock = threading.Lock()
        self._seen_inbound_connections: dict[Hashable, deque[datetime]] = {}
        self._seen_inbound_messages: dict[Hashable, deque[datetime]] = {}
        self._seen_inbound_puzzle_requests: dict[Hashable, deque[datetime]] = {}
        self._seen_inbound_solutions: OrderedDict[tuple, datetime] = OrderedDict()
        self._seen_inbound_transactions: OrderedDict[tuple, datetime] = OrderedDict()
        self._seen_outbound_block_requests: dict[Hashable, dict[BlockRequest, None]] = {}
        self._seen_outbound_puzzle_requests: dict[Hashable, int] = {}
        self._seen_outbound_solutions: OrderedDict[tuple, datetime] = OrderedDict()
        self._seen_outbound_transactions: OrderedDict[tuple, datetime] = OrderedDict()

    # Inbound.

    def insert_inbound_connection(self, peer_ip: Hashable, interval_in_secs: int) -> int:
        """Record a connection attempt; return the number within the interval."""
        return self._retain_and_insert(self._seen_inbound_connections, peer_ip, interval_in_secs)

    def insert_inbound_message(self, peer_ip: Hashable, interval_in_secs: int) -> int:
        """Record a message; return the number within the interval."""
        return self._retain_and_insert(self._seen_inbound_messages, peer_ip, interval_in_secs)

    def insert_inbound_puzzle_request(self, peer_ip: Hashable) -> int:
        """Record a puzzle request; return the number within the last minute."""
        return self._retain_and_insert(self._seen_inbound_puzzle_requests, peer_ip, 60)

    def insert_inbound_solution(self, peer_ip: Hashable, solution: Hashable) -> Optional[datetime]:
        """Record a solution; return when it was previously seen, if ever."""
        return self._refresh_and_insert(self._seen_inbound_solutions, (peer_ip, solution))

    def insert_inbound_transaction(
        self, peer_ip: Hashable, transaction: Hashable
    ) -> Optional[datetime]:
        """Record a transaction; return when it was previously seen, if ever."""
        return self._refresh_and_insert(self._seen_inbound_transactions, (peer_ip, transaction))

    # Outbound.

    def contains_outbound_block_request(self, peer_ip: Hashable, request: BlockRequest) -> bool:
        with self._lock:
            return request in self._seen_outbound_block_requests.get(peer_ip, {})

    def insert_outbound_block_request(self, peer_ip: Hashable, request: BlockRequest) -> int:
        """Record a block request; return the number pending for the peer."""
        with self._lock:
            requests = self._seen_outbound_block_requests.setdefault(peer_ip, {})
            requests[request] = None
            return len(requests)

    def remove_outbound_block_request(self, peer_ip: Hashable, request: BlockRequest) -> bool:
        """Remove a block request; return whether it was present."""
        with self._lock:
            requests = self._seen_outbound_block_requests.get(peer_ip)
            if requests is None or request not in requests:
                return False
            del requests[request]
            return True

    def contains_outbound_puzzle_request(self, peer_ip: Hashable) -> bool:
        with self._lock:
            return peer_ip in self._seen_outbound_puzzle_requests

    def increment_outbound_puzzle_requests(self, peer_ip: Hashable) -> int:
        with self._lock:
            count = min(self._seen_outbound_puzzle_requests.get(peer_ip, 0) + 1, _U16_MAX)
            self._seen_outbound_puzzle_requests[peer_ip] = count
            return count

    def decrement_outbound_puzzle_requests(self, peer_ip: Hashable) -> int:
        with self._lock:
            count = max(self._seen_outbound_puzzle_requests.get(peer_ip, 0) - 1, 0)
            self._seen_outbound_puzzle_requests[peer_ip] = count
            return count

    def insert_outbound_solution(self, peer_ip: Hashable, solution: Hashable) -> Optional[datetime]:
        """Record a sent solution; return when it was previously sent, if ever."""
        return self._refresh_and_insert(self._seen_outbound_solutions, (peer_ip, solution))

    def insert_outbound_transaction(
        self, peer_ip: Hashable, transaction: Hashable
    ) -> Optional[datetime]:
        """Record a sent transaction; return when it was previously sent, if ever."""
        return self._refresh_and_insert(self._seen_outbound_transactions, (peer_ip, transaction))

    # Helpers.

    def _retain_and_insert(
        self, table: dict[Hashable, deque[datetime]], key: Hashable, interval_in_secs: int
    ) -> int:
        now = self._clock()
        interval = timedelta(seconds=interval_in_secs)
        with self._lock:
            timestamps = table.setdefault(key, deque())
            timestamps.append(now)
            while timestamps and now - timestamps[0] > interval:
                timestamps.popleft()
            return len(timestamps)

    def _refresh_and_insert(
        self, table: OrderedDict[tuple, datetime], key: tuple
    ) -> Optional[datetime]:
        now = self._clock()
        with self._lock:
            while table and len(table) >= self._max_size:
                table.popitem(last=False)
            previous = table.pop(key, None)
            table[key] = now
            return previous