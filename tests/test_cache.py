from datetime import datetime, timedelta, timezone

import pytest

from noderouter.cache import BlockRequest, Cache

PEER_IP = ("127.0.0.1", 1234)
SOLUTION = "puzzle-commitment-0"
TRANSACTION = "transaction-0"


class FakeClock:
    def __init__(self):
        self.now = datetime(2023, 1, 1, tzinfo=timezone.utc)

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)

    def __call__(self):
        return self.now


def test_inbound_solution():
    cache = Cache()
    assert len(cache._seen_inbound_solutions) == 0
    assert cache.insert_inbound_solution(PEER_IP, SOLUTION) is None
    assert len(cache._seen_inbound_solutions) == 1
    assert cache.insert_inbound_solution(PEER_IP, SOLUTION) is not None
    assert len(cache._seen_inbound_solutions) == 1


def test_inbound_transaction():
    cache = Cache()
    assert len(cache._seen_inbound_transactions) == 0
    assert cache.insert_inbound_transaction(PEER_IP, TRANSACTION) is None
    assert len(cache._seen_inbound_transactions) == 1
    assert cache.insert_inbound_transaction(PEER_IP, TRANSACTION) is not None
    assert len(cache._seen_inbound_transactions) == 1


def test_outbound_solution():
    cache = Cache()
    assert len(cache._seen_outbound_solutions) == 0
    assert cache.insert_outbound_solution(PEER_IP, SOLUTION) is None
    assert len(cache._seen_outbound_solutions) == 1
    assert cache.insert_outbound_solution(PEER_IP, SOLUTION) is not None
    assert len(cache._seen_outbound_solutions) == 1


def test_outbound_transaction():
    cache = Cache()
    assert len(cache._seen_outbound_transactions) == 0
    assert cache.insert_outbound_transaction(PEER_IP, TRANSACTION) is None
    assert len(cache._seen_outbound_transactions) == 1
    assert cache.insert_outbound_transaction(PEER_IP, TRANSACTION) is not None
    assert len(cache._seen_outbound_transactions) == 1


def test_previous_timestamp_is_returned():
    clock = FakeClock()
    cache = Cache(clock=clock)
    first = clock()
    cache.insert_inbound_solution(PEER_IP, SOLUTION)
    clock.advance(10)
    assert cache.insert_inbound_solution(PEER_IP, SOLUTION) == first


def test_same_item_from_different_peers_is_distinct():
    cache = Cache()
    assert cache.insert_inbound_transaction(PEER_IP, TRANSACTION) is None
    assert cache.insert_inbound_transaction(("127.0.0.1", 5678), TRANSACTION) is None


def test_eviction_drops_oldest_entry():
    cache = Cache(max_size=2)
    cache.insert_outbound_solution(PEER_IP, "a")
    cache.insert_outbound_solution(PEER_IP, "b")
    cache.insert_outbound_solution(PEER_IP, "c")
    assert len(cache._seen_outbound_solutions) == 2
    assert cache.insert_outbound_solution(PEER_IP, "a") is None


@pytest.mark.parametrize(
    "insert",
    [
        lambda cache, ip: cache.insert_inbound_connection(ip[0], 5),
        lambda cache, ip: cache.insert_inbound_message(ip, 5),
    ],
)
def test_interval_counts_drop_old_entries(insert):
    clock = FakeClock()
    cache = Cache(clock=clock)
    assert insert(cache, PEER_IP) == 1
    clock.advance(3)
    assert insert(cache, PEER_IP) == 2
    clock.advance(3)
    assert insert(cache, PEER_IP) == 2


def test_interval_boundary_is_kept():
    clock = FakeClock()
    cache = Cache(clock=clock)
    cache.insert_inbound_message(PEER_IP, 5)
    clock.advance(5)
    assert cache.insert_inbound_message(PEER_IP, 5) == 2


def test_puzzle_requests_use_one_minute_window():
    clock = FakeClock()
    cache = Cache(clock=clock)
    assert cache.insert_inbound_puzzle_request(PEER_IP) == 1
    clock.advance(60)
    assert cache.insert_inbound_puzzle_request(PEER_IP) == 2
    clock.advance(61)
    assert cache.insert_inbound_puzzle_request(PEER_IP) == 1


def test_block_requests_round_trip():
    cache = Cache()
    request = BlockRequest(start_height=1, end_height=5)
    assert not cache.contains_outbound_block_request(PEER_IP, request)
    assert cache.insert_outbound_block_request(PEER_IP, request) == 1
    assert cache.insert_outbound_block_request(PEER_IP, request) == 1
    assert cache.insert_outbound_block_request(PEER_IP, BlockRequest(5, 9)) == 2
    assert cache.contains_outbound_block_request(PEER_IP, request)
    assert cache.remove_outbound_block_request(PEER_IP, request)
    assert not cache.remove_outbound_block_request(PEER_IP, request)
    assert not cache.contains_outbound_block_request(PEER_IP, request)


def test_remove_block_request_for_unknown_peer():
    cache = Cache()
    assert not cache.remove_outbound_block_request(PEER_IP, BlockRequest(0, 1))


def test_block_request_display():
    assert str(BlockRequest(3, 7)) == "3..7"


def test_puzzle_request_counter():
    cache = Cache()
    assert not cache.contains_outbound_puzzle_request(PEER_IP)
    assert cache.increment_outbound_puzzle_requests(PEER_IP) == 1
    assert cache.increment_outbound_puzzle_requests(PEER_IP) == 2
    assert cache.contains_outbound_puzzle_request(PEER_IP)
    assert cache.decrement_outbound_puzzle_requests(PEER_IP) == 1
    assert cache.decrement_outbound_puzzle_requests(PEER_IP) == 0
    assert cache.decrement_outbound_puzzle_requests(PEER_IP) == 0


def test_puzzle_request_counter_saturates():
    cache = Cache()
    cache._seen_outbound_puzzle_requests[PEER_IP] = 0xFFFF
    assert cache.increment_outbound_puzzle_requests(PEER_IP) == 0xFFFF