"""Choosing which peers to sync from and which blocks to request from them."""

from __future__ import annotations

import logging
import random
from typing import Hashable, Optional

from noderouter.sync_requests import SyncError, SyncRequest
from noderouter.syncing import (
    EXTRA_REDUNDANCY_FACTOR,
    MAX_BLOCK_REQUESTS,
    NUM_SYNC_CANDIDATE_PEERS,
    REDUNDANCY_FACTOR,
    Locators,
    Sync,
)
from noderouter.sync_requests import MAX_BLOCK_REQUEST_TIMEOUTS

logger = logging.getLogger(__name__)


def find_sync_candidates(sync: Sync) -> Optional[tuple[dict[Hashable, Locators], int]]:
    """Return a consistent cohort of peers ahead of the canon height and their minimum common ancestor.

    Returns None if there are not enough such peers to sync from.
    """
    latest_canon_height = sync.latest_canon_height()
    timeouts = sync.request_timeouts

    ahead = [
        (peer_ip, locators)
        for peer_ip, locators in sync.peer_locators.items()
        if locators.latest_locator_height() > latest_canon_height
        and timeouts.get(peer_ip, 0) < MAX_BLOCK_REQUEST_TIMEOUTS
    ]
    ahead.sort(key=lambda item: item[1].latest_locator_height(), reverse=True)
    candidates = ahead[:NUM_SYNC_CANDIDATE_PEERS]

    if not candidates:
        return None

    threshold_to_request = min(len(candidates), REDUNDANCY_FACTOR)

    min_common_ancestor = 0
    sync_peers: dict[Hashable, Locators] = {}

    # Favour the highest peer together with a cohort sharing an ancestor above canon.
    for i, (peer_ip, peer_locators) in enumerate(candidates):
        sync_peers = {peer_ip: peer_locators}
        min_common_ancestor = peer_locators.latest_locator_height()

        for other_ip, other_locators in candidates[i + 1:]:
            common_ancestor = sync.get_common_ancestor(peer_ip, other_ip)
            if common_ancestor is None or common_ancestor <= latest_canon_height:
                continue
            if not peer_locators.is_consistent_with(other_locators):
                continue
            min_common_ancestor = min(min_common_ancestor, common_ancestor)
            sync_peers[other_ip] = other_locators

        if min_common_ancestor > latest_canon_height and len(sync_peers) >= threshold_to_request:
            break

    if min_common_ancestor <= latest_canon_height or len(sync_peers) < threshold_to_request:
        return None

    return sync_peers, min_common_ancestor


def find_sync_peers(sync: Sync) -> Optional[tuple[dict[Hashable, int], int]]:
    """Return the sync peers with their latest heights and their minimum common ancestor, if any."""
    found = find_sync_candidates(sync)
    if found is None:
        return None
    sync_peers, min_common_ancestor = found
    heights = {ip: locators.latest_locator_height() for ip, locators in sync_peers.items()}
    return heights, min_common_ancestor


def construct_request(
    height: int, sync_peers: dict[Hashable, Locators]
) -> tuple[Optional[Hashable], Optional[Hashable], int, bool]:
    """Return (hash, previous hash, number of peers to ask, honesty) for the block at the height.

    If the peers disagree, neither hash is set and the request is marked dishonest.
    """
    block_hash: Optional[Hashable] = None
    hash_redundancy = 0
    previous_hash: Optional[Hashable] = None
    is_honest = True

    for peer_locators in sync_peers.values():
        candidate_hash = peer_locators.get_hash(height)
        if candidate_hash is not None:
            if block_hash is None:
                block_hash = candidate_hash
                hash_redundancy = 1
            elif block_hash == candidate_hash:
                hash_redundancy += 1
            else:
                block_hash, hash_redundancy, previous_hash, is_honest = None, 0, None, False
                break
        candidate_previous = peer_locators.get_hash(max(height - 1, 0))
        if candidate_previous is not None:
            if previous_hash is None:
                previous_hash = candidate_previous
            elif previous_hash != candidate_previous:
                block_hash, hash_redundancy, previous_hash, is_honest = None, 0, None, False
                break

    if not is_honest:
        num_sync_ips = EXTRA_REDUNDANCY_FACTOR
    elif block_hash is not None and hash_redundancy >= REDUNDANCY_FACTOR:
        num_sync_ips = 1
    else:
        num_sync_ips = REDUNDANCY_FACTOR

    return block_hash, previous_hash, num_sync_ips, is_honest


def construct_requests(
    sync: Sync,
    sync_peers: dict[Hashable, Locators],
    min_common_ancestor: int,
    rng: random.Random,
) -> list[tuple[int, SyncRequest]]:
    """Build block requests for the heights just above canon, up to the common ancestor."""
    latest_canon_height = sync.latest_canon_height()
    if min_common_ancestor <= latest_canon_height:
        return []

    start_height = latest_canon_height + 1
    end_height = min(min_common_ancestor + 1, start_height + MAX_BLOCK_REQUESTS)
    peer_ips = list(sync_peers)

    requests: list[tuple[int, SyncRequest]] = []
    for height in range(start_height, end_height):
        try:
            sync.check_block_request(height)
        except SyncError:
            continue

        block_hash, previous_hash, num_sync_ips, is_honest = construct_request(height, sync_peers)

        if not is_honest:
            logger.warning("Detected dishonest peer(s) when preparing block request")
            if len(sync_peers) < num_sync_ips:
                break

        chosen = rng.sample(peer_ips, min(num_sync_ips, len(peer_ips)))
        requests.append((height, SyncRequest(block_hash, previous_hash, set(chosen))))

    return requests


def prepare_block_requests(
    sync: Sync, rng: Optional[random.Random] = None
) -> list[tuple[int, SyncRequest]]:
    """Drop timed-out requests, then return the block requests needed to sync, if any."""
    sync.remove_timed_out_block_requests()
    found = find_sync_candidates(sync)
    if found is None:
        return []
    sync_peers, min_common_ancestor = found
    return construct_requests(sync, sync_peers, min_common_ancestor, rng or random.Random())