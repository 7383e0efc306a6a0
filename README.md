# noderouter

Peer bookkeeping for a peer-to-peer node. The package tracks which peers
are connected, which are candidates and which are restricted. It records
what has recently been seen from each peer, and it works out which blocks
to request from whom while syncing.

Addresses are `(host, port)` tuples throughout.

## Installation

```
pip install noderouter
```

To run the tests:

```
pip install "noderouter[test]"
pytest
```

## Modules

- `noderouter.peer`
  - `NodeType`: one of `BEACON`, `VALIDATOR`, `PROVER` or `CLIENT`.
  - `Peer`: the state kept for a connected peer. It holds `ip`, `address`, `node_type`, `version`, `first_seen` and `last_seen`, where the two times are monotonic clock readings. `touch()` sets `last_seen` to now.
- `noderouter.resolver`
  - `Resolver`: a thread-safe two-way map between a peer's listening address and the address its connection came from.
- `noderouter.cache`
  - `Cache`: counts inbound connections, messages and puzzle requests over a sliding time window. It records outbound `BlockRequest`s and counts outbound puzzle requests. It also keeps bounded "seen before" maps for solutions and transactions, both inbound and outbound. The oldest entries are evicted once a map holds `MAX_CACHE_SIZE` (131072) items.
- `noderouter.sync_requests`
  - `Block`: the height, hash and previous hash of a block.
  - `SyncRequest`: the expected hash, the expected previous hash and the set of peers asked.
  - `BlockRequests`: pending requests, received responses, request times and per-peer timeout counts. Rule violations raise `SyncError`.
- `noderouter.syncing`
  - `Locators`: recent block hashes plus a checkpoint every 10,000 blocks.
  - `PeerPair`: an unordered pair of addresses.
  - `Sync`: the canonical chain view, each peer's locators, the common ancestors between peers, and the pending block requests.
- `noderouter.sync_planner`
  - `find_sync_candidates` and `find_sync_peers` pick a cohort of consistent peers that are ahead of the canonical height.
  - `construct_request` and `construct_requests` decide the expected hashes and how many peers to ask for each height.
  - `prepare_block_requests` first drops timed-out requests and then plans the requests.
- `noderouter.router`
  - `Router`: the connected, connecting, candidate, restricted, trusted and bootstrap peer sets. It checks connection attempts, raising `ConnectionRefused`. It drives an abstract `Transport` that you supply.
- `noderouter.outbound`
  - `Outbound`: has `send`, `can_send`, `propagate`, `propagate_to_beacons` and `propagate_to_validators`. A solution or transaction already sent to a peer is not sent to it again.
  - Message types: `Disconnect` (with a `DisconnectReason`), `PeerRequest`, `PuzzleRequest`, `BlockRequestMessage`, `UnconfirmedSolution` and `UnconfirmedTransaction`.

## Examples

Duplicate detection:

```python
from noderouter.cache import Cache

cache = Cache()
peer = ("127.0.0.1", 1234)
assert cache.insert_inbound_solution(peer, "commitment") is None
assert cache.insert_inbound_solution(peer, "commitment") is not None
```

Planning block requests:

```python
from noderouter.syncing import Locators, Sync
from noderouter.sync_planner import prepare_block_requests

sync = Sync()
sync.set_local_ip(("127.0.0.1", 0))
sync.insert_canon_locators(Locators(recents={0: "h0"}, checkpoints={0: "h0"}))

peer = ("127.0.0.1", 1)
sync.update_peer_locators(
    peer,
    Locators(recents={h: f"h{h}" for h in range(11)}, checkpoints={0: "h0"}),
)
requests = prepare_block_requests(sync)
assert [height for height, _ in requests] == list(range(1, 11))
```

A router over your own transport:

```python
from noderouter.peer import NodeType
from noderouter.router import Router, Transport

class MyTransport(Transport):
    listening_addr = ("127.0.0.1", 4130)
    max_connections = 10

    def connect(self, addr):
        pass  # open the connection; raise OSError on failure

    def disconnect(self, addr):
        return True

router = Router(MyTransport(), NodeType.CLIENT, "node-address")
assert router.connect(("10.0.0.2", 4133))
assert router.is_connecting(("10.0.0.2", 4133))
router.finish_connecting(("10.0.0.2", 4133))
```

## What this package does not do

This package is bookkeeping only. It has:

- no network stack: connections go through the `Transport` you supply, and messages go through the `unicast` function given to `Outbound`;
- no wire format or message serialisation;
- no handshake or signature checking;
- no handling of inbound messages;
- no periodic heartbeat;
- no ledger or block storage;
- no command-line program.