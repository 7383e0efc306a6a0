import pytest

from noderouter.peer import NodeType, Peer
from noderouter.router import (
    DEV_BOOTSTRAP_PEER,
    ConnectionRefused,
    Router,
    Transport,
)

LOCAL = ("127.0.0.1", 4000)


class FakeTransport(Transport):
    def __init__(self, listening=LOCAL, max_connections=10, fail=False):
        self._listening = listening
        self._max = max_connections
        self.fail = fail
        self.connected = []
        self.disconnected = []

    @property
    def listening_addr(self):
        return self._listening

    @property
    def max_connections(self):
        return self._max

    def connect(self, addr):
        if self.fail:
            raise OSError("refused")
        self.connected.append(addr)

    def disconnect(self, addr):
        self.disconnected.append(addr)
        return True


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_router(node_type=NodeType.CLIENT, **kwargs):
    transport = kwargs.pop("transport", FakeTransport())
    clock = kwargs.pop("clock", FakeClock())
    router = Router(transport, node_type, "addr", clock=clock, **kwargs)
    return router, transport, clock


def make_peer(ip, node_type=NodeType.CLIENT):
    return Peer(ip=ip, address="addr", node_type=node_type, version=1)


def test_self_connect_refused():
    router, _, _ = make_router()
    with pytest.raises(ConnectionRefused, match="self-connect"):
        router.check_connection_attempt(LOCAL)
    with pytest.raises(ConnectionRefused, match="self-connect"):
        router.check_connection_attempt(("0.0.0.0", 4000))
    assert router.is_local_ip(("::1", 4000))
    assert not router.is_local_ip(("10.0.0.1", 4000))


def test_local_ip_without_listener():
    router, _, _ = make_router(transport=FakeTransport(listening=None))
    with pytest.raises(RuntimeError):
        router.is_local_ip(("10.0.0.1", 1))


def test_maximum_peers_reached():
    router, _, _ = make_router(transport=FakeTransport(max_connections=1))
    router.insert_connected_peer(make_peer(("10.0.0.1", 1)), ("10.0.0.1", 55))
    with pytest.raises(ConnectionRefused, match="maximum peers"):
        router.check_connection_attempt(("10.0.0.2", 1))


def test_already_connected_refused():
    router, _, _ = make_router()
    ip = ("10.0.0.1", 1)
    router.insert_connected_peer(make_peer(ip), ("10.0.0.1", 55))
    with pytest.raises(ConnectionRefused, match="already connected"):
        router.check_connection_attempt(ip)


def test_restricted_expires():
    router, _, clock = make_router()
    ip = ("10.0.0.1", 1)
    router.insert_restricted_peer(ip)
    assert router.is_restricted(ip)
    with pytest.raises(ConnectionRefused, match="restricted"):
        router.check_connection_attempt(ip)
    clock.now += Router.RADIO_SILENCE_IN_SECS
    assert not router.is_restricted(ip)
    assert router.number_of_restricted_peers() == 1


def test_connecting_twice_refused():
    router, _, _ = make_router()
    ip = ("10.0.0.1", 1)
    router.check_connection_attempt(ip)
    assert router.is_connecting(ip)
    with pytest.raises(ConnectionRefused, match="already shaking hands"):
        router.check_connection_attempt(ip)
    router.finish_connecting(ip)
    assert not router.is_connecting(ip)
    router.check_connection_attempt(ip)
    assert router.is_connecting(ip)


def test_connect_success_removes_candidate():
    router, transport, _ = make_router()
    ip = ("10.0.0.1", 1)
    router.insert_candidate_peers([ip])
    assert router.connect(ip) is True
    assert transport.connected == [ip]
    assert router.candidate_peers() == []


def test_connect_failure_clears_connecting():
    router, transport, _ = make_router(transport=FakeTransport(fail=True))
    ip = ("10.0.0.1", 1)
    assert router.connect(ip) is False
    assert not router.is_connecting(ip)


def test_connect_refused_returns_false():
    router, transport, _ = make_router()
    assert router.connect(LOCAL) is False
    assert transport.connected == []


def test_insert_connected_peer_updates_sets():
    router, _, _ = make_router()
    ip = ("10.0.0.1", 1)
    addr = ("10.0.0.1", 55)
    router.insert_candidate_peers([ip])
    router.insert_restricted_peer(ip)
    router.insert_connected_peer(make_peer(ip), addr)
    assert router.is_connected(ip)
    assert router.candidate_peers() == []
    assert router.restricted_peers() == []
    assert router.resolve_to_listener(addr) == ip
    assert router.resolve_to_ambiguous(ip) == addr


def test_counts_by_node_type():
    router, _, _ = make_router()
    kinds = [NodeType.BEACON, NodeType.VALIDATOR, NodeType.VALIDATOR, NodeType.PROVER]
    for port, kind in enumerate(kinds, start=1):
        ip = ("10.0.0.1", port)
        router.insert_connected_peer(make_peer(ip, kind), ("10.0.0.2", port))
    assert router.number_of_connected_peers() == 4
    assert router.number_of_connected_beacons() == 1
    assert router.number_of_connected_validators() == 2
    assert router.number_of_connected_provers() == 1
    assert router.number_of_connected_clients() == 0
    assert router.connected_beacons() == [("10.0.0.1", 1)]
    assert router.connected_validators() == [("10.0.0.1", 2), ("10.0.0.1", 3)]
    assert router.connected_provers() == [("10.0.0.1", 4)]
    assert router.connected_clients() == []
    assert router.is_connected_beacon(("10.0.0.1", 1))
    assert not router.is_connected_validator(("10.0.0.1", 1))
    assert router.is_connected_prover(("10.0.0.1", 4))
    assert not router.is_connected_client(("10.0.0.1", 4))
    assert router.connected_metrics()[0] == (("10.0.0.1", 1), NodeType.BEACON)
    assert [p.ip for p in router.get_connected_peers()] == router.connected_peers()


def test_insert_candidate_peers_filters():
    router, _, _ = make_router()
    connected = ("10.0.0.1", 1)
    restricted = ("10.0.0.2", 1)
    fresh = ("10.0.0.3", 1)
    router.insert_connected_peer(make_peer(connected), ("10.0.0.1", 55))
    router.insert_restricted_peer(restricted)
    router.insert_candidate_peers([LOCAL, connected, restricted, fresh, fresh])
    assert router.candidate_peers() == [fresh]
    assert router.number_of_candidate_peers() == 1


def test_insert_candidate_peers_capped():
    router, _, _ = make_router()
    peers = [("10.1.0.1", port) for port in range(1, Router.MAXIMUM_CANDIDATE_PEERS + 11)]
    router.insert_candidate_peers(peers)
    assert router.number_of_candidate_peers() == Router.MAXIMUM_CANDIDATE_PEERS
    router.insert_candidate_peers([("10.2.0.1", 1)])
    assert router.number_of_candidate_peers() == Router.MAXIMUM_CANDIDATE_PEERS


def test_insert_restricted_removes_candidate():
    router, _, _ = make_router()
    ip = ("10.0.0.1", 1)
    router.insert_candidate_peers([ip])
    router.insert_restricted_peer(ip)
    assert router.candidate_peers() == []
    assert router.restricted_peers() == [ip]


def test_update_connected_peer():
    router, _, _ = make_router()
    ip = ("10.0.0.1", 1)
    router.insert_connected_peer(make_peer(ip, NodeType.PROVER), ("10.0.0.1", 55))

    def bump(peer):
        peer.version = 7

    router.update_connected_peer(ip, NodeType.PROVER, bump)
    assert router.get_connected_peer(ip).version == 7
    with pytest.raises(ValueError, match="changed node types"):
        router.update_connected_peer(ip, NodeType.CLIENT, bump)


def test_remove_connected_peer_becomes_candidate():
    router, _, _ = make_router()
    ip = ("10.0.0.1", 1)
    addr = ("10.0.0.1", 55)
    router.insert_connected_peer(make_peer(ip), addr)
    router.remove_connected_peer(ip)
    assert not router.is_connected(ip)
    assert router.candidate_peers() == [ip]
    assert router.resolve_to_ambiguous(ip) is None
    assert router.resolve_to_listener(addr) is None
    router.remove_candidate_peer(ip)
    assert router.candidate_peers() == []


def test_disconnect_uses_connection_address():
    router, transport, _ = make_router()
    ip = ("10.0.0.1", 1)
    addr = ("10.0.0.1", 55)
    assert router.disconnect(ip) is False
    router.insert_connected_peer(make_peer(ip), addr)
    assert router.disconnect(ip) is True
    assert transport.disconnected == [addr]


def test_bootstrap_peers_dev_mode():
    beacon, _, _ = make_router(NodeType.BEACON, is_dev=True)
    client, _, _ = make_router(NodeType.CLIENT, is_dev=True)
    assert beacon.bootstrap_peers() == []
    assert client.bootstrap_peers() == [("127.0.0.1", 4130)]
    assert DEV_BOOTSTRAP_PEER == ("127.0.0.1", 4130)


def test_bootstrap_peers_configured():
    router, _, _ = make_router(bootstrap=[])
    assert router.bootstrap_peers() == []
    default, _, _ = make_router()
    assert ("24.199.74.2", 4133) in default.bootstrap_peers()
    assert len(default.bootstrap_peers()) == 10


def test_trusted_peers_kept_in_order():
    trusted = [("10.0.0.5", 1), ("10.0.0.4", 1)]
    router, _, _ = make_router(trusted_peers=trusted)
    assert router.trusted_peers() == trusted