"""Two-way mapping between listener addresses and connection addresses."""

from __future__ import annotations

import threading
from typing import Hashable, Optional


class Resolver:
    """Maps a peer's listening address to the address of its connection and back."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._from_listener: dict[Hashable, Hashable] = {}
        self._to_listener: dict[Hashable, Hashable] = {}

    def get_listener(self, peer_addr: Hashable) -> Optional[Hashable]:
        """Return the listener address for a connection address, if known."""
        with self._lock:
            return self._to_listener.get(peer_addr)

    def get_ambiguous(self, peer_ip: Hashable) -> Optional[Hashable]:
        """Return the connection address for a listener address, if known."""
        with self._lock:
            return self._from_listener.get(peer_ip)

    def insert_peer(self, listener_ip: Hashable, peer_addr: Hashable) -> None:
        with self._lock:
            self._from_listener[listener_ip] = peer_addr
            self._to_listener[peer_addr] = listener_ip

    def remove_peer(self, listener_ip: Hashable) -> None:
        with self._lock:
            peer_addr = self._from_listener.pop(listener_ip, None)
            if peer_addr is not None:
                self._to_listener.pop(peer_addr, None)