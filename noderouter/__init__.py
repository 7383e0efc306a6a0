"""Peer bookkeeping, message caching, block-sync planning and outbound sending for a peer-to-peer node router."""

__version__ = "0.1.0"