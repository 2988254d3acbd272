"""Persistent cache building blocks: configuration, cache engine, runtime, cluster gossip, hashing and client."""

__version__ = "0.2.1"