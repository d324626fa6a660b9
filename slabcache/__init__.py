"""Slab allocation and rebalancing, key hashing, prefix statistics, watcher logging and SASL helpers for an in-memory cache."""

__version__ = "0.1.0"