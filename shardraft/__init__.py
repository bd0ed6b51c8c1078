"""Raft consensus peers and the parts of a sharded key/value service."""

__version__ = "0.1.0"