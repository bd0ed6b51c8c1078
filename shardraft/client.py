"""Clerk for the sharded key/value service."""

from __future__ import annotations

import threading

from .rpc import Err
from .shardcfg import ShardConfig, key2shard
from .shardctrler import ShardCtrler
from .shardgrp_client import Caller, Clerk as GroupClerk


class Clerk:
    """Routes each key to the group that holds its shard.

    The configuration is fetched from the controller whenever a group
    reports that it does not serve the key.
    """

    def __init__(self, clnt: Caller, sck: ShardCtrler) -> None:
        self._clnt = clnt
        self._sck = sck
        self._config = ShardConfig()
        self._lock = threading.Lock()

    def get(self, key: str) -> tuple[str, int, Err]:
        """Return (value, version, err) for ``key``."""
        while True:
            value, version, err = self._group_clerk(key).get(key)
            if err is Err.WRONG_GROUP:
                self._update_config()
                continue
            return value, version, err

    def put(self, key: str, value: str, version: int) -> Err:
        """Store ``value`` under ``key`` if ``version`` matches."""
        while True:
            err = self._group_clerk(key).put(key, value, version)
            if err is Err.WRONG_GROUP:
                self._update_config()
                continue
            return err

    def _update_config(self) -> None:
        with self._lock:
            latest = self._sck.query()
            if latest is not None and latest.num > self._config.num:
                self._config = latest

    def _group_clerk(self, key: str) -> GroupClerk:
        shard = key2shard(key)
        with self._lock:
            servers = self._config.groups.get(self._config.shards[shard]) or []
        return GroupClerk(self._clnt, servers)