"""Shard controller: stores configurations and moves shards between groups."""

from __future__ import annotations

from typing import Any, Protocol

from .rpc import Err
from .shardcfg import NSHARDS, ShardConfig
from .shardgrp_client import Caller, Clerk as GroupClerk

CURRENT_KEY = "currentCfg"
NEXT_KEY = "nextCfg"


class VersionedStore(Protocol):
    """A versioned key/value store in which configurations are kept."""

    def get(self, key: str) -> tuple[str, int, Err]:
        ...

    def put(self, key: str, value: str, version: int) -> Err:
        ...


class ShardCtrler:
    """Reads and changes the current configuration, moving shards as needed.

    The current configuration lives under ``currentCfg``; a configuration
    being moved to is recorded under ``nextCfg`` so that a later controller
    can finish the move.
    """

    def __init__(self, clnt: Caller, kv: VersionedStore) -> None:
        self._clnt = clnt
        self._kv = kv

    def init_controller(self) -> None:
        """Finish any configuration change a previous controller left undone."""
        while True:
            current_str, current_ver, _ = self._kv.get(CURRENT_KEY)
            current = ShardConfig.from_string(current_str)
            next_str, next_ver, _ = self._kv.get(NEXT_KEY)
            if not next_str:
                return
            pending = ShardConfig.from_string(next_str)
            if pending.num <= current.num:
                if self._kv.put(NEXT_KEY, "", next_ver) is Err.VERSION:
                    continue
                return
            if self._migrate(current, pending):
                if self._kv.put(CURRENT_KEY, str(pending), current_ver) is Err.VERSION:
                    continue
                if self._kv.put(NEXT_KEY, "", next_ver) is Err.VERSION:
                    continue
                return

    def init_config(self, cfg: ShardConfig) -> None:
        """Store the first configuration and an empty pending one."""
        ok = (Err.OK, Err.MAYBE)
        while True:
            err1 = self._kv.put(CURRENT_KEY, str(cfg), 0)
            err2 = self._kv.put(NEXT_KEY, "", 0)
            if err1 in ok and err2 in ok:
                return

    def change_config_to(self, new: ShardConfig) -> None:
        """Move from the current configuration to ``new``."""
        while True:
            current_str, current_ver, _ = self._kv.get(CURRENT_KEY)
            current = ShardConfig.from_string(current_str)
            if new.num <= current.num:
                return
            next_str, next_ver, _ = self._kv.get(NEXT_KEY)
            if next_str:
                existing = ShardConfig.from_string(next_str)
                if existing.num >= new.num and self._migrate(current, existing):
                    if self._kv.put(CURRENT_KEY, str(existing), current_ver) is Err.VERSION:
                        continue
                    if self._kv.put(NEXT_KEY, "", next_ver) is Err.VERSION:
                        continue
                    return
            if self._kv.put(NEXT_KEY, str(new), next_ver) is Err.VERSION:
                continue
            if self._migrate(current, new):
                if self._kv.put(CURRENT_KEY, str(new), current_ver) is Err.VERSION:
                    continue
                if self._kv.put(NEXT_KEY, "", next_ver) is Err.VERSION:
                    continue
                return

    def query(self) -> ShardConfig | None:
        """The current configuration, or None if it cannot be read."""
        value, _, err = self._kv.get(CURRENT_KEY)
        if err is not Err.OK:
            return None
        return ShardConfig.from_string(value)

    def _migrate(self, start: ShardConfig, target: ShardConfig) -> bool:
        """Move every shard whose group changes; False if a group refuses."""
        for shard in range(NSHARDS):
            from_gid = start.shards[shard]
            to_gid = target.shards[shard]
            if from_gid == to_gid:
                continue
            from_servers = start.groups.get(from_gid)
            to_servers = target.groups.get(to_gid)
            if from_servers is None or to_servers is None:
                continue
            source = GroupClerk(self._clnt, from_servers)
            dest = GroupClerk(self._clnt, to_servers)

            state: Any = b""
            while True:
                state, err = source.freeze_shard(shard, target.num)
                if err is Err.OK:
                    break
                if err is Err.WRONG_GROUP:
                    return False
            while True:
                err = dest.install_shard(shard, state, target.num)
                if err is Err.OK:
                    break
                if err is Err.WRONG_GROUP:
                    return False
            while True:
                err = source.delete_shard(shard, target.num)
                if err is Err.OK:
                    break
                if err is Err.WRONG_GROUP:
                    return False
        return True