"""Clerk that talks to the servers of one shard group."""

from __future__ import annotations

import time
from typing import Any, Iterator, Protocol

from .rpc import (
    DeleteShardArgs,
    Err,
    FreezeShardArgs,
    GetArgs,
    InstallShardArgs,
    PutArgs,
)

_KV_TIMEOUT = 1.0
_SHARD_TIMEOUT = 0.2
_RETRY_PAUSE = 0.01


class Caller(Protocol):
    """Sends one call to a named server; returns the reply, or None on failure."""

    def call(self, server: str, method: str, args: Any) -> Any:
        ...


class Clerk:
    """Sends requests to a shard group, trying its servers in turn."""

    def __init__(self, clnt: Caller, servers: list[str]) -> None:
        self._clnt = clnt
        self._servers = list(servers)
        self._leader = 0

    def _attempts(self, method: str, args: Any,
                  timeout: float) -> Iterator[tuple[int, Any]]:
        """Yield (server id, reply) per call, cycling servers until timeout."""
        deadline = time.monotonic() + timeout
        server_id = self._leader
        n = len(self._servers)
        while time.monotonic() < deadline:
            for _ in range(n):
                reply = self._clnt.call(self._servers[server_id], method, args)
                yield server_id, reply
                server_id = (server_id + 1) % n
            time.sleep(_RETRY_PAUSE)

    def get(self, key: str) -> tuple[str, int, Err]:
        """Return (value, version, err) for ``key``."""
        args = GetArgs(key)
        for server_id, reply in self._attempts("KVServer.Get", args, _KV_TIMEOUT):
            if reply is None:
                continue
            if reply.err is Err.OK:
                self._leader = server_id
                return reply.value, reply.version, Err.OK
            if reply.err is Err.NO_KEY:
                self._leader = server_id
                return "", 0, Err.NO_KEY
            if reply.err is Err.WRONG_GROUP:
                return "", 0, Err.WRONG_GROUP
        return "", 0, Err.WRONG_GROUP

    def put(self, key: str, value: str, version: int) -> Err:
        """Store ``value`` under ``key`` if ``version`` matches.

        A version mismatch seen after a retry is reported as MAYBE, since an
        earlier attempt may have been applied.
        """
        args = PutArgs(key, value, version)
        first_attempt = True
        for server_id, reply in self._attempts("KVServer.Put", args, _KV_TIMEOUT):
            if reply is not None:
                if reply.err is Err.OK:
                    self._leader = server_id
                    return Err.OK
                if reply.err is Err.NO_KEY:
                    self._leader = server_id
                    return Err.NO_KEY
                if reply.err is Err.VERSION:
                    return Err.VERSION if first_attempt else Err.MAYBE
                if reply.err is Err.WRONG_GROUP:
                    return Err.WRONG_GROUP
            first_attempt = False
        return Err.WRONG_GROUP

    def _shard_call(self, method: str, args: Any) -> tuple[Any, Err]:
        for server_id, reply in self._attempts(method, args, _SHARD_TIMEOUT):
            if reply is None:
                continue
            if reply.err is Err.OK:
                self._leader = server_id
                return reply, Err.OK
            if reply.err is Err.WRONG_GROUP:
                return None, Err.WRONG_GROUP
        return None, Err.WRONG_GROUP

    def freeze_shard(self, shard: int, num: int) -> tuple[bytes, Err]:
        """Freeze ``shard`` at config ``num``; return its state and the outcome."""
        reply, err = self._shard_call("KVServer.FreezeShard",
                                      FreezeShardArgs(shard, num))
        if err is Err.OK:
            return reply.state, Err.OK
        return b"", err

    def install_shard(self, shard: int, state: bytes, num: int) -> Err:
        """Install ``state`` as the contents of ``shard`` at config ``num``."""
        _, err = self._shard_call("KVServer.InstallShard",
                                  InstallShardArgs(shard, state, num))
        return err

    def delete_shard(self, shard: int, num: int) -> Err:
        """Delete ``shard`` at config ``num``."""
        _, err = self._shard_call("KVServer.DeleteShard",
                                  DeleteShardArgs(shard, num))
        return err