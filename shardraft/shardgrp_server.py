"""Server of one shard group: a versioned key/value store split into shards."""

from __future__ import annotations

import json
import pickle
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from .rpc import (
    DeleteShardArgs,
    DeleteShardReply,
    Err,
    FreezeShardArgs,
    FreezeShardReply,
    GetArgs,
    GetReply,
    InstallShardArgs,
    InstallShardReply,
    PutArgs,
    PutReply,
)
from .shardcfg import GID1, NSHARDS, NUM_FIRST, key2shard


class Submitter(Protocol):
    """Replicates a request; returns (err, reply from ``do_op``)."""

    def submit(self, req: Any) -> tuple[Err, Any]:
        ...


@dataclass(frozen=True)
class KVPair:
    value: str
    version: int


@dataclass
class ShardInfo:
    """What a server knows about one shard."""

    config_num: int
    frozen: bool = False
    owned: bool = False


def _initial_shards(gid: int) -> list[ShardInfo]:
    if gid == GID1:
        return [ShardInfo(NUM_FIRST, False, True) for _ in range(NSHARDS)]
    return [ShardInfo(NUM_FIRST - 1, False, False) for _ in range(NSHARDS)]


def _check_shard(shard: int) -> None:
    if not 0 <= shard < NSHARDS:
        raise ValueError(f"shard {shard} out of range 0..{NSHARDS - 1}")


def _encode_shard(data: dict[str, KVPair]) -> bytes:
    return json.dumps({k: [p.value, p.version] for k, p in sorted(data.items())},
                      separators=(",", ":")).encode("utf-8")


def _decode_shard(data: bytes) -> dict[str, KVPair]:
    if not data:
        return {}
    try:
        raw = json.loads(bytes(data).decode("utf-8"))
        return {str(k): KVPair(str(v), int(ver)) for k, (v, ver) in raw.items()}
    except (ValueError, TypeError, AttributeError, UnicodeDecodeError) as exc:
        raise ValueError(f"failed to decode shard data: {exc}") from exc


class KVServer:
    """The state machine of a shard group, plus its request handlers.

    Requests go through ``rsm.submit`` when a replicator is attached; with
    none, they are applied directly.
    """

    def __init__(self, gid: int, me: int = 0, rsm: Submitter | None = None) -> None:
        self.gid = gid
        self.me = me
        self.rsm = rsm
        self._lock = threading.Lock()
        self._dead = threading.Event()
        self._shards = _initial_shards(gid)
        self._store: dict[str, KVPair] = {}

    # ----- state machine -----------------------------------------------

    def do_op(self, req: Any) -> Any:
        """Apply one request to the state and return its reply."""
        if isinstance(req, PutArgs):
            return self._do_put(req)
        if isinstance(req, GetArgs):
            return self._do_get(req)
        if isinstance(req, FreezeShardArgs):
            return self._do_freeze(req)
        if isinstance(req, InstallShardArgs):
            return self._do_install(req)
        if isinstance(req, DeleteShardArgs):
            return self._do_delete(req)
        raise TypeError(f"unexpected request type {type(req).__name__}")

    def _serving(self, key: str) -> bool:
        info = self._shards[key2shard(key)]
        return info.owned and not info.frozen

    def _do_put(self, args: PutArgs) -> PutReply:
        if self.killed():
            return PutReply(Err.WRONG_LEADER)
        with self._lock:
            if not self._serving(args.key):
                return PutReply(Err.WRONG_GROUP)
            pair = self._store.get(args.key)
            current = pair.version if pair is not None else 0
            if args.version != current:
                return PutReply(Err.VERSION)
            self._store[args.key] = KVPair(args.value, args.version + 1)
            return PutReply(Err.OK)

    def _do_get(self, args: GetArgs) -> GetReply:
        if self.killed():
            return GetReply(Err.WRONG_LEADER)
        with self._lock:
            if not self._serving(args.key):
                return GetReply(Err.WRONG_GROUP)
            pair = self._store.get(args.key)
            if pair is None:
                return GetReply(Err.NO_KEY)
            return GetReply(Err.OK, pair.value, pair.version)

    def _shard_data(self, shard: int) -> bytes:
        return _encode_shard({k: p for k, p in self._store.items()
                              if key2shard(k) == shard})

    def _do_freeze(self, args: FreezeShardArgs) -> FreezeShardReply:
        if self.killed():
            return FreezeShardReply(Err.WRONG_LEADER)
        _check_shard(args.shard)
        with self._lock:
            info = self._shards[args.shard]
            config_num = info.config_num
            if config_num > args.num:
                return FreezeShardReply(Err.WRONG_GROUP)
            if not (config_num == args.num and info.frozen):
                info.config_num = args.num
                info.frozen = True
            return FreezeShardReply(Err.OK, self._shard_data(args.shard), config_num)

    def _do_install(self, args: InstallShardArgs) -> InstallShardReply:
        if self.killed():
            return InstallShardReply(Err.WRONG_LEADER)
        _check_shard(args.shard)
        with self._lock:
            info = self._shards[args.shard]
            if info.config_num > args.num:
                return InstallShardReply(Err.WRONG_GROUP)
            data = _decode_shard(args.state)
            info.config_num = args.num
            info.frozen = False
            info.owned = True
            self._store.update(data)
            return InstallShardReply(Err.OK)

    def _do_delete(self, args: DeleteShardArgs) -> DeleteShardReply:
        if self.killed():
            return DeleteShardReply(Err.WRONG_LEADER)
        _check_shard(args.shard)
        with self._lock:
            info = self._shards[args.shard]
            if info.config_num > args.num:
                return DeleteShardReply(Err.WRONG_GROUP)
            info.config_num = args.num
            info.frozen = False
            info.owned = False
            for key in [k for k in self._store if key2shard(k) == args.shard]:
                del self._store[key]
            return DeleteShardReply(Err.OK)

    def snapshot(self) -> bytes:
        """Encode the shard table and the store; empty once killed."""
        with self._lock:
            if self.killed():
                return b""
            return pickle.dumps((
                [(i.config_num, i.frozen, i.owned) for i in self._shards],
                {k: (p.value, p.version) for k, p in self._store.items()},
            ))

    def restore(self, data: bytes) -> None:
        """Replace the state with a snapshot; empty data resets it."""
        with self._lock:
            if self.killed():
                return
            if not data:
                self._shards = _initial_shards(self.gid)
                self._store = {}
                return
            try:
                shards, store = pickle.loads(data)
                infos = [ShardInfo(int(n), bool(f), bool(o)) for n, f, o in shards]
                pairs = {str(k): KVPair(str(v), int(ver))
                         for k, (v, ver) in store.items()}
            except Exception as exc:
                raise ValueError("failed to decode snapshot data") from exc
            if len(infos) != NSHARDS:
                raise ValueError(f"snapshot holds {len(infos)} shards, not {NSHARDS}")
            self._shards = infos
            self._store = pairs

    # ----- request handlers --------------------------------------------

    def _submit(self, args: Any, reply_type: type, failed: Any) -> Any:
        if self.killed():
            return failed
        if self.rsm is None:
            rep = self.do_op(args)
        else:
            err, rep = self.rsm.submit(args)
            if err is Err.WRONG_LEADER:
                return failed
        if not isinstance(rep, reply_type):
            return failed
        return rep

    def get(self, args: GetArgs) -> GetReply:
        return self._submit(args, GetReply, GetReply(Err.WRONG_LEADER))

    def put(self, args: PutArgs) -> PutReply:
        return self._submit(args, PutReply, PutReply(Err.WRONG_LEADER))

    def freeze_shard(self, args: FreezeShardArgs) -> FreezeShardReply:
        """Stop serving a shard and return its key/values."""
        return self._submit(args, FreezeShardReply, FreezeShardReply(Err.WRONG_LEADER))

    def install_shard(self, args: InstallShardArgs) -> InstallShardReply:
        """Take over a shard with the supplied contents."""
        return self._submit(args, InstallShardReply, InstallShardReply(Err.WRONG_LEADER))

    def delete_shard(self, args: DeleteShardArgs) -> DeleteShardReply:
        """Drop a shard and its key/values."""
        return self._submit(args, DeleteShardReply, DeleteShardReply(Err.WRONG_LEADER))

    def kill(self) -> None:
        self._dead.set()

    def killed(self) -> bool:
        return self._dead.is_set()