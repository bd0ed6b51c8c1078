# shardraft

A Raft consensus peer and the pieces of a sharded key/value service,
written in pure Python with no third-party dependencies.

## What is inside

- `shardraft.raft`: a Raft peer (`Raft`). It covers leader election, log
  replication, persistence and log compaction through snapshots.
  `make(peers, me, persister, apply_queue)` builds a peer and starts its
  background threads. Each entry of `peers` must have a
  `call(method, args)` method. That method invokes the named handler on
  the other peer (`request_vote`, `append_entries` or
  `install_snapshot`) and returns its reply, or `None` if the call
  failed. Committed commands and installed snapshots are delivered as
  `ApplyMsg` values through `apply_queue.put(...)`; a `queue.Queue`
  works for this. The peer also offers `start`, `get_state`,
  `snapshot`, `persist_bytes`, `kill` and `killed`.
- `shardraft.raft_log`: `RaftLog` and `LogEntry`. The log is addressed
  by absolute index and records the index and term of the last
  snapshot. It supports `merge`, `compact` and `install`, and can be
  saved and rebuilt with `to_state` / `from_state`.
- `shardraft.raftapi`: `ApplyMsg`, with the `command_msg` and
  `snapshot_msg` constructors, and the `RaftPeer` protocol.
- `shardraft.persister`: `Persister`. It keeps Raft state and a service
  snapshot in memory and saves the two together in one step.
- `shardraft.shardcfg`: `ShardConfig`, which assigns the 12 shards
  (`NSHARDS`) to groups. It has `join`, `leave`, `join_balance`,
  `leave_balance`, a deterministic `rebalance`, `gid_servers`,
  `is_member`, `check_config`, and a JSON round trip through `str()`
  and `ShardConfig.from_string`. `key2shard` maps a key to its shard
  using 32-bit FNV-1a. Invalid configurations raise `ConfigError`.
- `shardraft.rpc`: the request and reply dataclasses for Get, Put,
  FreezeShard, InstallShard and DeleteShard, and the `Err` codes.
- `shardraft.shardgrp_server`: `KVServer`, the state machine of one
  shard group. It serves versioned gets and puts, freezes, installs
  and deletes shards under configuration numbers, and saves and
  restores its state with `snapshot` / `restore`. Group `GID1` starts
  out owning every shard. If a replicator with a
  `submit(req) -> (err, reply)` method is passed as `rsm`, requests go
  through it. Without one, requests are applied directly with `do_op`.
- `shardraft.shardgrp_client`: `Clerk`, which talks to the servers of
  one group. It tries them in turn until one answers or a timeout
  passes.
- `shardraft.shardctrler`: `ShardCtrler`. It keeps the current
  configuration under the key `currentCfg` and a pending one under
  `nextCfg` in a versioned key/value store, and moves shards between
  groups when the configuration changes. `init_controller` finishes a
  change that an earlier controller left incomplete.
- `shardraft.client`: `Clerk`, which sends each `get` and `put` to the
  group that owns the key's shard. When a group answers
  `Err.WRONG_GROUP`, it fetches the configuration again from the
  controller.

## Example

```python
from shardraft.rpc import Err, GetArgs, PutArgs
from shardraft.shardcfg import ShardConfig, key2shard
from shardraft.shardgrp_server import KVServer

cfg = ShardConfig()
cfg.join_balance({1: ["x", "y", "z"]})
cfg.join_balance({2: ["a", "b", "c"]})
cfg.check_config([1, 2])

gid, servers = cfg.gid_servers(key2shard("hello"))
assert ShardConfig.from_string(str(cfg)).num == cfg.num

server = KVServer(gid=1)            # group 1 starts out owning every shard
assert server.put(PutArgs("hello", "world", 0)).err is Err.OK
reply = server.get(GetArgs("hello"))
assert (reply.value, reply.version) == ("world", 1)
```

## What this package does not do

- It has no network transport. Raft peers, group clerks and the
  controller talk to each other only through the `call` objects you
  pass in.
- It does not provide the replicated state machine layer that would
  connect `KVServer` to a Raft group. Nor does it provide the versioned
  key/value store that `ShardCtrler` writes to. You must supply both.
- `Persister` holds its data in memory only and writes nothing to disk.
- There is no command-line program and no server process to run.

## Running the tests

```
pip install -e ".[test]"
pytest
```