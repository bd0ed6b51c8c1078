import queue
import threading
import time

import pytest

from shardraft.persister import Persister
from shardraft.raft import (
    AppendEntriesArgs,
    InstallSnapshotArgs,
    Raft,
    RequestVoteArgs,
    make,
    random_election_timeout,
    stable_heartbeat_timeout,
)
from shardraft.raft_log import LogEntry
from shardraft.raftapi import ApplyMsg


def _fresh(persister=None, q=None):
    return Raft([None, None, None], 0, persister or Persister(), q or queue.Queue())


def _three_entries():
    return (LogEntry(1, "a"), LogEntry(1, "b"), LogEntry(2, "c"))


# ----- timeouts -----------------------------------------------------------

def test_random_election_timeout_range():
    for _ in range(200):
        t = random_election_timeout()
        assert 0.25 <= t < 0.65


def test_heartbeat_timeout():
    assert stable_heartbeat_timeout() == pytest.approx(0.1)


# ----- handlers, without background work ---------------------------------

def test_fresh_peer_is_follower_at_term_zero():
    r = _fresh()
    assert r.get_state() == (0, False)
    assert r.start("x") == (-1, -1, False)


def test_vote_granted_once_per_term():
    r = _fresh()
    first = r.request_vote(RequestVoteArgs(1, 1, 0, 0))
    assert first.vote_granted and first.term == 1
    assert r.get_state() == (1, False)
    assert not r.request_vote(RequestVoteArgs(1, 2, 0, 0)).vote_granted
    assert r.request_vote(RequestVoteArgs(1, 1, 0, 0)).vote_granted


def test_vote_rejected_for_stale_term():
    r = _fresh()
    r.request_vote(RequestVoteArgs(3, 1, 0, 0))
    reply = r.request_vote(RequestVoteArgs(2, 2, 0, 0))
    assert not reply.vote_granted
    assert reply.term == 3


def test_vote_rejected_for_stale_log():
    r = _fresh()
    ok = r.append_entries(AppendEntriesArgs(2, 1, 0, 0, (LogEntry(2, "a"),), 0))
    assert ok.success
    denied = r.request_vote(RequestVoteArgs(3, 2, 5, 1))
    assert not denied.vote_granted
    assert denied.term == 3
    granted = r.request_vote(RequestVoteArgs(3, 2, 1, 2))
    assert granted.vote_granted


def test_vote_persists_state():
    p = Persister()
    r = _fresh(p)
    assert r.persist_bytes() == 0
    r.request_vote(RequestVoteArgs(1, 1, 0, 0))
    assert r.persist_bytes() > 0
    assert r.persist_bytes() == p.raft_state_size()


def test_append_entries_reports_term_before_update():
    r = _fresh()
    reply = r.append_entries(AppendEntriesArgs(2, 1, 0, 0, (), 0))
    assert reply.success
    assert reply.term == 0
    assert r.get_state()[0] == 2


def test_append_entries_rejects_stale_term():
    r = _fresh()
    r.append_entries(AppendEntriesArgs(4, 1, 0, 0, (), 0))
    reply = r.append_entries(AppendEntriesArgs(3, 2, 0, 0, (), 0))
    assert not reply.success
    assert reply.term == 4


def test_append_entries_missing_prev_index():
    r = _fresh()
    reply = r.append_entries(AppendEntriesArgs(1, 1, 7, 1, (), 0))
    assert not reply.success
    assert reply.conflict_term == -1
    assert reply.conflict_index == 1


def test_append_entries_conflict_walks_back_to_term_start():
    r = _fresh()
    assert r.append_entries(AppendEntriesArgs(2, 1, 0, 0, _three_entries(), 0)).success
    reply = r.append_entries(AppendEntriesArgs(3, 1, 3, 3, (), 0))
    assert not reply.success
    assert reply.conflict_term == 2
    assert reply.conflict_index == 3
    reply = r.append_entries(AppendEntriesArgs(3, 1, 2, 2, (), 0))
    assert reply.conflict_term == 1
    assert reply.conflict_index == 1


def test_append_entries_truncates_on_conflict():
    r = _fresh()
    r.append_entries(AppendEntriesArgs(2, 1, 0, 0, _three_entries(), 0))
    assert r.append_entries(AppendEntriesArgs(3, 1, 1, 1, (LogEntry(3, "z"),), 0)).success
    gone = r.append_entries(AppendEntriesArgs(3, 1, 3, 2, (), 0))
    assert not gone.success
    assert gone.conflict_term == -1
    assert r.append_entries(AppendEntriesArgs(3, 1, 2, 3, (), 0)).success


def test_persisted_state_restores():
    p = Persister()
    r = _fresh(p)
    r.append_entries(AppendEntriesArgs(2, 1, 0, 0, _three_entries(), 0))
    restored = _fresh(p)
    assert restored.get_state() == (2, False)
    assert restored.append_entries(AppendEntriesArgs(2, 1, 3, 2, (), 0)).success


def test_corrupt_persisted_state_raises():
    p = Persister()
    p.save(b"not a pickle", b"")
    with pytest.raises(ValueError):
        _fresh(p)


def test_snapshot_compacts_log():
    p = Persister()
    r = _fresh(p)
    entries = _three_entries()
    r.append_entries(AppendEntriesArgs(2, 1, 0, 0, entries, 3))
    r.snapshot(2, b"snap")
    assert p.read_snapshot() == b"snap"
    reply = r.append_entries(AppendEntriesArgs(2, 1, 1, 1, (), 3))
    assert not reply.success
    assert reply.conflict_term == -1
    assert reply.conflict_index == len(entries) + 1
    restored = _fresh(p)
    assert restored.append_entries(AppendEntriesArgs(2, 1, 2, 1, (), 3)).success


def test_snapshot_beyond_log_is_ignored():
    p = Persister()
    r = _fresh(p)
    r.append_entries(AppendEntriesArgs(1, 1, 0, 0, (LogEntry(1, "a"),), 1))
    r.snapshot(10, b"late")
    assert p.read_snapshot() == b""


def test_install_snapshot_delivers_message():
    p = Persister()
    q = queue.Queue()
    r = _fresh(p, q)
    reply = r.install_snapshot(InstallSnapshotArgs(1, 1, 5, 1, b"state"))
    assert reply.term == 1
    assert q.get_nowait() == ApplyMsg.snapshot_msg(b"state", 1, 5)
    assert p.read_snapshot() == b"state"
    assert r.append_entries(AppendEntriesArgs(1, 1, 5, 1, (), 5)).success


def test_install_snapshot_stale_is_ignored():
    q = queue.Queue()
    r = _fresh(q=q)
    r.install_snapshot(InstallSnapshotArgs(2, 1, 5, 2, b"state"))
    q.get_nowait()
    assert r.install_snapshot(InstallSnapshotArgs(1, 1, 9, 1, b"old")).term == 2
    r.install_snapshot(InstallSnapshotArgs(2, 1, 3, 2, b"older"))
    assert q.empty()


def test_killed_peer_refuses_work():
    r = _fresh()
    r.kill()
    assert r.killed()
    assert r.request_vote(RequestVoteArgs(1, 1, 0, 0)) is None
    assert r.append_entries(AppendEntriesArgs(1, 1, 0, 0, (), 0)) is None
    assert r.start("x") == (-1, -1, False)


# ----- a running cluster over an in-memory network ------------------------

class _End:
    def __init__(self, cluster, src, dst):
        self._cluster = cluster
        self._src = src
        self._dst = dst

    def call(self, method, args):
        return self._cluster.deliver(self._src, self._dst, method, args)


class Cluster:
    def __init__(self, n):
        self.n = n
        self.connected = set(range(n))
        self.rafts = {}
        self.logs = [{} for _ in range(n)]
        self._lock = threading.Lock()
        self._stop = threading.Event()
        for i in range(n):
            q = queue.Queue()
            ends = [_End(self, i, j) for j in range(n)]
            self.rafts[i] = make(ends, i, Persister(), q)
            threading.Thread(target=self._drain, args=(i, q), daemon=True).start()

    def deliver(self, src, dst, method, args):
        with self._lock:
            ok = src in self.connected and dst in self.connected
            target = self.rafts.get(dst)
        if not ok or target is None:
            return None
        return getattr(target, method)(args)

    def _drain(self, i, q):
        while not self._stop.is_set():
            try:
                msg = q.get(timeout=0.05)
            except queue.Empty:
                continue
            if msg.command_valid:
                with self._lock:
                    self.logs[i][msg.command_index] = msg.command

    def disconnect(self, i):
        with self._lock:
            self.connected.discard(i)

    def leader(self, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            by_term = {}
            for i in sorted(self.connected):
                term, is_leader = self.rafts[i].get_state()
                if is_leader:
                    by_term.setdefault(term, []).append(i)
            for term, ids in by_term.items():
                assert len(ids) == 1, f"term {term} has leaders {ids}"
            if by_term:
                return by_term[max(by_term)][0]
            time.sleep(0.05)
        raise AssertionError("no leader elected")

    def n_committed(self, index):
        with self._lock:
            values = [log[index] for log in self.logs if index in log]
        assert all(v == values[0] for v in values)
        return len(values), (values[0] if values else None)

    def one(self, cmd, expected):
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            index = -1
            for i in sorted(self.connected):
                idx, _, ok = self.rafts[i].start(cmd)
                if ok:
                    index = idx
                    break
            if index != -1:
                wait_until = time.monotonic() + 2
                while time.monotonic() < wait_until:
                    count, value = self.n_committed(index)
                    if count >= expected and value == cmd:
                        return index
                    time.sleep(0.02)
            else:
                time.sleep(0.05)
        raise AssertionError(f"{cmd!r} failed to reach agreement")

    def shutdown(self):
        self._stop.set()
        for r in self.rafts.values():
            r.kill()


@pytest.fixture
def cluster3():
    c = Cluster(3)
    yield c
    c.shutdown()


def test_initial_election(cluster3):
    leader = cluster3.leader()
    time.sleep(0.1)
    terms = {Raft.get_state(cluster3.rafts[i])[0] for i in range(3)}
    assert len(terms) == 1
    assert Raft.get_state(cluster3.rafts[leader])[0] >= 1


def test_basic_agreement(cluster3):
    for index in range(1, 4):
        count, _ = cluster3.n_committed(index)
        assert count == 0
        assert cluster3.one(index * 100, 3) == index
    terms = {Raft.get_state(r)[0] for r in cluster3.rafts.values()}
    assert len(terms) == 1
    assert min(terms) >= 1


def test_reelection_after_leader_disconnect(cluster3):
    leader1 = cluster3.leader()
    term1 = Raft.get_state(cluster3.rafts[leader1])[0]
    cluster3.disconnect(leader1)
    leader2 = cluster3.leader()
    assert leader2 != leader1
    assert Raft.get_state(cluster3.rafts[leader2])[0] > term1


def test_follower_failure(cluster3):
    assert cluster3.one(101, 3) == 1
    leader = cluster3.leader()
    assert Raft.get_state(cluster3.rafts[leader])[0] >= 1
    cluster3.disconnect((leader + 1) % 3)
    assert cluster3.one(102, 2) == 2
    assert cluster3.one(103, 2) == 3