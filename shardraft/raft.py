"""A raft consensus peer: leader election, log replication and snapshots."""

from __future__ import annotations

import enum
import pickle
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from .persister import Persister
from .raft_log import LogEntry, RaftLog
from .raftapi import ApplyMsg

HEARTBEAT_TIMEOUT_MS = 100


def random_election_timeout() -> float:
    """Election timeout in seconds, drawn from 250 to 649 milliseconds."""
    return (250 + random.randrange(400)) / 1000


def stable_heartbeat_timeout() -> float:
    """Interval between heartbeats, in seconds."""
    return HEARTBEAT_TIMEOUT_MS / 1000


class PeerEnd(Protocol):
    """A connection to one peer.

    ``call`` invokes the peer's handler named ``method`` (``request_vote``,
    ``append_entries`` or ``install_snapshot``) and returns its reply, or
    None when the call could not be delivered or answered.
    """

    def call(self, method: str, args: Any) -> Any:
        ...


class ApplyQueue(Protocol):
    def put(self, item: ApplyMsg) -> None:
        ...


class PeerState(enum.Enum):
    LEADER = "leader"
    FOLLOWER = "follower"
    CANDIDATE = "candidate"


@dataclass(frozen=True)
class RequestVoteArgs:
    term: int
    candidate_id: int
    last_log_index: int
    last_log_term: int


@dataclass(frozen=True)
class RequestVoteReply:
    term: int
    vote_granted: bool


@dataclass(frozen=True)
class AppendEntriesArgs:
    term: int
    leader_id: int
    prev_log_index: int
    prev_log_term: int
    entries: tuple[LogEntry, ...] = ()
    leader_commit: int = 0


@dataclass(frozen=True)
class AppendEntriesReply:
    term: int
    success: bool
    conflict_index: int = 0
    conflict_term: int = 0


@dataclass(frozen=True)
class InstallSnapshotArgs:
    term: int
    leader_id: int
    last_included_index: int
    last_included_term: int
    data: bytes


@dataclass(frozen=True)
class InstallSnapshotReply:
    term: int


def _go(target: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


class Raft:
    """One raft peer.

    Constructing a peer restores its persisted state but starts no
    background work; ``make`` constructs a peer and starts it.
    """

    def __init__(self, peers: Sequence[PeerEnd], me: int,
                 persister: Persister, apply_queue: ApplyQueue) -> None:
        self._peers = list(peers)
        self._me = me
        self._persister = persister
        self._apply_queue = apply_queue

        self._lock = threading.Lock()
        self._apply_cond = threading.Condition(self._lock)
        self._dead = threading.Event()
        self._reset_election = threading.Event()
        self._heartbeat_now = threading.Event()

        self._current_term = 0
        self._voted_for = -1
        self._log = RaftLog()
        self._commit_index = 0
        self._last_applied = 0
        self._next_index = [0] * len(self._peers)
        self._match_index = [0] * len(self._peers)
        self._state = PeerState.FOLLOWER

        self._read_persist(persister.read_raft_state())
        self._commit_index = max(self._commit_index, self._log.last_included_index)
        self._last_applied = max(self._last_applied, self._log.last_included_index)

    # ----- persistence -------------------------------------------------

    def _encode_state(self) -> bytes:
        return pickle.dumps({
            "current_term": self._current_term,
            "voted_for": self._voted_for,
            "log": self._log.to_state(),
        })

    def _persist(self) -> None:
        self._persister.save(self._encode_state(), self._persister.read_snapshot())

    def _persist_with_snapshot(self, snapshot: bytes) -> None:
        self._persister.save(self._encode_state(), snapshot)

    def _read_persist(self, data: bytes) -> None:
        if not data:
            return
        try:
            state = pickle.loads(data)
            current_term = int(state["current_term"])
            voted_for = int(state["voted_for"])
            log = RaftLog.from_state(state["log"])
        except Exception as exc:
            raise ValueError("cannot restore persisted raft state") from exc
        self._current_term = current_term
        self._voted_for = voted_for
        self._log = log

    # ----- public interface --------------------------------------------

    def get_state(self) -> tuple[int, bool]:
        """Return (current term, whether this peer believes it is leader)."""
        with self._lock:
            return self._current_term, self._state is PeerState.LEADER

    def persist_bytes(self) -> int:
        """Size of the persisted raft state."""
        with self._lock:
            return self._persister.raft_state_size()

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Begin agreement on ``command``; return (index, term, is_leader)."""
        with self._lock:
            if self._state is not PeerState.LEADER or self.killed():
                return -1, -1, False
            term = self._current_term
            index = self._log.append(LogEntry(term, command))
            self._persist()
            self._heartbeat_now.set()
            return index, term, True

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Trim the log through ``index``, which ``snapshot`` now covers."""
        with self._lock:
            if self.killed():
                return
            if not self._log.compact(index):
                return
            self._commit_index = max(self._commit_index, index)
            self._last_applied = max(self._last_applied, index)
            self._persist_with_snapshot(snapshot)
            if self._state is PeerState.LEADER:
                self._heartbeat_now.set()
            self._apply_cond.notify()

    def kill(self) -> None:
        """Stop all background work of this peer."""
        self._dead.set()
        self._reset_election.set()
        self._heartbeat_now.set()
        with self._apply_cond:
            self._apply_cond.notify_all()

    def killed(self) -> bool:
        return self._dead.is_set()

    # ----- state transitions (lock held) -------------------------------

    def _become_follower(self, term: int) -> None:
        self._state = PeerState.FOLLOWER
        self._current_term = term
        self._voted_for = -1
        self._persist()

    def _become_candidate(self) -> None:
        self._state = PeerState.CANDIDATE
        self._current_term += 1
        self._voted_for = self._me
        self._persist()

    def _become_leader(self) -> None:
        self._state = PeerState.LEADER
        last = self._log.last_index()
        for i in range(len(self._peers)):
            if i == self._me:
                continue
            self._next_index[i] = last + 1
            self._match_index[i] = 0

    # ----- RPC handlers ------------------------------------------------

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply | None:
        """Handle a vote request; None if this peer has been killed."""
        with self._lock:
            if self.killed():
                return None
            if args.term < self._current_term:
                return RequestVoteReply(self._current_term, False)
            if args.term > self._current_term:
                self._become_follower(args.term)

            last_term = self._log.last_term()
            if args.last_log_term != last_term:
                up_to_date = args.last_log_term > last_term
            else:
                up_to_date = args.last_log_index >= self._log.last_index()

            if self._voted_for in (-1, args.candidate_id) and up_to_date:
                self._voted_for = args.candidate_id
                self._reset_election.set()
                self._persist()
                return RequestVoteReply(self._current_term, True)
            return RequestVoteReply(self._current_term, False)

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply | None:
        """Handle log replication or a heartbeat; None if killed."""
        with self._lock:
            if self.killed():
                return None
            reply_term = self._current_term
            if args.term < self._current_term:
                return AppendEntriesReply(reply_term, False)
            if args.term > self._current_term:
                self._become_follower(args.term)
            self._reset_election.set()

            log = self._log
            if (args.prev_log_index < log.last_included_index
                    or args.prev_log_index > log.last_index()):
                return AppendEntriesReply(reply_term, False,
                                          conflict_index=log.last_index() + 1,
                                          conflict_term=-1)

            conflict_term = log.term_at(args.prev_log_index)
            if args.prev_log_term != conflict_term:
                i = args.prev_log_index
                while i > log.last_included_index and log.term_at(i - 1) == conflict_term:
                    i -= 1
                return AppendEntriesReply(reply_term, False,
                                          conflict_index=i,
                                          conflict_term=conflict_term)

            if log.merge(args.prev_log_index, args.entries):
                self._persist()

            if args.leader_commit > self._commit_index:
                self._commit_index = min(args.leader_commit, log.last_index())
                self._apply_cond.notify()
            return AppendEntriesReply(reply_term, True)

    def install_snapshot(self, args: InstallSnapshotArgs) -> InstallSnapshotReply:
        """Handle a snapshot sent by the leader."""
        with self._lock:
            if args.term < self._current_term:
                return InstallSnapshotReply(self._current_term)
            if args.term > self._current_term:
                self._become_follower(args.term)
            reply = InstallSnapshotReply(self._current_term)
            self._reset_election.set()

            if (args.last_included_index <= self._log.last_included_index
                    or args.last_included_index < self._commit_index):
                return reply

            self._log.install(args.last_included_index, args.last_included_term)
            self._commit_index = max(self._commit_index, args.last_included_index)
            self._last_applied = max(self._last_applied, args.last_included_index)
            self._persist_with_snapshot(args.data)
            msg = ApplyMsg.snapshot_msg(args.data, args.last_included_term,
                                        args.last_included_index)
        self._apply_queue.put(msg)
        return reply

    # ----- elections ---------------------------------------------------

    def _run_election(self) -> None:
        with self._lock:
            if self.killed() or self._state is PeerState.LEADER:
                return
            self._become_candidate()
            self._reset_election.set()
            args = RequestVoteArgs(self._current_term, self._me,
                                   self._log.last_index(), self._log.last_term())

        votes = 1

        def ask(peer: PeerEnd) -> None:
            nonlocal votes
            reply = peer.call("request_vote", args)
            if reply is None:
                return
            with self._lock:
                if (self.killed() or self._current_term != args.term
                        or self._state is not PeerState.CANDIDATE
                        or self._voted_for != args.candidate_id):
                    return
                if reply.term > self._current_term:
                    self._become_follower(reply.term)
                    return
                if reply.vote_granted:
                    votes += 1
                    if votes > len(self._peers) // 2:
                        self._become_leader()
                        self._heartbeat_now.set()

        for i, peer in enumerate(self._peers):
            if i != self._me:
                _go(ask, peer)

    # ----- replication -------------------------------------------------

    def _broadcast_append_entries(self) -> None:
        with self._lock:
            if self.killed() or self._state is not PeerState.LEADER:
                return
            term = self._current_term
            leader_commit = self._commit_index
        for i, peer in enumerate(self._peers):
            if i != self._me:
                _go(self._replicate, i, peer, term, leader_commit)

    def _replicate(self, i: int, peer: PeerEnd, term: int, leader_commit: int) -> None:
        with self._lock:
            if (self.killed() or self._state is not PeerState.LEADER
                    or self._current_term != term):
                return
            next_index = self._next_index[i]
            if next_index <= self._log.last_included_index:
                _go(self._send_install_snapshot, i, peer)
                return
            prev_index = next_index - 1
            args = AppendEntriesArgs(
                term=term,
                leader_id=self._me,
                prev_log_index=prev_index,
                prev_log_term=self._log.term_at(prev_index),
                entries=tuple(self._log.entries_from(next_index)),
                leader_commit=leader_commit,
            )

        reply = peer.call("append_entries", args)
        if reply is None:
            return

        with self._lock:
            if (self.killed() or self._state is not PeerState.LEADER
                    or self._current_term != args.term):
                return
            if reply.term > self._current_term:
                self._become_follower(reply.term)
                return
            if reply.success:
                self._match_index[i] = prev_index + len(args.entries)
                self._next_index[i] = self._match_index[i] + 1
                self._advance_commit()
            elif reply.conflict_term == -1:
                self._next_index[i] = reply.conflict_index
            else:
                self._next_index[i] = self._after_last_of_term(
                    reply.conflict_term, reply.conflict_index)

    def _advance_commit(self) -> None:
        majority = len(self._peers) // 2
        for n in range(self._log.last_index(), self._commit_index, -1):
            if self._log.term_at(n) != self._current_term:
                continue
            count = 1 + sum(1 for j, m in enumerate(self._match_index)
                            if j != self._me and m >= n)
            if count > majority:
                self._commit_index = n
                self._apply_cond.notify()
                break

    def _after_last_of_term(self, term: int, fallback: int) -> int:
        for index in range(self._log.last_index(), self._log.last_included_index - 1, -1):
            if self._log.term_at(index) == term:
                return index + 1
        return fallback

    def _send_install_snapshot(self, i: int, peer: PeerEnd) -> None:
        with self._lock:
            if self.killed() or self._state is not PeerState.LEADER:
                return
            args = InstallSnapshotArgs(
                term=self._current_term,
                leader_id=self._me,
                last_included_index=self._log.last_included_index,
                last_included_term=self._log.last_included_term,
                data=self._persister.read_snapshot(),
            )

        reply = peer.call("install_snapshot", args)
        if reply is None:
            return

        with self._lock:
            if (self.killed() or self._current_term != args.term
                    or self._state is not PeerState.LEADER):
                return
            if reply.term > self._current_term:
                self._become_follower(reply.term)
                return
            self._next_index[i] = args.last_included_index + 1
            self._match_index[i] = args.last_included_index

    # ----- background loops --------------------------------------------

    def _run(self) -> None:
        _go(self._applier)
        _go(self._election_timer)
        _go(self._heartbeat_timer)

    def _is_leader(self) -> bool:
        with self._lock:
            return self._state is PeerState.LEADER

    def _election_timer(self) -> None:
        while not self.killed():
            reset = self._reset_election.wait(random_election_timeout())
            if self.killed():
                return
            if reset:
                self._reset_election.clear()
            elif not self._is_leader():
                _go(self._run_election)

    def _heartbeat_timer(self) -> None:
        while not self.killed():
            self._heartbeat_now.wait(stable_heartbeat_timeout())
            self._heartbeat_now.clear()
            if self.killed():
                return
            if self._is_leader():
                _go(self._broadcast_append_entries)

    def _next_apply_msg(self) -> ApplyMsg | None:
        """Next message to deliver; lock held."""
        if self._last_applied < self._log.last_included_index:
            self._last_applied = self._log.last_included_index
            return ApplyMsg.snapshot_msg(self._persister.read_snapshot(),
                                         self._log.last_included_term,
                                         self._log.last_included_index)
        index = self._last_applied + 1
        if index > self._log.last_index():
            return None
        return ApplyMsg.command_msg(self._log.entry(index).command, index)

    def _applier(self) -> None:
        while True:
            with self._apply_cond:
                while self._commit_index <= self._last_applied and not self.killed():
                    self._apply_cond.wait()
                if self.killed():
                    return
                msg = self._next_apply_msg()
            if msg is None:
                continue
            self._apply_queue.put(msg)
            if msg.command_valid:
                with self._lock:
                    self._last_applied = max(self._last_applied, msg.command_index)


def make(peers: Sequence[PeerEnd], me: int, persister: Persister,
         apply_queue: ApplyQueue) -> Raft:
    """Create peer ``me`` of ``peers`` and start its background work."""
    rf = Raft(peers, me, persister, apply_queue)
    rf._run()
    return rf