"""The interface a raft peer offers, and the messages it delivers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class ApplyMsg:
    """A committed command or an installed snapshot, sent to the service."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0

    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0

    @classmethod
    def command_msg(cls, command: Any, index: int) -> ApplyMsg:
        return cls(command_valid=True, command=command, command_index=index)

    @classmethod
    def snapshot_msg(cls, snapshot: bytes, term: int, index: int) -> ApplyMsg:
        return cls(snapshot_valid=True, snapshot=snapshot,
                   snapshot_term=term, snapshot_index=index)


@runtime_checkable
class RaftPeer(Protocol):
    """What a service expects of a raft peer."""

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Begin agreement on ``command``; return (index, term, is_leader)."""

    def get_state(self) -> tuple[int, bool]:
        """Return (current term, is_leader)."""

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Trim the log through ``index``, keeping ``snapshot`` in its place."""

    def persist_bytes(self) -> int:
        """Size of the persisted raft state."""

    def kill(self) -> None:
        """Stop all background work."""