"""The replicated log of a raft peer, with snapshot compaction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


@dataclass(frozen=True)
class LogEntry:
    """One log entry: the term it was created in and the command it carries."""

    term: int
    command: Any = None


class RaftLog:
    """A log addressed by absolute index.

    The first stored entry is a placeholder standing for the last entry
    covered by the snapshot; its term is ``last_included_term`` and its
    index is ``last_included_index``.
    """

    def __init__(self, last_included_index: int = 0,
                 last_included_term: int = 0,
                 entries: Iterable[LogEntry] = ()) -> None:
        self.last_included_index = last_included_index
        self.last_included_term = last_included_term
        self._entries: list[LogEntry] = [LogEntry(last_included_term)]
        self._entries.extend(entries)

    def __repr__(self) -> str:
        return (f"RaftLog(last_included_index={self.last_included_index}, "
                f"last_included_term={self.last_included_term}, "
                f"entries={self._entries[1:]!r})")

    def term_at(self, index: int) -> int:
        """Term of the entry at ``index``, or -1 if it is not in the log."""
        if index == self.last_included_index:
            return self.last_included_term
        relative = index - self.last_included_index
        if relative < 0 or relative >= len(self._entries):
            return -1
        return self._entries[relative].term

    def last_index(self) -> int:
        return self.last_included_index + len(self._entries) - 1

    def last_term(self) -> int:
        return self._entries[-1].term

    def _relative(self, index: int) -> int:
        relative = index - self.last_included_index
        if relative <= 0 or index > self.last_index():
            raise IndexError(f"log index {index} not held "
                             f"({self.last_included_index + 1}..{self.last_index()})")
        return relative

    def entry(self, index: int) -> LogEntry:
        """The entry at ``index``; IndexError if compacted away or absent."""
        return self._entries[self._relative(index)]

    def entries_from(self, index: int) -> list[LogEntry]:
        """All entries from ``index`` to the end of the log.

        IndexError if ``index`` lies inside the snapshot.
        """
        if index <= self.last_included_index:
            raise IndexError(f"log index {index} is covered by the snapshot")
        if index > self.last_index():
            return []
        return list(self._entries[index - self.last_included_index:])

    def append(self, entry: LogEntry) -> int:
        """Append ``entry`` and return its index."""
        self._entries.append(entry)
        return self.last_index()

    def merge(self, prev_index: int, entries: Iterable[LogEntry]) -> bool:
        """Merge entries that follow ``prev_index`` into the log.

        Entries already present with the same term are kept; at the first
        conflict the log is cut and the rest appended. Returns whether the
        log changed.
        """
        if prev_index < self.last_included_index or prev_index > self.last_index():
            raise ValueError(f"previous index {prev_index} not held in the log")
        entries = list(entries)
        start = prev_index + 1
        for offset, new in enumerate(entries):
            index = start + offset
            if index <= self.last_index():
                if self.term_at(index) != new.term:
                    del self._entries[index - self.last_included_index:]
                    self._entries.extend(entries[offset:])
                    return True
            else:
                self._entries.extend(entries[offset:])
                return True
        return False

    def compact(self, index: int) -> bool:
        """Drop entries through ``index``, which the snapshot now covers.

        Does nothing, returning False, if ``index`` is already in the
        snapshot or beyond the end of the log.
        """
        if index <= self.last_included_index or index > self.last_index():
            return False
        term = self.term_at(index)
        relative = index - self.last_included_index
        self._entries = [LogEntry(term)] + self._entries[relative + 1:]
        self.last_included_index = index
        self.last_included_term = term
        return True

    def install(self, index: int, term: int) -> bool:
        """Replace the log's prefix with a snapshot ending at ``index``/``term``.

        Entries after ``index`` are kept when the log reaches that far;
        otherwise the log is emptied. Returns False when ``index`` is not
        past the current snapshot.
        """
        if index <= self.last_included_index:
            return False
        if index > self.last_index():
            self._entries = [LogEntry(term)]
        else:
            tail = self._entries[index - self.last_included_index + 1:]
            self._entries = [LogEntry(term)] + tail
        self.last_included_index = index
        self.last_included_term = term
        return True

    def to_state(self) -> dict[str, Any]:
        """Plain data describing the log, for persisting."""
        return {
            "last_included_index": self.last_included_index,
            "last_included_term": self.last_included_term,
            "entries": [(e.term, e.command) for e in self._entries[1:]],
        }

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> RaftLog:
        """Rebuild a log from what ``to_state`` produced."""
        try:
            lii = int(state["last_included_index"])
            lit = int(state["last_included_term"])
            entries = [LogEntry(int(term), command)
                       for term, command in state["entries"]]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"malformed log state: {exc}") from exc
        return cls(lii, lit, entries)