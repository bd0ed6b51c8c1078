"""Shard configurations: the assignment of shards to replica groups."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

NSHARDS = 12
NUM_FIRST = 1
GID1 = 1

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a configuration is malformed or an operation on it is invalid."""


def key2shard(key: str) -> int:
    """Return the shard responsible for ``key`` (32-bit FNV-1a modulo NSHARDS)."""
    h = _FNV32_OFFSET
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h % NSHARDS


def _empty_shards() -> list[int]:
    return [0] * NSHARDS


@dataclass
class ShardConfig:
    """A numbered assignment of shards to groups, and of groups to servers."""

    num: int = 0
    shards: list[int] = field(default_factory=_empty_shards)
    groups: dict[int, list[str]] = field(default_factory=dict)

    @classmethod
    def from_string(cls, s: str) -> ShardConfig:
        """Parse a configuration from its JSON form."""
        try:
            data = json.loads(s)
            if not isinstance(data, dict):
                raise ConfigError(f"not a configuration object: {s!r}")
            num = int(data.get("Num") or 0)
            raw_shards = list(data.get("Shards") or [])
            shards = [int(g) for g in raw_shards[:NSHARDS]]
            shards.extend([0] * (NSHARDS - len(shards)))
            raw_groups = data.get("Groups") or {}
            groups = {int(gid): [str(name) for name in (srvs or [])]
                      for gid, srvs in raw_groups.items()}
        except ConfigError:
            raise
        except (ValueError, TypeError, AttributeError) as exc:
            raise ConfigError(f"cannot parse configuration: {exc}") from exc
        return cls(num=num, shards=shards, groups=groups)

    def __str__(self) -> str:
        groups = {str(gid): self.groups[gid]
                  for gid in sorted(self.groups, key=str)}
        return json.dumps(
            {"Num": self.num, "Shards": list(self.shards), "Groups": groups},
            separators=(",", ":"),
        )

    def copy(self) -> ShardConfig:
        """Return a deep copy of this configuration."""
        return ShardConfig(
            num=self.num,
            shards=list(self.shards),
            groups={gid: list(srvs) for gid, srvs in self.groups.items()},
        )

    def _analyze(self) -> tuple[int, int, int, int]:
        """Return (most-loaded gid, its count, least-loaded gid, its count)."""
        counts: dict[int, int] = {}
        for g in self.shards:
            counts[g] = counts.get(g, 0) + 1
        most_n, most_g = -1, -1
        least_n, least_g = 257, -1
        for g in sorted(self.groups):
            n = counts.get(g, 0)
            if n < least_n:
                least_n, least_g = n, g
            if n > most_n:
                most_n, most_g = n, g
        return most_g, most_n, least_g, least_n

    def rebalance(self) -> None:
        """Balance the assignment of shards over the current groups, in place."""
        if not self.groups:
            self.shards = _empty_shards()
            return

        for s, g in enumerate(list(self.shards)):
            if g not in self.groups:
                self.shards[s] = self._analyze()[2]

        while True:
            most_g, most_n, least_g, least_n = self._analyze()
            if most_n < least_n + 2:
                break
            self.shards[self.shards.index(most_g)] = least_g

    def join(self, servers: dict[int, list[str]]) -> bool:
        """Add new groups; return False if a group is already present."""
        changed = False
        for gid, names in servers.items():
            if gid in self.groups:
                log.info("re-Join %s", gid)
                return False
            for xgid, xnames in self.groups.items():
                for name in xnames:
                    if name in names:
                        raise ConfigError(
                            f"Join({gid}) puts server {name} in groups {xgid} and {gid}")
            self.groups[gid] = names
            changed = True
        if not changed:
            raise ConfigError("Join but no change")
        self.num += 1
        return True

    def leave(self, gids: list[int]) -> bool:
        """Remove groups; return False if a group is not present."""
        changed = False
        for gid in gids:
            if gid not in self.groups:
                log.info("Leave(%s) but not in config", gid)
                return False
            del self.groups[gid]
            changed = True
        if not changed:
            raise ConfigError("Leave but no change")
        self.num += 1
        return True

    def join_balance(self, servers: dict[int, list[str]]) -> bool:
        """Join the groups and rebalance the shards."""
        if not self.join(servers):
            return False
        self.rebalance()
        return True

    def leave_balance(self, gids: list[int]) -> bool:
        """Remove the groups and rebalance the shards."""
        if not self.leave(gids):
            return False
        self.rebalance()
        return True

    def gid_servers(self, shard: int) -> tuple[int, list[str] | None]:
        """Return the group owning ``shard`` and its servers (None if unknown)."""
        gid = self.shards[shard]
        return gid, self.groups.get(gid)

    def is_member(self, gid: int) -> bool:
        """Whether ``gid`` is assigned at least one shard."""
        return gid in self.shards

    def check_config(self, groups: list[int]) -> None:
        """Raise ConfigError unless the config has exactly ``groups``, balanced."""
        if len(self.groups) != len(groups):
            raise ConfigError(f"wanted {len(groups)} groups, got {len(self.groups)}")
        for g in groups:
            if g not in self.groups:
                raise ConfigError(f"missing group {g}")
        if groups:
            for s, g in enumerate(self.shards):
                if g not in self.groups:
                    raise ConfigError(f"shard {s} -> invalid group {g}")
        counts: dict[int, int] = {}
        for g in self.shards:
            counts[g] = counts.get(g, 0) + 1
        low, high = 257, 0
        for g in self.groups:
            n = counts.get(g, 0)
            high = max(high, n)
            low = min(low, n)
        if high > low + 1:
            raise ConfigError(f"max {high} too much larger than min {low}")