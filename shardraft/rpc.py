"""Request and reply messages for key/value and shard-movement calls."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Err(str, Enum):
    """Outcome of a key/value or shard operation."""

    OK = "OK"
    NO_KEY = "ErrNoKey"
    VERSION = "ErrVersion"
    MAYBE = "ErrMaybe"
    WRONG_LEADER = "ErrWrongLeader"
    WRONG_GROUP = "ErrWrongGroup"


@dataclass(frozen=True)
class GetArgs:
    key: str


@dataclass(frozen=True)
class GetReply:
    err: Err
    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class PutArgs:
    key: str
    value: str
    version: int


@dataclass(frozen=True)
class PutReply:
    err: Err


@dataclass(frozen=True)
class FreezeShardArgs:
    shard: int
    num: int


@dataclass(frozen=True)
class FreezeShardReply:
    err: Err
    state: bytes = b""
    num: int = 0


@dataclass(frozen=True)
class InstallShardArgs:
    shard: int
    state: bytes
    num: int


@dataclass(frozen=True)
class InstallShardReply:
    err: Err


@dataclass(frozen=True)
class DeleteShardArgs:
    shard: int
    num: int


@dataclass(frozen=True)
class DeleteShardReply:
    err: Err