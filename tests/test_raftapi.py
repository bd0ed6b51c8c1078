import dataclasses

import pytest

from shardraft.raftapi import ApplyMsg


def test_default_message_is_neither_kind():
    msg = ApplyMsg()
    assert msg.command_valid is False
    assert msg.snapshot_valid is False
    assert msg.command is None


def test_command_msg():
    msg = ApplyMsg.command_msg("cmd", 7)
    assert msg.command_valid is True
    assert msg.command == "cmd"
    assert msg.command_index == 7
    assert msg.snapshot_valid is False


def test_snapshot_msg():
    msg = ApplyMsg.snapshot_msg(b"snap", 3, 10)
    assert msg.snapshot_valid is True
    assert msg.command_valid is False
    assert msg.snapshot == b"snap"
    assert msg.snapshot_term == 3
    assert msg.snapshot_index == 10


def test_messages_are_immutable():
    msg = ApplyMsg.command_msg(1, 1)
    with pytest.raises(dataclasses.FrozenInstanceError):
        msg.command_index = 2  # type: ignore[misc]
    assert msg.command_index == 1


def test_equal_messages_compare_equal():
    assert ApplyMsg.command_msg(5, 2) == ApplyMsg.command_msg(5, 2)
    assert ApplyMsg.command_msg(5, 2) != ApplyMsg.command_msg(5, 3)