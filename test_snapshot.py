#!/usr/bin/env python3
"""
Tests for raw reads/writes, snapshots and deltas.
"""

import pytest

from conftest import HEADER_V2
from web100.core.agent import attach
from web100.core.codec import encode
from web100.core.errors import InvalidArgument, NoConnection, UnsupportedType
from web100.core.snapshot import (
    delta,
    delta_value,
    raw_read,
    raw_write,
    read_text,
    read_value,
    snap,
    snap_data_copy,
    snap_read,
    snap_text,
    snap_value,
    snapshot_alloc,
    write_value,
)
from web100.core.types import VarType


@pytest.fixture
def agent(fake):
    fake.write_header()
    fake.add_connection(5, local=("10.0.0.2", 4000), remote=("10.0.0.1", 80),
                        pkts_out=10, bytes_out=1 << 33, cwnd=14600)
    return attach(config=fake.config)


def test_raw_read(agent):
    conn = agent.lookup_connection(5)
    read = agent.find_group("read")
    assert read_value(read.find_var("PktsOut"), conn) == 10
    assert read_value(read.find_var("DataBytesOut"), conn) == 1 << 33
    assert read_text(read.find_var("RemAddress"), conn) == "10.0.0.1"
    assert raw_read(read.find_var("LocalPort"), conn) == encode(VarType.UNSIGNED16, 4000)


def test_raw_write_in_place(agent, fake):
    conn = agent.lookup_connection(5)
    read = agent.find_group("read")
    write_value(read.find_var("CurCwnd"), conn, 29200)
    assert read_value(read.find_var("CurCwnd"), conn) == 29200
    # neighbours untouched, record not truncated
    assert read_value(read.find_var("PktsOut"), conn) == 10
    assert (fake.root / "5" / "read").stat().st_size == read.size
    with pytest.raises(InvalidArgument):
        raw_write(read.find_var("CurCwnd"), conn, b"\x01")


def test_mismatched_agents_rejected_before_io(agent, fake, monkeypatch):
    other = attach(config=fake.config)
    conn = agent.lookup_connection(5)
    var = other.find_group("read").find_var("PktsOut")

    def no_io(*args, **kwargs):
        raise AssertionError("I/O attempted")

    monkeypatch.setattr("web100.core.snapshot.open", no_io, raising=False)
    with pytest.raises(InvalidArgument):
        raw_read(var, conn)
    with pytest.raises(InvalidArgument):
        raw_write(var, conn, b"\x00" * 4)
    with pytest.raises(InvalidArgument):
        snapshot_alloc(other.find_group("read"), conn)


def test_vanished_connection(agent, fake):
    conn = agent.lookup_connection(5)
    read = agent.find_group("read")
    s = snapshot_alloc(read, conn)
    fake.remove_connection(5)
    with pytest.raises(NoConnection):
        snap(s)
    with pytest.raises(NoConnection):
        raw_read(read.find_var("PktsOut"), conn)


def test_short_record_is_no_connection(agent, fake):
    conn = agent.lookup_connection(5)
    (fake.root / "5" / "read").write_bytes(b"\x00" * 8)
    s = snapshot_alloc(agent.find_group("read"), conn)
    with pytest.raises(NoConnection):
        snap(s)


def test_snapshot_is_a_copy(agent, fake):
    conn = agent.lookup_connection(5)
    read = agent.find_group("read")
    pkts = read.find_var("PktsOut")
    s = snapshot_alloc(read, conn)
    assert s.group_name == "read"
    assert len(s.data) == read.size
    snap(s)

    write_value(pkts, conn, 99)
    agent.list_connections()
    assert snap_value(pkts, s) == 10
    assert snap_text(read.find_var("LocalAddress"), s) == "10.0.0.2"


def test_delta(agent):
    conn = agent.lookup_connection(5)
    read = agent.find_group("read")
    pkts = read.find_var("PktsOut")
    before = snapshot_alloc(read, conn)
    after = snapshot_alloc(read, conn)
    snap(before)
    write_value(pkts, conn, 25)
    snap(after)

    assert delta_value(pkts, after, before) == 15
    assert delta(pkts, after, before) == encode(VarType.COUNTER32, 15)


def test_delta_wraps_like_a_counter(agent):
    """A later value below the earlier one yields the modular difference."""
    conn = agent.lookup_connection(5)
    read = agent.find_group("read")
    pkts = read.find_var("PktsOut")
    bytes_out = read.find_var("DataBytesOut")
    before = snapshot_alloc(read, conn)
    after = snapshot_alloc(read, conn)

    write_value(pkts, conn, 0xFFFFFFF0)
    write_value(bytes_out, conn, 5)
    snap(before)
    write_value(pkts, conn, 0x10)
    write_value(bytes_out, conn, 2)
    snap(after)

    assert delta_value(pkts, after, before) == 0x20
    assert delta_value(bytes_out, after, before) == (2 - 5) % (1 << 64)
    assert len(delta(pkts, after, before)) == 4


def test_delta_rejects_mixed_groups(agent, fake):
    fake.write_header(HEADER_V2 + "/tune\nLimCwnd 0 5\n")
    other = attach(config=fake.config)
    conn = other.lookup_connection(5)
    s1 = snapshot_alloc(other.find_group("read"), conn)
    s2 = snapshot_alloc(other.find_group("tune"), conn)
    with pytest.raises(InvalidArgument):
        delta(other.find_group("read").find_var("PktsOut"), s1, s2)
    with pytest.raises(InvalidArgument):
        snap_read(other.find_group("tune").find_var("LimCwnd"), s1)


def test_delta_of_address_is_unsupported(agent):
    conn = agent.lookup_connection(5)
    read = agent.find_group("read")
    s = snapshot_alloc(read, conn)
    snap(s)
    with pytest.raises(UnsupportedType):
        delta(read.find_var("LocalAddress"), s, s)


def test_snap_data_copy(agent, fake):
    fake.add_connection(6)
    conn5 = agent.lookup_connection(5)
    conn6 = agent.lookup_connection(6)
    read = agent.find_group("read")
    src = snapshot_alloc(read, conn5)
    dest = snapshot_alloc(read, conn5)
    snap(src)
    snap_data_copy(dest, src)
    assert dest.data == src.data

    with pytest.raises(InvalidArgument):
        snap_data_copy(snapshot_alloc(read, conn6), src)


def test_freed_snapshot(agent):
    conn = agent.lookup_connection(5)
    s = snapshot_alloc(agent.find_group("read"), conn)
    s.free()
    with pytest.raises(InvalidArgument):
        snap(s)
