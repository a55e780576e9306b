"""Raw variable access, snapshots and deltas.

Each connection exposes one binary record per group at
``<root>/<cid>/<group>``. A :class:`Snapshot` is a private byte copy of one
such record; it does not change when the connection catalog is rescanned.
"""

from __future__ import annotations

from typing import Optional

from .agent import Connection, Group, Variable
from .codec import decode, encode, value_to_text
from .errors import InvalidArgument, NoConnection, OutOfMemory, SystemIOError
from .logging import get_logger

logger = get_logger(__name__)


def _check_bounds(var: Variable) -> None:
    if var.offset < 0 or var.offset + var.size > var.group.size:
        raise InvalidArgument(f"{var.group.name}.{var.name} lies outside its record")


def _check_pair(var: Variable, conn: Connection) -> None:
    if var.group.agent is not conn.agent:
        raise InvalidArgument(f"{var.name} and cid {conn.cid} belong to different agents")
    conn.agent._require_local()
    _check_bounds(var)


class Snapshot:
    """Frozen copy of one group's record for one connection."""

    def __init__(self, group: Group, connection: Connection):
        self.group = group
        self.connection = connection.copy()
        self.data: Optional[bytearray] = bytearray(group.size)

    @property
    def group_name(self) -> str:
        return self.group.name

    def free(self) -> None:
        self.data = None

    def _buffer(self) -> bytearray:
        if self.data is None:
            raise InvalidArgument("snapshot has been freed")
        return self.data

    def __repr__(self) -> str:
        return f"Snapshot({self.group.name}, cid={self.connection.cid})"


def snapshot_alloc(group: Group, conn: Connection) -> Snapshot:
    if group.agent is not conn.agent:
        raise InvalidArgument(f"group {group.name} and cid {conn.cid} belong to different agents")
    try:
        return Snapshot(group, conn)
    except MemoryError as exc:
        raise OutOfMemory(f"snapshot of {group.size} bytes") from exc


def snapshot_free(snap: Snapshot) -> None:
    snap.free()


def snap(snapshot: Snapshot) -> None:
    """Fill ``snapshot`` from the connection's data file.

    A missing file or a short read means the connection closed since it was
    listed; both raise :class:`NoConnection`.
    """
    group = snapshot.group
    group.agent._require_local()
    buf = snapshot._buffer()
    path = group.agent.config.connection_file(snapshot.connection.cid, group.name)
    try:
        with open(path, "rb") as fp:
            raw = fp.read(group.size)
    except OSError as exc:
        logger.debug("snap_open_failed", cid=snapshot.connection.cid, group=group.name, error=str(exc))
        raise NoConnection(path) from exc
    if len(raw) != group.size:
        logger.debug("snap_short_read", cid=snapshot.connection.cid, group=group.name, length=len(raw))
        raise NoConnection(f"{path}: short read")
    buf[:] = raw


def raw_read(var: Variable, conn: Connection) -> bytes:
    """Read the raw bytes of ``var`` for ``conn`` straight from its data file."""
    _check_pair(var, conn)
    path = conn.agent.config.connection_file(conn.cid, var.group.name)
    try:
        fp = open(path, "rb")
    except OSError as exc:
        raise NoConnection(path) from exc
    with fp:
        try:
            fp.seek(var.offset)
            raw = fp.read(var.size)
        except OSError as exc:
            logger.warning("raw_read_failed", cid=conn.cid, var=var.name, error=str(exc))
            raise SystemIOError(f"{path}: {exc.strerror}") from exc
    if len(raw) != var.size:
        logger.warning("raw_read_short", cid=conn.cid, var=var.name, length=len(raw))
        raise SystemIOError(f"{path}: short read of {var.name}")
    return raw


def raw_write(var: Variable, conn: Connection, buf: bytes) -> None:
    """Write ``var``'s bytes in place; the rest of the record is untouched."""
    _check_pair(var, conn)
    if len(buf) < var.size:
        raise InvalidArgument(f"{len(buf)} bytes given for {var.size}-byte {var.name}")
    path = conn.agent.config.connection_file(conn.cid, var.group.name)
    try:
        fp = open(path, "r+b")
    except OSError as exc:
        raise NoConnection(path) from exc
    with fp:
        try:
            fp.seek(var.offset)
            written = fp.write(bytes(buf[:var.size]))
        except OSError as exc:
            logger.warning("raw_write_failed", cid=conn.cid, var=var.name, error=str(exc))
            raise SystemIOError(f"{path}: {exc.strerror}") from exc
    if written != var.size:
        raise SystemIOError(f"{path}: short write of {var.name}")


def snap_read(var: Variable, snapshot: Snapshot) -> bytes:
    if var.group is not snapshot.group:
        raise InvalidArgument(f"{var.name} is not in group {snapshot.group.name}")
    _check_bounds(var)
    data = snapshot._buffer()
    return bytes(data[var.offset:var.offset + var.size])


def delta(var: Variable, s1: Snapshot, s2: Snapshot) -> bytes:
    """``s1 - s2`` for ``var``, modulo 2**64, truncated to the variable width.

    A counter that wrapped between the two snapshots yields the modular
    difference rather than a negative number.
    """
    if s1.group is not s2.group:
        raise InvalidArgument("snapshots of different groups")
    v1 = decode(var.type, snap_read(var, s1))
    v2 = decode(var.type, snap_read(var, s2))
    return encode(var.type, (v1 - v2) & 0xFFFFFFFFFFFFFFFF)


def snap_data_copy(dest: Snapshot, src: Snapshot) -> None:
    if dest.connection.agent is not src.connection.agent or dest.connection.cid != src.connection.cid:
        raise InvalidArgument("snapshots of different connections")
    if dest.group is not src.group:
        raise InvalidArgument("snapshots of different groups")
    dest._buffer()[:] = src._buffer()


# ---------------- decoded helpers ---------------- #
def read_value(var: Variable, conn: Connection) -> int:
    return decode(var.type, raw_read(var, conn))


def read_text(var: Variable, conn: Connection) -> str:
    return value_to_text(var.type, raw_read(var, conn))


def snap_value(var: Variable, snapshot: Snapshot) -> int:
    return decode(var.type, snap_read(var, snapshot))


def snap_text(var: Variable, snapshot: Snapshot) -> str:
    return value_to_text(var.type, snap_read(var, snapshot))


def delta_value(var: Variable, s1: Snapshot, s2: Snapshot) -> int:
    return decode(var.type, delta(var, s1, s2))


def write_value(var: Variable, conn: Connection, value: int) -> None:
    raw_write(var, conn, encode(var.type, value))


__all__ = [
    "Snapshot",
    "delta",
    "delta_value",
    "raw_read",
    "raw_write",
    "read_text",
    "read_value",
    "snap",
    "snap_data_copy",
    "snap_read",
    "snap_text",
    "snap_value",
    "snapshot_alloc",
    "snapshot_free",
    "write_value",
]
