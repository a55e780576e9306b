"""
Shared fixtures: a fake instrumentation tree, kernel socket tables and
process directories laid out under ``tmp_path``.
"""

import ipaddress
import os
import shutil
import socket
import struct
import sys
import tempfile

import pytest

from web100.core.codec import encode
from web100.core.config import Web100Config
from web100.core.types import VarType

HEADER_V2 = """2.5.27 201001301335 net100

/spec
RemPort 0 8
RemAddress 2 2
LocalPort 6 8
LocalAddress 8 2

/read
LocalAddressType 0 0
LocalAddress 4 2
RemAddress 8 2
LocalPort 12 8
RemPort 14 8
PktsOut 16 3
DataBytesOut 20 7
CurCwnd 28 4
"""

# Version 1.x agents name the remote end RemoteAddress / RemotePort
HEADER_V1 = HEADER_V2.replace("2.5.27", "1.2", 1) \
    .replace("RemAddress 8", "RemoteAddress 8").replace("RemPort 14", "RemotePort 14")

HEADER_V6 = """2.5.27 201001301335 net100
/spec
RemPort 0 8
RemAddress 2 2
LocalPort 6 8
LocalAddress 8 2
/read
LocalAddressType 0 0
LocalAddress 4 10
RemAddress 20 10
LocalPort 36 8
RemPort 38 8
"""

READ_SIZE = 32
READ_V6_SIZE = 40


def ip_hex(addr):
    """Encode an address the way /proc/net/tcp prints it."""
    packed = ipaddress.ip_address(addr).packed
    return "".join("%08X" % int.from_bytes(packed[i:i + 4], sys.byteorder)
                   for i in range(0, len(packed), 4))


def tcp_row(local, remote, state=1, uid=1000, inode=0, slot=0):
    (laddr, lport), (raddr, rport) = local, remote
    return ("%4d: %s:%04X %s:%04X %02X 00000000:00000000 00:00000000 00000000 %5d "
            "       0 %d 1 0000000000000000 20 4 30 10 -1\n"
            % (slot, ip_hex(laddr), lport, ip_hex(raddr), rport, state, uid, inode))


TCP_HEADER = ("  sl  local_address rem_address   st tx_queue rx_queue tr tm->when "
              "retrnsmt   uid  timeout inode\n")


class FakeWeb100:
    """Builds ``web100/`` and ``proc/`` trees below a temporary directory."""

    def __init__(self, base):
        self.root = base / "web100"
        self.proc = base / "proc"
        self.root.mkdir()
        (self.proc / "net").mkdir(parents=True)
        self.config = Web100Config(
            root_dir=str(self.root),
            header_file=str(self.root / "header"),
            proc_root=str(self.proc),
        )

    def write_header(self, text=HEADER_V2):
        (self.root / "header").write_text(text)

    def add_connection(self, cid, local=("10.0.0.2", 4000), remote=("10.0.0.1", 80),
                       pkts_out=0, bytes_out=0, cwnd=0, addrtype=1):
        conn_dir = self.root / str(cid)
        conn_dir.mkdir()
        (laddr, lport), (raddr, rport) = local, remote
        (conn_dir / "spec").write_bytes(struct.pack(
            "!H4sH4s", rport, ipaddress.IPv4Address(raddr).packed,
            lport, ipaddress.IPv4Address(laddr).packed))
        record = b"".join([
            encode(VarType.INTEGER, addrtype),
            ipaddress.IPv4Address(laddr).packed,
            ipaddress.IPv4Address(raddr).packed,
            encode(VarType.UNSIGNED16, lport),
            encode(VarType.UNSIGNED16, rport),
            encode(VarType.COUNTER32, pkts_out),
            encode(VarType.COUNTER64, bytes_out),
            encode(VarType.GAUGE32, cwnd),
        ])
        assert len(record) == READ_SIZE
        (conn_dir / "read").write_bytes(record)
        return conn_dir

    def add_connection_v6(self, cid, local, remote):
        conn_dir = self.root / str(cid)
        conn_dir.mkdir()
        (laddr, lport), (raddr, rport) = local, remote
        (conn_dir / "spec").write_bytes(struct.pack("!H4sH4s", rport, bytes(4), lport, bytes(4)))
        record = b"".join([
            encode(VarType.INTEGER, 2),
            ipaddress.IPv6Address(laddr).packed,
            ipaddress.IPv6Address(raddr).packed,
            encode(VarType.UNSIGNED16, lport),
            encode(VarType.UNSIGNED16, rport),
        ])
        assert len(record) == READ_V6_SIZE
        (conn_dir / "read").write_bytes(record)
        return conn_dir

    def remove_connection(self, cid):
        shutil.rmtree(self.root / str(cid))

    def write_tcp_table(self, rows, v6=False):
        name = "tcp6" if v6 else "tcp"
        (self.proc / "net" / name).write_text(TCP_HEADER + "".join(rows))

    def add_process(self, pid, name, fd_targets):
        """Create ``proc/<pid>`` with ``fd/<n>`` symlinks to ``fd_targets``."""
        pid_dir = self.proc / str(pid)
        fd_dir = pid_dir / "fd"
        fd_dir.mkdir(parents=True)
        for fd, target in enumerate(fd_targets, start=3):
            os.symlink(target, fd_dir / str(fd))
        (pid_dir / "status").write_text("Name:\t%s\nUmask:\t0022\nState:\tS (sleeping)\n" % name)
        return pid_dir


@pytest.fixture
def fake(tmp_path):
    return FakeWeb100(tmp_path)


@pytest.fixture
def unix_socket():
    """Factory for bound Unix sockets; returns (path, inode)."""
    # sun_path is limited to 108 bytes, so keep these out of tmp_path
    sock_dir = tempfile.mkdtemp(prefix="w100")
    sockets = []

    def make():
        path = os.path.join(sock_dir, "s%d" % len(sockets))
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(path)
        sockets.append(sock)
        return path, os.stat(path).st_ino

    yield make
    for sock in sockets:
        sock.close()
    shutil.rmtree(sock_dir, ignore_errors=True)
