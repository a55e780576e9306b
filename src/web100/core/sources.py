"""Operating-system data sources used by the correlation engine.

Two minimal interfaces let the engine plug different backends:

* :class:`ISocketTableSource` - kernel TCP sockets with state, uid and inode
  (``/proc/net/tcp`` and ``/proc/net/tcp6``).
* :class:`ISocketOwnerSource` - which process holds a descriptor to which
  socket inode. Two implementations exist: a direct ``/proc/<pid>/fd`` scanner
  (default) and a psutil based one.

Every source is rebuilt from scratch on each call; nothing is cached between
queries.
"""

from __future__ import annotations

import ipaddress
import os
import stat
import sys
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import psutil

from .config import Web100Config
from .errors import SystemIOError
from .logging import get_logger
from .types import AddrType, ConnectionSpec, SocketEntry, SocketOwner

logger = get_logger(__name__)


class ISocketTableSource(ABC):
    """Abstract interface for the kernel socket table."""

    @abstractmethod
    def get_sockets(self) -> List[SocketEntry]:
        """Return every TCP socket currently known to the kernel."""


class ISocketOwnerSource(ABC):
    """Abstract interface for descriptor ownership."""

    @abstractmethod
    def get_owners(self) -> List[SocketOwner]:
        """Return one entry per (process, socket descriptor)."""


# ---------------- /proc/net/tcp ---------------- #
def _hex_ipv4(text: str) -> ipaddress.IPv4Address:
    if len(text) != 8:
        raise ValueError(f"bad IPv4 field {text!r}")
    # The kernel prints the network-order word as a host-order integer
    return ipaddress.IPv4Address(int(text, 16).to_bytes(4, sys.byteorder))


def _hex_ipv6(text: str) -> ipaddress.IPv6Address:
    if len(text) != 32:
        raise ValueError(f"bad IPv6 field {text!r}")
    words = (int(text[i:i + 8], 16).to_bytes(4, sys.byteorder) for i in range(0, 32, 8))
    return ipaddress.IPv6Address(b"".join(words))


def parse_tcp_line(line: str, addrtype: AddrType) -> Optional[SocketEntry]:
    """Parse one socket table row; ``None`` for headers and malformed rows.

    Columns: ``sl local rem st tx:rx tr:tm retrnsmt uid timeout inode ...``
    """
    fields = line.split()
    if len(fields) < 10 or not fields[0].endswith(":"):
        return None
    to_addr = _hex_ipv4 if addrtype == AddrType.IPV4 else _hex_ipv6
    try:
        int(fields[0][:-1])
        local_addr, local_port = fields[1].split(":")
        rem_addr, rem_port = fields[2].split(":")
        spec = ConnectionSpec(
            dst_port=int(rem_port, 16),
            dst_addr=to_addr(rem_addr),
            src_port=int(local_port, 16),
            src_addr=to_addr(local_addr),
        )
        return SocketEntry(
            addrtype=addrtype,
            spec=spec,
            state=int(fields[3], 16),
            uid=int(fields[7]),
            inode=int(fields[9]),
        )
    except (ValueError, OverflowError):
        return None


def parse_tcp_table(lines: Iterable[str], addrtype: AddrType) -> List[SocketEntry]:
    entries: List[SocketEntry] = []
    for line in lines:
        entry = parse_tcp_line(line, addrtype)
        if entry is not None:
            entries.append(entry)
    return entries


class ProcNetTcpSource(ISocketTableSource):
    """Reads the IPv4 and IPv6 TCP tables exported under ``/proc/net``."""

    def __init__(self, tcp_path: str = "/proc/net/tcp", tcp6_path: str = "/proc/net/tcp6"):
        self.tables = ((tcp_path, AddrType.IPV4), (tcp6_path, AddrType.IPV6))

    @classmethod
    def from_config(cls, config: Web100Config) -> "ProcNetTcpSource":
        return cls(config.tcp_table, config.tcp6_table)

    def get_sockets(self) -> List[SocketEntry]:
        entries: List[SocketEntry] = []
        for path, addrtype in self.tables:
            try:
                with open(path, "r", errors="replace") as fp:
                    entries.extend(parse_tcp_table(fp, addrtype))
            except OSError as exc:
                # e.g. IPv6 disabled: the table simply does not exist
                logger.debug("tcp_table_unavailable", path=path, error=str(exc))
        return entries


# ---------------- descriptor ownership ---------------- #
def read_status_name(status_path: str) -> str:
    """Command name from the first ``Name:`` line of a status file, or ""."""
    try:
        with open(status_path, "r", errors="replace") as fp:
            first = fp.readline()
    except OSError:
        return ""
    key, _, value = first.partition(":")
    if key != "Name" or not value.strip():
        return ""
    return value.split()[0]


def _socket_inode(path: str) -> Optional[int]:
    try:
        st = os.stat(path)
    except OSError:
        # descriptor closed while we were looking
        return None
    return st.st_ino if stat.S_ISSOCK(st.st_mode) else None


class ProcfsOwnerSource(ISocketOwnerSource):
    """Scans ``<proc>/<pid>/fd`` for socket descriptors.

    Processes whose descriptor directory cannot be opened (not ours, or gone)
    are skipped silently.
    """

    def __init__(self, proc_root: str = "/proc"):
        self.proc_root = proc_root

    def get_owners(self) -> List[SocketOwner]:
        owners: List[SocketOwner] = []
        try:
            entries = os.listdir(self.proc_root)
        except OSError as exc:
            raise SystemIOError(f"{self.proc_root}: {exc.strerror}") from exc

        for entry in entries:
            if not entry.isdigit():
                continue
            pid = int(entry)
            if pid == 0:
                continue
            fd_dir = os.path.join(self.proc_root, entry, "fd")
            try:
                fds = os.listdir(fd_dir)
            except OSError:
                continue

            name: Optional[str] = None
            for fd in fds:
                inode = _socket_inode(os.path.join(fd_dir, fd))
                if inode is None:
                    continue
                if name is None:
                    name = read_status_name(os.path.join(self.proc_root, entry, "status"))
                owners.append(SocketOwner(inode=inode, pid=pid, cmdline=name))
        logger.debug("socket_owners_scanned", source="procfs", count=len(owners))
        return owners


class PsutilOwnerSource(ISocketOwnerSource):
    """psutil based ownership: process names and TCP descriptors via psutil.

    The inode is recovered by ``stat``-ing ``<proc>/<pid>/fd/<fd>``.
    """

    def __init__(self, proc_root: str = "/proc"):
        self.proc_root = proc_root

    def get_owners(self) -> List[SocketOwner]:
        owners: List[SocketOwner] = []
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                info = proc.info
                pid = info["pid"]
                name = info["name"] or ""
                conns = proc.net_connections(kind="tcp")
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

            for conn in conns:
                if conn.fd is None or conn.fd < 0:
                    continue
                inode = _socket_inode(os.path.join(self.proc_root, str(pid), "fd", str(conn.fd)))
                if inode is not None:
                    owners.append(SocketOwner(inode=inode, pid=pid, cmdline=name))
        logger.debug("socket_owners_scanned", source="psutil", count=len(owners))
        return owners


def make_owner_source(config: Web100Config) -> ISocketOwnerSource:
    if config.owner_source == "psutil":
        return PsutilOwnerSource(config.proc_root)
    return ProcfsOwnerSource(config.proc_root)


def index_owners(owners: Iterable[SocketOwner]) -> Dict[int, List[SocketOwner]]:
    by_inode: Dict[int, List[SocketOwner]] = {}
    for owner in owners:
        by_inode.setdefault(owner.inode, []).append(owner)
    return by_inode
