"""Core shared data types for web100.

This module centralizes the lightweight enums and dataclasses shared between
the agent model (header schema, connection catalog, snapshots) and the
correlation layer (socket table / process ownership sources).

Keeping them separate from ``agent`` and ``connection_info`` lets new data
sources be written without circular imports.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class AgentType(IntEnum):
    LOCAL = 0


class VarType(IntEnum):
    """Wire types as they appear in the header file."""

    INTEGER = 0
    INTEGER32 = 1
    IP_ADDRESS = 2
    COUNTER32 = 3
    GAUGE32 = 4
    UNSIGNED32 = 5
    TIME_TICKS = 6
    COUNTER64 = 7
    UNSIGNED16 = 8
    INET_ADDRESS_IPV6 = 10


class AddrType(IntEnum):
    UNKNOWN = 0
    IPV4 = 1
    IPV6 = 2


class TcpState(IntEnum):
    """Kernel socket states as printed (hex) in /proc/net/tcp."""

    ESTABLISHED = 1
    SYN_SENT = 2
    SYN_RECV = 3
    FIN_WAIT1 = 4
    FIN_WAIT2 = 5
    TIME_WAIT = 6
    CLOSE = 7
    CLOSE_WAIT = 8
    LAST_ACK = 9
    LISTEN = 10
    CLOSING = 11


def state_name(state: Optional[int]) -> str:
    if state is None:
        return ""
    try:
        return TcpState(state).name
    except ValueError:
        return "UNKNOWN"


@dataclass(frozen=True)
class ConnectionSpec:
    """Four-tuple of an instrumented flow.

    Addresses are ``ipaddress`` objects; ports are host-order integers.
    ``src`` is the local end, ``dst`` the remote end.
    """

    dst_port: int
    dst_addr: IPAddress
    src_port: int
    src_addr: IPAddress

    @property
    def addrtype(self) -> AddrType:
        return AddrType.IPV6 if self.dst_addr.version == 6 else AddrType.IPV4

    def __str__(self) -> str:
        return f"{self.src_addr}:{self.src_port} -> {self.dst_addr}:{self.dst_port}"


@dataclass(frozen=True)
class SocketEntry:
    """One row of the kernel TCP socket table (Source B)."""

    addrtype: AddrType
    spec: ConnectionSpec
    state: int
    uid: int
    inode: int


@dataclass(frozen=True)
class SocketOwner:
    """A socket descriptor held by a process (Source C)."""

    inode: int
    pid: int
    cmdline: str = ""


@dataclass
class ConnectionInfo:
    """Process-attributed view of one instrumented connection.

    ``pid``/``uid``/``state``/``cmdline`` are best effort: ``pid`` is 0 and
    ``cmdline`` empty when no owning process was found; ``uid`` and ``state``
    stay ``None`` when the socket itself is gone from the kernel table.
    """

    cid: int
    addrtype: AddrType
    spec: ConnectionSpec
    state: Optional[int] = None
    uid: Optional[int] = None
    pid: int = 0
    cmdline: str = ""

    @property
    def state_name(self) -> str:
        return state_name(self.state)
