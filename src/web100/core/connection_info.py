"""web100 - process attribution of instrumented connections

Joins three independently sourced views:

* A: the agent's connection catalog, with addresses and ports read from the
  connection's ``read`` group.
* B: the kernel TCP socket table (state, uid, inode).
* C: process descriptor tables (inode -> pid, command name).

Matching rules
--------------
A connection matches a socket when the address family, the remote address,
the remote port and the local port are equal (IPv4 addresses compare as raw
bytes, IPv6 addresses by their text form). For each matching socket one
record is produced per process holding it, or a single record with ``pid=0``
when nobody does. A connection with no matching socket still produces one
record carrying only its identity.

The join is keyed (tuple -> sockets, inode -> owners) but produces exactly
what a nested loop over A x B x C would.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from .agent import Agent, Group, Variable
from .codec import decode
from .errors import NoConnection, UnsupportedType, VariableNotFound
from .logging import get_logger
from .snapshot import raw_read
from .sources import (
    ISocketOwnerSource,
    ISocketTableSource,
    ProcNetTcpSource,
    index_owners,
    make_owner_source,
)
from .types import (
    AddrType,
    ConnectionInfo,
    ConnectionSpec,
    IPAddress,
    SocketEntry,
    SocketOwner,
    VarType,
)

logger = get_logger(__name__)

READ_GROUP = "read"
ADDRESS_TYPES = (VarType.IP_ADDRESS, VarType.INET_ADDRESS_IPV6)


@dataclass(frozen=True)
class ConnectionIdentity:
    """Source A record: what the instrumentation says about one flow."""

    cid: int
    addrtype: AddrType
    spec: ConnectionSpec


def _addr_key(addr: IPAddress, addrtype: AddrType) -> Hashable:
    if addrtype == AddrType.IPV4:
        return addr.packed
    return str(addr)


def _match_key(addrtype: AddrType, spec: ConnectionSpec) -> Tuple[Hashable, ...]:
    return (int(addrtype), _addr_key(spec.dst_addr, addrtype), spec.dst_port, spec.src_port)


def _address_var(group: Group, name: str) -> Variable:
    var = group.find_var(name)
    if var.type not in ADDRESS_TYPES:
        raise UnsupportedType(f"{group.name}.{name} is {var.type.name}, not an address")
    return var


def _remote_names(version: str) -> Tuple[str, str]:
    if version.startswith("1."):
        return "RemoteAddress", "RemotePort"
    return "RemAddress", "RemPort"


def collect_identities(agent: Agent) -> List[ConnectionIdentity]:
    """Rescan the catalog and read each connection's four-tuple."""
    connections = agent.list_connections()
    group = agent.find_group(READ_GROUP)
    try:
        type_var = group.find_var("LocalAddressType")
    except VariableNotFound:
        type_var = None

    remote_addr, remote_port = _remote_names(agent.version)
    local_addr_var = _address_var(group, "LocalAddress")
    remote_addr_var = _address_var(group, remote_addr)
    local_port_var = group.find_var("LocalPort")
    remote_port_var = group.find_var(remote_port)

    identities: List[ConnectionIdentity] = []
    for conn in connections:
        try:
            addrtype = AddrType.IPV4
            if type_var is not None and decode(type_var.type, raw_read(type_var, conn)) == AddrType.IPV6:
                addrtype = AddrType.IPV6
            spec = ConnectionSpec(
                dst_port=decode(remote_port_var.type, raw_read(remote_port_var, conn)),
                dst_addr=ipaddress.ip_address(raw_read(remote_addr_var, conn)),
                src_port=decode(local_port_var.type, raw_read(local_port_var, conn)),
                src_addr=ipaddress.ip_address(raw_read(local_addr_var, conn)),
            )
        except NoConnection:
            logger.debug("connection_vanished", cid=conn.cid)
            continue
        identities.append(ConnectionIdentity(conn.cid, addrtype, spec))
    return identities


def correlate(
    identities: Iterable[ConnectionIdentity],
    sockets: Sequence[SocketEntry],
    owners: Iterable[SocketOwner],
) -> List[ConnectionInfo]:
    by_tuple: Dict[Tuple[Hashable, ...], List[SocketEntry]] = {}
    for sock in sockets:
        by_tuple.setdefault(_match_key(sock.addrtype, sock.spec), []).append(sock)
    by_inode = index_owners(owners)

    result: List[ConnectionInfo] = []
    for ident in identities:
        matches = by_tuple.get(_match_key(ident.addrtype, ident.spec), [])
        if not matches:
            # socket already gone; keep the catalog entry visible
            result.append(ConnectionInfo(cid=ident.cid, addrtype=ident.addrtype, spec=ident.spec))
            continue
        for sock in matches:
            holders = by_inode.get(sock.inode, [])
            if not holders:
                result.append(ConnectionInfo(
                    cid=ident.cid, addrtype=ident.addrtype, spec=ident.spec,
                    state=sock.state, uid=sock.uid,
                ))
                continue
            for owner in holders:
                result.append(ConnectionInfo(
                    cid=ident.cid, addrtype=ident.addrtype, spec=ident.spec,
                    state=sock.state, uid=sock.uid,
                    pid=owner.pid, cmdline=owner.cmdline,
                ))
    return result


def connection_info_list(
    agent: Agent,
    socket_source: Optional[ISocketTableSource] = None,
    owner_source: Optional[ISocketOwnerSource] = None,
) -> List[ConnectionInfo]:
    """Build a fresh, caller-owned list of process-attributed connections."""
    if socket_source is None:
        socket_source = ProcNetTcpSource.from_config(agent.config)
    if owner_source is None:
        owner_source = make_owner_source(agent.config)

    identities = collect_identities(agent)
    sockets = socket_source.get_sockets()
    owners = owner_source.get_owners()
    infos = correlate(identities, sockets, owners)
    logger.debug(
        "connection_info_built",
        connections=len(identities), sockets=len(sockets), records=len(infos),
    )
    return infos


class ConnectionInfoManager:
    """Keeps the most recent correlation result for an agent.

    ``head()`` drops the previously returned list before rebuilding, so
    records from an earlier call must not be held across calls.
    """

    def __init__(
        self,
        agent: Agent,
        socket_source: Optional[ISocketTableSource] = None,
        owner_source: Optional[ISocketOwnerSource] = None,
    ):
        self.agent = agent
        self.socket_source = socket_source or ProcNetTcpSource.from_config(agent.config)
        self.owner_source = owner_source or make_owner_source(agent.config)
        self.entries: List[ConnectionInfo] = []

    def head(self) -> List[ConnectionInfo]:
        self.entries = []
        self.entries = connection_info_list(self.agent, self.socket_source, self.owner_source)
        return self.entries

    refresh = head

    def find(self, cid: int) -> List[ConnectionInfo]:
        """Records for ``cid`` in the last built list (no rescan)."""
        return [info for info in self.entries if info.cid == cid]
