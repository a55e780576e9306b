"""Agent model: header schema and connection catalog.

An :class:`Agent` is a live attachment to the local Web100 instrumentation.
Attaching parses the header description once into :class:`Group` and
:class:`Variable` objects. The connection list is rebuilt from the
instrumentation root on demand.

Connection lifetime
-------------------
``list_connections()``, ``find_connection()`` and ``lookup_connection()``
rescan the root directory and replace ``Agent.connections``. Connections
returned by an earlier scan are stale afterwards: connection ids are reused
by the kernel, so a stale object may name a different flow (or none).
``Agent.is_current(conn)`` tells whether ``conn`` belongs to the last scan.
"""

from __future__ import annotations

import ipaddress
import os
import struct
from typing import Iterator, List, Optional, Tuple

from .codec import size_from_type
from .config import Web100Config
from .errors import (
    ConnectionNotFound,
    GroupNotFound,
    HeaderFormatError,
    NoHeader,
    OutOfMemory,
    SystemIOError,
    UnsupportedAgentKind,
    VariableNotFound,
)
from .logging import get_logger
from .types import AgentType, ConnectionSpec, VarType

logger = get_logger(__name__)

SPEC_GROUP = "spec"
# dst_port, dst_addr, src_port, src_addr; network byte order
SPEC_FORMAT = "!H4sH4s"
SPEC_SIZE = struct.calcsize(SPEC_FORMAT)


class Variable:
    """A named, typed field at a fixed offset of its group's record."""

    def __init__(self, group: "Group", name: str, offset: int, vtype: int):
        self.group = group
        self.name = name
        self.offset = offset
        self.type = VarType(vtype)

    @property
    def size(self) -> int:
        return size_from_type(self.type)

    def __repr__(self) -> str:
        return f"Variable({self.group.name}.{self.name}, offset={self.offset}, type={self.type.name})"


class Group:
    """A named record layout; one data file per connection."""

    def __init__(self, agent: "Agent", name: str):
        self.agent = agent
        self.name = name
        self.size = 0
        self.nvars = 0
        self.vars: List[Variable] = []

    def _add_var(self, name: str, offset: int, vtype: int) -> Variable:
        var = Variable(self, name, offset, vtype)
        self.vars.append(var)
        self.size += var.size
        self.nvars += 1
        return var

    def __iter__(self) -> Iterator[Variable]:
        return iter(self.vars)

    def var_head(self) -> Optional[Variable]:
        return self.vars[0] if self.vars else None

    def find_var(self, name: str) -> Variable:
        self.agent._require_local()
        for var in self.vars:
            if var.name == name:
                return var
        raise VariableNotFound(f"{self.name}.{name}")

    def __repr__(self) -> str:
        return f"Group({self.name}, size={self.size}, nvars={self.nvars})"


class Connection:
    """One instrumented TCP flow as of a given catalog scan."""

    def __init__(self, agent: "Agent", cid: int, spec: ConnectionSpec, generation: int = 0):
        self.agent = agent
        self.cid = cid
        self.spec = spec
        self.generation = generation

    def copy(self) -> "Connection":
        return Connection(self.agent, self.cid, self.spec, self.generation)

    def __repr__(self) -> str:
        return f"Connection(cid={self.cid}, {self.spec})"


def connection_data_copy(src: Connection) -> Connection:
    """Detached copy of ``src`` (agent, cid and spec)."""
    return src.copy()


class Agent:
    """Attachment to the local instrumentation source. Use :func:`attach`."""

    def __init__(self, config: Web100Config, agent_type: AgentType = AgentType.LOCAL):
        self.type = agent_type
        self.config = config
        self.version = ""
        self.groups: List[Group] = []
        self.connections: List[Connection] = []
        self.generation = 0

    # ---------------- schema ---------------- #
    def _require_local(self) -> None:
        if self.type != AgentType.LOCAL:
            raise UnsupportedAgentKind(repr(self.type))

    def group_head(self) -> Optional[Group]:
        self._require_local()
        return self.groups[0] if self.groups else None

    def find_group(self, name: str) -> Group:
        self._require_local()
        for group in self.groups:
            if group.name == name:
                return group
        raise GroupNotFound(name)

    def find_var_and_group(self, name: str) -> Tuple[Group, Variable]:
        """Search every group for a variable called ``name``."""
        self._require_local()
        for group in self.groups:
            for var in group.vars:
                if var.name == name:
                    return group, var
        raise VariableNotFound(name)

    # ---------------- connection catalog ---------------- #
    def refresh_connections(self) -> List[Connection]:
        """Rescan the instrumentation root and swap in the new catalog.

        On failure the previous catalog is left untouched.
        """
        self._require_local()
        root = self.config.root_dir
        try:
            names = os.listdir(root)
        except OSError as exc:
            logger.warning("connection_scan_failed", path=root, error=str(exc))
            raise SystemIOError(f"{root}: {exc.strerror}") from exc

        generation = self.generation + 1
        fresh: List[Connection] = []
        for name in names:
            if not (name.isascii() and name.isdigit()):
                continue
            cid = int(name)
            fresh.append(Connection(self, cid, self._read_spec(cid), generation))

        self.connections = fresh
        self.generation = generation
        logger.debug("connections_refreshed", count=len(fresh), generation=generation)
        return fresh

    def _read_spec(self, cid: int) -> ConnectionSpec:
        path = self.config.connection_file(cid, SPEC_GROUP)
        try:
            with open(path, "rb") as fp:
                raw = fp.read(SPEC_SIZE)
        except OSError as exc:
            logger.warning("spec_open_failed", cid=cid, path=path, error=str(exc))
            raise SystemIOError(f"{path}: {exc.strerror}") from exc
        if len(raw) != SPEC_SIZE:
            logger.warning("bad_spec_file_format", cid=cid, path=path, length=len(raw))
            raise SystemIOError(f"{path}: bad spec file format")
        dst_port, dst_addr, src_port, src_addr = struct.unpack(SPEC_FORMAT, raw)
        return ConnectionSpec(
            dst_port=dst_port,
            dst_addr=ipaddress.IPv4Address(dst_addr),
            src_port=src_port,
            src_addr=ipaddress.IPv4Address(src_addr),
        )

    def list_connections(self) -> List[Connection]:
        """Rescan and return the catalog; invalidates earlier connections."""
        return self.refresh_connections()

    connection_head = list_connections

    def find_connection(self, spec: ConnectionSpec) -> Connection:
        """Rescan, then return the connection whose four-tuple equals ``spec``."""
        for conn in self.refresh_connections():
            if conn.spec == spec:
                return conn
        raise ConnectionNotFound(str(spec))

    def lookup_connection(self, cid: int) -> Connection:
        """Rescan, then return the connection with id ``cid``."""
        for conn in self.refresh_connections():
            if conn.cid == cid:
                return conn
        raise ConnectionNotFound(f"cid {cid}")

    def is_current(self, conn: Connection) -> bool:
        return conn.agent is self and conn.generation == self.generation

    def __repr__(self) -> str:
        return f"Agent(version={self.version!r}, groups={len(self.groups)})"


# ---------------- header parsing ---------------- #
def _parse_header(agent: Agent, text: str) -> None:
    lines = text.split("\n", 1)
    version = lines[0].strip()
    if not version:
        raise HeaderFormatError("missing version line")
    agent.version = version
    logger.debug("header_version", version=version)

    tokens = lines[1].split() if len(lines) > 1 else []
    groups: List[Group] = []
    group: Optional[Group] = None
    pos = 0
    while pos < len(tokens):
        token = tokens[pos]
        if token.startswith("/"):
            name = token[1:]
            pos += 1
            if not name:
                if pos >= len(tokens):
                    raise HeaderFormatError("group marker without a name")
                name = tokens[pos]
                pos += 1
            group = Group(agent, name)
            groups.append(group)
            logger.debug("header_group", group=name)
            continue

        if group is None:
            raise HeaderFormatError(f"variable {token!r} outside of any group")
        record = tokens[pos:pos + 3]
        pos += 3
        if len(record) != 3:
            raise HeaderFormatError(f"truncated variable record {' '.join(record)!r}")
        name, offset, vtype = record
        try:
            var = group._add_var(name, int(offset), int(vtype))
        except ValueError as exc:
            raise HeaderFormatError(f"bad variable record {name} {offset} {vtype}") from exc
        logger.debug("header_var", group=group.name, var=name, offset=var.offset, type=var.type.name)

    for group in groups:
        for var in group.vars:
            if var.offset < 0 or var.offset + var.size > group.size:
                raise HeaderFormatError(
                    f"{group.name}.{var.name} at {var.offset}+{var.size} exceeds record size {group.size}"
                )

    agent.groups = [g for g in groups if g.name != SPEC_GROUP]


def _attach_local(config: Web100Config) -> Agent:
    agent = Agent(config)
    try:
        with open(config.header_file, "rb") as header:
            raw = header.read()
    except OSError as exc:
        logger.warning("header_unreadable", path=config.header_file, error=str(exc))
        raise NoHeader(f"{config.header_file}: {exc.strerror}") from exc

    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError as exc:
        raise HeaderFormatError(f"non-ASCII byte at offset {exc.start}") from exc

    try:
        _parse_header(agent, text)
    except MemoryError as exc:
        detach(agent)
        raise OutOfMemory("while parsing header") from exc
    except HeaderFormatError:
        detach(agent)
        raise
    logger.debug("agent_attached", version=agent.version, groups=len(agent.groups))
    return agent


def attach(method: int = AgentType.LOCAL, config: Optional[Web100Config] = None) -> Agent:
    """Attach to an instrumentation source. Only ``AgentType.LOCAL`` exists."""
    if method != AgentType.LOCAL:
        raise UnsupportedAgentKind(f"agent type {method}")
    return _attach_local(config if config is not None else Web100Config.from_env())


def detach(agent: Optional[Agent]) -> None:
    """Release the agent's groups and connections. Safe to call twice."""
    if agent is None or agent.type != AgentType.LOCAL:
        return
    for group in agent.groups:
        group.vars = []
    agent.groups = []
    agent.connections = []
