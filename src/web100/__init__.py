"""
web100 - access to per-connection TCP instrumentation.

Attach to the local instrumentation, browse its groups and variables, read
connection statistics directly or through snapshots, and attribute each
instrumented connection to the process that owns it.
"""

from .core.agent import (
    Agent,
    Connection,
    Group,
    Variable,
    attach,
    connection_data_copy,
    detach,
)
from .core.codec import decode, encode, size_from_type, value_to_text
from .core.config import Web100Config
from .core.connection_info import (
    ConnectionIdentity,
    ConnectionInfoManager,
    collect_identities,
    connection_info_list,
    correlate,
)
from .core.errors import (
    ConnectionNotFound,
    ErrorCode,
    GroupNotFound,
    HeaderError,
    HeaderFormatError,
    InvalidArgument,
    NoConnection,
    NoHeader,
    OutOfMemory,
    SystemIOError,
    UnsupportedAgentKind,
    UnsupportedType,
    VariableNotFound,
    Web100Error,
    perror,
    strerror,
)
from .core.logging import setup_logging
from .core.snapshot import (
    Snapshot,
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
    snapshot_free,
    write_value,
)
from .core.types import (
    AddrType,
    AgentType,
    ConnectionInfo,
    ConnectionSpec,
    SocketEntry,
    SocketOwner,
    TcpState,
    VarType,
)

__version__ = "0.1.0"
