"""Error taxonomy for web100.

Every fallible operation raises a :class:`Web100Error` subclass carrying an
:class:`ErrorCode`; there is no process-wide "last error" cell. ``strerror``
and ``perror`` keep the classic errno-style reporting helpers.
"""

from __future__ import annotations

import sys
from enum import IntEnum
from typing import Dict, Optional, Union


class ErrorCode(IntEnum):
    SUCCESS = 0
    SYS = 1
    AGENT_TYPE = 2
    NOMEM = 3
    NOCONNECTION = 4
    INVAL = 5
    HEADER = 6
    NOVAR = 7
    NOGROUP = 8
    UNSUPPORTED_TYPE = 9


_MESSAGES: Dict[int, str] = {
    ErrorCode.SUCCESS: "success",
    ErrorCode.SYS: "system error",
    ErrorCode.AGENT_TYPE: "unsupported agent type",
    ErrorCode.NOMEM: "no memory",
    ErrorCode.NOCONNECTION: "unable to open connection stats",
    ErrorCode.INVAL: "invalid arguments",
    ErrorCode.HEADER: "could not parse /proc/web100/header",
    ErrorCode.NOVAR: "variable not found",
    ErrorCode.NOGROUP: "group not found",
    ErrorCode.UNSUPPORTED_TYPE: "unsupported variable type",
}


def strerror(code: Union[int, ErrorCode]) -> str:
    """Return the description for ``code`` ("unknown error" if unknown)."""
    return _MESSAGES.get(int(code), "unknown error")


class Web100Error(Exception):
    code: ErrorCode = ErrorCode.SYS

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        message = strerror(self.code)
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class SystemIOError(Web100Error):
    code = ErrorCode.SYS


class UnsupportedAgentKind(Web100Error):
    code = ErrorCode.AGENT_TYPE


class OutOfMemory(Web100Error):
    code = ErrorCode.NOMEM


class NoConnection(Web100Error):
    """The connection's data file is missing or short (connection closed)."""

    code = ErrorCode.NOCONNECTION


class ConnectionNotFound(NoConnection):
    """No connection in the freshly scanned catalog matched the query."""


class InvalidArgument(Web100Error):
    code = ErrorCode.INVAL


class HeaderError(Web100Error):
    code = ErrorCode.HEADER


class NoHeader(HeaderError):
    pass


class HeaderFormatError(HeaderError):
    pass


class VariableNotFound(Web100Error):
    code = ErrorCode.NOVAR


class GroupNotFound(Web100Error):
    code = ErrorCode.NOGROUP


class UnsupportedType(Web100Error):
    code = ErrorCode.UNSUPPORTED_TYPE


def perror(prefix: str, err: Union[Web100Error, int, ErrorCode]) -> None:
    """Print ``"<prefix>: <message>"`` on stderr, in the style of perror(3)."""
    if isinstance(err, Web100Error):
        message = strerror(err.code)
    else:
        message = strerror(err)
    sys.stderr.write(f"{prefix}: {message}\n")
