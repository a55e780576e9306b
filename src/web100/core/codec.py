"""Value codec: raw variable bytes <-> numbers and display text.

Numeric values live in the data files in the kernel's native byte order.
Addresses are stored as raw network-order bytes.
"""

from __future__ import annotations

import ipaddress
import struct
from typing import Dict, Union

from .errors import InvalidArgument, UnsupportedType
from .types import VarType

_SIZES: Dict[int, int] = {
    VarType.INTEGER: 4,
    VarType.INTEGER32: 4,
    VarType.IP_ADDRESS: 4,
    VarType.COUNTER32: 4,
    VarType.GAUGE32: 4,
    VarType.UNSIGNED32: 4,
    VarType.TIME_TICKS: 4,
    VarType.COUNTER64: 8,
    VarType.UNSIGNED16: 2,
    VarType.INET_ADDRESS_IPV6: 16,
}

_FORMATS: Dict[int, str] = {2: "=H", 4: "=I", 8: "=Q"}

_ADDRESS_TYPES = (VarType.IP_ADDRESS, VarType.INET_ADDRESS_IPV6)

Buffer = Union[bytes, bytearray, memoryview]


def size_from_type(vtype: int) -> int:
    """Size in bytes of a value of wire type ``vtype``."""
    try:
        return _SIZES[vtype]
    except KeyError:
        raise UnsupportedType(f"type {vtype}") from None


def is_numeric(vtype: int) -> bool:
    return size_from_type(vtype) in _FORMATS and vtype not in _ADDRESS_TYPES


def _checked(vtype: int, buf: Buffer) -> bytes:
    size = size_from_type(vtype)
    if len(buf) < size:
        raise InvalidArgument(f"buffer of {len(buf)} bytes for a {size}-byte value")
    return bytes(buf[:size])


def decode(vtype: int, buf: Buffer) -> int:
    """Unsigned integer view of a numeric value."""
    raw = _checked(vtype, buf)
    if not is_numeric(vtype):
        raise UnsupportedType(f"{VarType(vtype).name} is not numeric")
    return struct.unpack(_FORMATS[len(raw)], raw)[0]


def encode(vtype: int, value: int) -> bytes:
    """Encode ``value`` at the native width of ``vtype``, truncating high bits."""
    size = size_from_type(vtype)
    if not is_numeric(vtype):
        raise UnsupportedType(f"{VarType(vtype).name} is not numeric")
    return struct.pack(_FORMATS[size], value & ((1 << (8 * size)) - 1))


def value_to_text(vtype: int, buf: Buffer) -> str:
    """Render a raw value the way the instrumentation tools display it."""
    raw = _checked(vtype, buf)
    if vtype == VarType.IP_ADDRESS:
        return "%u.%u.%u.%u" % tuple(raw)
    if vtype == VarType.INET_ADDRESS_IPV6:
        return str(ipaddress.IPv6Address(raw))
    return str(decode(vtype, raw))
