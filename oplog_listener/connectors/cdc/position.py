"""
Oplog position (BSON timestamp) text encoding.

A position is stored as the decimal form of the 64-bit timestamp value,
``(time << 32) | inc``, which sorts the same way the oplog does.
"""

from typing import Union

from bson import Timestamp

_UINT32 = 0xFFFFFFFF
_UINT64_LIMIT = 1 << 64


def position_to_string(position: Timestamp) -> str:
    return str((position.time << 32) | position.inc)


def position_from_string(value: Union[str, bytes]) -> Timestamp:
    """
    Parse a stored position.

    Raises:
        ValueError: If the value is not a 64-bit unsigned decimal
    """
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    number = int(value.strip())
    if number < 0 or number >= _UINT64_LIMIT:
        raise ValueError(f"position out of range: {value!r}")
    return Timestamp(number >> 32, number & _UINT32)
