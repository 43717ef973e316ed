"""Message codec - MessagePack arrays to positional field lists.

Every WebREPL message is a single MessagePack array whose first element is
the channel id. The codec knows nothing about channels or opcodes; it only
guarantees exact round-trips and the tolerant-reader rule:

- Extra elements inside the array are kept, never rejected.
- Complete values found after the top-level array are appended as extra
  trailing elements.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import msgpack

from webrepl.core.errors import DecodeError, DecodeErrorKind

# Upper bound on a single inbound message. Block payloads are at most
# 64 KiB so anything far beyond that is hostile.
MAX_MESSAGE_SIZE = 1024 * 1024


def encode(fields: Sequence[Any]) -> bytes:
    """Encode a field sequence.

    Args:
        fields: Positional fields. Field 0 should be the channel id.

    Returns:
        MessagePack bytes for a single array.

    Raises:
        TypeError: If a field has no MessagePack representation.
    """
    return msgpack.packb(list(fields), use_bin_type=True)


def decode(data: bytes, max_size: int = MAX_MESSAGE_SIZE) -> list[Any]:
    """Decode bytes into a field list.

    Args:
        data: One transport message.
        max_size: Reject messages larger than this many bytes.

    Returns:
        The positional fields, including any trailing extras.

    Raises:
        DecodeError: MALFORMED, NOT_ARRAY or EMPTY.
    """
    if not data:
        raise DecodeError(DecodeErrorKind.MALFORMED, "no data")
    if len(data) > max_size:
        raise DecodeError(DecodeErrorKind.MALFORMED, f"message exceeds {max_size} bytes")

    unpacker = msgpack.Unpacker(
        raw=False,
        strict_map_key=False,
        max_buffer_size=max_size,
    )
    unpacker.feed(data)

    try:
        values = list(unpacker)
    except (ValueError, TypeError, msgpack.UnpackException) as e:
        raise DecodeError(DecodeErrorKind.MALFORMED, str(e)) from e

    if not values or unpacker.tell() != len(data):
        raise DecodeError(DecodeErrorKind.MALFORMED, "truncated input")

    top = values[0]
    if not isinstance(top, list):
        raise DecodeError(DecodeErrorKind.NOT_ARRAY, type(top).__name__)
    if not top:
        raise DecodeError(DecodeErrorKind.EMPTY)

    return top + values[1:]
