"""Positional field validation for decoded messages.

Decoded messages are loosely-typed lists. FieldReader turns "index N must be
a str" into a ProtocolError carrying the channel, so message constructors
never index raw lists directly.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from webrepl.core.errors import ProtocolError, ProtocolErrorKind

MAX_CHANNEL = 254


def validate_channel(value: Any) -> int:
    """Validate a channel id.

    Args:
        value: Field 0 of a decoded message.

    Returns:
        The channel id.

    Raises:
        ProtocolError: INVALID_CHANNEL if not an integer in [0, 254].
    """
    if not _is_int(value) or not 0 <= value <= MAX_CHANNEL:
        raise ProtocolError(ProtocolErrorKind.INVALID_CHANNEL, repr(value))
    return value


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _matches(value: Any, types: type | tuple[type, ...]) -> bool:
    if not isinstance(types, tuple):
        types = (types,)
    if int in types and isinstance(value, bool):
        return bool in types
    return isinstance(value, types)


class FieldReader:
    """Typed access to the positional fields of one message.

    Fields past the last one read are ignored (tolerant reader).

    Example:
        >>> reader = FieldReader([23, 2, "/boot.py", 120], channel=23)
        >>> reader.require(2, str, "path")
        '/boot.py'
        >>> reader.optional(4, int, "blksize") is None
        True
    """

    def __init__(self, fields: Sequence[Any], channel: int) -> None:
        self.fields = fields
        self.channel = channel

    def require(self, index: int, types: type | tuple[type, ...], name: str) -> Any:
        """Extract a required field or raise ProtocolError.

        Args:
            index: Field position.
            types: Accepted type or types.
            name: Field name for error messages.

        Returns:
            The field value.

        Raises:
            ProtocolError: MISSING_FIELD if absent or None,
                INVALID_FIELD if of the wrong type.
        """
        if index >= len(self.fields) or self.fields[index] is None:
            raise ProtocolError(ProtocolErrorKind.MISSING_FIELD, name, channel=self.channel)
        return self._check(index, types, name)

    def optional(
        self,
        index: int,
        types: type | tuple[type, ...],
        name: str,
        default: Any = None,
    ) -> Any:
        """Extract an optional field, returning default when absent or None."""
        if index >= len(self.fields) or self.fields[index] is None:
            return default
        return self._check(index, types, name)

    def rest(self, index: int) -> tuple[Any, ...]:
        """All fields from index on."""
        return tuple(self.fields[index:])

    def _check(self, index: int, types: type | tuple[type, ...], name: str) -> Any:
        value = self.fields[index]
        if not _matches(value, types):
            raise ProtocolError(
                ProtocolErrorKind.INVALID_FIELD,
                f"{name} has type {type(value).__name__}",
                channel=self.channel,
            )
        return value
