"""Tests for the error taxonomy."""

from __future__ import annotations

from webrepl.core.errors import (
    DecodeError,
    DecodeErrorKind,
    ErrorCode,
    ExecutionError,
    ProtocolError,
    ProtocolErrorKind,
    TransferError,
    WebReplError,
)


class TestErrors:
    """Tests for error construction and messages."""

    def test_common_base(self):
        """All errors share WebReplError."""
        assert issubclass(DecodeError, WebReplError)
        assert issubclass(ProtocolError, WebReplError)
        assert issubclass(TransferError, WebReplError)
        assert issubclass(ExecutionError, WebReplError)

    def test_decode_error_message(self):
        """The kind leads the message."""
        error = DecodeError(DecodeErrorKind.NOT_ARRAY, "int")
        assert str(error) == "not_array: int"

    def test_protocol_error_carries_channel(self):
        """ProtocolError remembers where it happened."""
        error = ProtocolError(ProtocolErrorKind.NOT_AUTHENTICATED, channel=23)
        assert error.channel == 23
        assert str(error) == "not authenticated"

    def test_transfer_error_default_message(self):
        """Without a message, the code name is used."""
        error = TransferError(ErrorCode.DISK_FULL)
        assert error.message == "Disk full"

    def test_error_codes(self):
        """TFTP codes keep their wire values."""
        assert ErrorCode.FILE_NOT_FOUND == 1
        assert ErrorCode.UNKNOWN_TRANSFER_ID == 5
        assert ErrorCode.OPTIONS_REJECTED == 8
