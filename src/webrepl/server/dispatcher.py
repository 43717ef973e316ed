"""ChannelDispatcher - demultiplexes decoded messages onto sessions.

    channel 0       -> EventSession
    channels 1-22   -> ExecutionSession for that channel (created lazily)
    channel 23      -> TransferSession
    channels 24-254 -> CustomChannelHandler, verbatim

Authentication is enforced here, once, for every non-zero channel. Sessions
never see messages from an unauthenticated connection.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from webrepl.core.errors import ProtocolError, ProtocolErrorKind
from webrepl.core.messages import (
    EVENT_CHANNEL,
    ChannelClass,
    Custom,
    Message,
    channel_class,
    parse_request,
)
from webrepl.core.validation import validate_channel

if TYPE_CHECKING:
    from webrepl.server.connection import Connection

logger = logging.getLogger(__name__)


class ChannelDispatcher:
    """Routes one decoded message to the session that owns its channel."""

    async def dispatch(self, connection: Connection, fields: Sequence[Any]) -> None:
        """Validate, gate and route a decoded message.

        Protocol errors are answered on the offending channel; they never
        propagate to the transport.

        Args:
            connection: The connection the message arrived on.
            fields: Decoded positional fields.
        """
        try:
            message = self._admit(connection, fields)
        except ProtocolError as e:
            await connection.report_protocol_error(e)
            return

        try:
            await self._route(connection, message)
        except ProtocolError as e:
            await connection.report_protocol_error(e)
        except Exception as e:
            logger.error(
                "dispatch_failed: peer=%s channel=%d message=%s",
                connection.peer,
                message.channel,
                type(message).__name__,
                exc_info=True,
            )
            await connection.report_failure(
                message.channel, f"Internal error: {type(e).__name__}: {e}"
            )

    def _admit(self, connection: Connection, fields: Sequence[Any]) -> Message:
        if not fields:
            raise ProtocolError(ProtocolErrorKind.INVALID_CHANNEL, "empty message")
        channel = validate_channel(fields[0])
        if channel != EVENT_CHANNEL and not connection.authenticated:
            raise ProtocolError(ProtocolErrorKind.NOT_AUTHENTICATED, channel=channel)
        return parse_request(fields)

    async def _route(self, connection: Connection, message: Message) -> None:
        kind = channel_class(message.channel)
        logger.debug(
            "dispatch: peer=%s channel=%d message=%s",
            connection.peer,
            message.channel,
            type(message).__name__,
        )

        if kind is ChannelClass.EVENT:
            await connection.event_session.handle(message)
        elif kind is ChannelClass.EXECUTION:
            await connection.execution_session(message.channel).handle(message)
        elif kind is ChannelClass.FILE:
            await connection.transfer_session.handle(message)
        else:
            assert isinstance(message, Custom)
            handler = connection.custom_handler
            if handler is None:
                raise ProtocolError(
                    ProtocolErrorKind.INVALID_CHANNEL,
                    f"no handler for channel {message.channel}",
                    channel=message.channel,
                )
            await handler.handle(connection, message)
