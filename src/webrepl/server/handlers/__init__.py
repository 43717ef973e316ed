"""Session handlers - one per channel class.

- EventSession: Authentication handshake (channel 0)
- ExecutionSession: REPL state machine (channels 1-22)
- TransferSession / TransferMachine: Block transfer (channel 23)
- PythonExecutor: Default execution runtime (security boundary)
"""

from webrepl.server.handlers.event_session import EventSession
from webrepl.server.handlers.execution_session import ExecutionSession
from webrepl.server.handlers.python_executor import PythonExecutor
from webrepl.server.handlers.transfer_session import TransferMachine, TransferSession

__all__ = [
    "EventSession",
    "ExecutionSession",
    "PythonExecutor",
    "TransferMachine",
    "TransferSession",
]
