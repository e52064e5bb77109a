"""制御プレーン

Workerプロセスとコーディネータ間のUnixソケット通信。
"""

from .client import SOCKET_ENV_VAR, ControlClient
from .connection import ConnectionHandler, WorkerConnectionError
from .listener import ControlPlaneListener, ListenerBusyError

__all__ = [
    "ConnectionHandler",
    "ControlClient",
    "ControlPlaneListener",
    "ListenerBusyError",
    "SOCKET_ENV_VAR",
    "WorkerConnectionError",
]
