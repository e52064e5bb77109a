"""制御プレーン クライアント

scan / migrate ツール側からコーディネータへステータスを報告する。
ツールは環境変数 FREIGHT_SOCKET_PATH でソケットパスを受け取る。
"""

from __future__ import annotations

import asyncio
import os
import socket
from pathlib import Path

from ..core.config import DEFAULT_SOCKET_PATH
from ..core.protocol import (
    ControlMessage,
    HelloMessage,
    ProgressMessage,
    StartMessage,
    StopMessage,
    encode_message,
)

SOCKET_ENV_VAR = "FREIGHT_SOCKET_PATH"


def socket_path_from_env() -> Path:
    """環境変数からソケットパスを取得（未設定時は既定パス）"""
    return Path(os.environ.get(SOCKET_ENV_VAR) or DEFAULT_SOCKET_PATH)


class ControlClient:
    """Worker側の報告クライアント

    使い方:
        async with ControlClient(path) as client:
            await client.start("scan", "user")
            await client.stop("scan", "user", status="ok", bytes_transferred=1000)
    """

    def __init__(self, socket_path: Path | str | None = None):
        self.socket_path = Path(socket_path) if socket_path else socket_path_from_env()
        self._writer: asyncio.StreamWriter | None = None

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        if self.connected:
            return
        _, self._writer = await asyncio.open_unix_connection(str(self.socket_path))

    async def close(self) -> None:
        if self._writer is None:
            return
        writer = self._writer
        self._writer = None
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def send_line(self, line: str) -> None:
        """生の行を送信する"""
        await self.connect()
        assert self._writer is not None
        self._writer.write(line.rstrip("\n").encode("utf-8") + b"\n")
        await self._writer.drain()

    async def send(self, message: ControlMessage) -> None:
        await self.send_line(encode_message(message))

    async def hello(self, host: str | None = None, pid: int | None = None) -> None:
        await self.send(
            HelloMessage(
                host=host or socket.gethostname(),
                pid=os.getpid() if pid is None else pid,
            )
        )

    async def start(self, tool: str, directory: str) -> None:
        await self.send(StartMessage(tool=tool, directory=directory))

    async def progress(
        self,
        tool: str,
        directory: str,
        message: str | None = None,
        bytes_transferred: int | None = None,
    ) -> None:
        await self.send(
            ProgressMessage(
                tool=tool,
                directory=directory,
                message=message,
                bytes_transferred=bytes_transferred,
            )
        )

    async def stop(
        self,
        tool: str,
        directory: str,
        status: str | None = None,
        bytes_transferred: int | None = None,
        message: str | None = None,
    ) -> None:
        await self.send(
            StopMessage(
                tool=tool,
                directory=directory,
                status=status,
                bytes_transferred=bytes_transferred,
                message=message,
            )
        )

    async def __aenter__(self) -> ControlClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
