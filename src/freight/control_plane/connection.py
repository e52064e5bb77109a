"""接続ハンドラー

受け付けた1接続ごとに1インスタンス。Workerプロセスから届く行を
デコードし、レジストリを更新してステータスバスへ再発行する。
プロトコルは一方向 (Worker -> コーディネータ) で、応答は返さない。
"""

from __future__ import annotations

import asyncio
import logging

from ..core.protocol import (
    UNKNOWN,
    HelloMessage,
    ProtocolError,
    WorkerIdentity,
    decode_line,
)
from ..core.registry import WorkerRegistry
from ..core.status_bus import StatusBus

logger = logging.getLogger(__name__)


class WorkerConnectionError(OSError):
    """Worker接続の読み取りI/O失敗"""


class ConnectionHandler:
    """1接続分の行ストリーム処理

    HELLO は tool/dir を持たないため、接続に紐付いたIDへ適用する。
    まだIDが紐付いていなければ保留し、最初のIDつきメッセージで適用する。
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        registry: WorkerRegistry,
        bus: StatusBus,
        *,
        strict_directory: bool = False,
        peer: str = "",
    ):
        self._reader = reader
        self._registry = registry
        self._bus = bus
        self._strict_directory = strict_directory
        self._peer = peer or "worker"
        self._pending_hello: HelloMessage | None = None
        self.identity: WorkerIdentity | None = None
        self.lines_received = 0
        self.lines_rejected = 0

    async def run(self) -> None:
        """ストリーム終端またはI/Oエラーまで読み続ける"""
        try:
            while True:
                raw = await self._readline()
                if raw is None:
                    self.lines_rejected += 1
                    logger.warning("行が長すぎるため破棄: %s", self._peer)
                    continue
                if not raw:
                    break
                await self._handle_line(raw.decode("utf-8", errors="replace").strip())
        except WorkerConnectionError as e:
            logger.error("Worker接続の読み取りエラー (%s): %s", self._peer, e)
        finally:
            if self.identity is None and self._pending_hello is not None:
                # IDつきメッセージが来ないまま閉じた接続の HELLO
                self.identity = WorkerIdentity(UNKNOWN, UNKNOWN)
                await self._registry.apply(self.identity, self._pending_hello)
                self._pending_hello = None
            if self.identity is not None:
                await self._registry.mark_disconnected(self.identity)
                logger.debug("Worker %s 切断", self.identity)

    async def _readline(self) -> bytes | None:
        """1行読む（EOF で b""、読み取り上限を超える行は読み捨てて None）"""
        try:
            try:
                return await self._reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                return e.partial
            except asyncio.LimitOverrunError as e:
                await self._discard_line(e.consumed)
                return None
        except OSError as e:
            raise WorkerConnectionError(str(e)) from e

    async def _discard_line(self, consumed: int) -> None:
        # 次の改行までを読み捨てる
        while True:
            try:
                await self._reader.readexactly(consumed)
                await self._reader.readuntil(b"\n")
                return
            except asyncio.IncompleteReadError:
                return
            except asyncio.LimitOverrunError as e:
                consumed = e.consumed

    async def _handle_line(self, line: str) -> None:
        if not line:
            return
        self.lines_received += 1
        logger.debug("受信: %s", line)

        try:
            message = decode_line(line, strict_directory=self._strict_directory)
        except ProtocolError as e:
            self.lines_rejected += 1
            logger.warning("Workerメッセージのパースに失敗: %s", e)
            return

        if isinstance(message, HelloMessage):
            if self.identity is not None:
                await self._registry.apply(self.identity, message)
            else:
                self._pending_hello = message
        else:
            identity = WorkerIdentity.of(message)
            if self._pending_hello is not None:
                await self._registry.apply(identity, self._pending_hello)
                self._pending_hello = None
            await self._registry.apply(identity, message)
            self.identity = identity

        self._bus.publish(message)
