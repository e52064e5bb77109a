"""制御プレーン リスナー

ファイルパス指定のUnixソケットで Worker 接続を受け付け、
接続ごとに ConnectionHandler を起動する。

同時にバインドできるリスナーは1つだけ。ソケット横のロックファイルを
portalocker で保持し、ロック取得後に古いソケットファイルを削除する。
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import portalocker

from ..core.registry import WorkerRegistry
from ..core.status_bus import StatusBus
from .connection import ConnectionHandler

logger = logging.getLogger(__name__)

# 1行あたりの読み取りバッファ上限
READ_LIMIT = 1024 * 1024


class ListenerBusyError(RuntimeError):
    """別のコーディネータがソケットを保持している"""


class ControlPlaneListener:
    """制御プレーン リスナー

    使い方:
        async with ControlPlaneListener(path, registry, bus) as listener:
            await listener.serve_forever()
    """

    def __init__(
        self,
        socket_path: Path | str,
        registry: WorkerRegistry,
        bus: StatusBus,
        *,
        strict_directory: bool = False,
    ):
        self.socket_path = Path(socket_path)
        self._registry = registry
        self._bus = bus
        self._strict_directory = strict_directory
        self._server: asyncio.AbstractServer | None = None
        self._lock: portalocker.Lock | None = None
        self._handlers: set[asyncio.Task] = set()
        self._accepted = 0

    @property
    def lock_path(self) -> Path:
        return self.socket_path.with_name(self.socket_path.name + ".lock")

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def active_connections(self) -> int:
        return len(self._handlers)

    @property
    def accepted_connections(self) -> int:
        return self._accepted

    async def start(self) -> None:
        """ロックを取得してソケットをバインドする

        Raises:
            ListenerBusyError: 別プロセスがリスナーを保持している場合
        """
        if self._server is not None:
            return

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        lock = portalocker.Lock(self.lock_path, mode="a", fail_when_locked=True)
        try:
            lock.acquire()
        except portalocker.LockException as e:
            raise ListenerBusyError(
                f"Another coordinator is listening on {self.socket_path}"
            ) from e
        self._lock = lock

        # 前回実行の残骸を削除
        self.socket_path.unlink(missing_ok=True)

        try:
            self._server = await asyncio.start_unix_server(
                self._on_connect,
                path=str(self.socket_path),
                limit=READ_LIMIT,
            )
        except OSError:
            self._release_lock()
            raise

        logger.info("制御プレーンを %s で待ち受け開始", self.socket_path)

    async def serve_forever(self) -> None:
        """クローズされるまで接続を受け付ける"""
        if self._server is None:
            await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            logger.debug("リスナー停止要求")
            raise

    async def close(self) -> None:
        """リスナーを停止する

        処理中の接続は待たずに打ち切る。ソケットファイルは削除する。
        """
        if self._server is None:
            return

        server = self._server
        self._server = None
        server.close()

        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)
        await server.wait_closed()

        self.socket_path.unlink(missing_ok=True)
        self._release_lock()
        logger.info("制御プレーンを停止: %s", self.socket_path)

    def _release_lock(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    async def _on_connect(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        self._accepted += 1
        peer = f"conn-{self._accepted}"

        handler = ConnectionHandler(
            reader,
            self._registry,
            self._bus,
            strict_directory=self._strict_directory,
            peer=peer,
        )
        try:
            await handler.run()
        except Exception:
            # 1接続の想定外エラーは他の接続に影響させない
            logger.exception("接続ハンドラーエラー: %s", peer)
        finally:
            writer.close()
            if task is not None:
                self._handlers.discard(task)

    async def __aenter__(self) -> ControlPlaneListener:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
