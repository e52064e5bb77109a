"""Workerレジストリ

WorkerIdentity -> WorkerStatusRecord の共有テーブル。
多数の接続ハンドラーが書き込み、ダッシュボードがスナップショットを読む。

プロセス全体のシングルトンにはせず、必要なコンポーネントへ明示的に渡す。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace

from .protocol import (
    ControlMessage,
    HelloMessage,
    ProgressMessage,
    StartMessage,
    StopMessage,
    WorkerIdentity,
)

logger = logging.getLogger(__name__)


@dataclass
class WorkerStatusRecord:
    """Workerの最終既知ステータス

    status は connected / running / 終了ステータス文字列 のいずれか。
    接続が閉じてもレコードは削除せず connected を False にする。
    """

    tool: str
    directory: str
    status: str = "unknown"
    last_message: str | None = None
    bytes_transferred: int | None = None
    host: str | None = None
    pid: int | None = None
    connected: bool = True


class ReadWriteLock:
    """asyncio用 読み取り/書き込みロック

    読み取りは並行可能、書き込みは排他。待機中の書き込みを優先する。
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


def _apply(record: WorkerStatusRecord, message: ControlMessage) -> None:
    """メッセージ種別ごとの更新規則"""
    if isinstance(message, HelloMessage):
        record.host = message.host
        record.pid = message.pid
        record.connected = True
        record.status = "connected"
    elif isinstance(message, StartMessage):
        record.status = "running"
    elif isinstance(message, ProgressMessage):
        record.last_message = message.message
        if message.bytes_transferred is not None:
            record.bytes_transferred = message.bytes_transferred
    elif isinstance(message, StopMessage):
        record.status = message.status or "completed"
        if message.bytes_transferred is not None:
            record.bytes_transferred = message.bytes_transferred


class WorkerRegistry:
    """Workerステータスの共有テーブル

    更新は常に書き込みロック下での read-modify-write。
    スナップショットはコピーを返し、ロック保持はコピー中のみ。
    """

    def __init__(self) -> None:
        self._records: dict[WorkerIdentity, WorkerStatusRecord] = {}
        self._lock = ReadWriteLock()

    async def apply(self, identity: WorkerIdentity, message: ControlMessage) -> WorkerStatusRecord:
        """メッセージを適用する（初見のIDならレコードを作成）

        Returns:
            更新後レコードのコピー
        """
        async with self._lock.write():
            record = self._records.get(identity)
            if record is None:
                record = WorkerStatusRecord(tool=identity.tool, directory=identity.directory)
                self._records[identity] = record
                logger.debug("Worker登録: %s", identity)
            _apply(record, message)
            return replace(record)

    async def mark_disconnected(self, identity: WorkerIdentity) -> bool:
        """接続フラグを落とす（ステータスは保持）"""
        async with self._lock.write():
            record = self._records.get(identity)
            if record is None:
                return False
            record.connected = False
            return True

    async def get(self, identity: WorkerIdentity) -> WorkerStatusRecord | None:
        """単一レコードのコピーを取得"""
        async with self._lock.read():
            record = self._records.get(identity)
            return replace(record) if record is not None else None

    async def snapshot(self) -> dict[WorkerIdentity, WorkerStatusRecord]:
        """テーブル全体の時点コピーを取得"""
        async with self._lock.read():
            return {identity: replace(record) for identity, record in self._records.items()}

    def __len__(self) -> int:
        return len(self._records)
