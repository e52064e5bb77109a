"""プロセススーパーバイザー

外部ツール (scan / migrate) をサブプロセスとして起動し、
終了を非同期に待ってログに残す。

プロセス終了は参考情報のみ。フェーズ判定は制御プレーンの Stop だけで行う。

ツールは別セッションで起動し、コーディネータの停止時には終了させずに
手放す (detach)。そのため asyncio のサブプロセストランスポート
（クローズ時に子プロセスを kill する）は使わず、Popen と stderr パイプの
読み取りで終了を監視する。
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .jobs import MIGRATE_TOOL, SCAN_TOOL

logger = logging.getLogger(__name__)

# 失敗時にログへ残すstderr末尾の長さ
STDERR_TAIL_CHARS = 2000

# stderr が閉じた後に終了コードを確認する間隔（秒）
EXIT_POLL_INTERVAL = 0.05

_READ_CHUNK = 64 * 1024


class SpawnError(RuntimeError):
    """外部ツールの起動失敗"""

    def __init__(self, tool: str, directory: str, reason: str):
        super().__init__(f"Failed to start {tool} worker for {directory}: {reason}")
        self.tool = tool
        self.directory = directory


@dataclass(frozen=True)
class ProcessExit:
    """サブプロセスの終了情報"""

    tool: str
    directory: str
    pid: int
    returncode: int | None
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


@dataclass
class _Running:
    process: subprocess.Popen
    stderr_pipe: asyncio.ReadTransport


class ProcessSupervisor:
    """外部ツールプロセスの起動と終了監視"""

    def __init__(
        self,
        scan_command: list[str],
        migrate_command: list[str],
        *,
        env: dict[str, str] | None = None,
        on_exit: Callable[[ProcessExit], None] | None = None,
    ):
        """
        Args:
            scan_command: scan ツールの argv プレフィックス
            migrate_command: migrate ツールの argv プレフィックス
            env: 子プロセスに追加する環境変数
            on_exit: プロセス終了時のコールバック
        """
        self._commands = {SCAN_TOOL: list(scan_command), MIGRATE_TOOL: list(migrate_command)}
        self._env = dict(env or {})
        self._on_exit = on_exit
        self._waiters: set[asyncio.Task] = set()
        self._running: dict[int, _Running] = {}
        self.exits: list[ProcessExit] = []

    @property
    def running(self) -> int:
        """終了待ちのプロセス数"""
        return len(self._waiters)

    async def start_scan(self, directory: Path) -> int:
        """scan <directory> を起動してPIDを返す"""
        return await self._launch(SCAN_TOOL, [str(directory)], str(directory))

    async def start_migrate(self, directory: Path, destination: Path) -> int:
        """migrate <directory> <destination> を起動してPIDを返す"""
        return await self._launch(MIGRATE_TOOL, [str(directory), str(destination)], str(directory))

    async def _launch(self, tool: str, args: list[str], directory: str) -> int:
        command = [*self._commands[tool], *args]
        env = {**os.environ, **self._env} if self._env else None
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(tool, directory, str(e)) from e

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        stderr_pipe, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), process.stderr
        )
        self._running[process.pid] = _Running(process, stderr_pipe)

        logger.info("%s worker 起動: %s (pid=%s)", tool, directory, process.pid)

        waiter = asyncio.create_task(self._await_exit(tool, directory, process, reader))
        self._waiters.add(waiter)
        waiter.add_done_callback(self._waiters.discard)
        return process.pid

    async def _await_exit(
        self,
        tool: str,
        directory: str,
        process: subprocess.Popen,
        stderr: asyncio.StreamReader,
    ) -> ProcessExit:
        tail = b""
        try:
            while chunk := await stderr.read(_READ_CHUNK):
                tail = (tail + chunk)[-STDERR_TAIL_CHARS * 4 :]
            while process.poll() is None:
                await asyncio.sleep(EXIT_POLL_INTERVAL)
        except OSError as e:
            logger.error("%s worker の終了待ちに失敗: %s: %s", tool, directory, e)
        finally:
            self._running.pop(process.pid, None)

        result = ProcessExit(
            tool,
            directory,
            process.pid,
            process.returncode,
            tail.decode("utf-8", errors="replace")[-STDERR_TAIL_CHARS:],
        )
        if result.succeeded:
            logger.info("%s プロセス正常終了: %s", tool, directory)
        else:
            logger.error(
                "%s プロセス異常終了: %s (code=%s): %s",
                tool,
                directory,
                result.returncode,
                result.stderr.strip(),
            )

        self.exits.append(result)
        if self._on_exit:
            self._on_exit(result)
        return result

    async def wait_all(self) -> list[ProcessExit]:
        """起動済みプロセスの終了をすべて待つ"""
        waiters = list(self._waiters)
        if not waiters:
            return []
        return list(await asyncio.gather(*waiters))

    async def detach(self) -> list[int]:
        """終了監視を打ち切り、実行中のプロセスを終了させずに手放す

        Returns:
            実行中のまま残したプロセスのPID
        """
        left = sorted(self._running)
        for entry in self._running.values():
            entry.stderr_pipe.close()

        waiters = list(self._waiters)
        for waiter in waiters:
            waiter.cancel()
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)
        self._running.clear()

        if left:
            logger.info("実行中のツールプロセス %d 件を残して終了: %s", len(left), left)
        return left
