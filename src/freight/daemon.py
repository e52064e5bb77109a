"""Freight コーディネータデーモン

リスナー・オーケストレータ・ダッシュボードを1プロセス内で起動し、
シャットダウンシグナルまたは移行完了まで待機する。

シャットダウン時、処理中の接続は打ち切り、起動済みのツールプロセスは
終了させずに残す。
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TextIO

from .control_plane.client import SOCKET_ENV_VAR
from .control_plane.listener import ControlPlaneListener
from .core.config import FreightSettings
from .core.protocol import WorkerIdentity
from .core.registry import WorkerRegistry, WorkerStatusRecord
from .core.status_bus import StatusBus
from .dashboard import run_dashboard
from .migration.jobs import JobState
from .migration.orchestrator import MigrationOrchestrator
from .migration.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class FreightDaemon:
    """コーディネータ本体

    レジストリとバスをここで生成し、各コンポーネントへ明示的に渡す。
    """

    def __init__(
        self,
        settings: FreightSettings,
        *,
        migrate: bool = True,
        dashboard_interval: float | None = None,
        dashboard_stream: TextIO | None = None,
    ):
        """
        Args:
            settings: 設定
            migrate: False の場合はリスナーのみ（オーケストレーションなし）
            dashboard_interval: ダッシュボード出力間隔秒（None で出力しない）
            dashboard_stream: ダッシュボード出力先
        """
        self.settings = settings
        daemon_cfg = settings.daemon

        self.registry = WorkerRegistry()
        self.bus = StatusBus(capacity=daemon_cfg.bus_capacity)
        self.listener = ControlPlaneListener(
            daemon_cfg.socket_path,
            self.registry,
            self.bus,
            strict_directory=daemon_cfg.strict_directory,
        )
        self.supervisor = ProcessSupervisor(
            settings.tools.scan_command,
            settings.tools.migrate_command,
            env={SOCKET_ENV_VAR: str(daemon_cfg.socket_path)},
        )
        self.orchestrator: MigrationOrchestrator | None = None
        if migrate:
            self.orchestrator = MigrationOrchestrator(
                settings.migration.source_path,
                settings.migration.dest_path,
                self.bus,
                self.supervisor,
                job_timeout=daemon_cfg.job_timeout_seconds,
            )
        self._dashboard_interval = dashboard_interval
        self._dashboard_stream = dashboard_stream
        self._shutdown = asyncio.Event()

    def request_shutdown(self) -> None:
        """シャットダウンを要求する"""
        self._shutdown.set()

    async def snapshot(self) -> dict[WorkerIdentity, WorkerStatusRecord]:
        """ダッシュボード向けのレジストリスナップショット"""
        return await self.registry.snapshot()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.debug("シグナルハンドラーを登録できません: %s", sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(self, *, handle_signals: bool = True) -> dict[str, JobState] | None:
        """デーモンを実行する

        Returns:
            移行モードでは各ディレクトリの最終状態（中断時は途中状態）。
            リスナーのみのモードでは None。

        Raises:
            DiscoveryError: 移行元ルートを列挙できない場合
            ListenerBusyError: 別のコーディネータが稼働中の場合
        """
        if handle_signals:
            self._install_signal_handlers()

        logger.info("Freight デーモン起動")
        tasks: dict[str, asyncio.Task] = {}
        try:
            async with self.listener:
                await self._serve(tasks)
        finally:
            self.bus.close()
            await self.supervisor.detach()
            if handle_signals:
                self._remove_signal_handlers()

        logger.info("Freight デーモン停止")

        orchestrator_task = tasks.get("orchestrator")
        if orchestrator_task is None:
            return None
        if orchestrator_task.done() and not orchestrator_task.cancelled():
            # DiscoveryError 等はここで呼び出し元へ伝搬する
            return orchestrator_task.result()
        return self._job_states()

    def _job_states(self) -> dict[str, JobState]:
        return self.orchestrator.job_states() if self.orchestrator else {}

    async def _serve(self, tasks: dict[str, asyncio.Task]) -> None:
        """リスナー・オーケストレータ・ダッシュボードを起動し、最初の終了を待つ"""
        tasks["listener"] = asyncio.create_task(self.listener.serve_forever())
        tasks["shutdown"] = asyncio.create_task(self._shutdown.wait())
        if self.orchestrator is not None:
            tasks["orchestrator"] = asyncio.create_task(self.orchestrator.run())
        if self._dashboard_interval:
            tasks["dashboard"] = asyncio.create_task(
                run_dashboard(
                    self.registry,
                    self._dashboard_interval,
                    jobs_provider=self._job_states,
                    stream=self._dashboard_stream,
                )
            )

        try:
            waited = [tasks["listener"], tasks["shutdown"]]
            if "orchestrator" in tasks:
                waited.append(tasks["orchestrator"])
            done, _ = await asyncio.wait(waited, return_when=asyncio.FIRST_COMPLETED)

            if tasks["shutdown"] in done:
                logger.info("シャットダウンシグナルを受信")
            elif tasks["listener"] in done:
                logger.error("制御プレーンが予期せず停止")
            elif tasks["orchestrator"].exception() is None:
                logger.info("移行完了")
        finally:
            # 接続中のハンドラーを先に打ち切る（サーバーの wait_closed は全接続の終了を待つ）
            await self.listener.close()
            running = list(tasks.values())
            for task in running:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
