"""移行オーケストレータ

ディレクトリごとのフェーズ状態機械。
起動時に移行元ルート直下のディレクトリを列挙して scan Worker を起動し、
ステータスバスで scan の成功 Stop を観測したら同じディレクトリの
migrate Worker を起動する。自動リトライは行わない。
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Protocol

from ..core.protocol import ControlMessage, StopMessage, WorkerIdentity
from ..core.status_bus import StatusBus, SubscriptionClosed
from .jobs import (
    MIGRATE_TOOL,
    SCAN_TOOL,
    JobState,
    ManagedWorker,
    MigrationJob,
    WorkerLifecycle,
)
from .supervisor import SpawnError

logger = logging.getLogger(__name__)

# 隠しディレクトリの先頭文字（移行対象外）
HIDDEN_PREFIX = "."


class DiscoveryError(RuntimeError):
    """移行元ルートを列挙できない（移行全体が致命的失敗）"""


class Launcher(Protocol):
    """外部ツール起動の抽象 (ProcessSupervisor)"""

    async def start_scan(self, directory: Path) -> int: ...

    async def start_migrate(self, directory: Path, destination: Path) -> int: ...


class MigrationOrchestrator:
    """scan -> migrate のフェーズ進行を管理する

    ディレクトリ間に順序や依存はなく、それぞれ独立に進行する。
    判定に使うのは制御プレーンの Stop メッセージのみで、
    プロセスの終了コードは参照しない。
    """

    def __init__(
        self,
        source_root: Path | str,
        dest_root: Path | str,
        bus: StatusBus,
        launcher: Launcher,
        *,
        job_timeout: float | None = None,
    ):
        """
        Args:
            source_root: 移行元ルート
            dest_root: 移行先ルート
            bus: 購読するステータスバス
            launcher: Worker起動に使うスーパーバイザー
            job_timeout: フェーズごとの期限秒（None で無期限）
        """
        self.source_root = Path(source_root)
        self.dest_root = Path(dest_root)
        self._bus = bus
        self._launcher = launcher
        self._job_timeout = job_timeout
        self._jobs: dict[str, MigrationJob] = {}
        self._jobs_by_path: dict[str, MigrationJob] = {}
        self._workers: dict[WorkerIdentity, ManagedWorker] = {}

    # -------------------------------------------------------------------------
    # 参照
    # -------------------------------------------------------------------------

    @property
    def jobs(self) -> dict[str, MigrationJob]:
        return dict(self._jobs)

    @property
    def workers(self) -> dict[WorkerIdentity, ManagedWorker]:
        return dict(self._workers)

    def job_states(self) -> dict[str, JobState]:
        return {name: job.state for name, job in self._jobs.items()}

    def all_terminal(self) -> bool:
        return all(job.is_terminal for job in self._jobs.values())

    # -------------------------------------------------------------------------
    # 実行
    # -------------------------------------------------------------------------

    def discover(self) -> list[MigrationJob]:
        """移行元ルート直下の隠しでないディレクトリをジョブとして登録する

        Raises:
            DiscoveryError: ルートを列挙できない場合
        """
        try:
            entries = sorted(self.source_root.iterdir())
        except OSError as e:
            raise DiscoveryError(f"Cannot enumerate {self.source_root}: {e}") from e

        jobs = []
        for path in entries:
            if path.name.startswith(HIDDEN_PREFIX) or not path.is_dir():
                continue
            job = MigrationJob(
                name=path.name,
                source=path,
                destination=self.dest_root / path.name,
            )
            self._jobs[job.name] = job
            self._jobs_by_path[str(path)] = job
            jobs.append(job)

        logger.info("移行対象ディレクトリ %d 件を検出: %s", len(jobs), self.source_root)
        return jobs

    async def run(self) -> dict[str, JobState]:
        """全ジョブが終端状態になるまでフェーズを進める

        Returns:
            ディレクトリ名 -> 最終状態

        Raises:
            DiscoveryError: 移行元ルートを列挙できない場合
        """
        # scan 起動より先に購読し、早い Stop を取りこぼさない
        subscription = self._bus.subscribe("orchestrator")
        try:
            try:
                jobs = self.discover()
            except DiscoveryError as e:
                logger.error("ディレクトリ検出に失敗: %s", e)
                raise

            for job in jobs:
                await self._start_phase(job, SCAN_TOOL)

            while not self.all_terminal():
                try:
                    message = await asyncio.wait_for(
                        subscription.get(), timeout=self._next_deadline_delay()
                    )
                except TimeoutError:
                    self._expire_deadlines()
                    continue
                except SubscriptionClosed:
                    logger.warning("ステータスバスが閉じられたため移行を中断")
                    break
                await self.handle_message(message)
                self._expire_deadlines()
        finally:
            subscription.close()

        logger.info("移行ワークフロー終了: %s", self._summary())
        return self.job_states()

    async def handle_message(self, message: ControlMessage) -> None:
        """バスのメッセージ1件を処理する

        状態遷移を起こすのは scan / migrate の Stop のみ。
        """
        if not isinstance(message, StopMessage):
            return
        if message.tool not in (SCAN_TOOL, MIGRATE_TOOL):
            return

        job = self._find_job(message.directory)
        if job is None:
            logger.debug("管理外ディレクトリの Stop を無視: %s", message.directory)
            return
        if job.awaiting_tool != message.tool:
            logger.debug(
                "フェーズ不一致の Stop を無視: %s/%s (state=%s)",
                message.tool,
                job.name,
                job.state,
            )
            return

        worker = self._workers.get(WorkerIdentity(message.tool, job.name))
        if worker is not None:
            worker.state = (
                WorkerLifecycle.COMPLETED if message.succeeded else WorkerLifecycle.FAILED
            )

        if message.tool == SCAN_TOOL:
            if message.succeeded:
                self._transition(job, JobState.SCAN_OK)
                await self._start_phase(job, MIGRATE_TOOL)
            else:
                self._transition(job, JobState.SCAN_FAILED, message.status)
        else:
            if message.succeeded:
                self._transition(job, JobState.MIGRATE_OK)
            else:
                self._transition(job, JobState.MIGRATE_FAILED, message.status)

    # -------------------------------------------------------------------------
    # 内部
    # -------------------------------------------------------------------------

    async def _start_phase(self, job: MigrationJob, tool: str) -> None:
        """Workerを起動してフェーズを開始する（起動失敗は即失敗、リトライなし）"""
        worker = ManagedWorker(tool=tool, directory=job.name)
        self._workers[WorkerIdentity(tool, job.name)] = worker

        try:
            if tool == SCAN_TOOL:
                pid = await self._launcher.start_scan(job.source)
            else:
                pid = await self._launcher.start_migrate(job.source, job.destination)
        except SpawnError as e:
            logger.error("%s", e)
            worker.state = WorkerLifecycle.FAILED
            failed = JobState.SCAN_FAILED if tool == SCAN_TOOL else JobState.MIGRATE_FAILED
            self._transition(job, failed, "spawn error")
            return

        worker.pid = pid
        worker.state = WorkerLifecycle.RUNNING
        worker.started_at = datetime.now()
        self._transition(job, JobState.SCANNING if tool == SCAN_TOOL else JobState.MIGRATING)
        if self._job_timeout is not None:
            job.deadline = asyncio.get_running_loop().time() + self._job_timeout

    def _transition(self, job: MigrationJob, state: JobState, reason: str | None = None) -> None:
        previous = job.state
        job.advance(state)
        if job.awaiting_tool is None:
            job.deadline = None
        if state in (JobState.SCAN_FAILED, JobState.MIGRATE_FAILED, JobState.TIMED_OUT):
            logger.error("%s: %s -> %s (%s)", job.name, previous, state, reason or "no status")
        else:
            logger.info("%s: %s -> %s", job.name, previous, state)

    def _find_job(self, directory: str | None) -> MigrationJob | None:
        """Stop の dir をジョブに対応付ける（名前またはフルパス、末尾 / は無視）"""
        if not directory:
            return None
        normalized = directory.rstrip("/") or directory
        job = self._jobs.get(normalized)
        if job is not None:
            return job
        return self._jobs_by_path.get(normalized)

    def _next_deadline_delay(self) -> float | None:
        deadlines = [
            job.deadline
            for job in self._jobs.values()
            if job.deadline is not None and not job.is_terminal
        ]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - asyncio.get_running_loop().time())

    def _expire_deadlines(self) -> None:
        if self._job_timeout is None:
            return
        now = asyncio.get_running_loop().time()
        for job in self._jobs.values():
            if job.awaiting_tool is None or job.deadline is None or job.deadline > now:
                continue
            worker = self._workers.get(WorkerIdentity(job.awaiting_tool, job.name))
            if worker is not None:
                worker.state = WorkerLifecycle.FAILED
            self._transition(job, JobState.TIMED_OUT, f"no Stop within {self._job_timeout}s")

    def _summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self._jobs.values():
            counts[job.state] = counts.get(job.state, 0) + 1
        return counts
