"""移行オーケストレータのテスト

外部ツールの起動は FakeLauncher で置き換え、バスへの発行で
Worker の Stop を模擬する。
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from freight.core.protocol import ProgressMessage, StartMessage, StopMessage, WorkerIdentity
from freight.core.status_bus import StatusBus
from freight.migration.jobs import JobState, MigrationJob, WorkerLifecycle
from freight.migration.orchestrator import DiscoveryError, MigrationOrchestrator
from freight.migration.supervisor import SpawnError


class FakeLauncher:
    """起動要求を記録するだけのランチャー"""

    def __init__(self, fail_scan: set[str] | None = None, fail_migrate: set[str] | None = None):
        self.scans: list[Path] = []
        self.migrations: list[tuple[Path, Path]] = []
        self._fail_scan = fail_scan or set()
        self._fail_migrate = fail_migrate or set()
        self._next_pid = 1000

    async def start_scan(self, directory: Path) -> int:
        if directory.name in self._fail_scan:
            raise SpawnError("scan", str(directory), "No such file or directory")
        self.scans.append(directory)
        self._next_pid += 1
        return self._next_pid

    async def start_migrate(self, directory: Path, destination: Path) -> int:
        if directory.name in self._fail_migrate:
            raise SpawnError("migrate", str(directory), "Permission denied")
        self.migrations.append((directory, destination))
        self._next_pid += 1
        return self._next_pid


def _stop(tool: str, directory: str, status: str | None) -> StopMessage:
    return StopMessage(tool=tool, directory=directory, status=status)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def bus():
    return StatusBus()


@pytest.fixture
def orchestrator(source_root, dest_root, bus, launcher):
    return MigrationOrchestrator(source_root, dest_root, bus, launcher)


class TestMigrationJob:
    """MigrationJob のテスト"""

    def test_advance_records_history(self):
        """状態遷移が履歴に残る"""
        job = MigrationJob(name="a", source=Path("/s/a"), destination=Path("/d/a"))

        job.advance(JobState.SCANNING)
        job.advance(JobState.SCAN_FAILED)

        assert job.history == [JobState.PENDING, JobState.SCANNING]
        assert job.is_terminal

    def test_awaiting_tool(self):
        """Stop 待ちのツール"""
        job = MigrationJob(name="a", source=Path("/s/a"), destination=Path("/d/a"))

        assert job.awaiting_tool is None
        job.advance(JobState.SCANNING)
        assert job.awaiting_tool == "scan"
        job.advance(JobState.SCAN_OK)
        job.advance(JobState.MIGRATING)
        assert job.awaiting_tool == "migrate"


class TestDiscovery:
    """ディレクトリ検出"""

    def test_discovers_visible_directories_only(self, orchestrator, source_root, dest_root):
        """隠しディレクトリとファイルは対象外"""
        jobs = orchestrator.discover()

        assert [job.name for job in jobs] == ["a", "b"]
        assert jobs[0].source == source_root / "a"
        assert jobs[0].destination == dest_root / "a"
        assert all(job.state == JobState.PENDING for job in jobs)

    def test_missing_root_raises(self, tmp_path, bus, launcher):
        """ルートが列挙できなければ DiscoveryError"""
        orchestrator = MigrationOrchestrator(tmp_path / "missing", tmp_path, bus, launcher)

        with pytest.raises(DiscoveryError):
            orchestrator.discover()

    @pytest.mark.asyncio
    async def test_run_propagates_discovery_error(self, tmp_path, bus, launcher):
        """run は DiscoveryError で停止する"""
        orchestrator = MigrationOrchestrator(tmp_path / "missing", tmp_path, bus, launcher)

        with pytest.raises(DiscoveryError):
            await orchestrator.run()

        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_empty_root_finishes_immediately(self, tmp_path, bus, launcher):
        """対象がなければ即終了"""
        (tmp_path / "empty").mkdir()
        orchestrator = MigrationOrchestrator(tmp_path / "empty", tmp_path, bus, launcher)

        states = await asyncio.wait_for(orchestrator.run(), timeout=1)

        assert states == {}
        assert launcher.scans == []


class TestPhaseTransitions:
    """handle_message による状態遷移"""

    async def _scanning(self, orchestrator):
        for job in orchestrator.discover():
            await orchestrator._start_phase(job, "scan")

    @pytest.mark.asyncio
    async def test_scan_ok_launches_migrate_once(
        self, orchestrator, launcher, source_root, dest_root
    ):
        """scan 成功で migrate を1回だけ起動する"""
        # Arrange
        await self._scanning(orchestrator)

        # Act: 同じ Stop が重複しても1回だけ
        await orchestrator.handle_message(_stop("scan", "a", "ok"))
        await orchestrator.handle_message(_stop("scan", "a", "ok"))

        # Assert
        assert launcher.migrations == [(source_root / "a", dest_root / "a")]
        assert orchestrator.job_states()["a"] == JobState.MIGRATING
        assert orchestrator.job_states()["b"] == JobState.SCANNING
        assert orchestrator.workers[WorkerIdentity("scan", "a")].state == WorkerLifecycle.COMPLETED
        assert orchestrator.workers[WorkerIdentity("migrate", "a")].state == WorkerLifecycle.RUNNING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["error", "OK", "failed", None])
    async def test_scan_failure_never_launches_migrate(self, orchestrator, launcher, status):
        """scan が ok 以外なら migrate は起動しない"""
        await self._scanning(orchestrator)

        await orchestrator.handle_message(_stop("scan", "a", status))

        assert launcher.migrations == []
        assert orchestrator.job_states()["a"] == JobState.SCAN_FAILED
        assert orchestrator.workers[WorkerIdentity("scan", "a")].state == WorkerLifecycle.FAILED

    @pytest.mark.asyncio
    async def test_migrate_outcomes(self, orchestrator):
        """migrate の Stop で終端状態になる"""
        await self._scanning(orchestrator)
        await orchestrator.handle_message(_stop("scan", "a", "ok"))
        await orchestrator.handle_message(_stop("scan", "b", "ok"))

        await orchestrator.handle_message(_stop("migrate", "a", "ok"))
        await orchestrator.handle_message(_stop("migrate", "b", "error"))

        assert orchestrator.job_states() == {
            "a": JobState.MIGRATE_OK,
            "b": JobState.MIGRATE_FAILED,
        }
        assert orchestrator.all_terminal()

    @pytest.mark.asyncio
    async def test_non_stop_messages_are_ignored(self, orchestrator, launcher):
        """Stop 以外や未知ツールは遷移を起こさない"""
        await self._scanning(orchestrator)

        await orchestrator.handle_message(StartMessage(tool="scan", directory="a"))
        await orchestrator.handle_message(ProgressMessage(tool="scan", directory="a"))
        await orchestrator.handle_message(_stop("verify", "a", "ok"))
        await orchestrator.handle_message(_stop("scan", "zzz", "ok"))
        await orchestrator.handle_message(_stop("scan", None, "ok"))

        assert orchestrator.job_states()["a"] == JobState.SCANNING
        assert launcher.migrations == []

    @pytest.mark.asyncio
    async def test_migrate_stop_during_scan_is_ignored(self, orchestrator):
        """フェーズが合わない Stop は無視する"""
        await self._scanning(orchestrator)

        await orchestrator.handle_message(_stop("migrate", "a", "ok"))

        assert orchestrator.job_states()["a"] == JobState.SCANNING

    @pytest.mark.asyncio
    async def test_directory_matches_full_path_and_trailing_slash(
        self, orchestrator, launcher, source_root
    ):
        """dir はフルパスや末尾 / でも一致する"""
        await self._scanning(orchestrator)

        await orchestrator.handle_message(_stop("scan", str(source_root / "a"), "ok"))
        await orchestrator.handle_message(_stop("scan", "b/", "ok"))

        assert [m[0].name for m in launcher.migrations] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_scan_spawn_failure_marks_scan_failed(self, source_root, dest_root, bus):
        """scan の起動失敗は SCAN_FAILED（他ディレクトリに影響しない）"""
        launcher = FakeLauncher(fail_scan={"a"})
        orchestrator = MigrationOrchestrator(source_root, dest_root, bus, launcher)

        await self._scanning(orchestrator)

        assert orchestrator.job_states() == {"a": JobState.SCAN_FAILED, "b": JobState.SCANNING}
        assert orchestrator.workers[WorkerIdentity("scan", "a")].state == WorkerLifecycle.FAILED

    @pytest.mark.asyncio
    async def test_migrate_spawn_failure_marks_migrate_failed(self, source_root, dest_root, bus):
        """migrate の起動失敗は MIGRATE_FAILED、リトライなし"""
        launcher = FakeLauncher(fail_migrate={"a"})
        orchestrator = MigrationOrchestrator(source_root, dest_root, bus, launcher)
        await self._scanning(orchestrator)

        await orchestrator.handle_message(_stop("scan", "a", "ok"))

        assert orchestrator.job_states()["a"] == JobState.MIGRATE_FAILED
        assert launcher.migrations == []


class TestRun:
    """run によるバス駆動のワークフロー"""

    @pytest.mark.asyncio
    async def test_end_to_end_via_bus(self, orchestrator, bus, launcher, source_root):
        """a は migrate まで進み、b は scan 失敗で止まる"""
        # Arrange
        run = asyncio.create_task(orchestrator.run())
        await _settle()
        assert sorted(p.name for p in launcher.scans) == ["a", "b"]

        # Act
        bus.publish(StartMessage(tool="scan", directory="a"))
        bus.publish(StopMessage(tool="scan", directory="a", status="ok", bytes_transferred=1000))
        bus.publish(_stop("scan", "b", "error"))
        await _settle()

        assert [m[0].name for m in launcher.migrations] == ["a"]

        bus.publish(_stop("migrate", "a", "ok"))
        states = await asyncio.wait_for(run, timeout=1)

        # Assert
        assert states == {"a": JobState.MIGRATE_OK, "b": JobState.SCAN_FAILED}
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_scans_are_independent(self, orchestrator, bus, launcher):
        """別ディレクトリの scan 完了はどの順でも各々の migrate を起動する"""
        run = asyncio.create_task(orchestrator.run())
        await _settle()

        bus.publish(_stop("scan", "b", "ok"))
        bus.publish(_stop("scan", "a", "ok"))
        await _settle()

        assert sorted(m[0].name for m in launcher.migrations) == ["a", "b"]
        assert [m[1].name for m in launcher.migrations] == ["b", "a"]

        run.cancel()
        await asyncio.gather(run, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_stalled_job_times_out(self, source_root, dest_root, bus, launcher):
        """期限を過ぎても Stop がなければ TIMED_OUT"""
        orchestrator = MigrationOrchestrator(
            source_root, dest_root, bus, launcher, job_timeout=0.05
        )
        run = asyncio.create_task(orchestrator.run())
        await _settle()

        bus.publish(_stop("scan", "a", "ok"))
        states = await asyncio.wait_for(run, timeout=2)

        assert states == {"a": JobState.TIMED_OUT, "b": JobState.TIMED_OUT}
        assert [m[0].name for m in launcher.migrations] == ["a"]
        assert orchestrator.workers[WorkerIdentity("migrate", "a")].state == WorkerLifecycle.FAILED

    @pytest.mark.asyncio
    async def test_no_timeout_waits_indefinitely(self, orchestrator):
        """期限なしでは Stop が来るまで遷移しない"""
        run = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0.05)

        assert orchestrator.job_states() == {"a": JobState.SCANNING, "b": JobState.SCANNING}
        assert not run.done()

        run.cancel()
        await asyncio.gather(run, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_bus_close_ends_run(self, orchestrator, bus):
        """バスが閉じられたら途中状態で終了する"""
        run = asyncio.create_task(orchestrator.run())
        await _settle()

        bus.close()
        states = await asyncio.wait_for(run, timeout=1)

        assert states == {"a": JobState.SCANNING, "b": JobState.SCANNING}
