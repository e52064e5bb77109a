"""ダッシュボード整形のテスト"""

from __future__ import annotations

import asyncio
import io

import pytest

from freight.core.protocol import StartMessage, StopMessage, WorkerIdentity
from freight.core.registry import WorkerRegistry, WorkerStatusRecord
from freight.dashboard import (
    BOLD,
    FAILURE_ICON,
    format_bytes,
    format_record,
    render_snapshot,
    run_dashboard,
)
from freight.migration.jobs import JobState


class TestFormatBytes:
    """format_bytes のテスト"""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, "-"),
            (0, "0B"),
            (1023, "1023B"),
            (1024, "1.0KB"),
            (3 * 1024**3, "3.0GB"),
            (5 * 1024**5, "5120.0TB"),
        ],
    )
    def test_format(self, value, expected):
        assert format_bytes(value) == expected


class TestFormatRecord:
    """format_record のテスト"""

    def test_running_worker(self):
        """実行中Workerの1行表示"""
        record = WorkerStatusRecord(
            tool="scan",
            directory="a",
            status="running",
            last_message="walking",
            bytes_transferred=2048,
            host="node01",
            pid=42,
        )

        line = format_record(record)

        assert line == "▶️  scan:a running [2.0KB] node01:42 walking"

    def test_failed_and_disconnected(self):
        """未知のステータスは失敗アイコン、切断も表示する"""
        record = WorkerStatusRecord(
            tool="migrate", directory="b", status="error", connected=False
        )

        line = format_record(record)

        assert line.startswith(FAILURE_ICON)
        assert "(disconnected)" in line

    def test_color(self):
        """color=True でエスケープシーケンスを含む"""
        record = WorkerStatusRecord(tool="scan", directory="a", status="ok")

        assert BOLD in format_record(record, color=True)
        assert BOLD not in format_record(record)


class TestRenderSnapshot:
    """render_snapshot のテスト"""

    def test_sorted_workers_and_job_summary(self):
        """Worker はID順、ジョブは状態ごとの件数"""
        snapshot = {
            WorkerIdentity("scan", "b"): WorkerStatusRecord("scan", "b", "ok"),
            WorkerIdentity("migrate", "a"): WorkerStatusRecord("migrate", "a", "running"),
        }
        jobs = {"a": JobState.MIGRATING, "b": JobState.MIGRATING, "c": JobState.SCAN_FAILED}

        lines = render_snapshot(snapshot, jobs).splitlines()

        assert lines[0] == "Workers: 2"
        assert "migrate:a" in lines[1]
        assert "scan:b" in lines[2]
        assert lines[3] == "Jobs: 3 (migrating=2, scan_failed=1)"

    def test_empty(self):
        """空のスナップショット"""
        assert render_snapshot({}, {}) == "Workers: 0\nJobs: 0"
        assert render_snapshot({}) == "Workers: 0"


class TestRunDashboard:
    """run_dashboard のテスト"""

    @pytest.mark.asyncio
    async def test_prints_until_cancelled(self):
        """キャンセルされるまで定期的に出力する"""
        # Arrange
        registry = WorkerRegistry()
        await registry.apply(WorkerIdentity("scan", "a"), StartMessage(tool="scan", directory="a"))
        stream = io.StringIO()

        # Act
        task = asyncio.create_task(
            run_dashboard(
                registry, 0.01, jobs_provider=lambda: {"a": JobState.SCANNING}, stream=stream
            )
        )
        await asyncio.sleep(0.05)
        await registry.apply(
            WorkerIdentity("scan", "a"), StopMessage(tool="scan", directory="a", status="ok")
        )
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        # Assert
        output = stream.getvalue()
        assert output.count("Workers: 1") >= 2
        assert "scan:a running" in output
        assert "scan:a ok" in output
        assert "Jobs: 1 (scanning=1)" in output
