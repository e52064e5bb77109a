"""ステータスダッシュボード

WorkerRegistry のスナップショットを人間可読なテキストに整形する。
状態は一切変更しない純粋なコンシューマー。
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Mapping
from typing import TextIO

from .core.protocol import WorkerIdentity
from .core.registry import WorkerRegistry, WorkerStatusRecord
from .migration.jobs import JobState

STATUS_ICONS: dict[str, str] = {
    "unknown": "❔",
    "connected": "🔌",
    "running": "▶️ ",
    "ok": "✅",
    "completed": "✅",
}
FAILURE_ICON = "❌"

RESET = "\033[0m"
DIM = "\033[2m"
BOLD = "\033[1m"


def format_bytes(value: int | None) -> str:
    """バイト数を短縮表記にする"""
    if value is None:
        return "-"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{value}B"  # pragma: no cover


def format_record(record: WorkerStatusRecord, *, color: bool = False) -> str:
    """1Workerを1行にフォーマットする"""
    icon = STATUS_ICONS.get(record.status, FAILURE_ICON)
    link = "" if record.connected else " (disconnected)"
    origin = f" {record.host}:{record.pid}" if record.host else ""
    message = f" {record.last_message}" if record.last_message else ""
    name = f"{record.tool}:{record.directory}"
    if color:
        name = f"{BOLD}{name}{RESET}"
        link = f"{DIM}{link}{RESET}" if link else ""
    return (
        f"{icon} {name} {record.status}{link} "
        f"[{format_bytes(record.bytes_transferred)}]{origin}{message}"
    )


def render_snapshot(
    snapshot: Mapping[WorkerIdentity, WorkerStatusRecord],
    jobs: Mapping[str, JobState] | None = None,
    *,
    color: bool = False,
) -> str:
    """スナップショット全体を複数行テキストにする"""
    lines = [f"Workers: {len(snapshot)}"]
    for identity in sorted(snapshot):
        lines.append("  " + format_record(snapshot[identity], color=color))

    if jobs is not None:
        counts: dict[str, int] = {}
        for state in jobs.values():
            counts[state] = counts.get(state, 0) + 1
        summary = ", ".join(f"{state}={count}" for state, count in sorted(counts.items()))
        lines.append(f"Jobs: {len(jobs)} ({summary})" if summary else "Jobs: 0")

    return "\n".join(lines)


async def run_dashboard(
    registry: WorkerRegistry,
    interval: float = 2.0,
    *,
    jobs_provider=None,
    stream: TextIO | None = None,
) -> None:
    """一定間隔でスナップショットを出力し続ける（キャンセルで終了）"""
    out = stream or sys.stdout
    color = out.isatty()
    while True:
        snapshot = await registry.snapshot()
        jobs = jobs_provider() if jobs_provider else None
        print(render_snapshot(snapshot, jobs, color=color), file=out)
        print("─" * 60, file=out, flush=True)
        await asyncio.sleep(interval)
