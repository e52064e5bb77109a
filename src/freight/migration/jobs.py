"""移行ジョブとWorkerの状態型

ディレクトリごとに scan -> migrate の2フェーズを独立に進める。

    PENDING -> SCANNING -> SCAN_FAILED
                        -> SCAN_OK -> MIGRATING -> MIGRATE_FAILED
                                               -> MIGRATE_OK
    SCANNING / MIGRATING -> TIMED_OUT (期限設定時のみ)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from ulid import ULID

SCAN_TOOL = "scan"
MIGRATE_TOOL = "migrate"


class JobState(StrEnum):
    """ディレクトリ単位の移行状態"""

    PENDING = "pending"
    SCANNING = "scanning"
    SCAN_FAILED = "scan_failed"
    SCAN_OK = "scan_ok"
    MIGRATING = "migrating"
    MIGRATE_FAILED = "migrate_failed"
    MIGRATE_OK = "migrate_ok"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {
        JobState.SCAN_FAILED,
        JobState.MIGRATE_FAILED,
        JobState.MIGRATE_OK,
        JobState.TIMED_OUT,
    }
)

# Stop を待っているフェーズと、そのフェーズのツール
ACTIVE_PHASES = {
    JobState.SCANNING: SCAN_TOOL,
    JobState.MIGRATING: MIGRATE_TOOL,
}


class WorkerLifecycle(StrEnum):
    """オーケストレータが起動したWorkerの状態"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ManagedWorker:
    """オーケストレータ側のWorkerハンドル

    レジストリ（報告してきたWorker）とは独立した「起動したWorker」の記録。
    """

    tool: str
    directory: str
    state: WorkerLifecycle = WorkerLifecycle.PENDING
    pid: int | None = None
    launch_id: str = field(default_factory=lambda: str(ULID()))
    started_at: datetime | None = None


@dataclass
class MigrationJob:
    """1ディレクトリ分の移行ジョブ"""

    name: str
    source: Path
    destination: Path
    state: JobState = JobState.PENDING
    deadline: float | None = None
    history: list[JobState] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def awaiting_tool(self) -> str | None:
        """Stop を待っているツール名（待っていなければ None）"""
        return ACTIVE_PHASES.get(self.state)

    def advance(self, state: JobState) -> None:
        """状態を進め、履歴に残す"""
        self.history.append(self.state)
        self.state = state
