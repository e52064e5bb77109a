"""移行ワークフロー

- Jobs: ディレクトリ単位のジョブ状態とWorkerハンドル
- Supervisor: 外部ツールプロセスの起動と終了監視
- Orchestrator: scan -> migrate のフェーズ状態機械
"""

from .jobs import (
    MIGRATE_TOOL,
    SCAN_TOOL,
    TERMINAL_STATES,
    JobState,
    ManagedWorker,
    MigrationJob,
    WorkerLifecycle,
)
from .orchestrator import DiscoveryError, MigrationOrchestrator
from .supervisor import ProcessExit, ProcessSupervisor, SpawnError

__all__ = [
    "MIGRATE_TOOL",
    "SCAN_TOOL",
    "TERMINAL_STATES",
    "DiscoveryError",
    "JobState",
    "ManagedWorker",
    "MigrationJob",
    "MigrationOrchestrator",
    "ProcessExit",
    "ProcessSupervisor",
    "SpawnError",
    "WorkerLifecycle",
]
