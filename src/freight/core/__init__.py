"""Freight Core モジュール

コーディネータの共有基盤を提供:
- Protocol: 制御プレーンのテキストプロトコル
- Registry: Workerステータスの共有テーブル
- StatusBus: ステータスイベントのファンアウト配信
- Config: 設定管理
"""

from .config import FreightSettings
from .protocol import (
    ControlMessage,
    HelloMessage,
    ProgressMessage,
    ProtocolError,
    StartMessage,
    StopMessage,
    WorkerIdentity,
    decode_line,
    encode_message,
)
from .registry import WorkerRegistry, WorkerStatusRecord
from .status_bus import StatusBus, Subscription

__all__ = [
    # Config
    "FreightSettings",
    # Protocol
    "ControlMessage",
    "HelloMessage",
    "StartMessage",
    "ProgressMessage",
    "StopMessage",
    "ProtocolError",
    "WorkerIdentity",
    "decode_line",
    "encode_message",
    # Registry
    "WorkerRegistry",
    "WorkerStatusRecord",
    # Bus
    "StatusBus",
    "Subscription",
]
