"""Freight - NFS移行スイート オーケストレータ

scan / migrate ツールプロセスの起動と、制御プレーン（Unixソケット）経由の
ステータス集約を担うコーディネーションデーモン。
"""

__version__ = "0.1.0"
