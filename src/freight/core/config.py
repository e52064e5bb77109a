"""Freight 設定管理モジュール

Pydantic Settingsを使用した型安全な設定管理。
<source>/.freight/config.yaml と環境変数から設定を読み込む。
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# プロジェクトディレクトリ（移行元ルート直下。隠しディレクトリのため移行対象にならない）
PROJECT_DIR_NAME = ".freight"
CONFIG_FILE_NAME = "config.yaml"
ROOT_MARKER_NAME = ".freight-root"

DEFAULT_SOCKET_PATH = "/tmp/freight-daemon.sock"
PLACEHOLDER_DESTINATION = "/path/to/destination"


class Thresholds(BaseModel):
    """ツール向けしきい値"""

    large_directory_size: str = Field(default="3GB", description="大規模ディレクトリ判定サイズ")
    parallel_workers: int = Field(default=5, ge=1, description="ツール側の並列度")


class MigrationConfig(BaseModel):
    """移行設定"""

    source_path: Path = Field(default=Path("."), description="移行元ルート")
    dest_path: Path = Field(default=Path(PLACEHOLDER_DESTINATION), description="移行先ルート")
    thresholds: Thresholds = Field(default_factory=Thresholds)
    rsync_flags: str = Field(default="-avxHAX --numeric-ids --compress")
    retry_attempts: int = Field(
        default=3, ge=0, description="ツール内部のリトライ回数（コーディネータは再試行しない）"
    )


class DaemonConfig(BaseModel):
    """コーディネータデーモン設定"""

    socket_path: Path = Field(default=Path(DEFAULT_SOCKET_PATH), description="制御プレーンソケット")
    bus_capacity: int = Field(default=1000, ge=1, description="購読者ごとの未読保持上限")
    job_timeout_seconds: float | None = Field(
        default=None, gt=0, description="フェーズごとの期限（未設定時は無期限）"
    )
    strict_directory: bool = Field(
        default=False, description="dir を持たないWorkerメッセージをプロトコルエラーにする"
    )
    socket_retry_interval: int = Field(default=10, ge=1, description="ツール側の再接続間隔秒")


class ToolsConfig(BaseModel):
    """外部ツールのコマンド（argvプレフィックス）"""

    scan_command: list[str] = Field(default_factory=lambda: ["freight-scan"], min_length=1)
    migrate_command: list[str] = Field(default_factory=lambda: ["freight-migrate"], min_length=1)


class LoggingConfig(BaseModel):
    """ロギング設定"""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class FreightSettings(BaseSettings):
    """Freight全体設定

    設定の優先順位:
    1. YAMLファイル（コンストラクタ引数）
    2. 環境変数 (FREIGHT_DAEMON__SOCKET_PATH など)
    3. デフォルト値
    """

    model_config = SettingsConfigDict(
        env_prefix="FREIGHT_",
        env_nested_delimiter="__",
    )

    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, config_path: Path | str | None) -> FreightSettings:
        """YAMLファイルから設定を読み込む

        Args:
            config_path: 設定ファイルパス。存在しない場合はデフォルト値

        Returns:
            FreightSettings インスタンス
        """
        if config_path and Path(config_path).exists():
            with open(config_path, encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f) or {}
            return cls(**yaml_config)

        return cls()

    def save_yaml(self, config_path: Path | str) -> None:
        """YAMLファイルに保存する（親ディレクトリは作成）"""
        path = Path(config_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                self.model_dump(mode="json"),
                f,
                sort_keys=False,
                allow_unicode=True,
            )

    @classmethod
    def load_or_create(cls, source: Path | str, dest: Path | str) -> FreightSettings:
        """移行元の設定を読み込む。なければ指定パスで作成して保存する"""
        config_path = config_path_for(source)
        if config_path.exists():
            return cls.from_yaml(config_path)

        settings = cls(migration=MigrationConfig(source_path=Path(source), dest_path=Path(dest)))
        settings.save_yaml(config_path)
        return settings

    def project_dir(self) -> Path:
        """プロジェクトディレクトリ (<source>/.freight)"""
        return self.migration.source_path / PROJECT_DIR_NAME


def config_path_for(source: Path | str) -> Path:
    """移行元ルートに対応する設定ファイルパス"""
    return Path(source) / PROJECT_DIR_NAME / CONFIG_FILE_NAME


def init_project(source: Path | str) -> Path:
    """移行元ルートにプロジェクトを初期化する

    .freight ディレクトリ、ルートマーカー、プレースホルダー移行先の
    設定ファイルを作成する。

    Returns:
        作成した設定ファイルのパス
    """
    project_dir = Path(source) / PROJECT_DIR_NAME
    project_dir.mkdir(parents=True, exist_ok=True)
    (project_dir / ROOT_MARKER_NAME).touch()

    settings = FreightSettings(
        migration=MigrationConfig(
            source_path=Path(source),
            dest_path=Path(PLACEHOLDER_DESTINATION),
        )
    )
    config_path = project_dir / CONFIG_FILE_NAME
    settings.save_yaml(config_path)
    return config_path
