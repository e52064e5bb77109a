"""Freight CLI

コマンドラインインターフェース。
"""

import argparse
import logging
import sys
from pathlib import Path


def main():
    """メインエントリーポイント"""
    parser = argparse.ArgumentParser(
        description="Freight - NFS移行スイート オーケストレータ",
        prog="freight",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="ログレベル（省略時は設定ファイルの値）",
    )

    subparsers = parser.add_subparsers(dest="command", help="利用可能なコマンド")

    # init コマンド
    init_parser = subparsers.add_parser("init", help="移行元にプロジェクトを初期化")
    init_parser.add_argument("-s", "--source", help="移行元ディレクトリ（省略時はカレント）")

    # migrate コマンド
    migrate_parser = subparsers.add_parser("migrate", help="移行を開始")
    migrate_parser.add_argument("source", help="移行元ディレクトリ")
    migrate_parser.add_argument("dest", help="移行先ディレクトリ")
    migrate_parser.add_argument(
        "--config", help="設定ファイルパス（省略時は <source>/.freight/config.yaml）"
    )
    migrate_parser.add_argument(
        "--no-dashboard", action="store_true", help="ステータス表示を行わない"
    )
    migrate_parser.add_argument(
        "--interval", type=float, default=5.0, help="ステータス表示間隔（秒）"
    )

    # daemon コマンド
    daemon_parser = subparsers.add_parser("daemon", help="制御プレーンのみ起動")
    daemon_parser.add_argument("--socket", help="ソケットパス")
    daemon_parser.add_argument("--config", help="設定ファイルパス")

    # dashboard コマンド
    dashboard_parser = subparsers.add_parser(
        "dashboard", help="制御プレーンを起動し、Workerの状態を表示（移行は行わない）"
    )
    dashboard_parser.add_argument("--socket", help="ソケットパス")
    dashboard_parser.add_argument("--config", help="設定ファイルパス")
    dashboard_parser.add_argument(
        "--interval", type=float, default=2.0, help="ステータス表示間隔（秒）"
    )

    # send コマンド
    send_parser = subparsers.add_parser("send", help="稼働中のデーモンへ制御行を送信")
    send_parser.add_argument("lines", nargs="+", help="送信する行（例: 'START tool=scan dir=a'）")
    send_parser.add_argument("--socket", help="ソケットパス")

    args = parser.parse_args()

    if args.command == "init":
        run_init(args)
    elif args.command == "migrate":
        sys.exit(run_migrate(args))
    elif args.command == "daemon":
        sys.exit(run_daemon(args))
    elif args.command == "dashboard":
        sys.exit(run_dashboard(args))
    elif args.command == "send":
        sys.exit(run_send(args))
    else:
        parser.print_help()
        sys.exit(1)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_init(args):
    """プロジェクトを初期化"""
    from .core.config import init_project

    source = Path(args.source) if args.source else Path.cwd()
    config_path = init_project(source.resolve())

    print(f"✓ プロジェクトを初期化しました: {config_path.parent}")
    print(f"✓ 設定ファイル: {config_path}")
    print("\n次のステップ:")
    print("  1. 必要に応じて設定ファイルの tools / daemon を編集")
    print("  2. freight migrate <source> <dest>   # 移行を開始")


def run_migrate(args) -> int:
    """移行を実行（全ディレクトリが終端状態になるまで）"""
    import asyncio

    from .control_plane.listener import ListenerBusyError
    from .core.config import FreightSettings
    from .daemon import FreightDaemon
    from .migration.jobs import JobState
    from .migration.orchestrator import DiscoveryError

    if args.config:
        settings = FreightSettings.from_yaml(args.config)
        settings.migration.source_path = Path(args.source)
        settings.migration.dest_path = Path(args.dest)
    else:
        settings = FreightSettings.load_or_create(args.source, args.dest)
        dest = Path(args.dest)
        if settings.migration.dest_path != dest:
            print(
                f"⚠ 設定ファイルの移行先 {settings.migration.dest_path} を引数の {dest} で上書きします",
                file=sys.stderr,
            )
            settings.migration.dest_path = dest
    _configure_logging(args.log_level or settings.logging.level)

    print(f"🚚 移行開始: {settings.migration.source_path} -> {settings.migration.dest_path}")
    daemon = FreightDaemon(
        settings,
        migrate=True,
        dashboard_interval=None if args.no_dashboard else args.interval,
    )
    try:
        states = asyncio.run(daemon.run())
    except DiscoveryError as e:
        print(f"❌ ディレクトリ検出に失敗: {e}", file=sys.stderr)
        return 1
    except ListenerBusyError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    states = states or {}
    print("-" * 50)
    for name, state in sorted(states.items()):
        mark = "✅" if state == JobState.MIGRATE_OK else "❌"
        print(f"{mark} {name}: {state}")

    ok = sum(1 for s in states.values() if s == JobState.MIGRATE_OK)
    print(f"\n完了: {ok}/{len(states)}")
    return 0 if ok == len(states) else 1


def _run_listener_only(args, dashboard_interval: float | None) -> int:
    import asyncio

    from .control_plane.listener import ListenerBusyError
    from .core.config import FreightSettings
    from .daemon import FreightDaemon

    settings = FreightSettings.from_yaml(args.config)
    if args.socket:
        settings.daemon.socket_path = Path(args.socket)
    _configure_logging(args.log_level or settings.logging.level)

    daemon = FreightDaemon(settings, migrate=False, dashboard_interval=dashboard_interval)
    try:
        asyncio.run(daemon.run())
    except ListenerBusyError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    return 0


def run_daemon(args) -> int:
    """制御プレーンのみ起動（Ctrl+C で終了）"""
    return _run_listener_only(args, dashboard_interval=None)


def run_dashboard(args) -> int:
    """制御プレーンを起動し、ステータスを定期表示（Ctrl+C で終了）"""
    return _run_listener_only(args, dashboard_interval=args.interval)


def run_send(args) -> int:
    """制御行を送信"""
    import asyncio

    from .control_plane.client import ControlClient

    async def _send() -> None:
        async with ControlClient(args.socket) as client:
            for line in args.lines:
                await client.send_line(line)

    try:
        asyncio.run(_send())
    except OSError as e:
        print(f"❌ デーモンに接続できません: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    main()
