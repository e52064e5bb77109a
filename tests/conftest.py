"""Freight テスト設定"""

import shutil
import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def socket_path():
    """テスト用の制御プレーンソケットパス

    Unixソケットのパス長制限があるため tmp_path ではなく短いパスを使う。
    """
    base = Path(tempfile.mkdtemp(prefix="fr"))
    yield base / "ctl.sock"
    shutil.rmtree(base, ignore_errors=True)


@pytest.fixture
def source_root(tmp_path):
    """a, b と隠しディレクトリ .cache を持つ移行元ルート"""
    root = tmp_path / "source"
    for name in ("a", "b", ".cache"):
        (root / name).mkdir(parents=True)
    (root / "README.txt").write_text("not a directory")
    return root


@pytest.fixture
def dest_root(tmp_path):
    """移行先ルート"""
    root = tmp_path / "dest"
    root.mkdir()
    return root
