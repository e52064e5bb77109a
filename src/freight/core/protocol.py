"""制御プレーン プロトコル

Workerプロセスからコーディネータへ送られる改行区切りテキストの
パースとシリアライズ。

    HELLO freight/0.1.0 host=node01 pid=1234
    START tool=scan dir=user
    PROGRESS tool=scan dir=user msg=scanning bytes=512
    STOP tool=scan dir=user status=ok bytes=1000 msg=done

先頭トークンでメッセージ種別を決定し、残りは順不同の key=value。
種別ごとに認識しないキーは無視する。
"""

from __future__ import annotations

import re
from typing import Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from .. import __version__

# ディレクトリ・ツール名が省略された場合のプレースホルダー
UNKNOWN = "unknown"

# Stop.status の成功値
STATUS_OK = "ok"

# HELLO の2トークン目（key=valueではないためデコード時は無視される）
PROTOCOL_AGENT = f"freight/{__version__}"

_UINT_RE = re.compile(r"^\d+$")


class ProtocolError(ValueError):
    """パースできない制御プレーン行"""

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


# =============================================================================
# メッセージ型（種別ごとに適用可能なフィールドだけを持つ）
# =============================================================================


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)


class HelloMessage(_Message):
    """接続開始時に一度だけ送られる発信元通知"""

    kind: Literal["HELLO"] = "HELLO"
    host: str | None = None
    pid: int | None = Field(default=None, ge=0)


class StartMessage(_Message):
    """Workerの作業開始"""

    kind: Literal["START"] = "START"
    tool: str = UNKNOWN
    directory: str | None = None


class ProgressMessage(_Message):
    """途中経過"""

    kind: Literal["PROGRESS"] = "PROGRESS"
    tool: str = UNKNOWN
    directory: str | None = None
    message: str | None = None
    bytes_transferred: int | None = Field(default=None, ge=0)


class StopMessage(_Message):
    """終了通知

    status が "ok" の場合のみ成功。それ以外（省略含む）は失敗。
    """

    kind: Literal["STOP"] = "STOP"
    tool: str = UNKNOWN
    directory: str | None = None
    status: str | None = None
    bytes_transferred: int | None = Field(default=None, ge=0)
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_OK


ControlMessage = HelloMessage | StartMessage | ProgressMessage | StopMessage

# 識別子を持つメッセージ
WorkerMessage = StartMessage | ProgressMessage | StopMessage


class WorkerIdentity(NamedTuple):
    """Workerの論理ID (tool, directory)"""

    tool: str
    directory: str

    @property
    def key(self) -> str:
        return f"{self.tool}:{self.directory}"

    @classmethod
    def of(cls, message: WorkerMessage) -> WorkerIdentity:
        """メッセージからIDを導出（ディレクトリ省略時はプレースホルダー）"""
        return cls(message.tool, message.directory or UNKNOWN)

    def __str__(self) -> str:
        return self.key


# =============================================================================
# デコード
# =============================================================================

# 種別ごとの 認識キー -> フィールド名
_FIELDS: dict[str, dict[str, str]] = {
    "HELLO": {"host": "host", "pid": "pid"},
    "START": {"tool": "tool", "dir": "directory"},
    "PROGRESS": {
        "tool": "tool",
        "dir": "directory",
        "msg": "message",
        "bytes": "bytes_transferred",
    },
    "STOP": {
        "tool": "tool",
        "dir": "directory",
        "status": "status",
        "bytes": "bytes_transferred",
        "msg": "message",
    },
}

_INT_FIELDS = frozenset({"pid", "bytes_transferred"})

_MODELS: dict[str, type[_Message]] = {
    "HELLO": HelloMessage,
    "START": StartMessage,
    "PROGRESS": ProgressMessage,
    "STOP": StopMessage,
}


def _parse_uint(value: str) -> int | None:
    """非負整数をパース。不正値は None（メッセージ全体は失敗させない）"""
    if _UINT_RE.match(value):
        return int(value)
    return None


def decode_line(line: str, *, strict_directory: bool = False) -> ControlMessage:
    """1行を ControlMessage にデコードする

    Args:
        line: 改行を含まない（または末尾改行付きの）テキスト行
        strict_directory: True の場合、dir を持たない START/PROGRESS/STOP を拒否する

    Returns:
        デコードされたメッセージ

    Raises:
        ProtocolError: 空行・未知の種別・（strict時）dir欠落
    """
    tokens = line.split()
    if not tokens:
        raise ProtocolError(line, "Empty message")

    kind = tokens[0]
    fields = _FIELDS.get(kind)
    if fields is None:
        raise ProtocolError(line, f"Unknown message type {kind}")

    values: dict[str, str | int] = {}
    for token in tokens[1:]:
        key, sep, raw = token.partition("=")
        if not sep or key not in fields or not raw:
            continue
        name = fields[key]
        if name in _INT_FIELDS:
            number = _parse_uint(raw)
            if number is None:
                values.pop(name, None)
            else:
                values[name] = number
        else:
            values[name] = raw

    if strict_directory and kind != "HELLO" and "directory" not in values:
        raise ProtocolError(line, f"{kind} without dir")

    return _MODELS[kind](**values)  # type: ignore[return-value]


# =============================================================================
# エンコード
# =============================================================================


def _token(value: str) -> str:
    # 空白はトークン区切りになるため置換する
    return "_".join(value.split())


def encode_message(message: ControlMessage) -> str:
    """メッセージを1行（改行なし）にシリアライズする"""
    parts: list[str] = [message.kind]
    if isinstance(message, HelloMessage):
        parts.append(PROTOCOL_AGENT)

    for key, name in _FIELDS[message.kind].items():
        value = getattr(message, name)
        if value is None:
            continue
        text = _token(str(value))
        if text:
            parts.append(f"{key}={text}")

    return " ".join(parts)
