"""ステータスバス

接続ハンドラーがデコードしたメッセージを、オーケストレータや
ダッシュボードなど複数の購読者にファンアウト配信するバス。

購読者ごとに上限付きキューを持ち、溢れた場合は最も古い未読メッセージを
破棄する（at-most-once / ベストエフォート）。発行側は決してブロックしない。
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from .protocol import ControlMessage

logger = logging.getLogger(__name__)

# 購読者ごとの未読保持上限
DEFAULT_CAPACITY = 1000


class SubscriptionClosed(Exception):
    """クローズ済みの購読から読み取ろうとした"""


class Subscription:
    """1購読者分の上限付きキュー"""

    def __init__(self, bus: StatusBus, capacity: int, name: str = ""):
        self._bus = bus
        self._queue: deque[ControlMessage] = deque()
        self._capacity = capacity
        self._ready = asyncio.Event()
        self._closed = False
        self._overflowing = False
        self.name = name
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        """未読メッセージ数"""
        return len(self._queue)

    def _push(self, message: ControlMessage) -> None:
        if len(self._queue) >= self._capacity:
            # 最も古い未読を捨てる
            self._queue.popleft()
            self.dropped += 1
            if not self._overflowing:
                self._overflowing = True
                logger.warning(
                    "購読者 %s が追いついていないため古いメッセージを破棄 (上限=%d)",
                    self.name or "<anonymous>",
                    self._capacity,
                )
        self._queue.append(message)
        self._ready.set()

    def get_nowait(self) -> ControlMessage | None:
        """未読があれば取り出す（なければ None）"""
        if not self._queue:
            return None
        if len(self._queue) == 1:
            self._overflowing = False
        return self._queue.popleft()

    async def get(self) -> ControlMessage:
        """次のメッセージを待って取り出す

        Raises:
            SubscriptionClosed: 購読がクローズされ未読もない場合
        """
        while not self._queue:
            if self._closed:
                raise SubscriptionClosed(self.name)
            self._ready.clear()
            await self._ready.wait()
        message = self.get_nowait()
        assert message is not None
        return message

    def close(self) -> None:
        """購読を解除する（未読分は読み切れる）"""
        if self._closed:
            return
        self._closed = True
        self._bus.unsubscribe(self)
        self._ready.set()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ControlMessage:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration from None

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class StatusBus:
    """マルチプロデューサー / マルチコンシューマーのファンアウトバス

    購読者は購読開始以降に発行された全メッセージを受け取る。
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._subscribers: list[Subscription] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, name: str = "") -> Subscription:
        """購読を開始する"""
        subscription = Subscription(self, self._capacity, name)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """購読を解除する"""
        self._subscribers = [s for s in self._subscribers if s is not subscription]
        if not subscription.closed:
            subscription.close()

    def publish(self, message: ControlMessage) -> int:
        """全購読者にメッセージを配信する（ブロックしない）

        Returns:
            配信先の購読者数
        """
        for subscription in self._subscribers:
            subscription._push(message)
        return len(self._subscribers)

    def close(self) -> None:
        """全購読をクローズする"""
        for subscription in list(self._subscribers):
            subscription.close()
        self._subscribers.clear()
