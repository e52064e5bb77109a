"""ステータスバスのテスト"""

from __future__ import annotations

import asyncio

import pytest

from freight.core.protocol import ProgressMessage, StartMessage, StopMessage
from freight.core.status_bus import StatusBus, SubscriptionClosed


def _progress(i: int) -> ProgressMessage:
    return ProgressMessage(tool="scan", directory="a", bytes_transferred=i)


class TestStatusBusFanOut:
    """ファンアウト配信"""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_every_message(self):
        """全購読者が全メッセージを受け取る"""
        # Arrange
        bus = StatusBus()
        first = bus.subscribe("orchestrator")
        second = bus.subscribe("dashboard")
        messages = [StartMessage(tool="scan", directory="a"), _progress(1)]

        # Act
        for m in messages:
            bus.publish(m)

        # Assert
        assert [await first.get(), await first.get()] == messages
        assert [await second.get(), await second.get()] == messages

    @pytest.mark.asyncio
    async def test_late_subscriber_sees_only_later_messages(self):
        """購読開始前のメッセージは届かない"""
        bus = StatusBus()
        bus.publish(_progress(1))

        subscription = bus.subscribe()
        bus.publish(_progress(2))

        assert (await subscription.get()).bytes_transferred == 2
        assert subscription.get_nowait() is None

    def test_publish_without_subscribers(self):
        """購読者がいなくても発行できる"""
        bus = StatusBus()

        assert bus.publish(_progress(1)) == 0

    @pytest.mark.asyncio
    async def test_get_waits_for_publish(self):
        """get は発行を待つ"""
        bus = StatusBus()
        subscription = bus.subscribe()

        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        assert not waiter.done()

        bus.publish(StopMessage(tool="scan", directory="a", status="ok"))
        message = await asyncio.wait_for(waiter, timeout=1)

        assert message.status == "ok"


class TestStatusBusOverflow:
    """上限超過時の挙動"""

    @pytest.mark.asyncio
    async def test_drop_oldest(self):
        """溢れたら最も古い未読を破棄する"""
        # Arrange
        bus = StatusBus(capacity=3)
        subscription = bus.subscribe("slow")

        # Act
        for i in range(5):
            bus.publish(_progress(i))

        # Assert
        assert subscription.dropped == 2
        assert subscription.pending() == 3
        received = [(await subscription.get()).bytes_transferred for _ in range(3)]
        assert received == [2, 3, 4]

    def test_slow_subscriber_does_not_affect_others(self):
        """遅い購読者が他の購読者や発行者を止めない"""
        bus = StatusBus(capacity=2)
        slow = bus.subscribe("slow")
        fast = bus.subscribe("fast")

        for i in range(4):
            bus.publish(_progress(i))
            assert fast.get_nowait().bytes_transferred == i

        assert slow.dropped == 2
        assert fast.dropped == 0

    def test_default_capacity(self):
        """既定の上限は1000"""
        assert StatusBus().capacity == 1000

    def test_invalid_capacity(self):
        """上限は1以上"""
        with pytest.raises(ValueError):
            StatusBus(capacity=0)


class TestSubscriptionLifecycle:
    """購読の解除"""

    @pytest.mark.asyncio
    async def test_close_stops_delivery(self):
        """解除後は配信されない"""
        bus = StatusBus()
        subscription = bus.subscribe()

        subscription.close()
        delivered = bus.publish(_progress(1))

        assert delivered == 0
        assert bus.subscriber_count == 0
        with pytest.raises(SubscriptionClosed):
            await subscription.get()

    @pytest.mark.asyncio
    async def test_close_wakes_waiter(self):
        """待機中の get はクローズで解放される"""
        bus = StatusBus()
        subscription = bus.subscribe()
        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)

        bus.close()

        with pytest.raises(SubscriptionClosed):
            await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_async_iteration_drains_then_stops(self):
        """async for はクローズ後に未読を読み切って終了する"""
        bus = StatusBus()
        subscription = bus.subscribe()
        bus.publish(_progress(1))
        bus.publish(_progress(2))
        subscription.close()

        received = [m.bytes_transferred async for m in subscription]

        assert received == [1, 2]

    def test_context_manager_unsubscribes(self):
        """with ブロックを抜けると解除される"""
        bus = StatusBus()

        with bus.subscribe():
            assert bus.subscriber_count == 1

        assert bus.subscriber_count == 0
