import asyncio

import pytest

from nda_state import KeyedLocks, MemberRegistry, PendingChallenge, PendingTable


class TestMemberRegistry:
    def test_add_contains_discard(self):
        reg = MemberRegistry()
        reg.add(100, 7)
        reg.add(100, 7)
        reg.add(200, 7)
        assert reg.contains(100, 7)
        assert not reg.contains(100, 8)
        assert reg.count() == 2
        assert reg.discard(100, 7) is True
        assert reg.discard(100, 7) is False
        assert not reg.contains(100, 7)
        assert reg.contains(200, 7)

    def test_empty_chat_is_dropped(self):
        reg = MemberRegistry()
        reg.add(100, 7)
        reg.discard(100, 7)
        assert reg.count() == 0
        assert 100 not in reg._passed


class TestPendingTable:
    def test_one_entry_per_key(self):
        table = PendingTable()
        table.add(PendingChallenge(chat_id=100, user_id=7))
        with pytest.raises(KeyError):
            table.add(PendingChallenge(chat_id=100, user_id=7))
        assert len(table) == 1
        assert table.get(100, 7) is not None

    @pytest.mark.asyncio
    async def test_pop_cancels_deadline(self):
        table = PendingTable()
        task = asyncio.create_task(asyncio.sleep(60))
        table.add(PendingChallenge(chat_id=100, user_id=7, message_id=5, deadline=task))
        pc = table.pop(100, 7)
        await asyncio.sleep(0.01)
        assert pc.message_id == 5
        assert pc.deadline is None
        assert task.cancelled()
        assert table.pop(100, 7) is None

    @pytest.mark.asyncio
    async def test_pop_can_keep_deadline(self):
        table = PendingTable()
        task = asyncio.create_task(asyncio.sleep(60))
        table.add(PendingChallenge(chat_id=100, user_id=7, deadline=task))
        pc = table.pop(100, 7, keep_deadline=True)
        await asyncio.sleep(0.01)
        assert pc.deadline is task
        assert not task.done()
        assert len(table) == 0
        task.cancel()

    @pytest.mark.asyncio
    async def test_pop_from_own_deadline_does_not_cancel_itself(self):
        table = PendingTable()

        async def deadline():
            await asyncio.sleep(0)
            table.pop(100, 7)
            return "done"

        task = asyncio.create_task(deadline())
        table.add(PendingChallenge(chat_id=100, user_id=7, deadline=task))
        assert await task == "done"
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_clear(self):
        table = PendingTable()
        tasks = [asyncio.create_task(asyncio.sleep(60)) for _ in range(3)]
        for uid, t in enumerate(tasks):
            table.add(PendingChallenge(chat_id=100, user_id=uid, deadline=t))
        assert table.clear() == 3
        await asyncio.sleep(0.01)
        assert all(t.cancelled() for t in tasks)


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_same_key_is_serialised(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold(100, 7):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_interleave(self):
        locks = KeyedLocks()
        order = []

        async def worker(uid):
            async with locks.hold(100, uid):
                order.append(f"{uid}-in")
                await asyncio.sleep(0.01)
                order.append(f"{uid}-out")

        await asyncio.gather(worker(7), worker(8))
        assert order[:2] == ["7-in", "8-in"]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_releases_slot(self):
        locks = KeyedLocks()
        async with locks.hold(100, 7):
            waiter = asyncio.create_task(locks.hold(100, 7).__aenter__())
            await asyncio.sleep(0)
            waiter.cancel()
            await asyncio.sleep(0)
        assert waiter.cancelled()
        assert len(locks) == 0
