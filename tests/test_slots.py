"""Tests for the DispatchSlots pool."""

import asyncio
import unittest

from tablecrawl.slots import DispatchSlots


class TestDispatchSlots(unittest.IsolatedAsyncioTestCase):
    """Verify the concurrency ceiling and shutdown behaviour."""

    async def test_acquire_blocks_at_limit(self):
        slots = DispatchSlots(1)
        self.assertTrue(await slots.acquire())
        waiter = asyncio.ensure_future(slots.acquire())
        await asyncio.sleep(0.01)
        self.assertFalse(waiter.done())
        await slots.release()
        self.assertTrue(await waiter)
        self.assertEqual(slots.active, 1)

    async def test_stop_refuses_new_and_wakes_waiters(self):
        slots = DispatchSlots(1)
        await slots.acquire()
        waiter = asyncio.ensure_future(slots.acquire())
        await asyncio.sleep(0.01)
        await slots.stop()
        self.assertFalse(await waiter)
        self.assertFalse(await slots.acquire())
        await slots.release()
        # Stopping is final; freed slots are not handed out again.
        self.assertFalse(await slots.acquire())
        self.assertEqual(slots.active, 0)

    async def test_wait_idle(self):
        slots = DispatchSlots(2)
        await slots.acquire()
        self.assertFalse(await slots.wait_idle(0.02))

        async def release_later():
            await asyncio.sleep(0.02)
            await slots.release()

        asyncio.ensure_future(release_later())
        self.assertTrue(await slots.wait_idle(1.0))


if __name__ == "__main__":
    unittest.main()
