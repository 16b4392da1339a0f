import asyncio
import unittest

from devpulse.application.coalescer import RefreshCoalescer


class TestRefreshCoalescer(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_calls_share_one_task(self) -> None:
        coalescer = RefreshCoalescer()
        release = asyncio.Event()
        calls = []

        async def work():
            calls.append(1)
            await release.wait()
            return "done"

        first = asyncio.ensure_future(coalescer.run("alice", work))
        second = asyncio.ensure_future(coalescer.run("alice", work))
        await asyncio.sleep(0)
        self.assertTrue(coalescer.in_flight("alice"))

        release.set()
        results = await asyncio.gather(first, second)

        self.assertEqual(results, ["done", "done"])
        self.assertEqual(len(calls), 1)
        self.assertFalse(coalescer.in_flight("alice"))

    async def test_failures_are_shared_and_key_is_released(self) -> None:
        coalescer = RefreshCoalescer()

        async def boom():
            raise RuntimeError("upstream down")

        with self.assertRaises(RuntimeError):
            await coalescer.run("alice", boom)
        await asyncio.sleep(0)

        self.assertFalse(coalescer.in_flight("alice"))

    async def test_distinct_keys_run_independently(self) -> None:
        coalescer = RefreshCoalescer()
        calls = []

        async def work(key):
            calls.append(key)
            return key

        results = await asyncio.gather(
            coalescer.run("alice", lambda: work("alice")),
            coalescer.run("bob", lambda: work("bob")),
        )

        self.assertEqual(sorted(results), ["alice", "bob"])
        self.assertEqual(sorted(calls), ["alice", "bob"])
