import asyncio
import unittest

from reelbox.errors import ForwardingError
from reelbox.identifiers import channel_message_link
from reelbox.models import UploadStatus
from reelbox.workers.upload_queue import UploadQueue

from support import MOVIES_CHANNEL, WEBSERIES_CHANNEL, add_demo_series, make_store


class FakeForwarder:
    def __init__(self, *, errors: list[Exception] | None = None, delay: float = 0.01) -> None:
        self.errors = list(errors or [])
        self.delay = delay
        self.calls: list[tuple[str, int, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def forward(self, file_ref: str, target_channel: int, caption: str = "") -> int:
        self.calls.append((file_ref, target_channel, caption))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.errors:
                raise self.errors.pop(0)
            return 1000 + len(self.calls)
        finally:
            self.in_flight -= 1


class UploadQueueTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.engine, self.store = await make_store()

    async def asyncTearDown(self) -> None:
        await self.engine.dispose()

    def _queue(self, forwarder: FakeForwarder) -> UploadQueue:
        return UploadQueue(
            self.store,
            forwarder,
            idle_seconds=0.01,
            cooldown_seconds=0,
            forward_timeout_seconds=1,
            max_attempts=3,
            backoff_seconds=0,
        )

    async def _add_movie(self, content_id: str) -> None:
        await self.store.add_movie(
            content_id=content_id,
            title=content_id,
            year=2010,
            file_id=f"file-{content_id}",
            channel_id=MOVIES_CHANNEL,
        )

    async def test_enqueue_is_deduplicated(self) -> None:
        queue = self._queue(FakeForwarder())
        self.assertTrue(await queue.enqueue("mo_a_2010_00001"))
        self.assertFalse(await queue.enqueue("mo_a_2010_00001"))
        status = queue.status()
        self.assertEqual(status.pending_count, 1)
        self.assertEqual(status.head_id, "mo_a_2010_00001")
        self.assertFalse(status.is_processing)
        self.assertEqual(status.as_dict()["queueSize"], 1)

    async def test_worker_runs_fifo_one_at_a_time(self) -> None:
        ids = ["mo_a_2010_00001", "mo_b_2010_00002", "mo_c_2010_00003"]
        for content_id in ids:
            await self._add_movie(content_id)
        forwarder = FakeForwarder()
        queue = self._queue(forwarder)
        for content_id in ids:
            await queue.enqueue(content_id)
        queue.start()

        async def drained() -> None:
            while len(forwarder.calls) < 3 or queue.status().is_processing:
                await asyncio.sleep(0.01)

        try:
            await asyncio.wait_for(drained(), timeout=5)
        finally:
            await queue.stop()

        self.assertEqual([call[0] for call in forwarder.calls], [f"file-{content_id}" for content_id in ids])
        self.assertEqual(forwarder.max_in_flight, 1)
        for content_id in ids:
            movie = await self.store.find_movie(content_id)
            self.assertEqual(movie.upload_status, UploadStatus.COMPLETED.value)
            self.assertIsNotNone(movie.stored_message_id)

    async def test_rejection_marks_failed_without_retry(self) -> None:
        await self._add_movie("mo_a_2010_00001")
        forwarder = FakeForwarder(
            errors=[ForwardingError("Telegram API error: Bad Request: chat not found", code="CHAT_NOT_FOUND")]
        )
        await self._queue(forwarder).process("mo_a_2010_00001")

        movie = await self.store.find_movie("mo_a_2010_00001")
        self.assertEqual(movie.upload_status, UploadStatus.FAILED.value)
        self.assertEqual(movie.upload_error, "Telegram API error: Bad Request: chat not found")
        self.assertEqual(len(forwarder.calls), 1)

    async def test_failed_item_can_be_retried(self) -> None:
        await self._add_movie("mo_a_2010_00001")
        forwarder = FakeForwarder(errors=[ForwardingError("Telegram API error: boom")])
        queue = self._queue(forwarder)
        await queue.process("mo_a_2010_00001")
        await queue.process("mo_a_2010_00001")

        movie = await self.store.find_movie("mo_a_2010_00001")
        self.assertEqual(movie.upload_status, UploadStatus.COMPLETED.value)
        self.assertIsNone(movie.upload_error)

    async def test_transient_errors_are_retried(self) -> None:
        await self._add_movie("mo_a_2010_00001")
        forwarder = FakeForwarder(errors=[ForwardingError("HTTP 502", code="HTTP_502", retryable=True)])
        await self._queue(forwarder).process("mo_a_2010_00001")

        movie = await self.store.find_movie("mo_a_2010_00001")
        self.assertEqual(movie.upload_status, UploadStatus.COMPLETED.value)
        self.assertEqual(len(forwarder.calls), 2)

    async def test_retries_are_bounded(self) -> None:
        await self._add_movie("mo_a_2010_00001")
        errors = [ForwardingError("HTTP 502", code="HTTP_502", retryable=True) for _ in range(5)]
        forwarder = FakeForwarder(errors=errors)
        await self._queue(forwarder).process("mo_a_2010_00001")

        movie = await self.store.find_movie("mo_a_2010_00001")
        self.assertEqual(movie.upload_status, UploadStatus.FAILED.value)
        self.assertEqual(len(forwarder.calls), 3)

    async def test_forward_timeout_marks_failed(self) -> None:
        await self._add_movie("mo_a_2010_00001")
        forwarder = FakeForwarder(delay=1)
        queue = UploadQueue(
            self.store,
            forwarder,
            forward_timeout_seconds=0.05,
            max_attempts=1,
            backoff_seconds=0,
        )
        await queue.process("mo_a_2010_00001")

        movie = await self.store.find_movie("mo_a_2010_00001")
        self.assertEqual(movie.upload_status, UploadStatus.FAILED.value)
        self.assertIn("timed out", movie.upload_error)

    async def test_completed_item_is_skipped(self) -> None:
        await self._add_movie("mo_a_2010_00001")
        forwarder = FakeForwarder()
        queue = self._queue(forwarder)
        await queue.process("mo_a_2010_00001")
        await queue.process("mo_a_2010_00001")
        self.assertEqual(len(forwarder.calls), 1)

    async def test_episode_upload_records_link(self) -> None:
        await add_demo_series(self.store)
        await self.store.add_episode(
            series_id="demo123",
            season_number=1,
            episode_number=2,
            file_id="file-ep2",
            title="Lies",
        )
        forwarder = FakeForwarder()
        await self._queue(forwarder).process("demo123_s01e02")

        episode = await self.store.find_episode("demo123_s01e02")
        self.assertEqual(episode.upload_status, UploadStatus.COMPLETED.value)
        self.assertEqual(episode.stored_link, channel_message_link(WEBSERIES_CHANNEL, episode.stored_message_id))
        file_ref, channel, caption = forwarder.calls[0]
        self.assertEqual((file_ref, channel), ("file-ep2", WEBSERIES_CHANNEL))
        self.assertIn("Episode 2: Lies", caption)

    async def test_unknown_id_is_ignored(self) -> None:
        forwarder = FakeForwarder()
        await self._queue(forwarder).process("does_not_exist")
        self.assertEqual(forwarder.calls, [])

    async def test_restore_enqueues_pending(self) -> None:
        await self._add_movie("mo_a_2010_00001")
        await self._add_movie("mo_b_2010_00002")
        await self.store.mark_processing("movie", "mo_b_2010_00002")
        await self.store.mark_completed("movie", "mo_b_2010_00002", 12)
        queue = self._queue(FakeForwarder())
        self.assertEqual(await queue.restore(), 1)
        self.assertEqual(queue.status().head_id, "mo_a_2010_00001")

    async def test_upload_interrupted_by_stop_is_restored(self) -> None:
        await self._add_movie("mo_a_2010_00001")
        slow = FakeForwarder(delay=5)
        queue = self._queue(slow)
        await queue.enqueue("mo_a_2010_00001")
        queue.start()

        async def forwarding() -> None:
            while not slow.calls:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(forwarding(), timeout=5)
        await queue.stop()
        movie = await self.store.find_movie("mo_a_2010_00001")
        self.assertEqual(movie.upload_status, UploadStatus.PROCESSING.value)

        forwarder = FakeForwarder()
        restarted = self._queue(forwarder)
        self.assertEqual(await restarted.restore(), 1)
        await restarted.process("mo_a_2010_00001")

        movie = await self.store.find_movie("mo_a_2010_00001")
        self.assertEqual(movie.upload_status, UploadStatus.COMPLETED.value)
        self.assertEqual(len(forwarder.calls), 1)

    async def test_concurrent_enqueues_keep_fifo_single_flight(self) -> None:
        ids = [f"mo_m{index}_2010_0000{index}" for index in range(1, 6)]
        for content_id in ids:
            await self._add_movie(content_id)
        forwarder = FakeForwarder()
        queue = self._queue(forwarder)
        queue.start()
        try:
            accepted = await asyncio.gather(*(queue.enqueue(content_id) for content_id in ids + ids))
            self.assertEqual(accepted.count(True), len(ids))

            async def drained() -> None:
                while (
                    len(forwarder.calls) < len(ids)
                    or queue.status().pending_count
                    or queue.status().is_processing
                ):
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(drained(), timeout=5)
        finally:
            await queue.stop()

        self.assertEqual([call[0] for call in forwarder.calls], [f"file-{content_id}" for content_id in ids])
        self.assertEqual(forwarder.max_in_flight, 1)
        for content_id in ids:
            movie = await self.store.find_movie(content_id)
            self.assertEqual(movie.upload_status, UploadStatus.COMPLETED.value)


if __name__ == "__main__":
    unittest.main()
