import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from reelbox.db import ContentStore
from reelbox.errors import ForwardingError, MalformedIdentifier
from reelbox.identifiers import channel_message_link, looks_like_episode_id, parse_episode_id
from reelbox.models import ContentKind, UploadStatus
from reelbox.services.captions import build_episode_caption, build_movie_caption
from reelbox.services.forwarder import ChannelForwarder

logger = logging.getLogger("reelbox.upload_queue")


@dataclass(frozen=True)
class QueueStatus:
    pending_count: int
    is_processing: bool
    current_upload: str | None
    head_id: str | None
    next_check: datetime | None

    def as_dict(self) -> dict:
        return {
            "queueSize": self.pending_count,
            "processing": self.is_processing,
            "currentUpload": self.current_upload,
            "nextCheck": self.next_check.isoformat() if self.next_check else None,
        }


class UploadQueue:
    """Single-worker FIFO that forwards registered content into storage channels.

    At most one forward is in flight at any time. Each dequeued id gets one
    upload attempt; transient transport failures are retried inside that
    attempt, everything else marks the item failed until it is enqueued again.
    """

    def __init__(
        self,
        store: ContentStore,
        forwarder: ChannelForwarder,
        *,
        idle_seconds: float = 5,
        cooldown_seconds: float = 1,
        forward_timeout_seconds: float = 300,
        max_attempts: int = 3,
        backoff_seconds: float = 10,
    ) -> None:
        self._store = store
        self._forwarder = forwarder
        self._idle_seconds = idle_seconds
        self._cooldown_seconds = cooldown_seconds
        self._forward_timeout_seconds = forward_timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds

        self._pending: deque[str] = deque()
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._current: str | None = None
        self._next_check: datetime | None = None
        self._task: asyncio.Task | None = None

    async def enqueue(self, content_id: str) -> bool:
        async with self._lock:
            if content_id in self._pending:
                logger.info(
                    "already queued",
                    extra={"action": "upload_enqueue_duplicate", "content_id": content_id},
                )
                return False
            self._pending.append(content_id)
            queue_size = len(self._pending)
        self._wakeup.set()
        logger.info(
            "upload queued",
            extra={
                "action": "upload_enqueued",
                "content_id": content_id,
                "queue_size": queue_size,
            },
        )
        return True

    def status(self) -> QueueStatus:
        return QueueStatus(
            pending_count=len(self._pending),
            is_processing=self._current is not None,
            current_upload=self._current,
            head_id=self._pending[0] if self._pending else None,
            next_check=self._next_check,
        )

    async def restore(self) -> int:
        # Only call before start(); a running worker's item is also in processing.
        interrupted = await self._store.requeue_interrupted()
        if interrupted:
            logger.warning(
                "interrupted uploads requeued",
                extra={"action": "upload_requeue_interrupted", "count": interrupted},
            )
        restored = 0
        for content_id in await self._store.list_pending_ids():
            if await self.enqueue(content_id):
                restored += 1
        logger.info("pending uploads restored", extra={"action": "upload_restore", "count": restored})
        return restored

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="upload-queue")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run(self) -> None:
        while True:
            content_id = await self._dequeue()
            if content_id is None:
                await self._wait_for_work(self._idle_seconds)
                continue
            self._current = content_id
            try:
                await self.process(content_id)
            except Exception:
                logger.exception(
                    "upload worker error",
                    extra={"action": "upload_worker_error", "content_id": content_id},
                )
            finally:
                self._current = None
            self._next_check = _utcnow() + timedelta(seconds=self._cooldown_seconds)
            await asyncio.sleep(self._cooldown_seconds)

    async def process(self, content_id: str) -> None:
        kind = await self._route(content_id)
        if kind == ContentKind.EPISODE.value:
            await self._upload_episode(content_id)
        elif kind == ContentKind.MOVIE.value:
            await self._upload_movie(content_id)
        else:
            logger.warning(
                "id has no upload state",
                extra={"action": "upload_skip_kind", "content_id": content_id, "kind": kind},
            )

    async def _dequeue(self) -> str | None:
        async with self._lock:
            self._wakeup.clear()
            if not self._pending:
                return None
            return self._pending.popleft()

    async def _wait_for_work(self, seconds: float) -> None:
        self._next_check = _utcnow() + timedelta(seconds=seconds)
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)

    async def _route(self, content_id: str) -> str:
        kind = await self._store.find_kind(content_id)
        if kind is not None:
            return kind
        if looks_like_episode_id(content_id):
            return ContentKind.EPISODE.value
        return ContentKind.MOVIE.value

    async def _upload_movie(self, content_id: str) -> None:
        kind = ContentKind.MOVIE.value
        movie = await self._store.find_movie(content_id)
        if movie is None:
            logger.warning("movie not found", extra={"action": "upload_not_found", "content_id": content_id})
            return
        if movie.upload_status == UploadStatus.COMPLETED.value:
            logger.info("already uploaded", extra={"action": "upload_skip_done", "content_id": content_id})
            return
        if not await self._store.mark_processing(kind, content_id):
            logger.info(
                "upload not claimable",
                extra={
                    "action": "upload_skip_status",
                    "content_id": content_id,
                    "status": movie.upload_status,
                },
            )
            return
        try:
            message_id = await self._forward(
                content_id,
                movie.file_id,
                movie.channel_id,
                build_movie_caption(movie),
            )
        except Exception as exc:
            await self._fail(kind, content_id, exc)
            return
        await self._store.mark_completed(kind, content_id, message_id)
        logger.info(
            "upload success",
            extra={
                "action": "upload_success",
                "content_id": content_id,
                "channel_id": movie.channel_id,
                "message_id": message_id,
            },
        )

    async def _upload_episode(self, content_id: str) -> None:
        kind = ContentKind.EPISODE.value
        try:
            key = parse_episode_id(content_id)
        except MalformedIdentifier as exc:
            logger.warning(
                "malformed episode id",
                extra={"action": "upload_malformed_id", "content_id": content_id, "reason": exc.reason},
            )
            return
        episode = await self._store.find_episode_at(
            key.series_id,
            key.season_number,
            key.episode_number,
        )
        if episode is None:
            logger.warning("episode not found", extra={"action": "upload_not_found", "content_id": content_id})
            return
        if episode.stored_message_id and episode.upload_status == UploadStatus.COMPLETED.value:
            logger.info("already uploaded", extra={"action": "upload_skip_done", "content_id": content_id})
            return
        if not await self._store.mark_processing(kind, episode.content_id):
            logger.info(
                "upload not claimable",
                extra={
                    "action": "upload_skip_status",
                    "content_id": content_id,
                    "status": episode.upload_status,
                },
            )
            return
        try:
            message_id = await self._forward(
                content_id,
                episode.file_id,
                episode.channel_id,
                build_episode_caption(episode),
            )
        except Exception as exc:
            await self._fail(kind, episode.content_id, exc)
            return
        link = channel_message_link(episode.channel_id, message_id)
        await self._store.mark_completed(kind, episode.content_id, message_id, link=link)
        logger.info(
            "upload success",
            extra={
                "action": "upload_success",
                "content_id": content_id,
                "channel_id": episode.channel_id,
                "message_id": message_id,
                "link": link,
            },
        )

    async def _forward(self, content_id: str, file_id: str, channel_id: int, caption: str) -> int:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(
                    self._forwarder.forward(file_id, channel_id, caption),
                    timeout=self._forward_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = ForwardingError(
                    f"forward timed out after {self._forward_timeout_seconds}s",
                    code="timeout",
                    retryable=True,
                )
            except ForwardingError as exc:
                error = exc
            if not error.retryable or attempt >= self._max_attempts:
                raise error
            backoff = self._backoff_seconds * attempt
            logger.warning(
                "forward error, retrying",
                extra={
                    "action": "upload_retry",
                    "content_id": content_id,
                    "attempt": attempt,
                    "backoff": backoff,
                    "error_code": error.code,
                },
            )
            await asyncio.sleep(backoff)

    async def _fail(self, kind: str, content_id: str, exc: Exception) -> None:
        if isinstance(exc, ForwardingError):
            logger.warning(
                "upload failed",
                extra={
                    "action": "upload_failed",
                    "content_id": content_id,
                    "error_code": exc.code,
                    "error": str(exc),
                },
            )
        else:
            logger.error(
                "upload failed",
                exc_info=exc,
                extra={"action": "upload_failed", "content_id": content_id, "error": str(exc)},
            )
        await self._store.mark_failed(kind, content_id, str(exc))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
