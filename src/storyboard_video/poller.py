"""Background status polling for external video generation tasks.

The external API offers no callbacks, so each submitted task is polled on a
fixed interval until it reaches a terminal state or the polling ceiling is
hit. Tracking lives only in memory; ``resume`` rebuilds it from the job
records after a restart.
"""

import asyncio
import logging
import time
from collections.abc import Callable

from storyboard_video import db
from storyboard_video.config import settings
from storyboard_video.ledger import refund_once
from storyboard_video.video_client import FetchResult, VideoClient

logger = logging.getLogger(__name__)

REFUND_DESCRIPTIONS = {
    "variant": "storyboard video generation failed, tokens refunded",
    "character": "character video generation failed, tokens refunded",
}


class PollHandle:
    def __init__(self, task_id: str, target_id: str, kind: str, started_at: float) -> None:
        self.task_id = task_id
        self.target_id = target_id
        self.kind = kind
        self.started_at = started_at
        self.active = True
        self.task: asyncio.Task | None = None


class VideoStatusPoller:
    def __init__(
        self,
        client: VideoClient | None = None,
        interval_sec: float | None = None,
        max_duration_sec: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client or VideoClient()
        self.interval_sec = interval_sec if interval_sec is not None else settings.video_poll_interval_ms / 1000
        self.max_duration_sec = (
            max_duration_sec if max_duration_sec is not None else settings.video_max_poll_duration_ms / 1000
        )
        self._clock = clock
        self._handles: dict[str, PollHandle] = {}
        self._closed = False

    def track(self, task_id: str, target_id: str, kind: str = "variant") -> None:
        """Start polling ``task_id`` unless it is already tracked. Needs a running loop."""
        if task_id in self._handles:
            return
        if kind not in db.JOB_KINDS:
            raise ValueError(f"unknown job kind: {kind}")

        handle = PollHandle(task_id, target_id, kind, self._clock())
        self._handles[task_id] = handle
        handle.task = asyncio.get_running_loop().create_task(self._run(handle), name=f"video-poll-{task_id}")
        logger.info("tracking video task %s (%s %s)", task_id, kind, target_id)

    async def _run(self, handle: PollHandle) -> None:
        while handle.active:
            try:
                await self.poll_once(handle)
            except Exception:
                logger.exception("poll cycle for task %s crashed", handle.task_id)
            if not handle.active:
                break
            await asyncio.sleep(self.interval_sec)

    def _claim(self, handle: PollHandle) -> bool:
        """Take the handle out of the registry. Only the first caller gets True."""
        if not handle.active or self._handles.get(handle.task_id) is not handle:
            return False
        handle.active = False
        del self._handles[handle.task_id]
        return True

    async def poll_once(self, handle: PollHandle) -> None:
        if not handle.active:
            return

        elapsed = self._clock() - handle.started_at
        if elapsed > self.max_duration_sec:
            if self._claim(handle):
                logger.info("task %s timed out after %.0fs", handle.task_id, elapsed)
                await self._finish(
                    handle, "failed", refund=True, fail_reason=f"video generation timed out after {int(elapsed)}s"
                )
            return

        result: FetchResult = await self.client.fetch_status(handle.task_id)
        if not handle.active:
            # stopped while the fetch was in flight
            return

        if result.kind == "transient":
            logger.debug("task %s: no update this cycle (%s)", handle.task_id, result.error)
            return

        if result.kind == "fatal":
            if self._claim(handle):
                logger.warning("task %s unknown upstream (%s), failing job", handle.task_id, result.error)
                await self._finish(handle, "failed", refund=True, fail_reason=f"task lost upstream: {result.error}")
            return

        task = result.task
        status = task.local_status
        if status not in db.TERMINAL_STATUSES:
            await self._save(handle, status, progress=task.progress)
            return

        if not self._claim(handle):
            return
        logger.info("task %s finished with status %s", handle.task_id, status)
        await self._finish(
            handle,
            status,
            refund=status == "failed",
            progress=task.progress,
            video_url=task.video_url,
            thumbnail_url=task.thumbnail_url,
            fail_reason=task.fail_reason,
        )

    async def _finish(self, handle: PollHandle, status: str, refund: bool, **fields) -> None:
        saved = await self._save(handle, status, finished=True, **fields)
        refunded = await self._refund(handle) if refund else True
        if not saved or not refunded:
            self._retrack(handle)

    def _retrack(self, handle: PollHandle) -> None:
        """Put a claimed handle back so the terminal write or refund is retried next cycle."""
        if self._closed or handle.task_id in self._handles:
            return
        handle.active = True
        self._handles[handle.task_id] = handle
        if handle.task is None or handle.task.done():
            handle.task = asyncio.get_running_loop().create_task(
                self._run(handle), name=f"video-poll-{handle.task_id}"
            )
        logger.warning("task %s: terminal state not fully booked, polling again", handle.task_id)

    async def _save(self, handle: PollHandle, status: str, **fields) -> bool:
        try:
            await asyncio.to_thread(db.update_job_record, handle.kind, handle.target_id, status, **fields)
        except Exception as exc:
            # next successful cycle rewrites the record
            logger.warning("could not update %s %s to %s: %s", handle.kind, handle.target_id, status, exc)
            return False
        return True

    async def _refund(self, handle: PollHandle) -> bool:
        try:
            record = await asyncio.to_thread(db.get_job_record, handle.kind, handle.target_id)
        except Exception as exc:
            logger.error("could not load %s %s for refund: %s", handle.kind, handle.target_id, exc)
            return False
        if not record or not record.get("user_id") or not record.get("token_cost"):
            logger.warning("no refundable record for task %s (%s %s)", handle.task_id, handle.kind, handle.target_id)
            return True

        result = await asyncio.to_thread(
            refund_once,
            record["user_id"],
            int(record["token_cost"]),
            REFUND_DESCRIPTIONS[handle.kind],
            handle.target_id,
        )
        if not result.success:
            logger.error(
                "refund of %s tokens to user %s for task %s failed: %s",
                record["token_cost"],
                record["user_id"],
                handle.task_id,
                result.error,
            )
            return result.error_code != "transaction_failed"
        if result.applied:
            logger.info("refunded %s tokens to user %s for task %s", record["token_cost"], record["user_id"], handle.task_id)
        return True

    def stop(self, task_id: str) -> None:
        handle = self._handles.get(task_id)
        if not handle:
            return
        self._claim(handle)
        if handle.task and handle.task is not asyncio.current_task():
            handle.task.cancel()
        logger.info("stopped tracking video task %s", task_id)

    def stop_all(self) -> None:
        for task_id in list(self._handles):
            self.stop(task_id)

    async def aclose(self) -> None:
        self._closed = True
        tasks = [h.task for h in self._handles.values() if h.task]
        self.stop_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def resume(self) -> int:
        """Re-track every queued/generating job that already has a task id."""
        try:
            records = await asyncio.to_thread(db.list_resumable_jobs)
        except Exception:
            logger.exception("could not load in-flight video jobs")
            return 0

        for record in records:
            self.track(record["task_id"], record["id"], record["kind"])
        if records:
            logger.info("resumed polling for %s video task(s)", len(records))
        return len(records)

    def get_status(self) -> list[dict]:
        now = self._clock()
        return [
            {"task_id": task_id, "duration_ms": int((now - h.started_at) * 1000)}
            for task_id, h in self._handles.items()
        ]
