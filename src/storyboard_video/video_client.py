import asyncio
import logging
from typing import Literal

import httpx
from pydantic import BaseModel

from storyboard_video.config import settings

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "NOT_START": "queued",
    "IN_PROGRESS": "generating",
    "SUCCESS": "completed",
    "FAILURE": "failed",
}
FATAL_HTTP_CODES = {404, 410}
TRANSIENT_HTTP_CODES = {429, 500, 502, 503, 504}


class VideoApiError(RuntimeError):
    pass


class VideoSubmitError(VideoApiError):
    pass


def map_status(external_status: str | None) -> str:
    return STATUS_MAP.get(external_status or "", "generating")


class VideoJobSpec(BaseModel):
    prompt: str
    model: str = "sora-2"
    aspect_ratio: Literal["16:9", "9:16"] = "9:16"
    duration: Literal["10", "15"] = "15"
    private: bool = False
    images: list[str] = []


class TaskStatus(BaseModel):
    status: str
    progress: str | None = None
    video_url: str | None = None
    thumbnail_url: str | None = None
    fail_reason: str | None = None

    @property
    def local_status(self) -> str:
        return map_status(self.status)


class FetchResult(BaseModel):
    """Outcome of one status fetch.

    ``ok`` carries a parsed ``TaskStatus``; ``transient`` means try again next
    cycle; ``fatal`` means the external side will never report on this task.
    """

    kind: Literal["ok", "transient", "fatal"]
    task: TaskStatus | None = None
    error: str | None = None

    @classmethod
    def ok(cls, task: TaskStatus) -> "FetchResult":
        return cls(kind="ok", task=task)

    @classmethod
    def transient(cls, error: str) -> "FetchResult":
        return cls(kind="transient", error=error)

    @classmethod
    def fatal(cls, error: str) -> "FetchResult":
        return cls(kind="fatal", error=error)


def _parse_status(payload: object) -> TaskStatus | None:
    if not isinstance(payload, dict) or not isinstance(payload.get("status"), str):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    progress = payload.get("progress")
    return TaskStatus(
        status=payload["status"],
        progress=str(progress) if progress is not None else None,
        video_url=data.get("output") or None,
        thumbnail_url=data.get("thumbnail") or None,
        fail_reason=payload.get("fail_reason") or None,
    )


def _extract_task_id(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("task_id", "id"):
        if payload.get(key):
            return str(payload[key])
    data = payload.get("data")
    if isinstance(data, dict) and data.get("task_id"):
        return str(data["task_id"])
    return None


class VideoClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.ai_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ai_api_key
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise VideoApiError("AI_API_KEY is not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self, timeout_sec: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout_sec, transport=self._transport)

    async def submit(self, spec: VideoJobSpec) -> str:
        body = spec.model_dump(exclude={"images"})
        if spec.images:
            body["images"] = spec.images

        headers = self._headers()
        last_err: Exception | None = None
        for attempt in range(3):
            try:
                async with self._client(settings.submit_timeout_sec) as client:
                    r = await client.post(f"{self.base_url}/v2/videos/generations", headers=headers, json=body)
                    r.raise_for_status()
                    payload = r.json()
                task_id = _extract_task_id(payload)
                if not task_id:
                    raise VideoSubmitError(f"submit response has no task id: {str(payload)[:250]}")
                return task_id
            except httpx.TimeoutException as exc:
                last_err = VideoSubmitError(f"submit_timeout: {exc}")
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in TRANSIENT_HTTP_CODES:
                    last_err = VideoSubmitError(f"transient_http_{code}")
                else:
                    raise VideoSubmitError(f"http_{code}: {exc.response.text[:500]}") from exc
            except VideoSubmitError:
                raise
            except (httpx.HTTPError, ValueError) as exc:
                last_err = VideoSubmitError(str(exc))

            logger.warning("video submit attempt %s failed: %s", attempt + 1, last_err)
            await asyncio.sleep(0.6 * (attempt + 1))

        assert last_err is not None
        raise last_err

    async def fetch_status(self, task_id: str) -> FetchResult:
        try:
            async with self._client(settings.status_timeout_sec) as client:
                r = await client.get(f"{self.base_url}/v2/videos/generations/{task_id}", headers=self._headers())
        except (httpx.HTTPError, VideoApiError) as exc:
            return FetchResult.transient(f"{type(exc).__name__}: {exc}")

        if r.status_code in FATAL_HTTP_CODES:
            return FetchResult.fatal(f"http_{r.status_code}")
        if not r.is_success:
            return FetchResult.transient(f"http_{r.status_code}")

        try:
            task = _parse_status(r.json())
        except ValueError:
            task = None
        if task is None:
            return FetchResult.transient(f"malformed status payload: {r.text[:250]}")
        return FetchResult.ok(task)
