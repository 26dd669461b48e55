import asyncio
import json

import httpx
import pytest

from storyboard_video.video_client import (
    VideoClient,
    VideoJobSpec,
    VideoSubmitError,
    map_status,
)


def _client(handler) -> VideoClient:
    return VideoClient(base_url="https://video.test/", api_key="k", transport=httpx.MockTransport(handler))


def test_status_vocabulary() -> None:
    assert map_status("NOT_START") == "queued"
    assert map_status("IN_PROGRESS") == "generating"
    assert map_status("SUCCESS") == "completed"
    assert map_status("FAILURE") == "failed"
    assert map_status("SOMETHING_NEW") == "generating"
    assert map_status(None) == "generating"


def test_fetch_status_success_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(
            200,
            json={
                "status": "SUCCESS",
                "progress": "100%",
                "data": {"output": "https://cdn.test/v.mp4", "thumbnail": "https://cdn.test/v.jpg"},
            },
        )

    result = asyncio.run(_client(handler).fetch_status("task-1"))
    assert seen["url"] == "https://video.test/v2/videos/generations/task-1"
    assert seen["auth"] == "Bearer k"
    assert result.kind == "ok"
    assert result.task.local_status == "completed"
    assert result.task.progress == "100%"
    assert result.task.video_url == "https://cdn.test/v.mp4"
    assert result.task.thumbnail_url == "https://cdn.test/v.jpg"


def test_fetch_status_failure_reason() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "FAILURE", "fail_reason": "content policy"})

    result = asyncio.run(_client(handler).fetch_status("t"))
    assert result.kind == "ok"
    assert result.task.local_status == "failed"
    assert result.task.fail_reason == "content policy"
    assert result.task.video_url is None


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="boom"),
        httpx.Response(429, text="slow down"),
        httpx.Response(401, text="bad key"),
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"progress": "10%"}),
    ],
)
def test_fetch_status_transient_outcomes(response) -> None:
    result = asyncio.run(_client(lambda request: response).fetch_status("t"))
    assert result.kind == "transient"
    assert result.task is None


def test_fetch_status_network_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = asyncio.run(_client(handler).fetch_status("t"))
    assert result.kind == "transient"
    assert "ConnectError" in result.error


def test_fetch_status_missing_key_is_transient() -> None:
    client = VideoClient(base_url="https://video.test", api_key="", transport=httpx.MockTransport(lambda r: None))
    assert asyncio.run(client.fetch_status("t")).kind == "transient"


def test_fetch_status_unknown_task_is_fatal() -> None:
    result = asyncio.run(_client(lambda request: httpx.Response(404, text="no such task")).fetch_status("t"))
    assert result.kind == "fatal"


def test_submit_posts_job_and_returns_task_id() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"task_id": "task-42"})

    spec = VideoJobSpec(prompt="a cat surfing", aspect_ratio="16:9", duration="10", images=["https://img/1.png"])
    task_id = asyncio.run(_client(handler).submit(spec))

    assert task_id == "task-42"
    assert seen["method"] == "POST"
    assert seen["url"] == "https://video.test/v2/videos/generations"
    assert seen["body"] == {
        "prompt": "a cat surfing",
        "model": "sora-2",
        "aspect_ratio": "16:9",
        "duration": "10",
        "private": False,
        "images": ["https://img/1.png"],
    }


def test_submit_without_images_omits_field() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"task_id": "nested"}})

    assert asyncio.run(_client(handler).submit(VideoJobSpec(prompt="p"))) == "nested"
    assert "images" not in seen["body"]


def test_submit_retries_transient_http() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"id": "after-retry"})

    assert asyncio.run(_client(handler).submit(VideoJobSpec(prompt="p"))) == "after-retry"
    assert len(calls) == 2


def test_submit_client_error_raises_without_retry() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(400, text="prompt rejected")

    with pytest.raises(VideoSubmitError, match="http_400"):
        asyncio.run(_client(handler).submit(VideoJobSpec(prompt="p")))
    assert len(calls) == 1


def test_submit_without_task_id_raises() -> None:
    with pytest.raises(VideoSubmitError, match="no task id"):
        asyncio.run(_client(lambda request: httpx.Response(200, json={"ok": True})).submit(VideoJobSpec(prompt="p")))
