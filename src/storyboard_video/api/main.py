import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request

from storyboard_video import db
from storyboard_video.config import settings
from storyboard_video.ledger import credit, debit, refund_once
from storyboard_video.logging_setup import configure_logging
from storyboard_video.poller import VideoStatusPoller
from storyboard_video.schemas import (
    AdminRechargeRequest,
    BalanceRecordResponse,
    BalanceResponse,
    CharacterVideoRequest,
    JobRecordResponse,
    PollingStatusEntry,
    StoryboardVideoRequest,
    VideoGenerationRequest,
)
from storyboard_video.video_client import VideoApiError, VideoClient, VideoJobSpec

logger = logging.getLogger(__name__)

LEDGER_HTTP_CODES = {
    "insufficient_balance": 402,
    "user_not_found": 404,
    "invalid_amount": 400,
    "invalid_type": 400,
    "transaction_failed": 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    db.init_db()
    poller = VideoStatusPoller(client=VideoClient())
    app.state.poller = poller
    await poller.resume()
    try:
        yield
    finally:
        await poller.aclose()


app = FastAPI(title="Storyboard Video Service", version=settings.app_version, lifespan=lifespan)


def envelope(data: dict | list, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"service_version": settings.app_version},
        "error": error,
    }


def get_poller(request: Request) -> VideoStatusPoller:
    return request.app.state.poller


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _require_kind(kind: str) -> None:
    if kind not in db.JOB_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown video kind: {kind}")


def _reference_images(payload: VideoGenerationRequest) -> list[str]:
    images = list(payload.reference_images)
    if payload.linked_assets:
        for group in (payload.linked_assets.characters, payload.linked_assets.scenes, payload.linked_assets.props):
            images.extend(asset.image_url for asset in group if asset.image_url)
    return images


async def _abort_generation(kind: str, record_id: str, user_id: str, token_cost: int, exc: Exception) -> None:
    """Fail the record and give the debited tokens back after a broken start."""
    try:
        await asyncio.to_thread(db.update_job_record, kind, record_id, "failed", fail_reason=str(exc), finished=True)
    except Exception as save_exc:
        logger.warning("could not mark %s %s failed: %s", kind, record_id, save_exc)

    refund = await asyncio.to_thread(
        refund_once, user_id, token_cost, f"{kind} video could not be started, tokens refunded", record_id
    )
    if not refund.success:
        logger.error("refund for %s %s could not be booked: %s", kind, record_id, refund.error)


async def _start_generation(
    kind: str,
    payload: VideoGenerationRequest,
    parent_id: str | None,
    token_cost: int,
    poller: VideoStatusPoller,
) -> dict:
    record_id = str(uuid4())
    await asyncio.to_thread(
        db.create_job_record, kind, record_id, parent_id, payload.user_id, payload.prompt, token_cost
    )

    charged = await asyncio.to_thread(
        debit, payload.user_id, token_cost, f"{kind} video generation", record_id
    )
    if not charged.success:
        await asyncio.to_thread(db.delete_job_record, kind, record_id)
        raise HTTPException(status_code=LEDGER_HTTP_CODES.get(charged.error_code, 400), detail=charged.error)

    spec = VideoJobSpec(
        prompt=payload.prompt,
        model=settings.video_model,
        aspect_ratio=payload.aspect_ratio,
        duration=payload.duration,
        private=payload.private,
        images=_reference_images(payload),
    )
    try:
        task_id = await poller.client.submit(spec)
        await asyncio.to_thread(db.set_job_submitted, kind, record_id, task_id)
    except Exception as exc:
        logger.warning("starting %s %s failed: %s", kind, record_id, exc)
        await _abort_generation(kind, record_id, payload.user_id, token_cost, exc)
        if isinstance(exc, VideoApiError):
            raise HTTPException(status_code=502, detail=f"Video generation submit failed: {exc}") from exc
        raise HTTPException(status_code=500, detail="Video generation could not be started") from exc

    poller.track(task_id, record_id, kind)

    record = await asyncio.to_thread(db.get_job_record, kind, record_id)
    return envelope(JobRecordResponse(**record).model_dump())


@app.get("/health")
def health() -> dict:
    return envelope({"service": "storyboard-video"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "storyboard-video", "version": settings.app_version})


@app.post("/v1/videos/storyboard")
async def create_storyboard_video(
    payload: StoryboardVideoRequest,
    poller: Annotated[VideoStatusPoller, Depends(get_poller)],
) -> dict:
    return await _start_generation(
        "variant", payload, payload.storyboard_id, settings.video_storyboard_token_cost, poller
    )


@app.post("/v1/videos/character")
async def create_character_video(
    payload: CharacterVideoRequest,
    poller: Annotated[VideoStatusPoller, Depends(get_poller)],
) -> dict:
    return await _start_generation(
        "character", payload, payload.script_id, settings.video_character_token_cost, poller
    )


@app.get("/v1/videos/polling")
async def polling_status(poller: Annotated[VideoStatusPoller, Depends(get_poller)]) -> dict:
    entries = [PollingStatusEntry(**e).model_dump() for e in poller.get_status()]
    return envelope(entries)


@app.get("/v1/videos/{kind}/{record_id}")
def get_video_record(kind: str, record_id: str) -> dict:
    _require_kind(kind)
    record = db.get_job_record(kind, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Video record not found")
    return envelope(JobRecordResponse(**record).model_dump())


@app.delete("/v1/videos/{kind}/{record_id}")
async def delete_video_record(
    kind: str,
    record_id: str,
    poller: Annotated[VideoStatusPoller, Depends(get_poller)],
) -> dict:
    _require_kind(kind)
    record = await asyncio.to_thread(db.get_job_record, kind, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Video record not found")
    # poller.stop must run on the app loop
    if record["task_id"]:
        poller.stop(record["task_id"])
    await asyncio.to_thread(db.delete_job_record, kind, record_id)
    return envelope({"id": record_id, "deleted": True})


@app.get("/v1/balance/{user_id}")
def get_balance(
    user_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> dict:
    user = db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    records, total = db.list_balance_records(user_id, page=page, page_size=page_size)
    return envelope(
        {
            "balance": BalanceResponse(user_id=user_id, balance=int(user["balance"])).model_dump(),
            "records": [BalanceRecordResponse(**r).model_dump() for r in records],
            "total": total,
            "page": page,
            "page_size": page_size,
        }
    )


@app.post("/v1/admin/balance/recharge")
def admin_recharge(payload: AdminRechargeRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    db.ensure_user(payload.user_id)
    result = credit(
        payload.user_id,
        payload.amount,
        payload.description,
        related_id=payload.related_id,
        entry_type=payload.entry_type,
    )
    if not result.success:
        raise HTTPException(status_code=LEDGER_HTTP_CODES.get(result.error_code, 400), detail=result.error)
    return envelope(BalanceResponse(user_id=payload.user_id, balance=result.balance).model_dump())
