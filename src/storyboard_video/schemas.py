from typing import Literal

from pydantic import BaseModel, Field


class LedgerResult(BaseModel):
    success: bool
    balance: int = 0
    error: str | None = None
    error_code: str | None = None
    applied: bool = True


class BalanceRecordResponse(BaseModel):
    id: int
    user_id: str
    type: str
    amount: int
    balance: int
    description: str
    related_id: str | None = None
    created_at: str


class BalanceResponse(BaseModel):
    user_id: str
    balance: int


class AdminRechargeRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    entry_type: Literal["recharge", "invite", "redeem"] = "recharge"
    description: str = "manual recharge"
    related_id: str | None = None


class LinkedAsset(BaseModel):
    name: str
    image_url: str


class LinkedAssets(BaseModel):
    characters: list[LinkedAsset] = []
    scenes: list[LinkedAsset] = []
    props: list[LinkedAsset] = []


class VideoGenerationRequest(BaseModel):
    user_id: str
    prompt: str = Field(min_length=1)
    aspect_ratio: Literal["16:9", "9:16"] = "9:16"
    duration: Literal["10", "15"] = "15"
    private: bool = False
    reference_images: list[str] = []
    linked_assets: LinkedAssets | None = None


class StoryboardVideoRequest(VideoGenerationRequest):
    storyboard_id: str | None = None


class CharacterVideoRequest(VideoGenerationRequest):
    script_id: str | None = None
    duration: Literal["10", "15"] = "10"


class JobRecordResponse(BaseModel):
    id: str
    kind: str
    user_id: str
    token_cost: int = 0
    task_id: str | None = None
    status: str
    progress: str | None = None
    video_url: str | None = None
    thumbnail_url: str | None = None
    fail_reason: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    created_at: str
    updated_at: str


class PollingStatusEntry(BaseModel):
    task_id: str
    duration_ms: int
