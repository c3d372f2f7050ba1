from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

MessageDirection = Literal["incoming", "outgoing"]
RespondedStatus = Literal["Yes", "No"]
ConvertedStatus = Literal["Yes"]

CORE_SCORE_FIELDS = ("acknowledgment_score", "affection_score", "personalization_score")
SCORE_FIELDS = CORE_SCORE_FIELDS + ("sales_ability", "girl_roleplay_skill")


def _require_text(value: str, field_name: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be blank")
    return normalized


class ThreadMessageCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(min_length=1, max_length=50)
    operator: str = Field(min_length=1, max_length=50)
    model: str = Field(min_length=1, max_length=50)
    direction: MessageDirection = Field(alias="type")
    text: str = Field(alias="message", min_length=1, max_length=20000)
    converted: str | None = Field(default=None, max_length=10)

    @field_validator("thread_id", "operator", "model")
    @classmethod
    def _normalize_identifier(cls, value: str, info: ValidationInfo) -> str:
        return _require_text(value, info.field_name)

    @field_validator("text")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message cannot be blank")
        return value

    @field_validator("converted")
    @classmethod
    def _normalize_converted(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return "Yes" if value.strip().lower() == "yes" else None


class MessageItem(BaseModel):
    id: str
    direction: MessageDirection
    text: str
    timestamp: datetime


class MessageCreatedResponse(BaseModel):
    id: str
    thread_id: str
    operator: str
    model: str
    direction: MessageDirection
    text: str
    timestamp: datetime
    converted: ConvertedStatus | None = None
    dispatch_scheduled: bool = False


class ThreadItem(BaseModel):
    thread_id: str
    operator: str
    model: str
    converted: ConvertedStatus | None = None
    last_message_at: datetime | None = None
    last_message_relative: str
    last_message_direction: MessageDirection | None = None
    avg_response_time: int | None = None
    responded: RespondedStatus
    message_count: int
    acknowledgment_score: int | None = None
    affection_score: int | None = None
    personalization_score: int | None = None
    sales_ability: int | None = None
    girl_roleplay_skill: int | None = None
    last_dispatched_at: datetime | None = None
    messages: list[MessageItem] = Field(default_factory=list)


class ThreadListResponse(BaseModel):
    items: list[ThreadItem]
    total: int


class StatsResponse(BaseModel):
    total_chats: int
    total_converted: int
    conversion_rate: int
    response_rate: int
    avg_response_time: int
    avg_acknowledgment: int
    avg_affection: int
    avg_personalization: int
    avg_sales_ability: int
    avg_girl_roleplay_skill: int
    operator_messages_60min: int
    new_chats_60min: int


class FilterOptionsResponse(BaseModel):
    operators: list[str]
    models: list[str]


class AnalyzeFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operators: list[str] = Field(default_factory=list)
    models: list[str] = Field(default_factory=list)
    start_date: datetime | None = Field(default=None, alias="startDate")
    end_date: datetime | None = Field(default=None, alias="endDate")
    last_message_since: str | None = Field(default=None, alias="lastMessageSince")
    analyzed_only: bool = Field(default=False, alias="analyzedOnly")
    last_message_type: MessageDirection | None = Field(default=None, alias="lastMessageType")

    @field_validator("operators", "models")
    @classmethod
    def _strip_entries(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item.strip()]


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filters: AnalyzeFilters = Field(default_factory=AnalyzeFilters)
    number_of_chats: int = Field(alias="numberOfChats", ge=1, le=1000)
    thread_depth: int = Field(alias="threadDepth", ge=1, le=1000)


class AnalyzeResponse(BaseModel):
    success: bool
    threads_analyzed: int
    webhook_success: bool
    message: str
    webhook_response: str | None = None
    error: str | None = None


class ThreadScoresUpdateRequest(BaseModel):
    acknowledgment_score: int | None = Field(default=None, ge=0, le=100)
    affection_score: int | None = Field(default=None, ge=0, le=100)
    personalization_score: int | None = Field(default=None, ge=0, le=100)
    sales_ability: int | None = Field(default=None, ge=0, le=100)
    girl_roleplay_skill: int | None = Field(default=None, ge=0, le=100)

    @field_validator(*SCORE_FIELDS, mode="before")
    @classmethod
    def _require_integer(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{info.field_name} must be an integer between 0 and 100")
        return value

    def provided_scores(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in SCORE_FIELDS if getattr(self, name) is not None}


class ThreadScoresUpdateResponse(BaseModel):
    success: bool
    thread: ThreadItem


class AnalysisMessagePayload(BaseModel):
    type: MessageDirection
    message: str
    date: datetime


class AnalysisThreadPayload(BaseModel):
    thread_id: str
    operator: str
    model: str
    messages: list[AnalysisMessagePayload]
    converted: ConvertedStatus | None = None
    last_message: datetime | None = None
    avg_response_time: int | None = None
    responded: RespondedStatus


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    store_backend: str
