from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from .analysis import AnalysisDispatcher
from .config import Settings, get_settings
from .models import (
    AnalyzeRequest,
    AnalyzeResponse,
    FilterOptionsResponse,
    HealthResponse,
    MessageCreatedResponse,
    MessageDirection,
    StatsResponse,
    ThreadListResponse,
    ThreadMessageCreateRequest,
    ThreadScoresUpdateRequest,
    ThreadScoresUpdateResponse,
)
from .thread_state import InvalidFilterError, ThreadFilter
from .threads import ThreadNotFoundError, ThreadRepository, ThreadService, create_thread_repository
from .webhook_sender import AnalysisWebhookSender, HttpAnalysisWebhookSender, StubAnalysisWebhookSender

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["threads"])


def _create_analysis_sender(settings: Settings) -> AnalysisWebhookSender:
    if settings.analysis_sender_type == "http":
        return HttpAnalysisWebhookSender(
            webhook_url=settings.analysis_webhook_url,
            timeout_seconds=settings.analysis_webhook_timeout_seconds,
        )
    return StubAnalysisWebhookSender()


thread_repo: ThreadRepository = create_thread_repository(
    backend=_settings.thread_store_backend,
    database_url=_settings.database_url,
)
analysis_sender: AnalysisWebhookSender = _create_analysis_sender(_settings)
thread_service = ThreadService(repository=thread_repo, settings=_settings)
analysis_dispatcher = AnalysisDispatcher(repository=thread_repo, sender=analysis_sender)


def reset_runtime_state_for_tests() -> None:
    thread_service.reset()


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _thread_filter_from_query(
    operator: str | None = Query(default=None, description="Comma-separated operator names"),
    model: str | None = Query(default=None, description="Comma-separated model names"),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    last_message_since: str | None = Query(default=None, alias="lastMessageSince"),
    analyzed_only: bool = Query(default=False, alias="analyzedOnly"),
    last_message_type: MessageDirection | None = Query(default=None, alias="lastMessageType"),
) -> ThreadFilter:
    try:
        return ThreadFilter.build(
            operators=_split_csv(operator),
            models=_split_csv(model),
            start=start,
            end=end,
            last_message_since=last_message_since,
            analyzed_only=analyzed_only,
            last_message_direction=last_message_type,
        )
    except InvalidFilterError as exc:
        raise HTTPException(400, str(exc)) from exc


@router.post("/threads", response_model=MessageCreatedResponse, status_code=status.HTTP_201_CREATED)
def create_thread_message(payload: ThreadMessageCreateRequest, background_tasks: BackgroundTasks) -> MessageCreatedResponse:
    recorded = thread_service.record_message(payload)
    if recorded.dispatch.dispatch:
        logger.info("scheduling analysis dispatch for thread %s (%s)", payload.thread_id, recorded.dispatch.reason)
        background_tasks.add_task(analysis_dispatcher.dispatch_thread, payload.thread_id)
    message = recorded.message
    return MessageCreatedResponse(
        id=message.message_id,
        thread_id=message.thread_id,
        operator=message.operator,
        model=message.model,
        direction=message.direction,
        text=message.text,
        timestamp=message.created_at,
        converted=recorded.thread.converted,
        dispatch_scheduled=recorded.dispatch.dispatch,
    )


@router.get("/threads", response_model=ThreadListResponse)
def list_threads(
    thread_filter: ThreadFilter = Depends(_thread_filter_from_query),
    chat_view: bool = Query(default=False, alias="chatView"),
) -> ThreadListResponse:
    return thread_service.list_threads(thread_filter, chat_view=chat_view)


@router.put("/threads/{thread_id}", response_model=ThreadScoresUpdateResponse)
def update_thread_scores(thread_id: str, payload: ThreadScoresUpdateRequest) -> ThreadScoresUpdateResponse:
    try:
        return thread_service.apply_scores(thread_id, payload)
    except ThreadNotFoundError as exc:
        raise HTTPException(404, f"thread not found: {thread_id}") from exc


@router.get("/stats", response_model=StatsResponse)
def get_stats(thread_filter: ThreadFilter = Depends(_thread_filter_from_query)) -> StatsResponse:
    return thread_service.get_stats(thread_filter)


@router.get("/filters", response_model=FilterOptionsResponse)
def get_filter_options() -> FilterOptionsResponse:
    return thread_service.filter_options()


@router.post("/analyze", response_model=AnalyzeResponse)
def run_analysis(payload: AnalyzeRequest) -> AnalyzeResponse:
    filters = payload.filters
    try:
        thread_filter = ThreadFilter.build(
            operators=filters.operators,
            models=filters.models,
            start=filters.start_date,
            end=filters.end_date,
            last_message_since=filters.last_message_since,
            analyzed_only=filters.analyzed_only,
            last_message_direction=filters.last_message_type,
        )
    except InvalidFilterError as exc:
        raise HTTPException(400, str(exc)) from exc
    return analysis_dispatcher.run_analysis(
        thread_filter,
        number_of_chats=payload.number_of_chats,
        thread_depth=payload.thread_depth,
    )


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        timestamp=thread_repo.now(),
        store_backend=_settings.thread_store_backend,
    )
