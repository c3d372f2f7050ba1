from __future__ import annotations

import logging

from .models import AnalysisMessagePayload, AnalysisThreadPayload, AnalyzeResponse
from .thread_state import ThreadFilter, seconds_or_none
from .threads import MessageRecord, ThreadNotFoundError, ThreadRecord, ThreadRepository
from .webhook_sender import AnalysisWebhookSender, WebhookDeliveryResult

logger = logging.getLogger(__name__)


def build_thread_payload(thread: ThreadRecord, messages: list[MessageRecord]) -> AnalysisThreadPayload:
    return AnalysisThreadPayload(
        thread_id=thread.thread_id,
        operator=thread.operator,
        model=thread.model,
        messages=[
            AnalysisMessagePayload(type=value.direction, message=value.text, date=value.created_at)
            for value in messages
        ],
        converted=thread.converted,
        last_message=thread.last_message_at,
        avg_response_time=seconds_or_none(thread.avg_response_time),
        responded=thread.responded,
    )


class AnalysisDispatcher:
    def __init__(self, *, repository: ThreadRepository, sender: AnalysisWebhookSender) -> None:
        self._repository = repository
        self._sender = sender

    def dispatch_thread(self, thread_id: str) -> WebhookDeliveryResult | None:
        """Send one thread's full history to the scoring webhook.

        Runs detached from the request that triggered it, so every failure is
        logged and nothing is raised or written back to the thread.
        """
        try:
            thread = self._repository.get_thread(thread_id)
            if thread is None:
                raise ThreadNotFoundError(thread_id)
            messages = self._repository.list_messages(thread_id)
            result = self._sender.send_threads([build_thread_payload(thread, messages)])
        except Exception:
            logger.exception("analysis dispatch failed for thread %s", thread_id)
            return None

        if result.ok:
            logger.info(
                "dispatched thread %s (%d messages) for analysis, webhook status %s",
                thread_id,
                len(messages),
                result.http_status,
            )
        else:
            logger.error(
                "analysis webhook rejected thread %s: %s (%s)",
                thread_id,
                result.error_message,
                result.error_code,
            )
        return result

    def run_analysis(self, thread_filter: ThreadFilter, *, number_of_chats: int, thread_depth: int) -> AnalyzeResponse:
        threads = self._repository.list_threads(thread_filter, limit=number_of_chats)
        if not threads:
            return AnalyzeResponse(
                success=True,
                threads_analyzed=0,
                webhook_success=True,
                message="No threads found matching the specified filters",
            )

        payload = [
            build_thread_payload(thread, self._repository.list_messages(thread.thread_id, limit=thread_depth))
            for thread in threads
        ]
        try:
            result = self._sender.send_threads(payload)
        except Exception as exc:
            logger.exception("bulk analysis webhook raised for %d threads", len(payload))
            error_message: str | None = str(exc) or type(exc).__name__
        else:
            error_message = None if result.ok else (result.error_message or "webhook delivery failed")

        if error_message is not None:
            logger.error("bulk analysis webhook failed for %d threads: %s", len(payload), error_message)
            return AnalyzeResponse(
                success=True,
                threads_analyzed=len(payload),
                webhook_success=False,
                message=f"Prepared {len(payload)} threads but failed to send to webhook",
                error=error_message,
            )

        logger.info("sent %d threads to analysis webhook", len(payload))
        return AnalyzeResponse(
            success=True,
            threads_analyzed=len(payload),
            webhook_success=True,
            message=f"Successfully sent {len(payload)} threads to webhook for analysis",
            webhook_response=result.response_text,
        )
