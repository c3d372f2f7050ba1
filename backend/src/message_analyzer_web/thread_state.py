"""Pure derivations of per-thread summary fields from the message log.

Both storage backends call into these folds so that the stored thread row is
always what a fresh scan of its messages would produce.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol, Sequence

from .models import CORE_SCORE_FIELDS, MessageDirection, RespondedStatus


def _build_since_buckets() -> dict[str, timedelta]:
    buckets: dict[str, timedelta] = {
        "30m": timedelta(minutes=30),
        "60m": timedelta(minutes=60),
    }
    for hours in range(2, 25):
        buckets[f"{hours}h"] = timedelta(hours=hours)
    for days in (2, 3, 7, 14, 30):
        buckets[f"{days}d"] = timedelta(days=days)
    return buckets


LAST_MESSAGE_SINCE_BUCKETS = _build_since_buckets()


class InvalidFilterError(ValueError):
    """Raised when a thread filter value cannot be interpreted."""


class _MessageLike(Protocol):
    direction: MessageDirection
    created_at: datetime


@dataclass(frozen=True)
class ThreadSummary:
    last_message_at: datetime | None
    last_message_direction: MessageDirection | None
    avg_response_time: timedelta | None
    responded: RespondedStatus
    incoming_count: int
    outgoing_count: int


@dataclass(frozen=True)
class DispatchDecision:
    dispatch: bool
    reason: str


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def average_response_time(messages: Sequence[_MessageLike]) -> timedelta | None:
    """Mean gap between each outgoing message and the incoming message it answers.

    An outgoing message answers the nearest preceding incoming message that has
    not been answered yet. A newer incoming message supersedes an unanswered
    older one, and outgoing messages with nothing pending form no pair.
    """
    pending_incoming: datetime | None = None
    gaps: list[timedelta] = []
    for message in messages:
        if message.direction == "incoming":
            pending_incoming = message.created_at
            continue
        if pending_incoming is not None:
            gaps.append(message.created_at - pending_incoming)
            pending_incoming = None
    if not gaps:
        return None
    return sum(gaps, timedelta()) / len(gaps)


def responded_status(last_direction: MessageDirection | None) -> RespondedStatus:
    return "Yes" if last_direction == "incoming" else "No"


def summarize_messages(messages: Sequence[_MessageLike]) -> ThreadSummary:
    """Summarize messages already ordered by (timestamp, id)."""
    if not messages:
        return ThreadSummary(
            last_message_at=None,
            last_message_direction=None,
            avg_response_time=None,
            responded="No",
            incoming_count=0,
            outgoing_count=0,
        )
    last = messages[-1]
    incoming = sum(1 for message in messages if message.direction == "incoming")
    return ThreadSummary(
        last_message_at=max(message.created_at for message in messages),
        last_message_direction=last.direction,
        avg_response_time=average_response_time(messages),
        responded=responded_status(last.direction),
        incoming_count=incoming,
        outgoing_count=len(messages) - incoming,
    )


def evaluate_dispatch(
    *,
    summary: ThreadSummary,
    already_dispatched: bool,
    min_incoming: int,
    min_outgoing: int,
    every_message: bool,
) -> DispatchDecision:
    if summary.incoming_count < min_incoming or summary.outgoing_count < min_outgoing:
        return DispatchDecision(dispatch=False, reason="below_threshold")
    if already_dispatched and not every_message:
        return DispatchDecision(dispatch=False, reason="already_dispatched")
    if already_dispatched:
        return DispatchDecision(dispatch=True, reason="redispatch_on_message")
    return DispatchDecision(dispatch=True, reason="threshold_reached")


def seconds_or_none(value: timedelta | None) -> int | None:
    if value is None:
        return None
    return round_half_up(value.total_seconds())


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_relative_time(last_message_at: datetime | None, *, now: datetime) -> str:
    if last_message_at is None:
        return "Unknown"
    seconds = max(int((now - last_message_at).total_seconds()), 0)
    if seconds < 60:
        return f"{seconds} sec ago"
    if seconds < 3600:
        return f"{seconds // 60} min ago"
    if seconds < 86400:
        hours = seconds // 3600
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    days = seconds // 86400
    return f"{days} day{'s' if days > 1 else ''} ago"


def parse_last_message_since(value: str | None) -> timedelta | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized or normalized == "all":
        return None
    window = LAST_MESSAGE_SINCE_BUCKETS.get(normalized)
    if window is None:
        raise InvalidFilterError(f"unsupported lastMessageSince value: {value}")
    return window


@dataclass(frozen=True)
class ThreadFilter:
    operators: frozenset[str] = frozenset()
    models: frozenset[str] = frozenset()
    start: datetime | None = None
    end: datetime | None = None
    last_message_within: timedelta | None = None
    analyzed_only: bool = False
    last_message_direction: MessageDirection | None = None

    @classmethod
    def build(
        cls,
        *,
        operators: Iterable[str] = (),
        models: Iterable[str] = (),
        start: datetime | None = None,
        end: datetime | None = None,
        last_message_since: str | None = None,
        analyzed_only: bool = False,
        last_message_direction: MessageDirection | None = None,
    ) -> ThreadFilter:
        start_utc = as_utc(start) if start is not None else None
        end_utc = as_utc(end) if end is not None else None
        if start_utc is not None and end_utc is not None and end_utc < start_utc:
            raise InvalidFilterError("end must be greater than or equal to start")
        return cls(
            operators=frozenset(item.strip() for item in operators if item.strip()),
            models=frozenset(item.strip() for item in models if item.strip()),
            start=start_utc,
            end=end_utc,
            last_message_within=parse_last_message_since(last_message_since),
            analyzed_only=analyzed_only,
            last_message_direction=last_message_direction,
        )

    def since_cutoff(self, now: datetime) -> datetime | None:
        if self.last_message_within is None:
            return None
        return now - self.last_message_within

    def matches(self, thread, *, now: datetime) -> bool:
        if self.operators and thread.operator not in self.operators:
            return False
        if self.models and thread.model not in self.models:
            return False
        last_at = thread.last_message_at
        if self.start is not None and (last_at is None or last_at < self.start):
            return False
        if self.end is not None and (last_at is None or last_at > self.end):
            return False
        cutoff = self.since_cutoff(now)
        if cutoff is not None and (last_at is None or last_at < cutoff):
            return False
        if self.analyzed_only and any(getattr(thread, name) is None for name in CORE_SCORE_FIELDS):
            return False
        if self.last_message_direction is not None and thread.last_message_direction != self.last_message_direction:
            return False
        return True
