from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Callable, Protocol

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    Interval,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import Settings
from .models import (
    CORE_SCORE_FIELDS,
    SCORE_FIELDS,
    ConvertedStatus,
    FilterOptionsResponse,
    MessageDirection,
    MessageItem,
    RespondedStatus,
    StatsResponse,
    ThreadItem,
    ThreadListResponse,
    ThreadMessageCreateRequest,
    ThreadScoresUpdateRequest,
    ThreadScoresUpdateResponse,
)
from .thread_state import (
    DispatchDecision,
    ThreadFilter,
    ThreadSummary,
    as_utc,
    evaluate_dispatch,
    format_relative_time,
    round_half_up,
    seconds_or_none,
    summarize_messages,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ThreadNotFoundError(KeyError):
    """Raised when an operation references a thread id that does not exist."""


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    thread_id: str
    operator: str
    model: str
    direction: MessageDirection
    text: str
    created_at: datetime


@dataclass(frozen=True)
class ThreadRecord:
    thread_id: str
    operator: str
    model: str
    converted: ConvertedStatus | None
    last_message_at: datetime | None
    last_message_direction: MessageDirection | None
    avg_response_time: timedelta | None
    responded: RespondedStatus
    acknowledgment_score: int | None
    affection_score: int | None
    personalization_score: int | None
    sales_ability: int | None
    girl_roleplay_skill: int | None
    last_dispatched_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class DispatchRule:
    min_incoming: int = 3
    min_outgoing: int = 3
    every_message: bool = False


@dataclass(frozen=True)
class RecordedMessage:
    message: MessageRecord
    thread: ThreadRecord
    dispatch: DispatchDecision


class ThreadRepository(Protocol):
    def now(self) -> datetime: ...

    def reset(self) -> None: ...

    def record_message(
        self,
        *,
        thread_id: str,
        operator: str,
        model: str,
        direction: MessageDirection,
        text: str,
        converted: ConvertedStatus | None,
        rule: DispatchRule,
    ) -> RecordedMessage: ...

    def get_thread(self, thread_id: str) -> ThreadRecord | None: ...

    def list_threads(self, thread_filter: ThreadFilter, *, limit: int | None = None) -> list[ThreadRecord]: ...

    def list_messages(self, thread_id: str, *, limit: int | None = None) -> list[MessageRecord]: ...

    def messages_for_threads(self, thread_ids: list[str]) -> dict[str, list[MessageRecord]]: ...

    def recent_direction_counts(self, thread_ids: list[str], *, since: datetime) -> dict[MessageDirection, int]: ...

    def apply_scores(self, thread_id: str, scores: dict[str, int]) -> ThreadRecord: ...

    def filter_options(self) -> tuple[list[str], list[str]]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _summary_values(summary: ThreadSummary) -> dict[str, object]:
    return {
        "last_message_at": summary.last_message_at,
        "last_message_direction": summary.last_message_direction,
        "avg_response_time": summary.avg_response_time,
        "responded": summary.responded,
    }


def _newest_first_key(thread: ThreadRecord) -> tuple[bool, float, str]:
    last_at = thread.last_message_at
    return (last_at is None, -(last_at.timestamp()) if last_at else 0.0, thread.thread_id)


class InMemoryThreadRepository:
    def __init__(self, *, clock: Clock = _now_utc) -> None:
        self._clock = clock
        self._lock = Lock()
        self._message_counter = count(1)
        self._threads: dict[str, ThreadRecord] = {}
        self._messages_by_thread: dict[str, list[MessageRecord]] = defaultdict(list)

    def now(self) -> datetime:
        return self._clock()

    def reset(self) -> None:
        with self._lock:
            self._message_counter = count(1)
            self._threads.clear()
            self._messages_by_thread.clear()

    def record_message(
        self,
        *,
        thread_id: str,
        operator: str,
        model: str,
        direction: MessageDirection,
        text: str,
        converted: ConvertedStatus | None,
        rule: DispatchRule,
    ) -> RecordedMessage:
        with self._lock:
            now = self._clock()
            thread = self._threads.get(thread_id)
            if thread is None:
                thread = ThreadRecord(
                    thread_id=thread_id,
                    operator=operator,
                    model=model,
                    converted=None,
                    last_message_at=None,
                    last_message_direction=None,
                    avg_response_time=None,
                    responded="No",
                    acknowledgment_score=None,
                    affection_score=None,
                    personalization_score=None,
                    sales_ability=None,
                    girl_roleplay_skill=None,
                    last_dispatched_at=None,
                    created_at=now,
                    updated_at=now,
                )

            message = MessageRecord(
                message_id=f"msg_{next(self._message_counter):06d}",
                thread_id=thread_id,
                operator=operator,
                model=model,
                direction=direction,
                text=text,
                created_at=now,
            )
            # Stable sort keeps insertion order for equal timestamps.
            messages = sorted(
                [*self._messages_by_thread[thread_id], message],
                key=lambda value: value.created_at,
            )
            summary = summarize_messages(messages)
            decision = evaluate_dispatch(
                summary=summary,
                already_dispatched=thread.last_dispatched_at is not None,
                min_incoming=rule.min_incoming,
                min_outgoing=rule.min_outgoing,
                every_message=rule.every_message,
            )

            updated = replace(
                thread,
                converted="Yes" if converted == "Yes" else thread.converted,
                last_dispatched_at=now if decision.dispatch else thread.last_dispatched_at,
                updated_at=now,
                **{name: None for name in SCORE_FIELDS},
                **_summary_values(summary),
            )
            self._messages_by_thread[thread_id] = messages
            self._threads[thread_id] = updated
            return RecordedMessage(message=message, thread=updated, dispatch=decision)

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        return self._threads.get(thread_id)

    def list_threads(self, thread_filter: ThreadFilter, *, limit: int | None = None) -> list[ThreadRecord]:
        now = self._clock()
        with self._lock:
            matched = [value for value in self._threads.values() if thread_filter.matches(value, now=now)]
        ordered = sorted(matched, key=_newest_first_key)
        return ordered[:limit] if limit is not None else ordered

    def list_messages(self, thread_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        with self._lock:
            messages = list(self._messages_by_thread.get(thread_id, []))
        return messages[-limit:] if limit is not None else messages

    def messages_for_threads(self, thread_ids: list[str]) -> dict[str, list[MessageRecord]]:
        with self._lock:
            return {thread_id: list(self._messages_by_thread.get(thread_id, [])) for thread_id in thread_ids}

    def recent_direction_counts(self, thread_ids: list[str], *, since: datetime) -> dict[MessageDirection, int]:
        counts: dict[MessageDirection, int] = {"incoming": 0, "outgoing": 0}
        with self._lock:
            for thread_id in thread_ids:
                for message in self._messages_by_thread.get(thread_id, []):
                    if message.created_at >= since:
                        counts[message.direction] += 1
        return counts

    def apply_scores(self, thread_id: str, scores: dict[str, int]) -> ThreadRecord:
        with self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                raise ThreadNotFoundError(thread_id)
            updated = replace(thread, **scores, updated_at=self._clock())
            self._threads[thread_id] = updated
            return updated

    def filter_options(self) -> tuple[list[str], list[str]]:
        with self._lock:
            operators = sorted({value.operator for value in self._threads.values()})
            models = sorted({value.model for value in self._threads.values()})
        return operators, models


class ThreadsBase(DeclarativeBase):
    pass


class _ThreadRow(ThreadsBase):
    __tablename__ = "threads"

    thread_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    operator: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    converted: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_message_direction: Mapped[str | None] = mapped_column(String(10), nullable=True)
    avg_response_time: Mapped[timedelta | None] = mapped_column(Interval, nullable=True)
    responded: Mapped[str] = mapped_column(String(3), nullable=False, default="No", index=True)
    acknowledgment_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    affection_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    personalization_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sales_ability: Mapped[int | None] = mapped_column(Integer, nullable=True)
    girl_roleplay_skill: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(ThreadsBase):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    thread_id: Mapped[str] = mapped_column(String(50), ForeignKey("threads.thread_id"), nullable=False, index=True)
    operator: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _as_utc_or_none(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


class SqlAlchemyThreadRepository:
    def __init__(self, database_url: str, *, clock: Clock = _now_utc) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for THREAD_STORE_BACKEND=postgres")
        self._clock = clock
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ThreadsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _insert(self):
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            return postgresql_insert(_ThreadRow)
        if dialect == "sqlite":
            return sqlite_insert(_ThreadRow)
        raise RuntimeError(f"unsupported database dialect for thread upserts: {dialect}")

    def now(self) -> datetime:
        return self._clock()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_MessageRow))
                session.execute(delete(_ThreadRow))

    def record_message(
        self,
        *,
        thread_id: str,
        operator: str,
        model: str,
        direction: MessageDirection,
        text: str,
        converted: ConvertedStatus | None,
        rule: DispatchRule,
    ) -> RecordedMessage:
        now = self._clock()
        with self._session() as session:
            with session.begin():
                session.execute(
                    self._insert()
                    .values(
                        thread_id=thread_id,
                        operator=operator,
                        model=model,
                        responded="No",
                        created_at=now,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(index_elements=["thread_id"])
                )
                thread = session.get(_ThreadRow, thread_id, with_for_update=True, populate_existing=True)
                if thread is None:
                    raise ThreadNotFoundError(thread_id)
                if converted == "Yes":
                    thread.converted = "Yes"
                for name in SCORE_FIELDS:
                    setattr(thread, name, None)

                message = _MessageRow(
                    thread_id=thread_id,
                    operator=operator,
                    model=model,
                    type=direction,
                    message=text,
                    date=now,
                )
                session.add(message)
                session.flush()

                rows = session.scalars(
                    select(_MessageRow)
                    .where(_MessageRow.thread_id == thread_id)
                    .order_by(_MessageRow.date.asc(), _MessageRow.id.asc())
                ).all()
                summary = summarize_messages([self._message_record(row) for row in rows])
                for key, value in _summary_values(summary).items():
                    setattr(thread, key, value)
                decision = evaluate_dispatch(
                    summary=summary,
                    already_dispatched=thread.last_dispatched_at is not None,
                    min_incoming=rule.min_incoming,
                    min_outgoing=rule.min_outgoing,
                    every_message=rule.every_message,
                )
                if decision.dispatch:
                    thread.last_dispatched_at = now
                thread.updated_at = now
                session.flush()
                return RecordedMessage(
                    message=self._message_record(message),
                    thread=self._thread_record(thread),
                    dispatch=decision,
                )

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        with self._session() as session:
            row = session.get(_ThreadRow, thread_id)
            return self._thread_record(row) if row is not None else None

    def list_threads(self, thread_filter: ThreadFilter, *, limit: int | None = None) -> list[ThreadRecord]:
        statement = select(_ThreadRow)
        if thread_filter.operators:
            statement = statement.where(_ThreadRow.operator.in_(sorted(thread_filter.operators)))
        if thread_filter.models:
            statement = statement.where(_ThreadRow.model.in_(sorted(thread_filter.models)))
        if thread_filter.start is not None:
            statement = statement.where(_ThreadRow.last_message_at >= thread_filter.start)
        if thread_filter.end is not None:
            statement = statement.where(_ThreadRow.last_message_at <= thread_filter.end)
        cutoff = thread_filter.since_cutoff(self._clock())
        if cutoff is not None:
            statement = statement.where(_ThreadRow.last_message_at >= cutoff)
        if thread_filter.analyzed_only:
            for name in CORE_SCORE_FIELDS:
                statement = statement.where(getattr(_ThreadRow, name).is_not(None))
        if thread_filter.last_message_direction is not None:
            statement = statement.where(_ThreadRow.last_message_direction == thread_filter.last_message_direction)
        statement = statement.order_by(_ThreadRow.last_message_at.desc().nulls_last(), _ThreadRow.thread_id.asc())
        if limit is not None:
            statement = statement.limit(limit)
        with self._session() as session:
            rows = session.scalars(statement).all()
            return [self._thread_record(row) for row in rows]

    def list_messages(self, thread_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        statement = (
            select(_MessageRow)
            .where(_MessageRow.thread_id == thread_id)
            .order_by(_MessageRow.date.desc(), _MessageRow.id.desc())
        )
        if limit is not None:
            statement = statement.limit(limit)
        with self._session() as session:
            rows = session.scalars(statement).all()
            return [self._message_record(row) for row in reversed(rows)]

    def messages_for_threads(self, thread_ids: list[str]) -> dict[str, list[MessageRecord]]:
        grouped: dict[str, list[MessageRecord]] = {thread_id: [] for thread_id in thread_ids}
        if not thread_ids:
            return grouped
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.thread_id.in_(thread_ids))
                .order_by(_MessageRow.date.asc(), _MessageRow.id.asc())
            ).all()
            for row in rows:
                grouped[row.thread_id].append(self._message_record(row))
        return grouped

    def recent_direction_counts(self, thread_ids: list[str], *, since: datetime) -> dict[MessageDirection, int]:
        counts: dict[MessageDirection, int] = {"incoming": 0, "outgoing": 0}
        if not thread_ids:
            return counts
        with self._session() as session:
            rows = session.execute(
                select(_MessageRow.type, func.count(_MessageRow.id))
                .where(_MessageRow.thread_id.in_(thread_ids))
                .where(_MessageRow.date >= since)
                .group_by(_MessageRow.type)
            ).all()
        for direction, total in rows:
            if direction in counts:
                counts[direction] = int(total)
        return counts

    def apply_scores(self, thread_id: str, scores: dict[str, int]) -> ThreadRecord:
        with self._session() as session:
            with session.begin():
                thread = session.get(_ThreadRow, thread_id, with_for_update=True)
                if thread is None:
                    raise ThreadNotFoundError(thread_id)
                for name, value in scores.items():
                    setattr(thread, name, value)
                thread.updated_at = self._clock()
                session.flush()
                return self._thread_record(thread)

    def filter_options(self) -> tuple[list[str], list[str]]:
        with self._session() as session:
            operators = session.scalars(select(_ThreadRow.operator).distinct().order_by(_ThreadRow.operator)).all()
            models = session.scalars(select(_ThreadRow.model).distinct().order_by(_ThreadRow.model)).all()
        return list(operators), list(models)

    @staticmethod
    def _thread_record(row: _ThreadRow) -> ThreadRecord:
        return ThreadRecord(
            thread_id=row.thread_id,
            operator=row.operator,
            model=row.model,
            converted=row.converted,  # type: ignore[arg-type]
            last_message_at=_as_utc_or_none(row.last_message_at),
            last_message_direction=row.last_message_direction,  # type: ignore[arg-type]
            avg_response_time=row.avg_response_time,
            responded=row.responded,  # type: ignore[arg-type]
            acknowledgment_score=row.acknowledgment_score,
            affection_score=row.affection_score,
            personalization_score=row.personalization_score,
            sales_ability=row.sales_ability,
            girl_roleplay_skill=row.girl_roleplay_skill,
            last_dispatched_at=_as_utc_or_none(row.last_dispatched_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=str(row.id),
            thread_id=row.thread_id,
            operator=row.operator,
            model=row.model,
            direction=row.type,  # type: ignore[arg-type]
            text=row.message,
            created_at=as_utc(row.date),
        )


def create_thread_repository(*, backend: str, database_url: str) -> ThreadRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyThreadRepository(database_url)
    if normalized == "inmemory":
        return InMemoryThreadRepository()
    raise RuntimeError(f"unsupported THREAD_STORE_BACKEND: {backend}")


def _average(values: list[float]) -> int:
    if not values:
        return 0
    return round_half_up(sum(values) / len(values))


def _percentage(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(part / total * 100)


class ThreadService:
    def __init__(self, *, repository: ThreadRepository, settings: Settings) -> None:
        self._repository = repository
        self._settings = settings
        self._rule = DispatchRule(
            min_incoming=settings.analysis_min_incoming,
            min_outgoing=settings.analysis_min_outgoing,
            every_message=settings.dispatch_every_message,
        )

    def reset(self) -> None:
        self._repository.reset()

    def record_message(self, payload: ThreadMessageCreateRequest) -> RecordedMessage:
        recorded = self._repository.record_message(
            thread_id=payload.thread_id,
            operator=payload.operator,
            model=payload.model,
            direction=payload.direction,
            text=payload.text,
            converted=payload.converted,  # type: ignore[arg-type]
            rule=self._rule,
        )
        logger.info(
            "recorded %s message %s for thread %s (dispatch=%s, reason=%s)",
            payload.direction,
            recorded.message.message_id,
            payload.thread_id,
            recorded.dispatch.dispatch,
            recorded.dispatch.reason,
        )
        return recorded

    def list_threads(self, thread_filter: ThreadFilter, *, chat_view: bool = False) -> ThreadListResponse:
        threads = self._repository.list_threads(thread_filter)
        messages = self._repository.messages_for_threads([value.thread_id for value in threads])
        now = self._repository.now()
        items: list[ThreadItem] = []
        for thread in threads:
            thread_messages = messages.get(thread.thread_id, [])
            visible = thread_messages[-self._settings.chat_view_message_limit :] if chat_view else thread_messages
            items.append(
                self.to_thread_item(thread, now=now, message_count=len(thread_messages), messages=visible)
            )
        return ThreadListResponse(items=items, total=len(items))

    def get_stats(self, thread_filter: ThreadFilter) -> StatsResponse:
        threads = self._repository.list_threads(thread_filter)
        total = len(threads)
        converted = sum(1 for value in threads if value.converted == "Yes")
        responded = sum(1 for value in threads if value.responded == "Yes")
        response_seconds = [
            value.avg_response_time.total_seconds() for value in threads if value.avg_response_time is not None
        ]

        def score_average(name: str) -> int:
            return _average([getattr(value, name) for value in threads if getattr(value, name) is not None])

        recent = self._repository.recent_direction_counts(
            [value.thread_id for value in threads],
            since=self._repository.now() - timedelta(minutes=60),
        )
        return StatsResponse(
            total_chats=total,
            total_converted=converted,
            conversion_rate=_percentage(converted, total),
            response_rate=_percentage(responded, total),
            avg_response_time=_average(response_seconds),
            avg_acknowledgment=score_average("acknowledgment_score"),
            avg_affection=score_average("affection_score"),
            avg_personalization=score_average("personalization_score"),
            avg_sales_ability=score_average("sales_ability"),
            avg_girl_roleplay_skill=score_average("girl_roleplay_skill"),
            operator_messages_60min=recent["outgoing"],
            new_chats_60min=recent["incoming"],
        )

    def filter_options(self) -> FilterOptionsResponse:
        operators, models = self._repository.filter_options()
        return FilterOptionsResponse(operators=operators, models=models)

    def apply_scores(self, thread_id: str, payload: ThreadScoresUpdateRequest) -> ThreadScoresUpdateResponse:
        updated = self._repository.apply_scores(thread_id, payload.provided_scores())
        message_count = len(self._repository.list_messages(thread_id))
        return ThreadScoresUpdateResponse(
            success=True,
            thread=self.to_thread_item(updated, now=self._repository.now(), message_count=message_count),
        )

    @staticmethod
    def to_thread_item(
        record: ThreadRecord,
        *,
        now: datetime,
        message_count: int,
        messages: list[MessageRecord] | None = None,
    ) -> ThreadItem:
        return ThreadItem(
            thread_id=record.thread_id,
            operator=record.operator,
            model=record.model,
            converted=record.converted,
            last_message_at=record.last_message_at,
            last_message_relative=format_relative_time(record.last_message_at, now=now),
            last_message_direction=record.last_message_direction,
            avg_response_time=seconds_or_none(record.avg_response_time),
            responded=record.responded,
            message_count=message_count,
            acknowledgment_score=record.acknowledgment_score,
            affection_score=record.affection_score,
            personalization_score=record.personalization_score,
            sales_ability=record.sales_ability,
            girl_roleplay_skill=record.girl_roleplay_skill,
            last_dispatched_at=record.last_dispatched_at,
            messages=[
                MessageItem(
                    id=value.message_id,
                    direction=value.direction,
                    text=value.text,
                    timestamp=value.created_at,
                )
                for value in messages or []
            ],
        )
