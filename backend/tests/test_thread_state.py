from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from message_analyzer_web.thread_state import (
    InvalidFilterError,
    ThreadFilter,
    average_response_time,
    evaluate_dispatch,
    format_relative_time,
    parse_last_message_since,
    round_half_up,
    summarize_messages,
)

BASE = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _msg(direction: str, minutes: float) -> SimpleNamespace:
    return SimpleNamespace(direction=direction, created_at=BASE + timedelta(minutes=minutes))


def _thread(**overrides) -> SimpleNamespace:
    values = {
        "operator": "op-a",
        "model": "model-x",
        "last_message_at": BASE,
        "last_message_direction": "incoming",
        "acknowledgment_score": None,
        "affection_score": None,
        "personalization_score": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_average_response_time_pairs_outgoing_with_latest_pending_incoming() -> None:
    messages = [
        _msg("incoming", 0),
        _msg("incoming", 10),
        _msg("outgoing", 12),
        _msg("outgoing", 20),
        _msg("incoming", 30),
        _msg("outgoing", 36),
    ]

    # 12 - 10 = 2 min, 36 - 30 = 6 min; the outgoing at 20 has nothing pending.
    assert average_response_time(messages) == timedelta(minutes=4)
    assert average_response_time(messages) == average_response_time(list(messages))
    assert summarize_messages(messages) == summarize_messages(messages)


def test_average_response_time_is_none_without_any_pair() -> None:
    assert average_response_time([]) is None
    assert average_response_time([_msg("outgoing", 0), _msg("incoming", 5)]) is None


def test_summarize_messages_empty_thread() -> None:
    summary = summarize_messages([])

    assert summary.last_message_at is None
    assert summary.responded == "No"
    assert summary.incoming_count == 0
    assert summary.outgoing_count == 0


def test_summarize_messages_responded_tracks_last_direction() -> None:
    awaiting_reply = summarize_messages([_msg("outgoing", 0), _msg("incoming", 3)])
    answered = summarize_messages([_msg("incoming", 0), _msg("outgoing", 3)])

    assert awaiting_reply.responded == "Yes"
    assert awaiting_reply.last_message_direction == "incoming"
    assert answered.responded == "No"
    assert answered.last_message_at == BASE + timedelta(minutes=3)
    assert answered.avg_response_time == timedelta(minutes=3)


def test_evaluate_dispatch_threshold_and_latch() -> None:
    below = summarize_messages([_msg("incoming", 0), _msg("outgoing", 1)])
    reached = summarize_messages([_msg(direction, index) for index, direction in enumerate(["incoming", "outgoing"] * 3)])

    assert evaluate_dispatch(
        summary=below, already_dispatched=False, min_incoming=3, min_outgoing=3, every_message=False
    ).reason == "below_threshold"

    first = evaluate_dispatch(summary=reached, already_dispatched=False, min_incoming=3, min_outgoing=3, every_message=False)
    assert first.dispatch is True
    assert first.reason == "threshold_reached"

    repeat = evaluate_dispatch(summary=reached, already_dispatched=True, min_incoming=3, min_outgoing=3, every_message=False)
    assert repeat.dispatch is False
    assert repeat.reason == "already_dispatched"

    legacy = evaluate_dispatch(summary=reached, already_dispatched=True, min_incoming=3, min_outgoing=3, every_message=True)
    assert legacy.dispatch is True
    assert legacy.reason == "redispatch_on_message"


def test_round_half_up() -> None:
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2


def test_format_relative_time() -> None:
    assert format_relative_time(None, now=BASE) == "Unknown"
    assert format_relative_time(BASE - timedelta(seconds=42), now=BASE) == "42 sec ago"
    assert format_relative_time(BASE - timedelta(minutes=5), now=BASE) == "5 min ago"
    assert format_relative_time(BASE - timedelta(hours=1), now=BASE) == "1 hour ago"
    assert format_relative_time(BASE - timedelta(hours=5), now=BASE) == "5 hours ago"
    assert format_relative_time(BASE - timedelta(days=3), now=BASE) == "3 days ago"


def test_parse_last_message_since_buckets() -> None:
    assert parse_last_message_since("30m") == timedelta(minutes=30)
    assert parse_last_message_since("2h") == timedelta(hours=2)
    assert parse_last_message_since("24h") == timedelta(hours=24)
    assert parse_last_message_since("14d") == timedelta(days=14)
    assert parse_last_message_since("all") is None
    assert parse_last_message_since(None) is None
    with pytest.raises(InvalidFilterError):
        parse_last_message_since("90m")


def test_thread_filter_rejects_reversed_range() -> None:
    with pytest.raises(InvalidFilterError):
        ThreadFilter.build(start=BASE, end=BASE - timedelta(days=1))


def test_thread_filter_matches_each_criterion() -> None:
    thread = _thread(last_message_at=BASE - timedelta(hours=3))

    assert ThreadFilter.build().matches(thread, now=BASE)
    assert ThreadFilter.build(operators=["op-a", "op-b"]).matches(thread, now=BASE)
    assert not ThreadFilter.build(operators=["op-b"]).matches(thread, now=BASE)
    assert not ThreadFilter.build(models=["model-y"]).matches(thread, now=BASE)
    assert not ThreadFilter.build(last_message_since="2h").matches(thread, now=BASE)
    assert ThreadFilter.build(last_message_since="4h").matches(thread, now=BASE)
    assert not ThreadFilter.build(start=BASE - timedelta(hours=1)).matches(thread, now=BASE)
    assert not ThreadFilter.build(last_message_direction="outgoing").matches(thread, now=BASE)
    assert not ThreadFilter.build(analyzed_only=True).matches(thread, now=BASE)


def test_thread_filter_analyzed_only_requires_all_core_scores() -> None:
    partial = _thread(acknowledgment_score=80, affection_score=70)
    complete = _thread(acknowledgment_score=80, affection_score=70, personalization_score=60)
    only_analyzed = ThreadFilter.build(analyzed_only=True)

    assert not only_analyzed.matches(partial, now=BASE)
    assert only_analyzed.matches(complete, now=BASE)


def test_thread_filter_naive_datetimes_are_treated_as_utc() -> None:
    thread_filter = ThreadFilter.build(start=datetime(2026, 10, 17, 11, 0))

    assert thread_filter.start == datetime(2026, 10, 17, 11, 0, tzinfo=timezone.utc)
    assert thread_filter.matches(_thread(), now=BASE)
