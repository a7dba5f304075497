from __future__ import annotations

import json
from datetime import UTC, datetime

import allure

from flowdeck.events import (
    JOB_CHANNEL,
    TICKET_CHANNEL,
    EventKind,
    InProcessEventBus,
    JobQueued,
    NullEventBus,
    QueueEmpty,
    StageCompleted,
)

pytestmark = [
    allure.epic("Events"),
    allure.feature("Channel Bus"),
]


def test_message_is_flat_json_with_type_and_timestamp() -> None:
    event = StageCompleted(
        ticket_id="T-1",
        project_id="P-1",
        stage={"id": "T-1-stage-0", "name": "Analyzing", "status": "completed"},
        percent_complete=10,
        estimated_remaining_minutes=9,
        timestamp=datetime(2026, 10, 16, 9, 0, tzinfo=UTC),
    )

    message = event.to_message()

    assert message["type"] == "progress:stage-completed"
    assert message["timestamp"] == "2026-10-16T09:00:00+00:00"
    assert message["ticket_id"] == "T-1"
    assert message["stage"]["name"] == "Analyzing"
    assert json.loads(json.dumps(message)) == message


def test_every_kind_has_a_unique_value() -> None:
    values = [kind.value for kind in EventKind]

    assert len(values) == len(set(values))
    assert QueueEmpty().to_message()["type"] == "queue:empty"


def test_subscribers_receive_only_their_channel_and_kinds() -> None:
    bus = InProcessEventBus()
    job_events: list[str] = []
    queued_only: list[str] = []
    ticket_events: list[str] = []
    bus.subscribe(JOB_CHANNEL, lambda _channel, event: job_events.append(event.kind.value))
    bus.subscribe(
        JOB_CHANNEL,
        lambda _channel, event: queued_only.append(event.job_id),
        kinds=(EventKind.JOB_QUEUED,),
    )
    bus.subscribe(TICKET_CHANNEL, lambda _channel, event: ticket_events.append(event.kind.value))

    bus.publish(JOB_CHANNEL, JobQueued(job_id="job-1", priority="high", command="claude"))
    bus.publish(JOB_CHANNEL, QueueEmpty())

    assert job_events == ["job:queued", "queue:empty"]
    assert queued_only == ["job-1"]
    assert ticket_events == []


def test_failing_handler_is_logged_and_others_still_run(caplog) -> None:
    bus = InProcessEventBus()
    received: list[str] = []

    def _explode(_channel, _event) -> None:
        raise RuntimeError("bridge offline")

    bus.subscribe(JOB_CHANNEL, _explode)
    bus.subscribe(JOB_CHANNEL, lambda _channel, event: received.append(event.kind.value))

    bus.publish(JOB_CHANNEL, QueueEmpty())

    assert received == ["queue:empty"]
    assert "Event handler failed for queue:empty" in caplog.text


def test_unsubscribe_stops_delivery() -> None:
    bus = InProcessEventBus()
    received: list[str] = []
    subscription = bus.subscribe(JOB_CHANNEL, lambda _channel, event: received.append("x"))

    subscription.unsubscribe()
    bus.publish(JOB_CHANNEL, QueueEmpty())
    NullEventBus().publish(JOB_CHANNEL, QueueEmpty())

    assert received == []
