"""Shared test fixtures."""

from __future__ import annotations

import pytest
from helpers import FakeClock

from flowdeck.events import JOB_CHANNEL, TICKET_CHANNEL, Event, InProcessEventBus


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def bus() -> InProcessEventBus:
    return InProcessEventBus()


@pytest.fixture()
def recorded_events(bus: InProcessEventBus) -> list[Event]:
    """Every event published on the job and ticket channels, in order."""

    events: list[Event] = []
    for channel in (JOB_CHANNEL, TICKET_CHANNEL):
        bus.subscribe(channel, lambda _channel, event: events.append(event))
    return events
