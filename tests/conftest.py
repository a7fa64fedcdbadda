"""Shared fixtures: manual clocks and an OptionsActivity factory."""

from datetime import datetime, timedelta, timezone

import pytest

from libs.flowguard.models import OptionsActivity


class ManualClock:
    def __init__(self, start=0.0):
        self.t = start

    def __call__(self):
        return self.t

    def advance(self, dt):
        self.t += dt


class StepClock:
    """datetime clock that moves forward one minute per call."""

    def __init__(self, start=datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc)):
        self.t = start

    def __call__(self):
        self.t = self.t + timedelta(minutes=1)
        return self.t


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def step_clock():
    return StepClock()


@pytest.fixture
def activity():
    def make(symbol="AAPL", option_type="CALL", premium=150_000.0, volume=100.0,
             open_interest=1_000.0, strike=200.0, spot_price=195.0):
        now = datetime.now(timezone.utc)
        return OptionsActivity(
            symbol=symbol,
            option_type=option_type,
            strike=strike,
            expiration=now + timedelta(days=7),
            volume=volume,
            open_interest=open_interest,
            premium=premium,
            spot_price=spot_price,
            timestamp=now,
            source="test",
        )
    return make
