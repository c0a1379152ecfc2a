import pytest

from wrowlog.bus.bus import MeasurementBus
from wrowlog.hr.heart_rate import HeartRateMonitor
from wrowlog.rows.dispatcher import Dispatcher
from wrowlog.s4.s4 import WaterRowerS4

START_TIME = 1734012982.0   # 2024-12-12T14:16:22Z


class FakeClock:
    """Callable clock returning unix seconds that only moves when told to."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRower:
    """Stands in for the serial transport and records every command written."""

    def __init__(self):
        self.is_open = False
        self.port = None
        self.writes: list[str] = []

    def open(self, port: str) -> None:
        self.port = port
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    def write(self, raw: str) -> None:
        if self.is_open:
            self.writes.append(raw)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return MeasurementBus()


@pytest.fixture
def dispatcher():
    d = Dispatcher()
    yield d
    d.cancel_timers()


@pytest.fixture
def fake_rower():
    return FakeRower()


@pytest.fixture
def driver(bus, dispatcher, fake_rower, clock):
    s4 = WaterRowerS4(bus, dispatcher, rower=fake_rower, clock=clock, port_finder=lambda: "/dev/ttyACM0")
    s4.start()
    fake_rower.writes.clear()
    yield s4
    s4.close()


@pytest.fixture
def heart_rate_monitor(bus, dispatcher):
    return HeartRateMonitor(bus, dispatcher)
