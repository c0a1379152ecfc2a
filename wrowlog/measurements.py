import logging
import math

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wrowlog.bus.bus import MeasurementBus

logger = logging.getLogger(__name__)

# Garmin FIT timestamps count seconds from 1989-12-31T00:00:00Z
DEVICE_EPOCH = 631065600


class Metric(str, Enum):
    DISTANCE = "distance"
    POWER = "power"
    TOTAL_CYCLES = "total_cycles"
    SPEED = "speed"
    CADENCE = "cadence"
    SPLIT = "split"
    HEART_RATE = "heart_rate"

    def __str__(self) -> str:
        return self.value


class Unit(str, Enum):
    METRES = "m"
    WATTS = "watts"
    CYCLES = "cycles"
    METRES_PER_SECOND = "m/s"
    STROKES_PER_MINUTE = "spm"
    SECONDS_PER_500M = "s/500m"
    BEATS_PER_MINUTE = "bpm"

    def __str__(self) -> str:
        return self.value


# One fixed unit per metric. A metric's unit never changes.
METRIC_UNITS: dict[Metric, Unit] = {
    Metric.DISTANCE: Unit.METRES,
    Metric.POWER: Unit.WATTS,
    Metric.TOTAL_CYCLES: Unit.CYCLES,
    Metric.SPEED: Unit.METRES_PER_SECOND,
    Metric.CADENCE: Unit.STROKES_PER_MINUTE,
    Metric.SPLIT: Unit.SECONDS_PER_500M,
    Metric.HEART_RATE: Unit.BEATS_PER_MINUTE,
}


@dataclass(frozen=True)
class Measurement:
    metric: Metric
    unit: Unit
    value: float = 0

    @classmethod
    def zero(cls, metric: Metric) -> "Measurement":
        return cls(metric=metric, unit=METRIC_UNITS[metric], value=0)


def topic_for(device_type: str, metric: Metric) -> str:
    return f"{device_type}/{metric.value}"


def format_value(value: float) -> str:
    """
    Render a measurement value as a plain decimal string.
    Integral values lose their fractional part (100.0 -> "100"), others keep the
    shortest representation that round-trips (2.5 -> "2.5").
    """
    if isinstance(value, float):
        if not math.isfinite(value):
            return "0"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def to_device_epoch(unix_seconds: float) -> int:
    return math.floor(unix_seconds) - DEVICE_EPOCH


class Device:
    '''
    A source of measurements, such as the WaterRower S4 or a heart rate monitor.

    The device owns write access to its measurements. Every other component only
    ever sees immutable Measurement snapshots, either through the bus or through
    the measurements property.
    '''

    type: str = "device"
    metrics: tuple[Metric, ...] = ()

    def __init__(self, bus: "MeasurementBus | None" = None):
        self._bus = bus
        self._values: dict[Metric, float] = {metric: 0 for metric in self.metrics}

    @property
    def measurements(self) -> dict[Metric, Measurement]:
        return {
            metric: Measurement(metric=metric, unit=METRIC_UNITS[metric], value=value)
            for metric, value in self._values.items()
        }

    def value(self, metric: Metric) -> float:
        return self._values[metric]

    def reset_measurements(self) -> None:
        for metric in self._values:
            self._values[metric] = 0
        logger.debug(f"{self.type}: measurements reset to 0")

    def _update(self, metric: Metric, value: float) -> Measurement:
        if metric not in self._values:
            raise KeyError(f"{self.type} does not measure {metric}")
        self._values[metric] = value
        measurement = Measurement(metric=metric, unit=METRIC_UNITS[metric], value=value)
        self.publish(measurement)
        return measurement

    def publish(self, measurement: Measurement) -> None:
        if self._bus is None:
            return
        self._bus.publish(topic_for(self.type, measurement.metric), measurement)
