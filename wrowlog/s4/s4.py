# ---------------------------------------------------------------------------
# Based on the inonoob repo "pirowflo"
# https://github.com/inonoob/pirowflo
# Reworked for wrowlog
# ---------------------------------------------------------------------------

import logging
import time

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum, auto
from typing import Any, Callable

from wrowlog.bus.bus import MeasurementBus
from wrowlog.measurements import Device, Metric
from wrowlog.rows.dispatcher import Dispatcher, PeriodicTimer
from wrowlog.rows.row_signals import DistancePollDue, LineReceived
from wrowlog.s4.s4if import (
    EXIT_REQUEST,
    MEMORY_MAP,
    MODEL_INFORMATION_REQUEST,
    USB_REQUEST,
    Rower,
    S4Event,
    find_port,
    get_read_request,
    parse_firmware_version,
)

logger = logging.getLogger(__name__)

'''
WaterRowerS4 is the protocol driver for the S4 monitor.

Connection states:
    DISCONNECTED --(port opened, USB sent)--> IDENTIFYING --(first stroke start)--> POLLING

Identification is best effort: _WR_ is answered with IV? and the firmware version in the
IV4 reply is only logged.

Every line received from the S4 arrives as a LineReceived signal on the dispatcher and
is handled by handle_line(). Lines are matched on their prefix:
    _WR_      -> send IV?
    IV4       -> log firmware version
    SS        -> compute cadence, send IRD088, start the 500ms distance poll if not running
    IDD088    -> power, then send IRD140
    IDD140    -> total_cycles
    IDD057    -> distance, then send IRD14A
    IDD14A    -> speed (cm/s -> m/s) and split (s/500m)
    AKR       -> reset measurements
Anything else is dropped.
'''

DISTANCE_POLL_INTERVAL = 0.5    # Seconds between distance requests once rowing has started
POWER_ADDRESS = '088'
DISTANCE_ADDRESS = '057'


def round_half_up(value: float, places: str = "0.1") -> float:
    return float(Decimal(value).quantize(Decimal(places), rounding=ROUND_HALF_UP))


class DriverState(Enum):
    DISCONNECTED = auto()
    IDENTIFYING = auto()
    POLLING = auto()


class WaterRowerS4(Device):
    type = "waterrower"
    metrics = (
        Metric.DISTANCE,
        Metric.POWER,
        Metric.TOTAL_CYCLES,
        Metric.SPEED,
        Metric.CADENCE,
        Metric.SPLIT,
    )

    def __init__(self, bus: MeasurementBus, dispatcher: Dispatcher, rower: Rower | None = None,
                 clock: Callable[[], float] = time.time, port_finder: Callable[[], str] = find_port):
        super().__init__(bus)
        self._dispatcher = dispatcher
        self._rower = rower if rower is not None else Rower(dispatcher)
        self._clock = clock
        self._port_finder = port_finder
        self._callbacks: set[Callable[[S4Event], None]] = set()
        self._distance_timer: PeriodicTimer | None = None
        self._last_stroke_ms: int | None = None
        self.state = DriverState.DISCONNECTED
        self.firmware: str | None = None

        self._logger_cache: dict[str, Any] = {}
        self._data_logger = logging.getLogger('s4data')

        self._handlers: dict[str, Callable[[S4Event], None]] = {
            'wr': self._handle_wr,
            'model': self._handle_model,
            'stroke_start': self._handle_stroke_start,
            Metric.POWER.value: self._handle_power,
            Metric.TOTAL_CYCLES.value: self._handle_total_cycles,
            Metric.DISTANCE.value: self._handle_distance,
            Metric.SPEED.value: self._handle_speed,
            'reset': self._handle_reset,
        }

        dispatcher.register(LineReceived, lambda sig: self.handle_line(sig.raw))
        dispatcher.register(DistancePollDue, lambda sig: self.poll_distance())

    def start(self) -> None:
        """
        Find and open the S4 and ask it to start talking. DeviceNotFoundError from the
        port finder is not caught: without a rower there is nothing to drive.
        """
        if not self._rower.is_open:
            port = self._port_finder()
            self._rower.open(port)

        self.reset_measurements()
        logger.info("Initiating communication with S4 monitor.")
        self.send(USB_REQUEST)
        self.state = DriverState.IDENTIFYING

    def close(self) -> None:
        self._stop_distance_poll()
        if self._rower.is_open:
            self.send(EXIT_REQUEST)
            self._rower.close()
        if self.state is not DriverState.DISCONNECTED:
            logger.info("S4 driver closed.")
        self.state = DriverState.DISCONNECTED

    def send(self, command: str) -> None:
        self._rower.write(command)

    def reset_measurements(self) -> None:
        super().reset_measurements()
        self._last_stroke_ms = None
        self._logger_cache = {}

    @property
    def distance_poll_active(self) -> bool:
        return self._distance_timer is not None and self._distance_timer.active

    def handle_line(self, line: bytes) -> None:
        event = S4Event.parse_line(line)
        if event is None:
            return

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug(f"No handler for S4 event type: {event.type}")
            return
        handler(event)
        self._log_s4data(event)
        self.notify_callbacks(event)

    def poll_distance(self) -> None:
        self.send(get_read_request(DISTANCE_ADDRESS))

    def _handle_wr(self, evt: S4Event) -> None:
        logger.debug("S4 acknowledged USB request, asking for model information.")
        self.send(MODEL_INFORMATION_REQUEST)

    def _handle_model(self, evt: S4Event) -> None:
        self.firmware = parse_firmware_version(evt.raw or "")
        logger.info(f"Using WaterRower S4 with firmware version {self.firmware}")

    def _handle_stroke_start(self, evt: S4Event) -> None:
        if self.state is DriverState.IDENTIFYING:
            logger.info("Stroke data arriving, polling S4.")
            self.state = DriverState.POLLING

        now = round(self._clock() * 1000)
        if self._last_stroke_ms is not None:
            ms_since_last_stroke = now - self._last_stroke_ms
            if ms_since_last_stroke > 0:
                self._update(Metric.CADENCE, round_half_up(60000 / ms_since_last_stroke))
        self._last_stroke_ms = now

        self.send(get_read_request(POWER_ADDRESS))

        if not self.distance_poll_active:
            self._distance_timer = self._dispatcher.schedule(
                DISTANCE_POLL_INTERVAL, DistancePollDue, name="S4DistancePollTimer")

    def _handle_power(self, evt: S4Event) -> None:
        self._update(Metric.POWER, evt.value or 0)
        self._send_chained(POWER_ADDRESS)

    def _handle_total_cycles(self, evt: S4Event) -> None:
        self._update(Metric.TOTAL_CYCLES, evt.value or 0)

    def _handle_distance(self, evt: S4Event) -> None:
        self._update(Metric.DISTANCE, evt.value or 0)
        self._send_chained(DISTANCE_ADDRESS)

    def _handle_speed(self, evt: S4Event) -> None:
        # Delivered in cm/s
        cmps = evt.value or 0
        self._update(Metric.SPEED, cmps / 100)
        if cmps:
            self._update(Metric.SPLIT, 50000 / cmps)

    def _handle_reset(self, evt: S4Event) -> None:
        logger.info("Reset requested on the S4 monitor.")
        self.reset_measurements()

    def _send_chained(self, address: str) -> None:
        next_address = MEMORY_MAP[address]['then']
        if next_address:
            self.send(get_read_request(next_address))

    def _stop_distance_poll(self) -> None:
        if self._distance_timer is not None:
            self._distance_timer.cancel()
            self._distance_timer = None

    def register_callback(self, cb: Callable[[S4Event], None]) -> None:
        logger.debug(f"Registering S4 event callback - {cb}")
        self._callbacks.add(cb)

    def remove_callback(self, cb: Callable[[S4Event], None]) -> None:
        logger.debug(f"De-registering S4 event callback - {cb}")
        self._callbacks.discard(cb)

    def notify_callbacks(self, event: S4Event) -> None:
        for cb in list(self._callbacks):
            cb(event)

    def _log_s4data(self, evt: S4Event, level: int = logging.DEBUG) -> None:
        '''
        Logs changes in values of the data from the s4 to the s4data logger defined in logging.conf.
        Only a change of value is logged, so a steady stream of identical responses stays quiet.
        '''
        if not self._data_logger.isEnabledFor(level) or evt.value is None:
            return

        oldvalue = self._logger_cache.get(evt.type)
        if oldvalue is None:
            self._data_logger.log(level, f"{evt.type} initialised at: {evt.value!r}")
        elif oldvalue != evt.value:
            self._data_logger.log(level, f"{evt.type} updated to: {evt.value!r} from {oldvalue!r}")
        self._logger_cache[evt.type] = evt.value
