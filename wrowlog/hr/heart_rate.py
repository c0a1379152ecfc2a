import dataclasses
import threading
import time
import logging
from datetime import datetime

from wrowlog.bus.bus import MeasurementBus
from wrowlog.measurements import Device, Metric
from wrowlog.rows.dispatcher import Dispatcher
from wrowlog.rows.row_signals import HeartRateMeasured, RecordTick

logger = logging.getLogger(__name__)

# Readings older than this many seconds are treated as missing
HRM_TIMEOUT = 10


@dataclasses.dataclass(frozen=True)
class HrmInfo:
    """Descriptive state of the connected heart rate monitor, as reported over BLE."""
    address: str | None = None      # MAC address
    manufacturer: str | None = None
    model: str | None = None
    serial_nr: str | None = None
    battery_level: int | None = None
    skin_contact: str | None = None


class HeartRateMonitor(Device):
    '''
    Heart rate measurement source. Readings arrive on the BLE scanner's thread through
    receive_heart_rate(), which only posts a HeartRateMeasured signal; the measurement
    itself is updated and published on the dispatcher thread by update_heart_rate().
    '''

    type = "heart_rate_monitor"
    metrics = (Metric.HEART_RATE,)

    def __init__(self, bus: MeasurementBus | None = None, dispatcher: Dispatcher | None = None):
        super().__init__(bus)
        self._lock = threading.Lock()
        self._dispatcher = dispatcher
        self.info = HrmInfo()
        self.heart_rate_ts: float | None = None

        if dispatcher is not None:
            dispatcher.register(HeartRateMeasured, lambda sig: self.update_heart_rate(sig.bpm, sig.timestamp))
            # Registered ahead of the recorder, so a stale reading is cleared before the row is written
            dispatcher.register(RecordTick, lambda sig: self.expire_stale())

    def update_info(self, **changes) -> None:
        with self._lock:
            self.info = dataclasses.replace(self.info, **changes)
        logger.debug(f"HRM info updated: {changes}")

    def receive_heart_rate(self, hr: int) -> None:
        """Entry point for readings captured off the dispatcher thread."""
        if self._dispatcher is None:
            self.update_heart_rate(hr)
        else:
            self._dispatcher.post(HeartRateMeasured(hr))

    def update_heart_rate(self, hr: int, timestamp: float | None = None) -> None:
        with self._lock:
            self.heart_rate_ts = time.time() if timestamp is None else timestamp
        self._update(Metric.HEART_RATE, hr)

    def get_heart_rate(self) -> int:
        """Latest heart rate, or 0 when there is none or it is older than HRM_TIMEOUT."""
        with self._lock:
            ts = self.heart_rate_ts
        hr = self.value(Metric.HEART_RATE)
        if not hr or ts is None:
            return 0
        if time.time() - ts >= HRM_TIMEOUT:
            logger.debug(f"Discarding stale heart rate from {ts}")
            return 0
        return int(hr)

    def expire_stale(self) -> None:
        """Publish 0 once the last reading is older than HRM_TIMEOUT."""
        if self.value(Metric.HEART_RATE) and self.get_heart_rate() == 0:
            logger.info("No heart rate received for a while, recording 0 bpm.")
            self._update(Metric.HEART_RATE, 0)

    def connection_lost(self) -> None:
        """Called from the scanner thread when the monitor disconnects."""
        self.update_info(address=None, skin_contact=None)
        self.receive_heart_rate(0)

    def reset_measurements(self) -> None:
        super().reset_measurements()
        with self._lock:
            self.heart_rate_ts = None

    def __repr__(self):
        ts = datetime.fromtimestamp(self.heart_rate_ts).strftime('%H:%M:%S') if self.heart_rate_ts else "N/A"
        return f"<HeartRateMonitor {self.info.address or 'unpaired'} hr={self.value(Metric.HEART_RATE)} ts={ts}>"
