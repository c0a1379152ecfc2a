import logging
import time

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, TextIO

from wrowlog.bus.bus import MeasurementBus, SubscribeError
from wrowlog.fitcsv.encoder import data_row, definition_row, header_row
from wrowlog.measurements import Device, Measurement, Metric, to_device_epoch, topic_for
from wrowlog.rows.dispatcher import Dispatcher, PeriodicTimer
from wrowlog.rows.row_signals import RecordTick

logger = logging.getLogger(__name__)

TRAININGS_DIR = "trainings"
RECORD_INTERVAL = 1.0       # FIT files have a second-based resolution

# FIT profile values
MANUFACTURER_WATERROWER = 118
FILE_TYPE_ACTIVITY = 4
SPORT_ROWING = 15
SUB_SPORT_INDOOR_ROWING = 14

FILE_ID_FIELDS = ("serial_number", "time_created", "manufacturer", "type")
RECORD_DEFINITION_FIELDS = ("timestamp", "distance", "power", "cadence", "speed", "total_cycles", "heart_rate")
# Order of the metrics in every record data row
RECORD_METRICS = (
    Metric.DISTANCE,
    Metric.POWER,
    Metric.TOTAL_CYCLES,
    Metric.SPEED,
    Metric.CADENCE,
    Metric.HEART_RATE,
)
SESSION_FIELDS = ("timestamp", "start_time", "total_elapsed_time", "total_distance", "total_cycles", "sport", "sub_sport")
ACTIVITY_FIELDS = ("timestamp", "num_sessions")

# Widest message written to the file (session)
HEADER_FIELD_COUNT = len(SESSION_FIELDS)


@dataclass
class Session:
    start_epoch: int        # seconds since the FIT device epoch
    started_at_ms: int      # unix time in ms, also used for the file name
    path: Path
    rows_written: int = 0


class ActivityRecorder:
    '''
    Caches the latest value of every measurement the devices publish and, once a session
    has been started, writes one record row per second to a FIT CSV file.

    Rows are only written once the stroke count is non-zero, so a session that is started
    before anyone sits on the rower does not fill up with idle rows.
    '''

    def __init__(self, devices: Iterable[Device], bus: MeasurementBus, dispatcher: Dispatcher,
                 trainings_dir: str | Path = TRAININGS_DIR, clock: Callable[[], float] = time.time):
        self.devices = list(devices)
        self._bus = bus
        self._dispatcher = dispatcher
        self.trainings_dir = Path(trainings_dir)
        self._clock = clock
        self._cache: dict[Metric, Measurement] = {metric: Measurement.zero(metric) for metric in Metric}
        self._session: Session | None = None
        self._file: TextIO | None = None
        self._timer: PeriodicTimer | None = None

        for device in self.devices:
            for metric in device.metrics:
                topic = topic_for(device.type, metric)
                try:
                    bus.subscribe(topic, self._on_measurement)
                except SubscribeError as e:
                    logger.error(f"Failed to subscribe to {topic}, recording without it: {e}")

        dispatcher.register(RecordTick, lambda sig: self.tick())

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_recording(self) -> bool:
        return self._session is not None

    def cached(self, metric: Metric) -> Measurement:
        return self._cache[metric]

    def _on_measurement(self, topic: str, measurement: Measurement) -> None:
        self._cache[measurement.metric] = measurement

    def start(self) -> Session:
        if self._session is not None:
            logger.debug("Recording already in progress, ignoring start.")
            return self._session

        now = self._clock()
        started_at_ms = int(now * 1000)
        self.trainings_dir.mkdir(parents=True, exist_ok=True)
        session = Session(
            start_epoch=to_device_epoch(now),
            started_at_ms=started_at_ms,
            path=self._session_path(started_at_ms),
        )
        # Line buffered so every row reaches the file as soon as it is written
        self._file = open(session.path, "w", encoding="utf-8", buffering=1)
        self._session = session
        logger.info(f"Starting new session, recording to {session.path}")

        self._write_line(header_row(HEADER_FIELD_COUNT))
        self._write_line(definition_row(0, "file_id", FILE_ID_FIELDS))
        self._write_line(data_row(0, "file_id", [
            ("serial_number", session.start_epoch, ""),
            ("time_created", session.start_epoch, ""),
            ("manufacturer", MANUFACTURER_WATERROWER, ""),
            ("type", FILE_TYPE_ACTIVITY, ""),
        ]))
        self._write_line(definition_row(1, "record", RECORD_DEFINITION_FIELDS, trailing_blank=True))

        for device in self.devices:
            device.reset_measurements()
        self._cache = {metric: Measurement.zero(metric) for metric in Metric}

        self._timer = self._dispatcher.schedule(RECORD_INTERVAL, RecordTick, name="RecordTickTimer")
        return session

    def _session_path(self, started_at_ms: int) -> Path:
        path = self.trainings_dir / f"{started_at_ms}.fit.csv"
        suffix = 1
        # A session restarted within the same millisecond must not overwrite the previous file
        while path.exists():
            path = self.trainings_dir / f"{started_at_ms}-{suffix}.fit.csv"
            suffix += 1
        return path

    def tick(self) -> None:
        if self._session is None:
            return
        if self._cache[Metric.TOTAL_CYCLES].value == 0:
            # No stroke yet this session
            return

        fields: list[tuple[str, float, str]] = [("timestamp", to_device_epoch(self._clock()), "s")]
        for metric in RECORD_METRICS:
            measurement = self._cache[metric]
            fields.append((metric.value, measurement.value, measurement.unit.value))
        if self._write_line(data_row(1, "record", fields)):
            self._session.rows_written += 1

    def stop(self) -> Path | None:
        if self._session is None:
            logger.debug("No recording in progress, ignoring stop.")
            return None

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        session = self._session
        logger.info("Finalizing workout file")
        elapsed = to_device_epoch(self._clock()) - session.start_epoch
        self._write_line(definition_row(2, "session", SESSION_FIELDS))
        self._write_line(data_row(2, "session", [
            ("timestamp", session.start_epoch, "s"),
            ("start_time", session.start_epoch, ""),
            ("total_elapsed_time", elapsed, "s"),
            ("total_distance", self._cache[Metric.DISTANCE].value, "m"),
            ("total_cycles", self._cache[Metric.TOTAL_CYCLES].value, "cycles"),
            ("sport", SPORT_ROWING, ""),
            ("sub_sport", SUB_SPORT_INDOOR_ROWING, ""),
        ]))
        self._write_line(definition_row(3, "activity", ACTIVITY_FIELDS))
        self._write_line(data_row(3, "activity", [
            ("timestamp", session.start_epoch, ""),
            ("num_sessions", 1, ""),
        ]))

        try:
            if self._file is not None:
                self._file.close()
        except OSError as e:
            logger.error(f"Failed to close {session.path}: {e}")
        finally:
            self._file = None
            self._session = None

        logger.info(f"Session closed after {elapsed}s with {session.rows_written} records: {session.path}")
        return session.path

    def _write_line(self, line: str) -> bool:
        if self._file is None:
            return False
        try:
            self._file.write(line + "\n")
        except OSError as e:
            logger.error(f"Failed to write to {self._session.path if self._session else 'activity file'}: {e}")
            return False
        return True
