import argparse
import logging
import logging.config
import pathlib
import os
import signal
import sys

from wrowlog.bus.bus import MeasurementBus
from wrowlog.bus.mqtt_bridge import MQTT_HOST, MQTT_PORT, MqttBridge
from wrowlog.hr.ble_client import HeartRateBLEScanner
from wrowlog.hr.heart_rate import HeartRateMonitor
from wrowlog.measurements import Device
from wrowlog.recorder.activity_recorder import TRAININGS_DIR, ActivityRecorder
from wrowlog.rows.dispatcher import Dispatcher
from wrowlog.s4.s4 import WaterRowerS4
from wrowlog.s4.s4if import DeviceNotFoundError, S4Event

logger = logging.getLogger(__name__)

PROJECT_ROOT = pathlib.Path(__file__).parent.parent.absolute()

log_dir = PROJECT_ROOT / 'logs'
loggerconfigpath = PROJECT_ROOT / 'config' / 'logging.conf'


def configure_logging() -> None:
    # disable_existing_loggers=False keeps the module loggers created at import time
    if loggerconfigpath.exists():
        os.makedirs(log_dir, exist_ok=True)
        logging.config.fileConfig(str(loggerconfigpath), defaults={'logdir': str(log_dir)}, disable_existing_loggers=False)
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


START_IMMEDIATE = "immediate"
START_FIRST_STROKE = "first-stroke"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wrowlog",
        description="Record WaterRower S4 workouts as FIT CSV files and republish live data over MQTT.",
    )
    parser.add_argument("--trainings-dir", default=TRAININGS_DIR, help="Directory for recorded .fit.csv files")
    parser.add_argument("--mqtt-host", default=MQTT_HOST)
    parser.add_argument("--mqtt-port", type=int, default=MQTT_PORT)
    parser.add_argument("--no-mqtt", action="store_true", help="Do not mirror measurements to an MQTT broker")
    parser.add_argument("--no-hrm", action="store_true", help="Do not scan for a BLE heart rate monitor")
    parser.add_argument("--start-trigger", choices=(START_IMMEDIATE, START_FIRST_STROKE), default=START_IMMEDIATE,
                        help="When to open the recording session")
    parser.add_argument("--restart-on-reset", action="store_true",
                        help="Close the session and open a new one when RESET is held on the S4")
    return parser.parse_args(argv)


class WRowLog:
    '''Owns and wires the components of one wrowlog process.'''

    def __init__(self, args: argparse.Namespace, dispatcher: Dispatcher | None = None,
                 bus: MeasurementBus | None = None, driver: WaterRowerS4 | None = None):
        self.args = args
        self.dispatcher = dispatcher or Dispatcher()
        self.bus = bus or MeasurementBus()
        self.rower = driver or WaterRowerS4(self.bus, self.dispatcher)

        devices: list[Device] = [self.rower]
        self.hr_monitor: HeartRateMonitor | None = None
        self.hrm_scanner: HeartRateBLEScanner | None = None
        if not args.no_hrm:
            self.hr_monitor = HeartRateMonitor(self.bus, self.dispatcher)
            self.hrm_scanner = HeartRateBLEScanner(self.hr_monitor)
            devices.append(self.hr_monitor)

        self.bridge = None if args.no_mqtt else MqttBridge(self.bus, args.mqtt_host, args.mqtt_port)
        self.recorder = ActivityRecorder(devices, self.bus, self.dispatcher, trainings_dir=args.trainings_dir)
        self.rower.register_callback(self.on_rower_event)

    def on_rower_event(self, event: S4Event) -> None:
        match event.type:
            case 'stroke_start' if self.args.start_trigger == START_FIRST_STROKE:
                if not self.recorder.is_recording:
                    self.recorder.start()
            case 'reset' if self.args.restart_on_reset:
                if self.recorder.is_recording:
                    logger.info("S4 reset: closing the current session and starting a new one.")
                    self.recorder.stop()
                    self.recorder.start()

    def start(self) -> None:
        # Raises DeviceNotFoundError if no S4 is connected
        self.rower.start()
        if self.bridge is not None:
            self.bridge.start()
        if self.hrm_scanner is not None:
            self.hrm_scanner.start()
        if self.args.start_trigger == START_IMMEDIATE:
            self.recorder.start()

    def run(self) -> None:
        self.dispatcher.run()

    def shutdown(self) -> None:
        logger.debug("Shutting down wrowlog components")
        try:
            self.recorder.stop()
        finally:
            self.rower.close()
            if self.hrm_scanner is not None:
                self.hrm_scanner.stop()
            if self.bridge is not None:
                self.bridge.stop()
            self.dispatcher.cancel_timers()


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = parse_args(argv)
    print("Starting wrowlog...")

    app = WRowLog(args)

    def request_stop(signal_received, frame):
        print("\nStopping wrowlog...")
        app.dispatcher.stop(signal.Signals(signal_received).name)

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    try:
        app.start()
        app.run()
    except DeviceNotFoundError as e:
        logger.error(str(e))
        print(f"[!] {e}", file=sys.stderr)
        return 1
    finally:
        app.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
