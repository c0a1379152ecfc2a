# ---------------------------------------------------------------------------
# Based on the inonoob repo "pirowflo"
# https://github.com/inonoob/pirowflo
# Which in turn was based on the bfritscher Repo "waterrower"
# https://github.com/bfritscher/waterrower
# Reworked for wrowlog
# ---------------------------------------------------------------------------

import threading
import logging
import string
import time

import serial
import serial.tools.list_ports

from dataclasses import dataclass
from typing import Optional

from wrowlog.measurements import Metric
from wrowlog.rows.dispatcher import Dispatcher
from wrowlog.rows.row_signals import LineReceived


logger = logging.getLogger(__name__)

'''
The MEMORY_MAP lists the S4 memory registers that wrowlog reads, the metric each one
feeds, and the request that is chained after its response has been handled.

Requests are issued in two chains:
- each stroke start (SS) asks for power, whose response asks for the stroke count
- a 500ms timer asks for distance, whose response asks for the average speed
The two chains interleave freely. Responses are matched by their prefix only, so a
response cannot be attributed to a particular request.

All four registers are double (2 byte) values transmitted as 4 ASCII coded hex digits
straight after the 6 character response prefix, e.g. IDD0880064 -> power 0x0064 = 100.
'''

MEMORY_MAP = {
    '088': {'metric': Metric.POWER, 'size': 'double', 'base': 16, 'then': '140'},          # instantaneous power in watts
    '140': {'metric': Metric.TOTAL_CYCLES, 'size': 'double', 'base': 16, 'then': None},    # total strokes since reset
    '057': {'metric': Metric.DISTANCE, 'size': 'double', 'base': 16, 'then': '14A'},       # distance in metres since reset
    '14A': {'metric': Metric.SPEED, 'size': 'double', 'base': 16, 'then': None},           # instantaneous average speed in cm/s
}

# Packet identifiers as specified in Water Rower S4 S5 USB Protocol Iss 1 04.pdf.

# ACH values = Ascii coded hexadecimal
# REQUEST sent from PC to device
# RESPONSE sent from device to PC

USB_REQUEST = "USB"                # First packet to be sent in order to instruct S4 to establish communications
MODEL_INFORMATION_REQUEST = "IV?"  # Request Model Information
EXIT_REQUEST = "EXIT"              # Application is exiting, stop sending packets

WR_RESPONSE = "_WR_"                  # Hardware Type response to acknowledge USB_REQUEST and initiate sending packets
MODEL_INFORMATION_RESPONSE = "IV4"    # Model information for an S4: IV4 + Firmware Version High + Firmware Version Low (e.g. IV40210 for 02.10)
STROKE_START_RESPONSE = "SS"          # Start of stroke (just a packet - no data)
KEYPAD_RESET_RESPONSE = "AKR"         # RESET key held on the S4

SIZE_MAP = {
    'double': {'request': 'IRD', 'response': 'IDD'},
    }

SIZE_PARSE_MAP = {'double': lambda cmd: cmd[6:10]}

# USB identity of the S4 monitor
S4_VENDOR_ID = 0x04D8
S4_PRODUCT_ID = 0x000A

# SERIAL SETTINGS
SERIAL_BAUDRATE = 115200
SERIAL_READ_TIMEOUT = 0.01      # The maximum time allowed for each serial read. This ensures that the read operation
                                # does not block for too long, allowing the lock to be released promptly.
CAPTURE_IDLE_DELAY = 0.005      # Pause after an empty read to avoid a tight loop


# CUSTOM EXCEPTIONS
class DeviceNotFoundError(Exception):
    pass


# CUSTOM DATACLASS
@dataclass
class S4Event:
    type: str
    value: Optional[int] = None
    raw: Optional[str] = None

    @staticmethod
    def build(type: str, value: Optional[int] = None, raw: Optional[str] = None) -> 'S4Event':
        return S4Event(type=type, value=value, raw=raw)

    @classmethod
    def parse_line(cls, line: bytes) -> Optional['S4Event']:
        '''
        Turn one line received from the S4 into an event. Each known prefix maps to exactly
        one event type. Lines that match no prefix are dropped (None).
        '''
        try:
            cmd = line.strip().decode('utf8')
        except UnicodeDecodeError as e:
            logger.debug(f"Failed to decode line from S4: {line!r}, error: {e}")
            return None

        if cmd.startswith(WR_RESPONSE):
            return cls.build(type='wr', raw=cmd)
        elif cmd.startswith(MODEL_INFORMATION_RESPONSE):
            return cls.build(type='model', raw=cmd)
        elif cmd.startswith(STROKE_START_RESPONSE):
            return cls.build(type='stroke_start', raw=cmd)
        elif cmd.startswith(SIZE_MAP['double']['response']):
            return read_reply(cmd)
        elif cmd.startswith(KEYPAD_RESET_RESPONSE):
            return cls.build(type='reset', raw=cmd)
        else:
            logger.debug(f"Dropping unrecognised line from S4: {cmd!r}")
            return None


# HELPER FUNCTIONS
def find_port() -> str:
    '''
    Return the device path of the first serial port whose USB identity matches the S4.
    Raises DeviceNotFoundError if there is none. There is no retry.
    '''
    logger.info("Searching for serial port...")
    for port in serial.tools.list_ports.comports():
        if port.vid == S4_VENDOR_ID and port.pid == S4_PRODUCT_ID:
            logger.info(f"Serial port found: {port.device}")
            return port.device
    raise DeviceNotFoundError(
        f"No WaterRower found (USB {S4_VENDOR_ID:04x}:{S4_PRODUCT_ID:04x}). Please check the USB connection."
    )


def decode_hex(value_str: str, base: int = 16) -> int:
    """Decode an ACH field. Anything that is not a complete hex number decodes to 0."""
    if len(value_str) != 4 or any(c not in string.hexdigits for c in value_str):
        return 0
    try:
        return int(value_str, base=base)
    except ValueError:
        return 0


def read_reply(cmd: str) -> Optional[S4Event]:
    if len(cmd) < 6:
        logger.debug(f"S4 read memory response too short to contain an address: {cmd!r}")
        return None

    address = cmd[3:6]
    memory = MEMORY_MAP.get(address)
    if not memory or not cmd.startswith(SIZE_MAP[memory['size']]['response']):
        logger.debug(f"S4 read memory response for an address that is not mapped: {cmd!r}")
        return None

    value_str = SIZE_PARSE_MAP[memory['size']](cmd)
    value = decode_hex(value_str, memory['base'])
    if value == 0 and value_str != "0000":
        logger.debug(f"Could not decode value {value_str!r} from S4 response {cmd!r}, using 0")

    return S4Event.build(memory['metric'].value, value, cmd)


def get_read_request(address: str) -> str:
    if address not in MEMORY_MAP:
        raise ValueError(f"Address {address} not found in MEMORY_MAP")
    size = MEMORY_MAP[address]['size']
    return SIZE_MAP[size]['request'] + address


def parse_firmware_version(cmd: str) -> str:
    # IV4 + two digit high + two digit low, e.g. IV40210 -> 02.10
    return f"{cmd[3:5]}.{cmd[5:7]}"


class Rower(object):
    '''
    Serial transport to the S4. Owns the pyserial port and a capture thread that posts
    every received line onto the dispatcher as a LineReceived signal.
    '''

    def __init__(self, dispatcher: Dispatcher, serial_port: serial.Serial | None = None):
        self._dispatcher = dispatcher
        self._stop_event = threading.Event()
        self._serial = serial_port if serial_port is not None else serial.Serial()
        self._serial.baudrate = SERIAL_BAUDRATE
        self._serial.timeout = SERIAL_READ_TIMEOUT
        self._serial_lock = threading.RLock()
        self._capture_thread: threading.Thread | None = None

    @property
    def is_open(self) -> bool:
        with self._serial_lock:
            return bool(self._serial.is_open)

    def open(self, port: str) -> None:
        with self._serial_lock:
            if self._serial.is_open:
                logger.debug("Closing existing serial connection.")
                self._serial.close()
            self._serial.port = port
            self._serial.open()
        logger.info(f"Serial port {port} open.")

        self._stop_event.clear()
        self._capture_thread = threading.Thread(target=self._start_capturing, daemon=True, name="S4CaptureThread")
        self._capture_thread.start()

    def close(self) -> None:
        logger.debug("Closing serial communications with S4.")
        self._stop_event.set()
        with self._serial_lock:
            if self._serial.is_open:
                self._serial.close()
        if self._capture_thread and self._capture_thread.is_alive() and threading.current_thread() is not self._capture_thread:
            self._capture_thread.join(timeout=1)
        self._capture_thread = None

    def write(self, raw: str) -> None:
        if not self.is_open:
            logger.warning(f"Communication needs to be initialized first. Not sending {raw!r}.")
            return
        try:
            with self._serial_lock:
                self._serial.write(str.encode(raw.upper() + '\r\n'))
                self._serial.flush()
        except serial.SerialException as e:
            logger.error(f"Serial write communication error: {e}")

    def _start_capturing(self) -> None:
        while not self._stop_event.is_set():
            try:
                with self._serial_lock:
                    if not self._serial.is_open:
                        break
                    line = self._serial.readline()  # The read timeout keeps the lock from being held too long
            except serial.SerialException as e:
                logger.error(f"Serial read communication error: {e}. Stopping capture.")
                break

            if not line:
                time.sleep(CAPTURE_IDLE_DELAY)
                continue
            self._dispatcher.post(LineReceived(line))
        logger.debug("S4 capture loop finished.")
