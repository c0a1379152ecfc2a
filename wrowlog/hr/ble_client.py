import asyncio
import contextlib
import logging
import threading
import time

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from wrowlog.hr.heart_rate import HeartRateMonitor

logger = logging.getLogger(__name__)

# Settings for Heart Rate Monitor (HRM) discovery
RSSI_THRESHOLD = -80        # Minimum signal strength of device to be considered eligible for connection
INITIAL_SCAN_TIMEOUT = 300  # Number of seconds for which initial scan will stay alive unless an eligible device is found
BONUS_SCAN_WINDOW = 15      # Additional window to discover other HRMs after the first HRM has been discovered and before a device is selected
                            # based on signal strength.
RECHECK_INTERVAL = 60       # Time between periodic scans after initial scan
RECHECK_DURATION = 30       # Duration of each periodic scan

LOW_FREQ_POLL_DELAY = 30    # Delay between polls of low frequency HRM data such as battery level
STOP_JOIN_TIMEOUT = 5       # Seconds stop() waits for the scanner thread to disconnect and finish

# BLE Heart Rate Service and Characteristic UUIDs
HRM_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HRM_MEASUREMENT_CHAR_UUID = "00002a37-0000-1000-8000-00805f9b34fb"
HRM_BATTERY_LEVEL_CHAR_UUID = "00002a19-0000-1000-8000-00805f9b34fb"
HRM_MANUFACTURER_CHAR_UUID = "00002a29-0000-1000-8000-00805f9b34fb"
HRM_MODEL_CHAR_UUID = "00002a24-0000-1000-8000-00805f9b34fb"
HRM_SERIAL_CHAR_UUID = "00002a25-0000-1000-8000-00805f9b34fb"

CONTACT_STATUS_MEANING = {
    0b00: "Not supported",
    0b01: "Not supported",
    0b10: "No skin contact detected",
    0b11: "Skin contact detected",
}


def parse_heart_rate(data: bytearray) -> int:
    """Decode the heart rate value of a Heart Rate Measurement (0x2A37) notification."""
    flags = data[0]
    if flags & 0x01:
        return int.from_bytes(data[1:3], byteorder="little")
    return data[1]


class HeartRateBLEScanner(threading.Thread):
    '''
    Finds the BLE heart rate monitor with the strongest signal, subscribes to its heart rate
    notifications and hands each reading to the HeartRateMonitor. Runs its own asyncio loop
    on a daemon thread and keeps rescanning after a disconnect until stop() is called.
    '''

    def __init__(self, hr_monitor: HeartRateMonitor):
        super().__init__(name="BLEHRMScannerThread", daemon=True)
        self.hr_monitor = hr_monitor
        self._stop_event = threading.Event()
        self._candidates: dict[str, tuple[BLEDevice, int]] = {}
        self._first_seen: float | None = None
        self.target_device: BLEDevice | None = None
        self.connected = False

    def run(self):
        asyncio.run(self.monitor_loop())

    async def monitor_loop(self):
        scan_window = INITIAL_SCAN_TIMEOUT
        while not self._stop_event.is_set():
            try:
                device = await self.scan_for_hrm(scan_window)
                if device is not None:
                    # Returns once the HRM disconnects
                    await self.connect_and_monitor(device)
            except Exception as e:
                logger.error(f"HRM scanner error: {e}. Scanning again in {RECHECK_INTERVAL} seconds.")
            finally:
                self.connected = False
                self.target_device = None

            scan_window = RECHECK_DURATION
            await self._sleep(RECHECK_INTERVAL)

    async def _sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_event.is_set() and time.monotonic() < deadline:
            await asyncio.sleep(min(1.0, deadline - time.monotonic()))

    def _on_advertisement(self, device: BLEDevice, adv: AdvertisementData) -> None:
        if HRM_SERVICE_UUID not in (uuid.lower() for uuid in adv.service_uuids):
            return
        if adv.rssi < RSSI_THRESHOLD:
            logger.debug(f"Ignoring HRM {device.address}: signal {adv.rssi} dB below {RSSI_THRESHOLD} dB.")
            return

        if self._first_seen is None:
            logger.info(f"Found a BLE HRM, listening {BONUS_SCAN_WINDOW} more seconds for others.")
            self._first_seen = time.monotonic()
        self._candidates[device.address] = (device, adv.rssi)
        logger.debug(f"HRM candidate {device.address} ({adv.rssi} dB)")

    def _scan_finished(self, started: float, timeout: float) -> bool:
        now = time.monotonic()
        if self._stop_event.is_set() or now - started > timeout:
            return True
        return self._first_seen is not None and now - self._first_seen > BONUS_SCAN_WINDOW

    async def scan_for_hrm(self, timeout: float) -> BLEDevice | None:
        logger.info("Scanning for BLE heart rate monitors...")
        self._candidates = {}
        self._first_seen = None

        started = time.monotonic()
        async with BleakScanner(detection_callback=self._on_advertisement, service_uuids=[HRM_SERVICE_UUID]):
            while not self._scan_finished(started, timeout):
                await asyncio.sleep(0.5)

        if not self._candidates:
            logger.info("No BLE heart rate monitor found.")
            return None

        device, rssi = max(self._candidates.values(), key=lambda candidate: candidate[1])
        logger.info(f"Selected HRM {device.address} with the strongest signal ({rssi} dB).")
        self.target_device = device
        return device

    async def connect_and_monitor(self, device):
        logger.info(f"Connecting to HRM {device.name} [{device.address}]...")
        disconnected = asyncio.Event()
        try:
            async with BleakClient(device.address, disconnected_callback=lambda _client: disconnected.set()) as client:
                self.connected = True
                self.hr_monitor.update_info(address=device.address)
                await self.fetch_static_info(client)
                await client.start_notify(HRM_MEASUREMENT_CHAR_UUID, self.handle_heart_rate)
                logger.info("Receiving heart rate notifications.")

                battery_task = asyncio.create_task(self.poll_low_frequency_data(client))
                try:
                    while not disconnected.is_set() and not self._stop_event.is_set():
                        with contextlib.suppress(asyncio.TimeoutError):
                            await asyncio.wait_for(disconnected.wait(), timeout=1.0)
                finally:
                    battery_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await battery_task
            logger.warning("HRM disconnected.")
        except BleakError as e:
            logger.warning(f"Could not connect to HRM: {e}")
        except asyncio.TimeoutError:
            logger.warning("Timed out connecting to HRM.")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected HRM connection error: {e}")
        finally:
            if self.connected:
                self.hr_monitor.connection_lost()
            self.connected = False

    async def fetch_static_info(self, client: BleakClient):
        for uuid, name in (
            (HRM_MANUFACTURER_CHAR_UUID, "manufacturer"),
            (HRM_MODEL_CHAR_UUID, "model"),
            (HRM_SERIAL_CHAR_UUID, "serial_nr"),
        ):
            try:
                value = (await client.read_gatt_char(uuid)).decode('utf-8').strip()
                self.hr_monitor.update_info(**{name: value})
            except Exception as e:
                logger.warning(f"Failed to read HRM characteristic {uuid}: {e}")

    async def poll_low_frequency_data(self, client: BleakClient):
        while True:
            try:
                battery = await client.read_gatt_char(HRM_BATTERY_LEVEL_CHAR_UUID)
                self.hr_monitor.update_info(battery_level=int(battery[0]))
            except BleakError as e:
                logger.warning(f"HRM battery level read failed: {e}")
            await asyncio.sleep(LOW_FREQ_POLL_DELAY)

    def handle_heart_rate(self, sender, data: bytearray):
        """Notification handler for 0x2A37. Runs on the scanner thread."""
        try:
            bpm = parse_heart_rate(data)
        except IndexError:
            logger.warning(f"Truncated heart rate notification: {bytes(data)!r}")
            return
        self.hr_monitor.update_info(skin_contact=CONTACT_STATUS_MEANING[(data[0] >> 1) & 0b11])
        self.hr_monitor.receive_heart_rate(bpm)

    def stop(self):
        logger.debug("Stopping BLE heart rate monitor scanner")
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=STOP_JOIN_TIMEOUT)
