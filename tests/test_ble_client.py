import asyncio

import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from wrowlog.hr.ble_client import HRM_SERVICE_UUID, RSSI_THRESHOLD, HeartRateBLEScanner, parse_heart_rate
from wrowlog.hr.heart_rate import HeartRateMonitor


def test_parse_8bit_heart_rate():
    assert parse_heart_rate(bytearray([0b00000000, 75])) == 75


def test_parse_16bit_heart_rate():
    assert parse_heart_rate(bytearray([0b00000001, 0x2C, 0x01])) == 300


def test_handle_heart_rate_updates_monitor():
    monitor = HeartRateMonitor()
    scanner = HeartRateBLEScanner(monitor)

    result = []
    monitor.receive_heart_rate = result.append
    scanner.handle_heart_rate(MagicMock(), bytearray([0b00000110, 75]))

    assert result == [75]
    assert monitor.info.skin_contact == "Skin contact detected"


def test_handle_heart_rate_ignores_truncated_payload():
    monitor = HeartRateMonitor()
    scanner = HeartRateBLEScanner(monitor)
    scanner.handle_heart_rate(MagicMock(), bytearray([0b00000000]))
    assert monitor.get_heart_rate() == 0


@pytest.mark.asyncio
async def test_connect_and_monitor_handles_exceptions_gracefully():
    monitor = HeartRateMonitor()
    scanner = HeartRateBLEScanner(monitor)

    with patch("wrowlog.hr.ble_client.BleakClient", side_effect=Exception("Mock error")):
        await scanner.connect_and_monitor(AsyncMock())

    assert not scanner.connected


def test_advertisements_below_threshold_or_without_hr_service_are_ignored():
    scanner = HeartRateBLEScanner(HeartRateMonitor())
    weak = SimpleNamespace(address="AA:AA", name="weak")
    other = SimpleNamespace(address="BB:BB", name="other")
    good = SimpleNamespace(address="CC:CC", name="good")

    scanner._on_advertisement(weak, SimpleNamespace(service_uuids=[HRM_SERVICE_UUID], rssi=RSSI_THRESHOLD - 1))
    scanner._on_advertisement(other, SimpleNamespace(service_uuids=["0000180f-0000-1000-8000-00805f9b34fb"], rssi=-40))
    scanner._on_advertisement(good, SimpleNamespace(service_uuids=[HRM_SERVICE_UUID.upper()], rssi=-60))

    assert list(scanner._candidates) == ["CC:CC"]


@pytest.mark.asyncio
async def test_scan_selects_strongest_signal():
    scanner = HeartRateBLEScanner(HeartRateMonitor())
    near = SimpleNamespace(address="11:11", name="near")
    far = SimpleNamespace(address="22:22", name="far")

    class FakeScanner:
        def __init__(self, detection_callback, service_uuids):
            self.callback = detection_callback

        async def __aenter__(self):
            self.callback(far, SimpleNamespace(service_uuids=[HRM_SERVICE_UUID], rssi=-75))
            self.callback(near, SimpleNamespace(service_uuids=[HRM_SERVICE_UUID], rssi=-50))
            return self

        async def __aexit__(self, *exc):
            return False

    with patch("wrowlog.hr.ble_client.BleakScanner", FakeScanner), patch("wrowlog.hr.ble_client.BONUS_SCAN_WINDOW", -1):
        device = await scanner.scan_for_hrm(timeout=5)

    assert device is near
    assert scanner.target_device is near


class ConnectedClient:
    """Stands in for a BleakClient that connects and then sees the monitor go away."""

    def __init__(self, address, disconnected_callback):
        self.address = address
        self.disconnected_callback = disconnected_callback

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def read_gatt_char(self, uuid):
        return bytearray(b"\x50")

    async def start_notify(self, uuid, callback):
        self.disconnected_callback(self)


@pytest.mark.asyncio
async def test_disconnect_zeroes_heart_rate():
    monitor = HeartRateMonitor()
    monitor.update_heart_rate(142)
    scanner = HeartRateBLEScanner(monitor)

    with patch("wrowlog.hr.ble_client.BleakClient", ConnectedClient):
        await scanner.connect_and_monitor(SimpleNamespace(address="C0:FF:EE:00:11:22", name="strap"))

    assert not scanner.connected
    assert monitor.get_heart_rate() == 0
    assert monitor.info.address is None


def test_stop_waits_for_scanner_thread():
    scanner = HeartRateBLEScanner(HeartRateMonitor())

    async def idle():
        while not scanner._stop_event.is_set():
            await asyncio.sleep(0.01)

    scanner.monitor_loop = idle
    scanner.start()
    scanner.stop()

    assert not scanner.is_alive()
