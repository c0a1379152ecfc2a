import logging
import time

import paho.mqtt.client as mqtt

from wrowlog.bus.bus import MeasurementBus
from wrowlog.measurements import Measurement, format_value

logger = logging.getLogger(__name__)

# Settings for the connection to the MQTT broker that feeds the dashboard
MQTT_HOST = "localhost"
MQTT_PORT = 1883
MQTT_KEEPALIVE = 60
MQTT_QOS = 0
RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 30


def _reason_code_to_int(reason_code: object) -> int:
    try:
        return int(reason_code)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        pass
    for attr in ("value", "rc"):
        try:
            return int(getattr(reason_code, attr))
        except (AttributeError, TypeError, ValueError):
            continue
    return -1


class MqttBridge:
    '''
    Mirrors every measurement published on the MeasurementBus onto an MQTT broker,
    using the same topic and the value as a decimal string (e.g. "waterrower/power" -> "100").
    The bridge is best effort: broker outages are logged and never reach the rowing session.
    '''

    def __init__(self, bus: MeasurementBus, host: str = MQTT_HOST, port: int = MQTT_PORT,
                 client: mqtt.Client | None = None):
        self._bus = bus
        self.host = host
        self.port = port
        self.connected = False
        self._loop_started = False
        if client is None:
            client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=f"wrowlog-{int(time.time())}")
        self._client = client
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY, max_delay=RECONNECT_MAX_DELAY)

    def start(self) -> None:
        logger.info(f"Connecting to MQTT broker at {self.host}:{self.port}")
        try:
            # connect_async lets the network loop keep retrying if the broker is not up yet
            self._client.connect_async(self.host, self.port, keepalive=MQTT_KEEPALIVE)
            self._client.loop_start()
            self._loop_started = True
        except Exception as e:
            logger.error(f"MQTT bridge could not start: {e}")
            return
        self._bus.subscribe("#", self.on_measurement)

    def stop(self) -> None:
        self._bus.unsubscribe("#", self.on_measurement)
        if not self._loop_started:
            return
        logger.debug("Disconnecting from MQTT broker")
        try:
            self._client.disconnect()
            self._client.loop_stop()
        except Exception as e:
            logger.warning(f"Error while disconnecting from MQTT broker: {e}")
        self._loop_started = False
        self.connected = False

    def on_measurement(self, topic: str, measurement: Measurement) -> None:
        if not self.connected:
            return
        info = self._client.publish(topic, format_value(measurement.value), qos=MQTT_QOS)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"MQTT publish failed rc={info.rc} topic={topic}")

    def _on_connect(self, _client, _userdata, _flags, reason_code, _properties=None) -> None:
        rc = _reason_code_to_int(reason_code)
        self.connected = rc == 0
        if self.connected:
            logger.info("MQTT connected")
        else:
            logger.warning(f"MQTT connect returned rc={rc}")

    def _on_disconnect(self, _client, _userdata, disconnect_flags, reason_code, _properties=None) -> None:
        self.connected = False
        logger.info(f"MQTT disconnected rc={_reason_code_to_int(reason_code)} flags={disconnect_flags}")
