import logging
import threading

from typing import Callable

from paho.mqtt.client import topic_matches_sub

from wrowlog.measurements import Measurement

logger = logging.getLogger(__name__)

'''
The MeasurementBus decouples the devices that produce measurements from the components
that consume them (the activity recorder, the MQTT bridge for the dashboard).

Topics are "<device type>/<metric>", e.g. "waterrower/power". Subscriptions use MQTT
topic filter syntax so a consumer can ask for "waterrower/+" or "#".

Each publish delivers the latest value to the subscribers that are registered at that
moment. Nothing is queued or replayed: the bus only remembers the last value per topic
for inspection.
'''

Subscriber = Callable[[str, Measurement], None]


class SubscribeError(Exception):
    pass


def validate_topic_filter(topic_filter: str) -> None:
    if not topic_filter:
        raise SubscribeError("Topic filter must not be empty")
    levels = topic_filter.split("/")
    for i, level in enumerate(levels):
        if "#" in level and (level != "#" or i != len(levels) - 1):
            raise SubscribeError(f"Invalid use of '#' in topic filter {topic_filter!r}")
        if "+" in level and level != "+":
            raise SubscribeError(f"Invalid use of '+' in topic filter {topic_filter!r}")


class MeasurementBus:

    def __init__(self):
        self._lock = threading.RLock()
        self._subscribers: list[tuple[str, Subscriber]] = []
        self._last: dict[str, Measurement] = {}

    def subscribe(self, topic_filter: str, callback: Subscriber) -> None:
        validate_topic_filter(topic_filter)
        with self._lock:
            self._subscribers.append((topic_filter, callback))
        logger.debug(f"Subscribed {callback} to {topic_filter}")

    def unsubscribe(self, topic_filter: str, callback: Subscriber) -> None:
        with self._lock:
            try:
                self._subscribers.remove((topic_filter, callback))
            except ValueError:
                logger.debug(f"No subscription of {callback} to {topic_filter} to remove")

    def publish(self, topic: str, measurement: Measurement) -> None:
        with self._lock:
            self._last[topic] = measurement
            subscribers = [cb for topic_filter, cb in self._subscribers if topic_matches_sub(topic_filter, topic)]

        for cb in subscribers:
            try:
                cb(topic, measurement)
            except Exception:
                logger.exception(f"Subscriber {cb} failed handling {topic}")

    def last_value(self, topic: str) -> Measurement | None:
        with self._lock:
            return self._last.get(topic)

    @property
    def topics(self) -> list[str]:
        with self._lock:
            return sorted(self._last)
