import pytest

from wrowlog.bus.bus import SubscribeError
from wrowlog.measurements import Measurement, Metric, Unit


def power(value):
    return Measurement(Metric.POWER, Unit.WATTS, value)


def test_publish_delivers_to_subscriber(bus):
    received = []
    bus.subscribe("waterrower/power", lambda topic, m: received.append((topic, m.value)))

    bus.publish("waterrower/power", power(100))

    assert received == [("waterrower/power", 100)]


def test_publish_only_reaches_matching_topics(bus):
    received = []
    bus.subscribe("waterrower/distance", lambda topic, m: received.append(topic))

    bus.publish("waterrower/power", power(100))

    assert received == []


def test_wildcard_subscriptions(bus):
    single_level, multi_level = [], []
    bus.subscribe("+/power", lambda topic, m: single_level.append(topic))
    bus.subscribe("#", lambda topic, m: multi_level.append(topic))

    bus.publish("waterrower/power", power(100))
    bus.publish("heart_rate_monitor/heart_rate", Measurement(Metric.HEART_RATE, Unit.BEATS_PER_MINUTE, 140))

    assert single_level == ["waterrower/power"]
    assert multi_level == ["waterrower/power", "heart_rate_monitor/heart_rate"]


def test_late_subscriber_sees_no_replay(bus):
    bus.publish("waterrower/power", power(100))
    received = []
    bus.subscribe("waterrower/power", lambda topic, m: received.append(m.value))

    assert received == []
    bus.publish("waterrower/power", power(120))
    assert received == [120]


def test_last_value_is_overwritten(bus):
    bus.publish("waterrower/power", power(100))
    bus.publish("waterrower/power", power(120))

    assert bus.last_value("waterrower/power") == power(120)
    assert bus.last_value("waterrower/distance") is None
    assert bus.topics == ["waterrower/power"]


def test_failing_subscriber_does_not_block_others(bus):
    received = []

    def broken(topic, m):
        raise RuntimeError("boom")

    bus.subscribe("waterrower/power", broken)
    bus.subscribe("waterrower/power", lambda topic, m: received.append(m.value))

    bus.publish("waterrower/power", power(100))

    assert received == [100]


def test_unsubscribe(bus):
    received = []

    def cb(topic, m):
        received.append(m.value)

    bus.subscribe("waterrower/power", cb)
    bus.unsubscribe("waterrower/power", cb)
    bus.unsubscribe("waterrower/power", cb)
    bus.publish("waterrower/power", power(100))

    assert received == []


@pytest.mark.parametrize("topic_filter", ["", "waterrower/#/power", "water#", "water+/power"])
def test_invalid_filters_are_rejected(bus, topic_filter):
    with pytest.raises(SubscribeError):
        bus.subscribe(topic_filter, lambda topic, m: None)
