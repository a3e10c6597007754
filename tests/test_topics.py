import pytest

from ttn_bridge.topics import device_id_from_topic, downlink_topic, uplink_topic


def test_uplink_topic_template():
    assert (
        uplink_topic("itp-project-1@ttn", "uno-0004a30b001c1b03")
        == "v3/itp-project-1@ttn/devices/uno-0004a30b001c1b03/up"
    )


def test_downlink_topic_modes():
    assert downlink_topic("app@ttn", "dev-1") == "v3/app@ttn/devices/dev-1/down/push"
    assert (
        downlink_topic("app@ttn", "dev-1", mode="replace")
        == "v3/app@ttn/devices/dev-1/down/replace"
    )


@pytest.mark.parametrize("namespace, device_id", [("", "dev"), ("app@ttn", "")])
def test_empty_components_rejected(namespace, device_id):
    with pytest.raises(ValueError):
        uplink_topic(namespace, device_id)


def test_unknown_downlink_mode_rejected():
    with pytest.raises(ValueError):
        downlink_topic("app@ttn", "dev-1", mode="queue")


@pytest.mark.parametrize(
    "topic, expected",
    [
        ("v3/app@ttn/devices/dev-1/up", "dev-1"),
        ("v3/app@ttn/devices/dev-1/down/push", "dev-1"),
        ("v3/app@ttn/devices", None),
        ("application/42/device/dev-1/rx", None),
        ("data", None),
    ],
)
def test_device_id_from_topic(topic, expected):
    assert device_id_from_topic(topic) == expected
