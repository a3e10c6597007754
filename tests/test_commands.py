"""Tests for downlink encoding and dispatch."""

import json

import pytest

from ttn_bridge.commands import (
    CommandDispatcher,
    DeliveryGuarantee,
    DownlinkPriority,
    encode_set_led,
)
from ttn_bridge.config import DownlinkConfig
from ttn_bridge.errors import PublishError

NAMESPACE = "itp-project-1@ttn"
DEVICE = "uno-0004a30b001c1b03"


def test_encode_set_led_builds_downlink_envelope():
    command = encode_set_led(True, device_id=DEVICE, app="itp-project")

    assert command.target_device == DEVICE
    assert command.delivery_guarantee is DeliveryGuarantee.AT_MOST_ONCE
    assert json.loads(command.payload) == {
        "downlinks": [
            {
                "f_port": 1,
                "decoded_payload": {"app": "itp-project", "type": "led", "led": 1},
                "priority": "NORMAL",
            }
        ]
    }


def test_encode_set_led_off_and_options():
    command = encode_set_led(
        False,
        device_id=DEVICE,
        f_port=15,
        priority=DownlinkPriority.HIGH,
        guarantee=DeliveryGuarantee.AT_LEAST_ONCE,
    )

    downlink = json.loads(command.payload)["downlinks"][0]
    assert downlink["decoded_payload"]["led"] == 0
    assert downlink["f_port"] == 15
    assert downlink["priority"] == "HIGH"
    assert command.delivery_guarantee is DeliveryGuarantee.AT_LEAST_ONCE


def test_encoding_is_deterministic():
    assert encode_set_led(True, device_id=DEVICE) == encode_set_led(True, device_id=DEVICE)


@pytest.mark.parametrize("f_port", [0, 224])
def test_invalid_fport_rejected(f_port):
    with pytest.raises(ValueError):
        encode_set_led(True, device_id=DEVICE, f_port=f_port)


def test_empty_device_rejected():
    with pytest.raises(ValueError):
        encode_set_led(True, device_id="")


def test_priority_parse():
    assert DownlinkPriority.parse(" above_normal ") is DownlinkPriority.ABOVE_NORMAL
    with pytest.raises(ValueError):
        DownlinkPriority.parse("urgent")


@pytest.mark.asyncio
async def test_dispatcher_publishes_on_push_topic(fake_transport):
    transport = fake_transport()
    dispatcher = CommandDispatcher(transport, namespace=NAMESPACE, device_id=DEVICE)

    command = dispatcher.build_set_led(True)
    await dispatcher.send(command)

    assert transport.published == [
        (f"v3/{NAMESPACE}/devices/{DEVICE}/down/push", command.payload, 0)
    ]


@pytest.mark.asyncio
async def test_dispatcher_honours_downlink_config(fake_transport):
    transport = fake_transport()
    config = DownlinkConfig(f_port=2, priority="HIGHEST", qos=1, mode="replace")
    dispatcher = CommandDispatcher(
        transport, namespace=NAMESPACE, device_id=DEVICE, config=config
    )

    await dispatcher.send(dispatcher.build_set_led(False))

    topic, payload, qos = transport.published[0]
    assert topic.endswith("/down/replace")
    assert qos == 1
    downlink = json.loads(payload)["downlinks"][0]
    assert downlink["f_port"] == 2
    assert downlink["priority"] == "HIGHEST"


@pytest.mark.asyncio
async def test_dispatcher_failure_raises_publish_error(fake_transport):
    transport = fake_transport(publish_failures=1)
    dispatcher = CommandDispatcher(transport, namespace=NAMESPACE, device_id=DEVICE)

    with pytest.raises(PublishError) as excinfo:
        await dispatcher.send(dispatcher.build_set_led(True))

    assert excinfo.value.topic.endswith("/down/push")
    assert transport.published == []


@pytest.mark.asyncio
async def test_dispatcher_retries_once_when_configured(fake_transport):
    transport = fake_transport(publish_failures=1)
    config = DownlinkConfig(retry_once=True, retry_delay_seconds=0.0)
    dispatcher = CommandDispatcher(
        transport, namespace=NAMESPACE, device_id=DEVICE, config=config
    )

    await dispatcher.send(dispatcher.build_set_led(True))

    assert len(transport.published) == 1


@pytest.mark.asyncio
async def test_dispatcher_gives_up_after_single_retry(fake_transport):
    transport = fake_transport(publish_failures=2)
    config = DownlinkConfig(retry_once=True, retry_delay_seconds=0.0)
    dispatcher = CommandDispatcher(
        transport, namespace=NAMESPACE, device_id=DEVICE, config=config
    )

    with pytest.raises(PublishError):
        await dispatcher.send(dispatcher.build_set_led(True))

    assert transport.publish_failures == 0
    assert transport.published == []
