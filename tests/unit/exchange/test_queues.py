from __future__ import annotations

from datetime import timedelta
from unittest import mock

import pytest
from freezegun import freeze_time

from mailops_libs.exchange.common import (
    CancellationToken,
    ExchangeManagementAPI,
    ExchangeTestUtils,
    MaintenanceCancelled,
    MaintenanceDrainTimeout,
    MaintenanceStep,
    QueueSnapshot,
)
from mailops_libs.exchange.queues import QueueDrainPoller


def get_fake_api(snapshots: list[QueueSnapshot]):
    fake_api = mock.create_autospec(spec=ExchangeManagementAPI, instance=True)
    fake_api.get_queues.side_effect = snapshots
    return fake_api


def test_drain_until_empty_retries_until_empty():
    fake_api = get_fake_api(
        snapshots=[
            ExchangeTestUtils.get_snapshot(normal=5),
            ExchangeTestUtils.get_snapshot(normal=3),
            ExchangeTestUtils.get_snapshot(normal=0),
        ]
    )
    my_poller = QueueDrainPoller(api=fake_api, check_interval=timedelta(seconds=30))

    with mock.patch("mailops_libs.exchange.queues.time.sleep") as fake_sleep:
        gotten_result = my_poller.drain_until_empty(node=ExchangeTestUtils.get_node_descriptor())

    assert gotten_result.retries == 2
    assert gotten_result.snapshot.blocking_message_count() == 0
    assert fake_api.get_queues.call_count == 3
    fake_sleep.assert_has_calls([mock.call(30.0), mock.call(30.0)])


def test_drain_until_empty_does_not_wait_when_already_empty():
    fake_api = get_fake_api(snapshots=[ExchangeTestUtils.get_snapshot()])
    my_poller = QueueDrainPoller(api=fake_api)

    with mock.patch("mailops_libs.exchange.queues.time.sleep") as fake_sleep:
        gotten_result = my_poller.drain_until_empty(node=ExchangeTestUtils.get_node_descriptor())

    assert gotten_result.retries == 0
    fake_sleep.assert_not_called()


def test_drain_until_empty_ignores_poison_and_shadow_queues():
    fake_api = get_fake_api(snapshots=[ExchangeTestUtils.get_snapshot(poison=12, shadow=7)])
    my_poller = QueueDrainPoller(api=fake_api)

    with mock.patch("mailops_libs.exchange.queues.time.sleep") as fake_sleep:
        gotten_result = my_poller.drain_until_empty(node=ExchangeTestUtils.get_node_descriptor())

    assert gotten_result.retries == 0
    assert gotten_result.snapshot.message_count_by_category()
    fake_sleep.assert_not_called()


def test_drain_until_empty_passes_the_node_name():
    fake_api = get_fake_api(snapshots=[ExchangeTestUtils.get_snapshot(server="MX1002")])
    my_poller = QueueDrainPoller(api=fake_api)

    with mock.patch("mailops_libs.exchange.queues.time.sleep"):
        my_poller.drain_until_empty(node=ExchangeTestUtils.get_node_descriptor(name="MX1002"))

    fake_api.get_queues.assert_called_once_with("MX1002")


def test_drain_until_empty_raises_on_timeout():
    fake_api = get_fake_api(snapshots=[ExchangeTestUtils.get_snapshot(normal=5)] * 10)
    my_poller = QueueDrainPoller(
        api=fake_api, check_interval=timedelta(seconds=30), timeout=timedelta(seconds=100)
    )

    with freeze_time(auto_tick_seconds=60), mock.patch("mailops_libs.exchange.queues.time.sleep"), pytest.raises(
        MaintenanceDrainTimeout
    ) as error:
        my_poller.drain_until_empty(node=ExchangeTestUtils.get_node_descriptor())

    assert error.value.step == MaintenanceStep.DRAIN_QUEUES
    assert error.value.node == "MX1001"
    assert error.value.snapshot is not None
    assert error.value.snapshot.blocking_message_count() == 5


def test_drain_until_empty_drains_before_timeout():
    fake_api = get_fake_api(
        snapshots=[ExchangeTestUtils.get_snapshot(normal=5), ExchangeTestUtils.get_snapshot(normal=0)]
    )
    my_poller = QueueDrainPoller(
        api=fake_api, check_interval=timedelta(seconds=30), timeout=timedelta(seconds=100)
    )

    with freeze_time(auto_tick_seconds=1), mock.patch("mailops_libs.exchange.queues.time.sleep"):
        gotten_result = my_poller.drain_until_empty(node=ExchangeTestUtils.get_node_descriptor())

    assert gotten_result.retries == 1


def test_drain_until_empty_raises_after_max_polls():
    fake_api = get_fake_api(snapshots=[ExchangeTestUtils.get_snapshot(normal=5)] * 10)
    my_poller = QueueDrainPoller(api=fake_api, max_polls=3)

    with mock.patch("mailops_libs.exchange.queues.time.sleep") as fake_sleep, pytest.raises(
        MaintenanceDrainTimeout, match="after 3 polls"
    ):
        my_poller.drain_until_empty(node=ExchangeTestUtils.get_node_descriptor())

    assert fake_api.get_queues.call_count == 3
    assert fake_sleep.call_count == 2


def test_drain_until_empty_stops_when_cancelled():
    cancel_token = CancellationToken()
    fake_api = get_fake_api(snapshots=[ExchangeTestUtils.get_snapshot(normal=5)] * 10)
    my_poller = QueueDrainPoller(api=fake_api, cancel_token=cancel_token)

    def _cancel_on_sleep(_seconds):
        cancel_token.cancel(reason="got SIGINT")

    with mock.patch("mailops_libs.exchange.queues.time.sleep", side_effect=_cancel_on_sleep), pytest.raises(
        MaintenanceCancelled
    ):
        my_poller.drain_until_empty(node=ExchangeTestUtils.get_node_descriptor())

    assert fake_api.get_queues.call_count == 1
