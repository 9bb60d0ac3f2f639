from __future__ import annotations

from unittest import mock

import pytest

from mailops_libs.exchange.common import (
    AutoActivationPolicy,
    CancellationToken,
    ExchangeManagementAPI,
    ExchangeTestUtils,
    MaintenanceCancelled,
    MaintenanceStep,
)
from mailops_libs.exchange.dag import ClusterMembershipController


def get_controller() -> ClusterMembershipController:
    return ClusterMembershipController(api=mock.create_autospec(spec=ExchangeManagementAPI, instance=True))


def test_suspend_membership_runs_all_sub_steps_in_order():
    my_controller = get_controller()

    gotten_failures = my_controller.suspend_membership(
        node=ExchangeTestUtils.get_node_descriptor(cluster_group="DAG01")
    )

    assert gotten_failures == []
    assert my_controller.api.mock_calls == [
        mock.call.suspend_cluster_node(server="MX1001", cluster_group="DAG01"),
        mock.call.force_database_relocation(server="MX1001"),
        mock.call.set_auto_activation_policy(server="MX1001", policy=AutoActivationPolicy.BLOCKED),
    ]


def test_suspend_membership_keeps_going_after_a_failure():
    my_controller = get_controller()
    my_controller.api.suspend_cluster_node.side_effect = ExchangeTestUtils.get_remote_execution_error("cluster is down")

    gotten_failures = my_controller.suspend_membership(
        node=ExchangeTestUtils.get_node_descriptor(cluster_group="DAG01")
    )

    assert len(gotten_failures) == 1
    assert gotten_failures[0].step == MaintenanceStep.SUSPEND_CLUSTER_MEMBERSHIP
    assert gotten_failures[0].sub_step == "suspend cluster node in DAG01"
    my_controller.api.force_database_relocation.assert_called_once_with(server="MX1001")
    my_controller.api.set_auto_activation_policy.assert_called_once_with(
        server="MX1001", policy=AutoActivationPolicy.BLOCKED
    )


def test_suspend_membership_raises_without_cluster_group():
    my_controller = get_controller()

    with pytest.raises(ValueError):
        my_controller.suspend_membership(node=ExchangeTestUtils.get_node_descriptor())

    my_controller.api.suspend_cluster_node.assert_not_called()


def test_get_state_without_cluster_group_does_not_query():
    my_controller = get_controller()

    assert my_controller.get_state(node=ExchangeTestUtils.get_node_descriptor()) is None
    my_controller.api.get_cluster_membership_state.assert_not_called()


def test_suspend_membership_stops_when_cancelled():
    cancel_token = CancellationToken()
    my_controller = ClusterMembershipController(
        api=mock.create_autospec(spec=ExchangeManagementAPI, instance=True), cancel_token=cancel_token
    )
    my_controller.api.suspend_cluster_node.side_effect = lambda **_kwargs: cancel_token.cancel()

    with pytest.raises(MaintenanceCancelled):
        my_controller.suspend_membership(node=ExchangeTestUtils.get_node_descriptor(cluster_group="DAG01"))

    my_controller.api.force_database_relocation.assert_not_called()
