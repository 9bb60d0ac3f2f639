from __future__ import annotations

from datetime import timedelta
from unittest.mock import ANY

import pytest
from spicerack.administrative import Reason

from mailops_libs.alerts import remove_silence, silence_host
from mailops_libs.common import UtilsForTesting


@pytest.fixture()
def spicerack():
    return UtilsForTesting.get_fake_spicerack(UtilsForTesting.get_fake_remote())


def test_silence_host_passes_hostname(spicerack):
    expected_hostname = "mx1001"
    spicerack.admin_reason.return_value = Reason(reason="doing tests", username="testuser", hostname=expected_hostname)
    spicerack.alertmanager_hosts.return_value.downtime.return_value = "silly silence"

    silence_host(spicerack=spicerack, host_name=expected_hostname, task_id="T12345", comment="silly comment")

    spicerack.alertmanager_hosts.assert_called_with(target_hosts=[expected_hostname])


def test_silence_host_passes_task_id(spicerack):
    expected_task_id = "T12345"
    spicerack.admin_reason.return_value = Reason(reason="doing tests", username="testuser", hostname="mx1001")
    spicerack.alertmanager_hosts.return_value.downtime.return_value = "silly silence"

    silence_host(spicerack=spicerack, host_name="mx1001", task_id=expected_task_id, comment="silly comment")

    spicerack.admin_reason.assert_called_with(reason=ANY, task_id=expected_task_id)


def test_silence_host_passes_comment_and_duration(spicerack):
    expected_reason = Reason(reason="doing tests", username="testuser", hostname="mx1001")
    spicerack.admin_reason.return_value = expected_reason
    spicerack.alertmanager_hosts.return_value.downtime.return_value = "silly silence"

    silence_host(
        spicerack=spicerack,
        host_name="mx1001",
        task_id="T12345",
        comment="doing tests",
        duration=timedelta(hours=2),
    )

    spicerack.alertmanager_hosts.return_value.downtime.assert_called_with(
        reason=expected_reason, duration=timedelta(hours=2)
    )


def test_silence_host_returns_silence_id(spicerack):
    spicerack.admin_reason.return_value = Reason(reason="doing tests", username="testuser", hostname="mx1001")
    spicerack.alertmanager_hosts.return_value.downtime.return_value = "silly silence"

    assert silence_host(spicerack=spicerack, host_name="mx1001") == "silly silence"


def test_remove_silence_passes_id(spicerack):
    remove_silence(spicerack=spicerack, silence_id="silly silence")

    spicerack.alertmanager.return_value.remove_downtime.assert_called_with(downtime_id="silly silence")
