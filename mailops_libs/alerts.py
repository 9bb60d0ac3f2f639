#!/usr/bin/env python3
"""Alert silencing related library functions."""
from __future__ import annotations

import logging
from datetime import timedelta

from spicerack import Spicerack

SilenceID = str

LOGGER = logging.getLogger(__name__)


def silence_host(
    spicerack: Spicerack,
    host_name: str,
    duration: timedelta = timedelta(hours=4),
    comment: str | None = None,
    task_id: str | None = None,
) -> SilenceID:
    """Silence a hosts alerts in alertmanager.

    Examples of 'host_name':
    * mx1001
    * mx1001.corp.example.org
    """
    reason = spicerack.admin_reason(reason=comment or "No comment", task_id=task_id)
    alertmanager_hosts = spicerack.alertmanager_hosts(target_hosts=[host_name])
    silence_id = alertmanager_hosts.downtime(reason=reason, duration=duration)
    LOGGER.info("Silenced alerts for %s for %s (silence %s)", host_name, duration, silence_id)
    return silence_id


def remove_silence(spicerack: Spicerack, silence_id: SilenceID) -> None:
    """Remove an alertmanager silence."""
    silence_manager = spicerack.alertmanager()
    silence_manager.remove_downtime(downtime_id=silence_id)
