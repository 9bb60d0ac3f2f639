#!/usr/bin/env python3
"""Queue drain polling."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from mailops_libs.exchange.common import (
    CancellationToken,
    ExchangeManagementAPI,
    MaintenanceDrainTimeout,
    MaintenanceStep,
    NodeDescriptor,
    QueueCategory,
    QueueSnapshot,
)

LOGGER = logging.getLogger(__name__)
DEFAULT_DRAIN_CHECK_INTERVAL = timedelta(seconds=30)


@dataclass(frozen=True)
class DrainResult:
    """Outcome of a drain, `snapshot` is the one that showed no blocking messages."""

    retries: int
    snapshot: QueueSnapshot


class QueueDrainPoller:
    """Waits for the queues of a node to be empty, ignoring poison and shadow redundancy queues."""

    def __init__(
        self,
        api: ExchangeManagementAPI,
        check_interval: timedelta = DEFAULT_DRAIN_CHECK_INTERVAL,
        timeout: timedelta | None = None,
        max_polls: int | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        """Init.

        With no timeout and no max_polls it waits for as long as it takes.
        """
        self.api = api
        self.check_interval = check_interval
        self.timeout = timeout
        self.max_polls = max_polls
        self.cancel_token = cancel_token or CancellationToken()

    def drain_until_empty(self, node: NodeDescriptor) -> DrainResult:
        """Poll the queues of the node until there's no messages left to deliver."""
        start_time = datetime.now()
        retries = 0
        while True:
            self.cancel_token.raise_if_cancelled(node=node.name, step=MaintenanceStep.DRAIN_QUEUES)
            snapshot = self.api.get_queues(node.name)
            pending_messages = snapshot.blocking_message_count()
            if not pending_messages:
                LOGGER.info(
                    "Queues on %s are empty, took %s and %d retries to drain",
                    node.name,
                    datetime.now() - start_time,
                    retries,
                )
                return DrainResult(retries=retries, snapshot=snapshot)

            elapsed = datetime.now() - start_time
            if self.max_polls is not None and retries + 1 >= self.max_polls:
                raise MaintenanceDrainTimeout(
                    f"Queues still have {pending_messages} messages after {retries + 1} polls",
                    node=node.name,
                    step=MaintenanceStep.DRAIN_QUEUES,
                    snapshot=snapshot,
                )

            if self.timeout is not None and elapsed >= self.timeout:
                raise MaintenanceDrainTimeout(
                    f"Waited {self.timeout} for the queues to drain, but still have {pending_messages} messages",
                    node=node.name,
                    step=MaintenanceStep.DRAIN_QUEUES,
                    snapshot=snapshot,
                )

            excluded = snapshot.message_count_by_category()
            LOGGER.info(
                (
                    "Node %s still has (%d) messages queued (ignoring %d poison and %d shadow redundancy), "
                    "waiting %s (timeout=%s, elapsed=%s)..."
                ),
                node.name,
                pending_messages,
                excluded[QueueCategory.POISON],
                excluded[QueueCategory.SHADOW_REDUNDANCY],
                self.check_interval,
                self.timeout,
                elapsed,
            )
            time.sleep(self.check_interval.total_seconds())
            retries += 1
