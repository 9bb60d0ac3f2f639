#!/usr/bin/env python3
"""Database availability group (cluster membership) handling."""
from __future__ import annotations

import logging
from typing import Callable

from spicerack.remote import RemoteExecutionError

from mailops_libs.exchange.common import (
    AutoActivationPolicy,
    CancellationToken,
    ClusterMembershipState,
    ExchangeError,
    ExchangeManagementAPI,
    MaintenanceStep,
    NodeDescriptor,
    StepFailure,
)

LOGGER = logging.getLogger(__name__)


class ClusterMembershipController:
    """Takes a node out of its database availability group for the duration of the maintenance."""

    def __init__(self, api: ExchangeManagementAPI, cancel_token: CancellationToken | None = None):
        """Init."""
        self.api = api
        self.cancel_token = cancel_token or CancellationToken()

    def get_state(self, node: NodeDescriptor) -> ClusterMembershipState | None:
        """Get the current cluster membership state, None if the node is not in any group."""
        if not node.has_cluster_membership:
            return None

        return self.api.get_cluster_membership_state(node.name)

    def suspend_membership(self, node: NodeDescriptor) -> list[StepFailure]:
        """Suspend the node in the cluster, move the active databases away and block their activation.

        All the sub-steps are attempted even if some fail, the failures are returned so they can be fixed by hand.
        A cancellation is honoured before each of them.
        """
        if not node.has_cluster_membership:
            raise ValueError(f"Node {node.name} is not part of any database availability group.")

        cluster_group = str(node.cluster_group)
        sub_steps: list[tuple[str, Callable[[], None]]] = [
            (
                f"suspend cluster node in {cluster_group}",
                lambda: self.api.suspend_cluster_node(server=node.name, cluster_group=cluster_group),
            ),
            (
                "move active databases now and disable activation",
                lambda: self.api.force_database_relocation(server=node.name),
            ),
            (
                f"set auto activation policy to {AutoActivationPolicy.BLOCKED.value}",
                lambda: self.api.set_auto_activation_policy(server=node.name, policy=AutoActivationPolicy.BLOCKED),
            ),
        ]

        failures = []
        for sub_step, action in sub_steps:
            self.cancel_token.raise_if_cancelled(node=node.name, step=MaintenanceStep.SUSPEND_CLUSTER_MEMBERSHIP)
            LOGGER.info("%s: %s", node.name, sub_step)
            try:
                action()
            except (RemoteExecutionError, ExchangeError) as error:
                LOGGER.warning("%s: unable to %s, continuing, fix it by hand: %s", node.name, sub_step, error)
                failures.append(
                    StepFailure(
                        node=node.name,
                        step=MaintenanceStep.SUSPEND_CLUSTER_MEMBERSHIP,
                        sub_step=sub_step,
                        detail=str(error),
                    )
                )

        return failures
