r"""Mail operations Exchange - show the maintenance related status of a node

Shows the server component states, the queues and the cluster membership of the node. It does not change anything.

Usage example: mailops.exchange.show_maintenance_status \
    --fqdn mx1001.corp.example.org

"""
from __future__ import annotations

import argparse
import logging
import socket

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase

from mailops_libs.common import (
    MAILOPS_CONFIG_FILE_NAME,
    CommonOpts,
    MailopsCookbookRunnerBase,
    add_common_opts,
    parser_type_str_fqdn,
    with_common_opts,
)
from mailops_libs.exchange.common import ExchangeManagementAPI, QueueCategory, ServerComponent
from mailops_libs.exchange.dag import ClusterMembershipController
from mailops_libs.exchange.maintenance import MaintenanceConfig
from mailops_libs.exchange.nodes import NodeDescriptorResolver

LOGGER = logging.getLogger(__name__)


class ShowMaintenanceStatus(CookbookBase):
    __doc__ = __doc__

    def argument_parser(self):

        parser = super().argument_parser()
        add_common_opts(parser)
        parser.add_argument(
            "--fqdn",
            required=False,
            default=socket.getfqdn(),
            type=parser_type_str_fqdn,
            help="FQDN of the node to show. Default is the local host (%(default)s).",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> MailopsCookbookRunnerBase:

        return with_common_opts(
            self.spicerack,
            args,
            ShowMaintenanceStatusRunner,
        )(
            fqdn=args.fqdn,
            spicerack=self.spicerack,
        )


class ShowMaintenanceStatusRunner(MailopsCookbookRunnerBase):

    def __init__(self, common_opts: CommonOpts, fqdn: str, spicerack: Spicerack):

        self.fqdn = fqdn
        super().__init__(spicerack=spicerack, common_opts=common_opts)
        config = MaintenanceConfig.from_dict(self.mailops_config)
        if not config.management_node:
            raise Exception(f"No exchange.management_node set in {MAILOPS_CONFIG_FILE_NAME}, can't continue.")

        self.api = ExchangeManagementAPI(remote=spicerack.remote(), management_node_fqdn=config.management_node)
        self.resolver = NodeDescriptorResolver(api=self.api, supported_major_version=config.supported_major_version)

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for node {self.fqdn}"

    def run(self) -> None:

        node = self.resolver.resolve(self.fqdn)
        LOGGER.info(
            "Node %s (%s): version %s, transport=%s, frontend transport=%s",
            node.name,
            node.fqdn,
            node.version,
            node.is_transport_capable,
            node.is_frontend_transport_capable,
        )

        for component in ServerComponent:
            LOGGER.info("  %s: %s", component, self.api.get_component_state(server=node.name, component=component))

        if node.is_transport_capable:
            snapshot = self.api.get_queues(node.name)
            for queue in snapshot.queues:
                LOGGER.info("  queue %s (%s): %d messages", queue.queue_id, queue.category, queue.message_count)

            counts = snapshot.message_count_by_category()
            LOGGER.info(
                "  %d messages still to deliver (plus %d poison, %d shadow redundancy)",
                snapshot.blocking_message_count(),
                counts[QueueCategory.POISON],
                counts[QueueCategory.SHADOW_REDUNDANCY],
            )

        cluster_state = ClusterMembershipController(api=self.api).get_state(node)
        if cluster_state is None:
            LOGGER.info("  not part of any database availability group")
        else:
            LOGGER.info(
                "  database availability group %s: suspended=%s, auto activation policy=%s, activation disabled=%s",
                cluster_state.cluster_group,
                cluster_state.suspended,
                cluster_state.auto_activation_policy,
                cluster_state.activation_disabled_and_move_now,
            )
