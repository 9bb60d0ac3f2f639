#!/usr/bin/env python3
"""Node resolution, the static facts about a node and its canonical name."""
from __future__ import annotations

import logging

from wmflib.dns import Dns, DnsError

from mailops_libs.exchange.common import (
    DnsResolutionError,
    ExchangeManagementAPI,
    ExchangeNotFound,
    NodeDescriptor,
    NodeNotFoundError,
    UnsupportedVersionError,
)

LOGGER = logging.getLogger(__name__)
DEFAULT_SUPPORTED_MAJOR_VERSION = 15


def resolve_canonical_host(dns: Dns, name: str) -> str:
    """Resolve the given name to the canonical host name (forward lookup, then reverse lookup of the address)."""
    try:
        addresses = dns.resolve_ips(name)
        canonical_names = dns.resolve_ptr(addresses[0])
    except DnsError as error:
        raise DnsResolutionError(f"Unable to resolve {name} to a canonical host name: {error}") from error

    if not canonical_names:
        raise DnsResolutionError(f"Got no reverse record for {name} ({addresses[0]})")

    canonical_name = canonical_names[0].rstrip(".")
    LOGGER.debug("Resolved %s to canonical host %s", name, canonical_name)
    return canonical_name


class NodeDescriptorResolver:
    """Resolves the static facts about a node."""

    def __init__(self, api: ExchangeManagementAPI, supported_major_version: int = DEFAULT_SUPPORTED_MAJOR_VERSION):
        """Init."""
        self.api = api
        self.supported_major_version = supported_major_version

    def resolve(self, identity: str) -> NodeDescriptor:
        """Get the descriptor of the given node, making sure it runs a supported version.

        Cluster membership is only looked up for transport capable nodes, the others can't be part of a database
        availability group.
        """
        try:
            server_record = self.api.get_server(identity)
        except ExchangeNotFound as error:
            raise NodeNotFoundError(f"Node {identity} is not known to the management plane: {error}") from error

        node = NodeDescriptor.from_records(server_record=server_record)
        if node.version.major != self.supported_major_version:
            raise UnsupportedVersionError(
                f"Node {identity} runs version {node.version}, only major version "
                f"{self.supported_major_version} is supported."
            )

        if node.is_transport_capable:
            node = NodeDescriptor.from_records(
                server_record=server_record,
                mailbox_server_record=self.api.get_mailbox_server(node.name),
            )

        LOGGER.info(
            "Resolved node %s: version %s, transport=%s, frontend transport=%s, cluster group=%s",
            node.fqdn,
            node.version,
            node.is_transport_capable,
            node.is_frontend_transport_capable,
            node.cluster_group or "none",
        )
        return node
