#!/usr/bin/env python3
"""Redirection of the undelivered messages of a node to another one."""
from __future__ import annotations

import logging

from wmflib.dns import Dns

from mailops_libs.exchange.common import (
    ExchangeManagementAPI,
    InvalidTargetError,
    NodeDescriptor,
    NodeNotFoundError,
)
from mailops_libs.exchange.nodes import NodeDescriptorResolver, resolve_canonical_host

LOGGER = logging.getLogger(__name__)


class MessageRedirector:
    """Moves the messages still queued on a node to a validated peer."""

    def __init__(self, api: ExchangeManagementAPI, dns: Dns, resolver: NodeDescriptorResolver):
        """Init."""
        self.api = api
        self.dns = dns
        self.resolver = resolver

    def validate_target(self, source: NodeDescriptor, target_name: str) -> NodeDescriptor:
        """Make sure the target is a canonical host, and a transport node other than the source.

        Only reads, so it's safe to call before changing anything.
        """
        canonical_host = resolve_canonical_host(dns=self.dns, name=target_name)
        try:
            target = self.resolver.resolve(canonical_host)
        except NodeNotFoundError as error:
            raise InvalidTargetError(
                f"Redirect target {target_name} ({canonical_host}) is not a known node: {error}"
            ) from error

        if not target.is_transport_capable:
            raise InvalidTargetError(f"Redirect target {target.fqdn} is not a transport node.")

        if target.name.lower() == source.name.lower():
            raise InvalidTargetError(f"Redirect target {target.fqdn} is the node being put in maintenance.")

        LOGGER.info("Redirect target %s validated (canonical host %s)", target_name, target.fqdn)
        return target

    def redirect(self, source: NodeDescriptor, target: NodeDescriptor) -> None:
        """Redirect the queued messages, the following queue drain is what confirms they left."""
        LOGGER.info("Redirecting the queued messages from %s to %s", source.name, target.fqdn)
        self.api.redirect_messages(source=source.name, target=target.fqdn)
