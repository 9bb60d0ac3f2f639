#!/usr/bin/env python3
"""Server component states and the services that read them."""
from __future__ import annotations

import logging
from datetime import timedelta

from spicerack.decorators import retry
from spicerack.remote import RemoteExecutionError

from mailops_libs.exchange.common import (
    FRONTEND_TRANSPORT_SERVICE,
    TRANSPORT_SERVICE,
    CancellationToken,
    ComponentState,
    ComponentStateNotReached,
    ExchangeError,
    ExchangeManagementAPI,
    MaintenanceStep,
    NodeDescriptor,
    ServerComponent,
    StepFailure,
)

LOGGER = logging.getLogger(__name__)
DEFAULT_REQUESTER = "Maintenance"


class ComponentStateToggler:
    """Changes the state of the server components of a node."""

    def __init__(self, api: ExchangeManagementAPI, requester: str = DEFAULT_REQUESTER):
        """Init."""
        self.api = api
        self.requester = requester

    def set_component_state(
        self,
        node: NodeDescriptor,
        component: ServerComponent,
        state: ComponentState,
        requester: str | None = None,
    ) -> bool:
        """Set the state of a component and wait for it to be applied.

        Setting the state the component already has does nothing and succeeds.
        Returns True if the component ended up in the given state, False otherwise.
        """
        requester = requester or self.requester
        current_state = self.api.get_component_state(server=node.name, component=component)
        if current_state == state:
            LOGGER.info("%s: component %s is already %s, nothing to do", node.name, component, state)
            return True

        LOGGER.info(
            "%s: setting component %s from %s to %s (requester %s)",
            node.name,
            component,
            current_state,
            state,
            requester,
        )
        self.api.set_component_state(server=node.name, component=component, state=state, requester=requester)
        try:
            self._wait_for_component_state(node=node, component=component, state=state)
        except ComponentStateNotReached as error:
            LOGGER.error("%s: %s", node.name, error)
            return False

        return True

    @retry(
        tries=5,
        delay=timedelta(seconds=3),
        backoff_mode="linear",
        failure_message="Server component still not in the requested state",
        exceptions=(ComponentStateNotReached,),
    )
    def _wait_for_component_state(self, node: NodeDescriptor, component: ServerComponent, state: ComponentState):
        current_state = self.api.get_component_state(server=node.name, component=component)
        if current_state != state:
            raise ComponentStateNotReached(f"Component {component} is {current_state}, expected {state}")


class ServiceRestartCoordinator:
    """Restarts the services that only read the component states when starting."""

    def __init__(self, api: ExchangeManagementAPI, cancel_token: CancellationToken | None = None):
        """Init."""
        self.api = api
        self.cancel_token = cancel_token or CancellationToken()

    @staticmethod
    def get_services_to_restart(node: NodeDescriptor) -> list[str]:
        """Services to restart for the node, nodes without transport only have the front-end one."""
        if not node.is_transport_capable:
            return [FRONTEND_TRANSPORT_SERVICE]

        services = [TRANSPORT_SERVICE]
        if node.is_frontend_transport_capable:
            services.append(FRONTEND_TRANSPORT_SERVICE)

        return services

    def restart_transport_services(self, node: NodeDescriptor) -> list[StepFailure]:
        """Restart the transport services of the node.

        Failures are only reported, the new component states will be picked up on the next restart anyhow.
        """
        failures = []
        for service_name in self.get_services_to_restart(node):
            self.cancel_token.raise_if_cancelled(node=node.name, step=MaintenanceStep.RESTART_SERVICES)
            LOGGER.info("%s: restarting service %s", node.name, service_name)
            try:
                self.api.restart_service(server_fqdn=node.fqdn, service_name=service_name)
            except (RemoteExecutionError, ExchangeError) as error:
                LOGGER.warning(
                    "%s: unable to restart service %s, it will pick up the new state on its next restart: %s",
                    node.name,
                    service_name,
                    error,
                )
                failures.append(
                    StepFailure(
                        node=node.name,
                        step=MaintenanceStep.RESTART_SERVICES,
                        sub_step=service_name,
                        detail=str(error),
                    )
                )

        return failures
