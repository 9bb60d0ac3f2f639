#!/usr/bin/env python3
"""Putting a single mail node in maintenance.

The orchestrator validates everything it can before changing anything, then walks the node through the steps for its
role:

* transport nodes: HubTransport to Draining, redirect the queued messages, suspend the cluster membership (if any),
  wait for the queues to drain, ServerWideOffline to Inactive, restart the transport services.
* front-end only nodes: ServerWideOffline to Inactive, restart the front-end transport service.

Failures of the cluster membership and service restart steps are reported but don't stop the run, as by then the
component states already took the node out of service.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import IntEnum
from typing import Any, Callable

from spicerack.remote import RemoteExecutionError
from wmflib.dns import Dns

from mailops_libs.common import ArgparsableEnum
from mailops_libs.exchange.common import (
    CancellationToken,
    ComponentState,
    ExchangeError,
    ExchangeManagementAPI,
    MaintenanceCancelled,
    MaintenanceDrainTimeout,
    MaintenanceError,
    MaintenancePreconditionError,
    MaintenanceStep,
    MaintenanceStepFailed,
    MissingRedirectTarget,
    NodeDescriptor,
    ServerComponent,
    StepFailure,
)
from mailops_libs.exchange.components import DEFAULT_REQUESTER, ComponentStateToggler, ServiceRestartCoordinator
from mailops_libs.exchange.dag import ClusterMembershipController
from mailops_libs.exchange.nodes import DEFAULT_SUPPORTED_MAJOR_VERSION, NodeDescriptorResolver
from mailops_libs.exchange.queues import DEFAULT_DRAIN_CHECK_INTERVAL, DrainResult, QueueDrainPoller
from mailops_libs.exchange.redirect import MessageRedirector

LOGGER = logging.getLogger(__name__)


class MaintenanceState(ArgparsableEnum):
    """States of the maintenance orchestration."""

    VALIDATING = "Validating"
    TRANSPORT_PATH = "TransportPath"
    FRONTEND_ONLY_PATH = "FrontendOnlyPath"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


class MaintenanceExitCode(IntEnum):
    """Exit codes of the maintenance cookbook."""

    OK = 0
    COMPLETED_WITH_FAILURES = 10
    VALIDATION_FAILED = 11
    STEP_FAILED = 12
    DRAIN_TIMEOUT = 13
    CANCELLED = 14

    @classmethod
    def from_error(cls, error: MaintenanceError) -> "MaintenanceExitCode":
        """Get the exit code for a run that stopped with the given error."""
        if isinstance(error, MaintenancePreconditionError):
            return cls.VALIDATION_FAILED

        if isinstance(error, MaintenanceCancelled):
            return cls.CANCELLED

        if isinstance(error, MaintenanceDrainTimeout):
            return cls.DRAIN_TIMEOUT

        return cls.STEP_FAILED


@dataclass(frozen=True)
class MaintenanceConfig:
    """Maintenance settings, from the `exchange` section of the mailops config.

    Example of config:
    exchange:
      management_node: mgmt1001.corp.example.org
      supported_major_version: 15
      drain_check_interval_seconds: 30
      drain_timeout_seconds: 7200
      requester: Maintenance
    """

    management_node: str | None = None
    supported_major_version: int = DEFAULT_SUPPORTED_MAJOR_VERSION
    drain_check_interval: timedelta = DEFAULT_DRAIN_CHECK_INTERVAL
    drain_timeout: timedelta | None = None
    drain_max_polls: int | None = None
    requester: str = DEFAULT_REQUESTER

    @classmethod
    def from_dict(cls, mailops_config: dict[str, Any]) -> "MaintenanceConfig":
        """Get the config from the loaded mailops config file contents."""
        exchange_config = mailops_config.get("exchange") or {}
        drain_timeout = None
        if exchange_config.get("drain_timeout_seconds") is not None:
            drain_timeout = timedelta(seconds=float(exchange_config["drain_timeout_seconds"]))
            if drain_timeout <= timedelta(0):
                raise ValueError(f"drain_timeout_seconds has to be positive, got {drain_timeout.total_seconds()}")

        drain_max_polls = None
        if exchange_config.get("drain_max_polls") is not None:
            drain_max_polls = int(exchange_config["drain_max_polls"])
            if drain_max_polls <= 0:
                raise ValueError(f"drain_max_polls has to be positive, got {drain_max_polls}")

        return cls(
            management_node=exchange_config.get("management_node"),
            supported_major_version=int(
                exchange_config.get("supported_major_version", DEFAULT_SUPPORTED_MAJOR_VERSION)
            ),
            drain_check_interval=timedelta(
                seconds=float(
                    exchange_config.get(
                        "drain_check_interval_seconds", DEFAULT_DRAIN_CHECK_INTERVAL.total_seconds()
                    )
                )
            ),
            drain_timeout=drain_timeout,
            drain_max_polls=drain_max_polls,
            requester=str(exchange_config.get("requester", DEFAULT_REQUESTER)),
        )


@dataclass(frozen=True)
class MaintenanceRequest:
    """What node to put in maintenance, and where to send its queued messages."""

    target_node: str
    redirect_target: str | None = None


@dataclass(frozen=True)
class MaintenanceReport:
    """Outcome of a maintenance run that got to the end."""

    node: NodeDescriptor
    state: MaintenanceState
    completed_steps: tuple[MaintenanceStep, ...]
    drain_result: DrainResult | None = None
    recoverable_failures: tuple[StepFailure, ...] = ()

    @property
    def exit_code(self) -> MaintenanceExitCode:
        """Exit code for this run."""
        if self.recoverable_failures:
            return MaintenanceExitCode.COMPLETED_WITH_FAILURES

        return MaintenanceExitCode.OK


class MaintenanceOrchestrator:
    """Puts one node in maintenance, in the order its role requires."""

    def __init__(
        self,
        api: ExchangeManagementAPI,
        dns: Dns,
        config: MaintenanceConfig | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        """Init."""
        self.config = config or MaintenanceConfig()
        self.cancel_token = cancel_token or CancellationToken()
        self.resolver = NodeDescriptorResolver(api=api, supported_major_version=self.config.supported_major_version)
        self.redirector = MessageRedirector(api=api, dns=dns, resolver=self.resolver)
        self.cluster_controller = ClusterMembershipController(api=api, cancel_token=self.cancel_token)
        self.toggler = ComponentStateToggler(api=api, requester=self.config.requester)
        self.poller = QueueDrainPoller(
            api=api,
            check_interval=self.config.drain_check_interval,
            timeout=self.config.drain_timeout,
            max_polls=self.config.drain_max_polls,
            cancel_token=self.cancel_token,
        )
        self.restarter = ServiceRestartCoordinator(api=api, cancel_token=self.cancel_token)
        self.state = MaintenanceState.VALIDATING
        self._completed_steps: list[MaintenanceStep] = []
        self._failures: list[StepFailure] = []

    @property
    def last_completed_step(self) -> MaintenanceStep | None:
        """The last step that finished, None if none did."""
        return self._completed_steps[-1] if self._completed_steps else None

    def validate(self, request: MaintenanceRequest) -> tuple[NodeDescriptor, NodeDescriptor | None]:
        """Check everything that can be checked before changing anything.

        Returns the node and the redirect target (None for nodes without transport, they have nothing to redirect).
        A redirect target is always validated when given, even if the node will not use it.
        """
        node = self.resolver.resolve(request.target_node)
        self._completed_steps.append(MaintenanceStep.RESOLVE_NODE)
        if not request.redirect_target:
            if node.is_transport_capable:
                raise MissingRedirectTarget(
                    f"Node {node.name} is a transport node, a redirect target is needed for its queued messages."
                )

            return node, None

        target = self.redirector.validate_target(source=node, target_name=request.redirect_target)
        self._completed_steps.append(MaintenanceStep.VALIDATE_REDIRECT_TARGET)
        if not node.is_transport_capable:
            LOGGER.info("Node %s has no transport, not redirecting anything to %s", node.name, target.fqdn)
            return node, None

        return node, target

    def run(self, request: MaintenanceRequest) -> MaintenanceReport:
        """Put the node in maintenance.

        Raises a MaintenancePreconditionError if any check fails (nothing was changed), or a MaintenanceStepFailed
        if something failed after changes started.
        """
        self.state = MaintenanceState.VALIDATING
        self._completed_steps = []
        self._failures = []
        try:
            node, target = self.validate(request)
        except MaintenancePreconditionError as error:
            self.state = MaintenanceState.ABORTED
            LOGGER.error("Not putting %s in maintenance, nothing was changed: %s", request.target_node, error)
            raise
        except (RemoteExecutionError, ExchangeError) as error:
            self.state = MaintenanceState.ABORTED
            LOGGER.error("Unable to validate %s, nothing was changed: %s", request.target_node, error)
            raise MaintenancePreconditionError(f"Unable to validate node {request.target_node}: {error}") from error

        drain_result = None
        try:
            if node.is_transport_capable and target is not None:
                self.state = MaintenanceState.TRANSPORT_PATH
                drain_result = self._run_transport_path(node=node, target=target)
            else:
                self.state = MaintenanceState.FRONTEND_ONLY_PATH
                self._run_frontend_only_path(node=node)

        except MaintenanceStepFailed as error:
            if error.last_completed_step is None:
                error.last_completed_step = self.last_completed_step
            self.state = MaintenanceState.ABORTED
            LOGGER.error("Maintenance of %s stopped halfway, needs manual attention: %s", node.name, error)
            raise

        self.state = MaintenanceState.COMPLETED
        for failure in self._failures:
            LOGGER.warning("Needs manual remediation: %s", failure)

        LOGGER.info("Node %s is now in maintenance (%d steps failed)", node.name, len(self._failures))
        return MaintenanceReport(
            node=node,
            state=self.state,
            completed_steps=tuple(self._completed_steps),
            drain_result=drain_result,
            recoverable_failures=tuple(self._failures),
        )

    def _run_transport_path(self, node: NodeDescriptor, target: NodeDescriptor) -> DrainResult:
        self._set_component_state(
            node=node,
            step=MaintenanceStep.DRAIN_HUB_TRANSPORT,
            component=ServerComponent.HUB_TRANSPORT,
            state=ComponentState.DRAINING,
        )
        self._run_step(
            node=node,
            step=MaintenanceStep.REDIRECT_MESSAGES,
            action=lambda: self.redirector.redirect(source=node, target=target),
        )
        if node.has_cluster_membership:
            self._failures.extend(
                self._run_step(
                    node=node,
                    step=MaintenanceStep.SUSPEND_CLUSTER_MEMBERSHIP,
                    action=lambda: self.cluster_controller.suspend_membership(node=node),
                )
            )

        drain_result = self._run_step(
            node=node,
            step=MaintenanceStep.DRAIN_QUEUES,
            action=lambda: self.poller.drain_until_empty(node=node),
        )
        self._set_component_state(
            node=node,
            step=MaintenanceStep.SET_SERVER_WIDE_OFFLINE,
            component=ServerComponent.SERVER_WIDE_OFFLINE,
            state=ComponentState.INACTIVE,
        )
        self._restart_services(node=node)
        return drain_result

    def _run_frontend_only_path(self, node: NodeDescriptor) -> None:
        self._set_component_state(
            node=node,
            step=MaintenanceStep.SET_SERVER_WIDE_OFFLINE,
            component=ServerComponent.SERVER_WIDE_OFFLINE,
            state=ComponentState.INACTIVE,
        )
        self._restart_services(node=node)

    def _restart_services(self, node: NodeDescriptor) -> None:
        self._failures.extend(
            self._run_step(
                node=node,
                step=MaintenanceStep.RESTART_SERVICES,
                action=lambda: self.restarter.restart_transport_services(node=node),
            )
        )

    def _set_component_state(
        self, node: NodeDescriptor, step: MaintenanceStep, component: ServerComponent, state: ComponentState
    ) -> None:
        def _set_and_check() -> None:
            if not self.toggler.set_component_state(node=node, component=component, state=state):
                raise MaintenanceStepFailed(
                    f"Component {component} never reached state {state}",
                    node=node.name,
                    step=step,
                    last_completed_step=self.last_completed_step,
                )

        self._run_step(node=node, step=step, action=_set_and_check)

    def _run_step(self, node: NodeDescriptor, step: MaintenanceStep, action: Callable[[], Any]) -> Any:
        self.cancel_token.raise_if_cancelled(node=node.name, step=step)
        LOGGER.info("%s: %s", node.name, step)
        try:
            result = action()
        except (RemoteExecutionError, ExchangeError) as error:
            raise MaintenanceStepFailed(
                f"Unexpected failure: {error}",
                node=node.name,
                step=step,
                last_completed_step=self.last_completed_step,
            ) from error

        self._completed_steps.append(step)
        return result
