r"""Mail operations Exchange - put a node in maintenance

For transport nodes: drains the node, redirects its queued messages to another transport node, suspends it from its
database availability group (if any), sets it ServerWideOffline and restarts the transport services.
For front-end only nodes: sets it ServerWideOffline and restarts the front-end transport service.

Usage example: mailops.exchange.set_maintenance \
    --fqdn mx1001.corp.example.org \
    --redirect-to mx1002.corp.example.org

"""
from __future__ import annotations

import argparse
import logging
import signal
import socket
from contextlib import contextmanager
from datetime import timedelta
from typing import Generator

from spicerack import Spicerack
from spicerack.cookbook import ArgparseFormatter, CookbookBase
from wmflib.interactive import ask_input

from mailops_libs.alerts import SilenceID, remove_silence, silence_host
from mailops_libs.common import (
    MAILOPS_CONFIG_FILE_NAME,
    CommonOpts,
    MailopsCookbookRunnerBase,
    add_common_opts,
    parser_type_str_fqdn,
    with_common_opts,
)
from mailops_libs.exchange.common import (
    CancellationToken,
    ExchangeManagementAPI,
    MaintenancePreconditionError,
    MaintenanceStepFailed,
    MissingRedirectTarget,
)
from mailops_libs.exchange.maintenance import (
    MaintenanceConfig,
    MaintenanceExitCode,
    MaintenanceOrchestrator,
    MaintenanceReport,
    MaintenanceRequest,
)

LOGGER = logging.getLogger(__name__)


class SetMaintenance(CookbookBase):
    """Mail operations cookbook to put an Exchange node in maintenance."""

    __title__ = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = argparse.ArgumentParser(
            prog=__name__,
            description=__doc__,
            formatter_class=ArgparseFormatter,
        )
        add_common_opts(parser)
        parser.add_argument(
            "--fqdn",
            required=False,
            default=socket.getfqdn(),
            type=parser_type_str_fqdn,
            help="FQDN of the node to put in maintenance. Default is the local host (%(default)s).",
        )
        parser.add_argument(
            "--redirect-to",
            required=False,
            default=None,
            type=parser_type_str_fqdn,
            help=(
                "FQDN of the transport node to send the queued messages to. Needed for transport nodes, you will "
                "be asked for it if not passed."
            ),
        )
        parser.add_argument(
            "--no-silence",
            required=False,
            action="store_true",
            help="If passed, it will not silence the alerts of the node.",
        )
        parser.add_argument(
            "--silence-hours",
            required=False,
            default=4,
            type=int,
            help="How long to silence the alerts of the node for. Default is %(default)s.",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> MailopsCookbookRunnerBase:
        """Get runner"""
        return with_common_opts(self.spicerack, args, SetMaintenanceRunner)(
            fqdn=args.fqdn,
            redirect_to=args.redirect_to,
            silence=not args.no_silence,
            silence_duration=timedelta(hours=args.silence_hours),
            spicerack=self.spicerack,
        )


class SetMaintenanceRunner(MailopsCookbookRunnerBase):
    """Runner for SetMaintenance."""

    def __init__(
        self,
        common_opts: CommonOpts,
        fqdn: str,
        redirect_to: str | None,
        silence: bool,
        silence_duration: timedelta,
        spicerack: Spicerack,
    ):  # pylint: disable=too-many-arguments
        """Init."""
        self.fqdn = fqdn
        self.redirect_to = redirect_to
        self.silence = silence
        self.silence_duration = silence_duration
        super().__init__(spicerack=spicerack, common_opts=common_opts)
        self.config = MaintenanceConfig.from_dict(self.mailops_config)
        if not self.config.management_node:
            raise Exception(f"No exchange.management_node set in {MAILOPS_CONFIG_FILE_NAME}, can't continue.")

        self.cancel_token = CancellationToken()
        self.api = ExchangeManagementAPI(remote=spicerack.remote(), management_node_fqdn=self.config.management_node)
        self.orchestrator = MaintenanceOrchestrator(
            api=self.api,
            dns=spicerack.dns(),
            config=self.config,
            cancel_token=self.cancel_token,
        )

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for node {self.fqdn}"

    @contextmanager
    def _cancel_on_signals(self) -> Generator[None, None, None]:
        """Turn SIGINT/SIGTERM into a cancellation, so the run stops at the next safe point instead of mid-call."""

        def _cancel(signum, _frame):
            signal_name = signal.Signals(signum).name
            LOGGER.warning("Got %s, stopping at the next safe point...", signal_name)
            self.cancel_token.cancel(reason=f"got {signal_name}")

        previous_handlers = {signum: signal.signal(signum, _cancel) for signum in (signal.SIGINT, signal.SIGTERM)}
        try:
            yield
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)

    def _ask_redirect_target(self) -> str:
        candidates = [fqdn for fqdn in self.api.get_transport_server_fqdns() if fqdn != self.fqdn]
        if not candidates:
            raise MissingRedirectTarget(f"There's no other transport node to redirect the messages of {self.fqdn} to.")

        return ask_input(
            message=f"Node {self.fqdn} is a transport node, where should its queued messages go?",
            choices=candidates,
        )

    def _run_orchestrator(self) -> MaintenanceReport:
        request = MaintenanceRequest(target_node=self.fqdn, redirect_target=self.redirect_to)
        try:
            return self.orchestrator.run(request)
        except MissingRedirectTarget:
            if self.redirect_to:
                raise

        # nothing has been changed yet, so it's safe to start over with the target
        self.redirect_to = self._ask_redirect_target()
        return self.orchestrator.run(MaintenanceRequest(target_node=self.fqdn, redirect_target=self.redirect_to))

    def run(self) -> int:
        """Main entry point."""
        silence_id: SilenceID | None = None
        if self.silence:
            silence_id = silence_host(
                spicerack=self.spicerack,
                host_name=self.fqdn.split(".", 1)[0],
                comment="Maintenance with mailops.exchange.set_maintenance",
                task_id=self.common_opts.task_id,
                duration=self.silence_duration,
            )

        self.sal_log("Putting %s in maintenance", self.fqdn)
        try:
            with self._cancel_on_signals():
                report = self._run_orchestrator()

        except MaintenancePreconditionError as error:
            LOGGER.warning("Nothing was changed on %s: %s", self.fqdn, error)
            if silence_id:
                remove_silence(spicerack=self.spicerack, silence_id=silence_id)
            return MaintenanceExitCode.VALIDATION_FAILED

        except MaintenanceStepFailed as error:
            self.sal_log("Maintenance of %s stopped halfway, needs manual attention: %s", self.fqdn, error)
            return MaintenanceExitCode.from_error(error)

        if report.recoverable_failures:
            self.sal_log(
                "Node %s in maintenance, %d steps need manual remediation: %s",
                self.fqdn,
                len(report.recoverable_failures),
                "; ".join(str(failure) for failure in report.recoverable_failures),
            )
        else:
            self.sal_log("Node %s in maintenance", self.fqdn)

        return report.exit_code
