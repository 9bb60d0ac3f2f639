#!/usr/bin/env python3
"""Exchange management plane related code."""
# pylint: disable=too-many-arguments
from __future__ import annotations

import json
import logging
import re
import shlex
import threading
from dataclasses import dataclass
from typing import Any

from spicerack.remote import Remote, RemoteExecutionError

from mailops_libs.common import (
    CUMIN_SAFE_WITHOUT_OUTPUT,
    CUMIN_UNSAFE_WITH_OUTPUT,
    ArgparsableEnum,
    CommandRunnerMixin,
    UtilsForTesting,
)

LOGGER = logging.getLogger(__name__)
DEFAULT_SHELL_COMMAND = ("pwsh", "-NoProfile", "-NonInteractive", "-Command")
NOT_FOUND_RE = re.compile(r"couldn't be found|could not be found|ManagementObjectNotFoundException")
VERSION_RE = re.compile(r"(?P<major>\d+)\.(?P<minor>\d+)(?:\D+(?P<build>\d+))?")
TRANSPORT_SERVICE = "MSExchangeTransport"
FRONTEND_TRANSPORT_SERVICE = "MSExchangeFrontEndTransport"


class ExchangeError(Exception):
    """Parent class for all the management plane related errors."""


class ExchangeNotFound(ExchangeError):
    """Risen when the requested object does not exist."""


class ExchangeMalformedInfo(ExchangeError):
    """Risen when the output of a command is not what was expected."""


class ComponentStateNotReached(ExchangeError):
    """Risen when a server component did not get to the requested state."""


class MaintenanceError(Exception):
    """Parent class for all the maintenance orchestration errors."""


class MaintenancePreconditionError(MaintenanceError):
    """Risen when a check before any change fails, nothing has been changed."""


class NodeNotFoundError(MaintenancePreconditionError):
    """Risen when the node is unknown to the management plane."""


class UnsupportedVersionError(MaintenancePreconditionError):
    """Risen when the node runs a major version we don't know how to handle."""


class InvalidTargetError(MaintenancePreconditionError):
    """Risen when the redirect target is not a valid transport node."""


class MissingRedirectTarget(InvalidTargetError):
    """Risen when a transport node is put in maintenance without a redirect target."""


class DnsResolutionError(MaintenancePreconditionError):
    """Risen when a name can't be resolved to a canonical host."""


class MaintenanceStepFailed(MaintenanceError):
    """Risen when a step fails once the node has already started changing."""

    def __init__(
        self,
        message: str,
        node: str,
        step: MaintenanceStep,
        last_completed_step: MaintenanceStep | None = None,
    ):
        """Init."""
        super().__init__(message)
        self.message = message
        self.node = node
        self.step = step
        self.last_completed_step = last_completed_step

    def __str__(self):
        last_step = self.last_completed_step.value if self.last_completed_step else "none"
        return f"{self.message} (node={self.node}, step={self.step.value}, last completed step={last_step})"


class MaintenanceDrainTimeout(MaintenanceStepFailed):
    """Risen when the queues did not empty in the allowed time or polls."""

    def __init__(
        self,
        message: str,
        node: str,
        step: MaintenanceStep,
        last_completed_step: MaintenanceStep | None = None,
        snapshot: QueueSnapshot | None = None,
    ):
        """Init."""
        super().__init__(message, node=node, step=step, last_completed_step=last_completed_step)
        self.snapshot = snapshot


class MaintenanceCancelled(MaintenanceStepFailed):
    """Risen when the operator cancelled the run."""


class MaintenanceStep(ArgparsableEnum):
    """Steps of the maintenance orchestration, in the order they can happen."""

    RESOLVE_NODE = "resolve node"
    VALIDATE_REDIRECT_TARGET = "validate redirect target"
    DRAIN_HUB_TRANSPORT = "set HubTransport to Draining"
    REDIRECT_MESSAGES = "redirect messages"
    SUSPEND_CLUSTER_MEMBERSHIP = "suspend cluster membership"
    DRAIN_QUEUES = "drain queues"
    SET_SERVER_WIDE_OFFLINE = "set ServerWideOffline to Inactive"
    RESTART_SERVICES = "restart services"


class ServerComponent(ArgparsableEnum):
    """Server components we change the state of."""

    HUB_TRANSPORT = "HubTransport"
    FRONTEND_TRANSPORT = "FrontendTransport"
    SERVER_WIDE_OFFLINE = "ServerWideOffline"


class ComponentState(ArgparsableEnum):
    """Known server component states."""

    ACTIVE = "Active"
    DRAINING = "Draining"
    INACTIVE = "Inactive"

    @classmethod
    def from_str(cls, state_str: str) -> "ComponentState":
        """Get the state from the output of `Get-ServerComponentState`."""
        try:
            return cls(state_str.strip())
        except ValueError as error:
            raise ExchangeMalformedInfo(f"Unknown server component state: {state_str!r}") from error


class AutoActivationPolicy(ArgparsableEnum):
    """Database copy auto activation policies."""

    UNRESTRICTED = "Unrestricted"
    INTRASITE_ONLY = "IntrasiteOnly"
    BLOCKED = "Blocked"


class QueueCategory(ArgparsableEnum):
    """Queue categories, only normal queues block a drain."""

    NORMAL = "Normal"
    POISON = "Poison"
    SHADOW_REDUNDANCY = "ShadowRedundancy"

    @classmethod
    def from_queue_record(cls, queue_record: dict[str, Any]) -> "QueueCategory":
        """Get the category of a queue from the output of `Get-Queue`.

        Example of entries:
        {"Identity": "MX1001\\Poison", "DeliveryType": "Undefined", "MessageCount": 0}
        {"Identity": "MX1001\\Shadow\\4", "DeliveryType": "ShadowRedundancy", "MessageCount": 12}
        """
        if str(queue_record.get("DeliveryType", "")) == "ShadowRedundancy":
            return cls.SHADOW_REDUNDANCY

        identity_parts = str(queue_record.get("Identity", "")).split("\\")
        if identity_parts[-1].lower() == "poison":
            return cls.POISON

        if len(identity_parts) > 2 and identity_parts[1].lower() == "shadow":
            return cls.SHADOW_REDUNDANCY

        return cls.NORMAL


@dataclass(frozen=True)
class ExchangeVersion:
    """Version of the software running on a node."""

    major: int
    minor: int = 0
    build: int = 0

    @classmethod
    def from_admin_display_version(cls, raw_version: Any) -> "ExchangeVersion":
        """Parse the `AdminDisplayVersion` field.

        It can come either as a string like "Version 15.1 (Build 2507.6)" or as a serialized version object like
        {"Major": 15, "Minor": 1, "Build": 2507, "Revision": 6}.
        """
        if isinstance(raw_version, dict):
            try:
                return cls(
                    major=int(raw_version["Major"]),
                    minor=int(raw_version.get("Minor", 0)),
                    build=int(raw_version.get("Build", 0)),
                )
            except (KeyError, TypeError, ValueError) as error:
                raise ExchangeMalformedInfo(f"Unable to parse version: {raw_version}") from error

        version_match = VERSION_RE.search(str(raw_version or ""))
        if not version_match:
            raise ExchangeMalformedInfo(f"Unable to parse version: {raw_version}")

        return cls(
            major=int(version_match.group("major")),
            minor=int(version_match.group("minor")),
            build=int(version_match.group("build") or 0),
        )

    def __str__(self):
        return f"{self.major}.{self.minor}.{self.build}"


@dataclass(frozen=True)
class NodeDescriptor:
    """Static facts about a node, resolved once per run."""

    name: str
    fqdn: str
    is_transport_capable: bool
    is_frontend_transport_capable: bool
    version: ExchangeVersion
    cluster_group: str | None = None

    @classmethod
    def from_records(
        cls, server_record: dict[str, Any], mailbox_server_record: dict[str, Any] | None = None
    ) -> "NodeDescriptor":
        """Get a node descriptor from the output of `Get-ExchangeServer` (and `Get-MailboxServer` if any).

        Example of server record:
        {
            "Name": "MX1001",
            "Fqdn": "mx1001.corp.example.org",
            "IsHubTransportServer": true,
            "IsFrontendTransportServer": true,
            "AdminDisplayVersion": "Version 15.1 (Build 2507.6)"
        }
        """
        try:
            name = str(server_record["Name"])
            fqdn = str(server_record.get("Fqdn") or name)
        except KeyError as error:
            raise ExchangeMalformedInfo(f"Got a server without name: {server_record}") from error

        cluster_group = None
        if mailbox_server_record:
            cluster_group = str(mailbox_server_record.get("DatabaseAvailabilityGroup") or "") or None

        return cls(
            name=name,
            fqdn=fqdn,
            is_transport_capable=bool(server_record.get("IsHubTransportServer", False)),
            is_frontend_transport_capable=bool(server_record.get("IsFrontendTransportServer", False)),
            version=ExchangeVersion.from_admin_display_version(server_record.get("AdminDisplayVersion")),
            cluster_group=cluster_group,
        )

    @property
    def has_cluster_membership(self) -> bool:
        """Whether the node is part of a database availability group."""
        return self.cluster_group is not None


@dataclass(frozen=True)
class QueueInfo:
    """A single queue of a node."""

    queue_id: str
    message_count: int
    category: QueueCategory

    @classmethod
    def from_queue_record(cls, queue_record: dict[str, Any]) -> "QueueInfo":
        """Get a queue from an entry of the output of `Get-Queue`."""
        try:
            return cls(
                queue_id=str(queue_record["Identity"]),
                message_count=int(queue_record.get("MessageCount") or 0),
                category=QueueCategory.from_queue_record(queue_record),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise ExchangeMalformedInfo(f"Unable to parse queue: {queue_record}") from error


@dataclass(frozen=True)
class QueueSnapshot:
    """Point in time view of the queues of a node."""

    queues: tuple[QueueInfo, ...] = ()

    def blocking_message_count(self) -> int:
        """Messages that still have to be delivered, poison and shadow redundancy queues are excluded."""
        return sum(queue.message_count for queue in self.queues if queue.category == QueueCategory.NORMAL)

    def message_count_by_category(self) -> dict[QueueCategory, int]:
        """Total messages for each category."""
        counts = {category: 0 for category in QueueCategory}
        for queue in self.queues:
            counts[queue.category] += queue.message_count

        return counts


@dataclass(frozen=True)
class ClusterMembershipState:
    """Cluster membership state of a node, only exists for nodes in a database availability group."""

    cluster_group: str
    suspended: bool
    auto_activation_policy: AutoActivationPolicy
    activation_disabled_and_move_now: bool


@dataclass(frozen=True)
class StepFailure:
    """A step that failed but does not stop the maintenance."""

    node: str
    step: MaintenanceStep
    detail: str
    sub_step: str | None = None

    def __str__(self):
        sub_step = f" ({self.sub_step})" if self.sub_step else ""
        return f"{self.node}: {self.step.value}{sub_step} failed: {self.detail}"


class CancellationToken:
    """Lets an operator stop a run at the next safe point (before a change or a poll)."""

    def __init__(self):
        """Init."""
        self._cancelled = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled by the operator") -> None:
        """Request the run to stop."""
        self.reason = reason
        self._cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        """Whether a stop was requested."""
        return self._cancelled.is_set()

    def raise_if_cancelled(self, node: str, step: MaintenanceStep) -> None:
        """Raise MaintenanceCancelled if a stop was requested, to be called before starting the given step."""
        if self.is_cancelled:
            raise MaintenanceCancelled(f"Stopping before '{step.value}': {self.reason}", node=node, step=step)


def _ps_quote(value: str) -> str:
    """Wraps the given string in powershell single quotes."""
    return "'" + str(value).replace("'", "''") + "'"


def _as_string_property(name: str) -> str:
    """Calculated property for Select-Object that serializes the given property as a string."""
    return f"@{{Name='{name}';Expression={{\"$($_.{name})\"}}}}"


class ExchangeManagementAPI(CommandRunnerMixin):
    """Class to interact with the Exchange management shell on a management node."""

    def __init__(
        self,
        remote: Remote,
        management_node_fqdn: str,
        shell_command: tuple[str, ...] | list[str] = DEFAULT_SHELL_COMMAND,
    ):
        """Init."""
        self._remote = remote
        self.management_node_fqdn = management_node_fqdn
        self.shell_command = tuple(shell_command)
        super().__init__(command_runner_node=self._remote.query(f"D{{{management_node_fqdn}}}"))

    def _get_full_command(self, *command: str, json_output: bool = True) -> list[str]:
        script = " ".join(command)
        if json_output:
            script = f"{script} | ConvertTo-Json -Depth 4 -Compress"

        return [*self.shell_command, shlex.quote(script)]

    @staticmethod
    def _load_json(what: str, output: str) -> Any:
        try:
            return json.loads(output)
        except json.JSONDecodeError as error:
            raise ExchangeMalformedInfo(f"Unable to parse output when getting {what}:\n{output}") from error

    def _run_get(self, what: str, *command: str) -> dict[str, Any]:
        output = self.run_raw(*command, capture_errors=True, cumin_params=CUMIN_SAFE_WITHOUT_OUTPUT)
        if not output.strip() or NOT_FOUND_RE.search(output):
            raise ExchangeNotFound(f"Unable to find {what}: {output.strip()}")

        record = self._load_json(what=what, output=output)
        if isinstance(record, list) and len(record) == 1:
            record = record[0]

        if not isinstance(record, dict):
            raise ExchangeMalformedInfo(f"Was expecting a single {what}, got: {record}")

        return record

    def _run_list(self, what: str, *command: str) -> list[dict[str, Any]]:
        """ConvertTo-Json unwraps single element arrays, so a single object is returned as a one element list."""
        output = self.run_raw(*command, cumin_params=CUMIN_SAFE_WITHOUT_OUTPUT)
        if not output.strip():
            return []

        records = self._load_json(what=what, output=output)
        if isinstance(records, dict):
            records = [records]

        if not isinstance(records, list) or not all(isinstance(record, dict) for record in records):
            raise ExchangeMalformedInfo(f"Was expecting a list of {what}, got: {records}")

        return records

    def get_server(self, identity: str) -> dict[str, Any]:
        """Get the server record of a node."""
        return self._run_get(
            f"server {identity}",
            "Get-ExchangeServer",
            "-Identity",
            _ps_quote(identity),
            "|",
            "Select-Object",
            ",".join(
                [
                    "Name",
                    "Fqdn",
                    "IsHubTransportServer",
                    "IsFrontendTransportServer",
                    _as_string_property("AdminDisplayVersion"),
                ]
            ),
        )

    def get_mailbox_server(self, identity: str) -> dict[str, Any]:
        """Get the mailbox server record of a node, includes the database availability group it's in."""
        return self._run_get(
            f"mailbox server {identity}",
            "Get-MailboxServer",
            "-Identity",
            _ps_quote(identity),
            "|",
            "Select-Object",
            ",".join(
                [
                    "Name",
                    _as_string_property("DatabaseAvailabilityGroup"),
                    _as_string_property("DatabaseCopyAutoActivationPolicy"),
                    "DatabaseCopyActivationDisabledAndMoveNow",
                ]
            ),
        )

    def get_transport_server_fqdns(self) -> list[str]:
        """Get the FQDNs of all the transport capable servers."""
        server_records = self._run_list(
            "transport servers",
            "Get-ExchangeServer",
            "|",
            "Where-Object",
            "{ $_.IsHubTransportServer }",
            "|",
            "Select-Object",
            "Fqdn",
        )
        return sorted(str(record["Fqdn"]) for record in server_records if record.get("Fqdn"))

    def get_queues(self, server: str) -> QueueSnapshot:
        """Get a snapshot of all the queues of the given server."""
        queue_records = self._run_list(
            f"queues of {server}",
            "Get-Queue",
            "-Server",
            _ps_quote(server),
            "|",
            "Select-Object",
            ",".join([_as_string_property("Identity"), _as_string_property("DeliveryType"), "MessageCount"]),
        )
        return QueueSnapshot(queues=tuple(QueueInfo.from_queue_record(record) for record in queue_records))

    def get_component_state(self, server: str, component: ServerComponent) -> ComponentState:
        """Get the current state of a server component."""
        output = self.run_raw(
            "Get-ServerComponentState",
            "-Identity",
            _ps_quote(server),
            "-Component",
            _ps_quote(component.value),
            "|",
            "ForEach-Object",
            "{ $_.State.ToString() }",
            json_output=False,
            cumin_params=CUMIN_SAFE_WITHOUT_OUTPUT,
        )
        return ComponentState.from_str(output)

    def set_component_state(
        self, server: str, component: ServerComponent, state: ComponentState, requester: str
    ) -> None:
        """Set the state of a server component, tagged with the given requester."""
        self.run_raw(
            "Set-ServerComponentState",
            "-Identity",
            _ps_quote(server),
            "-Component",
            _ps_quote(component.value),
            "-State",
            state.value,
            "-Requester",
            _ps_quote(requester),
            json_output=False,
            cumin_params=CUMIN_UNSAFE_WITH_OUTPUT,
        )

    def redirect_messages(self, source: str, target: str) -> None:
        """Redirect the messages queued on the source server to the target one."""
        self.run_raw(
            "Redirect-Message",
            "-Server",
            _ps_quote(source),
            "-Target",
            _ps_quote(target),
            "-Confirm:$false",
            json_output=False,
            cumin_params=CUMIN_UNSAFE_WITH_OUTPUT,
        )

    def suspend_cluster_node(self, server: str, cluster_group: str) -> None:
        """Pause the node in the cluster of its database availability group."""
        self.run_raw(
            "Suspend-ClusterNode",
            "-Name",
            _ps_quote(server),
            "-Cluster",
            _ps_quote(cluster_group),
            json_output=False,
            cumin_params=CUMIN_UNSAFE_WITH_OUTPUT,
        )

    def force_database_relocation(self, server: str) -> None:
        """Move the active database copies out of the server now, and don't allow activating any more."""
        self.run_raw(
            "Set-MailboxServer",
            "-Identity",
            _ps_quote(server),
            "-DatabaseCopyActivationDisabledAndMoveNow",
            "$true",
            "-Confirm:$false",
            json_output=False,
            cumin_params=CUMIN_UNSAFE_WITH_OUTPUT,
        )

    def set_auto_activation_policy(self, server: str, policy: AutoActivationPolicy) -> None:
        """Set the database copy auto activation policy of the server."""
        self.run_raw(
            "Set-MailboxServer",
            "-Identity",
            _ps_quote(server),
            "-DatabaseCopyAutoActivationPolicy",
            policy.value,
            "-Confirm:$false",
            json_output=False,
            cumin_params=CUMIN_UNSAFE_WITH_OUTPUT,
        )

    def get_cluster_membership_state(self, server: str) -> ClusterMembershipState | None:
        """Get the cluster membership state of a server, None if it's not in any database availability group."""
        mailbox_server = self.get_mailbox_server(server)
        cluster_group = str(mailbox_server.get("DatabaseAvailabilityGroup") or "") or None
        if cluster_group is None:
            return None

        cluster_node_state = self.run_raw(
            "Get-ClusterNode",
            "-Name",
            _ps_quote(server),
            "-Cluster",
            _ps_quote(cluster_group),
            "|",
            "ForEach-Object",
            "{ $_.State.ToString() }",
            json_output=False,
            cumin_params=CUMIN_SAFE_WITHOUT_OUTPUT,
        ).strip()
        try:
            policy = AutoActivationPolicy(str(mailbox_server.get("DatabaseCopyAutoActivationPolicy")))
        except ValueError as error:
            raise ExchangeMalformedInfo(f"Unknown auto activation policy in {mailbox_server}") from error

        return ClusterMembershipState(
            cluster_group=cluster_group,
            suspended=cluster_node_state == "Paused",
            auto_activation_policy=policy,
            activation_disabled_and_move_now=bool(mailbox_server.get("DatabaseCopyActivationDisabledAndMoveNow")),
        )

    def restart_service(self, server_fqdn: str, service_name: str) -> None:
        """Restart a windows service on the given server."""
        self.run_raw(
            "Invoke-Command",
            "-ComputerName",
            _ps_quote(server_fqdn),
            "-ScriptBlock",
            f"{{ Restart-Service -Name {_ps_quote(service_name)} }}",
            json_output=False,
            cumin_params=CUMIN_UNSAFE_WITH_OUTPUT,
        )


class ExchangeTestUtils(UtilsForTesting):
    """Utils to test exchange related code."""

    @staticmethod
    def get_server_record(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Get a server record like the ones from `Get-ExchangeServer`."""
        server_record: dict[str, Any] = {
            "Name": "MX1001",
            "Fqdn": "mx1001.corp.example.org",
            "IsHubTransportServer": True,
            "IsFrontendTransportServer": False,
            "AdminDisplayVersion": "Version 15.1 (Build 2507.6)",
        }
        server_record.update(overrides or {})
        return server_record

    @staticmethod
    def get_mailbox_server_record(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Get a mailbox server record like the ones from `Get-MailboxServer`."""
        mailbox_server_record: dict[str, Any] = {
            "Name": "MX1001",
            "DatabaseAvailabilityGroup": "",
            "DatabaseCopyAutoActivationPolicy": "Unrestricted",
            "DatabaseCopyActivationDisabledAndMoveNow": False,
        }
        mailbox_server_record.update(overrides or {})
        return mailbox_server_record

    @staticmethod
    def get_node_descriptor(**overrides: Any) -> NodeDescriptor:
        """Get a transport capable node descriptor."""
        params: dict[str, Any] = {
            "name": "MX1001",
            "fqdn": "mx1001.corp.example.org",
            "is_transport_capable": True,
            "is_frontend_transport_capable": False,
            "version": ExchangeVersion(major=15, minor=1, build=2507),
            "cluster_group": None,
        }
        params.update(overrides)
        return NodeDescriptor(**params)

    @staticmethod
    def get_snapshot(normal: int = 0, poison: int = 0, shadow: int = 0, server: str = "MX1001") -> QueueSnapshot:
        """Get a queue snapshot with one queue of each category."""
        return QueueSnapshot(
            queues=(
                QueueInfo(queue_id=f"{server}\\Submission", message_count=normal, category=QueueCategory.NORMAL),
                QueueInfo(queue_id=f"{server}\\Poison", message_count=poison, category=QueueCategory.POISON),
                QueueInfo(
                    queue_id=f"{server}\\Shadow\\1", message_count=shadow, category=QueueCategory.SHADOW_REDUNDANCY
                ),
            )
        )

    @staticmethod
    def get_remote_execution_error(message: str = "command failed", retcode: int = 1) -> RemoteExecutionError:
        """Get the error run_sync raises when the command fails on the management node."""
        return RemoteExecutionError(retcode=retcode, message=message, results=iter(()))
