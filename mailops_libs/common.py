#!/usr/bin/env python3
"""Mail Operations Cookbooks"""
# pylint: disable=too-many-arguments
from __future__ import annotations

__title__ = __doc__
import argparse
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from functools import partial
from itertools import chain
from typing import Any, Callable
from unittest import mock

from ClusterShell.MsgTree import MsgTreeElem
from cumin.transports import Command
from spicerack import Spicerack
from spicerack.cookbook import CookbookRunnerBase
from spicerack.remote import Remote, RemoteHosts
from wmflib.config import load_yaml_config

LOGGER = logging.getLogger(__name__)
MAILOPS_CONFIG_FILE_NAME = "mailops.yaml"


def parser_type_str_fqdn(value: str):
    """Validates datatype in argparser if a string is a fully qualified domain name."""
    if "." not in value.strip("."):
        raise argparse.ArgumentTypeError(f"'{value}' does not contain a dot, likely not a FQDN")

    return value.strip(".")


class ArgparsableEnum(Enum):
    """Enum that behaves well with argparse.

    Example usage:

    class MyEnum(ArgparsableEnum):
        OPT1 = "option 1"
        OPT2 = "option 2"

    parser.add_argument(
        "--my-enum",
        choices=list(MyEnum),
        type=MyEnum,
        default=MyEnum.OPT1,
    )
    """

    def __str__(self):
        """Needed to show the nice string values and for argparse to use those to call the `type` parameter."""
        return self.value


@dataclass(frozen=True)
class CuminParams:
    """Bundle of the parameters that run_sync allows."""

    print_output: bool = True
    print_progress_bars: bool = True
    is_safe: bool = False
    success_threshold: float = 1.0
    batch_size: int | str | None = None
    batch_sleep: float | None = None


# Handy pre-set common cumin params
CUMIN_SAFE_WITHOUT_OUTPUT = CuminParams(print_output=False, print_progress_bars=False, is_safe=True)
CUMIN_UNSAFE_WITH_OUTPUT = CuminParams()


@dataclass(frozen=True)
class CommonOpts:
    """Common mail operations cookbook options."""

    task_id: str | None = None
    no_sallog: bool = False


def add_common_opts(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Adds the common mail operations options to a cookbook parser."""
    parser.add_argument(
        "--task-id",
        required=False,
        default=None,
        help="Id of the task related to this operation (ex. T123456).",
    )
    parser.add_argument(
        "--no-sallog",
        required=False,
        action="store_true",
        help="To disable the server admin log messages for this run.",
    )

    return parser


def with_common_opts(spicerack: Spicerack, args: argparse.Namespace, runner: Callable) -> Callable:
    """Helper to add CommonOpts to a cookbook instantiation."""
    no_sallog = bool(spicerack.dry_run or args.no_sallog)
    common_opts = CommonOpts(task_id=args.task_id, no_sallog=no_sallog)

    return partial(runner, common_opts=common_opts)


def run_one_raw(
    command: list[str] | Command,
    node: RemoteHosts,
    capture_errors: bool = False,
    cumin_params: CuminParams | None = None,
) -> str:
    """Run a command on a node.

    Returns the the raw output.
    """
    if not isinstance(command, Command):
        command = Command(command=" ".join(command), ok_codes=[] if capture_errors else [0])

    run_sync_params = asdict(cumin_params) if cumin_params else {}

    try:
        result = next(node.run_sync(command, **run_sync_params))

    except StopIteration:
        return ""

    message = result[1].message()
    # Avoid crashing if we can't decode properly
    return message.decode("utf-8", "backslashreplace")


# Poor man's namespace to compensate for the restriction to not create modules
@dataclass(frozen=True)
class UtilsForTesting:
    """Generic testing utilities."""

    @staticmethod
    def to_parametrize(test_cases: dict[str, dict[str, Any]]) -> dict[str, str | list[Any]]:
        """Helper for parametrized tests.

        Use like:
        @pytest.mark.parametrize(**_to_parametrize(
            {
                "Test case 1": {"param1": "value1", "param2": "value2"},
                # will set the value of the missing params as `None`
                "Test case 2": {"param1": "value1"},
                ...
            }
        ))
        """
        _param_names = sorted(set(chain(*[list(params.keys()) for params in test_cases.values()])))

        def _fill_up_params(test_case_params):
            end_params = []
            for must_param in _param_names:
                end_params.append(test_case_params.get(must_param, None))

            return end_params

        if len(_param_names) == 1:
            argvalues = [_fill_up_params(test_case_params)[0] for test_case_params in test_cases.values()]

        else:
            argvalues = [_fill_up_params(test_case_params) for test_case_params in test_cases.values()]

        return {"argnames": ",".join(_param_names), "argvalues": argvalues, "ids": list(test_cases.keys())}

    @staticmethod
    def get_fake_remote_hosts(
        responses: list[str] | None = None, side_effect: list[Any] | None = None
    ) -> mock.MagicMock:
        """Create a fake RemoteHosts object.

        It will return a RemoteHosts that will return the given responses when run_sync is called in them.
        If side_effect is passed, it will override the responses and set that as side_effect of the mock on run_sync.
        """
        responses = responses if responses is not None else []
        fake_hosts = mock.create_autospec(spec=RemoteHosts, spec_set=True)

        def _get_fake_msg_tree(msg_tree_response: str):
            fake_msg_tree = mock.create_autospec(spec=MsgTreeElem, spec_set=True)
            fake_msg_tree.message.return_value = msg_tree_response.encode()
            return fake_msg_tree

        if side_effect is not None:
            fake_hosts.run_sync.side_effect = side_effect
        else:
            # the return type of run_sync is Iterator[Tuple[NodeSet, MsgTreeElem]]
            fake_hosts.run_sync.return_value = (
                (None, _get_fake_msg_tree(msg_tree_response=response)) for response in responses
            )

        return fake_hosts

    @staticmethod
    def get_fake_remote(responses: list[str] | None = None, side_effect: list[Any] | None = None) -> mock.MagicMock:
        """Create a fake remote.

        It will return a RemoteHosts that will return the given responses when run_sync is called in them.
        If side_effect is passed, it will override the responses and set that as side_effect of the mock on run_sync.
        """
        fake_hosts = UtilsForTesting.get_fake_remote_hosts(responses=responses, side_effect=side_effect)
        fake_remote = mock.create_autospec(spec=Remote, spec_set=True)

        fake_remote.query.return_value = fake_hosts

        return fake_remote

    @staticmethod
    def get_fake_spicerack(fake_remote: mock.MagicMock) -> mock.MagicMock:
        """Create a fake spicerack."""
        fake_spicerack = mock.create_autospec(spec=Spicerack)
        fake_spicerack.remote.return_value = fake_remote
        return fake_spicerack


class CommandRunnerMixin:
    """Mixin to get command running functions."""

    def __init__(self, command_runner_node: RemoteHosts):
        """Simple mixin to provide command running functions to a class."""
        self.command_runner_node = command_runner_node

    def _get_full_command(self, *command: str, json_output: bool = True) -> list[str]:
        raise NotImplementedError

    def run_raw(
        self,
        *command: str,
        capture_errors: bool = False,
        json_output: bool = True,
        cumin_params: CuminParams | None = None,
    ) -> str:
        """Run a command on a runner node.

        Returns the raw output (not loaded from json).
        """
        full_command = self._get_full_command(*command, json_output=json_output)
        return run_one_raw(
            command=full_command,
            node=self.command_runner_node,
            capture_errors=capture_errors,
            cumin_params=cumin_params,
        )


class MailopsCookbookRunnerBase(CookbookRunnerBase):
    """Mail operations tweaks to the base cookbook runner.

    Current tweaks:
    * Load the mail operations config from the spicerack config dir (`mailops.yaml`).
    * Tag the server admin log messages with the task id (or silence them).
    """

    def __init__(self, spicerack: Spicerack, common_opts: CommonOpts):
        """Init"""
        self.spicerack = spicerack
        self.common_opts = common_opts
        self._setup_logging(common_opts)
        self.mailops_config = self._load_config()

    def _load_config(self) -> dict[str, Any]:
        mailops_config_path = self.spicerack.config_dir / MAILOPS_CONFIG_FILE_NAME
        if not mailops_config_path.exists():
            LOGGER.debug("No mailops config found on %s. Continuing...", mailops_config_path)
            return {}

        LOGGER.info("Loading mailops config from %s", mailops_config_path)
        return load_yaml_config(config_file=mailops_config_path, raises=False)

    def _setup_logging(self, common_opts: CommonOpts):
        if common_opts.no_sallog:
            self.spicerack.sal_logger.handlers.clear()
            return

        task_id = f" ({common_opts.task_id})" if common_opts.task_id else ""
        mailops_formatter = logging.Formatter(f"%(message)s{task_id}")
        for handler in self.spicerack.sal_logger.handlers:
            handler.setFormatter(mailops_formatter)

    def sal_log(self, message: str, *args: Any) -> None:
        """Send a message to the server admin log."""
        self.spicerack.sal_logger.info(message, *args)
