import argparse
import logging
import pathlib
import subprocess
import sys
from typing import Optional

import boto3
import botocore.credentials
import packaging.version

from . import __version__ as ssm_forward_version

__all__ = []

# ---------------------------------------------------------

__all__.append("configure_logging")


def configure_logging(level: int) -> None:
    """
    Configure logging format and level.
    """
    if level == logging.DEBUG:
        logging_format = "[%(name)s] %(levelname)s: %(message)s"
    else:
        logging_format = "%(levelname)s: %(message)s"

    # Default log level is set to WARNING
    logging.basicConfig(level=logging.WARNING, format=logging_format)
    # Except for our modules
    logging.getLogger("ssm-forward").setLevel(level)


# ---------------------------------------------------------

__all__.append("add_general_parameters")

# Long option -> short option used when the caller doesn't say otherwise
GENERAL_SHORT_OPTS = {
    "--profile": "-p",
    "--region": "-g",
    "--verbose": "-v",
    "--debug": "-d",
    "--quiet": "-q",
    "--version": "-V",
    "--help": "-h",
}


def add_general_parameters(
    parser: argparse.ArgumentParser,
    long_only: bool = False,
    short_opts: Optional[dict[str, str]] = None,
) -> argparse._ArgumentGroup:
    """
    Add General Options used by all ssm-* tools.

    Tools that need some of the default short options for themselves
    pass their own 'short_opts' mapping. Options missing from the
    mapping are long only.
    """
    if short_opts is None:
        short_opts = GENERAL_SHORT_OPTS

    # Remove short options if long_only==True
    def _get_opts(opt_long: str) -> list[str]:
        opts = [opt_long]
        if not long_only and opt_long in short_opts:
            opts.append(short_opts[opt_long])
        return opts

    group_general = parser.add_argument_group("General Options")
    group_general.add_argument(
        *_get_opts("--profile"),
        dest="profile",
        type=str,
        help="Configuration profile from ~/.aws/{credentials,config}",
    )
    group_general.add_argument(*_get_opts("--region"), dest="region", type=str, help="Set / override AWS region.")
    group_general.add_argument(
        *_get_opts("--verbose"),
        action="store_const",
        dest="log_level",
        const=logging.INFO,
        default=logging.INFO,
        help="Default log level. Show informational messages only.",
    )
    group_general.add_argument(
        *_get_opts("--debug"),
        action="store_const",
        dest="log_level",
        const=logging.DEBUG,
        help="Increase log level.",
    )
    group_general.add_argument(
        *_get_opts("--quiet"),
        action="store_const",
        dest="log_level",
        const=logging.WARNING,
        help="Decrease log level. Only show warnings and errors.",
    )
    group_general.add_argument(
        *_get_opts("--version"),
        action="store_true",
        dest="show_version",
        help=f"Show package version and exit. Version is {ssm_forward_version}",
    )
    group_general.add_argument(*_get_opts("--help"), action="help", help="Print this help and exit")

    return group_general


# ---------------------------------------------------------

__all__.append("show_version")


def show_version(args: argparse.Namespace) -> None:
    """
    Show package version and exit.
    """
    version_string = f"ssm-port-forward/{ssm_forward_version}"
    if args.log_level <= logging.INFO:
        version_string += f" python/{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
        version_string += f" boto3/{boto3.__version__}"
    print(version_string)
    sys.exit(0)


# ---------------------------------------------------------

__all__.append("PLUGIN_INSTALL_URL")

PLUGIN_INSTALL_URL = "https://docs.aws.amazon.com/systems-manager/latest/userguide/session-manager-working-with-install-plugin.html"

# ---------------------------------------------------------

__all__.append("verify_plugin_version")


def verify_plugin_version(version_required: str, logger: logging.Logger) -> bool:
    """
    Verify that a session-manager-plugin is installed
    and is of a required version or newer.
    """
    session_manager_plugin = "session-manager-plugin"

    try:
        result = subprocess.run([session_manager_plugin, "--version"], stdout=subprocess.PIPE, check=False)
        plugin_version = result.stdout.decode("ascii").strip()
        logger.debug(f"{session_manager_plugin} version {plugin_version}")

        if packaging.version.parse(plugin_version) >= packaging.version.parse(version_required):
            return True

        logger.error(f"{session_manager_plugin} version {plugin_version} is installed, {version_required} is required")
    except (FileNotFoundError, PermissionError):
        logger.error("AWS Session Manager Plugin not found. Please install it.")
    except packaging.version.InvalidVersion:
        logger.error(f"Unable to parse {session_manager_plugin} version: {plugin_version!r}")

    logger.error(f"Installation instructions: {PLUGIN_INSTALL_URL}")

    return False


# ---------------------------------------------------------


__all__.append("verify_awscli_version")


def verify_awscli_version(version_required: str, logger: logging.Logger) -> bool:
    """
    Verify that the aws-cli is installed and is of a required version or newer.
    """
    aws_cli = "aws"

    try:
        # aws-cli v1 prints its version to stderr, v2 to stdout
        result = subprocess.run([aws_cli, "--version"], stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False)
        version_output = result.stdout.decode("ascii", errors="replace").strip()
        # e.g. aws-cli/2.15.30 Python/3.11.8 Linux/6.5.0 exe/x86_64.ubuntu.22
        cli_version = version_output.split(" ")[0].split("/")[1]
        logger.debug(f"AWS-CLI version {cli_version}")

        if packaging.version.parse(cli_version) >= packaging.version.parse(version_required):
            return True

        logger.error(f"AWS-CLI version {cli_version} is installed, {version_required} is required")
    except (FileNotFoundError, PermissionError):
        logger.error("AWS CLI not found. Please install it first.")
    except (IndexError, packaging.version.InvalidVersion):
        logger.error(f"Unable to parse AWS-CLI version from: {version_output!r}")

    return False


# ---------------------------------------------------------


__all__.append("target_selector")


def target_selector(headers: str, targets: list[dict[str, str]]) -> dict[str, str]:

    # Simple term menu does not support windows as of 2025-08-14
    if not sys.platform.startswith("win"):
        from simple_term_menu import TerminalMenu

        terminal_menu = TerminalMenu(
            [text["summary"] for text in targets],
            title=headers,
            show_search_hint=True,
            show_search_hint_text="Select an instance. Press 'q' to quit, or '/' to search.",
        )
        selected_index = terminal_menu.show()
    else:
        print("  {}".format(headers.replace("\n", "\n  ")))
        items = [text["summary"] for text in targets]

        # Calculate padding for numbers
        width = len(str(len(items) - 1))

        for i, item in enumerate(items):
            print(f"{i:>{width}} | {item}")

        print()
        try:
            selected_index = input("Enter the number for the instance to forward through: ")
        except KeyboardInterrupt:
            print("\nExiting...")
            sys.exit(0)

    if selected_index is None or not str(selected_index).isdecimal():
        print(f"User input '{selected_index}' - Exiting")
        sys.exit(0)

    try:
        selected_target = targets[int(selected_index)]  # Cast to int to make mypy happy
    except (IndexError, ValueError) as e:
        print(f"Invalid selection - {e}")
        sys.exit(1)
    print(headers)
    print(f"  {selected_target['summary']}")
    return selected_target


# ---------------------------------------------------------

__all__.append("AWSSessionBase")


class AWSSessionBase:
    def __init__(self, args: argparse.Namespace) -> None:
        # aws-cli compatible MFA cache
        cli_cache = pathlib.Path("~/.aws/cli/cache").expanduser()

        # Construct boto3 session with MFA cache
        self.session = boto3.session.Session(profile_name=args.profile, region_name=args.region)
        self.session._session.get_component("credential_provider").get_provider("assume-role").cache = (
            botocore.credentials.JSONFileCache(cli_cache)
        )
