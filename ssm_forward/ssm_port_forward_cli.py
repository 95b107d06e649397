#!/usr/bin/env python3

# Forward a local port to a remote host / port through an SSM-enabled
# EC2 instance, e.g. to reach an RDS database in a private subnet.
#
# The script validates the parameters, resolves the proxy instance,
# checks that aws-cli and session-manager-plugin are installed and
# in the end executes 'aws ssm start-session' to actually forward the port.

import os
import sys
import logging
import argparse

from typing import List, NoReturn, Optional

import botocore.exceptions

from .common import add_general_parameters, show_version, configure_logging, verify_awscli_version, verify_plugin_version
from .resolver import InstanceResolver, is_instance_id

logger = logging.getLogger("ssm-forward.port-forward")

DOCUMENT_NAME = "AWS-StartPortForwardingSession"

AWSCLI_VERSION_REQUIRED = "1.16.12"
PLUGIN_VERSION_REQUIRED = "1.1.23"

# -h is taken by --remote-host, -p by --remote-port and -r is the region
SHORT_OPTS = {
    "--profile": "-P",
    "--region": "-r",
    "--verbose": "-v",
    "--debug": "-d",
    "--quiet": "-q",
    "--version": "-V",
}


class ArgumentParser(argparse.ArgumentParser):
    """
    Print the error and the full help, exit with 1 on any parameter error.
    """

    def error(self, message: str) -> NoReturn:
        print(f"Error: {message}", file=sys.stderr)
        print(file=sys.stderr)
        self.print_help(sys.stderr)
        self.exit(1)


def port_number(value: str) -> Optional[int]:
    # Empty value is reported as a missing parameter later on
    if not value.strip():
        return None
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port number: '{value}'")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port number out of range 1-65535: {port}")
    return port


def parse_args(argv: list) -> argparse.Namespace:
    """
    Parse command line arguments.
    """

    parser = ArgumentParser(formatter_class=argparse.RawDescriptionHelpFormatter, add_help=False)

    add_general_parameters(parser, short_opts=SHORT_OPTS)

    # fmt: off
    group_instance = parser.add_argument_group("Instance Selection")
    group_instance.add_argument("--instance", "-i", dest="instance", metavar="INSTANCE", help="EC2 instance to use as proxy. Instance ID, Name, Host name or IP address")
    group_instance.add_argument("--list", dest="list", action="store_true", help="List instances registered in SSM and exit.")
    group_instance.add_argument("--select", dest="select", action="store_true", help="Select the proxy instance from a menu.")

    group_forward = parser.add_argument_group("Port Forwarding")
    group_forward.add_argument("--local-port", "-l", dest="local_port", metavar="LOCAL_PORT", type=port_number, help="Local port to forward from")
    group_forward.add_argument("--remote-host", "-h", dest="remote_host", metavar="REMOTE_HOST", help="Remote host to connect to (e.g., RDS endpoint)")
    group_forward.add_argument("--remote-port", "-p", dest="remote_port", metavar="REMOTE_PORT", type=port_number, help="Remote port to connect to (e.g., 3306 for MySQL)")
    group_forward.add_argument("--document-name", dest="document_name", default=DOCUMENT_NAME, help=f"SSM document to start the session with (default: {DOCUMENT_NAME})")
    # fmt: on

    parser.description = "Forward a local port to a remote host through an SSM-enabled EC2 instance"
    parser.epilog = f"""
IMPORTANT: instances must be registered in AWS Systems Manager (SSM)
before you can forward ports through them! Instances not registered in SSM
will not be recognised by {parser.prog} nor show up in --list output.

Example: {parser.prog} -i i-0abc123def456 -l 5432 -h mydb.cluster-abc123.us-east-1.rds.amazonaws.com -p 5432
"""

    # Parse supplied arguments
    args = parser.parse_args(argv)

    # If --version do it now and exit
    if args.show_version:
        show_version(args)

    if args.list:
        if args.instance or args.select:
            parser.error("--list can't be used together with --instance or --select")
        return args

    if args.instance and args.select:
        parser.error("Use only one of --instance / --select")

    # Empty strings count as missing
    if not (args.instance or args.select) or not args.local_port or not args.remote_host or not args.remote_port:
        parser.error("Missing required parameters.")

    return args


def build_command(instance_id: str, args: argparse.Namespace) -> List[str]:
    exec_args = ["aws", "ssm", "start-session"]
    if args.region:
        exec_args += ["--region", args.region]
    if args.profile:
        exec_args += ["--profile", args.profile]

    exec_args += ["--target", instance_id]
    exec_args += ["--document-name", args.document_name]
    exec_args += ["--parameters", f"localPortNumber={args.local_port},portNumber={args.remote_port},host={args.remote_host}"]
    return exec_args


def check_prerequisites() -> bool:
    return verify_awscli_version(AWSCLI_VERSION_REQUIRED, logger) and verify_plugin_version(PLUGIN_VERSION_REQUIRED, logger)


def start_session(instance_id: str, args: argparse.Namespace) -> None:
    logger.info("Establishing SSM port forwarding session...")
    logger.info("Local port: %s > EC2 instance: %s > Remote: %s:%s", args.local_port, instance_id, args.remote_host, args.remote_port)
    logger.info("Press Ctrl+C to terminate the session.")

    exec_args = build_command(instance_id, args)
    logger.debug("Running: %s", exec_args)
    os.execvp(exec_args[0], exec_args)


def main(argv: Optional[list] = None) -> int:
    ## Split command line args
    args = parse_args(sys.argv[1:] if argv is None else argv)

    configure_logging(args.log_level)

    try:
        if args.list:
            # --list
            InstanceResolver(args).print_list()
            sys.exit(0)

        if not check_prerequisites():
            sys.exit(1)

        if args.select:
            instance_id = InstanceResolver(args).select_instance()
        elif is_instance_id(args.instance):
            # No need to talk to AWS for a plain instance ID
            instance_id = args.instance
        else:
            instance_id, _ = InstanceResolver(args).resolve_instance(args.instance)
            if not instance_id:
                logger.warning("Could not resolve Instance ID for '%s'", args.instance)
                logger.warning("Perhaps the '%s' is not registered in SSM?", args.instance)
                sys.exit(1)

        start_session(instance_id, args)

    except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
        logger.error(e)
        sys.exit(1)

    return 0


if __name__ == "__main__":
    main()
