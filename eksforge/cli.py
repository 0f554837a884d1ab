"""
Command line interface: eksforge create cluster
"""

import argparse
import logging
import random
import re
import signal
import sys
import threading
import time
from typing import Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from eksforge import api, kubeconfig
from eksforge.config import Config, get_config
from eksforge.create import create_cluster
from eksforge.exceptions import EksforgeError
from eksforge.resolver import resolve_request

logger = logging.getLogger("eksforge")

_NON_OPTION_DESTS = ("command", "resource", "args", "verbose")

_DURATION = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def _bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {value!r}")


def _comma_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _tags(value: str) -> Dict[str, str]:
    tags = {}
    for pair in _comma_list(value):
        key, sep, val = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"invalid tag {pair!r}, expected KEY=VALUE")
        tags[key.strip()] = val.strip()
    return tags


def _duration(value: str) -> float:
    """Seconds from "25m", "1h30m", "90s" or a plain number"""
    try:
        return float(value)
    except ValueError:
        pass
    match = _DURATION.match(value)
    if not value or not match:
        raise argparse.ArgumentTypeError(f"invalid duration {value!r}")
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return float(hours * 3600 + minutes * 60 + seconds)


def _flag(group, name: str, help: str, short: Optional[str] = None, **kwargs) -> None:
    names = [f"--{name}"] + ([short] if short else [])
    group.add_argument(*names, dest=name, help=help, **kwargs)


def _toggle(group, name: str, help: str) -> None:
    _flag(group, name, help, type=_bool, nargs="?", const=True, metavar="BOOL")


def add_create_cluster_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("args", nargs="*", default=[], metavar="NAME", help="cluster name")

    general = parser.add_argument_group("General")
    _flag(general, "name", "EKS cluster name (generated if unspecified)", short="-n")
    _flag(general, "tags", 'KV pairs used to tag the AWS resources (e.g. "Owner=John Doe,Team=Some Team")', type=_tags)
    _flag(general, "region", "AWS region", short="-r")
    _flag(general, "zones", "availability zones, comma separated (auto-select if unspecified)", type=_comma_list)
    _flag(general, "version", "Kubernetes version (valid options: %s, default: %s)"
          % (",".join(api.SUPPORTED_VERSIONS), api.LATEST_VERSION_SENTINEL))
    _flag(general, "config-file", "load configuration from a file", short="-f")

    nodegroup = parser.add_argument_group("Initial nodegroup")
    _flag(nodegroup, "nodegroup-name", "name of the nodegroup (generated if unspecified)")
    _flag(nodegroup, "node-type", f"node instance type (default: {api.DEFAULT_NODE_TYPE})")
    _flag(nodegroup, "nodes", f"total number of nodes (default: {api.DEFAULT_NODE_COUNT})", short="-N", type=int)
    _flag(nodegroup, "nodes-min", "minimum nodes in ASG", type=int)
    _flag(nodegroup, "nodes-max", "maximum nodes in ASG", type=int)
    _flag(nodegroup, "node-volume-size", "node volume size in GB", type=int)
    _flag(nodegroup, "max-pods-per-node", "maximum number of pods per node", type=int)
    _flag(nodegroup, "node-ami", "advanced use cases only: 'static' or 'auto' resolution, or an AMI id")
    _flag(nodegroup, "node-ami-family", f"advanced use cases only (default: {api.DEFAULT_AMI_FAMILY})")
    _toggle(nodegroup, "ssh-access", "control SSH access for nodes")
    _flag(nodegroup, "ssh-public-key", f"SSH public key to use for nodes (default: {api.DEFAULT_SSH_PUBLIC_KEY})")
    _toggle(nodegroup, "node-private-networking", "whether to make initial nodegroup networking private")

    addons = parser.add_argument_group("Cluster add-ons")
    _toggle(addons, "asg-access", "enable IAM policy dependency for cluster-autoscaler")
    _toggle(addons, "external-dns-access", "enable IAM policy dependency for external-dns")
    _toggle(addons, "full-ecr-access", "enable full access to ECR")
    _toggle(addons, "storage-class", "create a default gp2 StorageClass (default: true)")

    vpc = parser.add_argument_group("VPC networking")
    _flag(vpc, "vpc-cidr", f"global CIDR to use for VPC (default: {api.DEFAULT_VPC_CIDR})")
    _flag(vpc, "vpc-private-subnets", "re-use private subnets of an existing VPC", type=_comma_list)
    _flag(vpc, "vpc-public-subnets", "re-use public subnets of an existing VPC", type=_comma_list)
    _flag(vpc, "vpc-from-kops-cluster", "re-use VPC from a given kops cluster")

    aws = parser.add_argument_group("AWS client")
    _flag(aws, "profile", "AWS credentials profile to use (overrides the AWS_PROFILE environment variable)",
          short="-p")
    _flag(aws, "timeout", "max wait time in any polling operations, e.g. 25m", type=_duration)
    _flag(aws, "aws-api-timeout", argparse.SUPPRESS, type=_duration)
    _flag(aws, "control-plane-timeout", "max wait time for the control plane (default: --timeout)", type=_duration)
    _flag(aws, "nodes-timeout", "max wait time for nodes to join (default: --timeout)", type=_duration)

    output = parser.add_argument_group("Output kubeconfig")
    _flag(output, "kubeconfig", f"path to write kubeconfig (default: {kubeconfig.DEFAULT_PATH}, "
                                f"incompatible with --auto-kubeconfig)")
    _toggle(output, "set-kubeconfig-context", "set current-context in kubeconfig (default: true)")
    _toggle(output, "auto-kubeconfig", "save kubeconfig file by cluster name, e.g. %r" % kubeconfig.auto_path("NAME"))
    _toggle(output, "write-kubeconfig", "toggle writing of kubeconfig (default: true)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eksforge", description="Create EKS clusters")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="more output, repeatable")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    create = commands.add_parser("create", help="create resources")
    resources = create.add_subparsers(dest="resource", metavar="RESOURCE")
    resources.required = True

    # only explicitly given options end up in the namespace
    cluster = resources.add_parser("cluster", help="create a cluster", argument_default=argparse.SUPPRESS)
    add_create_cluster_arguments(cluster)
    return parser


def setup_logging(verbose: int, config: Config) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    if verbose < 2:
        for noisy in ("botocore", "boto3", "urllib3", "kubernetes"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def explicit_options(namespace: argparse.Namespace) -> Dict[str, object]:
    options = {key: value for key, value in vars(namespace).items() if key not in _NON_OPTION_DESTS}
    if "aws-api-timeout" in options:
        options.setdefault("timeout", options.pop("aws-api-timeout"))
    return options


def _install_cancel_handlers(cancel: threading.Event) -> dict:
    if threading.current_thread() is not threading.main_thread():
        return {}

    def handler(signum, frame):
        logger.warning("received signal %d, aborting", signum)
        cancel.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    return previous


def main(argv: Optional[List[str]] = None, rng: Optional[random.Random] = None,
         clock: Callable[[], float] = time.time) -> int:
    """Entry point; returns the process exit code"""
    namespace = build_parser().parse_args(argv)
    config = get_config()
    setup_logging(namespace.verbose, config)

    cancel = threading.Event()
    previous = _install_cancel_handlers(cancel)
    try:
        request = resolve_request(explicit_options(namespace), namespace.args, config, rng=rng, clock=clock)
        create_cluster(request, cancel=cancel, config=config, rng=rng)
    except EksforgeError as e:
        message = str(e)
        if e.recommendation:
            message += f"\n{e.recommendation}"
        logger.critical("%s", message)
        return 1
    except (BotoCoreError, ClientError) as e:
        logger.critical("AWS API call failed: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.critical("interrupted")
        return 1
    except Exception as e:
        logger.debug("unexpected error creating cluster", exc_info=True)
        logger.critical("unexpected error: %s", e)
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
    return 0
