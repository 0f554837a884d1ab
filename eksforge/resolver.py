"""
Configuration resolution
Builds one immutable ClusterCreationRequest either from command line
options or from a ClusterConfig document, never from both
"""

import logging
import random
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from eksforge import api, kubeconfig, manifest, networking, utils
from eksforge.config import Config, get_config
from eksforge.exceptions import (ConfigurationConflict, IncompatibleConfiguration, NamingConflict,
                                 ValidationError)

logger = logging.getLogger(__name__)

# Options that describe the cluster itself and therefore belong in the
# config file when one is used
INCOMPATIBLE_WITH_CONFIG_FILE = [
    "name",
    "tags",
    "zones",
    "version",
    "region",
    "nodes",
    "nodes-min",
    "nodes-max",
    "node-type",
    "node-volume-size",
    "max-pods-per-node",
    "node-ami",
    "node-ami-family",
    "ssh-access",
    "ssh-public-key",
    "node-private-networking",
    "asg-access",
    "external-dns-access",
    "full-ecr-access",
    "storage-class",
    "vpc-private-subnets",
    "vpc-public-subnets",
    "vpc-cidr",
]


def resolve_name(flag_value: str, arg_value: str, rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time) -> api.NameResolution:
    """
    Combine --name and the positional NAME argument

    Args:
        flag_value: Value of --name, may be empty
        arg_value: Positional argument, may be empty

    Returns:
        Generated when neither is set, Provided when exactly one is set,
        Conflict when both are set
    """
    flag_value = (flag_value or "").strip()
    arg_value = (arg_value or "").strip()
    if flag_value and arg_value:
        return api.Conflict(flag_value=flag_value, arg_value=arg_value)
    if flag_value or arg_value:
        return api.Provided(name=flag_value or arg_value)
    return api.Generated(name=utils.cluster_name(rng, clock))


def name_arg(args: Sequence[str]) -> str:
    if len(args) > 1:
        raise ValidationError("only one argument is allowed to be used as a name")
    return args[0].strip() if args else ""


def validate_region(region: str) -> None:
    if region not in api.SUPPORTED_REGIONS:
        raise ValidationError(
            f"--region={region} is not supported - use one of: {', '.join(api.SUPPORTED_REGIONS)}"
        )


def resolve_version(version: str) -> str:
    """Substitute the latest sentinel and reject unsupported versions"""
    if not version or version == api.LATEST_VERSION_SENTINEL:
        return api.LATEST_VERSION
    if version not in api.SUPPORTED_VERSIONS:
        raise ValidationError(f"invalid version {version}, supported values: {','.join(api.SUPPORTED_VERSIONS)}")
    return version


def resolve_kubeconfig(options: Mapping[str, Any], cluster_name: str) -> api.KubeconfigOptions:
    """
    Resolve where (and whether) the kubeconfig is written

    Raises:
        ConfigurationConflict: --auto-kubeconfig given with a non-default --kubeconfig
    """
    path = options.get("kubeconfig") or kubeconfig.DEFAULT_PATH
    auto = bool(options.get("auto-kubeconfig", False))
    if auto:
        if path != kubeconfig.DEFAULT_PATH:
            raise ConfigurationConflict("--kubeconfig and --auto-kubeconfig cannot be used at the same time")
        path = kubeconfig.auto_path(cluster_name)
    return api.KubeconfigOptions(
        write=bool(options.get("write-kubeconfig", True)),
        path=path,
        set_context=bool(options.get("set-kubeconfig-context", True)),
        auto_path=auto,
    )


def _read_file(path: str) -> str:
    try:
        with open(path, "r") as f:
            return f.read()
    except OSError as e:
        raise ValidationError(f"unable to read config file {path!r}: {e}") from e


def from_file(options: Mapping[str, Any], read_file: Callable[[str], str] = _read_file) -> Dict[str, Any]:
    """
    Load request fields from the ClusterConfig document given by --config-file

    Raises:
        IncompatibleConfiguration: A flag-only option was also set
        KindMismatch: The document is not a ClusterConfig
        ValidationError: Name or region missing
    """
    for option in INCOMPATIBLE_WITH_CONFIG_FILE:
        if option in options:
            raise IncompatibleConfiguration(option)

    decoded = manifest.decode(read_file(options["config-file"]))
    fields = dict(manifest.expect_kind(decoded, api.CLUSTER_CONFIG_KIND))

    if not fields["name"]:
        raise ValidationError("metadata.name must be set")
    if not fields["region"]:
        raise ValidationError("metadata.region must be set")

    node_group = fields["node_group"]
    node_group = replace(
        node_group,
        ami_family=node_group.ami_family or api.DEFAULT_AMI_FAMILY,
        ami=node_group.ami or api.AMI_RESOLVER_STATIC,
        ssh_public_key_path=node_group.ssh_public_key_path or (
            api.DEFAULT_SSH_PUBLIC_KEY if node_group.allow_ssh else ""),
    )
    if not node_group.name and options.get("nodegroup-name"):
        node_group = replace(node_group, name=options["nodegroup-name"])
    fields["node_group"] = node_group

    vpc = fields["vpc"]
    fields["networking"] = api.NetworkingSignals(
        private_subnet_ids=tuple(vpc.subnet_ids(api.TOPOLOGY_PRIVATE)),
        public_subnet_ids=tuple(vpc.subnet_ids(api.TOPOLOGY_PUBLIC)),
        import_from=options.get("vpc-from-kops-cluster") or "",
        availability_zones=fields["availability_zones"],
    )
    logger.debug("loaded cluster config %r", fields)
    return fields


def from_flags(options: Mapping[str, Any], args: Sequence[str], config: Config,
               rng: Optional[random.Random] = None, clock: Callable[[], float] = time.time) -> Dict[str, Any]:
    """
    Build request fields from command line options

    Raises:
        NamingConflict: Both --name and a NAME argument were given
        ValidationError: SSH requested without a public key path
    """
    resolution = resolve_name(options.get("name", ""), name_arg(args), rng, clock)
    if isinstance(resolution, api.Conflict):
        raise NamingConflict(resolution.flag_value, resolution.arg_value)
    if isinstance(resolution, api.Generated):
        logger.debug("generated cluster name %r", resolution.name)

    allow_ssh = bool(options.get("ssh-access", False))
    ssh_public_key_path = options.get("ssh-public-key", api.DEFAULT_SSH_PUBLIC_KEY)
    if allow_ssh and not ssh_public_key_path:
        raise ValidationError("--ssh-public-key must be non-empty string")

    node_group = api.NodeGroupSpec(
        name=options.get("nodegroup-name") or "",
        ami=options.get("node-ami") or api.AMI_RESOLVER_STATIC,
        ami_family=options.get("node-ami-family") or api.DEFAULT_AMI_FAMILY,
        instance_type=options.get("node-type") or api.DEFAULT_NODE_TYPE,
        desired_capacity=options.get("nodes", api.DEFAULT_NODE_COUNT),
        min_size=options.get("nodes-min", 0),
        max_size=options.get("nodes-max", 0),
        volume_size=options.get("node-volume-size", 0),
        max_pods_per_node=options.get("max-pods-per-node", 0),
        allow_ssh=allow_ssh,
        ssh_public_key_path=ssh_public_key_path if allow_ssh else "",
        private_networking=bool(options.get("node-private-networking", False)),
    )

    zones = tuple(options.get("zones") or ())
    return {
        "name": resolution.name,
        "region": options.get("region") or config.aws_region or api.DEFAULT_REGION,
        "version": options.get("version") or api.LATEST_VERSION_SENTINEL,
        "tags": dict(options.get("tags") or {}),
        "availability_zones": zones,
        "vpc": api.VPCSpec(cidr=options.get("vpc-cidr") or api.DEFAULT_VPC_CIDR),
        "node_group": node_group,
        "addons": api.Addons(
            asg_access=bool(options.get("asg-access", False)),
            external_dns_access=bool(options.get("external-dns-access", False)),
            full_ecr_access=bool(options.get("full-ecr-access", False)),
            storage_class=bool(options.get("storage-class", True)),
        ),
        "networking": api.NetworkingSignals(
            private_subnet_ids=tuple(options.get("vpc-private-subnets") or ()),
            public_subnet_ids=tuple(options.get("vpc-public-subnets") or ()),
            import_from=options.get("vpc-from-kops-cluster") or "",
            availability_zones=zones,
        ),
    }


def _finalize_node_group(node_group: api.NodeGroupSpec, rng: Optional[random.Random]) -> api.NodeGroupSpec:
    if node_group.ami_family not in api.AMI_FAMILIES:
        raise ValidationError(
            f"invalid AMI family {node_group.ami_family!r}, supported values: {','.join(api.AMI_FAMILIES)}")
    min_size = node_group.min_size or node_group.desired_capacity
    max_size = node_group.max_size or node_group.desired_capacity
    if not min_size <= node_group.desired_capacity <= max_size:
        raise ValidationError(
            f"--nodes={node_group.desired_capacity} must be within --nodes-min={min_size} and --nodes-max={max_size}")
    return replace(node_group, name=node_group.name or utils.nodegroup_name(rng),
                   min_size=min_size, max_size=max_size)


def resolve_request(options: Mapping[str, Any], args: Sequence[str] = (), config: Optional[Config] = None,
                    read_file: Callable[[str], str] = _read_file, rng: Optional[random.Random] = None,
                    clock: Callable[[], float] = time.time) -> api.ClusterCreationRequest:
    """
    Resolve the cluster creation request from explicitly set options

    Args:
        options: Option name (as spelled on the command line, without dashes)
            to value, holding only options the operator set explicitly
        args: Positional arguments
        config: Environment-sourced defaults
        read_file: Reads the --config-file document
        rng: Random source for generated names
        clock: Timestamp source for generated names

    Returns:
        Immutable ClusterCreationRequest

    Raises:
        ConfigurationConflict: Mutually exclusive options were combined
        ValidationError: Required input missing or unsupported
    """
    config = config or get_config()

    if options.get("config-file"):
        if args:
            raise IncompatibleConfiguration("name")
        fields = from_file(options, read_file)
    else:
        fields = from_flags(options, args, config, rng, clock)

    validate_region(fields["region"])
    fields["version"] = resolve_version(fields["version"])
    fields["node_group"] = _finalize_node_group(fields["node_group"], rng)

    wait_timeout = float(options.get("timeout") or config.wait_timeout)
    fields["provider"] = api.ProviderConfig(
        region=fields["region"],
        profile=options.get("profile") or config.aws_profile,
        wait_timeout=wait_timeout,
        control_plane_timeout=float(options.get("control-plane-timeout") or 0.0),
        nodes_timeout=float(options.get("nodes-timeout") or 0.0),
    )
    fields["kubeconfig"] = resolve_kubeconfig(options, fields["name"])
    networking.plan_networking(fields["networking"])

    return api.ClusterCreationRequest(**fields)
