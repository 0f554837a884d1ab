"""
Networking topology planning
Chooses exactly one way of obtaining subnets (dedicated VPC, VPC imported
from a kops cluster, or explicit subnet IDs) and realises it into a VPCSpec
"""

import ipaddress
import logging
import random
from collections import Counter
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from eksforge import api
from eksforge.exceptions import ConfigurationConflict, InsufficientSubnets, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ZONE_COUNT = 3
SUBNET_PREFIX_BITS = 3

CUSTOM_NETWORKING_NOTICE = (
    "custom VPC/subnets will be used; if resulting cluster doesn't function as expected, "
    "make sure to review the configuration of VPC/subnets"
)


def plan_networking(signals: api.NetworkingSignals) -> api.NetworkingPlan:
    """
    Pick the networking strategy for a request

    Pure function: no AWS calls are made, so conflicting inputs fail
    before anything else happens.

    Args:
        signals: Subnet IDs, kops cluster name and zones given by the operator

    Returns:
        DedicatedNew, ImportedFrom or ExplicitSubnets

    Raises:
        ConfigurationConflict: More than one signal was given
    """
    given = []
    if signals.import_from:
        given.append("--vpc-from-kops-cluster")
    if signals.subnets_given:
        given.append("--vpc-private-subnets/--vpc-public-subnets")
    if signals.availability_zones:
        given.append("--zones")

    if len(given) > 1:
        raise ConfigurationConflict(f"{' and '.join(given)} cannot be used at the same time")

    if signals.import_from:
        return api.ImportedFrom(source_name=signals.import_from)
    if signals.subnets_given:
        return api.ExplicitSubnets(per_topology={
            api.TOPOLOGY_PRIVATE: tuple(signals.private_subnet_ids),
            api.TOPOLOGY_PUBLIC: tuple(signals.public_subnet_ids),
        })
    return api.DedicatedNew(zones=tuple(signals.availability_zones))


def check_sufficiency(vpc: api.VPCSpec, node_group: api.NodeGroupSpec) -> None:
    """
    Verify the subnets can host the cluster and its nodegroup

    Raises:
        InsufficientSubnets: Too few zones overall, no subnets for the
            nodegroup topology, or too few private subnets when the
            nodegroup uses private networking
    """
    all_zones = set(vpc.availability_zones(api.TOPOLOGY_PRIVATE)) | set(vpc.availability_zones(api.TOPOLOGY_PUBLIC))
    if len(all_zones) < api.MIN_REQUIRED_AVAILABILITY_ZONES:
        raise InsufficientSubnets(
            f"insufficient subnets in {vpc.describe()}: subnets must span at least "
            f"{api.MIN_REQUIRED_AVAILABILITY_ZONES} availability zones, got {sorted(all_zones)}"
        )

    if not vpc.subnets.get(node_group.topology):
        raise InsufficientSubnets(f"no {node_group.topology} subnets in {vpc.describe()} for nodegroup {node_group.name!r}")

    if node_group.private_networking:
        per_zone = Counter(subnet.availability_zone for subnet in vpc.subnets.get(api.TOPOLOGY_PRIVATE, ()))
        usable = [zone for zone, count in per_zone.items() if zone and count >= api.MIN_SUBNETS_PER_ZONE]
        if len(usable) < api.MIN_REQUIRED_AVAILABILITY_ZONES:
            raise InsufficientSubnets(
                f"none or too few private subnets to use with --node-private-networking in {vpc.describe()}"
            )


def select_zones(ec2: Any, requested: Tuple[str, ...], rng: Optional[random.Random] = None) -> List[str]:
    """
    Use the requested zones or pick available ones at random

    Args:
        ec2: boto3 EC2 client
        requested: Zones given by the operator, may be empty
        rng: Random source

    Returns:
        List of availability zone names
    """
    if requested:
        if len(requested) < api.MIN_REQUIRED_AVAILABILITY_ZONES:
            raise ValidationError(
                f"only {len(requested)} zones specified {list(requested)}, "
                f"{api.MIN_REQUIRED_AVAILABILITY_ZONES} are required (can be non-unique)"
            )
        return list(requested)

    response = ec2.describe_availability_zones(Filters=[{"Name": "state", "Values": ["available"]}])
    available = sorted(zone["ZoneName"] for zone in response.get("AvailabilityZones", []))
    if len(available) < api.MIN_REQUIRED_AVAILABILITY_ZONES:
        raise ValidationError(f"only {len(available)} availability zones available: {available}")

    rng = rng or random.Random()
    zones = rng.sample(available, min(DEFAULT_ZONE_COUNT, len(available)))
    logger.info("setting availability zones to %s", zones)
    return zones


def allocate_subnets(cidr: str, zones: List[str]) -> Dict[str, Tuple[api.SubnetRef, ...]]:
    """
    Split the VPC CIDR into one public and one private subnet per zone

    Blocks are carved from the CIDR with 3 extra prefix bits (a /16
    yields /19 subnets), public subnets first.
    """
    try:
        network = ipaddress.ip_network(cidr)
    except ValueError as e:
        raise ValidationError(f"invalid VPC CIDR {cidr!r}: {e}") from e

    blocks = list(network.subnets(prefixlen_diff=SUBNET_PREFIX_BITS))
    if 2 * len(zones) > len(blocks):
        raise ValidationError(f"VPC CIDR {cidr} cannot hold subnets for {len(zones)} zones")

    public = tuple(api.SubnetRef(availability_zone=zone, cidr=str(blocks[i])) for i, zone in enumerate(zones))
    private = tuple(api.SubnetRef(availability_zone=zone, cidr=str(blocks[len(zones) + i]))
                    for i, zone in enumerate(zones))
    return {api.TOPOLOGY_PUBLIC: public, api.TOPOLOGY_PRIVATE: private}


def _subnet_ref(subnet: Dict[str, Any]) -> api.SubnetRef:
    return api.SubnetRef(id=subnet["SubnetId"], availability_zone=subnet["AvailabilityZone"],
                         cidr=subnet.get("CidrBlock", ""))


def _vpc_cidr(ec2: Any, vpc_id: str) -> str:
    vpcs = ec2.describe_vpcs(VpcIds=[vpc_id]).get("Vpcs", [])
    return vpcs[0]["CidrBlock"] if vpcs else ""


def _single_vpc(subnets: List[Dict[str, Any]], source: str) -> str:
    vpc_ids = {subnet["VpcId"] for subnet in subnets}
    if len(vpc_ids) != 1:
        raise ValidationError(f"subnets from {source} must belong to exactly one VPC, got {sorted(vpc_ids)}")
    return vpc_ids.pop()


def _use_dedicated(plan: api.DedicatedNew, request: api.ClusterCreationRequest, ec2: Any,
                   rng: Optional[random.Random]) -> api.ClusterCreationRequest:
    zones = select_zones(ec2, plan.zones, rng)
    vpc = replace(request.vpc, id="", subnets=allocate_subnets(request.vpc.cidr, zones))
    check_sufficiency(vpc, request.node_group)
    return replace(request, vpc=vpc, availability_zones=tuple(zones))


def _use_kops_vpc(plan: api.ImportedFrom, request: api.ClusterCreationRequest, ec2: Any) -> api.ClusterCreationRequest:
    response = ec2.describe_subnets(Filters=[{"Name": "tag:KubernetesCluster", "Values": [plan.source_name]}])
    found = response.get("Subnets", [])
    if not found:
        raise ValidationError(f"no subnets found for kops cluster {plan.source_name!r}")

    vpc_id = _single_vpc(found, f"kops cluster {plan.source_name!r}")
    subnets: Dict[str, List[api.SubnetRef]] = {topology: [] for topology in api.TOPOLOGIES}
    for subnet in found:
        tags = {tag["Key"]: tag["Value"] for tag in subnet.get("Tags", [])}
        topology = api.TOPOLOGY_PRIVATE if tags.get("SubnetType") == "Private" else api.TOPOLOGY_PUBLIC
        subnets[topology].append(_subnet_ref(subnet))

    vpc = api.VPCSpec(id=vpc_id, cidr=_vpc_cidr(ec2, vpc_id) or request.vpc.cidr,
                      subnets={topology: tuple(refs) for topology, refs in subnets.items()})
    check_sufficiency(vpc, request.node_group)

    logger.info("using %s from kops cluster %r", vpc.describe(), plan.source_name)
    logger.warning(CUSTOM_NETWORKING_NOTICE)
    return replace(request, vpc=vpc)


def _use_subnets(plan: api.ExplicitSubnets, request: api.ClusterCreationRequest, ec2: Any) -> api.ClusterCreationRequest:
    subnets: Dict[str, Tuple[api.SubnetRef, ...]] = {topology: () for topology in api.TOPOLOGIES}
    described: List[Dict[str, Any]] = []
    for topology in api.TOPOLOGIES:
        ids = list(plan.per_topology.get(topology, ()))
        if not ids:
            continue
        found = ec2.describe_subnets(SubnetIds=ids).get("Subnets", [])
        missing = set(ids) - {subnet["SubnetId"] for subnet in found}
        if missing:
            raise ValidationError(f"unable to find {topology} subnets {sorted(missing)}")
        described.extend(found)
        subnets[topology] = tuple(_subnet_ref(subnet) for subnet in found)

    vpc_id = _single_vpc(described, "--vpc-private-subnets/--vpc-public-subnets")
    vpc = api.VPCSpec(id=vpc_id, cidr=_vpc_cidr(ec2, vpc_id) or request.vpc.cidr, subnets=subnets)
    try:
        check_sufficiency(vpc, request.node_group)
    except InsufficientSubnets:
        logger.error("unable to use given %s", vpc.describe())
        raise

    logger.info("using existing %s", vpc.describe())
    logger.warning(CUSTOM_NETWORKING_NOTICE)
    return replace(request, vpc=vpc)


def apply_plan(plan: api.NetworkingPlan, request: api.ClusterCreationRequest, ec2: Any,
               rng: Optional[random.Random] = None) -> api.ClusterCreationRequest:
    """
    Realise a networking plan into the request's VPC spec

    Args:
        plan: Strategy chosen by plan_networking
        request: Resolved cluster creation request
        ec2: boto3 EC2 client used for zone and subnet lookups
        rng: Random source for zone auto-selection

    Returns:
        New request with VPC, subnets and zones filled in
    """
    if isinstance(plan, api.DedicatedNew):
        return _use_dedicated(plan, request, ec2, rng)
    if isinstance(plan, api.ImportedFrom):
        return _use_kops_vpc(plan, request, ec2)
    if isinstance(plan, api.ExplicitSubnets):
        return _use_subnets(plan, request, ec2)
    raise TypeError(f"unknown networking plan {plan!r}")
