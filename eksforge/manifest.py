"""
ClusterConfig document decoding
Documents are dispatched on their apiVersion/kind pair through a registry
of known types, the result carries the decoded kind explicitly
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from eksforge import api
from eksforge.exceptions import DecodeError, KindMismatch

Builder = Callable[[Dict[str, Any]], Any]

_REGISTRY: Dict[Tuple[str, str, str], Builder] = {}


@dataclass(frozen=True)
class Decoded:
    api_version: str
    kind: str
    value: Any


def register(group: str, version: str, kind: str):
    """Register a builder for a group/version/kind triple"""
    def decorator(builder: Builder) -> Builder:
        _REGISTRY[(group, version, kind)] = builder
        return builder
    return decorator


def decode(data: str) -> Decoded:
    """
    Decode a YAML (or JSON) document into a registered type

    Args:
        data: Raw document text

    Returns:
        Decoded value tagged with its apiVersion and kind

    Raises:
        DecodeError: Malformed document or unknown apiVersion/kind
    """
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise DecodeError(f"unable to parse config document: {e}") from e

    if not isinstance(document, dict):
        raise DecodeError("config document must be a mapping")

    api_version = document.get("apiVersion") or ""
    kind = document.get("kind") or ""
    if not api_version or not kind:
        raise DecodeError("config document must set apiVersion and kind")

    group, _, version = api_version.rpartition("/")
    builder = _REGISTRY.get((group, version, kind))
    if builder is None:
        raise DecodeError(f"no kind {kind!r} is registered for version {api_version!r}")

    try:
        value = builder(document)
    except ValidationError as e:
        raise DecodeError(f"invalid {kind} document: {_describe(e)}") from e
    return Decoded(api_version=api_version, kind=kind, value=value)


def _describe(error: ValidationError) -> str:
    return "; ".join(
        "%s: %s" % (".".join(str(part) for part in item["loc"]), item["msg"]) for item in error.errors()
    )


def expect_kind(decoded: Decoded, kind: str) -> Any:
    if decoded.kind != kind:
        raise KindMismatch(kind, decoded.kind)
    return decoded.value


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class SubnetDoc(_Document):
    id: Optional[str] = None
    cidr: Optional[str] = None


class VPCDoc(_Document):
    id: Optional[str] = None
    cidr: Optional[str] = None
    subnets: Optional[Dict[str, Optional[Dict[str, Optional[SubnetDoc]]]]] = None


class NodeGroupDoc(_Document):
    name: Optional[str] = None
    ami: Optional[str] = None
    ami_family: Optional[str] = Field(None, alias="amiFamily")
    instance_type: Optional[str] = Field(None, alias="instanceType")
    desired_capacity: Optional[int] = Field(None, alias="desiredCapacity")
    min_size: Optional[int] = Field(None, alias="minSize")
    max_size: Optional[int] = Field(None, alias="maxSize")
    volume_size: Optional[int] = Field(None, alias="volumeSize")
    max_pods_per_node: Optional[int] = Field(None, alias="maxPodsPerNode")
    allow_ssh: Optional[bool] = Field(False, alias="allowSSH")
    ssh_public_key_path: Optional[str] = Field(None, alias="sshPublicKeyPath")
    private_networking: Optional[bool] = Field(False, alias="privateNetworking")


class IAMPoliciesDoc(_Document):
    policy_auto_scaling: bool = Field(False, alias="policyAutoScaling")
    policy_external_dns: bool = Field(False, alias="policyExternalDNS")
    policy_ecr_power_user: bool = Field(False, alias="policyAmazonEC2ContainerRegistryPowerUser")


class AddonsDoc(_Document):
    storage: Optional[bool] = True
    with_iam: Optional[IAMPoliciesDoc] = Field(None, alias="withIAM")


class MetadataDoc(_Document):
    name: Optional[str] = None
    region: Optional[str] = None
    version: Optional[str] = None
    tags: Optional[Dict[str, str]] = None


class ClusterConfigDoc(_Document):
    """ClusterConfig document as written by users, camelCase keys"""

    metadata: Optional[MetadataDoc] = None
    availability_zones: Optional[List[str]] = Field(None, alias="availabilityZones")
    vpc: Optional[VPCDoc] = None
    node_groups: Optional[List[Optional[NodeGroupDoc]]] = Field(None, alias="nodeGroups")
    addons: Optional[AddonsDoc] = None


class ClusterConfigListDoc(_Document):
    items: Optional[List[ClusterConfigDoc]] = None


def _subnets(raw: Dict[str, Optional[Dict[str, Optional[SubnetDoc]]]]) -> Dict[str, Tuple[api.SubnetRef, ...]]:
    subnets = {topology: () for topology in api.TOPOLOGIES}
    for topology, by_zone in raw.items():
        if topology not in api.TOPOLOGIES:
            raise DecodeError(f"unknown subnet topology {topology!r}")
        subnets[topology] = tuple(_subnet_ref(zone, spec or SubnetDoc()) for zone, spec in (by_zone or {}).items())
    return subnets


def _subnet_ref(zone: str, spec: SubnetDoc) -> api.SubnetRef:
    return api.SubnetRef(id=spec.id or "", availability_zone=zone, cidr=spec.cidr or "")


def _node_group(doc: NodeGroupDoc) -> api.NodeGroupSpec:
    return api.NodeGroupSpec(
        name=doc.name or "",
        ami=doc.ami or "",
        ami_family=doc.ami_family or "",
        instance_type=doc.instance_type or api.DEFAULT_NODE_TYPE,
        desired_capacity=doc.desired_capacity or api.DEFAULT_NODE_COUNT,
        min_size=doc.min_size or 0,
        max_size=doc.max_size or 0,
        volume_size=doc.volume_size or 0,
        max_pods_per_node=doc.max_pods_per_node or 0,
        allow_ssh=bool(doc.allow_ssh),
        ssh_public_key_path=doc.ssh_public_key_path or "",
        private_networking=bool(doc.private_networking),
    )


def _cluster_fields(doc: ClusterConfigDoc) -> Dict[str, Any]:
    metadata = doc.metadata or MetadataDoc()
    vpc = doc.vpc or VPCDoc()
    node_groups = doc.node_groups or [None]
    if len(node_groups) != 1:
        raise DecodeError("exactly one nodegroup is supported in nodeGroups")
    addons = doc.addons or AddonsDoc()
    with_iam = addons.with_iam or IAMPoliciesDoc()

    return {
        "name": metadata.name or "",
        "region": metadata.region or "",
        "version": metadata.version or api.LATEST_VERSION_SENTINEL,
        "tags": dict(metadata.tags or {}),
        "availability_zones": tuple(doc.availability_zones or ()),
        "vpc": api.VPCSpec(
            id=vpc.id or "",
            cidr=vpc.cidr or api.DEFAULT_VPC_CIDR,
            subnets=_subnets(vpc.subnets or {}),
        ),
        "node_group": _node_group(node_groups[0] or NodeGroupDoc()),
        "addons": api.Addons(
            asg_access=with_iam.policy_auto_scaling,
            external_dns_access=with_iam.policy_external_dns,
            full_ecr_access=with_iam.policy_ecr_power_user,
            storage_class=addons.storage is not False,
        ),
    }


@register(api.GROUP_NAME, api.CURRENT_GROUP_VERSION, api.CLUSTER_CONFIG_KIND)
def _cluster_config(document: Dict[str, Any]) -> Dict[str, Any]:
    return _cluster_fields(ClusterConfigDoc.model_validate(document))


@register(api.GROUP_NAME, api.CURRENT_GROUP_VERSION, api.CLUSTER_CONFIG_LIST_KIND)
def _cluster_config_list(document: Dict[str, Any]) -> list:
    return [_cluster_fields(item) for item in ClusterConfigListDoc.model_validate(document).items or []]
