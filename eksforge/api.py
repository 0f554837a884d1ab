"""
Cluster creation data model
Values are built once and passed forward; downstream defaulting
uses dataclasses.replace instead of mutation
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

GROUP_NAME = "eksforge.io"
PROJECT_NAME = "eksforge"
CURRENT_GROUP_VERSION = "v1alpha1"
CLUSTER_CONFIG_KIND = "ClusterConfig"
CLUSTER_CONFIG_LIST_KIND = "ClusterConfigList"

SUPPORTED_REGIONS = ["us-west-2", "us-east-1", "eu-west-1"]
DEFAULT_REGION = "us-west-2"

LATEST_VERSION_SENTINEL = "latest"
SUPPORTED_VERSIONS = ["1.10", "1.11"]
LATEST_VERSION = "1.11"
LEGACY_STORAGE_CLASS_VERSION = "1.10"

DEFAULT_VPC_CIDR = "192.168.0.0/16"
DEFAULT_NODE_COUNT = 2
DEFAULT_NODE_TYPE = "m5.large"
DEFAULT_AMI_FAMILY = "AmazonLinux2"
AMI_FAMILIES = ["AmazonLinux2"]
AMI_RESOLVER_STATIC = "static"
AMI_RESOLVER_AUTO = "auto"
DEFAULT_SSH_PUBLIC_KEY = "~/.ssh/id_rsa.pub"

DEFAULT_WAIT_TIMEOUT = 20 * 60.0

MIN_REQUIRED_AVAILABILITY_ZONES = 2
MIN_SUBNETS_PER_ZONE = 1

TOPOLOGY_PRIVATE = "private"
TOPOLOGY_PUBLIC = "public"
TOPOLOGIES = (TOPOLOGY_PRIVATE, TOPOLOGY_PUBLIC)

NODEGROUP_NAME_LABEL = "eksforge.io/nodegroup-name"


@dataclass(frozen=True)
class ProviderConfig:
    region: str = ""
    profile: str = ""
    wait_timeout: float = DEFAULT_WAIT_TIMEOUT
    control_plane_timeout: float = 0.0
    nodes_timeout: float = 0.0


@dataclass(frozen=True)
class SubnetRef:
    id: str = ""
    availability_zone: str = ""
    cidr: str = ""


@dataclass(frozen=True)
class VPCSpec:
    id: str = ""
    cidr: str = DEFAULT_VPC_CIDR
    subnets: Dict[str, Tuple[SubnetRef, ...]] = field(
        default_factory=lambda: {TOPOLOGY_PRIVATE: (), TOPOLOGY_PUBLIC: ()}
    )

    def subnet_ids(self, topology: str) -> List[str]:
        return [subnet.id for subnet in self.subnets.get(topology, ()) if subnet.id]

    def availability_zones(self, topology: str) -> List[str]:
        return sorted({subnet.availability_zone for subnet in self.subnets.get(topology, ())
                       if subnet.availability_zone})

    def has_subnets(self) -> bool:
        return any(self.subnets.get(topology) for topology in TOPOLOGIES)

    def describe(self) -> str:
        return "VPC (%s) and subnets (private:%s public:%s)" % (
            self.id, self.subnet_ids(TOPOLOGY_PRIVATE), self.subnet_ids(TOPOLOGY_PUBLIC))


@dataclass(frozen=True)
class NodeGroupSpec:
    name: str = ""
    ami: str = ""
    ami_family: str = ""
    instance_type: str = DEFAULT_NODE_TYPE
    desired_capacity: int = DEFAULT_NODE_COUNT
    min_size: int = 0
    max_size: int = 0
    volume_size: int = 0
    max_pods_per_node: int = 0
    allow_ssh: bool = False
    ssh_public_key_path: str = ""
    ssh_public_key_name: str = ""
    private_networking: bool = False

    @property
    def topology(self) -> str:
        return TOPOLOGY_PRIVATE if self.private_networking else TOPOLOGY_PUBLIC


@dataclass(frozen=True)
class Addons:
    asg_access: bool = False
    external_dns_access: bool = False
    full_ecr_access: bool = False
    storage_class: bool = True


@dataclass(frozen=True)
class KubeconfigOptions:
    write: bool = True
    path: str = ""
    set_context: bool = True
    auto_path: bool = False


@dataclass(frozen=True)
class DedicatedNew:
    """Create a dedicated VPC, zones are auto-selected when empty"""
    zones: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ImportedFrom:
    """Re-use the VPC of an existing kops cluster"""
    source_name: str


@dataclass(frozen=True)
class ExplicitSubnets:
    """Re-use subnets given by ID, keyed by topology"""
    per_topology: Dict[str, Tuple[str, ...]]


NetworkingPlan = Union[DedicatedNew, ImportedFrom, ExplicitSubnets]


@dataclass(frozen=True)
class NetworkingSignals:
    private_subnet_ids: Tuple[str, ...] = ()
    public_subnet_ids: Tuple[str, ...] = ()
    import_from: str = ""
    availability_zones: Tuple[str, ...] = ()

    @property
    def subnets_given(self) -> bool:
        return bool(self.private_subnet_ids or self.public_subnet_ids)


@dataclass(frozen=True)
class Generated:
    name: str


@dataclass(frozen=True)
class Provided:
    name: str


@dataclass(frozen=True)
class Conflict:
    flag_value: str
    arg_value: str


NameResolution = Union[Generated, Provided, Conflict]


@dataclass(frozen=True)
class ClusterCreationRequest:
    name: str
    region: str
    version: str = LATEST_VERSION
    tags: Dict[str, str] = field(default_factory=dict)
    vpc: VPCSpec = field(default_factory=VPCSpec)
    availability_zones: Tuple[str, ...] = ()
    node_group: NodeGroupSpec = field(default_factory=NodeGroupSpec)
    addons: Addons = field(default_factory=Addons)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    kubeconfig: KubeconfigOptions = field(default_factory=KubeconfigOptions)
    networking: NetworkingSignals = field(default_factory=NetworkingSignals)

    def log_string(self) -> str:
        return f'EKS cluster "{self.name}" in "{self.region}" region'


@dataclass(frozen=True)
class ClusterOutputs:
    endpoint: str
    certificate_authority_data: str
    arn: str = ""
    node_instance_role_arn: str = ""


@dataclass(frozen=True)
class ProvisioningResult:
    """Aggregated outcome of infrastructure creation; only an empty error list means success"""
    errors: Tuple[str, ...] = ()
    outputs: Optional[ClusterOutputs] = None

    @property
    def succeeded(self) -> bool:
        return not self.errors
