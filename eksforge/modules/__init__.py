"""
Pulumi modules for EKS infrastructure
Function-based resource declarations composed by eksforge.stacks
"""

from .vpc import create_vpc_resources
from .iam import create_cluster_role, create_node_group_role
from .eks import create_cluster_resources, create_nodegroup_resources

__all__ = [
    "create_vpc_resources",
    "create_cluster_role",
    "create_node_group_role",
    "create_cluster_resources",
    "create_nodegroup_resources",
]
