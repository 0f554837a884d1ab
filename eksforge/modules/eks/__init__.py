"""
EKS Module
Control plane and self-managed nodegroup
"""

from .functions import create_cluster_resources, create_nodegroup_resources

__all__ = ["create_cluster_resources", "create_nodegroup_resources"]
