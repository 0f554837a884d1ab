"""
IAM Module for EKS
Cluster service role and nodegroup instance role
"""

from .functions import create_cluster_role, create_node_group_role

__all__ = ["create_cluster_role", "create_node_group_role"]
