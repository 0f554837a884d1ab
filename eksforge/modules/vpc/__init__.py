"""
VPC Module for EKS
Dedicated VPC with public and private subnets, or security groups only
when subnets are re-used
"""

from .functions import create_vpc_resources

__all__ = ["create_vpc_resources"]
