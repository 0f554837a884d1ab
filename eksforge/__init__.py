"""
eksforge - bring up an EKS cluster and its initial nodegroup
from flags or a declarative ClusterConfig document
"""

__version__ = "0.1.0"
