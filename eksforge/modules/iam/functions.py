"""
IAM Module Functions
Creates IAM roles and policies for the EKS control plane and nodegroup
"""

import json

import pulumi_aws as aws
from typing import Any, Dict

from eksforge import api

AUTOSCALING_POLICY = {
    "Version": "2012-10-17",
    "Statement": [{
        "Effect": "Allow",
        "Action": [
            "autoscaling:DescribeAutoScalingGroups",
            "autoscaling:DescribeAutoScalingInstances",
            "autoscaling:DescribeLaunchConfigurations",
            "autoscaling:DescribeTags",
            "autoscaling:SetDesiredCapacity",
            "autoscaling:TerminateInstanceInAutoScalingGroup"
        ],
        "Resource": "*"
    }]
}

EXTERNAL_DNS_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": ["route53:ChangeResourceRecordSets"],
            "Resource": "arn:aws:route53:::hostedzone/*"
        },
        {
            "Effect": "Allow",
            "Action": ["route53:ListHostedZones", "route53:ListResourceRecordSets"],
            "Resource": "*"
        }
    ]
}


def _assume_role_policy(service: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Action": "sts:AssumeRole",
            "Effect": "Allow",
            "Principal": {"Service": service}
        }]
    })


def create_cluster_role(name: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create IAM role for EKS cluster

    Args:
        name: Cluster name
        tags: Additional tags

    Returns:
        Dict with role resource and outputs
    """
    tags = tags or {}

    role = aws.iam.Role(
        f"{name}-cluster-role",
        assume_role_policy=_assume_role_policy("eks.amazonaws.com"),
        tags={
            **tags,
            "Name": f"{name}-cluster-role"
        }
    )

    policy_attachments = {}
    for policy_name in ("AmazonEKSClusterPolicy", "AmazonEKSServicePolicy"):
        policy_attachments[policy_name] = aws.iam.RolePolicyAttachment(
            f"{name}-{policy_name}",
            policy_arn=f"arn:aws:iam::aws:policy/{policy_name}",
            role=role.name
        )

    return {
        "role": role,
        "policy_attachments": policy_attachments,
        "role_arn": role.arn,
        "role_name": role.name
    }


def create_node_group_role(name: str, node_group_name: str, addons: api.Addons,
                           tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create IAM role and instance profile for nodegroup instances

    Args:
        name: Cluster name
        node_group_name: Nodegroup name
        addons: Add-on flags selecting extra policies
        tags: Additional tags

    Returns:
        Dict with role resources and outputs
    """
    tags = tags or {}
    prefix = f"{name}-{node_group_name}"

    role = aws.iam.Role(
        f"{prefix}-node-role",
        assume_role_policy=_assume_role_policy("ec2.amazonaws.com"),
        tags={
            **tags,
            "Name": f"{prefix}-node-role"
        }
    )

    registry_policy = "AmazonEC2ContainerRegistryPowerUser" if addons.full_ecr_access \
        else "AmazonEC2ContainerRegistryReadOnly"
    policies = [
        ("worker", "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy"),
        ("cni", "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy"),
        ("registry", f"arn:aws:iam::aws:policy/{registry_policy}"),
    ]

    policy_attachments = {}
    for policy_name, policy_arn in policies:
        policy_attachments[f"{policy_name}_policy"] = aws.iam.RolePolicyAttachment(
            f"{prefix}-node-{policy_name}-policy",
            policy_arn=policy_arn,
            role=role.name
        )

    inline_policies = {}
    if addons.asg_access:
        inline_policies["autoscaling"] = aws.iam.RolePolicy(
            f"{prefix}-autoscaling",
            role=role.id,
            policy=json.dumps(AUTOSCALING_POLICY)
        )
    if addons.external_dns_access:
        inline_policies["external_dns"] = aws.iam.RolePolicy(
            f"{prefix}-external-dns",
            role=role.id,
            policy=json.dumps(EXTERNAL_DNS_POLICY)
        )

    instance_profile = aws.iam.InstanceProfile(
        f"{prefix}-node-instance-profile",
        role=role.name,
        tags={
            **tags,
            "Name": f"{prefix}-node-instance-profile"
        }
    )

    return {
        "role": role,
        "policy_attachments": policy_attachments,
        "inline_policies": inline_policies,
        "instance_profile": instance_profile,
        "instance_profile_arn": instance_profile.arn,
        "role_arn": role.arn,
        "role_name": role.name
    }
