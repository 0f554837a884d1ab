"""
EKS Module Functions
Creates the EKS control plane and a self-managed nodegroup
"""

import base64

import pulumi
import pulumi_aws as aws
from typing import Any, Dict, List

from eksforge import api
from eksforge.modules.iam.functions import create_cluster_role, create_node_group_role
from eksforge.modules.vpc.functions import create_vpc_resources


def create_eks_cluster(name: str, version: str, role_arn: pulumi.Output[str],
                       subnet_ids: List[pulumi.Output[str]], security_group_ids: List[pulumi.Output[str]],
                       tags: Dict[str, str] = None, opts: pulumi.ResourceOptions = None) -> Dict[str, Any]:
    """
    Create EKS cluster

    Args:
        name: Cluster name
        version: Kubernetes version
        role_arn: IAM role ARN for cluster
        subnet_ids: List of subnet IDs
        security_group_ids: List of security group IDs
        tags: Additional tags
        opts: Pulumi resource options

    Returns:
        Dict with cluster resource and outputs
    """
    tags = tags or {}

    cluster = aws.eks.Cluster(
        f"{name}-cluster",
        name=name,
        version=version,
        role_arn=role_arn,
        vpc_config=aws.eks.ClusterVpcConfigArgs(
            subnet_ids=subnet_ids,
            security_group_ids=security_group_ids,
            endpoint_private_access=False,
            endpoint_public_access=True
        ),
        tags={
            **tags,
            "Name": f"{name}-cluster"
        },
        opts=opts
    )

    return {
        "cluster": cluster,
        "cluster_arn": cluster.arn,
        "cluster_endpoint": cluster.endpoint,
        "cluster_certificate_authority_data": cluster.certificate_authority.data
    }


def build_user_data(cluster_name: str, node_group: api.NodeGroupSpec, endpoint: str,
                    certificate_authority_data: str) -> str:
    """
    Render the bootstrap script run by nodegroup instances on first boot

    Returns:
        Base64 encoded user data
    """
    kubelet_args = [f"--node-labels={api.NODEGROUP_NAME_LABEL}={node_group.name}"]
    bootstrap_args = [
        cluster_name,
        f"--apiserver-endpoint '{endpoint}'",
        f"--b64-cluster-ca '{certificate_authority_data}'",
    ]
    if node_group.max_pods_per_node:
        kubelet_args.append(f"--max-pods={node_group.max_pods_per_node}")
        bootstrap_args.append("--use-max-pods false")
    bootstrap_args.append(f"--kubelet-extra-args '{' '.join(kubelet_args)}'")

    script = "\n".join([
        "#!/bin/bash",
        "set -o xtrace",
        "/etc/eks/bootstrap.sh " + " ".join(bootstrap_args),
        ""
    ])
    return base64.b64encode(script.encode("utf-8")).decode("utf-8")


def create_launch_template(name: str, node_group: api.NodeGroupSpec, instance_profile_arn: pulumi.Output[str],
                           node_security_group_id: pulumi.Output[str], user_data: str,
                           tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create launch template for nodegroup instances

    Args:
        name: Resource name prefix
        node_group: Nodegroup spec with a resolved AMI
        instance_profile_arn: Instance profile for the node role
        node_security_group_id: Node security group
        user_data: Base64 encoded bootstrap script
        tags: Additional tags

    Returns:
        Dict with launch template resource and outputs
    """
    tags = tags or {}

    block_device_mappings = None
    if node_group.volume_size:
        block_device_mappings = [aws.ec2.LaunchTemplateBlockDeviceMappingArgs(
            device_name="/dev/xvda",
            ebs=aws.ec2.LaunchTemplateBlockDeviceMappingEbsArgs(
                volume_size=node_group.volume_size,
                volume_type="gp2"
            )
        )]

    launch_template = aws.ec2.LaunchTemplate(
        f"{name}-lt",
        image_id=node_group.ami,
        instance_type=node_group.instance_type,
        key_name=node_group.ssh_public_key_name or None,
        user_data=user_data,
        iam_instance_profile=aws.ec2.LaunchTemplateIamInstanceProfileArgs(arn=instance_profile_arn),
        network_interfaces=[aws.ec2.LaunchTemplateNetworkInterfaceArgs(
            associate_public_ip_address="false" if node_group.private_networking else "true",
            security_groups=[node_security_group_id],
            delete_on_termination="true"
        )],
        block_device_mappings=block_device_mappings,
        tags={
            **tags,
            "Name": f"{name}-lt"
        }
    )

    return {
        "launch_template": launch_template,
        "launch_template_id": launch_template.id
    }


def create_auto_scaling_group(name: str, cluster_name: str, node_group: api.NodeGroupSpec,
                              launch_template_id: pulumi.Output[str], subnet_ids: List[str],
                              tags: Dict[str, str] = None) -> Dict[str, Any]:
    """Create the auto scaling group backing the nodegroup"""
    tags = tags or {}
    instance_tags = {
        **tags,
        "Name": f"{cluster_name}-{node_group.name}-Node",
        f"kubernetes.io/cluster/{cluster_name}": "owned",
    }

    group = aws.autoscaling.Group(
        f"{name}-asg",
        desired_capacity=node_group.desired_capacity,
        min_size=node_group.min_size,
        max_size=node_group.max_size,
        vpc_zone_identifiers=subnet_ids,
        launch_template=aws.autoscaling.GroupLaunchTemplateArgs(
            id=launch_template_id,
            version="$Latest"
        ),
        tags=[
            aws.autoscaling.GroupTagArgs(key=key, value=value, propagate_at_launch=True)
            for key, value in instance_tags.items()
        ]
    )

    return {
        "auto_scaling_group": group,
        "auto_scaling_group_name": group.name
    }


def create_cluster_resources(request: api.ClusterCreationRequest, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create networking, cluster role and control plane

    Args:
        request: Cluster creation request with a realised VPC spec
        tags: Tags for all resources

    Returns:
        Dict with control plane outputs and the subnets/security group
        the nodegroup stack needs
    """
    tags = tags or {}

    network = create_vpc_resources(request.name, request.vpc, request.node_group.allow_ssh, tags)
    role_result = create_cluster_role(request.name, tags)
    cluster_result = create_eks_cluster(
        name=request.name,
        version=request.version,
        role_arn=role_result["role_arn"],
        subnet_ids=network["public_subnet_ids"] + network["private_subnet_ids"],
        security_group_ids=[network["cluster_security_group_id"]],
        tags=tags,
        opts=pulumi.ResourceOptions(depends_on=list(role_result["policy_attachments"].values()))
    )

    return {
        "endpoint": cluster_result["cluster_endpoint"],
        "certificate_authority_data": cluster_result["cluster_certificate_authority_data"],
        "arn": cluster_result["cluster_arn"],
        "vpc_id": network["vpc_id"],
        "public_subnet_ids": network["public_subnet_ids"],
        "private_subnet_ids": network["private_subnet_ids"],
        "node_security_group_id": network["node_security_group_id"],
        "_cluster": cluster_result["cluster"],
        "_network": network
    }


def create_nodegroup_resources(request: api.ClusterCreationRequest, endpoint: str, certificate_authority_data: str,
                               node_security_group_id: str, subnet_ids: List[str],
                               tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create node role, launch template and auto scaling group

    Args:
        request: Cluster creation request with resolved AMI and SSH key
        endpoint: Control plane endpoint from the cluster stack
        certificate_authority_data: Control plane CA from the cluster stack
        node_security_group_id: Node security group from the cluster stack
        subnet_ids: Subnets of the nodegroup topology
        tags: Tags for all resources

    Returns:
        Dict with nodegroup outputs
    """
    tags = tags or {}
    node_group = request.node_group
    prefix = f"{request.name}-{node_group.name}"
    pulumi.log.info(f"creating nodegroup {node_group.name} with {node_group.desired_capacity} x {node_group.instance_type}")

    role_result = create_node_group_role(request.name, node_group.name, request.addons, tags)
    user_data = build_user_data(request.name, node_group, endpoint, certificate_authority_data)
    lt_result = create_launch_template(prefix, node_group, role_result["instance_profile_arn"],
                                       node_security_group_id, user_data, tags)
    asg_result = create_auto_scaling_group(prefix, request.name, node_group, lt_result["launch_template_id"],
                                           subnet_ids, tags)

    return {
        "node_instance_role_arn": role_result["role_arn"],
        "auto_scaling_group_name": asg_result["auto_scaling_group_name"],
        "_role": role_result["role"],
        "_launch_template": lt_result["launch_template"],
        "_auto_scaling_group": asg_result["auto_scaling_group"]
    }
