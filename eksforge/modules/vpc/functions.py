"""
VPC Module Functions
Creates VPC, subnets, route tables, NAT and security groups for EKS
"""

import pulumi
import pulumi_aws as aws
from typing import Any, Dict, List, Tuple

from eksforge import api


def create_vpc(name: str, cidr: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create VPC with DNS settings

    Args:
        name: Cluster name
        cidr: VPC CIDR block
        tags: Additional tags

    Returns:
        Dict with vpc resource and outputs
    """
    tags = tags or {}

    vpc = aws.ec2.Vpc(
        f"{name}-vpc",
        cidr_block=cidr,
        enable_dns_hostnames=True,
        enable_dns_support=True,
        tags={
            **tags,
            "Name": f"{name}-vpc",
            f"kubernetes.io/cluster/{name}": "shared",
        }
    )

    return {
        "vpc": vpc,
        "vpc_id": vpc.id,
        "vpc_cidr_block": vpc.cidr_block
    }


def create_internet_gateway(name: str, vpc_id: pulumi.Output[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    tags = tags or {}

    igw = aws.ec2.InternetGateway(
        f"{name}-igw",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-igw"
        }
    )

    return {
        "igw": igw,
        "igw_id": igw.id
    }


def create_subnets(name: str, vpc_id: pulumi.Output[str], topology: str,
                   subnets: Tuple[api.SubnetRef, ...], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create the subnets of one topology

    Args:
        name: Cluster name
        vpc_id: VPC ID
        topology: "public" or "private"
        subnets: Planned subnets (zone and CIDR)
        tags: Additional tags

    Returns:
        Dict with subnet resources and outputs
    """
    tags = tags or {}
    public = topology == api.TOPOLOGY_PUBLIC
    role_tag = "kubernetes.io/role/elb" if public else "kubernetes.io/role/internal-elb"

    created = []
    for index, subnet in enumerate(subnets):
        zone_suffix = subnet.availability_zone.replace("-", "")
        resource = aws.ec2.Subnet(
            f"{name}-{topology}-{index}-{zone_suffix}",
            vpc_id=vpc_id,
            cidr_block=subnet.cidr,
            availability_zone=subnet.availability_zone,
            map_public_ip_on_launch=public,
            tags={
                **tags,
                "Name": f"{name}-{topology}-{subnet.availability_zone}",
                "Type": topology,
                f"kubernetes.io/cluster/{name}": "shared",
                role_tag: "1"
            }
        )
        created.append(resource)

    return {
        "subnets": created,
        "subnet_ids": [subnet.id for subnet in created]
    }


def create_route_table(name: str, topology: str, vpc_id: pulumi.Output[str], subnet_ids: List[pulumi.Output[str]],
                       gateway_id: pulumi.Output[str] = None, nat_gateway_id: pulumi.Output[str] = None,
                       tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create a route table with a default route and associate subnets with it

    Args:
        name: Cluster name
        topology: "public" or "private"
        vpc_id: VPC ID
        subnet_ids: Subnets to associate
        gateway_id: Internet gateway for public routes
        nat_gateway_id: NAT gateway for private routes
        tags: Additional tags

    Returns:
        Dict with route table resources and outputs
    """
    tags = tags or {}

    route_table = aws.ec2.RouteTable(
        f"{name}-{topology}-rt",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-{topology}-rt"
        }
    )

    route = aws.ec2.Route(
        f"{name}-{topology}-route",
        route_table_id=route_table.id,
        destination_cidr_block="0.0.0.0/0",
        gateway_id=gateway_id,
        nat_gateway_id=nat_gateway_id
    )

    associations = []
    for i, subnet_id in enumerate(subnet_ids):
        association = aws.ec2.RouteTableAssociation(
            f"{name}-{topology}-rta-{i+1}",
            subnet_id=subnet_id,
            route_table_id=route_table.id
        )
        associations.append(association)

    return {
        "route_table": route_table,
        "route": route,
        "associations": associations,
        "route_table_id": route_table.id
    }


def create_nat_gateway(name: str, public_subnet_id: pulumi.Output[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """Single NAT gateway in the first public subnet, used by all private subnets"""
    tags = tags or {}

    eip = aws.ec2.Eip(
        f"{name}-nat-eip",
        domain="vpc",
        tags={
            **tags,
            "Name": f"{name}-nat-eip"
        }
    )

    nat = aws.ec2.NatGateway(
        f"{name}-nat",
        allocation_id=eip.id,
        subnet_id=public_subnet_id,
        tags={
            **tags,
            "Name": f"{name}-nat"
        }
    )

    return {
        "eip": eip,
        "nat": nat,
        "nat_gateway_id": nat.id
    }


def create_cluster_security_group(name: str, vpc_id: pulumi.Output[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    tags = tags or {}

    security_group = aws.ec2.SecurityGroup(
        f"{name}-cluster-sg",
        name_prefix=f"{name}-cluster-",
        description="Communication between the control plane and worker nodes",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-cluster-sg"
        }
    )

    egress_rule = aws.ec2.SecurityGroupRule(
        f"{name}-cluster-egress",
        type="egress",
        from_port=0,
        to_port=65535,
        protocol="-1",
        cidr_blocks=["0.0.0.0/0"],
        security_group_id=security_group.id
    )

    return {
        "security_group": security_group,
        "egress_rule": egress_rule,
        "security_group_id": security_group.id
    }


def create_node_security_group(name: str, vpc_id: pulumi.Output[str], cluster_sg_id: pulumi.Output[str],
                               allow_ssh: bool = False, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create security group for nodegroup instances

    Args:
        name: Cluster name
        vpc_id: VPC ID
        cluster_sg_id: Cluster security group ID
        allow_ssh: Open port 22 to the world
        tags: Additional tags

    Returns:
        Dict with security group resources and outputs
    """
    tags = tags or {}

    security_group = aws.ec2.SecurityGroup(
        f"{name}-node-sg",
        name_prefix=f"{name}-node-",
        description="Communication between all nodes in the cluster",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-node-sg",
            f"kubernetes.io/cluster/{name}": "owned"
        }
    )

    rules = {
        "node_ingress_self": aws.ec2.SecurityGroupRule(
            f"{name}-node-ingress-self",
            type="ingress",
            from_port=0,
            to_port=65535,
            protocol="-1",
            self=True,
            security_group_id=security_group.id
        ),
        "node_ingress_cluster": aws.ec2.SecurityGroupRule(
            f"{name}-node-ingress-cluster",
            type="ingress",
            from_port=1025,
            to_port=65535,
            protocol="tcp",
            source_security_group_id=cluster_sg_id,
            security_group_id=security_group.id
        ),
        "node_ingress_cluster_https": aws.ec2.SecurityGroupRule(
            f"{name}-node-ingress-cluster-https",
            type="ingress",
            from_port=443,
            to_port=443,
            protocol="tcp",
            source_security_group_id=cluster_sg_id,
            security_group_id=security_group.id
        ),
        "node_egress": aws.ec2.SecurityGroupRule(
            f"{name}-node-egress",
            type="egress",
            from_port=0,
            to_port=65535,
            protocol="-1",
            cidr_blocks=["0.0.0.0/0"],
            security_group_id=security_group.id
        ),
        "cluster_ingress_node": aws.ec2.SecurityGroupRule(
            f"{name}-cluster-ingress-node",
            type="ingress",
            from_port=443,
            to_port=443,
            protocol="tcp",
            source_security_group_id=security_group.id,
            security_group_id=cluster_sg_id
        ),
    }

    if allow_ssh:
        rules["node_ingress_ssh"] = aws.ec2.SecurityGroupRule(
            f"{name}-node-ingress-ssh",
            type="ingress",
            from_port=22,
            to_port=22,
            protocol="tcp",
            cidr_blocks=["0.0.0.0/0"],
            security_group_id=security_group.id
        )

    return {
        "security_group": security_group,
        "rules": rules,
        "security_group_id": security_group.id
    }


def create_vpc_resources(cluster_name: str, vpc_spec: api.VPCSpec, allow_ssh: bool = False,
                         tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create networking for the cluster

    A spec without a VPC id gets a dedicated VPC built from its planned
    subnets; otherwise only security groups are created in the given VPC
    and its subnets are used as they are.

    Args:
        cluster_name: EKS cluster name
        vpc_spec: Planned or imported VPC
        allow_ssh: Open SSH on the node security group
        tags: Additional tags for all resources

    Returns:
        Dict with VPC id, subnet ids per topology and security group ids
    """
    tags = tags or {}
    resources: Dict[str, Any] = {}

    if vpc_spec.id:
        pulumi.log.info(f"using existing {vpc_spec.describe()}")
        vpc_id = pulumi.Output.from_input(vpc_spec.id)
        subnet_ids = {topology: [pulumi.Output.from_input(i) for i in vpc_spec.subnet_ids(topology)]
                      for topology in api.TOPOLOGIES}
    else:
        pulumi.log.info(f"creating dedicated VPC {vpc_spec.cidr} for cluster {cluster_name}")
        vpc_result = create_vpc(cluster_name, vpc_spec.cidr, tags)
        vpc_id = vpc_result["vpc_id"]
        igw_result = create_internet_gateway(cluster_name, vpc_id, tags)

        public_result = create_subnets(cluster_name, vpc_id, api.TOPOLOGY_PUBLIC,
                                       vpc_spec.subnets.get(api.TOPOLOGY_PUBLIC, ()), tags)
        private_result = create_subnets(cluster_name, vpc_id, api.TOPOLOGY_PRIVATE,
                                        vpc_spec.subnets.get(api.TOPOLOGY_PRIVATE, ()), tags)

        public_rt = create_route_table(cluster_name, api.TOPOLOGY_PUBLIC, vpc_id, public_result["subnet_ids"],
                                       gateway_id=igw_result["igw_id"], tags=tags)
        nat_result = create_nat_gateway(cluster_name, public_result["subnet_ids"][0], tags)
        private_rt = create_route_table(cluster_name, api.TOPOLOGY_PRIVATE, vpc_id, private_result["subnet_ids"],
                                        nat_gateway_id=nat_result["nat_gateway_id"], tags=tags)

        subnet_ids = {
            api.TOPOLOGY_PUBLIC: public_result["subnet_ids"],
            api.TOPOLOGY_PRIVATE: private_result["subnet_ids"],
        }
        resources.update({
            "_vpc": vpc_result["vpc"],
            "_igw": igw_result["igw"],
            "_nat": nat_result["nat"],
            "_public_route_table": public_rt["route_table"],
            "_private_route_table": private_rt["route_table"],
        })

    cluster_sg_result = create_cluster_security_group(cluster_name, vpc_id, tags)
    node_sg_result = create_node_security_group(cluster_name, vpc_id, cluster_sg_result["security_group_id"],
                                                allow_ssh, tags)

    return {
        "vpc_id": vpc_id,
        "public_subnet_ids": subnet_ids[api.TOPOLOGY_PUBLIC],
        "private_subnet_ids": subnet_ids[api.TOPOLOGY_PRIVATE],
        "cluster_security_group_id": cluster_sg_result["security_group_id"],
        "node_security_group_id": node_sg_result["security_group_id"],
        # Keep references to all resources for dependencies
        "_cluster_sg": cluster_sg_result["security_group"],
        "_node_sg": node_sg_result["security_group"],
        **resources
    }
