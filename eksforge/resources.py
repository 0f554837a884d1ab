"""
Node image and SSH key resolution
"""

import base64
import hashlib
import logging
import os
from dataclasses import replace
from typing import Any

from botocore.exceptions import ClientError

from eksforge import api
from eksforge.exceptions import ValidationError

logger = logging.getLogger(__name__)

GPU_INSTANCE_FAMILIES = ("p2", "p3", "p4d", "g3", "g3s", "g4dn", "g5")

AMI_SSM_PARAMETER = "/aws/service/eks/optimized-ami/{version}/{image}/recommended/image_id"


def is_gpu_instance_type(instance_type: str) -> bool:
    return instance_type.split(".", 1)[0] in GPU_INSTANCE_FAMILIES


def ensure_ami(request: api.ClusterCreationRequest, ssm: Any) -> api.ClusterCreationRequest:
    """
    Resolve the nodegroup AMI when it is only marked for resolution

    Args:
        request: Cluster creation request
        ssm: boto3 SSM client

    Returns:
        Request whose nodegroup carries a concrete AMI id
    """
    node_group = request.node_group
    if node_group.ami not in (api.AMI_RESOLVER_STATIC, api.AMI_RESOLVER_AUTO):
        return request

    image = "amazon-linux-2-gpu" if is_gpu_instance_type(node_group.instance_type) else "amazon-linux-2"
    name = AMI_SSM_PARAMETER.format(version=request.version, image=image)
    try:
        ami = ssm.get_parameter(Name=name)["Parameter"]["Value"]
    except ClientError as e:
        raise ValidationError(
            f"unable to determine AMI for {node_group.ami_family} {request.version} in {request.region}: {e}"
        ) from e

    logger.info("using %s AMI %r for nodegroup %r", node_group.ami_family, ami, node_group.name)
    return replace(request, node_group=replace(node_group, ami=ami))


def fingerprint(public_key: bytes) -> str:
    """MD5 fingerprint of an OpenSSH public key, colon separated"""
    parts = public_key.split()
    if len(parts) < 2:
        raise ValidationError("SSH public key is not in OpenSSH format")
    digest = hashlib.md5(base64.b64decode(parts[1])).hexdigest()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def load_ssh_public_key(request: api.ClusterCreationRequest, ec2: Any) -> api.ClusterCreationRequest:
    """
    Import the nodegroup SSH public key as an EC2 key pair when SSH is allowed

    Args:
        request: Cluster creation request
        ec2: boto3 EC2 client

    Returns:
        Request whose nodegroup carries the EC2 key pair name
    """
    node_group = request.node_group
    if not node_group.allow_ssh:
        return request

    path = os.path.expanduser(node_group.ssh_public_key_path)
    try:
        with open(path, "rb") as f:
            material = f.read()
    except OSError as e:
        raise ValidationError(f"reading SSH public key file {path!r}: {e}") from e

    key_name = "eksforge-%s-nodegroup-%s-%s" % (
        request.name, node_group.name, fingerprint(material).replace(":", ""))

    existing = ec2.describe_key_pairs(Filters=[{"Name": "key-name", "Values": [key_name]}]).get("KeyPairs", [])
    if existing:
        logger.info("using existing EC2 key pair %r", key_name)
    else:
        ec2.import_key_pair(KeyName=key_name, PublicKeyMaterial=material)
        logger.info("imported SSH public key %r as %r", path, key_name)

    return replace(request, node_group=replace(node_group, ssh_public_key_name=key_name))
