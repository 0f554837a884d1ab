"""
Cluster bring-up orchestration
Networking → AMI/SSH key → provisioning → readiness, in that order
"""

import logging
import random
import threading
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from eksforge import api, networking, resources
from eksforge.config import Config, get_config
from eksforge.exceptions import ValidationError
from eksforge.kubeconfig import CredentialWriter
from eksforge.readiness import ReadinessWorkflow
from eksforge.stacks import PulumiProvisioner

logger = logging.getLogger(__name__)


def aws_session(request: api.ClusterCreationRequest) -> boto3.Session:
    return boto3.Session(profile_name=request.provider.profile or None, region_name=request.region)


def check_auth(session: Any) -> str:
    """
    Make sure the session holds usable credentials

    Returns:
        ARN of the calling identity
    """
    try:
        identity = session.client("sts").get_caller_identity()
    except (BotoCoreError, ClientError) as e:
        raise ValidationError(f"checking AWS STS access - cannot get role ARN for current session: {e}") from e
    logger.debug("role ARN for the current session is %r", identity["Arn"])
    return identity["Arn"]


def create_cluster(request: api.ClusterCreationRequest, session: Any = None, provisioner: Any = None,
                   cancel: Optional[threading.Event] = None, config: Optional[Config] = None,
                   rng: Optional[random.Random] = None) -> ReadinessWorkflow:
    """
    Create a cluster and its initial nodegroup and wait until it is ready

    Args:
        request: Resolved cluster creation request
        session: boto3 session, built from the request when omitted
        provisioner: Object with provision(request) -> ProvisioningResult
        cancel: Event that aborts readiness waits
        config: Runtime configuration
        rng: Random source for zone selection

    Returns:
        The ReadinessWorkflow, in state READY

    Raises:
        EksforgeError: Any fatal configuration, provisioning or readiness error
    """
    config = config or get_config()

    plan = networking.plan_networking(request.networking)
    logger.debug("networking plan: %r", plan)

    logger.info("using region %s", request.region)
    session = session or aws_session(request)
    check_auth(session)

    ec2 = session.client("ec2")
    request = networking.apply_plan(plan, request, ec2, rng)
    request = resources.ensure_ami(request, session.client("ssm"))
    request = resources.load_ssh_public_key(request, ec2)

    logger.info("creating %s", request.log_string())
    logger.debug("request = %r", request)

    provisioner = provisioner or PulumiProvisioner(config)
    result = provisioner.provision(request)

    workflow = ReadinessWorkflow(
        request,
        CredentialWriter(request, session),
        cancel=cancel,
        poll_interval=config.poll_interval,
        max_poll_interval=config.max_poll_interval,
        project_name=config.project_name,
    )
    workflow.run(result)
    return workflow
