"""
Infrastructure provisioning through the Pulumi Automation API
One stack for the cluster itself and one for the initial nodegroup
"""

import logging
import os
from typing import Any, Callable, Dict, List, Optional

import pulumi
from pulumi import automation as auto

from eksforge import api
from eksforge.config import Config, get_config
from eksforge.modules import create_cluster_resources, create_nodegroup_resources

logger = logging.getLogger(__name__)


def cluster_stack_name(request: api.ClusterCreationRequest) -> str:
    return f"{request.name}-cluster"


def nodegroup_stack_name(request: api.ClusterCreationRequest) -> str:
    return f"{request.name}-nodegroup-{request.node_group.name}"


def cleanup_hint(request: api.ClusterCreationRequest, project_name: str) -> str:
    return (f"to cleanup resources, run 'pulumi destroy' on stacks {nodegroup_stack_name(request)!r} "
            f"and {cluster_stack_name(request)!r} (project {project_name!r})")


def cluster_program(request: api.ClusterCreationRequest, tags: Dict[str, str]) -> Callable[[], None]:
    def program():
        result = create_cluster_resources(request, tags)
        for key in ("endpoint", "certificate_authority_data", "arn", "vpc_id",
                    "public_subnet_ids", "private_subnet_ids", "node_security_group_id"):
            pulumi.export(key, result[key])
    return program


def nodegroup_program(request: api.ClusterCreationRequest, cluster: Dict[str, Any],
                      tags: Dict[str, str]) -> Callable[[], None]:
    subnet_key = "private_subnet_ids" if request.node_group.private_networking else "public_subnet_ids"

    def program():
        result = create_nodegroup_resources(
            request,
            endpoint=cluster["endpoint"],
            certificate_authority_data=cluster["certificate_authority_data"],
            node_security_group_id=cluster["node_security_group_id"],
            subnet_ids=cluster[subnet_key],
            tags=tags,
        )
        pulumi.export("node_instance_role_arn", result["node_instance_role_arn"])
        pulumi.export("auto_scaling_group_name", result["auto_scaling_group_name"])
    return program


class PulumiProvisioner:
    """Creates cluster infrastructure and reports an aggregated error list"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    def _workspace_options(self) -> auto.LocalWorkspaceOptions:
        if self.config.backend_url.startswith("file://"):
            os.makedirs(self.config.backend_url[len("file://"):], exist_ok=True)
        env_vars = {"PULUMI_CONFIG_PASSPHRASE": os.environ.get("PULUMI_CONFIG_PASSPHRASE", "")}
        return auto.LocalWorkspaceOptions(
            project_settings=auto.ProjectSettings(
                name=self.config.project_name,
                runtime="python",
                backend=auto.ProjectBackend(url=self.config.backend_url),
            ),
            env_vars=env_vars,
        )

    def _up(self, request: api.ClusterCreationRequest, stack_name: str,
            program: Callable[[], None]) -> Dict[str, Any]:
        stack = auto.create_or_select_stack(
            stack_name=stack_name,
            project_name=self.config.project_name,
            program=program,
            opts=self._workspace_options(),
        )
        stack.set_config("aws:region", auto.ConfigValue(value=request.region))
        if request.provider.profile:
            stack.set_config("aws:profile", auto.ConfigValue(value=request.provider.profile))

        logger.info("creating stack %r", stack_name)
        result = stack.up(on_output=logger.debug)
        if result.summary.result != "succeeded":
            raise RuntimeError(f"stack {stack_name!r} finished with result {result.summary.result!r}")
        return {key: output.value for key, output in result.outputs.items()}

    def provision(self, request: api.ClusterCreationRequest) -> api.ProvisioningResult:
        """
        Create the cluster stack, then the nodegroup stack

        Args:
            request: Fully resolved cluster creation request

        Returns:
            ProvisioningResult; errors is empty only when both stacks succeeded
        """
        tags = self.config.common_tags(request.name, request.tags)
        errors: List[str] = []

        logger.info("will create 2 separate stacks for cluster itself and the initial nodegroup")
        try:
            cluster = self._up(request, cluster_stack_name(request), cluster_program(request, tags))
        except (auto.CommandError, RuntimeError) as e:
            errors.append(f"creating stack {cluster_stack_name(request)!r}: {e}")
            return api.ProvisioningResult(errors=tuple(errors))

        try:
            nodegroup = self._up(request, nodegroup_stack_name(request), nodegroup_program(request, cluster, tags))
        except (auto.CommandError, RuntimeError) as e:
            errors.append(f"creating stack {nodegroup_stack_name(request)!r}: {e}")
            return api.ProvisioningResult(errors=tuple(errors))

        return api.ProvisioningResult(outputs=api.ClusterOutputs(
            endpoint=cluster["endpoint"],
            certificate_authority_data=cluster["certificate_authority_data"],
            arn=cluster.get("arn", ""),
            node_instance_role_arn=nodegroup["node_instance_role_arn"],
        ))
