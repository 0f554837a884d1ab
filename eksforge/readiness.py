"""
Post-provisioning readiness workflow
Waits for the control plane, authorises and waits for nodes, applies the
legacy storage class add-on, then reports advisories
"""

import enum
import json
import logging
import shutil
import subprocess
import threading
from typing import Any, Callable, Dict, List, Optional

import urllib3
import yaml
from botocore.exceptions import BotoCoreError, ClientError
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException

from eksforge import api, resources, stacks, utils
from eksforge.exceptions import CancellationError, EksforgeError, ProvisioningError, ReadinessTimeout

logger = logging.getLogger(__name__)

AUTH_CONFIG_MAP_NAME = "aws-auth"
AUTH_CONFIG_MAP_NAMESPACE = "kube-system"
NODE_BOOTSTRAP_GROUPS = ["system:bootstrappers", "system:nodes"]
NODE_USERNAME = "system:node:{{EC2PrivateDNSName}}"

DEFAULT_STORAGE_CLASS = "gp2"
DEFAULT_STORAGE_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"

MIN_KUBECTL_VERSION = (1, 10, 0)

GPU_NOTICE = ("as you are using a GPU optimized instance type you will need to install NVIDIA Kubernetes "
              "device plugin; see https://github.com/NVIDIA/k8s-device-plugin")

_POLL_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)
_API_ERRORS = (ApiException, BotoCoreError, ClientError)


class ReadinessState(enum.Enum):
    REQUESTED = "Requested"
    CONTROL_PLANE_PROVISIONED = "ControlPlaneProvisioned"
    CONTROL_PLANE_REACHABLE = "ControlPlaneReachable"
    NODES_AUTHORIZED = "NodesAuthorized"
    NODES_JOINED = "NodesJoined"
    STORAGE_CLASS_APPLIED = "StorageClassApplied"
    READY = "Ready"
    FAILED = "Failed"


_ORDER = [
    ReadinessState.REQUESTED,
    ReadinessState.CONTROL_PLANE_PROVISIONED,
    ReadinessState.CONTROL_PLANE_REACHABLE,
    ReadinessState.NODES_AUTHORIZED,
    ReadinessState.NODES_JOINED,
    ReadinessState.STORAGE_CLASS_APPLIED,
    ReadinessState.READY,
]


def node_role_mapping(role_arn: str) -> Dict[str, Any]:
    return {"rolearn": role_arn, "username": NODE_USERNAME, "groups": list(NODE_BOOTSTRAP_GROUPS)}


def parse_version(text: str) -> tuple:
    """Parse "v1.11.3-eks" into (1, 11, 3)"""
    core = text.lstrip("v").split("-", 1)[0].split("+", 1)[0]
    parts = []
    for piece in core.split(".")[:3]:
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits or 0))
    return tuple(parts + [0] * (3 - len(parts)))


def check_client_tooling(kubeconfig_path: Optional[str], run: Callable[..., Any] = subprocess.run) -> List[str]:
    """
    Check that local client binaries can use the new cluster

    Returns:
        Advisory messages, empty when everything looks fine
    """
    advisories = []
    kubectl = shutil.which("kubectl")
    if not kubectl:
        advisories.append("kubectl not found, see https://kubernetes.io/docs/tasks/tools/ for installation instructions")
    else:
        try:
            completed = run([kubectl, "version", "--client", "--output=json"],
                            capture_output=True, text=True, check=True, timeout=30)
            git_version = json.loads(completed.stdout)["clientVersion"]["gitVersion"]
        except (subprocess.SubprocessError, OSError, ValueError, KeyError) as e:
            advisories.append(f"unable to determine kubectl version: {e}")
        else:
            if parse_version(git_version) < MIN_KUBECTL_VERSION:
                advisories.append(
                    "kubectl version %s was found at %r, minimum required version to use EKS is v%s"
                    % (git_version, kubectl, ".".join(str(p) for p in MIN_KUBECTL_VERSION)))
            else:
                logger.info("kubectl command should work with %r, try 'kubectl get nodes'",
                            kubeconfig_path or "the default kubeconfig")

    if kubeconfig_path and not shutil.which("aws"):
        advisories.append("aws CLI not found, it is required by the written kubeconfig to obtain tokens")
    return advisories


class ReadinessWorkflow:
    """
    Drives a provisioned cluster to Ready

    States only move forward; any error moves the workflow to FAILED,
    records the error in `failure` and is re-raised.
    """

    def __init__(self, request: api.ClusterCreationRequest, credentials: Any,
                 cancel: Optional[threading.Event] = None, poll_interval: float = 5.0,
                 max_poll_interval: float = 30.0,
                 project_name: str = api.PROJECT_NAME,
                 tooling_check: Callable[[Optional[str]], List[str]] = check_client_tooling):
        self.request = request
        self.credentials = credentials
        self.cancel = cancel or threading.Event()
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.tooling_check = tooling_check
        self.project_name = project_name

        self.state = ReadinessState.REQUESTED
        self.history: List[ReadinessState] = [self.state]
        self.failure: Optional[EksforgeError] = None
        self.advisories: List[str] = []
        self.api_client: Optional[k8s_client.ApiClient] = None
        self.outputs: Optional[api.ClusterOutputs] = None

    @property
    def control_plane_timeout(self) -> float:
        return self.request.provider.control_plane_timeout or self.request.provider.wait_timeout

    @property
    def nodes_timeout(self) -> float:
        return self.request.provider.nodes_timeout or self.request.provider.wait_timeout

    def _advance(self, state: ReadinessState) -> None:
        if _ORDER.index(state) <= _ORDER.index(self.state):
            raise RuntimeError(f"invalid readiness transition {self.state.value} -> {state.value}")
        logger.debug("readiness: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _wait(self, check: Callable[[], bool], what: str, timeout: float) -> None:
        try:
            utils.wait_until(check, what, timeout, cancel=self.cancel,
                             initial_delay=self.poll_interval, max_delay=self.max_poll_interval)
        except (ReadinessTimeout, CancellationError) as e:
            e.recommendation = ("the cluster exists but may not be usable; inspect it with 'kubectl get nodes', "
                                + stacks.cleanup_hint(self.request, self.project_name))
            raise

    def run(self, result: api.ProvisioningResult) -> ReadinessState:
        """
        Run the workflow to READY

        Args:
            result: Outcome of infrastructure provisioning

        Returns:
            ReadinessState.READY

        Raises:
            ProvisioningError: result carried errors
            ReadinessTimeout: Control plane or nodes not ready in time
            CancellationError: Cancel event set during a wait
        """
        if self.state is not ReadinessState.REQUESTED:
            raise RuntimeError(f"workflow already ran, state is {self.state.value}")
        try:
            self._on_provisioned(result)
            self._wait_for_control_plane()
            self.authorize_nodes()
            self._advance(ReadinessState.NODES_AUTHORIZED)
            self._wait_for_nodes()
            self._apply_storage_class()
            self._advance(ReadinessState.READY)
        except EksforgeError as e:
            self._fail(e)
            raise
        except _API_ERRORS as e:
            self._fail(EksforgeError(f"unexpected API error after reaching {self.state.value}: {e}"))
            raise self.failure from e
        except Exception as e:
            self._fail(EksforgeError(f"unexpected error after reaching {self.state.value}: {e}"))
            raise self.failure from e

        logger.info("%s is ready", self.request.log_string())
        self._report_advisories()
        return self.state

    def _fail(self, error: EksforgeError) -> None:
        self.state = ReadinessState.FAILED
        self.history.append(self.state)
        self.failure = error

    def _on_provisioned(self, result: api.ProvisioningResult) -> None:
        meta = self.request
        if not result.succeeded:
            logger.info("%d error(s) occurred and cluster hasn't been created properly", len(result.errors))
            for error in result.errors:
                logger.error("%s", error)
            raise ProvisioningError(
                meta.name, result.errors,
                recommendation=stacks.cleanup_hint(meta, self.project_name) + "; partially created resources are not removed automatically",
            )
        self.outputs = result.outputs
        logger.info("all EKS cluster resources for %r have been created", meta.name)
        self._advance(ReadinessState.CONTROL_PLANE_PROVISIONED)

    def _wait_for_control_plane(self) -> None:
        self.api_client = self.credentials.setup(self.outputs)
        version_api = k8s_client.VersionApi(self.api_client)

        def reachable() -> bool:
            try:
                info = version_api.get_code()
            except _POLL_ERRORS as e:
                logger.debug("control plane not reachable yet: %s", e)
                return False
            logger.info("control plane %r is running Kubernetes %s", self.request.name, info.git_version)
            return True

        logger.info("waiting for the control plane to become ready")
        self._wait(reachable, f"control plane of cluster {self.request.name!r}", self.control_plane_timeout)
        self._advance(ReadinessState.CONTROL_PLANE_REACHABLE)

    def authorize_nodes(self) -> bool:
        """
        Map the nodegroup instance role into aws-auth so nodes can register

        Submitting the same mapping again changes nothing.

        Returns:
            True when the ConfigMap was created or updated
        """
        core = k8s_client.CoreV1Api(self.api_client)
        mapping = node_role_mapping(self.outputs.node_instance_role_arn)

        try:
            config_map = core.read_namespaced_config_map(AUTH_CONFIG_MAP_NAME, AUTH_CONFIG_MAP_NAMESPACE)
        except ApiException as e:
            if e.status != 404:
                raise
            body = k8s_client.V1ConfigMap(
                metadata=k8s_client.V1ObjectMeta(name=AUTH_CONFIG_MAP_NAME, namespace=AUTH_CONFIG_MAP_NAMESPACE),
                data={"mapRoles": yaml.safe_dump([mapping], default_flow_style=False)},
            )
            core.create_namespaced_config_map(AUTH_CONFIG_MAP_NAMESPACE, body)
            logger.info("created %s/%s ConfigMap", AUTH_CONFIG_MAP_NAMESPACE, AUTH_CONFIG_MAP_NAME)
            return True

        data = dict(config_map.data or {})
        roles = yaml.safe_load(data.get("mapRoles") or "[]") or []
        if mapping in roles:
            logger.debug("nodegroup role %r already authorised", mapping["rolearn"])
            return False

        roles = [role for role in roles if role.get("rolearn") != mapping["rolearn"]] + [mapping]
        data["mapRoles"] = yaml.safe_dump(roles, default_flow_style=False)
        core.patch_namespaced_config_map(AUTH_CONFIG_MAP_NAME, AUTH_CONFIG_MAP_NAMESPACE, {"data": data})
        logger.info("updated %s/%s ConfigMap", AUTH_CONFIG_MAP_NAMESPACE, AUTH_CONFIG_MAP_NAME)
        return True

    def ready_nodes(self) -> int:
        core = k8s_client.CoreV1Api(self.api_client)
        selector = f"{api.NODEGROUP_NAME_LABEL}={self.request.node_group.name}"
        nodes = core.list_node(label_selector=selector).items
        ready = 0
        for node in nodes:
            for condition in (node.status.conditions or []):
                if condition.type == "Ready" and condition.status == "True":
                    ready += 1
                    logger.debug("node %r is ready", node.metadata.name)
        return ready

    def _wait_for_nodes(self) -> None:
        expected = self.request.node_group.desired_capacity

        def joined() -> bool:
            try:
                count = self.ready_nodes()
            except _POLL_ERRORS as e:
                logger.debug("listing nodes failed: %s", e)
                return False
            logger.info("%d of %d node(s) of nodegroup %r ready", count, expected, self.request.node_group.name)
            return count >= expected

        logger.info("waiting for at least %d node(s) to become ready", expected)
        self._wait(joined, f"{expected} node(s) of nodegroup {self.request.node_group.name!r}", self.nodes_timeout)
        self._advance(ReadinessState.NODES_JOINED)

    def _apply_storage_class(self) -> None:
        if not (self.request.addons.storage_class and self.request.version == api.LEGACY_STORAGE_CLASS_VERSION):
            return

        storage = k8s_client.StorageV1Api(self.api_client)
        body = k8s_client.V1StorageClass(
            metadata=k8s_client.V1ObjectMeta(
                name=DEFAULT_STORAGE_CLASS,
                annotations={DEFAULT_STORAGE_CLASS_ANNOTATION: "true"},
            ),
            provisioner="kubernetes.io/aws-ebs",
            parameters={"type": "gp2"},
            reclaim_policy="Delete",
        )
        try:
            storage.create_storage_class(body)
            logger.info("created default StorageClass %r", DEFAULT_STORAGE_CLASS)
        except ApiException as e:
            if e.status != 409:
                raise
            logger.debug("StorageClass %r already exists", DEFAULT_STORAGE_CLASS)
        self._advance(ReadinessState.STORAGE_CLASS_APPLIED)

    def _report_advisories(self) -> None:
        path = getattr(self.credentials, "path", None)
        tooling = self.tooling_check(path)
        if tooling:
            self.advisories.extend(tooling)
            self.advisories.append("cluster should be functional despite missing (or misconfigured) client binaries")
        if resources.is_gpu_instance_type(self.request.node_group.instance_type):
            self.advisories.append(GPU_NOTICE)
        for advisory in self.advisories:
            logger.warning("%s", advisory)
