"""
Kubeconfig construction and persistence
Written kubeconfigs authenticate through an exec plugin; the client used
during bring-up carries a short-lived embedded token and is never persisted
"""

import base64
import logging
import os
from typing import Any, Dict, Optional

import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from eksforge import api
from eksforge.exceptions import KubeconfigError

logger = logging.getLogger(__name__)

K8S_AWS_ID_HEADER = "x-k8s-aws-id"
TOKEN_PREFIX = "k8s-aws-v1."
TOKEN_EXPIRES_IN = 60
EXEC_API_VERSION = "client.authentication.k8s.io/v1beta1"


def _default_path() -> str:
    env = os.environ.get("KUBECONFIG")
    if env:
        return env.split(os.pathsep)[0]
    return os.path.expanduser(os.path.join("~", ".kube", "config"))


DEFAULT_PATH = _default_path()


def auto_path(cluster_name: str) -> str:
    """Path of a kubeconfig dedicated to one cluster"""
    return os.path.expanduser(os.path.join("~", ".kube", "eksforge", "clusters", cluster_name))


def context_name(request: api.ClusterCreationRequest) -> str:
    return f"eksforge@{request.name}.{request.region}"


def new_client_config(request: api.ClusterCreationRequest, outputs: api.ClusterOutputs) -> Dict[str, Any]:
    """
    Build a kubeconfig bound to the new cluster endpoint, without a user credential yet

    Args:
        request: Cluster creation request
        outputs: Endpoint and CA material of the provisioned control plane

    Returns:
        Kubeconfig as a dict
    """
    cluster_id = f"{request.name}.{request.region}.eksforge.io"
    context = context_name(request)
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "preferences": {},
        "clusters": [{
            "name": cluster_id,
            "cluster": {
                "server": outputs.endpoint,
                "certificate-authority-data": outputs.certificate_authority_data,
            },
        }],
        "contexts": [{
            "name": context,
            "context": {"cluster": cluster_id, "user": context},
        }],
        "users": [{"name": context, "user": {}}],
        "current-context": context,
    }


def with_exec_authenticator(config: Dict[str, Any], request: api.ClusterCreationRequest) -> Dict[str, Any]:
    """Return a copy of config whose user fetches tokens with `aws eks get-token`"""
    exec_block: Dict[str, Any] = {
        "apiVersion": EXEC_API_VERSION,
        "command": "aws",
        "args": ["eks", "get-token", "--cluster-name", request.name, "--region", request.region],
    }
    if request.provider.profile:
        exec_block["env"] = [{"name": "AWS_PROFILE", "value": request.provider.profile}]
    return _with_user(config, {"exec": exec_block})


def with_embedded_token(config: Dict[str, Any], token: str) -> Dict[str, Any]:
    return _with_user(config, {"token": token})


def _with_user(config: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    updated = dict(config)
    updated["users"] = [{"name": entry["name"], "user": user} for entry in config["users"]]
    return updated


def generate_token(session: Any, cluster_name: str, region: str) -> str:
    """
    Create a bearer token by presigning an STS GetCallerIdentity request

    Args:
        session: boto3 session holding the operator's credentials
        cluster_name: Cluster the token is scoped to
        region: Region of the STS endpoint

    Returns:
        Token accepted by the EKS authenticator
    """
    sts = session.client("sts", region_name=region)
    service_id = sts.meta.service_model.service_id.hyphenize()

    def _retrieve_cluster_id(params, context, **kwargs):
        if K8S_AWS_ID_HEADER in params:
            context[K8S_AWS_ID_HEADER] = params.pop(K8S_AWS_ID_HEADER)

    def _inject_cluster_id(request, **kwargs):
        if K8S_AWS_ID_HEADER in request.context:
            request.headers[K8S_AWS_ID_HEADER] = request.context[K8S_AWS_ID_HEADER]

    sts.meta.events.register(f"provide-client-params.{service_id}.GetCallerIdentity", _retrieve_cluster_id)
    sts.meta.events.register(f"before-sign.{service_id}.GetCallerIdentity", _inject_cluster_id)

    url = sts.generate_presigned_url(
        "get_caller_identity",
        Params={K8S_AWS_ID_HEADER: cluster_name},
        ExpiresIn=TOKEN_EXPIRES_IN,
        HttpMethod="GET",
    )
    encoded = base64.urlsafe_b64encode(url.encode("utf-8")).decode("utf-8")
    return TOKEN_PREFIX + encoded.rstrip("=")


def _merge_named(existing: list, new: list) -> list:
    names = {entry["name"] for entry in new}
    return [entry for entry in existing if entry.get("name") not in names] + new


def write(path: str, config: Dict[str, Any], set_context: bool) -> str:
    """
    Merge config into the kubeconfig at path, creating it when missing

    Args:
        path: Kubeconfig file path
        config: Kubeconfig dict holding one cluster, context and user
        set_context: Whether to make the new context current

    Returns:
        Path written
    """
    path = os.path.expanduser(path)
    merged: Dict[str, Any] = {"apiVersion": "v1", "kind": "Config", "preferences": {},
                              "clusters": [], "contexts": [], "users": []}
    if os.path.exists(path):
        with open(path, "r") as f:
            existing = yaml.safe_load(f) or {}
        if not isinstance(existing, dict):
            raise KubeconfigError(path, "existing file is not a kubeconfig mapping")
        merged.update(existing)

    for key in ("clusters", "contexts", "users"):
        merged[key] = _merge_named(merged.get(key) or [], config[key])

    if set_context:
        merged["current-context"] = config["current-context"]
    elif "current-context" not in merged:
        merged["current-context"] = ""

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        yaml.safe_dump(merged, f, default_flow_style=False)
    return path


class CredentialWriter:
    """Persists the kubeconfig (when enabled) and builds the bring-up client"""

    def __init__(self, request: api.ClusterCreationRequest, session: Any):
        self.request = request
        self.session = session
        self.path: Optional[str] = None

    def setup(self, outputs: api.ClusterOutputs) -> k8s_client.ApiClient:
        """
        Write the kubeconfig if enabled and return a client with an embedded token

        Args:
            outputs: Endpoint and CA material of the provisioned control plane

        Returns:
            Kubernetes API client
        """
        base = new_client_config(self.request, outputs)
        options = self.request.kubeconfig

        if options.write:
            try:
                self.path = write(options.path, with_exec_authenticator(base, self.request), options.set_context)
            except (OSError, yaml.YAMLError) as e:
                raise KubeconfigError(options.path, str(e)) from e
            logger.info("saved kubeconfig as %r", self.path)
        else:
            self.path = None

        token = generate_token(self.session, self.request.name, self.request.region)
        return k8s_config.new_client_from_config_dict(with_embedded_token(base, token))
