"""
Unit tests for the post-provisioning readiness workflow
The Kubernetes client is mocked; waits use very short timeouts
"""

import json
import threading
import unittest
from dataclasses import replace
from unittest.mock import Mock, patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import yaml
from kubernetes.client.rest import ApiException

from eksforge import api
from eksforge.exceptions import (CancellationError, EksforgeError, KubeconfigError, ProvisioningError,
                                 ReadinessTimeout)
from eksforge.readiness import (GPU_NOTICE, ReadinessState, ReadinessWorkflow, check_client_tooling,
                                node_role_mapping, parse_version)

ROLE_ARN = "arn:aws:iam::123456789012:role/demo-node"
OUTPUTS = api.ClusterOutputs(endpoint="https://ABC.eks.amazonaws.com", certificate_authority_data="Q0E=",
                             node_instance_role_arn=ROLE_ARN)


def make_request(version="1.11", nodes=2, storage_class=True, instance_type="m5.large"):
    return api.ClusterCreationRequest(
        name="demo",
        region="us-west-2",
        version=version,
        node_group=api.NodeGroupSpec(name="ng-1", instance_type=instance_type, desired_capacity=nodes,
                                     min_size=nodes, max_size=nodes),
        addons=api.Addons(storage_class=storage_class),
        provider=api.ProviderConfig(region="us-west-2", wait_timeout=0.1),
    )


def node(name, ready=True):
    condition = Mock(type="Ready", status="True" if ready else "False")
    item = Mock()
    item.metadata.name = name
    item.status.conditions = [condition]
    return item


class WorkflowTestCase(unittest.TestCase):

    def setUp(self):
        patcher = patch("eksforge.readiness.k8s_client")
        self.k8s = patcher.start()
        self.addCleanup(patcher.stop)

        self.k8s.VersionApi.return_value.get_code.return_value = Mock(git_version="v1.11.5-eks")
        self.core = self.k8s.CoreV1Api.return_value
        self.core.read_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")
        self.core.list_node.return_value = Mock(items=[node("a"), node("b")])
        self.storage = self.k8s.StorageV1Api.return_value

        self.credentials = Mock(path="/tmp/kubeconfig")
        self.tooling = Mock(return_value=[])

    def workflow(self, request=None, cancel=None):
        return ReadinessWorkflow(request or make_request(), self.credentials, cancel=cancel,
                                 poll_interval=0.01, max_poll_interval=0.02, tooling_check=self.tooling)


class TestWorkflow(WorkflowTestCase):
    """Test state progression"""

    def test_happy_path(self):
        workflow = self.workflow()

        state = workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.assertEqual(state, ReadinessState.READY)
        self.assertEqual(workflow.history, [
            ReadinessState.REQUESTED,
            ReadinessState.CONTROL_PLANE_PROVISIONED,
            ReadinessState.CONTROL_PLANE_REACHABLE,
            ReadinessState.NODES_AUTHORIZED,
            ReadinessState.NODES_JOINED,
            ReadinessState.READY,
        ])
        self.credentials.setup.assert_called_once_with(OUTPUTS)
        self.core.create_namespaced_config_map.assert_called_once()
        self.storage.create_storage_class.assert_not_called()
        self.core.list_node.assert_called_with(label_selector=f"{api.NODEGROUP_NAME_LABEL}=ng-1")
        self.tooling.assert_called_once_with("/tmp/kubeconfig")
        self.assertEqual(workflow.advisories, [])

    def test_provisioning_errors_never_reach_control_plane(self):
        """Any provisioning error fails the run before the cluster is contacted"""
        workflow = self.workflow()

        with self.assertRaises(ProvisioningError) as ctx:
            workflow.run(api.ProvisioningResult(errors=("stack failed",)))

        self.assertEqual(workflow.state, ReadinessState.FAILED)
        self.assertNotIn(ReadinessState.CONTROL_PLANE_REACHABLE, workflow.history)
        self.assertNotIn(ReadinessState.CONTROL_PLANE_PROVISIONED, workflow.history)
        self.assertEqual(ctx.exception.errors, ["stack failed"])
        self.assertIn("pulumi destroy", ctx.exception.recommendation)
        self.assertIs(workflow.failure, ctx.exception)
        self.credentials.setup.assert_not_called()

    def test_cleanup_guidance_names_project(self):
        workflow = ReadinessWorkflow(make_request(), self.credentials, project_name="sandbox",
                                     tooling_check=self.tooling)

        with self.assertRaises(ProvisioningError) as ctx:
            workflow.run(api.ProvisioningResult(errors=("stack failed",)))

        self.assertIn("project 'sandbox'", ctx.exception.recommendation)

    def test_control_plane_timeout(self):
        self.k8s.VersionApi.return_value.get_code.side_effect = ApiException(status=503, reason="Unavailable")
        workflow = self.workflow()

        with self.assertRaises(ReadinessTimeout) as ctx:
            workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.assertEqual(workflow.state, ReadinessState.FAILED)
        self.assertNotIn(ReadinessState.CONTROL_PLANE_REACHABLE, workflow.history)
        self.assertIn("kubectl get nodes", ctx.exception.recommendation)

    def test_partial_node_join_times_out(self):
        """Nodes are awaited until the desired capacity is ready"""
        self.core.list_node.return_value = Mock(items=[node("a"), node("b", ready=False)])
        workflow = self.workflow()

        with self.assertRaises(ReadinessTimeout):
            workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.assertIn(ReadinessState.NODES_AUTHORIZED, workflow.history)
        self.assertNotIn(ReadinessState.NODES_JOINED, workflow.history)
        self.assertEqual(workflow.state, ReadinessState.FAILED)

    def test_cancellation(self):
        cancel = threading.Event()
        cancel.set()
        workflow = self.workflow(cancel=cancel)

        with self.assertRaises(CancellationError):
            workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.assertEqual(workflow.state, ReadinessState.FAILED)
        self.k8s.VersionApi.return_value.get_code.assert_not_called()

    def test_unexpected_api_error(self):
        self.core.read_namespaced_config_map.side_effect = ApiException(status=500, reason="Internal")
        workflow = self.workflow()

        with self.assertRaises(EksforgeError):
            workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.assertEqual(workflow.state, ReadinessState.FAILED)
        self.assertIn(ReadinessState.CONTROL_PLANE_REACHABLE, workflow.history)

    def test_credential_failure_is_terminal(self):
        self.credentials.setup.side_effect = KubeconfigError("/tmp/kubeconfig", "corrupt")
        workflow = self.workflow()

        with self.assertRaises(KubeconfigError):
            workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.assertEqual(workflow.state, ReadinessState.FAILED)
        self.assertNotIn(ReadinessState.CONTROL_PLANE_REACHABLE, workflow.history)

    def test_unexpected_error_is_terminal(self):
        self.credentials.setup.side_effect = yaml.YAMLError("clusters: [unclosed")
        workflow = self.workflow()

        with self.assertRaises(EksforgeError) as ctx:
            workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.assertEqual(workflow.state, ReadinessState.FAILED)
        self.assertIs(ctx.exception, workflow.failure)
        self.assertIsInstance(ctx.exception.__cause__, yaml.YAMLError)

    def test_runs_once(self):
        workflow = self.workflow()
        workflow.run(api.ProvisioningResult(outputs=OUTPUTS))
        with self.assertRaises(RuntimeError):
            workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

    def test_per_phase_timeouts(self):
        request = replace(make_request(), provider=api.ProviderConfig(wait_timeout=100.0, control_plane_timeout=10.0))
        workflow = self.workflow(request)
        self.assertEqual(workflow.control_plane_timeout, 10.0)
        self.assertEqual(workflow.nodes_timeout, 100.0)


class TestAuthorizeNodes(WorkflowTestCase):
    """Test aws-auth ConfigMap handling"""

    def prepared(self):
        workflow = self.workflow()
        workflow.outputs = OUTPUTS
        return workflow

    def test_creates_config_map(self):
        self.assertTrue(self.prepared().authorize_nodes())
        data = self.k8s.V1ConfigMap.call_args.kwargs["data"]
        self.assertEqual(yaml.safe_load(data["mapRoles"]), [node_role_mapping(ROLE_ARN)])

    def test_idempotent(self):
        """Submitting an existing mapping writes nothing"""
        self.core.read_namespaced_config_map.side_effect = None
        self.core.read_namespaced_config_map.return_value = Mock(
            data={"mapRoles": yaml.safe_dump([node_role_mapping(ROLE_ARN)])})

        self.assertFalse(self.prepared().authorize_nodes())

        self.core.patch_namespaced_config_map.assert_not_called()
        self.core.create_namespaced_config_map.assert_not_called()

    def test_appends_to_existing_roles(self):
        other = {"rolearn": "arn:aws:iam::123456789012:role/admin", "username": "admin", "groups": ["system:masters"]}
        self.core.read_namespaced_config_map.side_effect = None
        self.core.read_namespaced_config_map.return_value = Mock(data={"mapRoles": yaml.safe_dump([other])})

        self.assertTrue(self.prepared().authorize_nodes())

        name, namespace, body = self.core.patch_namespaced_config_map.call_args.args
        self.assertEqual((name, namespace), ("aws-auth", "kube-system"))
        self.assertEqual(yaml.safe_load(body["data"]["mapRoles"]), [other, node_role_mapping(ROLE_ARN)])


class TestStorageClass(WorkflowTestCase):
    """Test the default storage class add-on"""

    def test_applied_on_legacy_version(self):
        workflow = self.workflow(make_request(version="1.10"))

        workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.storage.create_storage_class.assert_called_once()
        self.assertIn(ReadinessState.STORAGE_CLASS_APPLIED, workflow.history)

    def test_existing_storage_class_is_fine(self):
        self.storage.create_storage_class.side_effect = ApiException(status=409, reason="Conflict")
        workflow = self.workflow(make_request(version="1.10"))

        self.assertEqual(workflow.run(api.ProvisioningResult(outputs=OUTPUTS)), ReadinessState.READY)

    def test_skipped_when_disabled(self):
        workflow = self.workflow(make_request(version="1.10", storage_class=False))

        workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.storage.create_storage_class.assert_not_called()
        self.assertNotIn(ReadinessState.STORAGE_CLASS_APPLIED, workflow.history)


class TestAdvisories(WorkflowTestCase):

    def test_gpu_and_tooling_advisories(self):
        self.tooling.return_value = ["kubectl not found"]
        workflow = self.workflow(make_request(instance_type="p3.2xlarge"))

        with self.assertLogs("eksforge.readiness", level="WARNING"):
            workflow.run(api.ProvisioningResult(outputs=OUTPUTS))

        self.assertIn("kubectl not found", workflow.advisories)
        self.assertIn(GPU_NOTICE, workflow.advisories)
        self.assertEqual(workflow.state, ReadinessState.READY)


class TestClientTooling(unittest.TestCase):
    """Test local binary checks"""

    @patch("eksforge.readiness.shutil.which", return_value=None)
    def test_missing_binaries(self, mock_which):
        advisories = check_client_tooling("/tmp/kubeconfig")
        self.assertEqual(len(advisories), 2)

    @patch("eksforge.readiness.shutil.which", return_value="/usr/bin/kubectl")
    def test_old_kubectl(self, mock_which):
        run = Mock(return_value=Mock(stdout=json.dumps({"clientVersion": {"gitVersion": "v1.9.7"}})))
        advisories = check_client_tooling(None, run=run)
        self.assertEqual(len(advisories), 1)
        self.assertIn("v1.9.7", advisories[0])

    @patch("eksforge.readiness.shutil.which", return_value="/usr/bin/kubectl")
    def test_recent_kubectl(self, mock_which):
        run = Mock(return_value=Mock(stdout=json.dumps({"clientVersion": {"gitVersion": "v1.28.2"}})))
        self.assertEqual(check_client_tooling("/tmp/kubeconfig", run=run), [])

    def test_parse_version(self):
        self.assertEqual(parse_version("v1.11.3-eks-2"), (1, 11, 3))
        self.assertEqual(parse_version("v1.10"), (1, 10, 0))
        self.assertEqual(parse_version("1.9.7+abc"), (1, 9, 7))


if __name__ == "__main__":
    unittest.main(verbosity=2)
