"""
Unit tests for AMI and SSH key resolution, and environment configuration
"""

import os
import tempfile
import unittest
from unittest.mock import Mock
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from botocore.exceptions import ClientError

from eksforge import api, resources
from eksforge.config import Config
from eksforge.exceptions import ValidationError

PUBLIC_KEY = b"ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAAAgQC7 operator@example\n"


def make_request(**node_group):
    defaults = {"name": "ng-1", "ami": api.AMI_RESOLVER_STATIC, "ami_family": api.DEFAULT_AMI_FAMILY}
    defaults.update(node_group)
    return api.ClusterCreationRequest(name="demo", region="us-west-2", version="1.11",
                                      node_group=api.NodeGroupSpec(**defaults))


class TestEnsureAmi(unittest.TestCase):
    """Test AMI resolution through SSM"""

    def test_resolves_static(self):
        ssm = Mock()
        ssm.get_parameter.return_value = {"Parameter": {"Value": "ami-123"}}

        request = resources.ensure_ami(make_request(), ssm)

        self.assertEqual(request.node_group.ami, "ami-123")
        ssm.get_parameter.assert_called_once_with(
            Name="/aws/service/eks/optimized-ami/1.11/amazon-linux-2/recommended/image_id")

    def test_gpu_image(self):
        ssm = Mock()
        ssm.get_parameter.return_value = {"Parameter": {"Value": "ami-gpu"}}

        resources.ensure_ami(make_request(instance_type="p3.2xlarge", ami=api.AMI_RESOLVER_AUTO), ssm)

        self.assertIn("amazon-linux-2-gpu", ssm.get_parameter.call_args.kwargs["Name"])

    def test_explicit_ami_is_kept(self):
        ssm = Mock()
        request = make_request(ami="ami-custom")
        self.assertIs(resources.ensure_ami(request, ssm), request)
        ssm.get_parameter.assert_not_called()

    def test_lookup_failure(self):
        ssm = Mock()
        ssm.get_parameter.side_effect = ClientError({"Error": {"Code": "ParameterNotFound"}}, "GetParameter")
        with self.assertRaises(ValidationError):
            resources.ensure_ami(make_request(), ssm)

    def test_gpu_families(self):
        self.assertTrue(resources.is_gpu_instance_type("p2.xlarge"))
        self.assertFalse(resources.is_gpu_instance_type("m5.large"))


class TestSshKey(unittest.TestCase):
    """Test importing the nodegroup SSH key"""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = os.path.join(self.tmp.name, "id_rsa.pub")
        with open(self.path, "wb") as f:
            f.write(PUBLIC_KEY)

    def test_ssh_disabled(self):
        ec2 = Mock()
        request = make_request()
        self.assertIs(resources.load_ssh_public_key(request, ec2), request)
        ec2.import_key_pair.assert_not_called()

    def test_imports_new_key(self):
        ec2 = Mock()
        ec2.describe_key_pairs.return_value = {"KeyPairs": []}

        request = resources.load_ssh_public_key(make_request(allow_ssh=True, ssh_public_key_path=self.path), ec2)

        key_name = request.node_group.ssh_public_key_name
        self.assertTrue(key_name.startswith("eksforge-demo-nodegroup-ng-1-"))
        ec2.import_key_pair.assert_called_once_with(KeyName=key_name, PublicKeyMaterial=PUBLIC_KEY)

    def test_reuses_existing_key(self):
        ec2 = Mock()
        ec2.describe_key_pairs.return_value = {"KeyPairs": [{"KeyName": "existing"}]}

        resources.load_ssh_public_key(make_request(allow_ssh=True, ssh_public_key_path=self.path), ec2)

        ec2.import_key_pair.assert_not_called()

    def test_missing_key_file(self):
        request = make_request(allow_ssh=True, ssh_public_key_path=os.path.join(self.tmp.name, "missing.pub"))
        with self.assertRaises(ValidationError):
            resources.load_ssh_public_key(request, Mock())

    def test_fingerprint_format(self):
        fingerprint = resources.fingerprint(PUBLIC_KEY)
        self.assertEqual(len(fingerprint.split(":")), 16)
        with self.assertRaises(ValidationError):
            resources.fingerprint(b"garbage")


class TestConfig(unittest.TestCase):
    """Test environment-sourced configuration"""

    def test_defaults(self):
        config = Config({})
        self.assertEqual(config.aws_profile, "")
        self.assertEqual(config.wait_timeout, api.DEFAULT_WAIT_TIMEOUT)
        self.assertEqual(config.project_name, "eksforge")
        self.assertTrue(config.backend_url.startswith("file://"))

    def test_environment(self):
        config = Config({"AWS_PROFILE": "dev", "AWS_DEFAULT_REGION": "eu-west-1", "EKSFORGE_WAIT_TIMEOUT": "60",
                         "PULUMI_BACKEND_URL": "s3://bucket", "EKSFORGE_LOG_LEVEL": "debug"})
        self.assertEqual(config.aws_profile, "dev")
        self.assertEqual(config.aws_region, "eu-west-1")
        self.assertEqual(config.wait_timeout, 60.0)
        self.assertEqual(config.backend_url, "s3://bucket")
        self.assertEqual(config.log_level, "DEBUG")

    def test_common_tags(self):
        tags = Config({}).common_tags("demo", {"Team": "infra"})
        self.assertEqual(tags, {"eksforge.io/cluster-name": "demo", "ManagedBy": "eksforge", "Team": "infra"})


if __name__ == "__main__":
    unittest.main(verbosity=2)
