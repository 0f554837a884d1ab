"""
Unit tests for ClusterConfig document decoding
"""

import unittest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from eksforge import api, manifest
from eksforge.exceptions import DecodeError, KindMismatch

DOCUMENT = """
apiVersion: eksforge.io/v1alpha1
kind: ClusterConfig
metadata:
  name: demo
  region: us-west-2
availabilityZones: [us-west-2a, us-west-2b]
vpc:
  id: vpc-0abc
  cidr: 10.10.0.0/16
  subnets:
    private:
      us-west-2a: {id: subnet-a, cidr: 10.10.0.0/19}
      us-west-2b: {id: subnet-b}
nodeGroups:
  - name: ng-1
    minSize: 1
    maxSize: 4
    desiredCapacity: 2
    privateNetworking: true
    allowSSH: true
addons:
  storage: false
  withIAM:
    policyAutoScaling: true
    policyAmazonEC2ContainerRegistryPowerUser: true
"""


class TestDecode(unittest.TestCase):
    """Test decoding registered kinds"""

    def test_cluster_config(self):
        decoded = manifest.decode(DOCUMENT)

        self.assertEqual(decoded.api_version, "eksforge.io/v1alpha1")
        self.assertEqual(decoded.kind, api.CLUSTER_CONFIG_KIND)
        fields = decoded.value
        self.assertEqual(fields["name"], "demo")
        self.assertEqual(fields["version"], api.LATEST_VERSION_SENTINEL)
        self.assertEqual(fields["availability_zones"], ("us-west-2a", "us-west-2b"))

        vpc = fields["vpc"]
        self.assertEqual(vpc.id, "vpc-0abc")
        self.assertEqual(vpc.subnet_ids(api.TOPOLOGY_PRIVATE), ["subnet-a", "subnet-b"])
        self.assertEqual(vpc.subnet_ids(api.TOPOLOGY_PUBLIC), [])
        self.assertEqual(vpc.availability_zones(api.TOPOLOGY_PRIVATE), ["us-west-2a", "us-west-2b"])

        node_group = fields["node_group"]
        self.assertEqual((node_group.min_size, node_group.desired_capacity, node_group.max_size), (1, 2, 4))
        self.assertTrue(node_group.private_networking)
        self.assertTrue(node_group.allow_ssh)

        addons = fields["addons"]
        self.assertTrue(addons.asg_access)
        self.assertTrue(addons.full_ecr_access)
        self.assertFalse(addons.external_dns_access)
        self.assertFalse(addons.storage_class)

    def test_json_document(self):
        decoded = manifest.decode('{"apiVersion": "eksforge.io/v1alpha1", "kind": "ClusterConfig", '
                                  '"metadata": {"name": "demo", "region": "us-east-1"}}')
        self.assertEqual(decoded.value["region"], "us-east-1")
        self.assertEqual(decoded.value["node_group"].desired_capacity, api.DEFAULT_NODE_COUNT)

    def test_cluster_config_list(self):
        document = ("apiVersion: eksforge.io/v1alpha1\nkind: ClusterConfigList\n"
                    "items:\n  - metadata: {name: one, region: us-west-2}\n")
        decoded = manifest.decode(document)
        self.assertEqual(decoded.kind, api.CLUSTER_CONFIG_LIST_KIND)
        self.assertEqual([item["name"] for item in decoded.value], ["one"])

    def test_unknown_version(self):
        with self.assertRaises(DecodeError):
            manifest.decode("apiVersion: eksforge.io/v9\nkind: ClusterConfig\n")

    def test_missing_kind(self):
        with self.assertRaises(DecodeError):
            manifest.decode("apiVersion: eksforge.io/v1alpha1\n")

    def test_not_a_mapping(self):
        with self.assertRaises(DecodeError):
            manifest.decode("- just\n- a list\n")

    def test_malformed_yaml(self):
        with self.assertRaises(DecodeError):
            manifest.decode("kind: [unclosed")

    def test_string_booleans(self):
        document = ("apiVersion: eksforge.io/v1alpha1\nkind: ClusterConfig\n"
                    "nodeGroups:\n  - {allowSSH: 'false', privateNetworking: 'no'}\n"
                    "addons: {storage: 'off'}\n")
        fields = manifest.decode(document).value
        self.assertFalse(fields["node_group"].allow_ssh)
        self.assertFalse(fields["node_group"].private_networking)
        self.assertFalse(fields["addons"].storage_class)

    def test_invalid_integer(self):
        document = "apiVersion: eksforge.io/v1alpha1\nkind: ClusterConfig\nnodeGroups:\n  - desiredCapacity: many\n"
        with self.assertRaises(DecodeError) as ctx:
            manifest.decode(document)
        self.assertIn("desiredCapacity", str(ctx.exception))

    def test_invalid_boolean(self):
        document = "apiVersion: eksforge.io/v1alpha1\nkind: ClusterConfig\nnodeGroups:\n  - allowSSH: maybe\n"
        with self.assertRaises(DecodeError):
            manifest.decode(document)

    def test_numeric_version_is_text(self):
        document = "apiVersion: eksforge.io/v1alpha1\nkind: ClusterConfig\nmetadata: {version: 1.11}\n"
        self.assertEqual(manifest.decode(document).value["version"], "1.11")

    def test_unknown_topology(self):
        document = ("apiVersion: eksforge.io/v1alpha1\nkind: ClusterConfig\n"
                    "vpc:\n  subnets:\n    isolated:\n      us-west-2a: {id: subnet-a}\n")
        with self.assertRaises(DecodeError):
            manifest.decode(document)

    def test_multiple_nodegroups(self):
        document = DOCUMENT.replace("nodeGroups:\n", "nodeGroups:\n  - name: extra\n")
        with self.assertRaises(DecodeError):
            manifest.decode(document)


class TestExpectKind(unittest.TestCase):

    def test_mismatch(self):
        decoded = manifest.Decoded(api_version="eksforge.io/v1alpha1", kind="ClusterConfigList", value=[])
        with self.assertRaises(KindMismatch) as ctx:
            manifest.expect_kind(decoded, api.CLUSTER_CONFIG_KIND)
        self.assertEqual(ctx.exception.expected, "ClusterConfig")
        self.assertEqual(ctx.exception.actual, "ClusterConfigList")

    def test_match_returns_value(self):
        decoded = manifest.Decoded(api_version="eksforge.io/v1alpha1", kind="ClusterConfig", value={"name": "x"})
        self.assertEqual(manifest.expect_kind(decoded, api.CLUSTER_CONFIG_KIND), {"name": "x"})


if __name__ == "__main__":
    unittest.main(verbosity=2)
