import threading
from unittest import mock

from botocore.exceptions import ClientError
from django.test import SimpleTestCase

from armada_director.cloud import infrastructure_for
from armada_director.cloud.base import escape_inventory_path
from armada_director.cloud.providers.aws import AwsCloudProvider
from armada_director.cloud.providers.dummy import DummyCloudProvider
from armada_director.cloud.providers.vsphere import VsphereClient, VsphereCloudProvider
from armada_director.cloud.registry import CloudProviderRegistry
from armada_director.cloud.timed import TimedCloud
from armada_director.errors import CloudError, CloudTimeout, VMNotFound


def _client_error(code, operation="DescribeInstances"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class InventoryPathTests(SimpleTestCase):
    def test_slashes_inside_elements_are_escaped(self):
        self.assertEqual(escape_inventory_path(["Datacenter", "vm", "foo/bar"]), "Datacenter/vm/foo%2fbar")

    def test_string_is_a_single_element(self):
        self.assertEqual(escape_inventory_path("a/b"), "a%2fb")


class InfrastructureTests(SimpleTestCase):
    def test_known_infrastructures(self):
        self.assertTrue(infrastructure_for("aws").light)
        self.assertFalse(infrastructure_for("vsphere").light)

    def test_unknown_infrastructure(self):
        with self.assertRaisesMessage(ValueError, "invalid infrastructure: x"):
            infrastructure_for("x")

    def test_registry_builds_each_provider_once(self):
        registry = CloudProviderRegistry({"dummy": {"current_vm_id": "vm-director"}})
        provider = registry.get_provider("dummy")
        self.assertIs(registry.get_provider("dummy"), provider)
        self.assertEqual(provider.current_vm_id(), "vm-director")
        with self.assertRaises(ValueError):
            registry.get_provider("mainframe")

    def test_registry_passes_the_cpi_timeout_to_providers(self):
        registry = CloudProviderRegistry({"openstack": {"timeout": 5}, "aws": {}}, request_timeout=30)
        self.assertEqual(registry.provider_options("aws"), {"request_timeout": 30})
        self.assertEqual(registry.provider_options("openstack"), {"timeout": 5, "request_timeout": 30})
        self.assertEqual(CloudProviderRegistry({}).provider_options("aws"), {})


class VsphereTests(SimpleTestCase):
    def _client(self):
        client = VsphereClient("vcenter.example.com", "admin", "secret")
        client._session_id = "session-1"
        client.http = mock.Mock()
        return client

    def _response(self, status=200, payload=None):
        response = mock.Mock(status_code=status, content=b"{}" if payload is not None else b"")
        response.json.return_value = payload
        return response

    def test_find_by_inventory_path_posts_escaped_path(self):
        client = self._client()
        client.http.post.return_value = self._response(
            payload={"_typeName": "ManagedObjectReference", "type": "VirtualMachine", "value": "vm-42"}
        )
        provider = VsphereCloudProvider({"datacenter": "Datacenter"}, client=client)

        self.assertEqual(provider.find_by_inventory_path(["Datacenter", "vm", "foo/bar"]), "vm-42")
        url = client.http.post.call_args[0][0]
        self.assertTrue(url.endswith("/SearchIndex/SearchIndex/FindByInventoryPath"))
        self.assertEqual(client.http.post.call_args[1]["json"], {"inventoryPath": "Datacenter/vm/foo%2fbar"})
        self.assertEqual(client.http.post.call_args[1]["headers"], {"vmware-api-session-id": "session-1"})

    def test_missing_object_fault_is_vm_not_found(self):
        client = self._client()
        client.http.post.return_value = self._response(status=500, payload={"_typeName": "ManagedObjectNotFound"})
        with self.assertRaises(VMNotFound):
            client.invoke("VirtualMachine", "vm-1", "PowerOffVM_Task")

    def test_expired_session_logs_in_again(self):
        client = self._client()
        login = self._response(payload={})
        login.headers = {"vmware-api-session-id": "session-2"}
        client.http.post.side_effect = [self._response(status=401, payload={}), login, self._response(payload=None)]
        self.assertIsNone(client.invoke("VirtualMachine", "vm-1", "RebootGuest"))
        self.assertEqual(client._session_id, "session-2")
        self.assertEqual(client.http.post.call_count, 3)


@mock.patch("armada_director.cloud.providers.aws.boto3.client")
class AwsTests(SimpleTestCase):
    def _provider(self):
        return AwsCloudProvider({"region": "us-west-2", "default_key_name": "ops"})

    def test_request_timeout_bounds_sdk_reads(self, client_factory):
        AwsCloudProvider({"region": "us-west-2", "request_timeout": 30})
        self.assertEqual(client_factory.call_args[1]["config"].read_timeout, 30.0)

    def test_disk_size_is_rounded_up_to_gib(self, client_factory):
        client_factory.return_value.create_volume.return_value = {"VolumeId": "vol-1"}
        provider = self._provider()
        self.assertEqual(provider.create_disk(1500, {"availability_zone": "us-west-2a"}), "vol-1")
        client_factory.return_value.create_volume.assert_called_once_with(
            Size=2, AvailabilityZone="us-west-2a", VolumeType="gp3"
        )

    def test_missing_instance_is_reported(self, client_factory):
        client_factory.return_value.describe_instances.side_effect = _client_error("InvalidInstanceID.NotFound")
        provider = self._provider()
        self.assertFalse(provider.has_vm("i-gone"))
        client_factory.return_value.reboot_instances.side_effect = _client_error(
            "InvalidInstanceID.NotFound", "RebootInstances"
        )
        with self.assertRaises(VMNotFound):
            provider.reboot_vm("i-gone")

    def test_other_client_errors_are_cloud_errors(self, client_factory):
        client_factory.return_value.terminate_instances.side_effect = _client_error("UnauthorizedOperation")
        with self.assertRaises(CloudError):
            self._provider().delete_vm("i-1")

    def test_create_vm_uses_light_stemcell_ami(self, client_factory):
        client_factory.return_value.run_instances.return_value = {"Instances": [{"InstanceId": "i-123"}]}
        provider = self._provider()
        networks = {"default": {"type": "manual", "ip": "10.0.0.5", "cloud_properties": {"subnet": "subnet-1"}}}
        vm_cid = provider.create_vm("agent-1", "ami-abc light", {"instance_type": "m5.large"}, networks)
        self.assertEqual(vm_cid, "i-123")
        params = client_factory.return_value.run_instances.call_args[1]
        self.assertEqual(params["ImageId"], "ami-abc")
        self.assertEqual(params["KeyName"], "ops")
        self.assertEqual((params["SubnetId"], params["PrivateIpAddress"]), ("subnet-1", "10.0.0.5"))

    def test_light_stemcell_needs_region_ami(self, client_factory):
        provider = self._provider()
        self.assertEqual(provider.create_stemcell("", {"ami": {"us-west-2": "ami-abc"}}), "ami-abc light")
        with self.assertRaises(CloudError):
            provider.create_stemcell("", {"ami": {"eu-west-1": "ami-def"}})


class TimedCloudTests(SimpleTestCase):
    def test_slow_call_times_out(self):
        provider = DummyCloudProvider({})
        release = threading.Event()
        self.addCleanup(release.set)
        provider.has_vm = lambda vm_cid: release.wait(5)
        with self.assertRaises(CloudTimeout):
            TimedCloud(provider, timeout=0.05).has_vm("vm-1")

    def test_late_create_result_is_deleted(self):
        provider = DummyCloudProvider({})
        release = threading.Event()
        self.addCleanup(release.set)
        deleted = threading.Event()
        create_disk = provider.create_disk
        delete_disk = provider.delete_disk

        def slow_create_disk(size, cloud_properties, vm_locality=None):
            release.wait(5)
            return create_disk(size, cloud_properties, vm_locality)

        def tracked_delete_disk(disk_cid):
            delete_disk(disk_cid)
            deleted.set()

        provider.create_disk = slow_create_disk
        provider.delete_disk = tracked_delete_disk
        with self.assertRaisesMessage(CloudTimeout, "CPI create_disk timed out after 0.05s"):
            TimedCloud(provider, timeout=0.05).create_disk(10, {})
        release.set()
        self.assertTrue(deleted.wait(5))
        self.assertEqual(provider.disks, {})

    def test_unexpected_errors_become_cloud_errors(self):
        provider = DummyCloudProvider({})

        def broken(vm_cid):
            raise RuntimeError("boom")

        provider.reboot_vm = broken
        with self.assertRaisesMessage(CloudError, "CPI reboot_vm failed: boom"):
            TimedCloud(provider, timeout=1).reboot_vm("vm-1")

    def test_other_attributes_pass_through(self):
        provider = DummyCloudProvider({"fail_on": ["create_disk"]})
        cloud = TimedCloud(provider, timeout=1)
        self.assertEqual(cloud.provider_type, "dummy")
        self.assertIs(cloud.agent_states, provider.agent_states)
        with self.assertRaises(CloudError):
            cloud.create_disk(10, {})
