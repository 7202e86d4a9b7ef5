import threading
from unittest import mock

from django.test import TestCase

from armada_director.errors import (
    CloudError,
    DeploymentNotFound,
    InfrastructureMismatch,
    InstanceNotFound,
    ReleaseNotFound,
    StemcellNotFound,
    ValidationError,
)
from armada_director.director import reset_director
from armada_director.fleet import FleetRecorder
from armada_director.models import Deployment, Instance, IpReservation, PersistentDisk, Task, Vm

from .support import DirectorFixtureMixin, build_manifest


class DeployTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()

    def _create_vm_calls(self):
        return [call for call in self.cloud.calls if call[0] == "create_vm"]

    def test_deploy_creates_instances_vms_and_disks(self):
        task = self.deploy()
        self.assertEqual(task.result, "/deployments/web-app")
        deployment = Deployment.objects.get(name="web-app")
        self.assertEqual(deployment.cloud_provider, "dummy")
        self.assertIn("web-app", deployment.manifest)
        self.assertEqual(list(deployment.release_versions.values_list("version", flat=True)), ["1"])
        self.assertEqual(list(deployment.stemcells.values_list("cid", flat=True)), ["stemcell-ubuntu-1"])

        instances = list(Instance.objects.filter(deployment=deployment).order_by("index"))
        self.assertEqual([(i.job, i.index, i.state) for i in instances], [("web", 0, "started"), ("web", 1, "started")])
        for instance in instances:
            self.assertIsNotNone(instance.vm)
            self.assertIn(instance.vm.cid, self.cloud.vms)
            disk = PersistentDisk.objects.get(instance=instance, active=True)
            self.assertEqual(disk.size, 1024)
            self.assertEqual(self.cloud.disks[disk.disk_cid]["vm_cid"], instance.vm.cid)
        self.assertEqual(
            sorted(IpReservation.objects.values_list("address", flat=True)), ["10.0.0.2", "10.0.0.3"]
        )
        self.assertEqual(instances[0].ip_addresses_json, {"default": "10.0.0.2"})

    def test_redeploying_the_same_manifest_changes_nothing(self):
        self.deploy()
        created = len(self._create_vm_calls())
        vm_cids = set(Vm.objects.values_list("cid", flat=True))
        self.deploy()
        self.assertEqual(len(self._create_vm_calls()), created)
        self.assertEqual(set(Vm.objects.values_list("cid", flat=True)), vm_cids)

    def test_scaling_down_deletes_extra_instances(self):
        self.deploy(build_manifest(instances=3))
        removed_vm = Instance.objects.get(job="web", index=2).vm.cid
        self.deploy(build_manifest(instances=1))
        self.assertEqual(list(Instance.objects.values_list("index", flat=True)), [0])
        self.assertNotIn(removed_vm, self.cloud.vms)
        self.assertEqual(list(IpReservation.objects.values_list("address", flat=True)), ["10.0.0.2"])
        self.assertEqual(len(self.cloud.disks), 1)

    def test_partial_failure_reports_each_instance(self):
        original = self.cloud.create_vm
        attempts = []

        def flaky_create_vm(*args, **kwargs):
            attempts.append(args[0])
            if len(attempts) == 2:
                raise CloudError("quota exceeded")
            return original(*args, **kwargs)

        self.cloud.create_vm = flaky_create_vm
        manifest = build_manifest(instances=3, update={"canaries": 1, "max_in_flight": 1})
        task = self.run_task(self.director.deploy(manifest))

        self.assertEqual(task.state, "error")
        self.assertIn("web/0: succeeded", task.result)
        self.assertIn("web/1: failed (quota exceeded)", task.result)
        self.assertIn("web/2: not_attempted", task.result)
        self.assertEqual(len(attempts), 2)
        self.assertEqual(Instance.objects.filter(vm__isnull=False).count(), 1)
        # The manifest is only stored once a deploy converges.
        self.assertEqual(Deployment.objects.get(name="web-app").manifest, "")

    def test_single_job_without_disk_ends_done(self):
        manifest = build_manifest("nats", instances=1, template="nats", persistent_disk=0)
        manifest["jobs"][0]["name"] = "nats"
        task = self.deploy(manifest)
        self.assertEqual(task.result, "/deployments/nats")
        self.assertEqual(len(self._create_vm_calls()), 1)
        self.assertEqual(self.cloud.disks, {})
        instance = Instance.objects.get(deployment__name="nats")
        self.assertEqual((instance.job, instance.index), ("nats", 0))
        self.assertFalse(PersistentDisk.objects.exists())

    def test_recreate_replaces_every_vm(self):
        self.deploy()
        before = set(Vm.objects.values_list("cid", flat=True))
        disks = set(PersistentDisk.objects.values_list("disk_cid", flat=True))
        task = self.run_task(self.director.deploy(build_manifest(), recreate=True))
        self.assertEqual(task.state, "done", task.result)
        after = set(Vm.objects.values_list("cid", flat=True))
        self.assertFalse(before & after)
        self.assertEqual(len(after), 2)
        self.assertEqual(set(PersistentDisk.objects.values_list("disk_cid", flat=True)), disks)

    def test_unknown_release_is_rejected_before_queueing(self):
        manifest = build_manifest()
        manifest["releases"] = [{"name": "appcloud", "version": "9"}]
        with self.assertRaises(ReleaseNotFound):
            self.director.deploy(manifest)

    def test_unknown_stemcell_is_rejected_before_queueing(self):
        manifest = build_manifest()
        manifest["resource_pools"][0]["stemcell"] = {"name": "centos", "version": "7"}
        with self.assertRaises(StemcellNotFound):
            self.director.deploy(manifest)

    def test_stemcell_for_another_infrastructure_is_rejected(self):
        manifest = build_manifest()
        manifest["cloud_provider"] = "aws"
        with self.assertRaises(InfrastructureMismatch):
            self.director.deploy(manifest)

    def test_switching_infrastructure_is_rejected(self):
        self.deploy()
        manifest = build_manifest()
        manifest["cloud_provider"] = "vsphere"
        with self.assertRaises(InfrastructureMismatch):
            self.director.deploy(manifest)

    def test_manifest_without_name_is_rejected(self):
        manifest = build_manifest()
        del manifest["name"]
        with self.assertRaises(ValidationError):
            self.director.deploy(manifest)


class JobStateTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()
        self.deploy()

    def _agent_state(self, index):
        instance = Instance.objects.select_related("vm").get(job="web", index=index)
        return self.cloud.agent_states[instance.vm.agent_id]["job_state"]

    def test_stop_single_instance(self):
        task = self.run_task(self.director.change_job_state("web-app", "stopped", job="web", index=1))
        self.assertEqual(task.state, "done", task.result)
        self.assertEqual(Instance.objects.get(job="web", index=1).state, "stopped")
        self.assertEqual(Instance.objects.get(job="web", index=0).state, "started")
        self.assertEqual(self._agent_state(1), "stopped")
        self.assertEqual(self._agent_state(0), "running")

    def test_stop_then_start_all_jobs(self):
        self.run_task(self.director.change_job_state("web-app", "stopped"))
        self.assertEqual(set(Instance.objects.values_list("state", flat=True)), {"stopped"})
        task = self.run_task(self.director.change_job_state("web-app", "started"))
        self.assertEqual(task.state, "done", task.result)
        self.assertEqual(set(Instance.objects.values_list("state", flat=True)), {"started"})

    def test_detach_deletes_vm_and_keeps_disk(self):
        instance = Instance.objects.select_related("vm").get(job="web", index=0)
        vm_cid = instance.vm.cid
        disk = PersistentDisk.objects.get(instance=instance)
        task = self.run_task(self.director.change_job_state("web-app", "detached", job="web", index=0))
        self.assertEqual(task.state, "done", task.result)
        instance.refresh_from_db()
        self.assertIsNone(instance.vm)
        self.assertEqual(instance.state, "detached")
        self.assertNotIn(vm_cid, self.cloud.vms)
        self.assertIn(disk.disk_cid, self.cloud.disks)

        task = self.run_task(self.director.change_job_state("web-app", "started", job="web", index=0))
        self.assertEqual(task.state, "done", task.result)
        instance.refresh_from_db()
        self.assertIsNotNone(instance.vm)
        self.assertEqual(self.cloud.disks[disk.disk_cid]["vm_cid"], instance.vm.cid)

    def test_invalid_targets_fail_synchronously(self):
        with self.assertRaises(ValidationError):
            self.director.change_job_state("web-app", "sleeping")
        with self.assertRaises(ValidationError):
            self.director.change_job_state("web-app", "stopped", job="db")
        with self.assertRaises(InstanceNotFound):
            self.director.change_job_state("web-app", "stopped", job="web", index=5)
        with self.assertRaises(DeploymentNotFound):
            self.director.change_job_state("other", "stopped")


class DeleteDeploymentTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()
        self.deploy()

    def test_delete_removes_cloud_resources_and_records(self):
        task = self.run_task(self.director.delete_deployment("web-app"))
        self.assertEqual(task.state, "done", task.result)
        self.assertFalse(Deployment.objects.filter(name="web-app").exists())
        self.assertFalse(Instance.objects.exists())
        self.assertFalse(IpReservation.objects.exists())
        self.assertEqual(self.cloud.vms, {})
        self.assertEqual(self.cloud.disks, {})

    def test_failed_cloud_calls_block_delete_unless_forced(self):
        self.cloud.fail_on.add("delete_disk")
        task = self.run_task(self.director.delete_deployment("web-app"))
        self.assertEqual(task.state, "error")
        self.assertTrue(Deployment.objects.filter(name="web-app").exists())

        task = self.run_task(self.director.delete_deployment("web-app", force=True))
        self.assertEqual(task.state, "done", task.result)
        self.assertFalse(Deployment.objects.filter(name="web-app").exists())

    def test_unknown_deployment(self):
        with self.assertRaises(DeploymentNotFound):
            self.director.delete_deployment("missing")


class DeployCancellationTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()

    def _deploy_cancelling_after_first_batch(self, manifest):
        task = self.director.deploy(manifest)
        original_apply = FleetRecorder.apply

        def apply_then_cancel(recorder, job, index, events):
            original_apply(recorder, job, index, events)
            if Task.objects.get(id=task.id).state == "processing":
                self.director.cancel_task(task.id)

        with mock.patch.object(FleetRecorder, "apply", autospec=True, side_effect=apply_then_cancel):
            return self.run_task(task)

    def test_cancel_stops_at_the_next_batch(self):
        manifest = build_manifest(instances=2, update={"canaries": 1, "max_in_flight": 1})
        task = self._deploy_cancelling_after_first_batch(manifest)
        self.assertEqual(task.state, "cancelled")
        self.assertIn("Task cancelled before batch 2/2 of web-app", task.result)
        self.assertIn("web/0: succeeded", task.result)
        self.assertIn("web/1: not_attempted", task.result)
        self.assertEqual(len(self.cloud.vms), 1)
        self.assertEqual(Instance.objects.filter(vm__isnull=False).count(), 1)

    def test_cancel_after_the_last_batch_still_ends_cancelled(self):
        task = self._deploy_cancelling_after_first_batch(build_manifest(instances=1))
        self.assertEqual(task.state, "cancelled")
        self.assertEqual(task.result, "Task cancelled after its work completed: /deployments/web-app")
        self.assertEqual(len(self.cloud.vms), 1)

    def test_cancelling_task_never_reaches_done_or_error(self):
        task = self.director.backup()
        self.director.cancel_task(task.id)
        self.assertFalse(Task.transition(task.id, ("cancelling",), "done"))
        self.assertFalse(Task.transition(task.id, ("cancelling",), "error"))
        self.assertEqual(Task.objects.get(id=task.id).state, "cancelling")


class CloudTimeoutDeployTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()
        self.director = self.build_director(cpi_timeout=0.05)
        reset_director(self.director)
        self.cloud = self.director.clouds.get_provider("dummy")

    def test_timed_out_create_vm_is_reported_and_its_vm_deleted(self):
        release = threading.Event()
        self.addCleanup(release.set)
        deleted = threading.Event()
        original_create_vm = self.cloud.create_vm
        original_delete_vm = self.cloud.delete_vm

        def slow_create_vm(*args, **kwargs):
            release.wait(5)
            return original_create_vm(*args, **kwargs)

        def delete_vm(vm_cid):
            original_delete_vm(vm_cid)
            deleted.set()

        self.cloud.create_vm = slow_create_vm
        self.cloud.delete_vm = delete_vm
        manifest = build_manifest(instances=2, update={"canaries": 1, "max_in_flight": 1})
        task = self.run_task(self.director.deploy(manifest))

        self.assertEqual(task.state, "error")
        self.assertIn("web/0: failed (CPI create_vm timed out after 0.05s)", task.result)
        self.assertIn("web/1: not_attempted", task.result)
        self.assertFalse(Vm.objects.exists())

        release.set()
        self.assertTrue(deleted.wait(5))
        self.assertEqual(self.cloud.vms, {})
