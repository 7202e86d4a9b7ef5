from django.test import TestCase

from armada_director.allocator import CurrentBinding, DesiredInstance, ResourceAllocator
from armada_director.config import DirectorConfig
from armada_director.errors import CapacityExhausted, NetworkExhausted, ValidationError
from armada_director.fleet import ObservedDisk, ObservedInstance, ObservedState, observe
from armada_director.reconciler import DeploymentPlanner

from .support import DirectorFixtureMixin, build_manifest


def _kinds(step):
    return [action.kind for action in step.actions]


class DeploymentPlannerTests(TestCase):
    def setUp(self):
        self.planner = DeploymentPlanner(DirectorConfig.from_settings({"async_jobs_mode": "manual"}))

    def test_new_instances_are_batched_canary_first(self):
        plan = self.planner.plan("web-app", build_manifest(instances=3), ObservedState(deployment="web-app"))
        self.assertEqual([len(batch) for batch in plan.batches], [1, 2])
        self.assertTrue(plan.batches[0][0].canary)
        self.assertEqual([(step.job, step.index) for step in plan.steps], [("web", 0), ("web", 1), ("web", 2)])
        self.assertEqual(_kinds(plan.steps[0]), ["create_vm", "attach_disk", "update_job_state"])
        self.assertEqual([action.batch for action in plan.batches[1][0].actions], [1, 1, 1])

    def test_job_update_block_overrides_deployment_defaults(self):
        manifest = build_manifest(instances=4, update={"canaries": 1, "max_in_flight": 3})
        plan = self.planner.plan("web-app", manifest, ObservedState(deployment="web-app"))
        self.assertEqual([len(batch) for batch in plan.batches], [1, 3])

    def test_canaries_never_exceed_max_in_flight(self):
        manifest = build_manifest(instances=4, update={"canaries": 3, "max_in_flight": 1})
        plan = self.planner.plan("web-app", manifest, ObservedState(deployment="web-app"))
        self.assertEqual([len(batch) for batch in plan.batches], [1, 1, 1, 1])
        self.assertEqual([batch[0].canary for batch in plan.batches], [True, True, True, False])

    def test_single_job_without_disk_plans_one_vm_and_one_attach(self):
        manifest = build_manifest("nats", instances=1, template="nats", persistent_disk=0)
        manifest["jobs"][0]["name"] = "nats"
        plan = self.planner.plan("nats", manifest, ObservedState(deployment="nats"))
        kinds = [action.kind for action in plan.actions]
        self.assertEqual(kinds.count("create_vm"), 1)
        self.assertEqual(kinds.count("attach_disk"), 1)
        self.assertEqual([(step.job, step.index) for step in plan.steps], [("nats", 0)])

    def test_removed_instances_are_deleted_after_updates(self):
        observed = ObservedState(deployment="web-app")
        observed.instances[("worker", 0)] = ObservedInstance(
            job="worker", index=0, vm_cid="vm-9", agent_id="agent-9",
            disk=ObservedDisk("disk-9", 1024, {}, True),
        )
        plan = self.planner.plan("web-app", build_manifest(instances=1), observed)
        last = plan.batches[-1]
        self.assertEqual([(step.job, step.index, step.deletion) for step in last], [("worker", 0, True)])
        self.assertEqual(_kinds(last[0]), ["update_job_state", "detach_disk", "delete_vm"])
        delete_vm = last[0].actions[-1]
        self.assertTrue(delete_vm.params["delete_instance"])
        self.assertTrue(last[0].actions[1].params["delete"])
        self.assertFalse(any(step.deletion for batch in plan.batches[:-1] for step in batch))

    def test_detached_state_keeps_instance_and_disk(self):
        observed = ObservedState(deployment="web-app")
        observed.instances[("web", 0)] = ObservedInstance(
            job="web", index=0, vm_cid="vm-1", agent_id="agent-1", disk=ObservedDisk("disk-1", 1024, {}, True)
        )
        plan = self.planner.plan(
            "web-app", build_manifest(instances=1), observed, job_states={"web": {"state": "detached"}}
        )
        step = plan.steps[0]
        self.assertEqual(_kinds(step), ["update_job_state", "detach_disk", "delete_vm"])
        self.assertFalse(step.actions[1].params["delete"])
        self.assertFalse(step.actions[2].params["delete_instance"])
        self.assertTrue(step.actions[2].params["detached"])

    def test_unknown_job_state_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.planner.plan("web-app", build_manifest(), ObservedState(deployment="web-app"),
                              job_states={"web": {"state": "sleeping"}})

    def test_duplicate_job_names_are_rejected(self):
        manifest = build_manifest()
        manifest["jobs"].append(dict(manifest["jobs"][0]))
        with self.assertRaises(ValidationError):
            self.planner.plan("web-app", manifest, ObservedState(deployment="web-app"))


class DeployedPlanTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()
        self.planner = DeploymentPlanner(self.director.config)

    def test_plan_is_empty_once_converged(self):
        self.deploy()
        plan = self.planner.plan("web-app", build_manifest(), observe("web-app"))
        self.assertTrue(plan.is_empty())

    def test_changed_properties_only_update_job_state(self):
        self.deploy()
        manifest = build_manifest(properties={"port": 8080})
        plan = self.planner.plan("web-app", manifest, observe("web-app"))
        self.assertEqual([_kinds(step) for step in plan.steps], [["update_job_state"], ["update_job_state"]])

    def test_changed_cloud_properties_replace_vms(self):
        self.deploy()
        manifest = build_manifest()
        manifest["resource_pools"][0]["cloud_properties"] = {"instance_type": "m1.large"}
        plan = self.planner.plan("web-app", manifest, observe("web-app"))
        self.assertEqual(
            _kinds(plan.steps[0]), ["create_vm", "migrate_disk", "update_job_state", "delete_vm"]
        )

    def test_disk_resize_migrates_disk(self):
        self.deploy()
        plan = self.planner.plan("web-app", build_manifest(persistent_disk=2048), observe("web-app"))
        self.assertEqual(_kinds(plan.steps[0]), ["migrate_disk", "update_job_state"])


class ResourceAllocatorTests(TestCase):
    def _desired(self, index, job="web", networks=None, pool="small"):
        return DesiredInstance(
            deployment="web-app", job=job, index=index, resource_pool=pool,
            networks=networks if networks is not None else [{"name": "default"}], cloud_properties=None,
        )

    def test_first_free_dynamic_address_is_used(self):
        allocator = ResourceAllocator(build_manifest())
        first = allocator.allocate(self._desired(0))
        second = allocator.allocate(self._desired(1))
        self.assertEqual(first.ip_addresses, {"default": "10.0.0.2"})
        self.assertEqual(second.ip_addresses, {"default": "10.0.0.3"})
        self.assertEqual(first.networks["default"]["default"], ["dns", "gateway"])
        self.assertEqual(first.stemcell, {"name": "ubuntu", "version": "1"})

    def test_network_exhaustion(self):
        allocator = ResourceAllocator(build_manifest())
        for index in range(4):
            allocator.allocate(self._desired(index))
        with self.assertRaises(NetworkExhausted):
            allocator.allocate(self._desired(4))

    def test_addresses_reserved_by_others_are_skipped(self):
        allocator = ResourceAllocator(build_manifest(), {("default", "10.0.0.2"): "other/db/0"})
        self.assertEqual(allocator.allocate(self._desired(0)).ip_addresses, {"default": "10.0.0.3"})

    def test_existing_instance_keeps_its_address(self):
        allocator = ResourceAllocator(build_manifest(), {("default", "10.0.0.4"): "web-app/web/0"})
        binding = allocator.allocate(self._desired(0), CurrentBinding("small", {"default": "10.0.0.4"}))
        self.assertEqual(binding.ip_addresses, {"default": "10.0.0.4"})

    def test_static_ip_must_be_in_static_range(self):
        allocator = ResourceAllocator(build_manifest())
        binding = allocator.allocate(self._desired(0, networks=[{"name": "default", "static_ips": ["10.0.0.6"]}]))
        self.assertEqual(binding.ip_addresses, {"default": "10.0.0.6"})
        with self.assertRaises(NetworkExhausted):
            allocator.allocate(self._desired(0, job="db", networks=[{"name": "default", "static_ips": ["10.0.0.3"]}]))

    def test_pool_size_limits_capacity(self):
        manifest = build_manifest()
        manifest["resource_pools"][0]["size"] = 1
        allocator = ResourceAllocator(manifest)
        allocator.allocate(self._desired(0))
        with self.assertRaises(CapacityExhausted):
            allocator.allocate(self._desired(1))

    def test_unknown_pool_is_capacity_error(self):
        with self.assertRaises(CapacityExhausted):
            ResourceAllocator(build_manifest()).allocate(self._desired(0, pool="huge"))
