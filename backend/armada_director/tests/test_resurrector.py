from django.test import TestCase

from armada_director.errors import CrossDeploymentError, InvalidResolution, ProblemNotFound
from armada_director.models import DeploymentProblem, Instance, PersistentDisk

from .support import DirectorFixtureMixin, build_manifest


class ResurrectorTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()
        self.deploy()

    def _instance(self, index=0):
        return Instance.objects.select_related("vm").get(deployment__name="web-app", job="web", index=index)

    def _agent_state(self, index=0):
        return self.cloud.agent_states[self._instance(index).vm.agent_id]

    def _lose_vm(self, index=0):
        vm = self._instance(index).vm
        self.cloud.vms.pop(vm.cid)
        self.cloud.agent_states.pop(vm.agent_id)
        return vm

    def _scan(self, deployment="web-app", jobs=None):
        task = self.run_task(self.director.scan(deployment, jobs=jobs))
        self.assertEqual(task.state, "done", task.result)
        return self.director.list_problems(deployment)

    def test_healthy_deployment_has_no_problems(self):
        self.assertEqual(self._scan(), [])

    def test_missing_vm_is_recorded_once_per_scan(self):
        vm = self._lose_vm()
        problems = self._scan()
        self.assertEqual(len(problems), 1)
        self.assertEqual(problems[0]["type"], "missing_vm")
        self.assertEqual(problems[0]["description"], f"VM with cloud ID '{vm.cid}' missing.")
        self.assertEqual([r["name"] for r in problems[0]["resolutions"]],
                         ["recreate_vm", "delete_vm_reference", "ignore"])

        self.assertEqual(len(self._scan()), 1)
        problem = DeploymentProblem.objects.get(id=problems[0]["id"])
        self.assertEqual(problem.counter, 2)

    def test_scan_respects_job_filter(self):
        self._lose_vm()
        self.assertEqual(self._scan(jobs=["db"]), [])
        self.assertEqual(len(self._scan(jobs={"web": [0]})), 1)

    def test_unresponsive_agent_is_fixed_by_reboot(self):
        self._agent_state(1)["responsive"] = False
        problems = self._scan()
        self.assertEqual([p["type"] for p in problems], ["unresponsive_agent"])
        task = self.run_task(self.director.resolve_problems("web-app", {problems[0]["id"]: "reboot_vm"}))
        self.assertEqual(task.state, "done", task.result)
        self.assertTrue(self._agent_state(1)["responsive"])
        problem = DeploymentProblem.objects.get(id=problems[0]["id"])
        self.assertEqual((problem.state, problem.resolution, problem.resolution_task_id),
                         ("resolved", "reboot_vm", task.id))

    def test_out_of_disk_is_reported(self):
        self._agent_state(0)["persistent_disk_percent"] = 95
        problems = self._scan()
        self.assertEqual([p["type"] for p in problems], ["out_of_disk"])
        self.assertEqual(problems[0]["description"], "web/0 persistent disk is 95% full")

    def test_detached_disk_is_reattached(self):
        state = self._agent_state(0)
        disk_cid = state["disks"][0]
        state["disks"] = []
        problems = self._scan()
        self.assertEqual([p["type"] for p in problems], ["disk_detached"])
        task = self.run_task(self.director.resolve_problems("web-app", {"solution": "default"}))
        self.assertEqual(task.state, "done", task.result)
        self.assertEqual(self._agent_state(0)["disks"], [disk_cid])
        self.assertEqual(self.director.list_problems("web-app"), [])

    def test_inactive_disk_can_be_deleted(self):
        instance = self._instance(1)
        cid = self.cloud.create_disk(512, {})
        PersistentDisk.objects.create(instance=instance, disk_cid=cid, size=512, active=False)
        problems = self._scan()
        self.assertEqual([p["type"] for p in problems], ["inactive_disk"])
        task = self.run_task(self.director.resolve_problems("web-app", {problems[0]["id"]: "delete_disk"}))
        self.assertEqual(task.state, "done", task.result)
        self.assertNotIn(cid, self.cloud.disks)
        self.assertFalse(PersistentDisk.objects.filter(disk_cid=cid).exists())

    def test_scan_and_fix_recreates_missing_vm(self):
        old_vm = self._lose_vm()
        disk = self._instance().active_disk
        task = self.run_task(self.director.scan_and_fix("web-app"))
        self.assertEqual(task.state, "done", task.result)
        instance = self._instance()
        self.assertIsNotNone(instance.vm)
        self.assertNotEqual(instance.vm.cid, old_vm.cid)
        self.assertIn(instance.vm.cid, self.cloud.vms)
        self.assertEqual(self.cloud.disks[disk.disk_cid]["vm_cid"], instance.vm.cid)
        self.assertEqual(self._agent_state(0)["job_state"], "running")
        problem = DeploymentProblem.objects.get(deployment__name="web-app", type="missing_vm")
        self.assertEqual((problem.state, problem.resolution, problem.resolution_task_id),
                         ("resolved", "recreate_vm", task.id))

    def test_scan_and_fix_skips_paused_instances(self):
        self.director.set_resurrection("web-app", "web", 0, True)
        self._lose_vm()
        task = self.run_task(self.director.scan_and_fix("web-app"))
        self.assertEqual(task.state, "done", task.result)
        self.assertEqual(task.result, "0 resolved")
        self.assertEqual([p["type"] for p in self.director.list_problems("web-app")], ["missing_vm"])

    def test_failed_resolution_leaves_problem_open(self):
        self._lose_vm()
        problems = self._scan()
        self.cloud.fail_on.add("create_vm")
        task = self.run_task(self.director.resolve_problems("web-app", {problems[0]["id"]: None}))
        self.assertEqual(task.state, "error")
        self.assertIn("could not be resolved", task.result)
        self.assertEqual(DeploymentProblem.objects.get(id=problems[0]["id"]).state, "open")

    def test_resolutions_are_validated_before_queueing(self):
        self._lose_vm()
        problem_id = self._scan()[0]["id"]
        self.deploy(build_manifest(name="api-app"))

        with self.assertRaises(CrossDeploymentError):
            self.director.resolve_problems("api-app", {problem_id: None})
        with self.assertRaises(InvalidResolution):
            self.director.resolve_problems("web-app", {problem_id: "reboot_vm"})
        with self.assertRaises(ProblemNotFound):
            self.director.resolve_problems("web-app", {999999: None})
