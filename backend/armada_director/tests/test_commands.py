from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.test import TestCase

from armada_director import worker
from armada_director.models import Task
from armada_director.tasks import RedisDispatcher
from armada_director.worker_tasks import run_task

from .support import DirectorFixtureMixin, build_manifest


class RunResurrectorCommandTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()
        self.deploy()
        self.deploy(build_manifest(name="api-app"))

    def test_single_pass_queues_scan_and_fix_per_deployment(self):
        out = StringIO()
        call_command("run_resurrector", "--once", stdout=out)
        self.assertIn("Queued 2 scan_and_fix task(s)", out.getvalue())
        queued = Task.objects.filter(type="scan_and_fix").order_by("deployment_name")
        self.assertEqual(list(queued.values_list("deployment_name", flat=True)), ["api-app", "web-app"])

    def test_active_scan_and_fix_is_not_queued_twice(self):
        self.director.scan_and_fix("web-app")
        out = StringIO()
        call_command("run_resurrector", "--once", stdout=out)
        self.assertIn("Queued 1 scan_and_fix task(s)", out.getvalue())
        self.assertEqual(Task.objects.filter(type="scan_and_fix", deployment_name="web-app").count(), 1)


class WorkerTaskTests(DirectorFixtureMixin, TestCase):
    @mock.patch("armada_director.worker_tasks.close_old_connections")
    def test_worker_entry_point_runs_task(self, close_connections):
        task = self.director.backup()
        run_task(str(task.id))
        self.assertEqual(close_connections.call_count, 2)
        task.refresh_from_db()
        self.assertEqual(task.state, "done")

    @mock.patch("rq.Queue")
    @mock.patch("redis.Redis.from_url")
    def test_redis_dispatcher_enqueues_worker_entry_point(self, from_url, queue_class):
        queue_class.return_value.enqueue.return_value.id = "job-1"
        dispatcher = RedisDispatcher("redis://cache:6379/1", "armada-tasks")
        self.assertEqual(dispatcher.dispatch(42), "job-1")
        from_url.assert_called_once_with("redis://cache:6379/1")
        queue_class.assert_called_once_with("armada-tasks", connection=from_url.return_value)
        queue_class.return_value.enqueue.assert_called_once_with(
            "armada_director.worker_tasks.run_task", 42, job_timeout=-1
        )

    @mock.patch("armada_director.worker.Worker")
    @mock.patch("armada_director.worker.redis.Redis.from_url")
    @mock.patch("armada_director.worker.django.setup")
    def test_worker_runs_the_scheduler_for_deferred_tasks(self, setup, from_url, worker_class):
        worker.main()
        setup.assert_called_once_with()
        worker_class.assert_called_once_with(["armada-tasks"], connection=from_url.return_value)
        worker_class.return_value.work.assert_called_once_with(with_scheduler=True)
