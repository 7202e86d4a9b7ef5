import os
import shutil
import tarfile
import tempfile

from django.test import TestCase

from armada_director.errors import TaskNotFound, ValidationError
from armada_director.models import Task
from armada_director.task_logs import read_output

from .support import DirectorFixtureMixin, build_manifest


class TaskManagerTests(DirectorFixtureMixin, TestCase):
    def test_submit_returns_queued_task_without_running_it(self):
        task = self.director.backup()
        self.assertEqual(task.state, "queued")
        self.assertEqual(task.output, os.path.join(self.director.config.task_log_root, str(task.id)))
        self.assertEqual(list(self.director.tasks.dispatcher.pending), [task.id])

    def test_backup_task_writes_archive_and_finishes_done(self):
        task = self.run_task(self.director.backup())
        self.assertEqual(task.state, "done")
        self.assertEqual(task.result, self.director.config.backup_path)
        with tarfile.open(self.director.config.backup_path, "r:gz") as archive:
            self.assertEqual(archive.getnames(), ["director.json"])
        self.assertIsNotNone(task.finished_at)

    def test_cancel_before_start_ends_cancelled(self):
        task = self.director.backup()
        self.director.cancel_task(task.id)
        self.assertEqual(Task.objects.get(id=task.id).state, "cancelling")
        task = self.run_task(task)
        self.assertEqual(task.state, "cancelled")
        self.assertFalse(os.path.exists(self.director.config.backup_path))

    def test_cancel_finished_task_is_rejected(self):
        task = self.run_task(self.director.backup())
        with self.assertRaises(ValidationError):
            self.director.cancel_task(task.id)
        task.refresh_from_db()
        self.assertEqual(task.state, "done")

    def test_terminal_states_never_change(self):
        task = self.run_task(self.director.backup())
        self.assertFalse(Task.transition(task.id, ("done",), "processing"))
        self.assertFalse(Task.transition(task.id, ("queued", "processing"), "error"))
        task.refresh_from_db()
        self.assertEqual(task.state, "done")

    def test_unknown_task_raises_not_found(self):
        with self.assertRaises(TaskNotFound):
            self.director.task_status(999999)

    def test_handler_failure_ends_in_error_with_message(self):
        self.seed_artifacts()
        task = self.director.tasks.submit(
            "update_deployment", "deploy", {"manifest": build_manifest(name="broken", instances=9)},
            deployment_name="broken",
        )
        task = self.run_task(task)
        self.assertEqual(task.state, "error")
        self.assertIn("No free IP left", task.result)
        output = self.director.task_output(task.id, "result")
        self.assertIn(b"No free IP left", output.data)

    def test_status_payload(self):
        task = self.director.backup()
        status = self.director.task_status(task.id)
        self.assertEqual(status["id"], task.id)
        self.assertEqual(status["type"], "backup")
        self.assertEqual(status["state"], "queued")
        self.assertIsNone(status["result"])
        self.assertIsNone(status["user"])
        self.assertIsInstance(status["timestamp"], int)

    def test_list_is_newest_first_and_filters_states(self):
        first = self.run_task(self.director.backup())
        second = self.director.backup()
        self.assertEqual([task.id for task in self.director.list_tasks()], [second.id, first.id])
        self.assertEqual([task.id for task in self.director.list_tasks(states=["queued"])], [second.id])
        self.assertEqual(len(self.director.list_tasks(limit=1)), 1)


class TaskOutputTests(TestCase):
    def setUp(self):
        self.directory = tempfile.mkdtemp()
        with open(os.path.join(self.directory, "debug"), "wb") as handle:
            handle.write(b"hello world")

    def tearDown(self):
        shutil.rmtree(self.directory, True)

    def test_full_output(self):
        output = read_output(self.directory)
        self.assertEqual(output.data, b"hello world")
        self.assertEqual((output.start, output.end, output.total), (0, 10, 11))
        self.assertFalse(output.partial)

    def test_inclusive_range(self):
        output = read_output(self.directory, "debug", start=0, end=3)
        self.assertEqual(output.data, b"hell")
        self.assertEqual((output.start, output.end, output.total), (0, 3, 11))
        self.assertTrue(output.partial)

    def test_range_end_is_clamped(self):
        output = read_output(self.directory, "debug", start=6, end=100)
        self.assertEqual(output.data, b"world")
        self.assertEqual(output.end, 10)

    def test_suffix_range(self):
        self.assertEqual(read_output(self.directory, "debug", suffix=5).data, b"world")

    def test_range_past_end_is_invalid(self):
        with self.assertRaises(ValidationError):
            read_output(self.directory, "debug", start=20, end=30)

    def test_missing_log_is_empty(self):
        output = read_output(self.directory, "event")
        self.assertEqual(output.data, b"")
        self.assertEqual(output.total, 0)

    def test_unknown_log_type_is_rejected(self):
        with self.assertRaises(ValidationError):
            read_output(self.directory, "bogus")

    def test_soap_alias_reads_cpi_log_and_prefers_legacy_file(self):
        with open(os.path.join(self.directory, "cpi"), "wb") as handle:
            handle.write(b"cpi log")
        self.assertEqual(read_output(self.directory, "soap").data, b"cpi log")
        with open(os.path.join(self.directory, "soap"), "wb") as handle:
            handle.write(b"legacy soap")
        self.assertEqual(read_output(self.directory, "cpi").data, b"legacy soap")
        self.assertEqual(read_output(self.directory, "soap").data, b"legacy soap")
