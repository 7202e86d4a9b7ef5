import copy
import shutil
import tempfile
from typing import Any, Dict, Optional

from django.core.cache import cache

from armada_director.config import DirectorConfig
from armada_director.director import Director, reset_director
from armada_director.models import Release, ReleaseVersion, Stemcell, Task

BASE_MANIFEST: Dict[str, Any] = {
    "name": "web-app",
    "releases": [{"name": "appcloud", "version": "1"}],
    "update": {"canaries": 1, "max_in_flight": 2, "update_watch_time": 1000},
    "networks": [
        {
            "name": "default",
            "subnets": [
                {"range": "10.0.0.0/29", "gateway": "10.0.0.1", "dns": ["10.0.0.1"], "static": ["10.0.0.6"]},
            ],
        }
    ],
    "resource_pools": [
        {
            "name": "small",
            "network": "default",
            "stemcell": {"name": "ubuntu", "version": "1"},
            "cloud_properties": {"instance_type": "m1.small"},
        }
    ],
    "jobs": [
        {
            "name": "web",
            "template": "web",
            "instances": 2,
            "resource_pool": "small",
            "persistent_disk": 1024,
            "networks": [{"name": "default"}],
        }
    ],
}


def build_manifest(name: str = "web-app", instances: int = 2, **job_overrides) -> Dict[str, Any]:
    manifest = copy.deepcopy(BASE_MANIFEST)
    manifest["name"] = name
    manifest["jobs"][0]["instances"] = instances
    manifest["jobs"][0].update(job_overrides)
    return manifest


class DirectorFixtureMixin:
    """A director on the dummy cloud whose tasks run when ``drain()`` is called."""

    config_overrides: Dict[str, Any] = {}

    def setUp(self):
        super().setUp()
        self.workdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.workdir, True)
        cache.clear()
        self.director = self.build_director()
        reset_director(self.director)
        self.addCleanup(reset_director)
        self.cloud = self.director.clouds.get_provider("dummy")

    def build_director(self, **overrides) -> Director:
        values = {
            "async_jobs_mode": "manual",
            "default_infrastructure": "dummy",
            "task_log_root": f"{self.workdir}/tasks",
            "artifact_root": f"{self.workdir}/artifacts",
            "backup_path": f"{self.workdir}/backup.tgz",
            "agent_timeout": 0,
            "cpi_timeout": 10,
        }
        values.update(self.config_overrides)
        values.update(overrides)
        return Director(DirectorConfig.from_settings(values))

    def seed_artifacts(self, infrastructure: str = "dummy") -> None:
        release = Release.objects.create(name="appcloud")
        ReleaseVersion.objects.create(
            release=release, version="1", jobs_json=[{"name": "web"}], packages_json=[], fingerprint="f1"
        )
        Stemcell.objects.create(name="ubuntu", version="1", cid="stemcell-ubuntu-1", infrastructure=infrastructure)

    def drain(self) -> None:
        self.director.tasks.drain()

    def run_task(self, task: Task) -> Task:
        self.drain()
        task.refresh_from_db()
        return task

    def deploy(self, manifest: Optional[Dict[str, Any]] = None) -> Task:
        task = self.run_task(self.director.deploy(manifest or build_manifest()))
        self.assertEqual(task.state, "done", task.result)
        return task
