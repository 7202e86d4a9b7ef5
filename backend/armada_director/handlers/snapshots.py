from ..errors import CloudError
from ..models import Instance, Snapshot
from ..snapshots import SnapshotManager, snapshots_for_deletion
from .base import TaskHandler


class SnapshotHandler(TaskHandler):
    task_type = "snapshot"
    locks_deployment = True

    def perform(self) -> str:
        with self.context.lock():
            deployment = self.get_deployment()
            instances = Instance.objects.filter(deployment=deployment).select_related("vm", "deployment")
            job = self.params.get("job")
            if job:
                instances = instances.filter(job=job)
                if self.params.get("index") is not None:
                    instances = instances.filter(index=int(self.params["index"]))
            manager = SnapshotManager(self.cloud_for(deployment), self.config, self.log)
            results = manager.take_snapshots(instances, clean=bool(self.params.get("clean")))
        if not self.config.snapshots_enabled:
            return "snapshots are disabled"
        failed = [result for result in results if not result.ok]
        if failed:
            raise CloudError(
                f"{len(failed)} of {len(results)} snapshot(s) failed:\n"
                + "\n".join(result.describe() for result in failed)
            )
        return f"snapshots of deployment '{deployment.name}' created"


class DeleteSnapshotHandler(TaskHandler):
    task_type = "delete_snapshot"
    locks_deployment = True

    def perform(self) -> str:
        with self.context.lock():
            deployment = self.get_deployment()
            cids = self.params.get("snapshot_cids")
            if cids:
                snapshots = snapshots_for_deletion(deployment, cids)
            else:
                snapshots = list(
                    Snapshot.objects.filter(persistent_disk__instance__deployment=deployment).select_related(
                        "persistent_disk__instance"
                    )
                )
            results = SnapshotManager(self.cloud_for(deployment), self.config, self.log).delete_snapshots(snapshots)
        failed = [result for result in results if not result.ok]
        if failed:
            raise CloudError("Could not delete snapshot(s):\n" + "\n".join(result.describe() for result in failed))
        return f"deleted {len(results)} snapshot(s)"
