import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from django.utils import timezone

from .config import DirectorConfig
from .errors import CloudError, DeploymentMismatch, SnapshotNotFound
from .models import Deployment, Instance, Snapshot

logger = logging.getLogger(__name__)


@dataclass
class SnapshotResult:
    job: str
    index: int
    disk_cid: str
    snapshot_cid: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def describe(self) -> str:
        outcome = self.snapshot_cid if self.ok else f"failed: {self.error}"
        return f"{self.job}/{self.index} {self.disk_cid}: {outcome}"


def snapshots_for_deletion(deployment: Deployment, snapshot_cids: Iterable[str]) -> List[Snapshot]:
    """Resolve snapshot cids, refusing any that belong to another deployment."""
    snapshots = []
    for cid in snapshot_cids:
        snapshot = (
            Snapshot.objects.select_related("persistent_disk__instance__deployment").filter(snapshot_cid=cid).first()
        )
        if snapshot is None:
            raise SnapshotNotFound(f"Snapshot '{cid}' not found")
        if snapshot.persistent_disk.instance.deployment_id != deployment.id:
            raise DeploymentMismatch(f"Snapshot '{cid}' does not belong to deployment '{deployment.name}'")
        snapshots.append(snapshot)
    return snapshots


class SnapshotManager:
    """Best-effort snapshots of persistent disks: every disk is attempted."""

    def __init__(self, cloud, config: DirectorConfig, log: Optional[logging.Logger] = None):
        self.cloud = cloud
        self.config = config
        self.log = log or logger

    def take_snapshots(self, instances: Iterable[Instance], clean: bool = False) -> List[SnapshotResult]:
        if not self.config.snapshots_enabled:
            self.log.info("Snapshots are disabled; skipping")
            return []
        results = []
        for instance in instances:
            for disk in instance.persistent_disks.filter(active=True):
                result = SnapshotResult(job=instance.job, index=instance.index, disk_cid=disk.disk_cid)
                metadata = {
                    "deployment": instance.deployment.name,
                    "job": instance.job,
                    "index": instance.index,
                    "director_name": self.config.name,
                    "director_uuid": self.config.uuid,
                    "agent_id": instance.vm.agent_id if instance.vm else "",
                }
                try:
                    result.snapshot_cid = self.cloud.create_snapshot(disk.disk_cid, metadata)
                except CloudError as exc:
                    result.error = str(exc)
                    self.log.error("Snapshot of %s for %s/%s failed: %s", disk.disk_cid, instance.job, instance.index,
                                   exc)
                else:
                    Snapshot.objects.create(
                        persistent_disk=disk, snapshot_cid=result.snapshot_cid, clean=clean, created_at=timezone.now()
                    )
                    self.log.info("Snapshot %s taken of %s", result.snapshot_cid, disk.disk_cid)
                results.append(result)
        return results

    def delete_snapshots(self, snapshots: Iterable[Snapshot]) -> List[SnapshotResult]:
        results = []
        for snapshot in snapshots:
            disk = snapshot.persistent_disk
            result = SnapshotResult(
                job=disk.instance.job, index=disk.instance.index, disk_cid=disk.disk_cid,
                snapshot_cid=snapshot.snapshot_cid,
            )
            try:
                self.cloud.delete_snapshot(snapshot.snapshot_cid)
            except CloudError as exc:
                result.error = str(exc)
                self.log.error("Deleting snapshot %s failed: %s", snapshot.snapshot_cid, exc)
            else:
                snapshot.delete()
                self.log.info("Snapshot %s deleted", result.snapshot_cid)
            results.append(result)
        return results
