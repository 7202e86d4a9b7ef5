"""Observed fleet state and persistence of execution outcomes.

Planning reads an ``ObservedState`` snapshot built from the database. Plan
execution runs cloud and agent calls on worker threads that only record
``StepEvent`` objects; ``FleetRecorder`` replays those events into the
database on the task's own thread so every row write happens in one place.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from .models import Deployment, Instance, IpReservation, PersistentDisk, Vm

logger = logging.getLogger(__name__)


@dataclass
class ObservedDisk:
    disk_cid: str
    size: int
    cloud_properties: Dict[str, Any] = field(default_factory=dict)
    active: bool = True


@dataclass
class ObservedInstance:
    job: str
    index: int
    state: str = "started"
    vm_cid: Optional[str] = None
    agent_id: Optional[str] = None
    vm_env: Dict[str, Any] = field(default_factory=dict)
    resource_pool: str = ""
    vm_config_hash: str = ""
    job_config_hash: str = ""
    ip_addresses: Dict[str, str] = field(default_factory=dict)
    dns_records: List[str] = field(default_factory=list)
    disk: Optional[ObservedDisk] = None
    inactive_disks: List[ObservedDisk] = field(default_factory=list)
    resurrection_paused: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.job, self.index)


@dataclass
class ObservedState:
    deployment: str
    cloud_provider: str = ""
    instances: Dict[Tuple[str, int], ObservedInstance] = field(default_factory=dict)
    reservations: Dict[Tuple[str, str], str] = field(default_factory=dict)

    def get(self, job: str, index: int) -> Optional[ObservedInstance]:
        return self.instances.get((job, index))


def owner_key(deployment: str, job: str, index: int) -> str:
    return f"{deployment}/{job}/{index}"


def observe(deployment_name: str) -> ObservedState:
    """Snapshot instances, VMs, disks and every IP reservation in the director."""
    deployment = Deployment.objects.filter(name=deployment_name).first()
    state = ObservedState(deployment=deployment_name, cloud_provider=deployment.cloud_provider if deployment else "")
    for reservation in IpReservation.objects.select_related("instance__deployment"):
        instance = reservation.instance
        state.reservations[(reservation.network_name, reservation.address)] = owner_key(
            instance.deployment.name, instance.job, instance.index
        )
    if deployment is None:
        return state
    instances = Instance.objects.filter(deployment=deployment).select_related("vm").prefetch_related("persistent_disks")
    for instance in instances:
        observed = ObservedInstance(
            job=instance.job,
            index=instance.index,
            state=instance.state,
            vm_cid=instance.vm.cid if instance.vm else None,
            agent_id=instance.vm.agent_id if instance.vm else None,
            vm_env=(instance.vm.env_json or {}) if instance.vm else {},
            resource_pool=instance.resource_pool,
            vm_config_hash=instance.vm_config_hash,
            job_config_hash=instance.job_config_hash,
            ip_addresses=dict(instance.ip_addresses_json or {}),
            dns_records=list(instance.dns_records_json or []),
            resurrection_paused=instance.resurrection_paused,
        )
        for disk in instance.persistent_disks.all():
            item = ObservedDisk(disk.disk_cid, disk.size, dict(disk.cloud_properties_json or {}), disk.active)
            if disk.active:
                observed.disk = item
            else:
                observed.inactive_disks.append(item)
        state.instances[observed.key] = observed
    return state


@dataclass
class StepEvent:
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)


class FleetRecorder:
    """Applies the events recorded by one executed step to the database."""

    def __init__(self, deployment: Deployment):
        self.deployment = deployment

    def _instance(self, job: str, index: int) -> Instance:
        instance, _ = Instance.objects.get_or_create(deployment=self.deployment, job=job, index=index)
        return instance

    @transaction.atomic
    def apply(self, job: str, index: int, events: List[StepEvent]) -> None:
        for event in events:
            handler = getattr(self, f"_on_{event.kind}", None)
            if handler is None:
                logger.warning("No recorder for event %s", event.kind)
                continue
            handler(job, index, **event.data)

    def _on_vm_created(self, job, index, vm_cid, agent_id, env=None, resource_pool="", vm_config_hash="",
                       ip_addresses=None):
        instance = self._instance(job, index)
        # A replaced VM row stays unbound until its delete_vm event.
        vm = Vm.objects.create(deployment=self.deployment, cid=vm_cid, agent_id=agent_id, env_json=env or {})
        instance.vm = vm
        instance.resource_pool = resource_pool
        instance.vm_config_hash = vm_config_hash
        instance.ip_addresses_json = ip_addresses or {}
        instance.save(update_fields=["vm", "resource_pool", "vm_config_hash", "ip_addresses_json", "updated_at"])
        IpReservation.objects.filter(instance=instance).exclude(
            address__in=list((ip_addresses or {}).values())
        ).delete()
        for network_name, address in (ip_addresses or {}).items():
            IpReservation.objects.update_or_create(
                network_name=network_name, address=address, defaults={"instance": instance}
            )

    def _on_disk_created(self, job, index, disk_cid, size, cloud_properties=None):
        instance = self._instance(job, index)
        PersistentDisk.objects.create(
            instance=instance, disk_cid=disk_cid, size=size, cloud_properties_json=cloud_properties or {}, active=False
        )

    def _on_disk_activated(self, job, index, disk_cid):
        instance = self._instance(job, index)
        PersistentDisk.objects.filter(instance=instance, active=True).exclude(disk_cid=disk_cid).update(active=False)
        PersistentDisk.objects.filter(disk_cid=disk_cid).update(active=True, instance=instance)

    def _on_disk_deactivated(self, job, index, disk_cid):
        PersistentDisk.objects.filter(disk_cid=disk_cid).update(active=False)

    def _on_disk_deleted(self, job, index, disk_cid):
        PersistentDisk.objects.filter(disk_cid=disk_cid).delete()

    def _on_vm_deleted(self, job, index, vm_cid):
        Vm.objects.filter(deployment=self.deployment, cid=vm_cid).delete()

    def _on_state_applied(self, job, index, state, job_config_hash="", apply_spec=None):
        instance = self._instance(job, index)
        instance.state = state
        fields = ["state", "updated_at"]
        if job_config_hash:
            instance.job_config_hash = job_config_hash
            fields.append("job_config_hash")
        instance.save(update_fields=fields)
        if apply_spec is not None and instance.vm_id:
            Vm.objects.filter(id=instance.vm_id).update(apply_spec_json=apply_spec)

    def _on_dns_updated(self, job, index, records):
        instance = self._instance(job, index)
        instance.dns_records_json = list(records or [])
        instance.save(update_fields=["dns_records_json", "updated_at"])

    def _on_instance_deleted(self, job, index):
        instance = Instance.objects.filter(deployment=self.deployment, job=job, index=index).select_related("vm").first()
        if instance is None:
            return
        if instance.vm is not None:
            instance.vm.delete()
        instance.delete()

    def mark_updated(self) -> None:
        Deployment.objects.filter(id=self.deployment.id).update(updated_at=timezone.now())
