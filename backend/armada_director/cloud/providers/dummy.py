import itertools
import threading
import uuid
from typing import Any, Dict, List, Optional, Set

from ...errors import CloudError, VMNotFound
from ..base import CloudProvider, escape_inventory_path


class DummyCloudProvider(CloudProvider):
    """In-memory cloud used for development and tests.

    ``fail_on`` holds operation names (``create_vm``, ``attach_disk`` ...) that
    raise ``CloudError``; ``fail_on_agents`` limits ``create_vm`` failures to
    specific agent ids. Agents of created VMs are tracked in ``agent_states``
    so the dummy agent client can answer for them.
    """

    provider_type = "dummy"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.stemcells: Dict[str, Dict[str, Any]] = {}
        self.vms: Dict[str, Dict[str, Any]] = {}
        self.disks: Dict[str, Dict[str, Any]] = {}
        self.snapshots: Dict[str, Dict[str, Any]] = {}
        self.inventory: Dict[str, str] = {}
        self.agent_states: Dict[str, Dict[str, Any]] = {}
        self.fail_on: Set[str] = set(self.config.get("fail_on") or [])
        self.fail_on_agents: Set[str] = set(self.config.get("fail_on_agents") or [])
        self.calls: List[tuple] = []

    def _next_cid(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}-{uuid.uuid4().hex[:8]}"

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        if method in self.fail_on:
            raise CloudError(f"dummy cloud failure injected for {method}")

    def create_stemcell(self, image_path: str, cloud_properties: Dict[str, Any]) -> str:
        with self._lock:
            self._record("create_stemcell", image_path)
            cid = self._next_cid("stemcell")
            self.stemcells[cid] = {"image_path": image_path, "cloud_properties": dict(cloud_properties or {})}
            return cid

    def delete_stemcell(self, stemcell_cid: str) -> None:
        with self._lock:
            self._record("delete_stemcell", stemcell_cid)
            self.stemcells.pop(stemcell_cid, None)

    def create_vm(self, agent_id, stemcell_cid, cloud_properties, networks, disk_locality=None, env=None) -> str:
        with self._lock:
            self.calls.append(("create_vm", agent_id))
            if "create_vm" in self.fail_on and (not self.fail_on_agents or agent_id in self.fail_on_agents):
                raise CloudError(f"dummy cloud failure injected for create_vm ({agent_id})")
            cid = self._next_cid("vm")
            self.vms[cid] = {
                "agent_id": agent_id,
                "stemcell_cid": stemcell_cid,
                "cloud_properties": dict(cloud_properties or {}),
                "networks": dict(networks or {}),
                "disk_locality": list(disk_locality or []),
                "env": dict(env or {}),
                "disks": [],
            }
            self.agent_states[agent_id] = {"vm_cid": cid, "job_state": "stopped", "responsive": True, "disks": []}
            return cid

    def delete_vm(self, vm_cid: str) -> None:
        with self._lock:
            self._record("delete_vm", vm_cid)
            vm = self.vms.pop(vm_cid, None)
            if vm is None:
                raise VMNotFound(f"VM {vm_cid} not found")
            self.agent_states.pop(vm["agent_id"], None)

    def has_vm(self, vm_cid: str) -> bool:
        with self._lock:
            self._record("has_vm", vm_cid)
            return vm_cid in self.vms

    def reboot_vm(self, vm_cid: str) -> None:
        with self._lock:
            self._record("reboot_vm", vm_cid)
            vm = self.vms.get(vm_cid)
            if vm is None:
                raise VMNotFound(f"VM {vm_cid} not found")
            state = self.agent_states.get(vm["agent_id"])
            if state is not None:
                state["responsive"] = True

    def create_disk(self, size: int, cloud_properties: Dict[str, Any], vm_locality: Optional[str] = None) -> str:
        with self._lock:
            self._record("create_disk", size)
            cid = self._next_cid("disk")
            self.disks[cid] = {"size": size, "cloud_properties": dict(cloud_properties or {}), "vm_cid": None}
            return cid

    def delete_disk(self, disk_cid: str) -> None:
        with self._lock:
            self._record("delete_disk", disk_cid)
            if disk_cid not in self.disks:
                raise CloudError(f"disk {disk_cid} not found")
            del self.disks[disk_cid]

    def attach_disk(self, vm_cid: str, disk_cid: str) -> None:
        with self._lock:
            self._record("attach_disk", vm_cid, disk_cid)
            vm = self.vms.get(vm_cid)
            if vm is None:
                raise VMNotFound(f"VM {vm_cid} not found")
            disk = self.disks.get(disk_cid)
            if disk is None:
                raise CloudError(f"disk {disk_cid} not found")
            disk["vm_cid"] = vm_cid
            if disk_cid not in vm["disks"]:
                vm["disks"].append(disk_cid)

    def detach_disk(self, vm_cid: str, disk_cid: str) -> None:
        with self._lock:
            self._record("detach_disk", vm_cid, disk_cid)
            vm = self.vms.get(vm_cid)
            if vm is None:
                raise VMNotFound(f"VM {vm_cid} not found")
            if disk_cid in vm["disks"]:
                vm["disks"].remove(disk_cid)
            disk = self.disks.get(disk_cid)
            if disk is not None:
                disk["vm_cid"] = None

    def create_snapshot(self, disk_cid: str, metadata: Dict[str, Any]) -> str:
        with self._lock:
            self._record("create_snapshot", disk_cid)
            if disk_cid not in self.disks:
                raise CloudError(f"disk {disk_cid} not found")
            cid = self._next_cid("snap")
            self.snapshots[cid] = {"disk_cid": disk_cid, "metadata": dict(metadata or {})}
            return cid

    def delete_snapshot(self, snapshot_cid: str) -> None:
        with self._lock:
            self._record("delete_snapshot", snapshot_cid)
            self.snapshots.pop(snapshot_cid, None)

    def find_by_inventory_path(self, path) -> Optional[str]:
        return self.inventory.get(escape_inventory_path(path))

    def current_vm_id(self) -> Optional[str]:
        return self.config.get("current_vm_id")
