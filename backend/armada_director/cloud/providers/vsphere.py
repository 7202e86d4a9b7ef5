import logging
import threading
import time
from typing import Any, Dict, Optional

import requests

from ...errors import CloudError, VMNotFound
from ..base import CloudProvider, escape_inventory_path

logger = logging.getLogger(__name__)

SESSION_HEADER = "vmware-api-session-id"
NOT_FOUND_FAULTS = {"ManagedObjectNotFound", "NotFound"}


def _moref(kind: str, value: str) -> Dict[str, str]:
    return {"_typeName": "ManagedObjectReference", "type": kind, "value": value}


class VsphereClient:
    """Minimal client for the vSphere Web Services JSON API."""

    def __init__(self, host: str, user: str, password: str, release: str = "8.0.2.0", verify_tls: bool = True,
                 timeout: float = 60):
        self.base_url = f"https://{host}/sdk/vim25/{release}"
        self.user = user
        self.password = password
        self.timeout = timeout
        self.http = requests.Session()
        self.http.verify = verify_tls
        self._lock = threading.Lock()
        self._session_id = ""

    def login(self) -> None:
        url = f"{self.base_url}/SessionManager/SessionManager/Login"
        try:
            resp = self.http.post(url, json={"userName": self.user, "password": self.password}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise CloudError(f"vSphere login failed: {exc}") from exc
        if resp.status_code != 200:
            raise CloudError(f"vSphere login failed: {resp.status_code} {resp.text[:200]}")
        self._session_id = resp.headers.get(SESSION_HEADER, "")
        if not self._session_id:
            raise CloudError("vSphere login returned no session id")

    def invoke(self, kind: str, moid: str, method: str, body: Optional[Dict[str, Any]] = None, *, retry: bool = True):
        with self._lock:
            if not self._session_id:
                self.login()
            session_id = self._session_id
        url = f"{self.base_url}/{kind}/{moid}/{method}"
        try:
            resp = self.http.post(url, json=body or {}, headers={SESSION_HEADER: session_id}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise CloudError(f"vSphere {method} failed: {exc}") from exc
        if resp.status_code == 401 and retry:
            with self._lock:
                self._session_id = ""
            return self.invoke(kind, moid, method, body, retry=False)
        if resp.status_code == 204 or not resp.content:
            return None
        payload = resp.json()
        if resp.status_code >= 400:
            fault = payload.get("_typeName", "") if isinstance(payload, dict) else ""
            if fault in NOT_FOUND_FAULTS:
                raise VMNotFound(f"{kind} {moid} not found")
            raise CloudError(f"vSphere {method} failed: {fault or resp.status_code}")
        return payload

    def get(self, kind: str, moid: str, prop: str):
        with self._lock:
            if not self._session_id:
                self.login()
            session_id = self._session_id
        url = f"{self.base_url}/{kind}/{moid}/{prop}"
        try:
            resp = self.http.get(url, headers={SESSION_HEADER: session_id}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise CloudError(f"vSphere read of {prop} failed: {exc}") from exc
        if resp.status_code >= 400:
            payload = resp.json() if resp.content else {}
            if isinstance(payload, dict) and payload.get("_typeName") in NOT_FOUND_FAULTS:
                raise VMNotFound(f"{kind} {moid} not found")
            raise CloudError(f"vSphere read of {prop} failed: {resp.status_code}")
        return resp.json() if resp.content else None

    def wait_for_task(self, task_ref: Dict[str, Any], poll_interval: float = 1.0):
        moid = task_ref["value"]
        while True:
            info = self.get("Task", moid, "info") or {}
            state = info.get("state")
            if state == "success":
                return info.get("result")
            if state == "error":
                error = info.get("error") or {}
                raise CloudError(f"vSphere task {moid} failed: {error.get('localizedMessage') or error}")
            time.sleep(poll_interval)

    def find_by_inventory_path(self, path) -> Optional[Dict[str, Any]]:
        return self.invoke(
            "SearchIndex", "SearchIndex", "FindByInventoryPath", {"inventoryPath": escape_inventory_path(path)}
        )


class VsphereCloudProvider(CloudProvider):
    """vCenter binding. Persistent disks are first class disks on one datastore."""

    provider_type = "vsphere"

    def __init__(self, config: Dict[str, Any], client: Optional[VsphereClient] = None):
        super().__init__(config)
        self.datacenter = str(self.config.get("datacenter") or "")
        self.vm_folder = str(self.config.get("vm_folder") or "vm")
        self.datastore = str(self.config.get("datastore") or "")
        self.resource_pool = str(self.config.get("resource_pool") or "")
        self.client = client or VsphereClient(
            host=str(self.config.get("host") or ""),
            user=str(self.config.get("user") or ""),
            password=str(self.config.get("password") or ""),
            release=str(self.config.get("api_release") or "8.0.2.0"),
            verify_tls=bool(self.config.get("verify_tls", True)),
            timeout=float(self.config.get("timeout") or self.config.get("request_timeout") or 60),
        )

    def _folder_ref(self) -> Dict[str, Any]:
        ref = self.client.find_by_inventory_path([self.datacenter, "vm", self.vm_folder])
        if not ref:
            raise CloudError(f"VM folder {self.vm_folder} not found in {self.datacenter}")
        return ref

    def find_by_inventory_path(self, path) -> Optional[str]:
        ref = self.client.find_by_inventory_path(path)
        return ref.get("value") if ref else None

    def create_stemcell(self, image_path: str, cloud_properties: Dict[str, Any]) -> str:
        template = cloud_properties.get("template") or cloud_properties.get("name")
        if not template:
            raise CloudError("stemcell template name required")
        moid = self.find_by_inventory_path([self.datacenter, "vm", self.vm_folder, str(template)])
        if not moid:
            raise CloudError(f"stemcell template {template} not found")
        return moid

    def delete_stemcell(self, stemcell_cid: str) -> None:
        task = self.client.invoke("VirtualMachine", stemcell_cid, "Destroy_Task")
        self.client.wait_for_task(task)

    def create_vm(self, agent_id, stemcell_cid, cloud_properties, networks, disk_locality=None, env=None) -> str:
        extra_config = [{"_typeName": "OptionValue", "key": "guestinfo.agent_id", "value": agent_id}]
        for name, network in (networks or {}).items():
            if network.get("ip"):
                extra_config.append(
                    {"_typeName": "OptionValue", "key": f"guestinfo.network.{name}.ip", "value": network["ip"]}
                )
        spec: Dict[str, Any] = {
            "_typeName": "VirtualMachineCloneSpec",
            "location": {"_typeName": "VirtualMachineRelocateSpec"},
            "powerOn": True,
            "template": False,
            "config": {
                "_typeName": "VirtualMachineConfigSpec",
                "numCPUs": int(cloud_properties.get("cpu") or 1),
                "memoryMB": int(cloud_properties.get("ram") or 1024),
                "extraConfig": extra_config,
            },
        }
        pool = cloud_properties.get("resource_pool") or self.resource_pool
        if pool:
            spec["location"]["pool"] = _moref("ResourcePool", pool)
        if self.datastore:
            spec["location"]["datastore"] = _moref("Datastore", self.datastore)
        body = {"folder": self._folder_ref(), "name": f"vm-{agent_id}", "spec": spec}
        task = self.client.invoke("VirtualMachine", stemcell_cid, "CloneVM_Task", body)
        result = self.client.wait_for_task(task) or {}
        moid = result.get("value")
        if not moid:
            raise CloudError("CloneVM_Task returned no VM")
        return moid

    def delete_vm(self, vm_cid: str) -> None:
        try:
            task = self.client.invoke("VirtualMachine", vm_cid, "PowerOffVM_Task")
            self.client.wait_for_task(task)
        except VMNotFound:
            raise
        except CloudError as exc:
            logger.info("Power off of %s failed, destroying anyway: %s", vm_cid, exc)
        task = self.client.invoke("VirtualMachine", vm_cid, "Destroy_Task")
        self.client.wait_for_task(task)

    def has_vm(self, vm_cid: str) -> bool:
        try:
            self.client.get("VirtualMachine", vm_cid, "name")
        except VMNotFound:
            return False
        return True

    def reboot_vm(self, vm_cid: str) -> None:
        task = self.client.invoke("VirtualMachine", vm_cid, "ResetVM_Task")
        self.client.wait_for_task(task)

    def create_disk(self, size: int, cloud_properties: Dict[str, Any], vm_locality: Optional[str] = None) -> str:
        datastore = cloud_properties.get("datastore") or self.datastore
        if not datastore:
            raise CloudError("datastore required to create a disk")
        spec = {
            "_typeName": "VslmCreateSpec",
            "name": f"disk-{int(time.time() * 1000)}",
            "capacityInMB": int(size),
            "backingSpec": {"_typeName": "VslmCreateSpecDiskFileBackingSpec", "datastore": _moref("Datastore", datastore)},
        }
        task = self.client.invoke("VcenterVStorageObjectManager", "VStorageObjectManager", "CreateDisk_Task", {"spec": spec})
        result = self.client.wait_for_task(task) or {}
        disk_id = (result.get("config") or {}).get("id", {}).get("id")
        if not disk_id:
            raise CloudError("CreateDisk_Task returned no disk id")
        return disk_id

    def _disk_args(self, disk_cid: str) -> Dict[str, Any]:
        return {"id": {"_typeName": "ID", "id": disk_cid}, "datastore": _moref("Datastore", self.datastore)}

    def delete_disk(self, disk_cid: str) -> None:
        task = self.client.invoke(
            "VcenterVStorageObjectManager", "VStorageObjectManager", "DeleteVStorageObject_Task", self._disk_args(disk_cid)
        )
        self.client.wait_for_task(task)

    def attach_disk(self, vm_cid: str, disk_cid: str) -> None:
        body = {"diskId": {"_typeName": "ID", "id": disk_cid}, "datastore": _moref("Datastore", self.datastore)}
        task = self.client.invoke("VirtualMachine", vm_cid, "AttachDisk_Task", body)
        self.client.wait_for_task(task)

    def detach_disk(self, vm_cid: str, disk_cid: str) -> None:
        task = self.client.invoke("VirtualMachine", vm_cid, "DetachDisk_Task", {"diskId": {"_typeName": "ID", "id": disk_cid}})
        self.client.wait_for_task(task)

    def create_snapshot(self, disk_cid: str, metadata: Dict[str, Any]) -> str:
        body = dict(self._disk_args(disk_cid))
        body["description"] = " / ".join(str(value) for value in metadata.values())
        task = self.client.invoke(
            "VcenterVStorageObjectManager", "VStorageObjectManager", "VStorageObjectCreateSnapshot_Task", body
        )
        result = self.client.wait_for_task(task) or {}
        snapshot_id = result.get("id")
        if not snapshot_id:
            raise CloudError("snapshot task returned no id")
        return f"{disk_cid}:{snapshot_id}"

    def delete_snapshot(self, snapshot_cid: str) -> None:
        disk_cid, _, snapshot_id = snapshot_cid.partition(":")
        body = dict(self._disk_args(disk_cid))
        body["snapshotId"] = {"_typeName": "ID", "id": snapshot_id}
        task = self.client.invoke("VcenterVStorageObjectManager", "VStorageObjectManager", "DeleteSnapshot_Task", body)
        self.client.wait_for_task(task)

    def current_vm_id(self) -> Optional[str]:
        return self.config.get("current_vm_id") or None
