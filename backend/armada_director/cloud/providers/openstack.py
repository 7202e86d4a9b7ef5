import logging
import threading
import time
from typing import Any, Dict, Optional

import requests

from ...errors import CloudError, VMNotFound
from ..base import CloudProvider

logger = logging.getLogger(__name__)


class OpenStackCloudProvider(CloudProvider):
    """Nova/Cinder/Glance binding authenticated with a Keystone v3 password token."""

    provider_type = "openstack"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.auth_url = str(self.config.get("auth_url") or "").rstrip("/")
        self.username = str(self.config.get("username") or "")
        self.password = str(self.config.get("password") or "")
        self.project = str(self.config.get("project") or "")
        self.domain = str(self.config.get("domain") or "Default")
        self.region = str(self.config.get("region") or "")
        self.timeout = float(self.config.get("timeout") or self.config.get("request_timeout") or 60)
        self.state_timeout = float(self.config.get("state_timeout", 300))
        self.http = requests.Session()
        self._lock = threading.Lock()
        self._token = ""
        self._endpoints: Dict[str, str] = {}

    def _authenticate(self) -> None:
        body = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {"name": self.username, "domain": {"name": self.domain}, "password": self.password}
                    },
                },
                "scope": {"project": {"name": self.project, "domain": {"name": self.domain}}},
            }
        }
        try:
            resp = self.http.post(f"{self.auth_url}/auth/tokens", json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise CloudError(f"keystone authentication failed: {exc}") from exc
        if resp.status_code != 201:
            raise CloudError(f"keystone authentication failed: {resp.status_code}")
        self._token = resp.headers.get("X-Subject-Token", "")
        endpoints: Dict[str, str] = {}
        for service in resp.json().get("token", {}).get("catalog", []):
            for endpoint in service.get("endpoints", []):
                if endpoint.get("interface") != "public":
                    continue
                if self.region and endpoint.get("region") not in {self.region, None}:
                    continue
                endpoints.setdefault(service.get("type"), endpoint.get("url", "").rstrip("/"))
        self._endpoints = endpoints

    def _request(self, method: str, service: str, path: str, *, json=None, retry: bool = True):
        with self._lock:
            if not self._token:
                self._authenticate()
            token = self._token
            base = self._endpoints.get(service)
        if not base:
            raise CloudError(f"no {service} endpoint in the service catalog")
        try:
            resp = self.http.request(
                method, f"{base}{path}", json=json, headers={"X-Auth-Token": token}, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise CloudError(f"{service} {method} {path} failed: {exc}") from exc
        if resp.status_code == 401 and retry:
            with self._lock:
                self._token = ""
            return self._request(method, service, path, json=json, retry=False)
        if resp.status_code == 404:
            raise VMNotFound(f"{service} resource {path} not found")
        if resp.status_code >= 400:
            raise CloudError(f"{service} {method} {path} failed: {resp.status_code} {resp.text[:200]}")
        return resp.json() if resp.content else {}

    def _wait_for(self, service: str, path: str, key: str, wanted: set, failed: set) -> Dict[str, Any]:
        deadline = time.monotonic() + self.state_timeout
        while True:
            resource = self._request("GET", service, path).get(key, {})
            status = str(resource.get("status", "")).lower()
            if status in wanted:
                return resource
            if status in failed:
                raise CloudError(f"{key} {path} entered state {status}")
            if time.monotonic() > deadline:
                raise CloudError(f"timed out waiting for {key} {path}")
            time.sleep(1)

    def create_stemcell(self, image_path: str, cloud_properties: Dict[str, Any]) -> str:
        body = {
            "name": cloud_properties.get("name") or "stemcell",
            "disk_format": cloud_properties.get("disk_format") or "qcow2",
            "container_format": cloud_properties.get("container_format") or "bare",
            "visibility": "private",
        }
        image = self._request("POST", "image", "/v2/images", json=body)
        image_id = image.get("id")
        with self._lock:
            token = self._token
            base = self._endpoints.get("image")
        with open(image_path, "rb") as handle:
            try:
                resp = self.http.put(
                    f"{base}/v2/images/{image_id}/file",
                    data=handle,
                    headers={"X-Auth-Token": token, "Content-Type": "application/octet-stream"},
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                raise CloudError(f"image upload failed: {exc}") from exc
        if resp.status_code >= 400:
            raise CloudError(f"image upload failed: {resp.status_code}")
        return image_id

    def delete_stemcell(self, stemcell_cid: str) -> None:
        self._request("DELETE", "image", f"/v2/images/{stemcell_cid}")

    def create_vm(self, agent_id, stemcell_cid, cloud_properties, networks, disk_locality=None, env=None) -> str:
        server: Dict[str, Any] = {
            "name": f"vm-{agent_id}",
            "imageRef": stemcell_cid,
            "flavorRef": cloud_properties.get("instance_type") or cloud_properties.get("flavor") or "m1.small",
            "metadata": {"agent_id": agent_id},
        }
        if cloud_properties.get("availability_zone"):
            server["availability_zone"] = cloud_properties["availability_zone"]
        if cloud_properties.get("key_name"):
            server["key_name"] = cloud_properties["key_name"]
        nics = []
        for network in (networks or {}).values():
            net_id = (network.get("cloud_properties") or {}).get("net_id")
            if not net_id:
                continue
            nic = {"uuid": net_id}
            if network.get("ip"):
                nic["fixed_ip"] = network["ip"]
            nics.append(nic)
        if nics:
            server["networks"] = nics
        created = self._request("POST", "compute", "/servers", json={"server": server}).get("server", {})
        server_id = created.get("id")
        if not server_id:
            raise CloudError("nova did not return a server id")
        self._wait_for("compute", f"/servers/{server_id}", "server", {"active"}, {"error"})
        return server_id

    def delete_vm(self, vm_cid: str) -> None:
        self._request("DELETE", "compute", f"/servers/{vm_cid}")

    def has_vm(self, vm_cid: str) -> bool:
        try:
            server = self._request("GET", "compute", f"/servers/{vm_cid}").get("server", {})
        except VMNotFound:
            return False
        return str(server.get("status", "")).lower() not in {"deleted", "soft_deleted"}

    def reboot_vm(self, vm_cid: str) -> None:
        self._request("POST", "compute", f"/servers/{vm_cid}/action", json={"reboot": {"type": "HARD"}})

    def create_disk(self, size: int, cloud_properties: Dict[str, Any], vm_locality: Optional[str] = None) -> str:
        volume: Dict[str, Any] = {"size": max(1, (int(size) + 1023) // 1024)}
        if cloud_properties.get("type"):
            volume["volume_type"] = cloud_properties["type"]
        if vm_locality:
            server = self._request("GET", "compute", f"/servers/{vm_locality}").get("server", {})
            zone = server.get("OS-EXT-AZ:availability_zone")
            if zone:
                volume["availability_zone"] = zone
        created = self._request("POST", "volumev3", "/volumes", json={"volume": volume}).get("volume", {})
        volume_id = created.get("id")
        self._wait_for("volumev3", f"/volumes/{volume_id}", "volume", {"available"}, {"error"})
        return volume_id

    def delete_disk(self, disk_cid: str) -> None:
        self._request("DELETE", "volumev3", f"/volumes/{disk_cid}")

    def attach_disk(self, vm_cid: str, disk_cid: str) -> None:
        self._request(
            "POST", "compute", f"/servers/{vm_cid}/os-volume_attachments", json={"volumeAttachment": {"volumeId": disk_cid}}
        )
        self._wait_for("volumev3", f"/volumes/{disk_cid}", "volume", {"in-use"}, {"error", "error_attaching"})

    def detach_disk(self, vm_cid: str, disk_cid: str) -> None:
        self._request("DELETE", "compute", f"/servers/{vm_cid}/os-volume_attachments/{disk_cid}")
        self._wait_for("volumev3", f"/volumes/{disk_cid}", "volume", {"available"}, {"error", "error_detaching"})

    def create_snapshot(self, disk_cid: str, metadata: Dict[str, Any]) -> str:
        body = {
            "snapshot": {
                "volume_id": disk_cid,
                "force": True,
                "name": f"snapshot-{disk_cid}",
                "metadata": {str(key): str(value) for key, value in metadata.items()},
            }
        }
        snapshot = self._request("POST", "volumev3", "/snapshots", json=body).get("snapshot", {})
        return snapshot.get("id")

    def delete_snapshot(self, snapshot_cid: str) -> None:
        self._request("DELETE", "volumev3", f"/snapshots/{snapshot_cid}")

    def find_by_inventory_path(self, path) -> Optional[str]:
        name = path[-1] if isinstance(path, (list, tuple)) else str(path)
        servers = self._request("GET", "compute", f"/servers?name=^{name}$").get("servers", [])
        return servers[0].get("id") if servers else None
