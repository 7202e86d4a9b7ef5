import logging
import os
from typing import Any, Dict, List, Optional

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ...errors import CloudError, VMNotFound
from ..base import CloudProvider

logger = logging.getLogger(__name__)

METADATA_URL = "http://169.254.169.254/latest/meta-data/instance-id"
DEVICE_NAMES = [f"/dev/sd{letter}" for letter in "fghijklmnop"]


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class AwsCloudProvider(CloudProvider):
    """EC2 binding. Stemcells are light: the image is an existing AMI."""

    provider_type = "aws"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.region = str(
            self.config.get("region") or os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or ""
        ).strip()
        self.default_key_name = str(self.config.get("default_key_name") or "").strip()
        self.default_security_groups = list(self.config.get("default_security_groups") or [])
        botocore_config = Config(
            connect_timeout=int(self.config.get("connect_timeout", 10)),
            read_timeout=float(self.config.get("read_timeout") or self.config.get("request_timeout") or 60),
            retries={"max_attempts": int(self.config.get("max_attempts", 3))},
        )
        if self.region:
            self.client = boto3.client("ec2", region_name=self.region, config=botocore_config)
        else:
            self.client = boto3.client("ec2", config=botocore_config)

    def _call(self, operation: str, **params) -> Dict[str, Any]:
        try:
            return getattr(self.client, operation)(**params)
        except ClientError as exc:
            code = _error_code(exc)
            if code in {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}:
                raise VMNotFound(str(exc)) from exc
            raise CloudError(f"{operation} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise CloudError(f"{operation} failed: {exc}") from exc

    def create_stemcell(self, image_path: str, cloud_properties: Dict[str, Any]) -> str:
        amis = cloud_properties.get("ami") or {}
        ami_id = amis.get(self.region) if isinstance(amis, dict) else str(amis or "")
        if not ami_id:
            raise CloudError(f"light stemcell has no AMI for region {self.region or 'default'}")
        self._call("describe_images", ImageIds=[ami_id])
        return f"{ami_id} light"

    def delete_stemcell(self, stemcell_cid: str) -> None:
        # Light stemcells reference shared AMIs, there is nothing to deregister.
        logger.info("Forgetting light stemcell %s", stemcell_cid)

    def _availability_zone_of_volume(self, disk_cid: str) -> str:
        resp = self._call("describe_volumes", VolumeIds=[disk_cid])
        volumes = resp.get("Volumes", [])
        return volumes[0].get("AvailabilityZone", "") if volumes else ""

    def _instance(self, vm_cid: str) -> Dict[str, Any]:
        resp = self._call("describe_instances", InstanceIds=[vm_cid])
        reservations = resp.get("Reservations", [])
        if not reservations or not reservations[0].get("Instances"):
            raise VMNotFound(f"VM {vm_cid} not found")
        return reservations[0]["Instances"][0]

    def create_vm(self, agent_id, stemcell_cid, cloud_properties, networks, disk_locality=None, env=None) -> str:
        ami_id = stemcell_cid.split(" ")[0]
        params: Dict[str, Any] = {
            "ImageId": ami_id,
            "InstanceType": cloud_properties.get("instance_type") or "t3.small",
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": "agent_id", "Value": agent_id}, {"Key": "Name", "Value": agent_id}],
                }
            ],
        }
        key_name = cloud_properties.get("key_name") or self.default_key_name
        if key_name:
            params["KeyName"] = key_name
        groups = cloud_properties.get("security_groups") or self.default_security_groups
        if groups:
            params["SecurityGroupIds"] = list(groups)
        zone = cloud_properties.get("availability_zone")
        if not zone and disk_locality:
            zone = self._availability_zone_of_volume(disk_locality[0])
        if zone:
            params["Placement"] = {"AvailabilityZone": zone}
        for network in (networks or {}).values():
            subnet = (network.get("cloud_properties") or {}).get("subnet")
            if subnet:
                params["SubnetId"] = subnet
                if network.get("type", "manual") == "manual" and network.get("ip"):
                    params["PrivateIpAddress"] = network["ip"]
                break
        resp = self._call("run_instances", **params)
        instance_id = resp.get("Instances", [{}])[0].get("InstanceId")
        if not instance_id:
            raise CloudError("EC2 did not return an InstanceId.")
        logger.info("Created EC2 instance %s for agent %s", instance_id, agent_id)
        return instance_id

    def delete_vm(self, vm_cid: str) -> None:
        self._call("terminate_instances", InstanceIds=[vm_cid])

    def has_vm(self, vm_cid: str) -> bool:
        try:
            info = self._instance(vm_cid)
        except VMNotFound:
            return False
        return info.get("State", {}).get("Name") not in {"terminated", "shutting-down"}

    def reboot_vm(self, vm_cid: str) -> None:
        self._call("reboot_instances", InstanceIds=[vm_cid])

    def create_disk(self, size: int, cloud_properties: Dict[str, Any], vm_locality: Optional[str] = None) -> str:
        zone = cloud_properties.get("availability_zone")
        if not zone and vm_locality:
            zone = self._instance(vm_locality).get("Placement", {}).get("AvailabilityZone")
        if not zone:
            raise CloudError("availability zone required to create a volume")
        size_gib = max(1, (int(size) + 1023) // 1024)
        params: Dict[str, Any] = {
            "Size": size_gib,
            "AvailabilityZone": zone,
            "VolumeType": cloud_properties.get("type") or "gp3",
        }
        if cloud_properties.get("encrypted"):
            params["Encrypted"] = True
        resp = self._call("create_volume", **params)
        return resp["VolumeId"]

    def delete_disk(self, disk_cid: str) -> None:
        self._call("delete_volume", VolumeId=disk_cid)

    def _free_device(self, vm_cid: str) -> str:
        info = self._instance(vm_cid)
        used = {mapping.get("DeviceName") for mapping in info.get("BlockDeviceMappings", [])}
        for name in DEVICE_NAMES:
            if name not in used:
                return name
        raise CloudError(f"no free device name on {vm_cid}")

    def attach_disk(self, vm_cid: str, disk_cid: str) -> None:
        device = self._free_device(vm_cid)
        self._call("attach_volume", InstanceId=vm_cid, VolumeId=disk_cid, Device=device)

    def detach_disk(self, vm_cid: str, disk_cid: str) -> None:
        self._call("detach_volume", InstanceId=vm_cid, VolumeId=disk_cid)

    def create_snapshot(self, disk_cid: str, metadata: Dict[str, Any]) -> str:
        description = " / ".join(
            str(metadata[key]) for key in ("deployment", "job", "index") if metadata.get(key) is not None
        )
        tags: List[Dict[str, str]] = [{"Key": str(key), "Value": str(value)} for key, value in metadata.items()]
        params: Dict[str, Any] = {"VolumeId": disk_cid, "Description": description or disk_cid}
        if tags:
            params["TagSpecifications"] = [{"ResourceType": "snapshot", "Tags": tags}]
        resp = self._call("create_snapshot", **params)
        return resp["SnapshotId"]

    def delete_snapshot(self, snapshot_cid: str) -> None:
        self._call("delete_snapshot", SnapshotId=snapshot_cid)

    def find_by_inventory_path(self, path) -> Optional[str]:
        name = path[-1] if isinstance(path, (list, tuple)) else str(path)
        resp = self._call("describe_instances", Filters=[{"Name": "tag:Name", "Values": [str(name)]}])
        for reservation in resp.get("Reservations", []):
            for info in reservation.get("Instances", []):
                return info.get("InstanceId")
        return None

    def current_vm_id(self) -> Optional[str]:
        try:
            resp = requests.get(METADATA_URL, timeout=2)
        except requests.RequestException:
            return None
        if resp.status_code != 200:
            return None
        return resp.text.strip() or None
