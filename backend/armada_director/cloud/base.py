from typing import Any, Dict, List, Optional


class CloudProvider:
    """Contract every infrastructure binding implements.

    Calls are blocking and expected to run on a worker thread. Implementations
    raise ``armada_director.errors.CloudError`` (or a subclass) on failure and
    ``VMNotFound`` when a VM the caller named does not exist.
    """

    provider_type = ""

    def __init__(self, config: Dict[str, Any]):
        self.config = config or {}

    def create_stemcell(self, image_path: str, cloud_properties: Dict[str, Any]) -> str:
        raise NotImplementedError

    def delete_stemcell(self, stemcell_cid: str) -> None:
        raise NotImplementedError

    def create_vm(
        self,
        agent_id: str,
        stemcell_cid: str,
        cloud_properties: Dict[str, Any],
        networks: Dict[str, Dict[str, Any]],
        disk_locality: Optional[List[str]] = None,
        env: Optional[Dict[str, Any]] = None,
    ) -> str:
        raise NotImplementedError

    def delete_vm(self, vm_cid: str) -> None:
        raise NotImplementedError

    def has_vm(self, vm_cid: str) -> bool:
        raise NotImplementedError

    def reboot_vm(self, vm_cid: str) -> None:
        raise NotImplementedError

    def create_disk(self, size: int, cloud_properties: Dict[str, Any], vm_locality: Optional[str] = None) -> str:
        raise NotImplementedError

    def delete_disk(self, disk_cid: str) -> None:
        raise NotImplementedError

    def attach_disk(self, vm_cid: str, disk_cid: str) -> None:
        raise NotImplementedError

    def detach_disk(self, vm_cid: str, disk_cid: str) -> None:
        raise NotImplementedError

    def create_snapshot(self, disk_cid: str, metadata: Dict[str, Any]) -> str:
        raise NotImplementedError

    def delete_snapshot(self, snapshot_cid: str) -> None:
        raise NotImplementedError

    def find_by_inventory_path(self, path) -> Optional[str]:
        raise NotImplementedError

    def current_vm_id(self) -> Optional[str]:
        return None


def escape_inventory_path(path) -> str:
    """Join an inventory path, escaping ``/`` inside each element as ``%2f``.

    A list is treated as already split into elements. A plain string is one
    element, so every slash in it is escaped.
    """
    if isinstance(path, (list, tuple)):
        elements = [str(item) for item in path]
    else:
        elements = [str(path)]
    return "/".join(element.replace("/", "%2f") for element in elements)
