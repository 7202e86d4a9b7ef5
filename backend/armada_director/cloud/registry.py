import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .base import CloudProvider
from .providers.aws import AwsCloudProvider
from .providers.dummy import DummyCloudProvider
from .providers.openstack import OpenStackCloudProvider
from .providers.vsphere import VsphereCloudProvider

PROVIDER_CLASSES = {
    "aws": AwsCloudProvider,
    "vsphere": VsphereCloudProvider,
    "openstack": OpenStackCloudProvider,
    "dummy": DummyCloudProvider,
}


@dataclass(frozen=True)
class Infrastructure:
    name: str
    hypervisor: str
    default_disk_size: int
    supports_light_stemcell: bool = False

    @property
    def light(self) -> bool:
        return self.supports_light_stemcell


INFRASTRUCTURES: Dict[str, Infrastructure] = {
    "vsphere": Infrastructure(name="vsphere", hypervisor="esxi", default_disk_size=2048),
    "aws": Infrastructure(name="aws", hypervisor="xen", default_disk_size=2048, supports_light_stemcell=True),
    "openstack": Infrastructure(name="openstack", hypervisor="kvm", default_disk_size=10240),
    "dummy": Infrastructure(name="dummy", hypervisor="dummy", default_disk_size=1024),
}


def infrastructure_for(name: str) -> Infrastructure:
    infrastructure = INFRASTRUCTURES.get(str(name or ""))
    if infrastructure is None:
        raise ValueError(f"invalid infrastructure: {name}")
    return infrastructure


def all_infrastructures() -> List[Infrastructure]:
    return [INFRASTRUCTURES[name] for name in ("vsphere", "aws", "openstack")]


class CloudProviderRegistry:
    """Builds one provider per infrastructure kind and keeps it for the process.

    ``request_timeout`` becomes each provider's default HTTP/SDK timeout so a
    request gives up no later than the CPI call waiting on it.
    """

    def __init__(self, config: Mapping[str, Mapping[str, Any]], request_timeout: Optional[float] = None):
        self.config = config or {}
        self.request_timeout = request_timeout
        self._providers: Dict[str, CloudProvider] = {}
        self._lock = threading.Lock()

    def provider_options(self, kind: str) -> Dict[str, Any]:
        options = dict(self.config.get(kind) or {})
        if self.request_timeout:
            options.setdefault("request_timeout", self.request_timeout)
        return options

    def get_provider(self, kind: str) -> CloudProvider:
        infrastructure_for(kind)
        with self._lock:
            provider = self._providers.get(kind)
            if provider is None:
                provider = PROVIDER_CLASSES[kind](self.provider_options(kind))
                self._providers[kind] = provider
            return provider

    def register(self, kind: str, provider: CloudProvider) -> None:
        infrastructure_for(kind)
        with self._lock:
            self._providers[kind] = provider
