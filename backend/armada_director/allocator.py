import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import CapacityExhausted, NetworkExhausted

logger = logging.getLogger(__name__)


@dataclass
class DesiredInstance:
    deployment: str
    job: str
    index: int
    resource_pool: str
    networks: List[Dict[str, Any]] = field(default_factory=list)
    cloud_properties: Optional[Dict[str, Any]] = None

    @property
    def owner(self) -> str:
        return f"{self.deployment}/{self.job}/{self.index}"


@dataclass
class CurrentBinding:
    resource_pool: str = ""
    ip_addresses: Dict[str, str] = field(default_factory=dict)


@dataclass
class InstanceBinding:
    job: str
    index: int
    resource_pool: str
    stemcell: Dict[str, Any]
    cloud_properties: Dict[str, Any]
    networks: Dict[str, Dict[str, Any]]

    @property
    def ip_addresses(self) -> Dict[str, str]:
        return {name: net["ip"] for name, net in self.networks.items() if net.get("ip")}


def parse_ranges(entries: Optional[Iterable[str]]) -> Set[ipaddress.IPv4Address]:
    """Expand ``["10.0.0.2 - 10.0.0.9", "10.0.0.20"]`` into a set of addresses."""
    addresses: Set = set()
    for entry in entries or []:
        text = str(entry)
        if "-" in text:
            first, last = (ipaddress.ip_address(part.strip()) for part in text.split("-", 1))
            current = first
            while current <= last:
                addresses.add(current)
                current += 1
        else:
            addresses.add(ipaddress.ip_address(text.strip()))
    return addresses


class Subnet:
    def __init__(self, spec: Dict[str, Any]):
        self.spec = spec
        self.range = ipaddress.ip_network(str(spec["range"]), strict=False)
        self.gateway = ipaddress.ip_address(str(spec["gateway"])) if spec.get("gateway") else None
        self.reserved = parse_ranges(spec.get("reserved"))
        self.static = parse_ranges(spec.get("static"))
        self.dns = list(spec.get("dns") or [])
        self.cloud_properties = dict(spec.get("cloud_properties") or {})

    def contains(self, address) -> bool:
        return address in self.range

    def excluded(self, address) -> bool:
        return (
            address in (self.range.network_address, self.range.broadcast_address)
            or address == self.gateway
            or address in self.reserved
        )

    def dynamic_addresses(self):
        for address in self.range.hosts():
            if not self.excluded(address) and address not in self.static:
                yield address


class ResourceAllocator:
    """First-fit placement of instances onto resource pools and network addresses.

    ``reservations`` maps ``(network, address)`` to the owner currently holding
    it (``deployment/job/index``). An owner may keep its own addresses.
    """

    def __init__(self, manifest: Dict[str, Any], reservations: Optional[Dict[Tuple[str, str], str]] = None):
        self.pools = {pool["name"]: pool for pool in manifest.get("resource_pools") or []}
        self.pool_order = [pool["name"] for pool in manifest.get("resource_pools") or []]
        self.networks = {net["name"]: net for net in manifest.get("networks") or []}
        self._subnets = {
            name: [Subnet(subnet) for subnet in net.get("subnets") or []] for name, net in self.networks.items()
        }
        self.reservations: Dict[Tuple[str, str], str] = dict(reservations or {})
        self.pool_usage: Dict[str, int] = {}

    def allocate(self, desired: DesiredInstance, current: Optional[CurrentBinding] = None) -> InstanceBinding:
        pool = self._choose_pool(desired)
        networks: Dict[str, Dict[str, Any]] = {}
        for index, wanted in enumerate(desired.networks or [{"name": pool.get("network")}]):
            name = wanted.get("name")
            networks[name] = self._bind_network(desired, wanted, current)
            if index == 0:
                networks[name]["default"] = ["dns", "gateway"]
        self.pool_usage[pool["name"]] = self.pool_usage.get(pool["name"], 0) + 1
        return InstanceBinding(
            job=desired.job,
            index=desired.index,
            resource_pool=pool["name"],
            stemcell=dict(pool.get("stemcell") or {}),
            cloud_properties=dict(pool.get("cloud_properties") or {}),
            networks=networks,
        )

    def _fits(self, pool: Dict[str, Any], desired: DesiredInstance) -> bool:
        if pool["name"] != desired.resource_pool:
            return False
        if desired.cloud_properties:
            pool_props = pool.get("cloud_properties") or {}
            if any(pool_props.get(key) != value for key, value in desired.cloud_properties.items()):
                return False
        size = pool.get("size")
        return size is None or self.pool_usage.get(pool["name"], 0) < int(size)

    def _choose_pool(self, desired: DesiredInstance) -> Dict[str, Any]:
        for name in self.pool_order:
            pool = self.pools[name]
            if self._fits(pool, desired):
                return pool
        if desired.resource_pool not in self.pools:
            raise CapacityExhausted(f"Job '{desired.job}' references unknown resource pool '{desired.resource_pool}'")
        raise CapacityExhausted(
            f"Resource pool '{desired.resource_pool}' is full, cannot place {desired.job}/{desired.index}"
        )

    def _claim(self, network: str, address, owner: str) -> bool:
        key = (network, str(address))
        holder = self.reservations.get(key)
        if holder is not None and holder != owner:
            return False
        self.reservations[key] = owner
        return True

    def _network_settings(self, network: Dict[str, Any], subnet: Optional[Subnet], address) -> Dict[str, Any]:
        settings: Dict[str, Any] = {"type": network.get("type", "manual"), "cloud_properties": {}}
        if subnet is not None:
            settings.update(
                {
                    "ip": str(address),
                    "netmask": str(subnet.range.netmask),
                    "gateway": str(subnet.gateway) if subnet.gateway else None,
                    "dns": subnet.dns,
                    "cloud_properties": subnet.cloud_properties,
                }
            )
        else:
            settings["cloud_properties"] = dict(network.get("cloud_properties") or {})
        return settings

    def _bind_network(self, desired: DesiredInstance, wanted: Dict[str, Any],
                      current: Optional[CurrentBinding]) -> Dict[str, Any]:
        name = wanted.get("name")
        network = self.networks.get(name)
        if network is None:
            raise NetworkExhausted(f"Job '{desired.job}' references unknown network '{name}'")
        if network.get("type", "manual") != "manual":
            return self._network_settings(network, None, None)
        subnets = self._subnets[name]
        static_ips = list(wanted.get("static_ips") or [])
        if static_ips:
            expanded = sorted(parse_ranges(static_ips))
            if desired.index >= len(expanded):
                raise NetworkExhausted(f"Job '{desired.job}' has more instances than static IPs on '{name}'")
            address = expanded[desired.index]
            subnet = next((s for s in subnets if s.contains(address) and address in s.static), None)
            if subnet is None:
                raise NetworkExhausted(f"Static IP {address} is outside the static ranges of network '{name}'")
            if not self._claim(name, address, desired.owner):
                raise NetworkExhausted(f"Static IP {address} on '{name}' is already in use")
            return self._network_settings(network, subnet, address)
        previous = (current.ip_addresses if current else {}).get(name)
        if previous:
            address = ipaddress.ip_address(previous)
            for subnet in subnets:
                if (subnet.contains(address) and not subnet.excluded(address) and address not in subnet.static
                        and self._claim(name, address, desired.owner)):
                    return self._network_settings(network, subnet, address)
        for subnet in subnets:
            for address in subnet.dynamic_addresses():
                if self._claim(name, address, desired.owner):
                    return self._network_settings(network, subnet, address)
        raise NetworkExhausted(f"No free IP left on network '{name}' for {desired.job}/{desired.index}")
